"""Filesystem helpers for pgupgrader."""

import errno
import fcntl
import logging
import os
import shutil
from contextlib import contextmanager
from typing import Iterable, Iterator, List

from rich.console import Console

from pgupgrader.errors import LockError, UpgraderError
from pgupgrader.errors_catalog import actionable_error


class FileSystemService:
    """Encapsulates file and directory side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def remove_dir(self, path: str):
        if not os.path.lexists(path):
            return
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
        except OSError as exc:
            raise UpgraderError(f"Failed to remove {path}: {exc}") from exc
        self.logger.debug("Removed: %s", path)

    def cleanup_dir(self, path: str):
        if os.path.exists(path):
            try:
                shutil.rmtree(path)
                self.logger.debug("Removed directory: %s", path)
            except OSError as exc:
                message = f"Warning: Could not remove {path}: {exc}"
                self.console.print(f"[yellow]{message}[/yellow]")
                self.logger.warning(message)

    @staticmethod
    def list_entries(path: str, exclude: Iterable[str] = ()) -> List[str]:
        excluded = set(exclude)
        return sorted(entry for entry in os.listdir(path) if entry not in excluded)

    def _move(self, source: str, destination: str):
        try:
            os.rename(source, destination)
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                raise
            shutil.move(source, destination)

    def swap_into(self, target_dir: str, source_dir: str, keep: Iterable[str] = ()):
        """Replaces the contents of ``target_dir`` with those of ``source_dir``.

        Entries named in ``keep`` survive in ``target_dir``. Each entry is
        renamed individually, so a crash between the delete and the move leaves
        ``target_dir`` partially empty; the pre-upgrade backup covers that window.
        """
        keep = tuple(keep)
        try:
            for entry in self.list_entries(target_dir, exclude=keep):
                self.remove_dir(os.path.join(target_dir, entry))

            for entry in self.list_entries(source_dir):
                self._move(os.path.join(source_dir, entry), os.path.join(target_dir, entry))
        except (OSError, shutil.Error) as exc:
            raise UpgraderError(
                f"Failed to move {source_dir} into {target_dir}: {exc}"
            ) from exc

        self.cleanup_dir(source_dir)

    @contextmanager
    def data_dir_lock(self, data_dir: str) -> Iterator[None]:
        """Holds an exclusive advisory lock on ``data_dir`` for the block's duration."""
        try:
            fd = os.open(data_dir, os.O_RDONLY)
        except OSError as exc:
            raise UpgraderError(f"Could not open {data_dir} for locking: {exc}") from exc

        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as exc:
                raise LockError(actionable_error("data_dir_locked", path=data_dir)) from exc

            self.logger.debug("Acquired lock on %s", data_dir)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                self.logger.debug("Released lock on %s", data_dir)
        finally:
            os.close(fd)
