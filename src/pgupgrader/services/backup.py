"""Pre-upgrade snapshots of a data directory."""

import os
import shutil
from datetime import datetime, timezone

from pgupgrader.constants import BACKUPS_DIR, DIR_MODE, RESERVED_ENTRIES
from pgupgrader.errors import PreconditionError, UpgraderError
from pgupgrader.models import BackupRecord


class BackupService:
    """Copies a data directory aside before anything destructive happens."""

    def __init__(self, logger, console):
        self.logger = logger
        self.console = console

    @staticmethod
    def _has_content(path: str) -> bool:
        return os.path.isdir(path) and bool(os.listdir(path))

    def backup_path_for(self, data_dir: str, source_version: int) -> str:
        """Returns a fresh ``backups/data-<version>`` path, suffixed if already taken."""
        backups_root = os.path.join(data_dir, BACKUPS_DIR)
        candidate = os.path.join(backups_root, f"data-{source_version}")
        if not os.path.exists(candidate) or not self._has_content(candidate):
            return candidate

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        candidate = os.path.join(backups_root, f"data-{source_version}-{stamp}")
        suffix = 1
        while os.path.exists(candidate):
            candidate = os.path.join(backups_root, f"data-{source_version}-{stamp}-{suffix}")
            suffix += 1
        return candidate

    def snapshot(self, data_dir: str, destination: str, source_version: int) -> BackupRecord:
        if self._has_content(destination):
            raise PreconditionError(
                f"Backup destination already exists and is not empty: {destination}"
            )
        if os.path.exists(destination) and not os.path.isdir(destination):
            raise PreconditionError(f"Backup destination is not a directory: {destination}")

        os.makedirs(destination, mode=DIR_MODE, exist_ok=True)
        self.logger.info("Backing up %s to %s", data_dir, destination)
        self.console.print(f"[blue]Backing up current data to {destination}...[/blue]")

        try:
            for entry in sorted(os.listdir(data_dir)):
                if entry in RESERVED_ENTRIES:
                    continue
                source_path = os.path.join(data_dir, entry)
                dest_path = os.path.join(destination, entry)
                if os.path.isdir(source_path) and not os.path.islink(source_path):
                    shutil.copytree(source_path, dest_path, symlinks=True)
                else:
                    shutil.copy2(source_path, dest_path, follow_symlinks=False)
        except (OSError, shutil.Error) as exc:
            raise UpgraderError(f"Failed to back up data directory to {destination}: {exc}") from exc

        return BackupRecord(
            source_version=source_version,
            path=destination,
            created_at=datetime.now(timezone.utc),
        )
