"""Subprocess execution service for pgupgrader."""

import os
import subprocess
from typing import Dict, List, Optional

from pgupgrader.errors import CommandError, CommandTimeoutError, UpgraderError


class CommandRunner:
    """Runs external commands with consistent error handling.

    Every call spawns exactly one process and blocks until it exits or its
    timeout expires. Nothing is retried.
    """

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout

    @staticmethod
    def build_env(env: Optional[Dict[str, Optional[str]]]) -> Optional[Dict[str, str]]:
        """Overlay ``env`` on the current environment; ``None`` values unset a key."""
        if env is None:
            return None

        merged = dict(os.environ)
        for key, value in env.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        return merged

    def run(
        self,
        cmd: List[str],
        env: Optional[Dict[str, Optional[str]]] = None,
        timeout: Optional[float] = None,
        check: bool = True,
        input_text: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout

        try:
            result = subprocess.run(
                cmd,
                text=True,
                capture_output=True,
                timeout=effective_timeout,
                env=self.build_env(env),
                input=input_text,
                cwd=cwd,
            )
        except FileNotFoundError as exc:
            raise CommandError(
                f"Required command not found: {cmd[0]}. Check that PostgreSQL binaries are installed.",
                cmd=cmd,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeoutError(
                f"Command timed out after {effective_timeout}s: {cmd_str}"
            ) from exc
        except OSError as exc:
            raise UpgraderError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        if result.stdout:
            self.logger.debug("Command output: %s", result.stdout.strip())

        if result.returncode == 0 or not check:
            return result

        message = f"Command failed ({result.returncode}): {cmd_str}"
        output = "\n".join(
            part for part in ((result.stdout or "").strip(), (result.stderr or "").strip()) if part
        )
        if output:
            message = f"{message}\n{output}"

        raise CommandError(
            message,
            cmd=cmd,
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )
