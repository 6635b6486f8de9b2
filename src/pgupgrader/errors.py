"""Domain errors for pgupgrader."""

from typing import List, Optional


class UpgraderError(RuntimeError):
    """Raised when an operation cannot continue safely."""


class PreconditionError(UpgraderError):
    """Raised before any subprocess is spawned when a requirement is not met."""


class VersionNotFoundError(PreconditionError):
    """Raised when a data directory has no readable version marker."""


class LockError(PreconditionError):
    """Raised when another invocation already owns the data directory."""


class CommandError(UpgraderError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(
        self,
        message: str,
        cmd: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.cmd = list(cmd or [])
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class OperationTimeoutError(UpgraderError):
    """Raised when waiting for something gave up before it finished."""


class CommandTimeoutError(OperationTimeoutError):
    """Raised when an external command exceeds its timeout."""


class ServerWaitTimeoutError(OperationTimeoutError):
    """Raised when the server did not reach the requested state in time."""


class ClusterValidationError(UpgraderError):
    """Raised when a cluster does not match what an operation expects."""


class ConfigValidationError(ClusterValidationError):
    """Structured form of a diagnostic printed by the server."""

    def __init__(
        self,
        message: str,
        raw: str,
        parameter: Optional[str] = None,
        line: Optional[int] = None,
    ):
        details = message
        if parameter:
            details = f"{parameter}: {details}"
        if line is not None:
            details = f"line {line}: {details}"
        super().__init__(details)
        self.message = message
        self.raw = raw
        self.parameter = parameter
        self.line = line
