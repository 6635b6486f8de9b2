"""Shared domain models for pgupgrader."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .constants import (
    COMMAND_TIMEOUT_SECONDS,
    DEFAULT_BIN_DIR_TEMPLATE,
    DEFAULT_FALLBACK_LOCALE,
    DEFAULT_PORT,
    DEFAULT_SOCKET_DIR,
    DEFAULT_SUPERUSER,
    DEFAULT_TEMP_PORT,
    MAX_SUPPORTED_VERSION,
    MIN_SUPPORTED_VERSION,
    POLL_INTERVAL_SECONDS,
    UPGRADE_TIMEOUT_SECONDS,
    WAIT_TIMEOUT_SECONDS,
)


@dataclass(frozen=True)
class Cluster:
    """A data directory paired with the binaries that operate on it.

    The major version is not stored here: it is re-read from disk by every
    operation that needs it.
    """

    data_dir: str
    bin_dir: str


@dataclass
class UpgraderConfig:
    """Runtime settings, filled from defaults, the YAML config file and the CLI."""

    data_dir: Optional[str] = None
    bin_dir_template: str = DEFAULT_BIN_DIR_TEMPLATE
    min_version: int = MIN_SUPPORTED_VERSION
    max_version: int = MAX_SUPPORTED_VERSION
    port: int = DEFAULT_PORT
    temp_port: int = DEFAULT_TEMP_PORT
    socket_dir: str = DEFAULT_SOCKET_DIR
    superuser: str = DEFAULT_SUPERUSER
    fallback_locale: str = DEFAULT_FALLBACK_LOCALE
    command_timeout: float = COMMAND_TIMEOUT_SECONDS
    upgrade_timeout: float = UPGRADE_TIMEOUT_SECONDS
    wait_timeout: float = WAIT_TIMEOUT_SECONDS
    poll_interval: float = POLL_INTERVAL_SECONDS
    strict_init: bool = True
    manifest_file: Optional[str] = None


OCTAL_MODE_SETTINGS = frozenset({"data_directory_mode", "log_file_mode", "unix_socket_permissions"})


@dataclass(frozen=True)
class ConfigSetting:
    """One row of pg_settings that the upgrade may need to carry forward."""

    name: str
    current_value: str
    default_value: Optional[str]
    context: str
    var_type: str
    unit: Optional[str] = None

    @property
    def is_default(self) -> bool:
        if self.default_value is None:
            return False
        # pg_settings shows file modes in octal but boot_val in decimal.
        if (
            self.name in OCTAL_MODE_SETTINGS
            and self.current_value.isdigit()
            and self.default_value.isdigit()
        ):
            return int(self.current_value, 8) == int(self.default_value)
        return self.current_value == self.default_value


ConfigSettings = Dict[str, ConfigSetting]


@dataclass(frozen=True)
class InitializationArgs:
    """Settings that must be given to initdb, in the order they were extracted."""

    settings: Dict[str, str] = field(default_factory=dict)
    args: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class UpgradeStep:
    from_version: int
    to_version: int
    old_bin_dir: str
    new_bin_dir: str
    work_dir: str


@dataclass(frozen=True)
class BackupRecord:
    source_version: int
    path: str
    created_at: datetime


@dataclass(frozen=True)
class ControlData:
    """Subset of pg_controldata output used for health and validation."""

    cluster_state: str
    system_identifier: Optional[str] = None
    pg_control_version: Optional[int] = None
    catalog_version: Optional[int] = None
    latest_checkpoint_location: Optional[str] = None
    latest_checkpoint_redo_location: Optional[str] = None
    latest_checkpoint_time: Optional[datetime] = None
    latest_checkpoint_timeline: Optional[int] = None
    wal_level: Optional[str] = None
    data_checksum_version: Optional[int] = None
    raw: Dict[str, str] = field(default_factory=dict)


@dataclass
class ClusterInfo:
    data_dir: str
    bin_dir: str
    running: bool
    version: Optional[int] = None
    binary_version: Optional[str] = None
    cluster_state: Optional[str] = None
    system_identifier: Optional[str] = None
    latest_checkpoint_location: Optional[str] = None
    latest_checkpoint_time: Optional[datetime] = None
    data_size: int = 0


class Secret:
    """Wraps a credential so it never shows up in logs or reprs."""

    REDACTED = "[REDACTED]"

    def __init__(self, value: str):
        self._value = value

    def reveal(self) -> str:
        return self._value

    def is_empty(self) -> bool:
        return not self._value

    def __str__(self) -> str:
        return self.REDACTED

    def __repr__(self) -> str:
        return f"Secret({self.REDACTED})"

    def __format__(self, _spec: str) -> str:
        return self.REDACTED
