"""Filesystem layout and fixed defaults shared by pgupgrader services."""

DIR_MODE = 0o750
DATA_DIR_MODE = 0o700

VERSION_FILE = "PG_VERSION"
PID_FILE = "postmaster.pid"
MAIN_CONF_FILE = "postgresql.conf"
AUTO_CONF_FILE = "postgresql.auto.conf"
SERVER_LOG_FILE = "logfile"

BACKUPS_DIR = "backups"
UPGRADES_DIR = "upgrades"
RESERVED_ENTRIES = (BACKUPS_DIR, UPGRADES_DIR)

DEFAULT_BIN_DIR_TEMPLATE = "/usr/lib/postgresql/{version}/bin"
MIN_SUPPORTED_VERSION = 14
MAX_SUPPORTED_VERSION = 17

DEFAULT_SUPERUSER = "postgres"
DEFAULT_PORT = 5432
DEFAULT_TEMP_PORT = 5433
DEFAULT_SOCKET_DIR = "/var/run/postgresql"
DEFAULT_FALLBACK_LOCALE = "C"

POLL_INTERVAL_SECONDS = 0.5
WAIT_TIMEOUT_SECONDS = 30.0
COMMAND_TIMEOUT_SECONDS = 300.0
UPGRADE_TIMEOUT_SECONDS = 3600.0

DATA_DIR_ENV = "PGDATA"
