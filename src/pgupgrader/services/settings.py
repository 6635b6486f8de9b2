"""Runtime settings extraction from a running PostgreSQL instance."""

import json
import os
from typing import Any, Dict, Iterable, List, Optional

from pgupgrader.constants import (
    DATA_DIR_ENV,
    DEFAULT_PORT,
    DEFAULT_SOCKET_DIR,
    DEFAULT_SUPERUSER,
)
from pgupgrader.errors import PreconditionError, UpgraderError
from pgupgrader.errors_catalog import actionable_error
from pgupgrader.models import Cluster, ConfigSetting, ConfigSettings, InitializationArgs

SETTINGS_QUERY = (
    "SELECT coalesce(json_agg(json_build_object("
    "'name', name, 'setting', setting, 'boot_val', boot_val, "
    "'context', context, 'vartype', vartype, 'unit', unit) ORDER BY name), '[]'::json) "
    "FROM pg_settings"
)

TEMPLATE_LOCALE_QUERY = (
    "SELECT json_build_object('datcollate', datcollate, 'datctype', datctype) "
    "FROM pg_database WHERE datname = 'template1'"
)

# Locale categories initdb writes into the new cluster.
LOCALE_PARAMS = (
    "lc_collate",
    "lc_ctype",
    "lc_messages",
    "lc_monetary",
    "lc_numeric",
    "lc_time",
)

INIT_CONTEXTS = frozenset({"internal"})

_UNIT_BYTES = {"B": 1, "kB": 1024, "8kB": 8 * 1024, "MB": 1024 * 1024, "GB": 1024 * 1024 * 1024}


def parse_settings_rows(rows: Iterable[Dict[str, Any]]) -> ConfigSettings:
    """Builds ConfigSettings from pg_settings rows, keeping only non-default values."""
    settings: ConfigSettings = {}
    for row in rows:
        name = str(row.get("name") or "").strip()
        if not name:
            continue

        current = row.get("setting")
        if current is None:
            continue
        default = row.get("boot_val")

        setting = ConfigSetting(
            name=name,
            current_value=str(current),
            default_value=None if default is None else str(default),
            context=str(row.get("context") or ""),
            var_type=str(row.get("vartype") or ""),
            unit=row.get("unit") or None,
        )
        if setting.is_default:
            continue
        settings[name] = setting
    return settings


def _wal_segsize_mb(setting: ConfigSetting) -> Optional[str]:
    multiplier = _UNIT_BYTES.get(setting.unit or "B")
    if multiplier is None:
        return None
    try:
        size_bytes = int(setting.current_value) * multiplier
    except ValueError:
        return None
    return str(size_bytes // (1024 * 1024))


def _initdb_args_for(setting: ConfigSetting) -> Optional[List[str]]:
    name = setting.name
    value = setting.current_value

    if name in LOCALE_PARAMS:
        if not value:
            return None
        return [f"--{name.replace('_', '-')}={value}"]
    if name == "server_encoding":
        return [f"--encoding={value}"]
    if name == "data_checksums":
        return ["--data-checksums"] if value == "on" else []
    if name == "wal_segment_size":
        size_mb = _wal_segsize_mb(setting)
        return [f"--wal-segsize={size_mb}"] if size_mb else None
    if name == "data_directory_mode":
        return ["--allow-group-access"] if value.endswith("750") else []
    return None


def psql_command(
    bin_dir: str, host: str, port: int, user: str, sql: Optional[str] = None
) -> List[str]:
    cmd = [
        os.path.join(bin_dir, "psql"),
        "-X",
        "-A",
        "-t",
        "-q",
        "-v",
        "ON_ERROR_STOP=1",
        "-h",
        host,
        "-p",
        str(port),
        "-U",
        user,
        "-d",
        "postgres",
    ]
    if sql is not None:
        cmd.extend(["-c", sql])
    return cmd


def is_initialization_setting(setting: ConfigSetting) -> bool:
    return setting.context in INIT_CONTEXTS or setting.name in LOCALE_PARAMS


class SettingsService:
    """Queries a running cluster through psql and classifies what it finds."""

    def __init__(
        self,
        runner,
        probe,
        logger,
        superuser: str = DEFAULT_SUPERUSER,
        host: str = DEFAULT_SOCKET_DIR,
        port: int = DEFAULT_PORT,
        timeout: Optional[float] = None,
    ):
        self.runner = runner
        self.probe = probe
        self.logger = logger
        self.superuser = superuser
        self.host = host
        self.port = port
        self.timeout = timeout

    def psql_command(
        self, cluster: Cluster, sql: Optional[str] = None, port: Optional[int] = None
    ) -> List[str]:
        return psql_command(cluster.bin_dir, self.host, port or self.port, self.superuser, sql)

    def _query_json(self, cluster: Cluster, sql: str, port: Optional[int] = None) -> Any:
        result = self.runner.run(
            self.psql_command(cluster, sql, port=port),
            env={DATA_DIR_ENV: cluster.data_dir},
            timeout=self.timeout,
        )
        text = (result.stdout or "").strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError as exc:
            raise UpgraderError(f"Could not parse psql output as JSON: {text[:200]!r}") from exc

    def current_settings(self, cluster: Cluster, port: Optional[int] = None) -> ConfigSettings:
        if not self.probe.is_running(cluster.data_dir):
            raise PreconditionError(actionable_error("cluster_not_running", path=cluster.data_dir))

        rows = self._query_json(cluster, SETTINGS_QUERY, port=port)
        if not isinstance(rows, list):
            raise UpgraderError("Settings query did not return a list of rows.")
        settings = parse_settings_rows(rows)

        # PostgreSQL 16 moved lc_collate/lc_ctype out of pg_settings.
        if "lc_collate" not in settings or "lc_ctype" not in settings:
            locale_row = self._query_json(cluster, TEMPLATE_LOCALE_QUERY, port=port)
            if isinstance(locale_row, dict):
                for name, column in (("lc_collate", "datcollate"), ("lc_ctype", "datctype")):
                    value = locale_row.get(column)
                    if name in settings or not value or value == "C":
                        continue
                    settings[name] = ConfigSetting(
                        name=name,
                        current_value=str(value),
                        default_value="C",
                        context="internal",
                        var_type="string",
                    )

        self.logger.debug("Detected %s non-default settings", len(settings))
        return settings

    def for_initialization(self, settings: ConfigSettings) -> InitializationArgs:
        selected: Dict[str, str] = {}
        args: List[str] = []
        for name in sorted(settings):
            setting = settings[name]
            if not is_initialization_setting(setting):
                continue
            flags = _initdb_args_for(setting)
            if flags is None:
                self.logger.debug("No initdb flag for %s=%s, skipping", name, setting.current_value)
                continue
            selected[name] = setting.current_value
            args.extend(flags)
        return InitializationArgs(settings=selected, args=args)
