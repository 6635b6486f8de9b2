"""Liveness and control-data probes for a PostgreSQL data directory."""

import os
from datetime import datetime
from typing import Dict, Optional

from pgupgrader.constants import MAIN_CONF_FILE, PID_FILE, VERSION_FILE
from pgupgrader.errors import ClusterValidationError
from pgupgrader.models import ControlData

CONTROL_DATA_TIME_FORMAT = "%a %b %d %H:%M:%S %Y"


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(" ".join(value.split()), CONTROL_DATA_TIME_FORMAT)
    except ValueError:
        return None


def parse_control_data(output: str) -> ControlData:
    """Parses ``pg_controldata`` key/value output.

    Raises ClusterValidationError when the cluster state line is missing, which
    is the one field every well-formed report carries.
    """
    raw: Dict[str, str] = {}
    for line in (output or "").splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip()
        if key:
            raw[key] = value.strip()

    state = raw.get("Database cluster state")
    if not state:
        raise ClusterValidationError(
            f"Invalid control data output (no cluster state):\n{(output or '').strip()}"
        )

    return ControlData(
        cluster_state=state,
        system_identifier=raw.get("Database system identifier"),
        pg_control_version=_parse_int(raw.get("pg_control version number")),
        catalog_version=_parse_int(raw.get("Catalog version number")),
        latest_checkpoint_location=raw.get("Latest checkpoint location"),
        latest_checkpoint_redo_location=raw.get("Latest checkpoint's REDO location"),
        latest_checkpoint_time=_parse_time(raw.get("Time of latest checkpoint")),
        latest_checkpoint_timeline=_parse_int(raw.get("Latest checkpoint's TimeLineID")),
        wal_level=raw.get("wal_level setting"),
        data_checksum_version=_parse_int(raw.get("Data page checksum version")),
        raw=raw,
    )


class ClusterProbe:
    """Answers "is it there" and "is it running" without changing anything."""

    def __init__(self, runner, logger):
        self.runner = runner
        self.logger = logger

    def read_pid(self, data_dir: str) -> Optional[int]:
        if not data_dir:
            return None

        pid_file = os.path.join(data_dir, PID_FILE)
        try:
            with open(pid_file, "r", encoding="utf-8") as file_obj:
                first_line = file_obj.readline().strip()
        except OSError:
            return None

        pid = _parse_int(first_line)
        if pid is None or pid <= 0:
            return None
        return pid

    def is_running(self, data_dir: str) -> bool:
        pid = self.read_pid(data_dir)
        if pid is None:
            return False

        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # The process exists but belongs to another user.
            return True
        except OSError:
            return False
        return True

    def exists(self, data_dir: str) -> bool:
        if not data_dir:
            return False
        return os.path.isfile(os.path.join(data_dir, VERSION_FILE)) and os.path.isfile(
            os.path.join(data_dir, MAIN_CONF_FILE)
        )

    def get_control_data(self, bin_dir: str, data_dir: str) -> ControlData:
        result = self.runner.run(
            [os.path.join(bin_dir, "pg_controldata"), data_dir],
            env={"LC_ALL": "C", "LANG": "C"},
        )
        return parse_control_data(result.stdout)
