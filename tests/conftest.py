import json
import os
import subprocess
from pathlib import Path

import pytest

from pgupgrader.errors import CommandError
from pgupgrader.models import UpgraderConfig

CONTROL_DATA_TEMPLATE = """pg_control version number:            {control_version}
Catalog version number:               202307071
Database system identifier:           7301234567890123456
Database cluster state:               {state}
pg_control last modified:             Tue Mar  5 10:15:30 2024
Latest checkpoint location:           0/1A2B3C4
Latest checkpoint's REDO location:    0/1A2B300
Latest checkpoint's TimeLineID:       1
Time of latest checkpoint:            Tue Mar  5 10:15:29 2024
wal_level setting:                    replica
Data page checksum version:           1
"""

DEFAULT_SETTINGS_ROWS = [
    {
        "name": "data_checksums",
        "setting": "on",
        "boot_val": "off",
        "context": "internal",
        "vartype": "bool",
        "unit": None,
    },
    {
        "name": "lc_messages",
        "setting": "de_DE.UTF-8",
        "boot_val": "",
        "context": "superuser",
        "vartype": "string",
        "unit": None,
    },
    {
        "name": "max_connections",
        "setting": "100",
        "boot_val": "100",
        "context": "postmaster",
        "vartype": "integer",
        "unit": None,
    },
    {
        "name": "shared_buffers",
        "setting": "16384",
        "boot_val": "1024",
        "context": "postmaster",
        "vartype": "integer",
        "unit": "8kB",
    },
]


class DummyLogger:
    def __init__(self):
        self.messages = []

    def _record(self, level, message, *args):
        self.messages.append((level, message % args if args else message))

    def info(self, message, *args, **_kwargs):
        self._record("info", message, *args)

    def debug(self, message, *args, **_kwargs):
        self._record("debug", message, *args)

    def warning(self, message, *args, **_kwargs):
        self._record("warning", message, *args)

    def error(self, message, *args, **_kwargs):
        self._record("error", message, *args)


class DummyConsole:
    def __init__(self):
        self.lines = []

    def print(self, *args, **_kwargs):
        self.lines.append(" ".join(str(arg) for arg in args))


class FakePostgres:
    """Command runner that emulates the PostgreSQL binaries against real directories.

    Binaries live under ``/fake/pg/<version>/bin``; the version of each call is
    read back from that path.
    """

    BIN_DIR_TEMPLATE = "/fake/pg/{version}/bin"

    def __init__(self):
        self.calls = []
        self.settings_rows = list(DEFAULT_SETTINGS_ROWS)
        self.template_locale = {"datcollate": "en_US.UTF-8", "datctype": "en_US.UTF-8"}
        self.installed_locales = ["C", "C.UTF-8", "POSIX", "en_US.utf8"]
        self.cluster_state = "shut down"
        self.fail_start_versions = set()
        self.fail_upgrade_versions = set()
        self.fail_check_versions = set()
        self.stuck_on_stop = False
        self.start_delay_checks = 0
        self.never_ready = False
        self.pending_ready_checks = 0
        self.config_error = None
        self.password_error = None
        self.old_conf_at_upgrade = None

    def names(self):
        return [call["name"] for call in self.calls]

    def calls_named(self, name):
        return [call for call in self.calls if call["name"] == name]

    @staticmethod
    def _version_of(binary: str) -> int:
        return int(Path(binary).parent.parent.name)

    @staticmethod
    def _option(cmd, flag):
        return cmd[cmd.index(flag) + 1]

    @staticmethod
    def _long_option(cmd, name):
        prefix = f"--{name}="
        for item in cmd:
            if item.startswith(prefix):
                return item[len(prefix):]
        return None

    @staticmethod
    def _result(cmd, stdout="", returncode=0):
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")

    @staticmethod
    def _fail(cmd, stderr, check=True):
        if not check:
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr=stderr)
        raise CommandError(
            f"Command failed (1): {' '.join(cmd)}\n{stderr}",
            cmd=cmd,
            returncode=1,
            stderr=stderr,
        )

    def run(self, cmd, env=None, timeout=None, check=True, input_text=None, cwd=None):
        name = os.path.basename(cmd[0])
        self.calls.append(
            {
                "name": name,
                "cmd": list(cmd),
                "env": env,
                "timeout": timeout,
                "input_text": input_text,
                "cwd": cwd,
            }
        )
        handler = getattr(self, f"_handle_{name}", None)
        if handler is None:
            raise AssertionError(f"unexpected command: {cmd}")
        return handler(cmd, check=check, input_text=input_text)

    def _handle_locale(self, cmd, **_kwargs):
        return self._result(cmd, stdout="\n".join(self.installed_locales) + "\n")

    def _handle_initdb(self, cmd, **_kwargs):
        version = self._version_of(cmd[0])
        data_dir = Path(self._option(cmd, "-D"))
        data_dir.mkdir(parents=True, exist_ok=True)
        (data_dir / "PG_VERSION").write_text(f"{version}\n", encoding="utf-8")
        (data_dir / "postgresql.conf").write_text(
            "lc_messages = 'C'\nmax_connections = 100\n", encoding="utf-8"
        )
        (data_dir / "postgresql.auto.conf").write_text("", encoding="utf-8")
        (data_dir / "base").mkdir(exist_ok=True)
        (data_dir / "base" / "1").write_text(f"catalog-{version}", encoding="utf-8")
        return self._result(cmd)

    def _handle_pg_ctl(self, cmd, check=True, **_kwargs):
        version = self._version_of(cmd[0])
        data_dir = Path(self._option(cmd, "-D"))
        pid_file = data_dir / "postmaster.pid"

        if cmd[-1] == "start":
            if version in self.fail_start_versions:
                return self._fail(cmd, "pg_ctl: could not start server", check=check)
            pid_file.write_text(f"{os.getpid()}\n{data_dir}\n", encoding="utf-8")
            self.pending_ready_checks = self.start_delay_checks
            return self._result(cmd, stdout="server starting\n")

        if cmd[-1] == "stop":
            if not self.stuck_on_stop and pid_file.exists():
                pid_file.unlink()
            return self._result(cmd)

        raise AssertionError(f"unexpected pg_ctl action: {cmd}")

    def _handle_pg_controldata(self, cmd, **_kwargs):
        control_version = 1300
        return self._result(
            cmd,
            stdout=CONTROL_DATA_TEMPLATE.format(
                control_version=control_version, state=self.cluster_state
            ),
        )

    def _starting_up(self):
        return self.never_ready or self.pending_ready_checks > 0

    def _handle_pg_isready(self, cmd, **_kwargs):
        if self._starting_up():
            self.pending_ready_checks -= 1
            return self._result(cmd, returncode=1)
        return self._result(cmd)

    def _handle_psql(self, cmd, check=True, input_text=None):
        if self._starting_up():
            return self._fail(
                cmd, "psql: error: FATAL:  the database system is starting up", check=check
            )
        if "-f" in cmd:
            if self.password_error:
                return self._fail(cmd, self.password_error.format(statement=input_text), check=check)
            return self._result(cmd)

        sql = self._option(cmd, "-c")
        if "pg_settings" in sql:
            return self._result(cmd, stdout=json.dumps(self.settings_rows) + "\n")
        if "template1" in sql:
            return self._result(cmd, stdout=json.dumps(self.template_locale) + "\n")
        raise AssertionError(f"unexpected query: {sql}")

    def _handle_pg_upgrade(self, cmd, check=True, **_kwargs):
        new_version = self._version_of(cmd[0])
        if "--check" in cmd:
            if new_version in self.fail_check_versions:
                return self._fail(cmd, "*failure*\nConsult the last few lines of the log", check=check)
            return self._result(cmd, stdout="Clusters are compatible\n")

        if new_version in self.fail_upgrade_versions:
            return self._fail(cmd, "pg_upgrade: could not dump old cluster", check=check)

        old_data = Path(self._long_option(cmd, "old-datadir"))
        new_data = Path(self._long_option(cmd, "new-datadir"))
        self.old_conf_at_upgrade = (old_data / "postgresql.conf").read_text(encoding="utf-8")
        (new_data / "migrated_from").write_text(
            (old_data / "PG_VERSION").read_text(encoding="utf-8"), encoding="utf-8"
        )
        return self._result(cmd, stdout="Upgrade Complete\n")

    def _handle_postgres(self, cmd, check=True, **_kwargs):
        if "--version" in cmd:
            return self._result(cmd, stdout=f"postgres (PostgreSQL) {self._version_of(cmd[0])}.4\n")
        if self.config_error:
            return self._fail(cmd, self.config_error, check=check)
        return self._result(cmd, stdout="/tmp/data\n")


@pytest.fixture
def fake_postgres():
    return FakePostgres()


@pytest.fixture
def dummy_logger():
    return DummyLogger()


@pytest.fixture
def dummy_console():
    return DummyConsole()


@pytest.fixture
def upgrader_config(tmp_path):
    return UpgraderConfig(
        bin_dir_template=FakePostgres.BIN_DIR_TEMPLATE,
        socket_dir=str(tmp_path / "sockets"),
        poll_interval=0.0,
        wait_timeout=1.0,
    )


@pytest.fixture
def make_cluster(fake_postgres):
    """Creates an initialized, stopped data directory at ``path`` for ``version``."""

    def _make(path, version):
        fake_postgres._handle_initdb(
            [FakePostgres.BIN_DIR_TEMPLATE.format(version=version) + "/initdb", "-D", str(path)]
        )
        return Path(path)

    return _make
