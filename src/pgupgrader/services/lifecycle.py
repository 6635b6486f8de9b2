"""Start/stop/init/password lifecycle of a single PostgreSQL cluster."""

import os
import time
from collections import deque
from typing import Callable, Dict, List, Optional

from pgupgrader.constants import DATA_DIR_ENV, DATA_DIR_MODE, SERVER_LOG_FILE
from pgupgrader.errors import (
    CommandError,
    PreconditionError,
    ServerWaitTimeoutError,
    UpgraderError,
    VersionNotFoundError,
)
from pgupgrader.errors_catalog import actionable_error
from pgupgrader.models import Cluster, ClusterInfo, Secret, UpgraderConfig
from pgupgrader.services.settings import psql_command

UNINITIALIZED = "uninitialized"
STOPPED = "stopped"
RUNNING = "running"

DEFAULT_INITDB_ARGS = ("--locale=C", "--encoding=UTF8")

# pg_isready exit code for a server that accepts connections.
PG_ISREADY_ACCEPTING = 0


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def quote_ident(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


class ServiceLifecycle:
    """Drives one cluster through Uninitialized -> Stopped <-> Running.

    The cluster's state is always derived from disk (PG_VERSION, postgresql.conf
    and postmaster.pid); nothing is cached between calls.
    """

    def __init__(
        self,
        cluster: Cluster,
        runner,
        probe,
        logger,
        console,
        config: Optional[UpgraderConfig] = None,
        version_service=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cluster = cluster
        self.runner = runner
        self.probe = probe
        self.logger = logger
        self.console = console
        self.config = config or UpgraderConfig()
        self.version_service = version_service
        self.sleep = sleep

    @property
    def data_dir(self) -> str:
        return self.cluster.data_dir

    def _tool(self, name: str) -> str:
        return os.path.join(self.cluster.bin_dir, name)

    def _env(self) -> Dict[str, Optional[str]]:
        # NOTIFY_SOCKET would make a systemd-aware server talk to our supervisor.
        return {DATA_DIR_ENV: self.data_dir, "NOTIFY_SOCKET": None}

    def exists(self) -> bool:
        return self.probe.exists(self.data_dir)

    def is_running(self) -> bool:
        return self.probe.is_running(self.data_dir)

    def state(self) -> str:
        if self.is_running():
            return RUNNING
        if self.exists():
            return STOPPED
        return UNINITIALIZED

    def accepts_connections(self, host: str, port) -> bool:
        """True once the postmaster is alive and pg_isready reports it accepting connections."""
        if not self.is_running():
            return False

        result = self.runner.run(
            [
                self._tool("pg_isready"),
                "-h",
                host,
                "-p",
                str(port),
                "-U",
                self.config.superuser,
                "-q",
            ],
            env=self._env(),
            timeout=self.config.command_timeout,
            check=False,
        )
        return result.returncode == PG_ISREADY_ACCEPTING

    def temp_server_options(self) -> Dict[str, str]:
        """Options for a server reachable only through the socket directory."""
        return {
            "port": str(self.config.temp_port),
            "listen_addresses": "",
            "unix_socket_directories": self.config.socket_dir,
        }

    def _ensure_socket_dir(self):
        try:
            os.makedirs(self.config.socket_dir, exist_ok=True)
        except OSError as exc:
            raise UpgraderError(
                f"Failed to create socket directory {self.config.socket_dir}: {exc}"
            ) from exc

    def _wait_until(self, predicate: Callable[[], bool], action: str):
        deadline = time.monotonic() + self.config.wait_timeout
        while True:
            self.sleep(self.config.poll_interval)
            if predicate():
                return
            if time.monotonic() >= deadline:
                message = (
                    f"Timeout waiting for PostgreSQL to {action} after "
                    f"{self.config.wait_timeout}s ({self.data_dir})."
                )
                log_tail = self._server_log_tail()
                if log_tail:
                    message = f"{message}\nRecent server log:\n{log_tail}"
                raise ServerWaitTimeoutError(message)

    def _server_log_tail(self, lines: int = 20) -> str:
        log_path = os.path.join(self.data_dir, SERVER_LOG_FILE)
        try:
            with open(log_path, "r", encoding="utf-8", errors="replace") as file_obj:
                return "\n".join(line.rstrip() for line in deque(file_obj, maxlen=lines))
        except OSError:
            return ""

    def init_db(self, extra_args: Optional[List[str]] = None, strict: Optional[bool] = None):
        strict = self.config.strict_init if strict is None else strict

        if os.path.isdir(self.data_dir) and os.listdir(self.data_dir):
            if strict or self.exists():
                raise PreconditionError(
                    f"Data directory already exists and is not empty: {self.data_dir}"
                )
        elif os.path.exists(self.data_dir) and not os.path.isdir(self.data_dir):
            raise PreconditionError(f"Data directory path is not a directory: {self.data_dir}")

        try:
            os.makedirs(self.data_dir, mode=DATA_DIR_MODE, exist_ok=True)
        except OSError as exc:
            raise UpgraderError(f"Failed to create data directory {self.data_dir}: {exc}") from exc

        args = list(DEFAULT_INITDB_ARGS) if extra_args is None else list(extra_args)
        cmd = [
            self._tool("initdb"),
            "-D",
            self.data_dir,
            "-A",
            "trust",
            "-U",
            self.config.superuser,
        ] + args

        self.logger.info("Initializing cluster in %s", self.data_dir)
        self.runner.run(cmd, env=self._env(), timeout=self.config.command_timeout)

    def start(self, server_options: Optional[Dict[str, str]] = None):
        if not self.exists():
            raise PreconditionError(actionable_error("data_dir_missing", path=self.data_dir))
        if self.is_running():
            raise PreconditionError(actionable_error("cluster_running", path=self.data_dir))

        cmd = [
            self._tool("pg_ctl"),
            "-D",
            self.data_dir,
            "-l",
            os.path.join(self.data_dir, SERVER_LOG_FILE),
            "-W",
        ]
        if server_options:
            if "unix_socket_directories" in server_options:
                self._ensure_socket_dir()
            cmd.extend(
                ["-o", " ".join(f"-c {key}='{value}'" for key, value in server_options.items())]
            )
        cmd.append("start")

        options = server_options or {}
        host = options.get("unix_socket_directories", self.config.socket_dir).split(",")[0].strip()
        port = options.get("port", self.config.port)

        self.logger.info("Starting PostgreSQL from %s", self.cluster.bin_dir)
        self.runner.run(cmd, env=self._env(), timeout=self.config.command_timeout)
        # postmaster.pid appears before the server accepts connections.
        self._wait_until(lambda: self.accepts_connections(host, port), "start")
        self.logger.info("PostgreSQL is running on %s", self.data_dir)

    def stop(self, mode: str = "smart"):
        if not self.is_running():
            raise PreconditionError(actionable_error("cluster_not_running", path=self.data_dir))

        cmd = [self._tool("pg_ctl"), "-D", self.data_dir, "-m", mode, "-W", "stop"]

        self.logger.info("Stopping PostgreSQL on %s (%s mode)", self.data_dir, mode)
        self.runner.run(cmd, env=self._env(), timeout=self.config.command_timeout)
        self._wait_until(lambda: not self.is_running(), "stop")
        self.logger.info("PostgreSQL stopped")

    def reset_password(self, new_password: Secret, allow_running: bool = False):
        if new_password.is_empty():
            raise PreconditionError("New password not specified.")
        if not self.exists():
            raise PreconditionError(actionable_error("data_dir_missing", path=self.data_dir))

        started_here = False
        port = self.config.port
        if self.is_running():
            if not allow_running:
                raise PreconditionError(actionable_error("cluster_running", path=self.data_dir))
            self.logger.info("Reusing the running server for the password reset")
        else:
            self.console.print(
                f"[blue]Starting PostgreSQL temporarily on port {self.config.temp_port} "
                "for password reset...[/blue]"
            )
            try:
                self.start(server_options=self.temp_server_options())
            except UpgraderError:
                self.stop_after_failure()
                raise
            started_here = True
            port = self.config.temp_port

        statement = (
            f"ALTER ROLE {quote_ident(self.config.superuser)} "
            f"PASSWORD {quote_literal(new_password.reveal())};\n"
        )
        cmd = psql_command(
            self.cluster.bin_dir, self.config.socket_dir, port, self.config.superuser
        ) + ["-f", "-"]

        try:
            self.runner.run(
                cmd,
                env=self._env(),
                timeout=self.config.command_timeout,
                input_text=statement,
            )
        except CommandError as exc:
            message = str(exc).replace(new_password.reveal(), Secret.REDACTED)
            raise CommandError(message, cmd=exc.cmd, returncode=exc.returncode) from None
        finally:
            if started_here:
                self._stop_after_reset()

        self.logger.info("Password reset for role %s", self.config.superuser)
        self.console.print("[green]Password reset completed successfully.[/green]")

    def stop_after_failure(self):
        """Stops a server a failed operation left behind; a stop error is logged, not raised."""
        if not self.is_running():
            return
        try:
            self.stop()
        except UpgraderError as exc:
            self.logger.error("Could not stop PostgreSQL on %s: %s", self.data_dir, exc)

    def _stop_after_reset(self):
        try:
            self.stop()
        except UpgraderError as exc:
            raise UpgraderError(
                f"Failed to stop the temporary PostgreSQL used for password reset: {exc}"
            ) from exc

    def info(self) -> ClusterInfo:
        info = ClusterInfo(
            data_dir=self.data_dir,
            bin_dir=self.cluster.bin_dir,
            running=self.is_running(),
        )

        if self.version_service is not None:
            try:
                info.version = self.version_service.detect_version(self.data_dir)
            except VersionNotFoundError:
                info.version = None
            try:
                info.binary_version = str(self.version_service.binary_version(self.cluster.bin_dir))
            except UpgraderError as exc:
                self.logger.debug("Could not read binary version: %s", exc)

        if self.exists():
            try:
                control_data = self.probe.get_control_data(self.cluster.bin_dir, self.data_dir)
            except UpgraderError as exc:
                self.logger.debug("Could not read control data: %s", exc)
            else:
                info.cluster_state = control_data.cluster_state
                info.system_identifier = control_data.system_identifier
                info.latest_checkpoint_location = control_data.latest_checkpoint_location
                info.latest_checkpoint_time = control_data.latest_checkpoint_time

        info.data_size = self._directory_size(self.data_dir)
        return info

    @staticmethod
    def _directory_size(path: str) -> int:
        total = 0
        for root, _dirs, files in os.walk(path):
            for file_name in files:
                try:
                    total += os.lstat(os.path.join(root, file_name)).st_size
                except OSError:
                    continue
        return total
