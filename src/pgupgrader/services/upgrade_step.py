"""Pairwise major-version upgrade step for pgupgrader."""

import os
from typing import Optional

from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from pgupgrader.constants import DATA_DIR_ENV, RESERVED_ENTRIES, UPGRADES_DIR
from pgupgrader.errors import CommandError, UpgraderError
from pgupgrader.models import Cluster, InitializationArgs, UpgradeStep, UpgraderConfig
from pgupgrader.services.lifecycle import ServiceLifecycle

# initdb would otherwise take the locale from the environment, so a setting that
# was at its default on the old cluster must be pinned explicitly.
UPGRADE_INITDB_BASE_ARGS = ("--locale=C",)


class UpgradeStepService:
    """Walks one data directory from version N to N+1 with pg_upgrade."""

    def __init__(
        self,
        runner,
        version_service,
        probe,
        settings_service,
        locale_normalizer,
        validator,
        filesystem_service,
        logger,
        console,
        config: Optional[UpgraderConfig] = None,
    ):
        self.runner = runner
        self.version_service = version_service
        self.probe = probe
        self.settings_service = settings_service
        self.locale_normalizer = locale_normalizer
        self.validator = validator
        self.filesystem_service = filesystem_service
        self.logger = logger
        self.console = console
        self.config = config or UpgraderConfig()

    def plan_step(self, data_dir: str, from_version: int) -> UpgradeStep:
        to_version = from_version + 1
        return UpgradeStep(
            from_version=from_version,
            to_version=to_version,
            old_bin_dir=self.version_service.resolve_bin_dir(from_version),
            new_bin_dir=self.version_service.resolve_bin_dir(to_version),
            work_dir=os.path.join(data_dir, UPGRADES_DIR, str(to_version)),
        )

    def _lifecycle(self, data_dir: str, bin_dir: str) -> ServiceLifecycle:
        return ServiceLifecycle(
            cluster=Cluster(data_dir=data_dir, bin_dir=bin_dir),
            runner=self.runner,
            probe=self.probe,
            logger=self.logger,
            console=self.console,
            config=self.config,
            version_service=self.version_service,
        )

    def detect_initialization_args(self, data_dir: str, step: UpgradeStep) -> InitializationArgs:
        """Starts the old cluster privately, reads its settings and stops it again."""
        old_cluster = self._lifecycle(data_dir, step.old_bin_dir)

        self.console.print(
            f"[blue]Detecting settings of PostgreSQL {step.from_version}...[/blue]"
        )
        try:
            old_cluster.start(server_options=old_cluster.temp_server_options())
            settings = self.settings_service.current_settings(
                old_cluster.cluster, port=self.config.temp_port
            )
        except BaseException:
            old_cluster.stop_after_failure()
            raise
        old_cluster.stop()

        init_args = self.settings_service.for_initialization(settings)
        if init_args.settings:
            self.logger.info(
                "Carrying initialization settings forward: %s",
                ", ".join(f"{name}={value}" for name, value in init_args.settings.items()),
            )
        return init_args

    def _pg_upgrade_command(self, data_dir: str, step: UpgradeStep, check: bool):
        cmd = [
            os.path.join(step.new_bin_dir, "pg_upgrade"),
            f"--old-bindir={step.old_bin_dir}",
            f"--new-bindir={step.new_bin_dir}",
            f"--old-datadir={data_dir}",
            f"--new-datadir={step.work_dir}",
            f"--username={self.config.superuser}",
            f"--socketdir={self.config.socket_dir}",
        ]
        if check:
            cmd.append("--check")
        return cmd

    def run_pg_upgrade(self, data_dir: str, step: UpgradeStep):
        # pg_upgrade writes its logs and scripts into the working directory.
        cwd = os.path.dirname(step.work_dir)
        env = {DATA_DIR_ENV: None, "NOTIFY_SOCKET": None}

        self.logger.info("Checking cluster compatibility for %s -> %s", step.from_version, step.to_version)
        try:
            self.runner.run(
                self._pg_upgrade_command(data_dir, step, check=True),
                env=env,
                timeout=self.config.upgrade_timeout,
                cwd=cwd,
            )
        except CommandError as exc:
            raise UpgraderError(f"pg_upgrade compatibility check failed: {exc}") from exc

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=self.console,
        ) as progress:
            progress.add_task(
                f"[bold magenta]Upgrading PostgreSQL {step.from_version} -> {step.to_version}...",
                total=None,
            )
            try:
                self.runner.run(
                    self._pg_upgrade_command(data_dir, step, check=False),
                    env=env,
                    timeout=self.config.upgrade_timeout,
                    cwd=cwd,
                )
            except CommandError as exc:
                raise UpgraderError(f"pg_upgrade failed: {exc}") from exc

    def run_step(self, data_dir: str, from_version: int) -> UpgradeStep:
        step = self.plan_step(data_dir, from_version)
        self.logger.info("Preparing upgrade step %s -> %s", step.from_version, step.to_version)

        if os.path.lexists(step.work_dir):
            self.logger.info("Removing stale work directory %s", step.work_dir)
            self.filesystem_service.remove_dir(step.work_dir)

        self.validator.validate(step.old_bin_dir, data_dir, step.from_version)

        init_args = self.detect_initialization_args(data_dir, step)

        new_cluster = self._lifecycle(step.work_dir, step.new_bin_dir)
        self.console.print(f"[blue]Initializing PostgreSQL {step.to_version} cluster...[/blue]")
        new_cluster.init_db(extra_args=list(UPGRADE_INITDB_BASE_ARGS) + init_args.args, strict=True)

        self.locale_normalizer.fix_locale_settings(data_dir)

        self.run_pg_upgrade(data_dir, step)

        self.validator.validate(step.new_bin_dir, step.work_dir, step.to_version)

        self.filesystem_service.swap_into(data_dir, step.work_dir, keep=RESERVED_ENTRIES)
        self.console.print(f"[green]Upgrade to PostgreSQL {step.to_version} successful.[/green]")
        return step
