import dataclasses
import logging
import os
import uuid
from typing import List, Optional

from rich.console import Console

from .constants import BACKUPS_DIR, DIR_MODE
from .errors import PreconditionError, UpgraderError, VersionNotFoundError
from .errors_catalog import actionable_error
from .models import BackupRecord, Cluster, ClusterInfo, Secret, UpgradeStep, UpgraderConfig
from .services.backup import BackupService
from .services.command_runner import CommandRunner
from .services.filesystem import FileSystemService
from .services.lifecycle import ServiceLifecycle
from .services.locale_normalizer import LocaleNormalizer
from .services.manifest import ManifestService
from .services.probe import ClusterProbe
from .services.settings import SettingsService
from .services.upgrade_step import UpgradeStepService
from .services.validation import ClusterValidator
from .services.version import VersionService

console = Console()
logger = logging.getLogger("pgupgrader")

MANIFEST_FILE_NAME = "upgrade-manifest.json"


class PostgresUpgrader:
    """Lifecycle and major-version upgrades for one PostgreSQL data directory."""

    def __init__(
        self,
        data_dir: str,
        config: Optional[UpgraderConfig] = None,
        runner: Optional[CommandRunner] = None,
    ):
        if not data_dir:
            raise PreconditionError("Data directory not specified. Use --data-dir or set PGDATA.")

        self.data_dir = os.path.abspath(data_dir)
        self.config = dataclasses.replace(config or UpgraderConfig(), data_dir=self.data_dir)
        self.bin_dir: Optional[str] = None
        self.manifest_service: Optional[ManifestService] = None

        self.command_runner = runner or CommandRunner(
            logger=logger, default_timeout=self.config.command_timeout
        )
        self.version_service = VersionService(
            bin_dir_template=self.config.bin_dir_template,
            min_version=self.config.min_version,
            max_version=self.config.max_version,
            runner=self.command_runner,
        )
        self.probe = ClusterProbe(runner=self.command_runner, logger=logger)
        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.backup_service = BackupService(logger=logger, console=console)
        self.settings_service = SettingsService(
            runner=self.command_runner,
            probe=self.probe,
            logger=logger,
            superuser=self.config.superuser,
            host=self.config.socket_dir,
            port=self.config.port,
            timeout=self.config.command_timeout,
        )
        self.locale_normalizer = LocaleNormalizer(
            runner=self.command_runner,
            logger=logger,
            fallback_locale=self.config.fallback_locale,
        )
        self.validator = ClusterValidator(
            version_service=self.version_service,
            probe=self.probe,
            runner=self.command_runner,
            logger=logger,
        )
        self.upgrade_step_service = UpgradeStepService(
            runner=self.command_runner,
            version_service=self.version_service,
            probe=self.probe,
            settings_service=self.settings_service,
            locale_normalizer=self.locale_normalizer,
            validator=self.validator,
            filesystem_service=self.filesystem_service,
            logger=logger,
            console=console,
            config=self.config,
        )

        try:
            self.bin_dir = self.version_service.resolve_bin_dir(
                self.version_service.detect_version(self.data_dir)
            )
        except VersionNotFoundError:
            self.bin_dir = None

    @property
    def backups_dir(self) -> str:
        return os.path.join(self.data_dir, BACKUPS_DIR)

    @property
    def manifest_file(self) -> str:
        return self.config.manifest_file or os.path.join(self.backups_dir, MANIFEST_FILE_NAME)

    def lifecycle(self, major_version: Optional[int] = None) -> ServiceLifecycle:
        """Lifecycle helper bound to ``major_version``'s binaries, or the on-disk version."""
        if major_version is not None:
            bin_dir = self.version_service.resolve_bin_dir(major_version)
        else:
            bin_dir = self.bin_dir or self.version_service.resolve_bin_dir(
                self.version_service.detect_version(self.data_dir)
            )
        return ServiceLifecycle(
            cluster=Cluster(data_dir=self.data_dir, bin_dir=bin_dir),
            runner=self.command_runner,
            probe=self.probe,
            logger=logger,
            console=console,
            config=self.config,
            version_service=self.version_service,
        )

    def init_db(self, major_version: int, strict: Optional[bool] = None):
        if not self.version_service.is_supported(major_version):
            raise PreconditionError(
                f"Unsupported PostgreSQL version {major_version}. Supported versions: "
                f"{self.config.min_version}-{self.config.max_version}."
            )
        self.lifecycle(major_version).init_db(strict=strict)
        self.bin_dir = self.version_service.resolve_bin_dir(major_version)
        console.print(f"[green]Initialized PostgreSQL {major_version} cluster in {self.data_dir}[/green]")

    def start(self):
        self.lifecycle().start()
        console.print("[green]PostgreSQL started.[/green]")

    def stop(self):
        self.lifecycle().stop()
        console.print("[green]PostgreSQL stopped.[/green]")

    def reset_password(self, new_password: Secret, allow_running: bool = False):
        self.lifecycle().reset_password(new_password, allow_running=allow_running)

    def info(self) -> ClusterInfo:
        bin_dir = self.bin_dir or self.version_service.resolve_bin_dir(self.config.max_version)
        lifecycle = ServiceLifecycle(
            cluster=Cluster(data_dir=self.data_dir, bin_dir=bin_dir),
            runner=self.command_runner,
            probe=self.probe,
            logger=logger,
            console=console,
            config=self.config,
            version_service=self.version_service,
        )
        return lifecycle.info()

    def validate_config(self, config_text: str, major_version: Optional[int] = None):
        if major_version is None:
            try:
                major_version = self.version_service.detect_version(self.data_dir)
            except VersionNotFoundError:
                major_version = self.config.max_version
        self.validator.validate_config_text(
            self.version_service.resolve_bin_dir(major_version), config_text
        )

    def _run_step(self, name: str, callback, *args, **kwargs):
        self.manifest_service.step_started(name)

        try:
            result = callback(*args, **kwargs)
        except Exception as exc:
            self.manifest_service.step_finished(name, "failed", error=str(exc))
            raise

        self.manifest_service.step_finished(
            name, "success", step=result if isinstance(result, UpgradeStep) else None
        )
        return result

    def _quiesce(self, current_version: int):
        if not self.probe.is_running(self.data_dir):
            return
        console.print("[yellow]PostgreSQL is running; stopping it before the upgrade...[/yellow]")
        self.lifecycle(current_version).stop()

    def _backup(self, current_version: int) -> BackupRecord:
        destination = self.backup_service.backup_path_for(self.data_dir, current_version)
        record = self.backup_service.snapshot(self.data_dir, destination, current_version)
        self.manifest_service.record_backup(record)
        return record

    def upgrade(self, target_version: int) -> List[UpgradeStep]:
        """Upgrades the data directory to ``target_version`` one major version at a time.

        Returns the steps performed; an empty list means the cluster was already
        at or past ``target_version`` and nothing was touched.
        """
        if not os.path.isdir(self.data_dir):
            raise PreconditionError(actionable_error("data_dir_missing", path=self.data_dir))

        current_version = self.version_service.detect_version(self.data_dir)
        if current_version >= target_version:
            logger.info(
                "Cluster is at version %s, target %s: nothing to do", current_version, target_version
            )
            console.print(
                f"[green]PostgreSQL {current_version} is already at or above {target_version}.[/green]"
            )
            return []

        self.version_service.ensure_supported(current_version, target_version)
        if not self.probe.exists(self.data_dir):
            raise PreconditionError(actionable_error("data_dir_missing", path=self.data_dir))

        with self.filesystem_service.data_dir_lock(self.data_dir):
            return self._upgrade_locked(current_version, target_version)

    def _upgrade_locked(self, current_version: int, target_version: int) -> List[UpgradeStep]:
        logger.info("Starting upgrade of %s from %s to %s", self.data_dir, current_version, target_version)
        console.print(
            f"[bold blue]Upgrading PostgreSQL {current_version} -> {target_version}[/bold blue]"
        )

        self._quiesce(current_version)

        os.makedirs(self.backups_dir, mode=DIR_MODE, exist_ok=True)
        self.manifest_service = ManifestService(manifest_file=self.manifest_file, logger=logger)
        self.manifest_service.start_run(
            run_id=uuid.uuid4().hex[:10],
            data_dir=self.data_dir,
            source=current_version,
            target=target_version,
        )

        steps: List[UpgradeStep] = []
        try:
            backup = self._run_step("backup", self._backup, current_version)

            for version in range(current_version, target_version):
                try:
                    step = self._run_step(
                        f"upgrade_{version}_to_{version + 1}",
                        self.upgrade_step_service.run_step,
                        self.data_dir,
                        version,
                    )
                except UpgraderError as exc:
                    work_dir = self.upgrade_step_service.plan_step(self.data_dir, version).work_dir
                    message = actionable_error(
                        "upgrade_step_failed",
                        from_version=str(version),
                        to_version=str(version + 1),
                        work_dir=work_dir,
                        backup=backup.path,
                    )
                    raise UpgraderError(f"{message}\n{exc}") from exc

                steps.append(step)
                self.bin_dir = step.new_bin_dir
                self.manifest_service.set_current_version(step.to_version)
                console.print(f"[blue]Data directory is now at version {step.to_version}[/blue]")
        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            self.manifest_service.finalize("aborted", error="Operation cancelled by user.")
            raise
        except Exception as exc:
            logger.error(str(exc))
            self.manifest_service.finalize("failed", error=str(exc))
            raise

        self.bin_dir = self.version_service.resolve_bin_dir(target_version)
        self.manifest_service.finalize("success")
        console.print(f"[green]Target version {target_version} reached![/green]")
        console.print(f"[dim]Pre-upgrade backup kept at {backup.path}[/dim]")
        return steps
