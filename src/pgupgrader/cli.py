import logging
import os

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .constants import DATA_DIR_ENV
from .core import PostgresUpgrader, UpgraderError
from .models import Secret
from .services.config_loader import DEFAULT_CONFIG_FILE, ConfigLoader

NEW_PASSWORD_ENV = "PGPASSWORD_NEW"


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def _configure_logging(verbose: bool, log_file):
    logger = logging.getLogger("pgupgrader")
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)


def _build_upgrader(ctx: click.Context) -> PostgresUpgrader:
    try:
        return PostgresUpgrader(data_dir=ctx.obj["data_dir"], config=ctx.obj["config"])
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option(
    "--data-dir",
    envvar=DATA_DIR_ENV,
    required=False,
    type=click.Path(),
    help=f"PostgreSQL data directory (default: ${DATA_DIR_ENV}).",
)
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option(
    "--bin-dir-template",
    required=False,
    help="Binary directory pattern with a {version} placeholder.",
)
@click.option("--socket-dir", required=False, type=click.Path(), help="Unix socket directory.")
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.pass_context
def main(ctx, data_dir, config, bin_dir_template, socket_dir, verbose, log_file):
    """Manage a PostgreSQL cluster and upgrade it across major versions."""
    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
        upgrader_config = config_loader.build_config(
            config_values,
            data_dir=data_dir,
            bin_dir_template=bin_dir_template,
            socket_dir=socket_dir,
        )
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc

    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")
    _configure_logging(verbose, log_file)

    if not upgrader_config.data_dir:
        raise click.ClickException(
            f"Missing required option '--data-dir' (or set ${DATA_DIR_ENV} or provide it in config)."
        )

    ctx.obj = {"data_dir": upgrader_config.data_dir, "config": upgrader_config}


@main.command()
@click.option("--target", required=True, type=int, help="Target PostgreSQL major version.")
@click.pass_context
def upgrade(ctx, target):
    """Upgrade the data directory to TARGET, one major version at a time."""
    upgrader = _build_upgrader(ctx)
    try:
        upgrader.upgrade(target)
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.pass_context
def start(ctx):
    """Start the server for the data directory."""
    upgrader = _build_upgrader(ctx)
    try:
        upgrader.start()
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.pass_context
def stop(ctx):
    """Stop the server gracefully."""
    upgrader = _build_upgrader(ctx)
    try:
        upgrader.stop()
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.option("--version", "major_version", required=False, type=int, help="Major version to initialize.")
@click.option(
    "--strict/--no-strict",
    default=None,
    help="Refuse a non-empty data directory (default: on).",
)
@click.pass_context
def init(ctx, major_version, strict):
    """Create a new cluster in the data directory."""
    upgrader = _build_upgrader(ctx)
    if major_version is None:
        major_version = ctx.obj["config"].max_version
    try:
        upgrader.init_db(major_version, strict=strict)
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command("reset-password")
@click.option(
    "--password",
    envvar=NEW_PASSWORD_ENV,
    prompt="New password",
    hide_input=True,
    confirmation_prompt=True,
    help=f"New superuser password (default: ${NEW_PASSWORD_ENV} or prompt).",
)
@click.option(
    "--allow-running",
    is_flag=True,
    default=False,
    help="Reuse an already running server instead of refusing.",
)
@click.pass_context
def reset_password(ctx, password, allow_running):
    """Set the superuser password."""
    upgrader = _build_upgrader(ctx)
    try:
        upgrader.reset_password(Secret(password), allow_running=allow_running)
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.pass_context
def status(ctx):
    """Show the cluster state."""
    upgrader = _build_upgrader(ctx)
    try:
        info = upgrader.info()
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc

    table = Table(title="PostgreSQL cluster", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Data directory", info.data_dir)
    table.add_row("Binaries", info.bin_dir)
    table.add_row("Running", "[green]yes[/green]" if info.running else "[red]no[/red]")
    table.add_row("Data version", str(info.version) if info.version is not None else "-")
    table.add_row("Binary version", info.binary_version or "-")
    table.add_row("Cluster state", info.cluster_state or "-")
    table.add_row("System identifier", info.system_identifier or "-")
    table.add_row("Latest checkpoint", info.latest_checkpoint_location or "-")
    table.add_row(
        "Checkpoint time",
        info.latest_checkpoint_time.isoformat() if info.latest_checkpoint_time else "-",
    )
    table.add_row("Data size", f"{info.data_size / (1024 * 1024):.1f} MiB")
    Console().print(table)


@main.command("validate-config")
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--version", "major_version", required=False, type=int, help="Validate with this major version.")
@click.pass_context
def validate_config(ctx, config_file, major_version):
    """Check CONFIG_FILE with the server's own parser."""
    upgrader = _build_upgrader(ctx)
    with open(config_file, "r", encoding="utf-8") as file_obj:
        config_text = file_obj.read()
    try:
        upgrader.validate_config(config_text, major_version=major_version)
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{config_file}: OK")


if __name__ == "__main__":
    main()
