"""CLI for Pool Backup Autopilot (Typer + Rich)."""

import json
from pathlib import Path
from typing import Annotated, Any, Dict, Optional

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from core.config_loader import BackupServiceConfig, ConfigLoader
from core.errors import BackupError
from core.service import BackupService
from lib.logger import get_logger, set_log_level, setup_logger
from lib.state_manager import StateManager
from lib.utils import format_bytes

DEFAULT_CONFIG = Path("/etc/pool-autopilot/config.yaml")

app = typer.Typer(
    name="pool-autopilot",
    help="Backup and restore a ZFS pool to a Kopia repository.",
    no_args_is_help=True,
)
console = Console()

ConfigOption = Annotated[
    Path, typer.Option("--config", "-c", help="Daemon settings file", envvar="POOL_AUTOPILOT_CONFIG")
]


def _build_service(config_path: Path, background: bool = False) -> BackupService:
    """Load settings, configure logging and construct the service."""
    try:
        loader = ConfigLoader(config_path)
    except BackupError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    settings = loader.settings
    setup_logger(
        log_level=settings.logging.level,
        log_file=settings.logging.file,
        console=settings.logging.console,
        rotation=settings.logging.rotation,
        retention=settings.logging.retention,
        compression=settings.logging.compression,
    )
    return BackupService(settings, StateManager(settings.daemon.state_db), background=background)


def _load_record_file(path: Path) -> Dict[str, Any]:
    """Read a configuration record from YAML or JSON (JSON is valid YAML)."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] cannot read {path}: {e}")
        raise typer.Exit(1)

    if not isinstance(content, dict):
        console.print(f"[red]Error:[/] {path} must contain a mapping")
        raise typer.Exit(1)
    # Accept both a bare config and a full {state, config} record
    return content.get("config", content)


def _apply(service: BackupService, new_config: BackupServiceConfig) -> None:
    try:
        record = service.update(new_config)
    except BackupError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    console.print(f"[green]OK:[/] {record.state.last_status or 'configuration applied'}")


# ── commands ────────────────────────────────────────────────────────────


@app.command()
def run(
    config: ConfigOption = DEFAULT_CONFIG,
    log_level: Annotated[
        Optional[str], typer.Option("--log-level", help="Override the configured log level")
    ] = None,
) -> None:
    """Run the backup service and its scheduler until interrupted."""
    service = _build_service(config, background=True)
    logger = get_logger()
    if log_level:
        try:
            set_log_level(log_level)
        except ValueError as e:
            console.print(f"[red]Error:[/] {e}")
            raise typer.Exit(1)
    service.recover_interrupted()

    if not service.supported():
        console.print("[red]Error:[/] backup engine not available on this host")
        raise typer.Exit(1)

    if service.should_start():
        try:
            service.configure()
        except BackupError as e:
            logger.error(f"Repository not available at startup: {e}")
        service.start()
    else:
        logger.info("Backup service disabled, waiting for configuration")

    try:
        while not service.wait(timeout=1):
            if service.should_start():
                service.start()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        service.stop()


@app.command()
def status(
    config: ConfigOption = DEFAULT_CONFIG,
    as_json: Annotated[bool, typer.Option("--json", help="Print the raw status record")] = False,
) -> None:
    """Show configuration and status of the backup service."""
    service = _build_service(config)
    record = service.get()

    if as_json:
        payload = record.model_dump(mode="json")
        payload["config"]["repository_password"] = "***" if record.config.repository_password else ""
        if payload["config"]["backend"].get("s3"):
            payload["config"]["backend"]["s3"]["secret_key"] = "***"
        console.print_json(json.dumps(payload))
        return

    state = record.state
    table = Table(title="Backup service", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Enabled", str(record.config.enabled))
    table.add_row("Repository connected", str(state.repository_connected))
    table.add_row("Last backup", str(state.last_backup or "never"))
    table.add_row("Last backup window", state.last_backup_window or "-")
    table.add_row("In progress", f"{state.in_progress} ({state.progress:.0f}%)")
    table.add_row("Last status", state.last_status or "-")
    console.print(table)


@app.command()
def snapshots(config: ConfigOption = DEFAULT_CONFIG) -> None:
    """List snapshots available in the repository."""
    service = _build_service(config)
    available = service.get().state.available_snapshots

    if not available:
        console.print("[yellow]No snapshots found.[/]")
        return

    table = Table(title="Repository snapshots")
    table.add_column("ID", style="cyan")
    table.add_column("Time")
    table.add_column("Size", justify="right")
    table.add_column("Source")
    table.add_column("Description")
    for snap in available:
        table.add_row(
            snap.id,
            str(snap.time or "-"),
            format_bytes(snap.size),
            snap.source,
            snap.description,
        )
    console.print(table)


@app.command()
def apply(
    file: Annotated[Path, typer.Argument(help="YAML or JSON configuration record")],
    config: ConfigOption = DEFAULT_CONFIG,
) -> None:
    """Apply a backup service configuration."""
    raw = _load_record_file(file)
    try:
        new_config = BackupServiceConfig.model_validate(raw)
    except ValidationError as e:
        console.print(f"[red]Error:[/] invalid configuration: {e}")
        raise typer.Exit(1)

    _apply(_build_service(config), new_config)


@app.command()
def restore(
    snapshot_id: Annotated[str, typer.Argument(help="Repository snapshot to restore")],
    config: ConfigOption = DEFAULT_CONFIG,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Replace the pool contents with a repository snapshot."""
    service = _build_service(config)

    if not yes:
        typer.confirm(
            f"Restoring {snapshot_id} overwrites pool {service.settings.daemon.pool}. Continue?",
            abort=True,
        )

    if service.should_start():
        try:
            service.configure()
        except BackupError as e:
            console.print(f"[red]Error:[/] {e}")
            raise typer.Exit(1)

    current = service.tracker.config
    _apply(service, current.model_copy(update={"restore_snapshot_id": snapshot_id}))


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    main()
