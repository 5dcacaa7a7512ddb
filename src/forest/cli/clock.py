"""CLI commands for the background analysis clock."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ..orchestrator.config import (
    DEFAULT_CONFIG_PATH,
    ClockConfig,
    ClockConfigManager,
    ConfigurationError,
)
from ..orchestrator.exceptions import NoActiveProjectError
from ..orchestrator.snapshot import StateSnapshot, StateSnapshotGatherer
from ..persistence import DEFAULT_DATA_DIR, ActiveProjectRegistry, JsonDataPersistence

console = Console()
clock_app = typer.Typer(help="Background analysis clock commands")
clock_config_app = typer.Typer(help="Manage clock configuration", name="config")
clock_app.add_typer(clock_config_app, name="config")


@clock_config_app.command("show")
def show_config(
    config_path: Path = typer.Option(
        DEFAULT_CONFIG_PATH,
        "--config",
        help="Path to configuration file"
    ),
    format: str = typer.Option(
        "yaml",
        "--format",
        help="Output format (yaml or json)"
    ),
) -> None:
    """Display the effective clock configuration.

    Missing files show the defaults. Keys are the camelCase names accepted
    by the tool server.
    """
    try:
        config = ClockConfigManager(config_path=config_path).load()
    except ConfigurationError as exc:
        typer.echo(f"❌ Failed to load configuration: {exc}")
        raise typer.Exit(code=1)

    data = config.to_wire()
    if format == "json":
        output = json.dumps(data, indent=2)
    else:
        output = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)

    typer.echo(output)


@clock_config_app.command("validate")
def validate_config(
    config_path: Path = typer.Option(
        DEFAULT_CONFIG_PATH,
        "--config",
        help="Path to configuration file"
    ),
) -> None:
    """Validate the clock configuration file without applying it."""
    errors = ClockConfigManager(config_path=config_path).validate()

    if not errors:
        typer.echo(f"✅ Configuration is valid: {config_path}")
        return

    typer.echo(f"❌ Configuration validation failed: {config_path}")
    typer.echo("\nErrors:")
    for error in errors:
        typer.echo(f"  - {error}")
    raise typer.Exit(code=1)


@clock_config_app.command("init")
def init_config(
    config_path: Path = typer.Option(
        DEFAULT_CONFIG_PATH,
        "--config",
        help="Path to configuration file"
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite existing configuration"
    ),
) -> None:
    """Write a configuration file holding the default cadences."""
    if config_path.exists() and not force:
        typer.echo(f"❌ Configuration already exists: {config_path}")
        typer.echo("   Use --force to overwrite")
        raise typer.Exit(code=1)

    config = ClockConfig()
    ClockConfigManager(config_path=config_path).save(config)

    typer.echo(f"✅ Configuration initialized: {config_path}")
    typer.echo("\nDefault cadences:")
    typer.echo(f"  Strategic analysis: every {config.strategic_analysis_hours:g}h")
    typer.echo(f"  Risk detection: every {config.risk_detection_hours:g}h")
    typer.echo(f"  Opportunity scans: every {config.opportunity_scans_hours:g}h")
    typer.echo(f"  Identity reflection: every {config.identity_reflection_days:g}d")
    typer.echo(f"  Archiving checks: every {config.archiving_days:g}d")


def _render_snapshot(snapshot: StateSnapshot) -> None:
    table = Table(title=f"State snapshot: {snapshot.project_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    metrics = snapshot.metrics
    table.add_row("Completed tasks", str(metrics.total_completed_tasks))
    table.add_row("Average difficulty", f"{metrics.average_difficulty:.2f}")
    table.add_row("Breakthroughs", str(metrics.breakthrough_count))
    table.add_row("Branch diversity", str(metrics.branch_diversity))
    table.add_row("Momentum (7d)", str(metrics.momentum))
    table.add_row("Days since last activity", str(metrics.last_activity_days))
    table.add_row("Recent schedules", str(len(snapshot.recent_schedules)))

    console.print(table)

    if snapshot.error:
        console.print(f"[yellow]Partial snapshot: {snapshot.error}[/yellow]")
    if metrics.error:
        console.print(f"[yellow]Metrics unavailable: {metrics.error}[/yellow]")


@clock_app.command("snapshot")
def snapshot_command(
    data_dir: Path = typer.Option(DEFAULT_DATA_DIR, "--data-dir", "-d", help="Forest data directory"),
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Project id (default: active project)"),
    as_json: bool = typer.Option(False, "--json", help="Print the full snapshot as JSON"),
) -> None:
    """Gather the state snapshot the clock hands to analysis providers."""
    if project is None:
        try:
            project = ActiveProjectRegistry(data_dir).require_active_project()
        except NoActiveProjectError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1)

    gatherer = StateSnapshotGatherer(JsonDataPersistence(data_dir))
    snapshot = asyncio.run(gatherer.gather(project))

    if as_json:
        typer.echo(json.dumps(snapshot.to_dict(), indent=2, default=str))
    else:
        _render_snapshot(snapshot)


__all__ = ["clock_app", "clock_config_app"]
