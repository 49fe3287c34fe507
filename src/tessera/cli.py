"""
Tessera CLI.

Commands:
- serve:   Run the API server for a registry file
- routes:  Print the routes a registry generates
- check:   Validate a registry file
- migrate: Create missing tables in the configured database
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from tessera import __version__
from tessera.core.config import EngineConfig, load_app_spec, load_config
from tessera.runtime.errors import ConfigurationError
from tessera.runtime.registry import EntityRegistry

app = typer.Typer(
    help="Tessera - declarative resource API engine",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool) -> None:
    """Display the version and exit."""
    if value:
        console.print(f"tessera {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Tessera command line interface."""


# =============================================================================
# Helpers
# =============================================================================


def _load_config(config_path: Path | None) -> EngineConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)


def _load_registry(registry_path: Path | None, config: EngineConfig) -> EntityRegistry:
    """Load and validate a registry file, exiting with code 1 on any error."""
    path = registry_path or config.registry_path
    if path is None:
        console.print("[red]Error: no registry file given and none set in tessera.toml[/red]")
        raise typer.Exit(1)

    try:
        return EntityRegistry.from_spec(load_app_spec(path))
    except ValidationError as e:
        console.print(f"[red]Invalid registry {path}:[/red]")
        for err in e.errors():
            loc = ".".join(str(p) for p in err["loc"]) or "<root>"
            console.print(f"  [yellow]{loc}[/yellow]: {err['msg']}")
        raise typer.Exit(1)
    except ConfigurationError as e:
        console.print(f"[red]Invalid registry {path}:[/red] {e}")
        raise typer.Exit(1)


RegistryArgument = typer.Argument(
    None,
    help="Registry file (.json or .toml); defaults to [engine].registry in tessera.toml",
)
ConfigOption = typer.Option(None, "--config", "-c", help="Path to tessera.toml")


# =============================================================================
# Commands
# =============================================================================


@app.command(name="serve")
def serve_command(
    registry: Path | None = RegistryArgument,
    config_path: Path | None = ConfigOption,
    host: str | None = typer.Option(None, "--host", help="Host to bind to"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to bind to"),
    database: Path | None = typer.Option(None, "--database", "-d", help="SQLite file path"),
) -> None:
    """Run the API server."""
    from dataclasses import replace

    from tessera.runtime.app_factory import run_app
    from tessera.runtime.logging import setup_logging

    config = _load_config(config_path)
    overrides: dict[str, object] = {}
    if host is not None:
        overrides["host"] = host
    if port is not None:
        overrides["port"] = port
    if database is not None:
        overrides["database_path"] = database
    config = replace(config, **overrides)  # type: ignore[arg-type]

    entity_registry = _load_registry(registry, config)
    setup_logging(config.log_dir, config.log_level)
    console.print(
        f"[green]Serving {len(entity_registry)} entities on "
        f"http://{config.host}:{config.port}{config.api_prefix}[/green]"
    )
    run_app(entity_registry, config)


@app.command(name="routes")
def routes_command(
    registry: Path | None = RegistryArgument,
    config_path: Path | None = ConfigOption,
) -> None:
    """Print the routes a registry generates."""
    from tessera.runtime.route_generator import plan_routes

    config = _load_config(config_path)
    entity_registry = _load_registry(registry, config)
    try:
        routes = plan_routes(entity_registry)
    except ConfigurationError as e:
        console.print(f"[red]Route error:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title="Routes")
    table.add_column("Method", style="cyan")
    table.add_column("Path")
    table.add_column("Entity")
    table.add_column("Action")
    for route in routes:
        table.add_row(
            route.method,
            f"{config.api_prefix}{route.path}",
            route.entity or "-",
            route.action.value if route.action else "nested",
        )
    console.print(table)


@app.command(name="check")
def check_command(
    registry: Path | None = RegistryArgument,
    config_path: Path | None = ConfigOption,
) -> None:
    """Validate a registry file and summarize its entities."""
    config = _load_config(config_path)
    entity_registry = _load_registry(registry, config)

    table = Table(title="Entities")
    table.add_column("Slug", style="cyan")
    table.add_column("Table")
    table.add_column("Relations", justify="right")
    table.add_column("Soft deletes")
    table.add_column("Excluded actions")
    for entity in entity_registry:
        table.add_row(
            entity.slug,
            entity.storage_table,
            str(len(entity.relations)),
            "yes" if entity.soft_deletes else "no",
            ", ".join(a.value for a in entity.except_actions) or "-",
        )
    console.print(table)
    console.print(f"[green]Registry OK: {len(entity_registry)} entities[/green]")


@app.command(name="migrate")
def migrate_command(
    registry: Path | None = RegistryArgument,
    config_path: Path | None = ConfigOption,
    database: Path | None = typer.Option(None, "--database", "-d", help="SQLite file path"),
) -> None:
    """Create missing tables in the configured SQLite database."""
    from tessera.runtime.repository import DatabaseManager

    config = _load_config(config_path)
    entity_registry = _load_registry(registry, config)
    db = DatabaseManager(database or config.database_path, entity_registry)

    missing = [e.storage_table for e in entity_registry if not db.table_exists(e.storage_table)]
    db.create_all_tables()

    if missing:
        for table_name in missing:
            console.print(f"[green]Created table {table_name}[/green]")
    else:
        console.print("[dim]All tables already exist[/dim]")
