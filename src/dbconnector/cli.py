# src/dbconnector/cli.py
"""dbconnector command line.

    dbconnector validate -s settings.yaml [--show]
    dbconnector run -s settings.yaml [--once] [--format console|json]

Global options (before the command) control logging and .env loading.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from dbconnector import __version__
from dbconnector.contracts import ConfigurationError, SourceConnectionError, TraversalKind
from dbconnector.core.config import ConnectorSettings, load_settings, resolve_config

if TYPE_CHECKING:
    from dbconnector.engine.state import TraversalStats

__all__ = ["app"]

app = typer.Typer(
    name="dbconnector",
    help="Index relational database rows into a search service.",
    no_args_is_help=True,
)

_SETTINGS_OPTION = typer.Option(..., "--settings", "-s", help="Path to the settings YAML file.")


def _show_version(value: bool) -> None:
    if value:
        typer.echo(f"dbconnector version {__version__}")
        raise typer.Exit()


def _apply_env_file(env_file: Path | None) -> None:
    """Load .env into the environment without overriding existing variables.

    Raises:
        typer.Exit: If an explicitly given env_file does not exist
    """
    from dotenv import load_dotenv

    if env_file is None:
        load_dotenv(override=False)
        return
    if not env_file.is_file():
        typer.secho(f"Error: .env file not found: {env_file}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    load_dotenv(env_file, override=False)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=_show_version,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(False, "--no-dotenv", help="Do not load a .env file."),
    env_file: Path | None = typer.Option(None, "--env-file", help="Load this .env file instead of searching."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Write logs as JSON lines."),
) -> None:
    """Index relational database rows into a search service."""
    from dbconnector.core.logging import configure_logging

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")

    if no_dotenv:
        if env_file is not None:
            typer.secho("Warning: --env-file ignored because --no-dotenv is set.", fg=typer.colors.YELLOW, err=True)
        return
    _apply_env_file(env_file)


def _error_panel(title: str, message: str, *, hint: str | None = None, details: Iterable[str] = ()) -> None:
    body = Text(message)
    lines = list(details)
    if lines:
        body.append("\n")
        for line in lines:
            body.append(f"\n  • {line}", style="dim")
    if hint:
        body.append("\n\nHint: ", style="yellow bold")
        body.append(hint, style="yellow")
    Console(stderr=True).print(Panel(body, title=f"[red bold]{title}[/]", border_style="red", expand=False))


def _fail(title: str, message: str, *, hint: str | None = None, details: Iterable[str] = ()) -> typer.Exit:
    _error_panel(title, message, hint=hint, details=details)
    return typer.Exit(1)


def _read_settings(path_arg: str) -> ConnectorSettings:
    """Load settings or exit with a readable error panel."""
    path = Path(path_arg).expanduser()
    try:
        return load_settings(path)
    except FileNotFoundError:
        raise _fail("File Not Found", f"Settings file does not exist: {path_arg}") from None
    except yaml.YAMLError as e:
        raise _fail(
            "YAML Syntax Error",
            f"Failed to parse {path.name}",
            details=[str(e)],
            hint="Check indentation and quoting around SQL statements.",
        ) from None
    except ValidationError as e:
        problems = []
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"])
            problems.append(f"{location}: {error['msg']}" if location else error["msg"])
        raise _fail(
            "Configuration Validation Failed",
            f"Invalid settings in {path.name}",
            details=problems,
            hint="Keys use snake_case, e.g. database.all_records_sql.",
        ) from None


def _summary_table(stats: TraversalStats) -> Table:
    table = Table(title="Traversal summary")
    table.add_column("Traversal")
    table.add_column("Succeeded", justify="right")
    table.add_column("Failed", justify="right")
    table.add_row("full", str(stats.successful_full_traversals), str(stats.failed_full_traversals))
    table.add_row("incremental", str(stats.successful_incremental_traversals), str(stats.failed_incremental_traversals))
    return table


def _report(stats: TraversalStats, output_format: str) -> None:
    if output_format == "json":
        typer.echo(json.dumps(stats.to_dict(), indent=2))
        return
    console = Console()
    console.print(_summary_table(stats))
    console.print(f"Indexed items: {stats.indexed_item_count}")
    if stats.watermark is not None:
        console.print(f"Watermark: {stats.watermark}")
    if stats.recent_row_errors:
        console.print(f"[yellow]Row errors: {len(stats.recent_row_errors)}[/]")
        for error in stats.recent_row_errors[:10]:
            console.print(f"  - {error.item_id or '<no id>'}: {error.error_type}: {error.message}")


@app.command()
def validate(
    settings: str = _SETTINGS_OPTION,
    show: bool = typer.Option(False, "--show", help="Print the resolved settings with secrets redacted."),
) -> None:
    """Check settings and SQL statements without connecting to the database."""
    config = _read_settings(settings)

    from dbconnector.plugins.sources.database_source import DatabaseSource

    try:
        # Engines connect lazily; this only prepares statements and the driver
        DatabaseSource(config.database).close()
    except (ConfigurationError, SourceConnectionError) as e:
        raise _fail("Invalid Database Settings", str(e)) from None

    typer.echo("Configuration valid.")
    typer.echo(f"  Source id: {config.source_id}")
    typer.echo(f"  Unique key columns: {', '.join(config.database.unique_key_columns)}")
    typer.echo(f"  Incremental traversal: {'enabled' if config.incremental_enabled else 'disabled'}")
    typer.echo(f"  Indexing backend: {config.indexing.backend.value}")
    if show:
        typer.echo(yaml.safe_dump(resolve_config(config), sort_keys=False))


@app.command()
def run(
    settings: str = _SETTINGS_OPTION,
    once: bool = typer.Option(False, "--once", help="Run one full traversal and exit."),
    output_format: str = typer.Option("console", "--format", "-f", help="Summary format: console or json."),
) -> None:
    """Run traversals until SIGINT/SIGTERM, or once with --once."""
    if output_format not in ("console", "json"):
        typer.echo(f"Error: --format must be 'console' or 'json', got '{output_format}'", err=True)
        raise typer.Exit(2)

    config = _read_settings(settings)
    if once:
        config = config.model_copy(update={"connector": config.connector.model_copy(update={"run_once": True})})

    from dbconnector.application import ConnectorApplication

    try:
        application = ConnectorApplication(config)
    except (ConfigurationError, SourceConnectionError) as e:
        raise _fail("Startup Failed", str(e)) from None

    try:
        application.run_until_stopped()
    except SourceConnectionError as e:
        raise _fail("Source Unreachable", str(e), hint="Check database.url, credentials and network access.") from None
    finally:
        application.close()

    _report(application.stats(), output_format)

    if application.fatal_error is not None:
        typer.echo(f"Error during traversal: {application.fatal_error}", err=True)
        raise typer.Exit(1)
    if config.connector.run_once and application.last_result(TraversalKind.FULL) is None:
        typer.echo("Full traversal did not complete.", err=True)
        raise typer.Exit(1)
