"""Typer-powered command line front end for ``pgbox``.

Each command builds an :class:`~pgbox.instance.EmbeddedPostgres` from the
merged configuration, performs one lifecycle step and exits. A server started
from the CLI keeps running after the process exits; ``pgbox stop`` from a
later invocation stops it again.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import PostgresConfig, load_config
from .errors import ConfigError, PgBoxError, ProcessError, ProvisionError
from .exit_codes import ExitCode
from .instance import EmbeddedPostgres

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Path to a YAML config file (defaults to $PGBOX_CONFIG_FILE).",
)
BASE_PATH_OPTION = typer.Option(
    None,
    "--base-path",
    "-b",
    file_okay=False,
    help="Absolute directory holding binaries, data and runtime files.",
)
PORT_OPTION = typer.Option(None, "--port", "-p", help="Port the server listens on.")
PG_VERSION_OPTION = typer.Option(
    None,
    "--pg-version",
    help="PostgreSQL release to use (e.g. 16, V17 or 16.9.0).",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Run a throwaway PostgreSQL server without installing PostgreSQL.

        Typical flow: fetch -> init -> start -> (use the server) -> stop -> dispose.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Objects shared by commands for one CLI invocation."""

    config: PostgresConfig


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the pgbox version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    base_path: Path | None = BASE_PATH_OPTION,
    port: int | None = PORT_OPTION,
    pg_version: str | None = PG_VERSION_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"pgbox {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)

    overrides: dict[str, object] = {
        "base_path": str(base_path.expanduser().absolute()) if base_path else None,
        "port": port,
        "version": pg_version,
    }
    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        _fail(str(exc), ExitCode.VALIDATION)
    ctx.obj = RuntimeContext(config=config)


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    _fail("CLI runtime was not initialised.", ExitCode.VALIDATION)


def _fail(message: str, code: ExitCode) -> NoReturn:
    console.print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(code=int(code))


@contextmanager
def _instance(ctx: typer.Context) -> Iterator[EmbeddedPostgres]:
    """Yield a controller, translating pgbox errors into exit codes.

    The controller is closed on exit without stopping the server.
    """
    runtime = _get_runtime(ctx)
    try:
        instance = EmbeddedPostgres(runtime.config)
    except ConfigError as exc:
        _fail(str(exc), ExitCode.VALIDATION)
    try:
        yield instance
    except ConfigError as exc:
        _fail(str(exc), ExitCode.VALIDATION)
    except ProvisionError as exc:
        _fail(str(exc), ExitCode.PROVISION)
    except ProcessError as exc:
        detail = f"{exc}\n{exc.output}" if exc.output else str(exc)
        _fail(detail, ExitCode.PROCESS)
    except PgBoxError as exc:
        _fail(str(exc), ExitCode.PROCESS)
    finally:
        instance.close()


@app.command()
def fetch(ctx: typer.Context) -> None:
    """Download and extract the PostgreSQL binaries."""
    with _instance(ctx) as instance:
        result = instance.ensure_binaries()
    if result.changed:
        console.print(f"[green]Binaries for PostgreSQL {result.version} ready.[/green]")
    else:
        console.print(f"Binaries for PostgreSQL {result.version} already present.")
    console.print(f"pg_ctl: {result.pg_ctl}", highlight=False)


@app.command()
def init(ctx: typer.Context) -> None:
    """Create the data directory with initdb (once)."""
    with _instance(ctx) as instance:
        ran = instance.init()
    if ran:
        console.print("[green]Data directory initialised.[/green]")
    else:
        console.print("Data directory already initialised.")


@app.command()
def start(ctx: typer.Context) -> None:
    """Start the server and wait until it accepts connections."""
    with _instance(ctx) as instance:
        instance.start()
        connection = instance.connection_string()
    console.print(f"[green]PostgreSQL started.[/green] {connection}", highlight=False)


@app.command()
def stop(ctx: typer.Context) -> None:
    """Stop the server if it is running."""
    with _instance(ctx) as instance:
        instance.stop()
    console.print("[green]PostgreSQL stopped.[/green]")


@app.command()
def restart(ctx: typer.Context) -> None:
    """Stop and start the server."""
    with _instance(ctx) as instance:
        instance.restart()
    console.print("[green]PostgreSQL restarted.[/green]")


@app.command()
def dispose(ctx: typer.Context) -> None:
    """Remove the data directory when the server is not running."""
    with _instance(ctx) as instance:
        removed = instance.dispose()
        snapshot = instance.status()
    if removed:
        console.print(f"[green]Removed {snapshot.data_dir}.[/green]", highlight=False)
    elif snapshot.marker_present:
        _fail(f"Server still running; {snapshot.data_dir} left in place.", ExitCode.PROCESS)
    else:
        console.print(f"Nothing to remove at {snapshot.data_dir}.", highlight=False)


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show what pgbox knows about the instance."""
    with _instance(ctx) as instance:
        data = instance.status().to_dict()
    if json_output:
        console.print_json(data=data)
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, "" if value is None else str(value))
    console.print(table)


@app.command()
def uri(ctx: typer.Context) -> None:
    """Print the connection string."""
    with _instance(ctx) as instance:
        connection = instance.connection_string()
    console.print(connection, highlight=False, soft_wrap=True)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    if json_output:
        console.print_json(data=data)
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, dict):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = str(value)
        table.add_row(key, rendered)
    console.print(table)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
