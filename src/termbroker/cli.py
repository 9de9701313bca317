"""CLI entry point for termbroker."""

from __future__ import annotations

import asyncio
import logging

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from termbroker.config import BrokerConfig
from termbroker.tabs import TabLedger, TabRecord

app = typer.Typer(
    name="termbroker",
    help="Terminal session broker: long-lived shells that survive their viewers.",
    no_args_is_help=True,
)
console = Console()


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", "-H", help="Listen address."),
    port: int | None = typer.Option(None, "--port", "-p", help="Listen port."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run the broker (WebSocket at /terminal, tab API at /api/terminal-tabs)."""
    from termbroker.gateway.app import create_app

    setup_logging(verbose)
    config = BrokerConfig.load(config_file)
    if host:
        config.server.host = host
    if port:
        config.server.port = port

    try:
        broker = create_app(config)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    uvicorn.run(
        broker,
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if verbose else "info",
    )


async def _load_tabs(db_path: str, project_id: str) -> list[TabRecord]:
    async with TabLedger(db_path) as ledger:
        return await ledger.list_for_project(project_id)


@app.command()
def tabs(
    project_id: str = typer.Argument(help="Project whose saved tabs to list."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """List the saved terminal tabs of a project."""
    config = BrokerConfig.load(config_file)
    records = asyncio.run(_load_tabs(config.ledger.db_path, project_id))
    if not records:
        console.print(f"No tabs saved for project [bold]{project_id}[/bold].")
        return

    table = Table(title=f"Terminal tabs: {project_id}")
    table.add_column("Tab")
    table.add_column("Name")
    table.add_column("Session")
    table.add_column("Working directory")
    for record in records:
        table.add_row(
            record.tab_id,
            record.name,
            record.session_id or "[dim]none[/dim]",
            record.cwd,
        )
    console.print(table)


@app.command("config")
def show_config(
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Print the effective configuration (secrets masked)."""
    config = BrokerConfig.load(config_file)
    if config.auth.jwt_secret:
        config.auth.jwt_secret = "********"
    console.print_json(config.model_dump_json())


if __name__ == "__main__":
    app()
