"""
``instrument-spine db``: canonical store schema commands.
"""

from __future__ import annotations

import typer

from instrument_spine.cli.utils import console, fail, load_settings, open_store, print_json
from instrument_spine.errors import InstrumentSpineError

app = typer.Typer(no_args_is_help=True)


@app.command()
def init(
    database: str | None = typer.Option(None, "--database", "-d", help="Database URL or SQLite path"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Create the canonical store tables and storage guards."""
    settings = load_settings(database)
    try:
        store = open_store(settings, create=True)
    except InstrumentSpineError as e:
        fail(e)
    try:
        active = store.view.count()
    finally:
        store.dispose()

    if json_out:
        print_json({"database_url": settings.database_url, "active_instruments": active})
    else:
        console.print(f"[green]Initialised[/green] {settings.database_url} ({active} active instruments)")
