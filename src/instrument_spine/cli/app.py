"""
Root Typer application for the instrument-spine CLI.

Commands:
    db init                 create tables and storage guards
    migrate PATHS...        run one migration over source files
    status RUN_ID           state and counters of a run
    lookup --isin/--psw-id  canonical record (optionally with history)
    audit                   audit log entries, filtered by run and kind
"""

from __future__ import annotations

from pathlib import Path

import typer

from instrument_spine import __version__
from instrument_spine.cli.db import app as db_app
from instrument_spine.cli.utils import (
    console,
    fail,
    load_settings,
    open_store,
    output_audit,
    output_instruments,
    output_status,
)
from instrument_spine.errors import InstrumentSpineError, InvalidConfigError
from instrument_spine.logging import configure_logging
from instrument_spine.migration.models import RunState
from instrument_spine.migration.service import MigrationService
from instrument_spine.settings import DedupScope, get_settings
from instrument_spine.sources.file import FileSource
from instrument_spine.sources.protocol import SourceRegistry

app = typer.Typer(
    name="instrument-spine",
    help="instrument-spine: canonical instrument identity and migration engine.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
app.add_typer(db_app, name="db", help="Canonical store schema operations.")


# ── Version / logging callback ───────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"instrument-spine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level for stderr logs."),
) -> None:
    """instrument-spine CLI: migrate, inspect and audit canonical instruments."""
    settings = get_settings()
    configure_logging(level=log_level, json_format=settings.log_format == "json")


# ── migrate ──────────────────────────────────────────────────────────────


@app.command()
def migrate(
    paths: list[Path] = typer.Argument(..., help="Source files (csv, json, jsonl)"),
    batch_size: int | None = typer.Option(None, "--batch-size", "-b", min=1),
    min_throughput: float | None = typer.Option(None, "--min-throughput", help="Records/second floor"),
    min_accept_rate: float | None = typer.Option(None, "--min-accept-rate"),
    dedup_scope: DedupScope | None = typer.Option(None, "--dedup-scope"),
    database: str | None = typer.Option(None, "--database", "-d", help="Database URL or SQLite path"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Migrate source files into the canonical store.

    Each file becomes a source named after its stem. Exits 1 unless the
    run completes.
    """
    settings = load_settings(database)
    overrides: dict[str, float] = {}
    if min_throughput is not None:
        overrides["min_throughput_rps"] = min_throughput
    if min_accept_rate is not None:
        overrides["min_accept_rate"] = min_accept_rate

    try:
        registry = SourceRegistry()
        for path in paths:
            source = FileSource(path)
            if source.name in registry:
                raise InvalidConfigError(f"Two source files share the name {source.name!r}")
            registry.register(source)

        store = open_store(settings, create=True)
        try:
            service = MigrationService(store, registry, settings)
            status = service.run_migration(
                registry.list_sources(),
                overrides or None,
                batch_size=batch_size,
                dedup_scope=dedup_scope,
            )
        finally:
            store.dispose()
    except InstrumentSpineError as e:
        fail(e)

    output_status(status, as_json=json_out)
    if status.state != RunState.COMPLETED:
        raise typer.Exit(code=1)


# ── status ───────────────────────────────────────────────────────────────


@app.command()
def status(
    run_id: str = typer.Argument(..., help="Run ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show the state and counters of a migration run."""
    settings = load_settings(database)
    try:
        store = open_store(settings)
        try:
            run_status = MigrationService(store, SourceRegistry(), settings).get_run_status(run_id)
        finally:
            store.dispose()
    except InstrumentSpineError as e:
        fail(e)
    output_status(run_status, as_json=json_out)


# ── lookup ───────────────────────────────────────────────────────────────


@app.command()
def lookup(
    isin: str | None = typer.Option(None, "--isin", help="Active record for an ISIN"),
    psw_id: str | None = typer.Option(None, "--psw-id", help="Record by canonical ID"),
    history: bool = typer.Option(False, "--history", help="All records ever committed for the ISIN"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Look up canonical instruments by ISIN or psw_id."""
    if (isin is None) == (psw_id is None):
        console.print("[red]Pass exactly one of --isin or --psw-id[/red]")
        raise typer.Exit(code=2)

    settings = load_settings(database)
    try:
        store = open_store(settings)
        try:
            view = store.view
            if psw_id is not None:
                found = view.get_by_psw_id(psw_id)
                records = [found] if found else []
            elif history:
                records = view.history(isin.strip().upper())
            else:
                found = view.get_by_isin(isin.strip().upper())
                records = [found] if found else []
        finally:
            store.dispose()
    except InstrumentSpineError as e:
        fail(e)

    output_instruments(records, as_json=json_out)
    if not records:
        raise typer.Exit(code=1)


# ── audit ────────────────────────────────────────────────────────────────


@app.command()
def audit(
    run_id: str | None = typer.Option(None, "--run-id", "-r"),
    kind: str | None = typer.Option(None, "--kind", "-k", help="validation | dedup | migration"),
    decision: str | None = typer.Option(None, "--decision"),
    limit: int | None = typer.Option(None, "--limit", "-n", min=1),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List audit log entries."""
    settings = load_settings(database)
    try:
        store = open_store(settings)
        try:
            entries = store.view.audit_entries(run_id=run_id, kind=kind, decision=decision)
        finally:
            store.dispose()
    except InstrumentSpineError as e:
        fail(e)

    output_audit(entries[:limit] if limit else entries, as_json=json_out)
