"""
CLI utility helpers: settings/store construction and output formatting.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from instrument_spine.errors import InstrumentSpineError
from instrument_spine.migration.models import RunState, RunStatus
from instrument_spine.settings import InstrumentSpineSettings, get_settings
from instrument_spine.store.canonical import CanonicalStore
from instrument_spine.store.view import AuditEntry, InstrumentRecord

console = Console()
err_console = Console(stderr=True)

_STATE_STYLES = {
    RunState.COMPLETED: "bold green",
    RunState.HALTED: "bold red",
    RunState.ROLLED_BACK: "bold yellow",
}


# ── Settings / store helpers ─────────────────────────────────────────────


def load_settings(database: str | None = None) -> InstrumentSpineSettings:
    """Cached settings, with ``--database`` overriding both engine URLs."""
    settings = get_settings()
    if database:
        url = database if "://" in database else f"sqlite:///{database}"
        settings = settings.model_copy(update={"database_url": url, "reader_database_url": None})
    return settings


def open_store(settings: InstrumentSpineSettings, *, create: bool = False) -> CanonicalStore:
    if settings.database_url.startswith("sqlite:///"):
        Path(settings.database_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
    store = CanonicalStore.from_settings(settings)
    if create:
        store.create_all()
    return store


def fail(error: InstrumentSpineError) -> NoReturn:
    """Print a typed error and exit 1."""
    err_console.print(f"[bold red]Error[/bold red] ({type(error).__name__}): {error.message}")
    raise typer.Exit(code=1)


# ── Output helpers ───────────────────────────────────────────────────────


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def output_status(status: RunStatus, *, as_json: bool = False) -> None:
    if as_json:
        print_json(status.to_dict())
        return

    style = _STATE_STYLES.get(status.state, "bold")
    console.print(f"Run [cyan]{status.run_id}[/cyan]: [{style}]{status.state.value}[/{style}]")
    if status.halt_reason:
        console.print(f"  halt reason: {status.halt_reason}")

    table = Table(title="Counters", show_header=True, header_style="bold cyan")
    table.add_column("counter")
    table.add_column("value", justify="right")
    for key, value in status.counters.to_dict().items():
        if isinstance(value, dict):
            value = ", ".join(f"{k}={v}" for k, v in sorted(value.items())) or "-"
        table.add_row(key, str(value))
    console.print(table)


def output_instruments(records: Sequence[InstrumentRecord], *, as_json: bool = False) -> None:
    if as_json:
        print_json([r.to_dict() for r in records])
        return
    if not records:
        console.print("[dim]No instruments found[/dim]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    for column in ("psw_id", "active", "superseded_by", "source", "aliases", "vendor symbols"):
        table.add_column(column)
    for r in records:
        table.add_row(
            r.psw_id,
            "yes" if r.active else "no",
            r.superseded_by or "",
            r.source_id,
            ", ".join(f"{a.alias_symbol} ({a.alias_type})" for a in r.aliases),
            ", ".join(f"{p}={s}" for p, s in sorted(r.vendor_symbols.items())),
        )
    console.print(table)


def output_audit(entries: Sequence[AuditEntry], *, as_json: bool = False) -> None:
    if as_json:
        print_json([e.to_dict() for e in entries])
        return
    if not entries:
        console.print("[dim]No audit entries[/dim]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    for column in ("id", "run_id", "kind", "record", "decision", "reason", "batch"):
        table.add_column(column)
    for e in entries:
        table.add_row(str(e.id), e.run_id, e.kind, e.record_ref, e.decision, e.reason, e.batch_id or "")
    console.print(table)
