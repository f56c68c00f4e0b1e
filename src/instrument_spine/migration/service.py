"""
Control surface for migration runs.

``MigrationService`` is what callers (the CLI, an API, a scheduler) use to
start, observe and cancel runs. It keeps in-flight runs in memory and
falls back to the persisted ``migration_runs`` row for runs started by
other processes or before a restart.

Examples:
    >>> service = MigrationService(store, registry)
    >>> run_id = service.start_migration(["vendor_*"])
    >>> service.wait(run_id, timeout=60).state
    <RunState.COMPLETED: 'COMPLETED'>

Tags:
    instrument-spine, control-surface, background-runs, cancellation
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from typing import Any

from instrument_spine.errors import RunNotFound
from instrument_spine.logging import get_logger
from instrument_spine.migration.gate import QualityGateConfig
from instrument_spine.migration.models import MigrationRun, RunCounters, RunState, RunStatus
from instrument_spine.migration.orchestrator import MigrationOrchestrator
from instrument_spine.settings import DedupScope, InstrumentSpineSettings, get_settings
from instrument_spine.sources.protocol import SourceRegistry
from instrument_spine.store.canonical import CanonicalStore

logger = get_logger(__name__)


def _as_gate_config(value: QualityGateConfig | Mapping[str, Any] | None, settings: InstrumentSpineSettings) -> QualityGateConfig:
    if value is None:
        return QualityGateConfig.from_settings(settings)
    if isinstance(value, QualityGateConfig):
        return value
    merged = QualityGateConfig.from_settings(settings).to_dict()
    merged.update(value)
    return QualityGateConfig.from_dict(merged)


class MigrationService:
    """Start, observe and cancel migration runs."""

    def __init__(
        self,
        store: CanonicalStore,
        registry: SourceRegistry,
        settings: InstrumentSpineSettings | None = None,
        *,
        orchestrator: MigrationOrchestrator | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.settings = settings or get_settings()
        self.orchestrator = orchestrator or MigrationOrchestrator(store, registry, self.settings)
        self._runs: dict[str, MigrationRun] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def _new_run(
        self,
        source_selector: Sequence[str],
        quality_gate_config: QualityGateConfig | Mapping[str, Any] | None,
        batch_size: int | None,
        dedup_scope: DedupScope | str | None,
    ) -> MigrationRun:
        # Resolve the selector up front so a bad selector fails the call, not the run.
        self.registry.select(source_selector)
        run = MigrationRun.create(
            list(source_selector),
            self.settings,
            gate_config=_as_gate_config(quality_gate_config, self.settings),
            batch_size=batch_size,
            dedup_scope=DedupScope(dedup_scope) if dedup_scope else None,
        )
        self.orchestrator.prepare(run)
        with self._lock:
            self._runs[run.run_id] = run
        return run

    def start_migration(
        self,
        source_selector: Sequence[str],
        quality_gate_config: QualityGateConfig | Mapping[str, Any] | None = None,
        *,
        batch_size: int | None = None,
        dedup_scope: DedupScope | str | None = None,
    ) -> str:
        """Register a run and execute it on a background thread.

        Raises:
            SourceNotFound: if the selector matches no registered source
            InvalidConfigError: if the gate thresholds are out of range
        """
        run = self._new_run(source_selector, quality_gate_config, batch_size, dedup_scope)
        thread = threading.Thread(
            target=self._run_in_background,
            args=(run,),
            name=f"migration-{run.run_id}",
            daemon=True,
        )
        with self._lock:
            self._threads[run.run_id] = thread
        thread.start()
        logger.info("migration_started", run_id=run.run_id, source_selector=list(source_selector))
        return run.run_id

    def run_migration(
        self,
        source_selector: Sequence[str],
        quality_gate_config: QualityGateConfig | Mapping[str, Any] | None = None,
        *,
        batch_size: int | None = None,
        dedup_scope: DedupScope | str | None = None,
    ) -> RunStatus:
        """Synchronous variant of ``start_migration``."""
        run = self._new_run(source_selector, quality_gate_config, batch_size, dedup_scope)
        return self.orchestrator.run(run)

    def get_run_status(self, run_id: str) -> RunStatus:
        """State and counters of a run.

        Raises:
            RunNotFound: if neither this service nor the store knows the run
        """
        with self._lock:
            run = self._runs.get(run_id)
        if run is not None:
            return run.status()

        record = self.store.view.get_run(run_id)
        if record is None:
            raise RunNotFound(f"Unknown migration run: {run_id}").with_context(run_id=run_id)
        return RunStatus(
            run_id=record.run_id,
            state=RunState(record.state),
            counters=RunCounters.from_dict(record.counters),
            halt_reason=record.halt_reason,
            source_selector=tuple(record.source_selector),
            started_at=record.started_at,
            finished_at=record.finished_at,
        )

    def cancel_run(self, run_id: str) -> RunStatus:
        """Request cancellation; honoured at the next checkpoint.

        An in-flight batch transaction always finishes first. Cancelling a
        terminal run is a no-op.

        Raises:
            RunNotFound: if the run is not executing in this service
        """
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            self.get_run_status(run_id)
            raise RunNotFound(
                f"Run {run_id} is not executing in this process"
            ).with_context(run_id=run_id)
        if not run.status().is_terminal:
            run.cancel()
            logger.info("cancel_requested", run_id=run_id)
        return run.status()

    def wait(self, run_id: str, timeout: float | None = None) -> RunStatus:
        """Block until a background run finishes (or ``timeout`` expires)."""
        with self._lock:
            thread = self._threads.get(run_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_run_status(run_id)

    def list_runs(self) -> list[RunStatus]:
        """Runs known to this service, most recent first."""
        with self._lock:
            runs = list(self._runs.values())
        return sorted((r.status() for r in runs), key=lambda s: s.started_at, reverse=True)

    def _run_in_background(self, run: MigrationRun) -> None:
        try:
            self.orchestrator.run(run)
        except Exception:
            logger.exception("migration_thread_failed", run_id=run.run_id)
