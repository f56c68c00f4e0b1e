"""
Migration run state, counters and status snapshots.

Lifecycle:
    ::

        PENDING → ANALYZING → DEDUPING → VALIDATING → COMMITTING ─┬→ COMPLETED
            │          │           │           │            │     │
            └──────────┴───────────┴───────────┴────────────┴─────┼→ HALTED
                                                            │     │
                                                            └→ ROLLING_BACK → ROLLED_BACK

    ``HALTED`` means nothing this run wrote remains committed (either
    nothing was committed or a storage failure forced the committed prefix
    to be reverted). ``ROLLED_BACK`` means a breach after one or more
    committed batches reverted them all.

Threading:
    A ``MigrationRun`` is mutated only by the orchestrating thread. Other
    threads read ``status()``, which returns the last published snapshot.

Tags:
    migration, state-machine, counters, instrument-spine
"""

from __future__ import annotations

import copy
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from instrument_spine.migration.gate import QualityGateConfig
from instrument_spine.settings import DedupScope, InstrumentSpineSettings
from instrument_spine.timestamps import new_run_id, utc_now


class RunState(str, Enum):
    PENDING = "PENDING"
    ANALYZING = "ANALYZING"
    DEDUPING = "DEDUPING"
    VALIDATING = "VALIDATING"
    COMMITTING = "COMMITTING"
    ROLLING_BACK = "ROLLING_BACK"
    COMPLETED = "COMPLETED"
    HALTED = "HALTED"
    ROLLED_BACK = "ROLLED_BACK"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.HALTED, RunState.ROLLED_BACK)


@dataclass
class RunCounters:
    """Itemized totals of one run; persisted as JSON on ``migration_runs``."""

    records_per_source: dict[str, int] = field(default_factory=dict)
    total_rows: int = 0
    malformed_rows: int = 0
    baseline_duplicate_rate: float = 0.0
    duplicates_demoted: int = 0
    total_candidates: int = 0
    accepted: int = 0
    rejected: int = 0
    violations_by_rule: dict[str, int] = field(default_factory=dict)
    batches_total: int = 0
    batches_committed: int = 0
    batches_failed: int = 0
    batches_reverted: int = 0
    records_committed: int = 0
    records_unchanged: int = 0
    constraint_violations: int = 0
    storage_retries: int = 0
    throughput_rps: float = 0.0

    def count_violation(self, rule: str) -> None:
        self.violations_by_rule[rule] = self.violations_by_rule.get(rule, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunCounters:
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class RunStatus:
    """Point-in-time view of a run: state plus counters."""

    run_id: str
    state: RunState
    counters: RunCounters
    halt_reason: str | None = None
    source_selector: tuple[str, ...] = ()
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "halt_reason": self.halt_reason,
            "source_selector": list(self.source_selector),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "counters": self.counters.to_dict(),
        }


@dataclass
class MigrationRun:
    """In-flight migration run.

    Attributes:
        run_id: Unique run identifier (``run_YYYYMMDDTHHMMSS_xxxxxxxx``)
        source_selector: Source names / glob patterns
        gate_config: Quality gate thresholds for this run
        batch_size: Records per commit batch
        dedup_scope: Candidate population for deduplication
    """

    run_id: str
    source_selector: tuple[str, ...]
    gate_config: QualityGateConfig
    batch_size: int
    dedup_scope: DedupScope = DedupScope.RUN
    state: RunState = RunState.PENDING
    counters: RunCounters = field(default_factory=RunCounters)
    halt_reason: str | None = None
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    registered: bool = False
    _cancel: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _snapshot: RunStatus | None = field(default=None, repr=False)

    @classmethod
    def create(
        cls,
        source_selector: list[str] | tuple[str, ...],
        settings: InstrumentSpineSettings,
        *,
        gate_config: QualityGateConfig | None = None,
        batch_size: int | None = None,
        dedup_scope: DedupScope | None = None,
        run_id: str | None = None,
    ) -> MigrationRun:
        run = cls(
            run_id=run_id or new_run_id(),
            source_selector=tuple(source_selector),
            gate_config=gate_config or QualityGateConfig.from_settings(settings),
            batch_size=batch_size or settings.batch_size,
            dedup_scope=dedup_scope or settings.dedup_scope,
        )
        run.publish()
        return run

    # --- cancellation ---

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # --- status ---

    def publish(self) -> None:
        """Publish a snapshot for readers on other threads."""
        snapshot = RunStatus(
            run_id=self.run_id,
            state=self.state,
            counters=copy.deepcopy(self.counters),
            halt_reason=self.halt_reason,
            source_selector=self.source_selector,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )
        with self._lock:
            self._snapshot = snapshot

    def status(self) -> RunStatus:
        with self._lock:
            snapshot = self._snapshot
        if snapshot is None:
            self.publish()
            return self.status()
        return snapshot
