"""
Migration orchestrator: drives one run through the state machine.

Manifesto:
    A migration run either commits every accepted record or leaves the
    canonical store exactly as it found it. There is no partial success:
    every outcome is a terminal state, a halt reason, itemized counters and
    one summary audit entry.

Architecture:
    ::

        ANALYZING    read each selected source (retried), parse rows,
                     count rows per source, baseline duplicate rate
        DEDUPING     deduplicate() over the whole candidate set
                     (+ active canonical incumbents in universe scope);
                     one dedup audit entry per demoted record
        VALIDATING   validate + generate on a thread pool; results flow
                     through a bounded queue into this thread; one
                     validation audit entry per candidate; gate enforced
        COMMITTING   exclusive lock; isin-ordered batches, one transaction
                     each; gate re-checked before each batch commits
              │
              ├── ok ─────────────────────────────────────────→ COMPLETED
              ├── breach / cancel, nothing committed ─────────→ HALTED
              ├── breach / cancel after commits → ROLLING_BACK → ROLLED_BACK
              ├── storage retries exhausted → revert prefix ──→ HALTED
              └── lock lost → reclaim row → revert prefix ────→ ROLLED_BACK

Terminal mapping:
    ======================  ===================  ==========================
    cause                   before any commit    after one or more commits
    ======================  ===================  ==========================
    accept-rate breach      HALTED               (gate runs before commit)
    ConstraintViolation     HALTED               ROLLED_BACK
    ThroughputBreach        HALTED               ROLLED_BACK
    cancellation            HALTED               ROLLED_BACK
    StorageUnavailable      HALTED               HALTED (prefix reverted)
    LockUnavailable         HALTED               n/a
    LockLost                HALTED               ROLLED_BACK
    ======================  ===================  ==========================

Tags:
    migration, orchestrator, state-machine, quality-gate, rollback,
    thread-pool, instrument-spine

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

import queue
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from instrument_spine.audit import (
    BATCH_COMMITTED,
    BATCH_FAILED,
    BATCH_REVERTED,
    KIND_VALIDATION,
    REJECTED,
    AuditDraft,
    AuditLog,
    validation_draft,
)
from instrument_spine.errors import (
    ConstraintViolation,
    FormatViolation,
    InstrumentSpineError,
    LockLost,
    LockUnavailable,
    QualityGateError,
    RecordParseError,
    SourceError,
    StorageUnavailable,
    ThroughputBreach,
)
from instrument_spine.identity.dedup import DedupGroup, DedupOutcome, deduplicate
from instrument_spine.identity.generator import generate
from instrument_spine.identity.models import CandidateRecord
from instrument_spine.identity.validator import ValidationResult, Violation, validate_record
from instrument_spine.logging import LogContext, get_logger
from instrument_spine.migration.gate import GateContext, QualityGate
from instrument_spine.migration.models import (
    MigrationRun,
    RunCounters,
    RunState,
    RunStatus,
)
from instrument_spine.migration.retry import ExponentialBackoff, RetryContext
from instrument_spine.settings import DedupScope, InstrumentSpineSettings, get_settings
from instrument_spine.sources.protocol import SourceRegistry, SourceStore
from instrument_spine.store.canonical import CanonicalStore
from instrument_spine.store.writer import BatchJournal, CanonicalWriter, CommitPlan
from instrument_spine.timestamps import batch_ref, utc_now

logger = get_logger(__name__)

INCUMBENT_SOURCE = "canonical"
MALFORMED_RULE = "record_malformed"
_AUDIT_CHUNK = 500


class _Cancelled(Exception):
    """Internal signal: the run was cancelled at a checkpoint."""


class _RunEnded(Exception):
    """Internal signal: the commit phase decided the terminal state."""

    def __init__(self, state: RunState, reason: str, error: Exception | None = None) -> None:
        super().__init__(reason)
        self.state = state
        self.reason = reason
        self.error = error


def _halt_reason(error: Exception) -> str:
    if isinstance(error, _Cancelled):
        return "cancelled"
    if isinstance(error, ThroughputBreach):
        return "quality_gate:throughput"
    if isinstance(error, QualityGateError):
        return "quality_gate:" + ",".join(error.failures)
    if isinstance(error, ConstraintViolation):
        return "constraint_violation"
    if isinstance(error, LockLost):
        return "lock_lost"
    if isinstance(error, LockUnavailable):
        return "lock_unavailable"
    if isinstance(error, StorageUnavailable):
        return "storage_unavailable"
    if isinstance(error, SourceError):
        return "source_error"
    return f"internal_error:{type(error).__name__}"


class MigrationOrchestrator:
    """Runs migration runs against one canonical store.

    Args:
        store: Canonical store (writer path used only here)
        registry: Source stores available to source selectors
        settings: Batch, worker, retry and lock settings
        clock: Monotonic clock for commit throughput
        sleep: Sleep function for retry backoff
    """

    def __init__(
        self,
        store: CanonicalStore,
        registry: SourceRegistry,
        settings: InstrumentSpineSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.registry = registry
        self.settings = settings or get_settings()
        self.clock = clock
        self.sleep = sleep

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def prepare(self, run: MigrationRun) -> None:
        """Persist the run as PENDING so its status is visible immediately."""
        if run.registered:
            return
        writer = self.store.writer(run.run_id)
        self._retrying(
            run,
            writer.register_run,
            list(run.source_selector),
            run.gate_config.to_dict(),
            state=RunState.PENDING.value,
            started_at=run.started_at,
        )
        run.registered = True
        run.publish()

    def run(self, run: MigrationRun) -> RunStatus:
        """Drive ``run`` to a terminal state and return its final status.

        Fatal conditions never escape as exceptions; they become the
        terminal state. Unexpected errors are re-raised after the run has
        been marked HALTED.
        """
        writer = self.store.writer(run.run_id)
        audit = AuditLog(self.store.writer_engine, run.run_id)
        gate = QualityGate(run.gate_config)

        with LogContext(run_id=run.run_id):
            self.prepare(run)
            logger.info(
                "run_started",
                source_selector=list(run.source_selector),
                batch_size=run.batch_size,
                dedup_scope=run.dedup_scope.value,
                gate=run.gate_config.to_dict(),
            )
            unexpected: Exception | None = None
            try:
                self._checkpoint(run)
                self._transition(run, writer, RunState.ANALYZING)
                candidates, malformed = self._analyze(run)

                self._checkpoint(run)
                self._transition(run, writer, RunState.DEDUPING)
                outcome, incumbents = self._deduplicate(run, audit, candidates)

                self._checkpoint(run)
                self._transition(run, writer, RunState.VALIDATING)
                plans = self._validate(run, audit, gate, outcome, incumbents, malformed)

                self._checkpoint(run)
                self._commit(run, writer, audit, gate, plans)
            except _RunEnded as ended:
                self._finish(run, writer, audit, gate, ended.state, ended.reason, ended.error)
            except (
                _Cancelled,
                QualityGateError,
                ThroughputBreach,
                ConstraintViolation,
                StorageUnavailable,
                LockUnavailable,
                SourceError,
            ) as e:
                self._finish(run, writer, audit, gate, RunState.HALTED, _halt_reason(e), e)
            except Exception as e:
                logger.exception("run_failed_unexpectedly")
                unexpected = e
                self._finish(run, writer, audit, gate, RunState.HALTED, _halt_reason(e), e)
            else:
                self._finish(run, writer, audit, gate, RunState.COMPLETED, None, None)

            if unexpected is not None:
                raise unexpected
            return run.status()

    # =========================================================================
    # ANALYZING
    # =========================================================================

    def _analyze(self, run: MigrationRun) -> tuple[list[CandidateRecord], list[tuple[str, RecordParseError]]]:
        sources = self.registry.select(run.source_selector)
        counters = run.counters
        candidates: list[CandidateRecord] = []
        malformed: list[tuple[str, RecordParseError]] = []

        for source in sources:
            rows = self._retrying(run, self._read_source, source)
            counters.records_per_source[source.name] = len(rows)
            counters.total_rows += len(rows)
            for index, row in enumerate(rows, 1):
                try:
                    candidates.append(CandidateRecord.from_row(row, default_source=source.name))
                except RecordParseError as e:
                    isin = str(row.get("isin") or "").strip() or f"row{index}"
                    malformed.append((f"{source.name}:{isin}", e))
            logger.info("source_read", source=source.name, rows=len(rows))

        counters.malformed_rows = len(malformed)
        if candidates:
            distinct = len({c.isin for c in candidates})
            counters.baseline_duplicate_rate = round(1 - distinct / len(candidates), 6)
        run.publish()
        logger.info(
            "analysis_completed",
            total_rows=counters.total_rows,
            malformed_rows=counters.malformed_rows,
            baseline_duplicate_rate=counters.baseline_duplicate_rate,
        )
        return candidates, malformed

    @staticmethod
    def _read_source(source: SourceStore) -> list[dict[str, Any]]:
        return list(source.read())

    # =========================================================================
    # DEDUPING
    # =========================================================================

    def _deduplicate(
        self,
        run: MigrationRun,
        audit: AuditLog,
        candidates: list[CandidateRecord],
    ) -> tuple[DedupOutcome, dict[str, CandidateRecord]]:
        incumbents: dict[str, CandidateRecord] = {}
        population = list(candidates)
        if run.dedup_scope == DedupScope.UNIVERSE and candidates:
            existing = self._retrying(
                run,
                self.store.view.list_instruments,
                active_only=True,
                isins={c.isin for c in candidates},
            )
            for record in existing:
                incumbents[record.isin] = CandidateRecord(
                    isin=record.isin,
                    ticker=record.ticker,
                    country_code=record.country_code,
                    exchange_code=record.exchange_code,
                    source_id=INCUMBENT_SOURCE,
                    updated_at=record.source_updated_at,
                    provider_symbols=tuple(sorted(record.vendor_symbols.items())),
                )
            population.extend(incumbents.values())

        outcome = deduplicate(population)
        conflicts = outcome.conflicts
        if conflicts:
            self._retrying(run, audit.record_dedup, conflicts)
        run.counters.duplicates_demoted = len(conflicts)
        run.publish()
        logger.info(
            "dedup_completed",
            groups=len(outcome.groups),
            demoted=len(conflicts),
            incumbents=len(incumbents),
        )
        return outcome, incumbents

    # =========================================================================
    # VALIDATING
    # =========================================================================

    def _validate(
        self,
        run: MigrationRun,
        audit: AuditLog,
        gate: QualityGate,
        outcome: DedupOutcome,
        incumbents: dict[str, CandidateRecord],
        malformed: Sequence[tuple[str, RecordParseError]],
    ) -> list[CommitPlan]:
        counters = run.counters
        groups = outcome.groups
        results: queue.Queue = queue.Queue(maxsize=self.settings.validation_queue_size)
        extra_mics = tuple(self.settings.extra_mics)

        def check(group: DedupGroup) -> None:
            try:
                result = validate_record(group.winner, extra_mics=extra_mics)
                psw_id = None
                if result.valid:
                    try:
                        psw_id = generate(
                            group.winner.isin,
                            group.winner.ticker,
                            group.winner.country_code,
                            group.winner.exchange_code,
                        )
                    except FormatViolation as e:
                        result = ValidationResult(tuple(Violation(rule, e.message) for rule in e.violations))
                results.put((group, result, psw_id, None))
            except Exception as e:  # handed to the accumulator, re-raised there
                results.put((group, None, None, e))

        # Single accumulator: only this thread touches counters and plans.
        decided: list[tuple[DedupGroup, ValidationResult, str | None]] = []
        failure: Exception | None = None
        with ThreadPoolExecutor(
            max_workers=self.settings.validation_workers,
            thread_name_prefix="instrument-validate",
        ) as pool:
            futures = [pool.submit(check, group) for group in groups]
            # Every future either puts exactly one result or is cancelled.
            pending = len(futures)
            while pending:
                group, result, psw_id, error = results.get()
                pending -= 1
                if failure is not None:
                    continue
                if error is not None:
                    failure = error
                    pending -= sum(future.cancel() for future in futures)
                    continue
                decided.append((group, result, psw_id))
        if failure is not None:
            raise failure

        decided.sort(key=lambda item: item[0].isin)
        drafts: list[AuditDraft] = []
        plans: list[CommitPlan] = []

        for ref, error in malformed:
            counters.rejected += 1
            counters.count_violation(MALFORMED_RULE)
            drafts.append(
                AuditDraft(
                    kind=KIND_VALIDATION,
                    record_ref=ref,
                    decision=REJECTED,
                    reason=f"violations:{MALFORMED_RULE}",
                    details={"error": error.message},
                )
            )

        for group, result, psw_id in decided:
            drafts.append(validation_draft(group.winner, result, psw_id))
            if result.valid and psw_id is not None:
                counters.accepted += 1
                incumbent = incumbents.get(group.isin)
                demoted = tuple(r for r in group.demoted if r is not incumbent)
                plans.append(CommitPlan(psw_id=psw_id, winner=group.winner, demoted=demoted))
            else:
                counters.rejected += 1
                for rule in result.rules:
                    counters.count_violation(rule)

        counters.total_candidates = len(decided) + len(malformed)
        for start in range(0, len(drafts), _AUDIT_CHUNK):
            self._retrying(run, audit.record_many, drafts[start : start + _AUDIT_CHUNK])
        run.publish()
        logger.info(
            "validation_completed",
            total_candidates=counters.total_candidates,
            accepted=counters.accepted,
            rejected=counters.rejected,
            violations_by_rule=counters.violations_by_rule,
        )

        try:
            gate.enforce(self._gate_context(counters))
        except QualityGateError as e:
            logger.warning("quality_gate_breached", phase="validation", failures=list(e.failures))
            raise
        return plans

    # =========================================================================
    # COMMITTING
    # =========================================================================

    def _commit(
        self,
        run: MigrationRun,
        writer: CanonicalWriter,
        audit: AuditLog,
        gate: QualityGate,
        plans: list[CommitPlan],
    ) -> None:
        counters = run.counters
        batches = [plans[i : i + run.batch_size] for i in range(0, len(plans), run.batch_size)]
        counters.batches_total = len(batches)
        journals: list[BatchJournal] = []

        with writer.exclusive(self.settings.lock_timeout_seconds):
            self._transition(run, writer, RunState.COMMITTING)
            commit_started = self.clock()
            processed = 0
            try:
                for batch_no, batch in enumerate(batches, 1):
                    self._checkpoint(run)
                    with LogContext(batch_no=batch_no):
                        before_commit = self._throughput_guard(
                            run, gate, commit_started, processed + len(batch)
                        )
                        try:
                            journal = self._retrying(
                                run, writer.commit_batch, batch_no, batch, before_commit=before_commit
                            )
                        except ConstraintViolation as e:
                            counters.constraint_violations += 1
                            counters.batches_failed += 1
                            logger.warning("batch_constraint_violation", error=e.message)
                            self._retrying(
                                run,
                                audit.record_migration,
                                batch_ref(run.run_id, batch_no),
                                BATCH_FAILED,
                                "constraint_violation",
                                batch_id=batch_ref(run.run_id, batch_no),
                                details={"error": e.message},
                            )
                            gate.evaluate(self._gate_context(counters))
                            if gate.has_failures():
                                raise
                            processed += len(batch)
                            run.publish()
                            continue

                        journals.append(journal)
                        processed += len(batch)
                        counters.batches_committed += 1
                        counters.records_committed += journal.records_written
                        counters.records_unchanged += journal.unchanged
                        self._retrying(
                            run,
                            audit.record_migration,
                            batch_ref(run.run_id, batch_no),
                            BATCH_COMMITTED,
                            batch_id=batch_ref(run.run_id, batch_no),
                            details=journal.to_dict(),
                        )
                        run.publish()
                        logger.info(
                            "batch_committed",
                            records=journal.records_written,
                            unchanged=journal.unchanged,
                            batches_committed=counters.batches_committed,
                        )
            except (_Cancelled, ConstraintViolation, ThroughputBreach, QualityGateError) as e:
                reason = _halt_reason(e)
                logger.warning("quality_gate_breached", phase="commit", reason=reason)
                if not journals:
                    raise _RunEnded(RunState.HALTED, reason, e) from e
                self._rollback(run, writer, audit, journals, reason)
                raise _RunEnded(RunState.ROLLED_BACK, reason, e) from e
            except StorageUnavailable as e:
                if journals:
                    self._rollback(run, writer, audit, journals, "storage_unavailable")
                raise _RunEnded(RunState.HALTED, "storage_unavailable", e) from e
            except LockLost as e:
                if not journals:
                    raise _RunEnded(RunState.HALTED, "lock_lost", e) from e
                try:
                    writer.reclaim_lock(self.settings.lock_timeout_seconds)
                except LockUnavailable as reclaim_error:
                    logger.error("rollback_failed", error=reclaim_error.message, batches_reverted=0)
                    raise _RunEnded(RunState.HALTED, "rollback_failed", e) from e
                self._rollback(run, writer, audit, journals, "lock_lost")
                raise _RunEnded(RunState.ROLLED_BACK, "lock_lost", e) from e
            except Exception:
                if journals:
                    self._rollback(run, writer, audit, journals, "internal_error")
                raise

    def _throughput_guard(
        self,
        run: MigrationRun,
        gate: QualityGate,
        commit_started: float,
        processed: int,
    ) -> Callable[[BatchJournal], None]:
        def guard(journal: BatchJournal) -> None:
            elapsed = self.clock() - commit_started
            if elapsed > 0:
                run.counters.throughput_rps = round(processed / elapsed, 3)
            gate.enforce(self._gate_context(run.counters, processed=processed, seconds=elapsed))

        return guard

    def _rollback(
        self,
        run: MigrationRun,
        writer: CanonicalWriter,
        audit: AuditLog,
        journals: list[BatchJournal],
        reason: str,
    ) -> None:
        """Revert committed batches in reverse submission order."""
        run.state = RunState.ROLLING_BACK
        try:
            self._retrying(run, writer.begin_rollback)
            run.publish()
            logger.warning("run_rolling_back", batches=len(journals), reason=reason)
            for journal in reversed(journals):
                self._retrying(run, writer.revert_batch, journal)
                run.counters.batches_reverted += 1
                self._retrying(
                    run,
                    audit.record_migration,
                    batch_ref(run.run_id, journal.batch_no),
                    BATCH_REVERTED,
                    reason,
                    batch_id=batch_ref(run.run_id, journal.batch_no),
                    details=journal.to_dict(),
                )
                run.publish()
        except (StorageUnavailable, LockUnavailable) as e:
            logger.error("rollback_failed", error=e.message, batches_reverted=run.counters.batches_reverted)
            raise _RunEnded(RunState.HALTED, "rollback_failed", e) from e

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _checkpoint(self, run: MigrationRun) -> None:
        if run.cancelled:
            raise _Cancelled()

    def _transition(self, run: MigrationRun, writer: CanonicalWriter, state: RunState) -> None:
        previous = run.state
        run.state = state
        self._retrying(run, writer.set_state, state.value, counters=run.counters.to_dict())
        run.publish()
        logger.info("state_changed", previous=previous.value, state=state.value)

    def _finish(
        self,
        run: MigrationRun,
        writer: CanonicalWriter,
        audit: AuditLog,
        gate: QualityGate,
        state: RunState,
        reason: str | None,
        error: Exception | None,
    ) -> None:
        run.state = state
        run.halt_reason = reason
        run.finished_at = utc_now()
        counters = run.counters.to_dict()
        details: dict[str, Any] = {
            "counters": counters,
            "gate": {name: r.status.value for name, r in gate.results().items()},
        }
        if isinstance(error, InstrumentSpineError):
            details["error"] = error.to_dict()
        elif error is not None and not isinstance(error, _Cancelled):
            details["error"] = {"error_type": type(error).__name__, "message": str(error)}

        try:
            self._retrying(run, writer.set_state, state.value, counters=counters, halt_reason=reason, finished=True)
            self._retrying(run, audit.record_migration, run.run_id, state.value, reason or "", details=details)
        except StorageUnavailable as e:
            logger.error("terminal_bookkeeping_failed", state=state.value, error=e.message)
        run.publish()

        log = logger.info if state == RunState.COMPLETED else logger.warning
        log(
            f"run_{state.value.lower()}",
            halt_reason=reason,
            accepted=run.counters.accepted,
            rejected=run.counters.rejected,
            batches_committed=run.counters.batches_committed,
            batches_reverted=run.counters.batches_reverted,
        )

    @staticmethod
    def _gate_context(counters: RunCounters, *, processed: int = 0, seconds: float = 0.0) -> GateContext:
        return GateContext(
            total_candidates=counters.total_candidates,
            accepted=counters.accepted,
            constraint_violations=counters.constraint_violations,
            records_processed=processed,
            commit_seconds=seconds,
        )

    def _retrying(self, run: MigrationRun, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Call ``func`` with bounded backoff on retryable storage errors."""

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            run.counters.storage_retries += 1
            logger.warning(
                "storage_retry",
                operation=getattr(func, "__name__", repr(func)),
                attempt=attempt,
                delay=round(delay, 3),
                error=str(error),
            )

        strategy = ExponentialBackoff(
            max_retries=self.settings.storage_max_retries,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
        )
        return RetryContext(strategy, on_retry=on_retry, sleep=self.sleep).run(func, *args, **kwargs)
