"""
Quality gate for migration runs.

The gate turns "zero tolerance" from a slogan into three explicit,
configurable checks evaluated against the run's live counters:

    accept_rate            accepted / total candidates >= min_accept_rate
    constraint_violations  store-reported violations   <= max_constraint_violations
    throughput             records / commit seconds    >= min_throughput_rps

Manifesto:
    - **Declarative checks:** each threshold is a named ``QualityCheck``
    - **Explicit thresholds:** ``QualityGateConfig`` validates its own ranges
    - **Gate-ready:** ``has_failures()`` / ``failures()`` after ``evaluate()``
    - **Fatal on breach:** ``enforce()`` raises, the orchestrator never
      continues past a failed gate

Architecture:
    ::

        gate = QualityGate(QualityGateConfig.from_settings(settings))

        before COMMITTING          after each batch's writes, before its COMMIT
        ┌──────────────────┐       ┌──────────────────────────────────────┐
        │ gate.enforce(ctx)│       │ gate.enforce(ctx with commit timing) │
        └────────┬─────────┘       └──────────────────┬───────────────────┘
                 │ QualityGateError                   │ ThroughputBreach /
                 ▼                                    ▼ QualityGateError
              HALTED                          HALTED or ROLLED_BACK

Tags:
    quality-gate, thresholds, zero-tolerance, instrument-spine

Doc-Types:
    - API Reference
    - Data Quality Guide
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from instrument_spine.errors import InvalidConfigError, QualityGateError, ThroughputBreach
from instrument_spine.settings import InstrumentSpineSettings


class QualityStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


@dataclass(frozen=True)
class QualityResult:
    status: QualityStatus
    message: str
    actual_value: Any = None
    expected_value: Any = None


@dataclass(frozen=True)
class GateContext:
    """Counters the gate is evaluated against.

    ``records_processed`` and ``commit_seconds`` only matter once the run
    is committing; before that the throughput check is not measured.
    """

    total_candidates: int
    accepted: int
    constraint_violations: int = 0
    records_processed: int = 0
    commit_seconds: float = 0.0


@dataclass(frozen=True)
class QualityCheck:
    name: str
    check_fn: Callable[[GateContext], QualityResult]


@dataclass(frozen=True)
class QualityGateConfig:
    """Gate thresholds.

    Raises:
        InvalidConfigError: on construction, if a threshold is out of range.
    """

    min_accept_rate: float = 1.0
    max_constraint_violations: int = 0
    min_throughput_rps: float = 1.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_accept_rate <= 1.0:
            raise InvalidConfigError(
                f"min_accept_rate must be within [0, 1], got {self.min_accept_rate}"
            )
        if self.max_constraint_violations < 0:
            raise InvalidConfigError(
                f"max_constraint_violations must be >= 0, got {self.max_constraint_violations}"
            )
        if self.min_throughput_rps < 0:
            raise InvalidConfigError(
                f"min_throughput_rps must be >= 0, got {self.min_throughput_rps}"
            )

    @classmethod
    def from_settings(cls, settings: InstrumentSpineSettings) -> QualityGateConfig:
        return cls(
            min_accept_rate=settings.min_accept_rate,
            max_constraint_violations=settings.max_constraint_violations,
            min_throughput_rps=settings.min_throughput_rps,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> QualityGateConfig:
        known = {k: data[k] for k in ("min_accept_rate", "max_constraint_violations", "min_throughput_rps") if k in data}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise InvalidConfigError(f"Unknown quality gate settings: {unknown}")
        return cls(**known)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class QualityGate:
    """Evaluate the configured checks and remember the last results.

    Examples:
        >>> gate = QualityGate(QualityGateConfig())
        >>> gate.evaluate(GateContext(total_candidates=10, accepted=9))
        >>> gate.failures()
        ['accept_rate']
    """

    def __init__(self, config: QualityGateConfig) -> None:
        self.config = config
        self.checks: list[QualityCheck] = [
            QualityCheck("accept_rate", self._check_accept_rate),
            QualityCheck("constraint_violations", self._check_constraint_violations),
            QualityCheck("throughput", self._check_throughput),
        ]
        self._results: dict[str, QualityResult] = {}

    def evaluate(self, context: GateContext) -> dict[str, QualityResult]:
        self._results = {check.name: check.check_fn(context) for check in self.checks}
        return dict(self._results)

    def has_failures(self) -> bool:
        return any(r.status == QualityStatus.FAIL for r in self._results.values())

    def failures(self) -> list[str]:
        return [name for name, r in self._results.items() if r.status == QualityStatus.FAIL]

    def results(self) -> dict[str, QualityResult]:
        return dict(self._results)

    def enforce(self, context: GateContext) -> None:
        """Evaluate and raise on any failure.

        Raises:
            ThroughputBreach: if throughput is the only failing check
            QualityGateError: for any other failure, listing every failed check
        """
        self.evaluate(context)
        failed = self.failures()
        if not failed:
            return
        detail = "; ".join(f"{name}: {self._results[name].message}" for name in failed)
        if failed == ["throughput"]:
            raise ThroughputBreach(detail).with_context(
                throughput_rps=self._results["throughput"].actual_value,
                min_throughput_rps=self.config.min_throughput_rps,
            )
        raise QualityGateError(f"Quality gate breached: {detail}", failures=failed)

    # --- checks ---

    def _check_accept_rate(self, ctx: GateContext) -> QualityResult:
        rate = ctx.accepted / ctx.total_candidates if ctx.total_candidates else 1.0
        expected = self.config.min_accept_rate
        if rate >= expected:
            return QualityResult(QualityStatus.PASS, f"accept rate {rate:.4f}", rate, expected)
        rejected = ctx.total_candidates - ctx.accepted
        return QualityResult(
            QualityStatus.FAIL,
            f"accept rate {rate:.4f} below {expected:.4f} ({rejected} rejected)",
            rate,
            expected,
        )

    def _check_constraint_violations(self, ctx: GateContext) -> QualityResult:
        limit = self.config.max_constraint_violations
        if ctx.constraint_violations <= limit:
            return QualityResult(
                QualityStatus.PASS, f"{ctx.constraint_violations} constraint violations", ctx.constraint_violations, limit
            )
        return QualityResult(
            QualityStatus.FAIL,
            f"{ctx.constraint_violations} constraint violations exceed {limit}",
            ctx.constraint_violations,
            limit,
        )

    def _check_throughput(self, ctx: GateContext) -> QualityResult:
        floor = self.config.min_throughput_rps
        if floor <= 0 or ctx.records_processed == 0 or ctx.commit_seconds <= 0:
            return QualityResult(QualityStatus.PASS, "throughput not measured", None, floor)
        rps = ctx.records_processed / ctx.commit_seconds
        if rps >= floor:
            return QualityResult(QualityStatus.PASS, f"{rps:.2f} records/s", rps, floor)
        return QualityResult(QualityStatus.FAIL, f"{rps:.2f} records/s below {floor:.2f}", rps, floor)
