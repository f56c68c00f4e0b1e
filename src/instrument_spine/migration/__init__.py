"""Quality-gated migration runs: gate, retry, orchestrator, control surface."""

from instrument_spine.migration.gate import (
    GateContext,
    QualityCheck,
    QualityGate,
    QualityGateConfig,
    QualityResult,
    QualityStatus,
)
from instrument_spine.migration.models import MigrationRun, RunCounters, RunState, RunStatus
from instrument_spine.migration.orchestrator import MigrationOrchestrator
from instrument_spine.migration.retry import ExponentialBackoff, RetryContext
from instrument_spine.migration.service import MigrationService

__all__ = [
    "ExponentialBackoff",
    "GateContext",
    "MigrationOrchestrator",
    "MigrationRun",
    "MigrationService",
    "QualityCheck",
    "QualityGate",
    "QualityGateConfig",
    "QualityResult",
    "QualityStatus",
    "RetryContext",
    "RunCounters",
    "RunState",
    "RunStatus",
]
