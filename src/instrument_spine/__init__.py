"""
instrument-spine: canonical instrument identity and migration engine.

Assigns every financial instrument one algorithmically derived canonical
ID (``psw_id``), validates it against ISO reference rules, deduplicates
conflicting source records deterministically, and commits through a
quality-gated batch pipeline that halts or rolls back on a breach.

Examples:
    >>> from instrument_spine import CanonicalStore, MigrationService, SourceRegistry
    >>> store = CanonicalStore("sqlite:///data/instrument_spine.db")
    >>> store.create_all()
    >>> service = MigrationService(store, SourceRegistry([source]))
    >>> service.run_migration(["*"]).state
    <RunState.COMPLETED: 'COMPLETED'>
"""

__version__ = "0.1.0"

from instrument_spine.errors import InstrumentSpineError  # noqa: E402
from instrument_spine.identity import (  # noqa: E402
    CandidateRecord,
    deduplicate,
    generate,
    validate,
    validate_record,
)
from instrument_spine.migration import (  # noqa: E402
    MigrationService,
    QualityGateConfig,
    RunState,
    RunStatus,
)
from instrument_spine.settings import InstrumentSpineSettings, get_settings  # noqa: E402
from instrument_spine.sources import FileSource, InMemorySource, SourceRegistry  # noqa: E402
from instrument_spine.store import CanonicalStore, InstrumentView  # noqa: E402

__all__ = [
    "__version__",
    "CandidateRecord",
    "CanonicalStore",
    "FileSource",
    "InMemorySource",
    "InstrumentSpineError",
    "InstrumentSpineSettings",
    "InstrumentView",
    "MigrationService",
    "QualityGateConfig",
    "RunState",
    "RunStatus",
    "SourceRegistry",
    "deduplicate",
    "generate",
    "get_settings",
    "validate",
    "validate_record",
]
