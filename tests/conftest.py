"""
Shared pytest fixtures for instrument-spine tests.

This module provides:
- A file-backed SQLite canonical store per test (``tmp_path``)
- Fast settings (no retry delay, short lock timeout, no throughput floor)
- Orchestrator factory over in-memory sources (injectable clock)
- ``migrate`` fixture that runs one migration synchronously

Usage:
    from tests._support.instruments import AAPL, row

    def test_something(migrate, store):
        status = migrate({"vendor_a": [row(AAPL)]})
        assert status.state == RunState.COMPLETED
"""

from __future__ import annotations

from collections.abc import Callable, Generator, Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from instrument_spine.migration.gate import QualityGateConfig
from instrument_spine.migration.models import MigrationRun, RunStatus
from instrument_spine.migration.orchestrator import MigrationOrchestrator
from instrument_spine.settings import DedupScope, InstrumentSpineSettings
from instrument_spine.sources.memory import InMemorySource
from instrument_spine.sources.protocol import SourceRegistry
from instrument_spine.store.canonical import CanonicalStore

# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests: store-backed suites are integration, the rest unit."""
    for item in items:
        test_path = Path(str(item.fspath)).relative_to(Path(__file__).parent)
        parts = set(test_path.parts)
        if parts & {"store", "migration", "cli"} or test_path.name == "test_audit.py":
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> InstrumentSpineSettings:
    return InstrumentSpineSettings(
        database_url=f"sqlite:///{tmp_path / 'instrument_spine.db'}",
        min_throughput_rps=0.0,
        storage_max_retries=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        lock_timeout_seconds=0.2,
        validation_workers=2,
        validation_queue_size=4,
    )


@pytest.fixture
def store(settings: InstrumentSpineSettings) -> Generator[CanonicalStore, None, None]:
    """Initialised canonical store, disposed after the test."""
    store = CanonicalStore.from_settings(settings)
    store.create_all()
    yield store
    store.dispose()


@pytest.fixture
def other_process_store(
    store: CanonicalStore, settings: InstrumentSpineSettings
) -> Generator[CanonicalStore, None, None]:
    """A second store on the same database, standing in for another process."""
    other = CanonicalStore.from_settings(settings)
    yield other
    other.dispose()


@pytest.fixture
def registry() -> SourceRegistry:
    return SourceRegistry()


# =============================================================================
# Migration Fixtures
# =============================================================================


@pytest.fixture
def make_orchestrator(
    store: CanonicalStore, settings: InstrumentSpineSettings
) -> Callable[..., MigrationOrchestrator]:
    """Factory: orchestrator over in-memory sources with an injectable clock."""

    def factory(
        sources: Mapping[str, Sequence[Mapping[str, Any]]],
        *,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> MigrationOrchestrator:
        registry = SourceRegistry(InMemorySource(name, rows) for name, rows in sources.items())
        kwargs: dict[str, Any] = {"sleep": sleep or (lambda _s: None)}
        if clock is not None:
            kwargs["clock"] = clock
        return MigrationOrchestrator(store, registry, settings, **kwargs)

    return factory


@pytest.fixture
def migrate(
    make_orchestrator: Callable[..., MigrationOrchestrator],
    settings: InstrumentSpineSettings,
) -> Callable[..., RunStatus]:
    """Run one migration synchronously over ``{source_name: rows}``."""

    def run(
        sources: Mapping[str, Sequence[Mapping[str, Any]]],
        *,
        gate: QualityGateConfig | None = None,
        batch_size: int | None = None,
        dedup_scope: DedupScope | None = None,
        clock: Callable[[], float] | None = None,
        on_run: Callable[[MigrationRun], None] | None = None,
    ) -> RunStatus:
        orchestrator = make_orchestrator(sources, clock=clock)
        migration = MigrationRun.create(
            ["*"],
            settings,
            gate_config=gate,
            batch_size=batch_size,
            dedup_scope=dedup_scope,
        )
        if on_run is not None:
            on_run(migration)
        return orchestrator.run(migration)

    return run
