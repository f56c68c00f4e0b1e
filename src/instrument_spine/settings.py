"""
Centralized settings for instrument-spine.

Manifesto:
    One validated, cached settings object. Quality gate thresholds, batch
    sizing, retry budgets and storage URLs are all explicit configuration,
    never ambient policy buried in the orchestrator.

All fields can be set via ``INSTRUMENT_SPINE_*`` environment variables
(e.g. ``INSTRUMENT_SPINE_BATCH_SIZE=1000``) or a ``.env`` file.

Tags:
    instrument-spine, configuration, settings, pydantic, caching, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DedupScope(str, Enum):
    """Which candidate population the deduplicator considers."""

    RUN = "run"            # the full candidate set of one run
    UNIVERSE = "universe"  # run candidates plus the active canonical records


class InstrumentSpineSettings(BaseSettings):
    """instrument-spine configuration.

    Fields
    ──────
    database_url          : Writer connection URL (Orchestrator commit path)
    reader_database_url   : Optional distinct URL/credentials for the view layer
    batch_size            : Records per atomic commit batch
    validation_workers    : Thread pool size for VALIDATING
    min_accept_rate       : Quality gate accept-rate floor (1.0 = zero tolerance)
    min_throughput_rps    : Quality gate commit-throughput floor
    storage_max_retries   : Retries per batch on StorageUnavailable
    """

    model_config = SettingsConfigDict(
        env_prefix="INSTRUMENT_SPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Database ─────────────────────────────────────────────────
    database_url: str = Field(default="sqlite:///data/instrument_spine.db")
    reader_database_url: str | None = Field(
        default=None,
        description="Read-only credentials for the view layer (defaults to database_url)",
    )
    database_echo: bool = Field(default=False)

    # ── Batching / concurrency ───────────────────────────────────
    batch_size: int = Field(default=500, ge=1)
    validation_workers: int = Field(default=4, ge=1)
    validation_queue_size: int = Field(default=256, ge=1)
    dedup_scope: DedupScope = Field(default=DedupScope.RUN)

    # ── Quality gate ─────────────────────────────────────────────
    min_accept_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    max_constraint_violations: int = Field(default=0, ge=0)
    min_throughput_rps: float = Field(default=1.0, ge=0.0)

    # ── Retry ────────────────────────────────────────────────────
    storage_max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=0.5, ge=0.0)
    retry_max_delay: float = Field(default=10.0, ge=0.0)

    # ── Commit lock ──────────────────────────────────────────────
    lock_ttl_seconds: int = Field(default=600, ge=1)
    lock_timeout_seconds: float = Field(default=30.0, ge=0.0)

    # ── Reference data ───────────────────────────────────────────
    extra_mics: list[str] = Field(default_factory=list)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @field_validator("extra_mics")
    @classmethod
    def _upper_mics(cls, v: list[str]) -> list[str]:
        return [m.strip().upper() for m in v if m.strip()]

    @property
    def reader_url(self) -> str:
        return self.reader_database_url or self.database_url


@lru_cache(maxsize=1)
def get_settings() -> InstrumentSpineSettings:
    """Return the process-wide cached settings."""
    return InstrumentSpineSettings()


def clear_settings_cache() -> None:
    """Drop the cached settings (tests, reconfiguration)."""
    get_settings.cache_clear()
