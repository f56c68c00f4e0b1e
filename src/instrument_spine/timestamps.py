"""
Timestamp and run-id utilities (stdlib-only).

Features:
    - **utc_now():** Timezone-aware UTC datetime
    - **to_iso8601() / from_iso8601():** Serialization round-trip; ``Z``
      suffixes are accepted and naive values are read as UTC
    - **new_run_id() / batch_ref():** Sortable, human-readable run and
      batch identifiers

STDLIB ONLY - NO PYDANTIC.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to ISO 8601 string."""
    if dt is None:
        return None
    return dt.isoformat()


def from_iso8601(s: str | None) -> datetime | None:
    """Parse an ISO 8601 string (``Z`` suffix allowed) to an aware UTC datetime."""
    if s is None:
        return None
    text = s.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def new_run_id(prefix: str = "run") -> str:
    """
    Generate a migration run id.

    Format: {prefix}_{timestamp}_{short_uuid}
    Example: run_20260202T150022_a1b2c3d4
    """
    ts = utc_now().strftime("%Y%m%dT%H%M%S")
    short_id = uuid.uuid4().hex[:8]
    return f"{prefix}_{ts}_{short_id}"


def batch_ref(run_id: str, batch_no: int) -> str:
    """Batch identifier used in audit entries: ``{run_id}:b0001``."""
    return f"{run_id}:b{batch_no:04d}"
