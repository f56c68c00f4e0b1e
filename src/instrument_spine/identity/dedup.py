"""
Deterministic deduplication of candidate records sharing an ISIN.

Winner rule:
    1. most recent ``updated_at``
    2. on equal timestamps, lexicographically smallest ``source_id``
    3. on a remaining exact tie, smallest ``(ticker, country_code,
       exchange_code)`` so the ordering is total

The resolution is referentially transparent: the same candidate set yields
the same winner and the same demoted ordering whatever the input order.
Demoted records become Alias / ProviderMapping entries of the winner; each
one produces a ``DuplicateConflict`` decision the caller writes to the
audit log.

Examples:
    >>> outcome = deduplicate(records)
    >>> outcome.winners          # one per isin, sorted by isin
    >>> outcome.conflicts        # one DuplicateConflict per demoted record
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from instrument_spine.identity.models import CandidateRecord


def _rank_key(record: CandidateRecord) -> tuple:
    # Sorting ascending by this key puts the winner first.
    return (
        -record.updated_at.timestamp(),
        record.source_id,
        record.ticker,
        record.country_code,
        record.exchange_code,
        record.provider_symbols,
    )


@dataclass(frozen=True)
class DuplicateConflict:
    """Informational decision: ``demoted`` lost to ``winner``."""

    winner: CandidateRecord
    demoted: CandidateRecord

    @property
    def reason(self) -> str:
        return f"duplicate_of:{self.winner.isin}"


@dataclass(frozen=True)
class DedupGroup:
    """All candidates of one ISIN after resolution."""

    isin: str
    winner: CandidateRecord
    demoted: tuple[CandidateRecord, ...] = ()

    @property
    def conflicts(self) -> list[DuplicateConflict]:
        return [DuplicateConflict(self.winner, d) for d in self.demoted]


@dataclass
class DedupOutcome:
    groups: list[DedupGroup] = field(default_factory=list)

    @property
    def winners(self) -> list[CandidateRecord]:
        return [g.winner for g in self.groups]

    @property
    def conflicts(self) -> list[DuplicateConflict]:
        return [c for g in self.groups for c in g.conflicts]

    @property
    def demoted_count(self) -> int:
        return sum(len(g.demoted) for g in self.groups)


def resolve_group(records: Sequence[CandidateRecord]) -> tuple[CandidateRecord, tuple[CandidateRecord, ...]]:
    """Pick the winner of a non-empty group of records sharing one ISIN."""
    if not records:
        raise ValueError("resolve_group() needs at least one record")
    isins = {r.isin for r in records}
    if len(isins) != 1:
        raise ValueError(f"resolve_group() got mixed ISINs: {sorted(isins)}")
    ranked = sorted(records, key=_rank_key)
    return ranked[0], tuple(ranked[1:])


def deduplicate(records: Iterable[CandidateRecord]) -> DedupOutcome:
    """Group by ISIN and resolve each group; groups come back sorted by ISIN."""
    by_isin: dict[str, list[CandidateRecord]] = defaultdict(list)
    for record in records:
        by_isin[record.isin].append(record)

    outcome = DedupOutcome()
    for isin in sorted(by_isin):
        winner, demoted = resolve_group(by_isin[isin])
        outcome.groups.append(DedupGroup(isin=isin, winner=winner, demoted=demoted))
    return outcome
