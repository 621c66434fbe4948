"""Ground-truth pending-work counts per source."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from sqlalchemy.orm import Session

from unify_app.models import PENDING_CSV_STATUSES, CsvImportRaw, GhlContactRaw, ManychatContactRaw

from .normalize import SOURCE_CSV, SOURCE_GHL, SOURCE_MANYCHAT, SUPPORTED_SOURCES, UnknownSourceError


@dataclass(frozen=True)
class PendingCounts:
    """Unprocessed raw rows per source."""

    by_source: Mapping[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.by_source.values())

    @property
    def is_empty(self) -> bool:
        return self.total == 0

    def get(self, source: str) -> int:
        return int(self.by_source.get(source, 0))

    def as_dict(self) -> dict[str, int]:
        payload = {source: int(count) for source, count in self.by_source.items()}
        payload["total"] = self.total
        return payload


def pending_query(session: Session, source: str):
    """Return a query selecting the unprocessed rows of ``source``."""
    if source == SOURCE_GHL:
        return session.query(GhlContactRaw).filter(GhlContactRaw.processed_at.is_(None))
    if source == SOURCE_MANYCHAT:
        return session.query(ManychatContactRaw).filter(ManychatContactRaw.processed_at.is_(None))
    if source == SOURCE_CSV:
        return session.query(CsvImportRaw).filter(CsvImportRaw.processing_status.in_(PENDING_CSV_STATUSES))
    raise UnknownSourceError(f"Unknown unification source '{source}'.")


def count_pending(session: Session, sources: Iterable[str] | None = None) -> PendingCounts:
    counts: dict[str, int] = {}
    for source in tuple(sources or SUPPORTED_SOURCES):
        counts[source] = int(pending_query(session, source).count())
    return PendingCounts(by_source=counts)


__all__ = ["PendingCounts", "count_pending", "pending_query"]
