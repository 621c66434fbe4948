"""
Per-source batch fetchers.

Each fetcher pulls the next ordered slice of unprocessed raw rows past a
monotonic id cursor and writes the processed marker (or csv status) back once
the engine is done with a row. Raw rows are never deleted.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy.orm import Session

from unify_app.models import CsvImportRaw, CsvProcessingStatus, GhlContactRaw, ManychatContactRaw

from .normalize import SOURCE_CSV, SOURCE_GHL, SOURCE_MANYCHAT, UnknownSourceError
from .pending import pending_query

MAX_ERROR_MESSAGE_LENGTH = 500


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SourceFetcher:
    """Base fetcher for sources that only carry a ``processed_at`` marker."""

    source: str = ""
    model: Any = None

    def fetch(self, session: Session, *, after_id: int = 0, limit: int = 50) -> Sequence[Any]:
        """Return up to ``limit`` unprocessed rows with ``id > after_id`` in id order."""
        return (
            pending_query(session, self.source)
            .filter(self.model.id > int(after_id or 0))
            .order_by(self.model.id.asc())
            .limit(max(1, int(limit)))
            .all()
        )

    def mark_processed(self, row: Any, *, client_id: int | None = None) -> None:
        row.processed_at = _now()

    def mark_skipped(self, row: Any, *, reason: str | None = None) -> None:
        row.processed_at = _now()

    def mark_conflict(self, row: Any, *, reason: str | None = None) -> None:
        row.processed_at = _now()

    def mark_error(self, row: Any, *, message: str) -> None:
        """Errored rows stay pending so a resumed run can retry them."""

    def requeue_errors(self, session: Session) -> int:
        return 0


class GhlFetcher(SourceFetcher):
    source = SOURCE_GHL
    model = GhlContactRaw


class ManychatFetcher(SourceFetcher):
    source = SOURCE_MANYCHAT
    model = ManychatContactRaw


class CsvFetcher(SourceFetcher):
    source = SOURCE_CSV
    model = CsvImportRaw

    def mark_processed(self, row: CsvImportRaw, *, client_id: int | None = None) -> None:
        row.processing_status = CsvProcessingStatus.MERGED
        row.merged_client_id = client_id
        row.error_message = None
        row.processed_at = _now()

    def mark_skipped(self, row: CsvImportRaw, *, reason: str | None = None) -> None:
        row.processing_status = CsvProcessingStatus.SKIPPED
        row.error_message = _truncate(reason)
        row.processed_at = _now()

    def mark_conflict(self, row: CsvImportRaw, *, reason: str | None = None) -> None:
        self.mark_skipped(row, reason=reason or "identity conflict; queued for review")

    def mark_error(self, row: CsvImportRaw, *, message: str) -> None:
        row.processing_status = CsvProcessingStatus.ERROR
        row.error_message = _truncate(message)
        row.processed_at = _now()

    def requeue_errors(self, session: Session) -> int:
        """Put errored rows back in the pending set; returns how many moved."""
        return (
            session.query(CsvImportRaw)
            .filter(CsvImportRaw.processing_status == CsvProcessingStatus.ERROR)
            .update(
                {
                    CsvImportRaw.processing_status: CsvProcessingStatus.PENDING,
                    CsvImportRaw.processed_at: None,
                    CsvImportRaw.error_message: None,
                },
                synchronize_session=False,
            )
        )


def _truncate(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:MAX_ERROR_MESSAGE_LENGTH]


_FETCHERS: dict[str, SourceFetcher] = {
    SOURCE_GHL: GhlFetcher(),
    SOURCE_MANYCHAT: ManychatFetcher(),
    SOURCE_CSV: CsvFetcher(),
}


def get_fetcher(source: str) -> SourceFetcher:
    fetcher = _FETCHERS.get(source)
    if fetcher is None:
        raise UnknownSourceError(f"Unknown unification source '{source}'.")
    return fetcher


__all__ = [
    "CsvFetcher",
    "GhlFetcher",
    "ManychatFetcher",
    "SourceFetcher",
    "UnknownSourceError",
    "get_fetcher",
]
