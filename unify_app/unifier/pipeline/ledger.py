"""
Checkpoint ledger for unification runs.

Every run is one ``sync_runs`` row. The row carries the single-writer lock
(``lock_key``), the per-source cursor, cumulative counters and a heartbeat.
State changes go through ``SyncRunService`` so transitions are validated in
one place; the two transitions that race with other processes (stale
takeover and completion) are compare-and-swap updates.

    running -> continuing -> completing -> completed
    running/continuing -> paused -> continuing
    any non-terminal -> cancelled | failed
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError, NoResultFound
from sqlalchemy.orm import Session

from unify_app.models import SyncRun, SyncRunStatus, db
from unify_app.models.unifier import TERMINAL_RUN_STATUSES, UNIFY_ALL_SOURCE
from unify_app.unifier.metrics import record_run_transition

from .fetchers import get_fetcher
from .normalize import SUPPORTED_SOURCES
from .persistence import SourcePassResult

LOCK_KEY = UNIFY_ALL_SOURCE
DEFAULT_STALE_TIMEOUT_SECONDS = 300

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-started_at"

VALID_SORT_FIELDS = {
    "id": SyncRun.id,
    "status": SyncRun.status,
    "started_at": SyncRun.started_at,
    "completed_at": SyncRun.completed_at,
    "heartbeat_at": SyncRun.heartbeat_at,
}

ALLOWED_TRANSITIONS: dict[SyncRunStatus, frozenset[SyncRunStatus]] = {
    SyncRunStatus.RUNNING: frozenset(
        {
            SyncRunStatus.CONTINUING,
            SyncRunStatus.COMPLETING,
            SyncRunStatus.PAUSED,
            SyncRunStatus.CANCELLED,
            SyncRunStatus.FAILED,
        }
    ),
    SyncRunStatus.CONTINUING: frozenset(
        {
            SyncRunStatus.CONTINUING,
            SyncRunStatus.COMPLETING,
            SyncRunStatus.PAUSED,
            SyncRunStatus.CANCELLED,
            SyncRunStatus.FAILED,
        }
    ),
    SyncRunStatus.COMPLETING: frozenset({SyncRunStatus.COMPLETED, SyncRunStatus.CANCELLED, SyncRunStatus.FAILED}),
    SyncRunStatus.PAUSED: frozenset({SyncRunStatus.CONTINUING, SyncRunStatus.CANCELLED, SyncRunStatus.FAILED}),
    SyncRunStatus.COMPLETED: frozenset(),
    SyncRunStatus.CANCELLED: frozenset(),
    SyncRunStatus.FAILED: frozenset(),
}


class RunAlreadyActive(RuntimeError):
    """Raised when another run already holds the single-writer lock."""

    def __init__(self, run_id: int | None):
        self.run_id = run_id
        super().__init__(f"Unification run {run_id} is already active.")


class InvalidRunTransition(ValueError):
    """Raised when a run is asked to move to a state its current state does not allow."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _status_value(status: SyncRunStatus | str) -> str:
    return status.value if isinstance(status, SyncRunStatus) else str(status)


@dataclass(frozen=True)
class RunFilters:
    """Canonical set of filter options applied to sync run queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[SyncRunStatus, ...] = field(default_factory=tuple)

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> "RunFilters":
        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        resolved_sort = sort or DEFAULT_SORT
        if resolved_sort.lstrip("-") not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{resolved_sort.lstrip('-')}'.")

        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value not in (None, ""))
        return cls(page=resolved_page, page_size=resolved_size, sort=resolved_sort, statuses=resolved_statuses)


@dataclass(slots=True)
class RunSummary:
    """Summarized representation of a sync run."""

    id: int
    status: str
    sources: Sequence[str]
    batch_size: int
    chunk_number: int
    iterations: int
    started_at: datetime | None
    heartbeat_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float | None
    total_fetched: int
    total_inserted: int
    total_updated: int
    total_skipped: int
    total_conflicts: int
    total_errors: int
    total_processed: int
    counts: Mapping[str, Any]
    pending: Mapping[str, Any]
    cursor: Mapping[str, int]
    error_message: str | None
    is_active: bool


@dataclass(slots=True)
class RunListResult:
    items: list[RunSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


class SyncRunService:
    """Ledger operations over ``sync_runs``. Each state change commits."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        stale_timeout_seconds: int | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session: Session = session or db.session
        if stale_timeout_seconds is None:
            stale_timeout_seconds = (
                int(current_app.config.get("UNIFIER_STALE_TIMEOUT_SECONDS", DEFAULT_STALE_TIMEOUT_SECONDS))
                if has_app_context()
                else DEFAULT_STALE_TIMEOUT_SECONDS
            )
        self.stale_timeout_seconds = stale_timeout_seconds
        self._now = now

    # ---------------------------------------------------------------------
    # Lookups
    # ---------------------------------------------------------------------

    def get_run(self, run_id: int) -> SyncRun:
        run = self.session.get(SyncRun, run_id)
        if run is None:
            raise NoResultFound(f"Sync run {run_id} not found.")
        return run

    def get_active_run(self) -> SyncRun | None:
        return self.session.query(SyncRun).filter(SyncRun.lock_key == LOCK_KEY).one_or_none()

    def latest_run(self) -> SyncRun | None:
        return self.session.query(SyncRun).order_by(SyncRun.id.desc()).first()

    def is_cancelled(self, run_id: int) -> bool:
        status = self.session.query(SyncRun.status).filter(SyncRun.id == run_id).scalar()
        return status in (SyncRunStatus.CANCELLED, SyncRunStatus.FAILED, None)

    # ---------------------------------------------------------------------
    # Start / stale takeover
    # ---------------------------------------------------------------------

    def cancel_stale_runs(self) -> list[int]:
        """Cancel lock holders whose heartbeat is older than the stale timeout."""
        cutoff = self._now() - timedelta(seconds=self.stale_timeout_seconds)
        candidates = (
            self.session.query(SyncRun)
            .filter(SyncRun.lock_key.isnot(None), SyncRun.heartbeat_at < cutoff)
            .all()
        )
        cancelled: list[int] = []
        for run in candidates:
            metadata = dict(run.metadata_json or {})
            metadata["cancel_reason"] = "stale"
            swapped = (
                self.session.query(SyncRun)
                .filter(
                    SyncRun.id == run.id,
                    SyncRun.lock_key.isnot(None),
                    SyncRun.heartbeat_at == run.heartbeat_at,
                )
                .update(
                    {
                        SyncRun.status: SyncRunStatus.CANCELLED,
                        SyncRun.lock_key: None,
                        SyncRun.completed_at: self._now(),
                        SyncRun.error_message: f"Heartbeat older than {self.stale_timeout_seconds}s; cancelled as stale.",
                        SyncRun.metadata_json: metadata,
                    },
                    synchronize_session=False,
                )
            )
            if swapped:
                cancelled.append(run.id)
                record_run_transition(SyncRunStatus.CANCELLED.value)
        self.session.commit()
        for run in candidates:
            self.session.expire(run)
        if cancelled:
            _log("Cancelled stale unification runs", unifier_run_ids=cancelled)
        return cancelled

    def _inherited_cursor(self) -> tuple[SyncRun | None, dict[str, int]]:
        previous = self.latest_run()
        if previous is None:
            return None, {}
        stale = (previous.metadata_json or {}).get("cancel_reason") == "stale"
        if previous.status == SyncRunStatus.PAUSED or (previous.status == SyncRunStatus.CANCELLED and stale):
            return previous, previous.cursor
        return None, {}

    def start_run(
        self,
        *,
        sources: Sequence[str],
        batch_size: int,
        pending: Mapping[str, int] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> SyncRun:
        """
        Acquire the single-writer lock by inserting a new run.

        Stale lock holders are cancelled first. A paused or stale-cancelled
        predecessor hands its cursor over; a paused one is then cancelled as
        superseded. Raises ``RunAlreadyActive`` if a live run holds the lock.
        """
        self.cancel_stale_runs()
        predecessor, cursor = self._inherited_cursor()

        now = self._now()
        run_metadata = dict(metadata or {})
        if predecessor is not None:
            run_metadata["inherited_from_run_id"] = predecessor.id
        run = SyncRun(
            source=UNIFY_ALL_SOURCE,
            status=SyncRunStatus.RUNNING,
            lock_key=LOCK_KEY,
            sources=list(sources),
            batch_size=int(batch_size),
            chunk_number=0,
            iterations=0,
            started_at=now,
            heartbeat_at=now,
            counts_json={source: _empty_counts() for source in sources},
            checkpoint={"cursor": {source: int(cursor.get(source, 0)) for source in sources}, "zero_progress_streak": 0},
            pending_json=dict(pending or {}),
            metadata_json=run_metadata,
        )
        self.session.add(run)
        try:
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            active = self.get_active_run()
            raise RunAlreadyActive(active.id if active else None) from None

        if predecessor is not None and predecessor.status == SyncRunStatus.PAUSED:
            self._transition(predecessor, SyncRunStatus.CANCELLED)
            predecessor.error_message = f"Superseded by run {run.id}."
            predecessor.completed_at = now
        self.session.commit()
        record_run_transition(SyncRunStatus.RUNNING.value)
        _log("Unification run started", unifier_run_id=run.id, unifier_sources=list(sources))
        return run

    # ---------------------------------------------------------------------
    # Chunk bookkeeping
    # ---------------------------------------------------------------------

    def begin_chunk(self, run_id: int, chunk_number: int) -> SyncRun | None:
        """
        Claim ``chunk_number`` for the run.

        Returns ``None`` when the run is no longer active or the chunk number is
        not ahead of the ledger (a duplicate delivery).
        """
        run = self.get_run(run_id)
        if run.status.is_terminal or run.status == SyncRunStatus.PAUSED or run.lock_key is None:
            _log("Ignoring chunk for inactive run", unifier_run_id=run.id, unifier_chunk=chunk_number)
            return None
        if chunk_number <= run.chunk_number:
            _log(
                "Ignoring duplicate chunk delivery",
                unifier_run_id=run.id,
                unifier_chunk=chunk_number,
                unifier_ledger_chunk=run.chunk_number,
            )
            return None
        run.chunk_number = chunk_number
        checkpoint = dict(run.checkpoint or {})
        checkpoint["chunk_number"] = chunk_number
        run.checkpoint = checkpoint
        run.heartbeat_at = self._now()
        self.session.commit()
        return run

    def record_progress(
        self,
        run: SyncRun,
        results: Iterable[SourcePassResult],
        *,
        zero_progress_streak: int,
    ) -> SyncRun:
        """Checkpoint one loop iteration: counters, cursor and heartbeat."""
        counts = {source: dict(values) for source, values in (run.counts_json or {}).items()}
        cursor = dict(run.cursor)
        for result in results:
            source_counts = counts.setdefault(result.source, _empty_counts())
            for key, value in result.as_counts().items():
                source_counts[key] = int(source_counts.get(key, 0)) + value
            cursor[result.source] = max(int(cursor.get(result.source, 0)), result.cursor)
            run.total_fetched += result.fetched
            run.total_inserted += result.inserted
            run.total_updated += result.updated
            run.total_skipped += result.skipped
            run.total_conflicts += result.conflicts
            run.total_errors += result.errors
            if result.error_samples:
                run.error_message = result.error_samples[-1]

        now = self._now()
        run.counts_json = counts
        run.iterations += 1
        run.heartbeat_at = now
        run.checkpoint = {
            "cursor": cursor,
            "chunk_number": run.chunk_number,
            "zero_progress_streak": zero_progress_streak,
            "last_heartbeat": now.isoformat(),
        }
        self.session.commit()
        return run

    def rewind_cursors(self, run: SyncRun, sources: Iterable[str] | None = None) -> SyncRun:
        checkpoint = dict(run.checkpoint or {})
        cursor = dict(run.cursor)
        for source in sources or cursor.keys():
            cursor[source] = 0
        checkpoint["cursor"] = cursor
        checkpoint["zero_progress_streak"] = 0
        run.checkpoint = checkpoint
        run.heartbeat_at = self._now()
        self.session.commit()
        _log("Rewound unification cursors", unifier_run_id=run.id)
        return run

    def touch(self, run: SyncRun) -> None:
        run.heartbeat_at = self._now()
        self.session.commit()

    # ---------------------------------------------------------------------
    # Transitions
    # ---------------------------------------------------------------------

    def _transition(self, run: SyncRun, target: SyncRunStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[run.status]:
            raise InvalidRunTransition(
                f"Sync run {run.id} cannot move from {_status_value(run.status)} to {target.value}."
            )
        run.status = target
        if target.is_terminal or target == SyncRunStatus.PAUSED:
            run.lock_key = None
        if target.is_terminal:
            run.completed_at = self._now()
        record_run_transition(target.value)

    def mark_continuing(self, run: SyncRun) -> SyncRun:
        self._transition(run, SyncRunStatus.CONTINUING)
        run.heartbeat_at = self._now()
        self.session.commit()
        return run

    def complete(self, run: SyncRun) -> bool:
        """Finish the run; returns ``False`` if someone else already completed or cancelled it."""
        if run.status != SyncRunStatus.COMPLETING:
            self._transition(run, SyncRunStatus.COMPLETING)
            self.session.commit()
        now = self._now()
        swapped = (
            self.session.query(SyncRun)
            .filter(SyncRun.id == run.id, SyncRun.status == SyncRunStatus.COMPLETING)
            .update(
                {
                    SyncRun.status: SyncRunStatus.COMPLETED,
                    SyncRun.lock_key: None,
                    SyncRun.completed_at: now,
                    SyncRun.heartbeat_at: now,
                },
                synchronize_session=False,
            )
        )
        self.session.commit()
        self.session.expire(run)
        if swapped:
            record_run_transition(SyncRunStatus.COMPLETED.value)
            _log("Unification run completed", unifier_run_id=run.id, unifier_processed=run.total_processed)
        return bool(swapped)

    def pause(self, run: SyncRun, message: str) -> SyncRun:
        self._transition(run, SyncRunStatus.PAUSED)
        run.error_message = message
        run.heartbeat_at = self._now()
        self.session.commit()
        _log("Unification run paused", unifier_run_id=run.id, unifier_reason=message)
        return run

    def fail(self, run_id: int, message: str) -> SyncRun | None:
        run = self.session.get(SyncRun, run_id)
        if run is None or run.status.is_terminal:
            return run
        self._transition(run, SyncRunStatus.FAILED)
        run.error_message = message[:2000]
        self.session.commit()
        return run

    def cancel(self, run_id: int, *, reason: str = "Cancelled by operator.") -> SyncRun:
        run = self.session.get(SyncRun, run_id)
        if run is None or run.status.is_terminal:
            raise NoResultFound(f"No active sync run {run_id}.")
        self._transition(run, SyncRunStatus.CANCELLED)
        run.error_message = reason
        self.session.commit()
        _log("Unification run cancelled", unifier_run_id=run.id)
        return run

    def force_cancel_all(self, *, reason: str = "Force-cancelled by operator.") -> list[int]:
        runs = (
            self.session.query(SyncRun)
            .filter(SyncRun.status.notin_(tuple(TERMINAL_RUN_STATUSES)))
            .order_by(SyncRun.id.asc())
            .all()
        )
        for run in runs:
            self._transition(run, SyncRunStatus.CANCELLED)
            run.error_message = reason
        self.session.commit()
        ids = [run.id for run in runs]
        if ids:
            _log("Force-cancelled unification runs", unifier_run_ids=ids)
        return ids

    def resume(self, run_id: int, *, retry_errors: bool = False) -> SyncRun:
        """Re-acquire the lock for a paused run; optionally requeue errored rows."""
        run = self.get_run(run_id)
        if run.status != SyncRunStatus.PAUSED:
            raise InvalidRunTransition(f"Sync run {run_id} is {_status_value(run.status)}, not paused.")
        self.cancel_stale_runs()

        self._transition(run, SyncRunStatus.CONTINUING)
        run.lock_key = LOCK_KEY
        run.error_message = None
        run.heartbeat_at = self._now()
        try:
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            active = self.get_active_run()
            raise RunAlreadyActive(active.id if active else None) from None

        if retry_errors:
            sources = tuple(run.sources or SUPPORTED_SOURCES)
            requeued = sum(get_fetcher(source).requeue_errors(self.session) for source in sources)
            checkpoint = dict(run.checkpoint or {})
            checkpoint["cursor"] = {source: 0 for source in sources}
            run.checkpoint = checkpoint
            metadata = dict(run.metadata_json or {})
            metadata["requeued_errors"] = int(metadata.get("requeued_errors", 0)) + requeued
            run.metadata_json = metadata
        checkpoint = dict(run.checkpoint or {})
        checkpoint["zero_progress_streak"] = 0
        run.checkpoint = checkpoint
        self.session.commit()
        _log("Unification run resumed", unifier_run_id=run.id, unifier_retry_errors=retry_errors)
        return run

    # ---------------------------------------------------------------------
    # Dashboard queries
    # ---------------------------------------------------------------------

    def list_runs(self, filters: RunFilters) -> RunListResult:
        query = self.session.query(SyncRun)
        if filters.statuses:
            query = query.filter(SyncRun.status.in_(filters.statuses))

        total = query.count()
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        runs = (
            query.order_by(_resolve_sort_expression(filters.sort), SyncRun.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return RunListResult(
            items=[self.summarize(run) for run in runs],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def summarize(self, run: SyncRun) -> RunSummary:
        started_at = _as_aware(run.started_at)
        completed_at = _as_aware(run.completed_at)
        duration_seconds: float | None = None
        if started_at:
            duration_seconds = ((completed_at or self._now()) - started_at).total_seconds()

        return RunSummary(
            id=run.id,
            status=_status_value(run.status),
            sources=list(run.sources or ()),
            batch_size=run.batch_size,
            chunk_number=run.chunk_number,
            iterations=run.iterations,
            started_at=started_at,
            heartbeat_at=_as_aware(run.heartbeat_at),
            completed_at=completed_at,
            duration_seconds=duration_seconds,
            total_fetched=run.total_fetched,
            total_inserted=run.total_inserted,
            total_updated=run.total_updated,
            total_skipped=run.total_skipped,
            total_conflicts=run.total_conflicts,
            total_errors=run.total_errors,
            total_processed=run.total_processed,
            counts=dict(run.counts_json or {}),
            pending=dict(run.pending_json or {}),
            cursor=run.cursor,
            error_message=run.error_message,
            is_active=run.lock_key is not None,
        )


# -------------------------------------------------------------------------
# Helper functions
# -------------------------------------------------------------------------


def _empty_counts() -> dict[str, int]:
    return {
        "fetched": 0,
        "processed": 0,
        "merged": 0,
        "inserted": 0,
        "updated": 0,
        "skipped": 0,
        "conflicts": 0,
        "errors": 0,
    }


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | SyncRunStatus) -> SyncRunStatus:
    if isinstance(value, SyncRunStatus):
        return value
    try:
        return SyncRunStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _resolve_sort_expression(sort: str):
    expression = VALID_SORT_FIELDS[sort.lstrip("-")]
    return expression.desc() if sort.startswith("-") else expression.asc()


def _log(message: str, **extra: Any) -> None:
    if has_app_context():
        current_app.logger.info(message, extra=extra)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "InvalidRunTransition",
    "LOCK_KEY",
    "RunAlreadyActive",
    "RunFilters",
    "RunListResult",
    "RunSummary",
    "SyncRunService",
]
