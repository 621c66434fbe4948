"""
Entry points shared by the HTTP trigger, the continuation endpoint and the CLI.

``trigger_unification`` checks for a live run, counts pending work, takes
the single-writer lock by starting a ledger run and enqueues chunk 1. Everything after that happens in
the chunk tasks.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from flask import current_app
from sqlalchemy.orm import Session

from unify_app.models import SyncRun, SyncRunStatus, db
from unify_app.unifier.metrics import record_pending
from unify_app.utils.unifier import get_unifier_sources

from ..dispatch import dispatch_or_pause
from .ledger import RunAlreadyActive, SyncRunService
from .normalize import UnknownSourceError
from .pending import PendingCounts, count_pending

STATUS_STARTED = "started"
STATUS_NO_WORK = "no_work"
STATUS_ALREADY_RUNNING = "already_running"
STATUS_CANCELLED = "cancelled"
STATUS_QUEUED = "queued"
STATUS_DUPLICATE = "duplicate"
STATUS_INACTIVE = "inactive"
STATUS_PAUSED = "paused"


@dataclass(frozen=True)
class TriggerResult:
    status: str
    run_id: int | None = None
    pending: Mapping[str, int] = field(default_factory=dict)
    estimated_seconds: int | None = None
    cancelled: Sequence[int] = ()
    task_id: str | None = None


def resolve_sources(requested: Sequence[str] | None = None) -> tuple[str, ...]:
    """Validate ``requested`` against the configured sources; default to all of them."""
    configured = get_unifier_sources()
    if not requested:
        return configured
    unknown = [source for source in requested if source not in configured]
    if unknown:
        raise UnknownSourceError(f"Unknown or disabled unification sources: {', '.join(unknown)}.")
    return tuple(dict.fromkeys(requested))


def estimate_seconds(pending: PendingCounts) -> int:
    rate = float(current_app.config.get("UNIFIER_ESTIMATED_RECORDS_PER_SECOND", 25.0)) or 1.0
    return int(math.ceil(pending.total / rate))


def pending_work(sources: Sequence[str] | None = None, *, session: Session | None = None) -> PendingCounts:
    pending = count_pending(session or db.session, resolve_sources(sources))
    record_pending(pending.as_dict())
    return pending


def trigger_unification(
    *,
    sources: Sequence[str] | None = None,
    batch_size: int | None = None,
    force_cancel: bool = False,
    session: Session | None = None,
    dispatch: bool = True,
) -> TriggerResult:
    """
    Start a unification run.

    With ``force_cancel`` every non-terminal run is cancelled instead and
    nothing new is started. ``dispatch=False`` leaves the run waiting for an
    inline runner (the CLI ``--inline`` mode).
    """
    session = session or db.session
    ledger = SyncRunService(session)

    if force_cancel:
        cancelled = ledger.force_cancel_all()
        return TriggerResult(status=STATUS_CANCELLED, cancelled=cancelled)

    selected = resolve_sources(sources)
    ledger.cancel_stale_runs()
    active = ledger.get_active_run()
    if active is not None:
        return TriggerResult(status=STATUS_ALREADY_RUNNING, run_id=active.id)

    pending = pending_work(selected, session=session)
    if pending.is_empty:
        current_app.logger.info("Unification trigger found no pending work", extra={"unifier_sources": list(selected)})
        return TriggerResult(status=STATUS_NO_WORK, pending=pending.as_dict())

    size = int(batch_size or current_app.config.get("UNIFIER_BATCH_SIZE", 50))
    try:
        run = ledger.start_run(sources=selected, batch_size=max(1, size), pending=pending.as_dict())
    except RunAlreadyActive as exc:
        return TriggerResult(status=STATUS_ALREADY_RUNNING, run_id=exc.run_id, pending=pending.as_dict())

    run_id = run.id
    session.commit()
    task_id = dispatch_or_pause(run_id, 1) if dispatch else None
    return TriggerResult(
        status=STATUS_STARTED,
        run_id=run_id,
        pending=pending.as_dict(),
        estimated_seconds=estimate_seconds(pending),
        task_id=task_id,
    )


def continue_run(run_id: int, chunk_number: int | None = None, *, session: Session | None = None) -> TriggerResult:
    """
    Enqueue a chunk for an existing run.

    The ledger is authoritative: a chunk number at or behind the ledger's is a
    duplicate delivery and nothing is queued, as is any chunk for a run that
    no longer holds the lock.
    """
    ledger = SyncRunService(session or db.session)
    run = ledger.get_run(run_id)
    if run.lock_key is None or run.status == SyncRunStatus.PAUSED:
        return TriggerResult(status=STATUS_INACTIVE, run_id=run.id)
    next_chunk = run.chunk_number + 1 if chunk_number is None else int(chunk_number)
    if next_chunk <= run.chunk_number:
        return TriggerResult(status=STATUS_DUPLICATE, run_id=run.id)
    task_id = dispatch_or_pause(run.id, next_chunk)
    return TriggerResult(status=STATUS_QUEUED if task_id else STATUS_PAUSED, run_id=run.id, task_id=task_id)


def resume_run(run_id: int, *, retry_errors: bool = False, session: Session | None = None, dispatch: bool = True) -> SyncRun:
    """Resume a paused run and enqueue its next chunk."""
    ledger = SyncRunService(session or db.session)
    run = ledger.resume(run_id, retry_errors=retry_errors)
    if dispatch:
        dispatch_or_pause(run.id, run.chunk_number + 1)
    return run


__all__ = [
    "STATUS_ALREADY_RUNNING",
    "STATUS_CANCELLED",
    "STATUS_DUPLICATE",
    "STATUS_INACTIVE",
    "STATUS_NO_WORK",
    "STATUS_PAUSED",
    "STATUS_QUEUED",
    "STATUS_STARTED",
    "TriggerResult",
    "continue_run",
    "estimate_seconds",
    "pending_work",
    "resolve_sources",
    "resume_run",
    "trigger_unification",
]
