"""
Unifier Celery tasks.

``unifier.pipeline.run_chunk`` runs one budgeted chunk and, when the run is
not finished, enqueues the next chunk before returning.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from unify_app.models.base import db

from .dispatch import dispatch_or_pause
from .pipeline.ledger import SyncRunService
from .pipeline.scheduler import ChunkScheduler


@shared_task(name="unifier.healthcheck", bind=True)
def unifier_healthcheck(self) -> dict[str, Any]:
    """Heartbeat task used by worker health checks."""
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


@shared_task(name="unifier.pipeline.run_chunk", bind=True)
def run_chunk(self, *, run_id: int, chunk_number: int) -> dict[str, Any]:
    try:
        outcome = ChunkScheduler().run_chunk(run_id, chunk_number)
    except Exception as exc:
        db.session.rollback()
        SyncRunService().fail(run_id, f"{type(exc).__name__}: {exc}")
        current_app.logger.exception(
            "Unifier chunk failed",
            extra={"unifier_run_id": run_id, "unifier_chunk": chunk_number, "unifier_error": str(exc)},
        )
        raise

    next_task_id = None
    if outcome.needs_continuation:
        next_task_id = dispatch_or_pause(run_id, chunk_number + 1)

    current_app.logger.info(
        "Unifier chunk finished",
        extra={
            "unifier_run_id": run_id,
            "unifier_chunk": chunk_number,
            "unifier_status": outcome.status,
            "unifier_iterations": outcome.iterations,
            "unifier_processed": outcome.processed,
            "unifier_errors": outcome.errors,
        },
    )
    return {
        "run_id": run_id,
        "chunk_number": chunk_number,
        "status": outcome.status,
        "iterations": outcome.iterations,
        "processed": outcome.processed,
        "errors": outcome.errors,
        "message": outcome.message,
        "next_task_id": next_task_id,
    }


__all__ = ["run_chunk", "unifier_healthcheck"]
