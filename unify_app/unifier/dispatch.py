"""
Fire-and-forget chaining of unification chunks.

The current chunk enqueues the next one and returns; it never waits on it.
Enqueueing is retried with exponential backoff, and once retries are exhausted
the run is paused with its checkpoint intact so an operator can resume it.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from flask import Flask, current_app

from unify_app.models import SyncRunStatus
from unify_app.unifier.metrics import record_dispatch

from .celery_app import get_celery_app
from .pipeline.ledger import SyncRunService

RUN_CHUNK_TASK = "unifier.pipeline.run_chunk"


class ContinuationDispatchError(RuntimeError):
    """Raised when the next chunk could not be enqueued after all retries."""


def dispatch_chunk(
    run_id: int,
    chunk_number: int,
    *,
    app: Flask | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str | None:
    """Enqueue ``chunk_number`` of ``run_id``; returns the Celery task id."""
    app = app or current_app._get_current_object()
    max_retries = max(0, int(app.config.get("UNIFIER_CONTINUATION_MAX_RETRIES", 3)))
    backoff = max(0.0, float(app.config.get("UNIFIER_CONTINUATION_BACKOFF_SECONDS", 1.0)))

    celery_app = get_celery_app(app)
    if celery_app is None:
        record_dispatch("failed")
        raise ContinuationDispatchError("Unifier worker is not configured.")

    kwargs: dict[str, Any] = {"run_id": run_id, "chunk_number": chunk_number}
    last_error: Exception | None = None
    for attempt in range(max_retries + 1):
        try:
            task = celery_app.tasks.get(RUN_CHUNK_TASK)
            if task is not None:
                result = task.apply_async(kwargs=kwargs)
            else:
                result = celery_app.send_task(RUN_CHUNK_TASK, kwargs=kwargs)
        except Exception as exc:
            last_error = exc
            if attempt == max_retries:
                break
            record_dispatch("retry")
            delay = backoff * (2**attempt)
            app.logger.warning(
                "Unifier chunk dispatch failed; retrying",
                extra={
                    "unifier_run_id": run_id,
                    "unifier_chunk": chunk_number,
                    "unifier_attempt": attempt + 1,
                    "unifier_retry_in": delay,
                    "unifier_error": str(exc),
                },
            )
            if delay:
                sleep(delay)
            continue

        record_dispatch("queued")
        app.logger.info(
            "Unifier chunk queued",
            extra={"unifier_run_id": run_id, "unifier_chunk": chunk_number, "unifier_task_id": result.id},
        )
        return result.id

    record_dispatch("failed")
    raise ContinuationDispatchError(
        f"Could not enqueue chunk {chunk_number} of run {run_id} after {max_retries + 1} attempts: {last_error}"
    ) from last_error


def dispatch_or_pause(
    run_id: int,
    chunk_number: int,
    *,
    app: Flask | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str | None:
    """Dispatch the next chunk; on exhaustion pause the run and return ``None``."""
    try:
        return dispatch_chunk(run_id, chunk_number, app=app, sleep=sleep)
    except ContinuationDispatchError as exc:
        ledger = SyncRunService()
        run = ledger.get_run(run_id)
        if not run.status.is_terminal and run.status != SyncRunStatus.PAUSED:
            ledger.pause(run, f"Continuation dispatch failed: {exc}")
        current_app.logger.error(
            "Unifier run paused after dispatch failure",
            extra={"unifier_run_id": run_id, "unifier_chunk": chunk_number, "unifier_error": str(exc)},
        )
        return None


__all__ = ["ContinuationDispatchError", "RUN_CHUNK_TASK", "dispatch_chunk", "dispatch_or_pause"]
