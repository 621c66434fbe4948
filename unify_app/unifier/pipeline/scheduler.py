"""
Chunk scheduler: one budgeted slice of a unification run.

A chunk loops over fetch-normalize-resolve-merge-persist passes until the wall
clock budget runs out (always at least one iteration), checkpointing the
ledger after every iteration. It never dispatches the next chunk itself; the
caller (Celery task or inline runner) does that when the returned
``ChunkOutcome`` asks for continuation.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Sequence

from flask import Flask, current_app
from sqlalchemy.orm import Session

from config.merge_policy import load_profile
from unify_app.models import SyncRun, db
from unify_app.unifier.metrics import record_chunk_duration, record_pending

from .ledger import SyncRunService
from .pending import PendingCounts, count_pending
from .persistence import MicroBatchWriter, PersistenceSettings, SourcePassResult

ZERO_PROGRESS_LIMIT = 2

OUTCOME_COMPLETED = "completed"
OUTCOME_CONTINUING = "continuing"
OUTCOME_PAUSED = "paused"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_SKIPPED = "skipped"


@dataclass(frozen=True)
class ChunkOutcome:
    run_id: int
    chunk_number: int
    status: str
    iterations: int = 0
    processed: int = 0
    errors: int = 0
    message: str | None = None

    @property
    def needs_continuation(self) -> bool:
        return self.status == OUTCOME_CONTINUING


class ChunkScheduler:
    def __init__(
        self,
        app: Flask | None = None,
        *,
        session: Session | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.app = app or current_app._get_current_object()
        self.session = session or db.session
        self._clock = clock
        self._sleep = sleep
        config = self.app.config
        self.budget_seconds = float(config.get("UNIFIER_CHUNK_BUDGET_SECONDS", 50.0))
        self.parallel = bool(config.get("UNIFIER_PARALLEL_SOURCES", True))
        self.settings = PersistenceSettings.from_config(config, profile=load_profile(config))
        self.ledger = SyncRunService(self.session)

    def run_chunk(self, run_id: int, chunk_number: int) -> ChunkOutcome:
        started = self._clock()
        try:
            return self._run_chunk(run_id, chunk_number, started)
        finally:
            record_chunk_duration(self._clock() - started)

    def _run_chunk(self, run_id: int, chunk_number: int, started: float) -> ChunkOutcome:
        run = self.ledger.begin_chunk(run_id, chunk_number)
        if run is None:
            return ChunkOutcome(run_id=run_id, chunk_number=chunk_number, status=OUTCOME_SKIPPED)

        deadline = started + self.budget_seconds
        streak = int((run.checkpoint or {}).get("zero_progress_streak", 0))
        iterations = processed = errors = 0

        def outcome(status: str, message: str | None = None) -> ChunkOutcome:
            return ChunkOutcome(
                run_id=run_id,
                chunk_number=chunk_number,
                status=status,
                iterations=iterations,
                processed=processed,
                errors=errors,
                message=message,
            )

        while iterations == 0 or self._clock() < deadline:
            if self.ledger.is_cancelled(run_id):
                return outcome(OUTCOME_CANCELLED, "Run was cancelled.")

            results = self._run_sources(run)
            iterations += 1
            processed += sum(result.processed for result in results)
            errors += sum(result.errors for result in results)
            streak = 0 if any(result.made_progress for result in results) else streak + 1
            self.ledger.record_progress(run, results, zero_progress_streak=streak)

            if streak < ZERO_PROGRESS_LIMIT:
                continue

            pending = self._ground_truth(run)
            if pending.is_empty:
                return self._complete(run, outcome)
            if run.total_errors:
                message = (
                    f"{pending.total} records still pending after {run.total_errors} errors; "
                    "resume with retry to reprocess them."
                )
                return self._pause(run, outcome, message)
            self.ledger.rewind_cursors(run)
            streak = 0

        pending = self._ground_truth(run)
        if pending.is_empty:
            return self._complete(run, outcome)
        if run.status.is_terminal:
            return outcome(OUTCOME_CANCELLED, "Run was cancelled.")
        self.ledger.mark_continuing(run)
        return outcome(OUTCOME_CONTINUING)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _complete(self, run: SyncRun, outcome: Callable[..., ChunkOutcome]) -> ChunkOutcome:
        if run.status.is_terminal:
            return outcome(OUTCOME_CANCELLED, "Run was cancelled.")
        if not self.ledger.complete(run):
            return outcome(OUTCOME_CANCELLED, "Run was finished by another worker.")
        return outcome(OUTCOME_COMPLETED)

    def _pause(self, run: SyncRun, outcome: Callable[..., ChunkOutcome], message: str) -> ChunkOutcome:
        if run.status.is_terminal:
            return outcome(OUTCOME_CANCELLED, "Run was cancelled.")
        self.ledger.pause(run, message)
        return outcome(OUTCOME_PAUSED, message)

    def _ground_truth(self, run: SyncRun) -> PendingCounts:
        pending = count_pending(self.session, run.sources or None)
        record_pending(pending.as_dict())
        return pending

    def _run_sources(self, run: SyncRun) -> list[SourcePassResult]:
        sources: Sequence[str] = tuple(run.sources or ())
        cursor = run.cursor
        run_id, batch_size = run.id, run.batch_size

        if not self.parallel or len(sources) < 2:
            writer = MicroBatchWriter(self.session, settings=self.settings, sync_run_id=run_id, sleep=self._sleep)
            return [
                writer.process_source(source, after_id=cursor.get(source, 0), limit=batch_size) for source in sources
            ]

        def work(source: str) -> SourcePassResult:
            with self.app.app_context():
                writer = MicroBatchWriter(db.session, settings=self.settings, sync_run_id=run_id, sleep=self._sleep)
                return writer.process_source(source, after_id=cursor.get(source, 0), limit=batch_size)

        with ThreadPoolExecutor(max_workers=len(sources), thread_name_prefix="unifier") as executor:
            futures = [executor.submit(work, source) for source in sources]
            return [future.result() for future in futures]


def run_until_idle(run_id: int, *, start_chunk: int | None = None, scheduler: ChunkScheduler | None = None) -> ChunkOutcome:
    """Run chunks back to back in-process until the run stops asking for more."""
    scheduler = scheduler or ChunkScheduler()
    if start_chunk is None:
        start_chunk = scheduler.ledger.get_run(run_id).chunk_number + 1
    chunk_number = start_chunk
    while True:
        result = scheduler.run_chunk(run_id, chunk_number)
        if not result.needs_continuation:
            return result
        chunk_number += 1


__all__ = [
    "ChunkOutcome",
    "ChunkScheduler",
    "OUTCOME_CANCELLED",
    "OUTCOME_COMPLETED",
    "OUTCOME_CONTINUING",
    "OUTCOME_PAUSED",
    "OUTCOME_SKIPPED",
    "ZERO_PROGRESS_LIMIT",
    "run_until_idle",
]
