from __future__ import annotations

import itertools
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from unify_app.models import (
    Client,
    CsvImportRaw,
    GhlContactRaw,
    LeadAction,
    LeadEvent,
    ManychatContactRaw,
    SyncRun,
    SyncRunStatus,
    db,
)
from unify_app.unifier.pipeline.ledger import SyncRunService
from unify_app.unifier.pipeline.persistence import MicroBatchWriter
from unify_app.unifier.pipeline.scheduler import (
    OUTCOME_CANCELLED,
    OUTCOME_COMPLETED,
    OUTCOME_CONTINUING,
    OUTCOME_PAUSED,
    OUTCOME_SKIPPED,
    ChunkScheduler,
    run_until_idle,
)


@pytest.fixture
def scheduler_app(app):
    app.config.update(UNIFIER_CHUNK_BUDGET_SECONDS=50.0, UNIFIER_PARALLEL_SOURCES=False)
    return app


def _start(sources=("ghl", "manychat", "csv"), batch_size=50) -> int:
    return SyncRunService().start_run(sources=sources, batch_size=batch_size).id


def _stepping_clock(step: float = 100.0):
    ticks = itertools.count(0, step)
    return lambda: next(ticks)


def test_chunk_completes_when_no_work_remains(scheduler_app, ghl_factory, manychat_factory, csv_factory):
    ghl_factory(email="a@example.com")
    manychat_factory(phone="5512345678")
    csv_factory(email="b@example.com")
    run_id = _start()

    outcome = ChunkScheduler(scheduler_app).run_chunk(run_id, 1)

    assert outcome.status == OUTCOME_COMPLETED
    assert outcome.processed == 3
    assert outcome.needs_continuation is False
    run = db.session.get(SyncRun, run_id)
    assert run.status == SyncRunStatus.COMPLETED
    assert run.lock_key is None
    assert run.chunk_number == 1
    assert run.total_inserted == 3
    assert db.session.query(Client).count() == 3


def test_budget_exhaustion_requests_continuation(scheduler_app, ghl_factory):
    for i in range(3):
        ghl_factory(email=f"lead{i}@example.com")
    run_id = _start(sources=("ghl",), batch_size=1)
    scheduler = ChunkScheduler(scheduler_app, clock=_stepping_clock())

    outcome = scheduler.run_chunk(run_id, 1)

    assert outcome.status == OUTCOME_CONTINUING
    assert outcome.needs_continuation is True
    assert outcome.iterations == 1
    run = db.session.get(SyncRun, run_id)
    assert run.status == SyncRunStatus.CONTINUING
    assert run.cursor["ghl"] > 0


def test_run_until_idle_chains_chunks(scheduler_app, ghl_factory):
    for i in range(3):
        ghl_factory(email=f"lead{i}@example.com")
    run_id = _start(sources=("ghl",), batch_size=1)
    scheduler = ChunkScheduler(scheduler_app, clock=_stepping_clock())

    outcome = run_until_idle(run_id, scheduler=scheduler)

    assert outcome.status == OUTCOME_COMPLETED
    assert outcome.chunk_number == 3
    run = db.session.get(SyncRun, run_id)
    assert run.chunk_number == 3
    assert run.total_inserted == 3


def test_duplicate_chunk_is_skipped(scheduler_app):
    run_id = _start()
    SyncRunService().begin_chunk(run_id, 3)

    outcome = ChunkScheduler(scheduler_app).run_chunk(run_id, 2)

    assert outcome.status == OUTCOME_SKIPPED
    assert db.session.get(SyncRun, run_id).chunk_number == 3


def test_cancelled_run_is_skipped(scheduler_app, ghl_factory):
    row_id = ghl_factory(email="a@example.com").id
    run_id = _start()
    SyncRunService().cancel(run_id)

    outcome = ChunkScheduler(scheduler_app).run_chunk(run_id, 1)

    assert outcome.status == OUTCOME_SKIPPED
    assert db.session.get(GhlContactRaw, row_id).processed_at is None


def test_cancellation_between_iterations_stops_the_chunk(scheduler_app, monkeypatch):
    run_id = _start()
    scheduler = ChunkScheduler(scheduler_app)
    monkeypatch.setattr(scheduler.ledger, "is_cancelled", lambda _run_id: True)

    outcome = scheduler.run_chunk(run_id, 1)

    assert outcome.status == OUTCOME_CANCELLED
    assert outcome.iterations == 0


def test_errors_pause_the_run_and_retry_finishes_it(scheduler_app, ghl_factory, monkeypatch):
    ghl_factory(email="ok@example.com")

    def broken(self, fetcher, batch_ids):
        raise RuntimeError("constraint violated")

    monkeypatch.setattr(MicroBatchWriter, "_apply_batch", broken)
    run_id = _start(sources=("ghl",))

    outcome = ChunkScheduler(scheduler_app).run_chunk(run_id, 1)

    assert outcome.status == OUTCOME_PAUSED
    assert outcome.errors == 1
    run = db.session.get(SyncRun, run_id)
    assert run.status == SyncRunStatus.PAUSED
    assert run.lock_key is None
    assert "resume with retry" in run.error_message

    monkeypatch.undo()
    SyncRunService().resume(run_id, retry_errors=True)
    final = run_until_idle(run_id, scheduler=ChunkScheduler(scheduler_app))

    assert final.status == OUTCOME_COMPLETED
    assert final.chunk_number == 2
    assert db.session.query(Client).count() == 1


def test_rows_behind_the_cursor_are_picked_up_by_rewind(scheduler_app, ghl_factory):
    ghl_factory(email="behind@example.com")
    service = SyncRunService()
    run = service.start_run(sources=("ghl",), batch_size=50)
    run.checkpoint = {"cursor": {"ghl": 999}, "zero_progress_streak": 0}
    db.session.commit()

    outcome = ChunkScheduler(scheduler_app).run_chunk(run.id, 1)

    assert outcome.status == OUTCOME_COMPLETED
    assert outcome.processed == 1
    assert db.session.query(Client).one().email == "behind@example.com"


def _events_per_raw_row() -> Counter:
    return Counter((event.source, event.payload["raw_id"]) for event in db.session.query(LeadEvent).all())


def _all_raw_rows() -> set:
    rows = set()
    for source, model in (("ghl", GhlContactRaw), ("manychat", ManychatContactRaw), ("csv", CsvImportRaw)):
        rows.update((source, row_id) for (row_id,) in db.session.query(model.id).all())
    return rows


@pytest.fixture
def backlog(ghl_factory, csv_factory):
    for i in range(6):
        ghl_factory(email=f"lead{i}@example.com", phone=f"551234560{i}")
    for i in range(4):
        csv_factory(email=f"csv{i}@example.com")


def test_parallel_sources_converge_on_one_client_per_email(app, ghl_factory, manychat_factory, csv_factory):
    app.config.update(UNIFIER_CHUNK_BUDGET_SECONDS=50.0, UNIFIER_PARALLEL_SOURCES=True)
    emails = [f"shared{i}@example.com" for i in range(12)]
    for email in emails:
        ghl_factory(email=email)
        manychat_factory(email=email)
        csv_factory(email=email)
    run_id = _start(batch_size=50)

    outcome = run_until_idle(run_id, scheduler=ChunkScheduler(app))

    assert outcome.status == OUTCOME_COMPLETED
    db.session.expire_all()
    run = db.session.get(SyncRun, run_id)
    assert run.status == SyncRunStatus.COMPLETED
    assert run.total_errors == 0
    assert sorted(client.email for client in db.session.query(Client).all()) == sorted(emails)
    events = db.session.query(LeadEvent).all()
    assert len(events) == 36
    assert sum(1 for event in events if event.action == LeadAction.CREATED) == 12


def test_stale_takeover_resumes_backlog_without_gaps_or_repeats(scheduler_app, backlog):
    first_id = _start(sources=("ghl", "csv"), batch_size=2)
    first = ChunkScheduler(scheduler_app, clock=_stepping_clock()).run_chunk(first_id, 1)
    assert first.status == OUTCOME_CONTINUING
    assert first.processed == 4

    # The worker holding the run dies before the next chunk.
    run = db.session.get(SyncRun, first_id)
    run.heartbeat_at = datetime.now(timezone.utc) - timedelta(hours=1)
    db.session.commit()

    second_id = _start(sources=("ghl", "csv"), batch_size=2)
    final = run_until_idle(second_id, scheduler=ChunkScheduler(scheduler_app, clock=_stepping_clock()))

    assert final.status == OUTCOME_COMPLETED
    db.session.expire_all()
    assert db.session.get(SyncRun, first_id).status == SyncRunStatus.CANCELLED
    second = db.session.get(SyncRun, second_id)
    assert second.metadata_json["inherited_from_run_id"] == first_id
    assert second.total_processed == 6
    per_row = _events_per_raw_row()
    assert set(per_row) == _all_raw_rows()
    assert set(per_row.values()) == {1}
    assert db.session.query(Client).count() == 10


def test_paused_run_resumes_backlog_without_gaps_or_repeats(scheduler_app, backlog):
    run_id = _start(sources=("ghl", "csv"), batch_size=2)
    scheduler = ChunkScheduler(scheduler_app, clock=_stepping_clock())
    assert scheduler.run_chunk(run_id, 1).status == OUTCOME_CONTINUING

    service = SyncRunService()
    service.pause(service.get_run(run_id), "Worker unavailable.")
    cursor_at_pause = dict(db.session.get(SyncRun, run_id).cursor)
    resumed = service.resume(run_id)
    assert resumed.cursor == cursor_at_pause

    final = run_until_idle(run_id, scheduler=scheduler)

    assert final.status == OUTCOME_COMPLETED
    db.session.expire_all()
    run = db.session.get(SyncRun, run_id)
    assert run.total_processed == 10
    assert run.total_errors == 0
    per_row = _events_per_raw_row()
    assert set(per_row) == _all_raw_rows()
    assert set(per_row.values()) == {1}
