from __future__ import annotations

from types import SimpleNamespace

import pytest

from unify_app.models import SyncRun, SyncRunStatus, db
from unify_app.unifier import get_celery_app
from unify_app.unifier.dispatch import (
    RUN_CHUNK_TASK,
    ContinuationDispatchError,
    dispatch_chunk,
    dispatch_or_pause,
)


@pytest.fixture
def chunk_task(app):
    app.config.update(UNIFIER_CONTINUATION_MAX_RETRIES=3, UNIFIER_CONTINUATION_BACKOFF_SECONDS=1.0)
    return get_celery_app(app).tasks[RUN_CHUNK_TASK]


def _failing(times: int):
    calls = {"count": 0}

    def apply_async(*, kwargs):
        calls["count"] += 1
        if calls["count"] <= times:
            raise ConnectionError("broker unavailable")
        return SimpleNamespace(id=f"task-{kwargs['run_id']}-{kwargs['chunk_number']}")

    return apply_async, calls


def test_dispatch_retries_with_exponential_backoff(chunk_task, monkeypatch):
    apply_async, calls = _failing(2)
    monkeypatch.setattr(chunk_task, "apply_async", apply_async)
    sleeps: list[float] = []

    task_id = dispatch_chunk(7, 2, sleep=sleeps.append)

    assert task_id == "task-7-2"
    assert calls["count"] == 3
    assert sleeps == [1.0, 2.0]


def test_dispatch_gives_up_after_max_retries(chunk_task, monkeypatch):
    apply_async, calls = _failing(10)
    monkeypatch.setattr(chunk_task, "apply_async", apply_async)
    sleeps: list[float] = []

    with pytest.raises(ContinuationDispatchError):
        dispatch_chunk(7, 2, sleep=sleeps.append)

    assert calls["count"] == 4
    assert sleeps == [1.0, 2.0, 4.0]


def test_exhausted_dispatch_pauses_the_run(chunk_task, sync_run_factory, monkeypatch):
    apply_async, _ = _failing(10)
    monkeypatch.setattr(chunk_task, "apply_async", apply_async)
    run = sync_run_factory(status=SyncRunStatus.CONTINUING, chunk_number=4)

    assert dispatch_or_pause(run.id, 5, sleep=lambda _delay: None) is None

    paused = db.session.get(SyncRun, run.id)
    assert paused.status == SyncRunStatus.PAUSED
    assert paused.lock_key is None
    assert paused.chunk_number == 4
    assert paused.error_message.startswith("Continuation dispatch failed")


def test_dispatch_runs_chunk_task_eagerly(app, sync_run_factory):
    run = sync_run_factory(status=SyncRunStatus.RUNNING)

    task_id = dispatch_chunk(run.id, 1)

    assert task_id
    db.session.expire_all()
    finished = db.session.get(SyncRun, run.id)
    assert finished.status == SyncRunStatus.COMPLETED
    assert finished.chunk_number == 1
