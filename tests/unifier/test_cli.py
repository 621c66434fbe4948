from __future__ import annotations

import json

import pytest

from unify_app.models import Client, ConflictStatus, ConflictType, MergeConflict, SyncRun, SyncRunStatus, db
from unify_app.unifier.pipeline.conflicts import ConflictReviewService


def test_group_lists_configured_sources(runner):
    result = runner.invoke(args=["unifier"])

    assert result.exit_code == 0
    assert "Configured unifier sources:" in result.output
    assert "  - manychat" in result.output


def test_pending_prints_counts(runner, ghl_factory, csv_factory):
    ghl_factory(email="a@example.com")
    csv_factory(email="b@example.com")

    result = runner.invoke(args=["unifier", "pending"])

    assert result.exit_code == 0
    assert json.loads(result.output) == {"ghl": 1, "manychat": 0, "csv": 1, "total": 2}


def test_pending_rejects_unknown_source(runner):
    result = runner.invoke(args=["unifier", "pending", "--source", "hubspot"])

    assert result.exit_code != 0
    assert "hubspot" in result.output


def test_run_inline_finishes_the_run(runner, ghl_factory, manychat_factory):
    ghl_factory(email="a@example.com", phone="5512345678")
    manychat_factory(whatsapp_phone="5512345678")

    result = runner.invoke(args=["unifier", "run", "--inline", "--batch-size", "5"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "completed"
    assert payload["inserted"] == 1
    assert payload["updated"] == 1
    assert payload["task_id"] is None
    assert db.session.query(Client).count() == 1


def test_run_without_work(runner):
    result = runner.invoke(args=["unifier", "run"])

    assert result.exit_code == 0
    assert json.loads(result.output)["status"] == "no_work"


def test_status_without_runs(runner):
    result = runner.invoke(args=["unifier", "status"])

    assert result.exit_code == 0
    assert "No unification runs recorded." in result.output


def test_status_shows_latest_run(runner, sync_run_factory):
    run = sync_run_factory(status=SyncRunStatus.PAUSED, cursor={"csv": 4})

    result = runner.invoke(args=["unifier", "status"])

    payload = json.loads(result.output)
    assert payload["run_id"] == run.id
    assert payload["status"] == "paused"
    assert payload["cursor"] == {"csv": 4}
    assert runner.invoke(args=["unifier", "status", "--run-id", "999"]).exit_code != 0


def test_cancel_and_force_cancel(runner, sync_run_factory):
    first = sync_run_factory()

    cancelled = runner.invoke(args=["unifier", "cancel", "--run-id", str(first.id)])
    assert cancelled.exit_code == 0
    assert f"Run {first.id} cancelled." in cancelled.output
    assert runner.invoke(args=["unifier", "cancel", "--run-id", str(first.id)]).exit_code != 0

    assert "No active runs to cancel." in runner.invoke(args=["unifier", "force-cancel"]).output
    paused = sync_run_factory(status=SyncRunStatus.PAUSED)
    forced = runner.invoke(args=["unifier", "force-cancel"])
    assert f"Cancelled runs: {paused.id}" in forced.output


def test_resume_inline(runner, sync_run_factory):
    run = sync_run_factory(status=SyncRunStatus.PAUSED, chunk_number=1)

    result = runner.invoke(args=["unifier", "resume", "--run-id", str(run.id), "--inline"])

    assert result.exit_code == 0, result.output
    assert f"Run {run.id} finished chunk 2 with status 'completed'." in result.output
    db.session.expire_all()
    assert db.session.get(SyncRun, run.id).status == SyncRunStatus.COMPLETED
    assert runner.invoke(args=["unifier", "resume", "--run-id", str(run.id)]).exit_code != 0


@pytest.fixture
def queued_conflicts(client_factory):
    target = client_factory(email="target@example.com")
    first = MergeConflict(
        source="csv",
        external_id="1",
        conflict_type=ConflictType.DUPLICATE_CANDIDATE,
        phone_found="+525512345678",
        candidate_client_ids=[target.id],
        raw_data={"source": "csv", "raw_id": 1, "full_name": "Ana", "tags": ["csv"]},
    )
    second = MergeConflict(
        source="csv",
        external_id="2",
        conflict_type=ConflictType.DUPLICATE_CANDIDATE,
        phone_found="+525512345678",
        candidate_client_ids=[target.id],
        raw_data={"source": "csv", "raw_id": 2},
    )
    db.session.add_all([first, second])
    db.session.commit()
    return target, first, second


def test_conflicts_list_resolve_and_ignore(runner, queued_conflicts):
    target, first, second = queued_conflicts

    listing = json.loads(runner.invoke(args=["unifier", "conflicts", "list"]).output)
    assert listing["total"] == 2

    resolved = runner.invoke(
        args=["unifier", "conflicts", "resolve", str(first.id), "--client-id", str(target.id), "--note", "checked"]
    )
    assert resolved.exit_code == 0, resolved.output
    assert f"Conflict {first.id} resolved into client {target.id}." in resolved.output

    ignored = runner.invoke(args=["unifier", "conflicts", "ignore", str(second.id)])
    assert ignored.exit_code == 0
    assert f"Conflict {second.id} ignored." in ignored.output

    again = runner.invoke(args=["unifier", "conflicts", "ignore", str(second.id)])
    assert again.exit_code != 0
    db.session.expire_all()
    assert db.session.get(MergeConflict, first.id).status == ConflictStatus.RESOLVED
    assert ConflictReviewService().list_conflicts(status=ConflictStatus.PENDING).total == 0


def test_worker_ping_runs_heartbeat(app, runner):
    app.config["UNIFIER_WORKER_ENABLED"] = True

    result = runner.invoke(args=["unifier", "worker", "ping", "--timeout", "2"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["status"] == "ok"


def test_worker_group_warns_when_flag_disabled(runner):
    result = runner.invoke(args=["unifier", "worker", "ping", "--timeout", "2"])

    assert result.exit_code == 0
    assert "UNIFIER_WORKER_ENABLED is false" in result.output
