from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import NoResultFound

from unify_app.models import (
    Client,
    ConflictStatus,
    ConflictType,
    ContactIdentity,
    GhlContactRaw,
    LeadEvent,
    MergeConflict,
    db,
)
from unify_app.unifier.pipeline.conflicts import (
    ConflictAlreadyReviewed,
    ConflictReviewService,
    record_conflict,
    serialize_conflict,
)
from unify_app.unifier.pipeline.normalize import normalize_ghl
from unify_app.unifier.pipeline.resolver import resolve_identity

FETCHED_AT = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def email_mismatch(client_factory):
    by_platform = client_factory(ghl_contact_id="g-1", full_name="Platform Match")
    by_email = client_factory(email="ana@example.com")
    contact = normalize_ghl(
        GhlContactRaw(
            id=1,
            external_id="g-1",
            fetched_at=FETCHED_AT,
            payload={"email": "ana@example.com", "contactName": "Ana", "tags": ["vip"]},
        )
    )
    result = resolve_identity(db.session, contact)
    conflict = record_conflict(db.session, contact=contact, result=result)
    db.session.commit()
    return conflict, by_platform, by_email


def test_record_conflict_queues_snapshot(email_mismatch):
    conflict, by_platform, by_email = email_mismatch

    assert conflict.status == ConflictStatus.PENDING
    assert conflict.conflict_type == ConflictType.EMAIL_MISMATCH
    assert conflict.external_id == "g-1"
    assert conflict.email_found == "ana@example.com"
    assert conflict.candidate_client_ids == [by_platform.id, by_email.id]
    assert conflict.suggested_client_id == by_email.id
    assert conflict.raw_data["external_ids"] == {"ghl": "g-1"}


def _client_state(client_id):
    client = db.session.get(Client, client_id)
    return (client.email, client.full_name, client.tags, client.needs_review, client.review_reason, client.updated_at)


def test_record_conflict_leaves_candidates_untouched(client_factory):
    by_platform = client_factory(ghl_contact_id="g-7", email="a@example.com")
    by_email = client_factory(email="b@example.com")
    before = {client.id: _client_state(client.id) for client in (by_platform, by_email)}
    contact = normalize_ghl(
        GhlContactRaw(id=7, external_id="g-7", fetched_at=FETCHED_AT, payload={"email": "b@example.com", "tags": ["new"]})
    )

    record_conflict(db.session, contact=contact, result=resolve_identity(db.session, contact))
    db.session.commit()
    db.session.expire_all()

    assert {client_id: _client_state(client_id) for client_id in before} == before
    assert before[by_platform.id][3] is False


def test_record_conflict_refreshes_pending_row(email_mismatch):
    conflict, _, _ = email_mismatch
    contact = normalize_ghl(
        GhlContactRaw(id=2, external_id="g-1", fetched_at=FETCHED_AT, payload={"email": "ana@example.com"})
    )

    again = record_conflict(db.session, contact=contact, result=resolve_identity(db.session, contact), sync_run_id=None)
    db.session.commit()

    assert again.id == conflict.id
    assert db.session.query(MergeConflict).count() == 1
    assert again.raw_data["raw_id"] == 2


def test_resolve_replays_snapshot_into_chosen_client(email_mismatch):
    conflict, by_platform, by_email = email_mismatch

    resolved = ConflictReviewService().resolve(conflict.id, client_id=by_email.id, note="same person")
    db.session.commit()

    client = db.session.get(Client, by_email.id)
    assert resolved.status == ConflictStatus.RESOLVED
    assert resolved.resolved_client_id == by_email.id
    assert resolved.resolution_note == "same person"
    assert resolved.resolved_at is not None
    assert client.full_name == "Ana"
    assert client.tags == ["vip"]
    identity = db.session.query(ContactIdentity).filter_by(source="ghl", external_id="g-1").one()
    assert identity.client_id == by_email.id
    event = db.session.query(LeadEvent).filter_by(event_id=f"review:{conflict.id}").one()
    assert event.client_id == by_email.id


def test_resolve_into_platform_client_keeps_email_unique(email_mismatch):
    conflict, by_platform, by_email = email_mismatch

    ConflictReviewService().resolve(conflict.id, client_id=by_platform.id)
    db.session.commit()

    assert db.session.get(Client, by_platform.id).email is None
    assert db.session.get(Client, by_email.id).email == "ana@example.com"


def test_resolve_twice_is_rejected(email_mismatch):
    conflict, _, by_email = email_mismatch
    service = ConflictReviewService()
    service.resolve(conflict.id, client_id=by_email.id)
    db.session.commit()

    with pytest.raises(ConflictAlreadyReviewed):
        service.resolve(conflict.id, client_id=by_email.id)
    with pytest.raises(ConflictAlreadyReviewed):
        service.ignore(conflict.id)


def test_resolve_unknown_conflict_or_client(email_mismatch):
    conflict, _, _ = email_mismatch
    service = ConflictReviewService()

    with pytest.raises(NoResultFound):
        service.resolve(9999, client_id=1)
    with pytest.raises(NoResultFound):
        service.resolve(conflict.id, client_id=9999)


def test_ignore_and_list(email_mismatch):
    conflict, _, _ = email_mismatch
    service = ConflictReviewService()

    assert service.list_conflicts().total == 1
    ignored = service.ignore(conflict.id, note="test data")
    db.session.commit()

    assert ignored.status == ConflictStatus.IGNORED
    assert service.list_conflicts().total == 0
    assert service.list_conflicts(status=ConflictStatus.IGNORED, source="ghl").total == 1
    assert service.list_conflicts(status=None, conflict_type=ConflictType.DUPLICATE_CANDIDATE).total == 0


def test_serialize_conflict(email_mismatch):
    conflict, by_platform, by_email = email_mismatch

    payload = serialize_conflict(conflict)

    assert payload["conflictType"] == "email_mismatch"
    assert payload["status"] == "pending"
    assert payload["candidateClientIds"] == [by_platform.id, by_email.id]
    assert payload["resolvedAt"] is None
