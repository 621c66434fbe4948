"""
Merge-conflict review queue.

The engine never guesses between two candidate clients. It records a pending
``merge_conflicts`` row with a snapshot of the normalized contact and moves
on; an operator later resolves the row onto one client (which replays the
snapshot through the merge engine) or ignores it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from flask import current_app, has_app_context
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from config.merge_policy import DEFAULT_PROFILE, MergePolicyProfile
from unify_app.models import Client, ConflictStatus, ConflictType, LeadAction, MergeConflict, db

from .events import is_duplicate_event, record_lead_event, upsert_identities
from .merge import apply_merge, plan_merge
from .normalize import NormalizedContact, contact_from_snapshot, contact_to_snapshot
from .resolver import ResolutionResult, conflict_key, lookup_email


class ConflictAlreadyReviewed(ValueError):
    """Raised when resolving or ignoring a conflict that is no longer pending."""


def _suggested_client_id(result: ResolutionResult) -> int | None:
    if not result.candidate_ids:
        return None
    if result.conflict_type == ConflictType.EMAIL_MISMATCH:
        # candidate_ids is (platform match, email match); email is the master key.
        return result.candidate_ids[-1]
    return min(result.candidate_ids)


def record_conflict(
    session: Session,
    *,
    contact: NormalizedContact,
    result: ResolutionResult,
    sync_run_id: int | None = None,
) -> MergeConflict:
    """Queue ``contact`` for review, refreshing the existing pending row if there is one."""
    if result.conflict_type is None:
        raise ValueError("record_conflict requires a conflict resolution result.")

    external_id = conflict_key(contact)
    conflict = (
        session.query(MergeConflict)
        .filter(
            MergeConflict.source == contact.source,
            MergeConflict.external_id == external_id,
            MergeConflict.conflict_type == result.conflict_type,
            MergeConflict.status == ConflictStatus.PENDING,
        )
        .one_or_none()
    )
    if conflict is None:
        conflict = MergeConflict(
            source=contact.source,
            external_id=external_id,
            conflict_type=result.conflict_type,
            status=ConflictStatus.PENDING,
        )
        session.add(conflict)

    conflict.email_found = contact.email
    conflict.phone_found = contact.phone
    conflict.raw_data = contact_to_snapshot(contact)
    conflict.candidate_client_ids = list(result.candidate_ids)
    conflict.suggested_client_id = _suggested_client_id(result)
    conflict.sync_run_id = sync_run_id
    return conflict


@dataclass(slots=True)
class ConflictPage:
    items: Sequence[MergeConflict]
    total: int
    limit: int
    offset: int


class ConflictReviewService:
    """Operator actions over the review queue. Callers own the commit."""

    def __init__(self, session: Session | None = None):
        self.session = session or db.session

    def list_conflicts(
        self,
        *,
        status: ConflictStatus | None = ConflictStatus.PENDING,
        source: str | None = None,
        conflict_type: ConflictType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> ConflictPage:
        query = self.session.query(MergeConflict)
        if status is not None:
            query = query.filter(MergeConflict.status == status)
        if source:
            query = query.filter(MergeConflict.source == source)
        if conflict_type is not None:
            query = query.filter(MergeConflict.conflict_type == conflict_type)
        total = query.count()
        items = query.order_by(MergeConflict.id.asc()).offset(offset).limit(limit).all()
        return ConflictPage(items=items, total=total, limit=limit, offset=offset)

    def get_conflict(self, conflict_id: int) -> MergeConflict:
        conflict = self.session.get(MergeConflict, conflict_id)
        if conflict is None:
            raise NoResultFound(f"Merge conflict {conflict_id} not found.")
        return conflict

    def _pending(self, conflict_id: int) -> MergeConflict:
        conflict = self.get_conflict(conflict_id)
        if conflict.status != ConflictStatus.PENDING:
            raise ConflictAlreadyReviewed(
                f"Merge conflict {conflict_id} is already {conflict.status.value}."
            )
        return conflict

    def resolve(
        self,
        conflict_id: int,
        *,
        client_id: int,
        note: str | None = None,
        profile: MergePolicyProfile = DEFAULT_PROFILE,
    ) -> MergeConflict:
        """Merge the queued snapshot into ``client_id`` and close the conflict."""
        conflict = self._pending(conflict_id)
        client = self.session.get(Client, client_id)
        if client is None:
            raise NoResultFound(f"Client {client_id} not found.")

        contact = contact_from_snapshot(conflict.raw_data or {})
        plan = plan_merge(client, contact, profile)
        if "email" in plan.changed_fields() and lookup_email(self.session, contact.email) not in (None, client.id):
            plan = plan.without("email")
        apply_merge(client, plan)
        client.last_sync = datetime.now(timezone.utc)
        upsert_identities(self.session, contact, client.id)

        token = f"review:{conflict.id}"
        if not is_duplicate_event(self.session, contact.source, token):
            record_lead_event(
                self.session,
                contact=contact,
                client=client,
                action=LeadAction.UPDATED,
                token=token,
                sync_run_id=conflict.sync_run_id,
                changed_fields=plan.changed_fields(),
            )

        conflict.status = ConflictStatus.RESOLVED
        conflict.resolved_client_id = client.id
        conflict.resolved_at = datetime.now(timezone.utc)
        conflict.resolution_note = note
        self.session.flush()
        _log("Merge conflict resolved", conflict, unifier_client_id=client.id)
        return conflict

    def ignore(self, conflict_id: int, *, note: str | None = None) -> MergeConflict:
        conflict = self._pending(conflict_id)
        conflict.status = ConflictStatus.IGNORED
        conflict.resolved_at = datetime.now(timezone.utc)
        conflict.resolution_note = note
        self.session.flush()
        _log("Merge conflict ignored", conflict)
        return conflict


def serialize_conflict(conflict: MergeConflict) -> dict[str, Any]:
    return {
        "id": conflict.id,
        "source": conflict.source,
        "externalId": conflict.external_id,
        "conflictType": conflict.conflict_type.value,
        "status": conflict.status.value,
        "emailFound": conflict.email_found,
        "phoneFound": conflict.phone_found,
        "suggestedClientId": conflict.suggested_client_id,
        "candidateClientIds": list(conflict.candidate_client_ids or []),
        "syncRunId": conflict.sync_run_id,
        "resolvedClientId": conflict.resolved_client_id,
        "resolvedAt": conflict.resolved_at.isoformat() if conflict.resolved_at else None,
        "resolutionNote": conflict.resolution_note,
        "createdAt": conflict.created_at.isoformat() if conflict.created_at else None,
    }


def _log(message: str, conflict: MergeConflict, **extra: Any) -> None:
    if not has_app_context():
        return
    current_app.logger.info(
        message,
        extra={
            "unifier_conflict_id": conflict.id,
            "unifier_conflict_type": conflict.conflict_type.value,
            "unifier_source": conflict.source,
            **extra,
        },
    )


__all__ = [
    "ConflictAlreadyReviewed",
    "ConflictPage",
    "ConflictReviewService",
    "record_conflict",
    "serialize_conflict",
]
