"""
Deterministic identity resolution.

Matching is exact on normalized keys, in priority order:

1. platform id (identity map, then the platform's id column on ``clients``)
2. email (case-insensitive)
3. platform id and email both matched but to different clients -> conflict
4. phone, then a secondary platform id carried by the payload
5. otherwise a new identity

A conflict an operator already resolved for the same record resolves to the
chosen client as long as it is still one of the candidates.

Both the platform-id key and the email key are evaluated before any decision
so a disagreement between them is always surfaced instead of guessed.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Mapping, MutableMapping, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from unify_app.models import Client, ConflictStatus, ConflictType, ContactIdentity, MergeConflict

from .normalize import PLATFORM_ID_COLUMNS, NormalizedContact

OUTCOME_MATCH = "match"
OUTCOME_NEW = "new"
OUTCOME_CONFLICT = "conflict"

PHONE_CANDIDATE_LIMIT = 2

PhoneIndex = MutableMapping[str, list[int]]


@dataclass(frozen=True)
class ResolutionResult:
    outcome: str
    client_id: int | None = None
    matched_by: str | None = None
    conflict_type: ConflictType | None = None
    candidate_ids: tuple[int, ...] = ()

    @property
    def is_conflict(self) -> bool:
        return self.outcome == OUTCOME_CONFLICT

    @property
    def is_new(self) -> bool:
        return self.outcome == OUTCOME_NEW


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def lookup_identity_map(session: Session, source: str, external_id: str | None) -> int | None:
    if not external_id:
        return None
    row = (
        session.query(ContactIdentity.client_id)
        .filter(ContactIdentity.source == source, ContactIdentity.external_id == external_id)
        .first()
    )
    return row[0] if row else None


def lookup_platform_id(session: Session, platform: str, value: str | None) -> int | None:
    column_name = PLATFORM_ID_COLUMNS.get(platform)
    if not column_name or not value:
        return None
    column = getattr(Client, column_name)
    row = session.query(Client.id).filter(column == value).order_by(Client.id.asc()).first()
    return row[0] if row else None


def lookup_email(session: Session, email: str | None) -> int | None:
    if not email:
        return None
    row = (
        session.query(Client.id)
        .filter(func.lower(Client.email) == email.lower())
        .order_by(Client.id.asc())
        .first()
    )
    return row[0] if row else None


def lookup_phone(session: Session, phone: str | None) -> list[int]:
    if not phone:
        return []
    rows = (
        session.query(Client.id)
        .filter(Client.phone_e164 == phone)
        .order_by(Client.id.asc())
        .limit(PHONE_CANDIDATE_LIMIT)
        .all()
    )
    return [row[0] for row in rows]


def build_phone_index(session: Session, phones: Iterable[str | None]) -> PhoneIndex:
    """Fetch existing clients for every phone in one query."""
    unique_phones = sorted({phone for phone in phones if phone})
    index: PhoneIndex = defaultdict(list)
    if not unique_phones:
        return index
    rows = (
        session.query(Client.phone_e164, Client.id)
        .filter(Client.phone_e164.in_(unique_phones))
        .order_by(Client.id.asc())
        .all()
    )
    for phone, client_id in rows:
        index[phone].append(client_id)
    return index


def register_phone(index: PhoneIndex | None, phone: str | None, client_id: int) -> None:
    if index is None or not phone:
        return
    candidates = index.setdefault(phone, [])
    if client_id not in candidates:
        candidates.append(client_id)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def _match_platform(session: Session, contact: NormalizedContact) -> tuple[int, str] | None:
    for platform, value in contact.external_ids.items():
        client_id = lookup_identity_map(session, platform, value)
        if client_id is not None:
            return client_id, "identity_map"
        client_id = lookup_platform_id(session, platform, value)
        if client_id is not None:
            return client_id, "platform_id"
    return None


def _reviewed_choice(
    session: Session, contact: NormalizedContact, conflict_type: ConflictType, candidate_ids: Sequence[int]
) -> int | None:
    """Return the client an operator already picked for this record and conflict, if still a candidate."""
    row = (
        session.query(MergeConflict.resolved_client_id)
        .filter(
            MergeConflict.source == contact.source,
            MergeConflict.external_id == conflict_key(contact),
            MergeConflict.conflict_type == conflict_type,
            MergeConflict.status == ConflictStatus.RESOLVED,
        )
        .order_by(MergeConflict.resolved_at.desc(), MergeConflict.id.desc())
        .first()
    )
    if row and row[0] in candidate_ids:
        return row[0]
    return None


def _conflict(
    session: Session, contact: NormalizedContact, conflict_type: ConflictType, candidate_ids: Sequence[int]
) -> ResolutionResult:
    chosen = _reviewed_choice(session, contact, conflict_type, candidate_ids)
    if chosen is not None:
        return ResolutionResult(outcome=OUTCOME_MATCH, client_id=chosen, matched_by="review")
    return ResolutionResult(
        outcome=OUTCOME_CONFLICT,
        conflict_type=conflict_type,
        candidate_ids=tuple(candidate_ids),
    )


def _phone_candidates(
    session: Session, phone: str | None, phone_index: Mapping[str, Sequence[int]] | None
) -> list[int]:
    if not phone:
        return []
    if phone_index is not None:
        return list(phone_index.get(phone, ()))[:PHONE_CANDIDATE_LIMIT]
    return lookup_phone(session, phone)


def resolve_identity(
    session: Session,
    contact: NormalizedContact,
    *,
    phone_index: Mapping[str, Sequence[int]] | None = None,
) -> ResolutionResult:
    platform_match = _match_platform(session, contact)
    email_client_id = lookup_email(session, contact.email)

    if platform_match and email_client_id is not None and platform_match[0] != email_client_id:
        return _conflict(session, contact, ConflictType.EMAIL_MISMATCH, (platform_match[0], email_client_id))
    if platform_match:
        return ResolutionResult(outcome=OUTCOME_MATCH, client_id=platform_match[0], matched_by=platform_match[1])
    if email_client_id is not None:
        return ResolutionResult(outcome=OUTCOME_MATCH, client_id=email_client_id, matched_by="email")

    phone_ids = _phone_candidates(session, contact.phone, phone_index)
    if len(phone_ids) > 1:
        return _conflict(session, contact, ConflictType.DUPLICATE_CANDIDATE, phone_ids)
    if phone_ids:
        return ResolutionResult(outcome=OUTCOME_MATCH, client_id=phone_ids[0], matched_by="phone")

    for platform, value in contact.secondary_ids.items():
        client_id = lookup_platform_id(session, platform, value)
        if client_id is not None:
            return ResolutionResult(outcome=OUTCOME_MATCH, client_id=client_id, matched_by="secondary_id")

    return ResolutionResult(outcome=OUTCOME_NEW)


def conflict_key(contact: NormalizedContact) -> str:
    """Stable review-queue key for a record without relying on the raw row id when possible."""
    return contact.external_id or f"raw:{contact.raw_id}"


__all__ = [
    "OUTCOME_CONFLICT",
    "OUTCOME_MATCH",
    "OUTCOME_NEW",
    "PhoneIndex",
    "ResolutionResult",
    "build_phone_index",
    "conflict_key",
    "lookup_email",
    "lookup_identity_map",
    "lookup_phone",
    "lookup_platform_id",
    "register_phone",
    "resolve_identity",
]
