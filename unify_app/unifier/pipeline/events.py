"""Lead-event audit rows and the source identity map."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Session

from unify_app.models import Client, ContactIdentity, LeadAction, LeadEvent

from .normalize import NormalizedContact

MAX_EVENT_ID_LENGTH = 255


def event_token(contact: NormalizedContact) -> str:
    """
    Idempotency token for one create/update.

    The payload's own event id wins; otherwise the source plus external id (or
    email/phone) plus arrival timestamp. Rows without an arrival timestamp fall
    back to the raw row id.
    """
    if contact.event_id:
        return contact.event_id[:MAX_EVENT_ID_LENGTH]
    arrived = contact.arrived_at.isoformat() if contact.arrived_at else f"raw{contact.raw_id}"
    key = contact.external_id or contact.email or contact.phone or f"raw{contact.raw_id}"
    return f"{contact.source}:{key}:{arrived}"[:MAX_EVENT_ID_LENGTH]


def is_duplicate_event(session: Session, source: str, token: str) -> bool:
    return (
        session.query(LeadEvent.id).filter(LeadEvent.source == source, LeadEvent.event_id == token).first()
        is not None
    )


def record_lead_event(
    session: Session,
    *,
    contact: NormalizedContact,
    client: Client,
    action: LeadAction,
    token: str,
    sync_run_id: int | None = None,
    changed_fields: list[str] | None = None,
) -> LeadEvent:
    event = LeadEvent(
        event_id=token,
        source=contact.source,
        action=action,
        client_id=client.id,
        email=contact.email,
        phone=contact.phone,
        full_name=contact.full_name,
        payload={
            "raw_id": contact.raw_id,
            "external_id": contact.external_id,
            "external_ids": dict(contact.external_ids),
            "changed_fields": changed_fields or [],
        },
        sync_run_id=sync_run_id,
    )
    session.add(event)
    return event


def upsert_identities(session: Session, contact: NormalizedContact, client_id: int) -> list[ContactIdentity]:
    """Point every platform id carried by ``contact`` at ``client_id``."""
    now = datetime.now(timezone.utc)
    identities: list[ContactIdentity] = []
    for platform, external_id in contact.external_ids.items():
        identity = (
            session.query(ContactIdentity)
            .filter(ContactIdentity.source == platform, ContactIdentity.external_id == external_id)
            .one_or_none()
        )
        if identity is None:
            identity = ContactIdentity(
                source=platform,
                external_id=external_id,
                client_id=client_id,
                first_seen_at=now,
            )
            session.add(identity)
        identity.client_id = client_id
        identity.email_normalized = contact.email or identity.email_normalized
        identity.phone_e164 = contact.phone or identity.phone_e164
        identity.last_seen_at = now
        identities.append(identity)
    return identities


__all__ = ["event_token", "is_duplicate_event", "record_lead_event", "upsert_identities"]
