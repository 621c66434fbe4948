# unify_app/models/client.py

"""
Canonical client model.

One row per real-world contact. Rows are created and mutated by the
unification engine; downstream collaborators (payments, messaging, dashboard)
read them but never write identity fields.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class LifecycleStage(str, enum.Enum):
    """Commercial lifecycle of a client."""

    LEAD = "lead"
    CUSTOMER = "customer"
    CHURNED = "churned"


class Client(BaseModel):
    """Unified identity built from every contact source."""

    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, unique=True)
    phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    phone_e164: Mapped[str | None] = mapped_column(db.String(20), nullable=True, index=True)
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    ghl_contact_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    manychat_subscriber_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    paypal_customer_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True)

    tags: Mapped[list | None] = mapped_column(db.JSON, nullable=True, default=list)
    wa_opt_in: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    sms_opt_in: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    email_opt_in: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)

    lifecycle_stage: Mapped[LifecycleStage] = mapped_column(
        Enum(LifecycleStage, name="client_lifecycle_stage_enum"),
        nullable=False,
        default=LifecycleStage.LEAD,
    )
    total_spend: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))

    acquisition_source: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    first_campaign: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    utm_source: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    utm_medium: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    utm_campaign: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    utm_content: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    utm_term: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    first_seen_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    last_lead_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    last_sync: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    customer_metadata: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    needs_review: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    review_reason: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    __table_args__ = (Index("idx_clients_lifecycle_stage", "lifecycle_stage"),)

    def __repr__(self):
        return f"<Client {self.id} email={self.email} phone={self.phone_e164}>"
