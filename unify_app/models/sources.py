# unify_app/models/sources.py

"""
Raw contact staging tables, one per upstream source.

Rows are written by the ingesting collaborators (CRM sync, chat platform sync,
spreadsheet upload). The unification engine only consumes them by stamping
``processed_at`` (or the csv ``processing_status``); rows are never deleted so
they double as an audit trail.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db, utc_now


class GhlContactRaw(BaseModel):
    """Raw CRM contact payload."""

    __tablename__ = "ghl_contacts_raw"

    id: Mapped[int] = mapped_column(primary_key=True)
    external_id: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    fetched_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    processed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_ghl_contacts_raw_pending", "processed_at", "id"),)


class ManychatContactRaw(BaseModel):
    """Raw chat-platform subscriber payload."""

    __tablename__ = "manychat_contacts_raw"

    id: Mapped[int] = mapped_column(primary_key=True)
    subscriber_id: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    fetched_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    processed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_manychat_contacts_raw_pending", "processed_at", "id"),)


class CsvProcessingStatus(str, enum.Enum):
    """Lifecycle of a spreadsheet import row."""

    STAGED = "staged"
    PENDING = "pending"
    MERGED = "merged"
    SKIPPED = "skipped"
    ERROR = "error"


PENDING_CSV_STATUSES = (CsvProcessingStatus.STAGED, CsvProcessingStatus.PENDING)


class CsvImportRaw(BaseModel):
    """One row of an uploaded spreadsheet, pre-parsed into identity columns."""

    __tablename__ = "csv_imports_raw"

    id: Mapped[int] = mapped_column(primary_key=True)
    import_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    row_number: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    raw_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    source_type: Mapped[str] = mapped_column(db.String(50), nullable=False, default="csv")
    processing_status: Mapped[CsvProcessingStatus] = mapped_column(
        Enum(CsvProcessingStatus, name="csv_processing_status_enum"),
        nullable=False,
        default=CsvProcessingStatus.STAGED,
        index=True,
    )
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    merged_client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id"), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
