"""
SQLAlchemy models for the unification engine's bookkeeping tables.

``sync_runs`` is the checkpoint ledger for resumable unification jobs,
``contact_identities`` maps source identifiers to canonical clients,
``lead_events`` is the append-only audit of creates/updates, and
``merge_conflicts`` is the operator review queue for identities the engine
refuses to merge on its own.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db, utc_now

UNIFY_ALL_SOURCE = "unify-all"


class SyncRunStatus(str, enum.Enum):
    """Lifecycle states for a unification run."""

    RUNNING = "running"
    CONTINUING = "continuing"
    COMPLETING = "completing"
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset({SyncRunStatus.COMPLETED, SyncRunStatus.CANCELLED, SyncRunStatus.FAILED})
ACTIVE_RUN_STATUSES = (SyncRunStatus.RUNNING, SyncRunStatus.CONTINUING, SyncRunStatus.COMPLETING)


class SyncRun(BaseModel):
    """Ledger row describing one unification job across all of its chunks."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False, default=UNIFY_ALL_SOURCE, index=True)
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status_enum"),
        nullable=False,
        default=SyncRunStatus.RUNNING,
        index=True,
    )
    lock_key: Mapped[str | None] = mapped_column(
        db.String(50),
        nullable=True,
        unique=True,
        comment="Set while the run holds the single-writer lock; NULL once paused or terminal.",
    )
    sources: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    batch_size: Mapped[int] = mapped_column(db.Integer, nullable=False, default=50)
    chunk_number: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    iterations: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    heartbeat_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    total_fetched: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_inserted: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_conflicts: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_errors: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    checkpoint: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    pending_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    lead_events = relationship("LeadEvent", back_populates="sync_run", passive_deletes=True)
    merge_conflicts = relationship("MergeConflict", back_populates="sync_run", passive_deletes=True)

    __table_args__ = (Index("idx_sync_runs_source_status", "source", "status"),)

    @property
    def cursor(self) -> dict[str, int]:
        checkpoint = self.checkpoint or {}
        raw_cursor = checkpoint.get("cursor") or {}
        return {str(key): int(value or 0) for key, value in raw_cursor.items()}

    @property
    def total_processed(self) -> int:
        return self.total_inserted + self.total_updated + self.total_skipped + self.total_conflicts

    def __repr__(self):
        status = self.status.value if isinstance(self.status, SyncRunStatus) else self.status
        return f"<SyncRun {self.id} status={status} chunk={self.chunk_number}>"


class ContactIdentity(BaseModel):
    """Maps a source-specific identifier to its canonical client."""

    __tablename__ = "contact_identities"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    email_normalized: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone_e164: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    last_seen_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    client = relationship("Client")

    __table_args__ = (UniqueConstraint("source", "external_id", name="uq_contact_identities_source_external"),)


class LeadAction(str, enum.Enum):
    """Action recorded for a lead event."""

    CREATED = "created"
    UPDATED = "updated"


class LeadEvent(BaseModel):
    """Append-only audit row for every client create/update."""

    __tablename__ = "lead_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    event_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    action: Mapped[LeadAction] = mapped_column(Enum(LeadAction, name="lead_action_enum"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    payload: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    sync_run_id: Mapped[int | None] = mapped_column(ForeignKey("sync_runs.id", ondelete="SET NULL"), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    sync_run = relationship("SyncRun", back_populates="lead_events")

    __table_args__ = (UniqueConstraint("source", "event_id", name="uq_lead_events_source_event"),)


class ConflictType(str, enum.Enum):
    """Why an incoming record could not be merged automatically."""

    EMAIL_MISMATCH = "email_mismatch"
    DUPLICATE_CANDIDATE = "duplicate_candidate"


class ConflictStatus(str, enum.Enum):
    """Review state of a merge conflict."""

    PENDING = "pending"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class MergeConflict(BaseModel):
    """Operator review queue entry for an identity the engine refused to merge."""

    __tablename__ = "merge_conflicts"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    email_found: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone_found: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    conflict_type: Mapped[ConflictType] = mapped_column(
        Enum(ConflictType, name="merge_conflict_type_enum"),
        nullable=False,
    )
    raw_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    suggested_client_id: Mapped[int | None] = mapped_column(
        ForeignKey("clients.id", ondelete="SET NULL"), nullable=True
    )
    candidate_client_ids: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    status: Mapped[ConflictStatus] = mapped_column(
        Enum(ConflictStatus, name="merge_conflict_status_enum"),
        nullable=False,
        default=ConflictStatus.PENDING,
        index=True,
    )
    sync_run_id: Mapped[int | None] = mapped_column(ForeignKey("sync_runs.id", ondelete="SET NULL"), nullable=True)
    resolved_client_id: Mapped[int | None] = mapped_column(
        ForeignKey("clients.id", ondelete="SET NULL"), nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    sync_run = relationship("SyncRun", back_populates="merge_conflicts")

    # Enum columns persist member names, hence the upper-case predicate.
    __table_args__ = (
        Index(
            "uq_merge_conflicts_pending",
            "source",
            "external_id",
            "conflict_type",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )
