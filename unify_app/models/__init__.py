# unify_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .client import Client, LifecycleStage
from .sources import PENDING_CSV_STATUSES, CsvImportRaw, CsvProcessingStatus, GhlContactRaw, ManychatContactRaw
from .unifier import (
    ConflictStatus,
    ConflictType,
    ContactIdentity,
    LeadAction,
    LeadEvent,
    MergeConflict,
    SyncRun,
    SyncRunStatus,
)

__all__ = [
    "db",
    "BaseModel",
    # Canonical store
    "Client",
    "LifecycleStage",
    # Raw source tables
    "GhlContactRaw",
    "ManychatContactRaw",
    "CsvImportRaw",
    "CsvProcessingStatus",
    "PENDING_CSV_STATUSES",
    # Unifier bookkeeping
    "SyncRun",
    "SyncRunStatus",
    "ContactIdentity",
    "LeadEvent",
    "LeadAction",
    "MergeConflict",
    "ConflictType",
    "ConflictStatus",
]
