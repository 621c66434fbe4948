from .schema import (
    ACTIVE_RUN_STATUSES,
    TERMINAL_RUN_STATUSES,
    UNIFY_ALL_SOURCE,
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
    "ACTIVE_RUN_STATUSES",
    "TERMINAL_RUN_STATUSES",
    "UNIFY_ALL_SOURCE",
    "ConflictStatus",
    "ConflictType",
    "ContactIdentity",
    "LeadAction",
    "LeadEvent",
    "MergeConflict",
    "SyncRun",
    "SyncRunStatus",
]
