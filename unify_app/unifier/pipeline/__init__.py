"""Unification pipeline helpers."""

from __future__ import annotations

from .conflicts import ConflictAlreadyReviewed, ConflictReviewService, record_conflict, serialize_conflict
from .fetchers import get_fetcher
from .ledger import InvalidRunTransition, RunAlreadyActive, RunFilters, SyncRunService
from .merge import MergePlan, apply_merge, build_client, plan_merge, should_update
from .normalize import NormalizedContact, UnknownSourceError, normalize_email, normalize_phone, normalize_record
from .pending import PendingCounts, count_pending
from .persistence import MicroBatchWriter, PersistenceSettings, SourcePassResult
from .resolver import ResolutionResult, resolve_identity

__all__ = [
    "ConflictAlreadyReviewed",
    "ConflictReviewService",
    "InvalidRunTransition",
    "MergePlan",
    "MicroBatchWriter",
    "NormalizedContact",
    "PendingCounts",
    "PersistenceSettings",
    "ResolutionResult",
    "RunAlreadyActive",
    "RunFilters",
    "SourcePassResult",
    "SyncRunService",
    "UnknownSourceError",
    "apply_merge",
    "build_client",
    "count_pending",
    "get_fetcher",
    "normalize_email",
    "normalize_phone",
    "normalize_record",
    "plan_merge",
    "record_conflict",
    "resolve_identity",
    "serialize_conflict",
    "should_update",
]
