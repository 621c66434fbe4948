"""
Micro-batch persistence for one source pass.

A source pass fetches the next slice of raw rows past the cursor and writes
them in micro-batches ordered by raw id. Each micro-batch commits as a unit. On
failure the session is rolled back and the batch is retried once after a short
delay; if it fails again every record is replayed on its own so one bad row
costs one error instead of the whole batch.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from config.merge_policy import DEFAULT_PROFILE, MergePolicyProfile
from unify_app.models import Client, LeadAction, db
from unify_app.unifier.metrics import record_micro_batch, record_outcomes

from .conflicts import record_conflict
from .events import event_token, is_duplicate_event, record_lead_event, upsert_identities
from .fetchers import SourceFetcher, get_fetcher
from .merge import apply_merge, build_client, plan_merge
from .normalize import DEFAULT_COUNTRY_CODE, NormalizedContact, normalize_record
from .resolver import PhoneIndex, build_phone_index, register_phone, resolve_identity

INSERTED = "inserted"
UPDATED = "updated"
SKIPPED = "skipped"
CONFLICT = "conflicts"
ERROR = "errors"


@dataclass(frozen=True)
class PersistenceSettings:
    micro_batch_size: int = 25
    retry_delay: float = 0.5
    default_country_code: str = DEFAULT_COUNTRY_CODE
    profile: MergePolicyProfile = DEFAULT_PROFILE

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, profile: MergePolicyProfile | None = None) -> "PersistenceSettings":
        return cls(
            micro_batch_size=max(1, int(config.get("UNIFIER_MICRO_BATCH_SIZE", 25))),
            retry_delay=max(0.0, float(config.get("UNIFIER_MICRO_BATCH_RETRY_DELAY", 0.5))),
            default_country_code=str(config.get("UNIFIER_DEFAULT_COUNTRY_CODE") or DEFAULT_COUNTRY_CODE),
            profile=profile or DEFAULT_PROFILE,
        )


@dataclass(slots=True)
class SourcePassResult:
    """Counters for one fetch-normalize-resolve-merge-persist pass over a source."""

    source: str
    cursor: int
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0
    error_samples: list[str] = field(default_factory=list)

    @property
    def merged(self) -> int:
        return self.inserted + self.updated

    @property
    def processed(self) -> int:
        return self.inserted + self.updated + self.skipped + self.conflicts

    @property
    def made_progress(self) -> bool:
        return self.processed > 0

    def add(self, outcomes: Mapping[str, int]) -> None:
        self.inserted += outcomes.get(INSERTED, 0)
        self.updated += outcomes.get(UPDATED, 0)
        self.skipped += outcomes.get(SKIPPED, 0)
        self.conflicts += outcomes.get(CONFLICT, 0)
        self.errors += outcomes.get(ERROR, 0)

    def as_counts(self) -> dict[str, int]:
        return {
            "fetched": self.fetched,
            "processed": self.processed,
            "merged": self.merged,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "errors": self.errors,
        }


class MicroBatchWriter:
    """Writes one source pass. Owns the commit boundaries of its session."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        settings: PersistenceSettings | None = None,
        sync_run_id: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session or db.session
        self.settings = settings or PersistenceSettings()
        self.sync_run_id = sync_run_id
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Source pass
    # ------------------------------------------------------------------

    def process_source(self, source: str, *, after_id: int = 0, limit: int = 50) -> SourcePassResult:
        fetcher = get_fetcher(source)
        raw_ids = [row.id for row in fetcher.fetch(self.session, after_id=after_id, limit=limit)]
        result = SourcePassResult(source=source, cursor=int(after_id or 0), fetched=len(raw_ids))

        size = self.settings.micro_batch_size
        for start in range(0, len(raw_ids), size):
            batch_ids = raw_ids[start : start + size]
            self._write_micro_batch(fetcher, batch_ids, result)
            result.cursor = max(result.cursor, batch_ids[-1])

        record_outcomes(
            source,
            {
                INSERTED: result.inserted,
                UPDATED: result.updated,
                SKIPPED: result.skipped,
                CONFLICT: result.conflicts,
                ERROR: result.errors,
            },
        )
        return result

    def _write_micro_batch(self, fetcher: SourceFetcher, batch_ids: Sequence[int], result: SourcePassResult) -> None:
        for attempt in range(2):
            try:
                outcomes = self._apply_batch(fetcher, batch_ids)
                self.session.commit()
            except Exception as exc:
                self.session.rollback()
                _log_warning(
                    "Unifier micro-batch failed",
                    source=fetcher.source,
                    attempt=attempt + 1,
                    size=len(batch_ids),
                    error=str(exc),
                )
                if attempt == 0 and self.settings.retry_delay:
                    self._sleep(self.settings.retry_delay)
                continue
            result.add(outcomes)
            record_micro_batch(fetcher.source, "committed" if attempt == 0 else "retried")
            return

        record_micro_batch(fetcher.source, "replayed")
        for raw_id in batch_ids:
            try:
                outcomes = self._apply_batch(fetcher, [raw_id])
                self.session.commit()
            except Exception as exc:
                self.session.rollback()
                result.errors += 1
                if len(result.error_samples) < 5:
                    result.error_samples.append(f"{fetcher.source}#{raw_id}: {exc}")
                self._mark_error(fetcher, raw_id, exc)
                continue
            result.add(outcomes)

    def _mark_error(self, fetcher: SourceFetcher, raw_id: int, exc: Exception) -> None:
        row = self.session.get(fetcher.model, raw_id)
        if row is None:
            return
        fetcher.mark_error(row, message=f"{type(exc).__name__}: {exc}")
        try:
            self.session.commit()
        except Exception as mark_exc:
            self.session.rollback()
            _log_warning(
                "Unifier could not record a row error",
                source=fetcher.source,
                raw_id=raw_id,
                error=str(mark_exc),
            )

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _apply_batch(self, fetcher: SourceFetcher, batch_ids: Sequence[int]) -> Counter[str]:
        model = fetcher.model
        rows = self.session.query(model).filter(model.id.in_(batch_ids)).order_by(model.id.asc()).all()
        contacts = [
            (row, normalize_record(fetcher.source, row, default_country_code=self.settings.default_country_code))
            for row in rows
        ]
        phone_index = build_phone_index(self.session, (contact.phone for _, contact in contacts if contact))

        outcomes: Counter[str] = Counter()
        for row, contact in contacts:
            outcomes[self._apply_record(fetcher, row, contact, phone_index)] += 1
        return outcomes

    def _apply_record(
        self,
        fetcher: SourceFetcher,
        row: Any,
        contact: NormalizedContact | None,
        phone_index: PhoneIndex,
    ) -> str:
        if contact is None:
            fetcher.mark_skipped(row, reason="no usable email or phone")
            return SKIPPED

        token = event_token(contact)
        if is_duplicate_event(self.session, contact.source, token):
            fetcher.mark_skipped(row, reason=f"duplicate event {token}")
            return SKIPPED

        resolution = resolve_identity(self.session, contact, phone_index=phone_index)
        if resolution.is_conflict:
            record_conflict(self.session, contact=contact, result=resolution, sync_run_id=self.sync_run_id)
            fetcher.mark_conflict(row)
            return CONFLICT

        now = datetime.now(timezone.utc)
        if resolution.is_new:
            plan = plan_merge(None, contact, self.settings.profile)
            client = build_client(plan)
            client.last_sync = now
            self.session.add(client)
            self.session.flush()
            action, outcome = LeadAction.CREATED, INSERTED
        else:
            client = self.session.get(Client, resolution.client_id)
            plan = plan_merge(client, contact, self.settings.profile)
            apply_merge(client, plan)
            client.last_sync = now
            action, outcome = LeadAction.UPDATED, UPDATED

        register_phone(phone_index, client.phone_e164, client.id)
        upsert_identities(self.session, contact, client.id)
        record_lead_event(
            self.session,
            contact=contact,
            client=client,
            action=action,
            token=token,
            sync_run_id=self.sync_run_id,
            changed_fields=plan.changed_fields(),
        )
        fetcher.mark_processed(row, client_id=client.id)
        return outcome


def _log_warning(message: str, **fields: Any) -> None:
    if not has_app_context():
        return
    current_app.logger.warning(message, extra={f"unifier_{key}": value for key, value in fields.items()})


__all__ = [
    "CONFLICT",
    "ERROR",
    "INSERTED",
    "MicroBatchWriter",
    "PersistenceSettings",
    "SKIPPED",
    "SourcePassResult",
    "UPDATED",
]
