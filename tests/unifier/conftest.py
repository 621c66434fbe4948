from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from unify_app.models import (
    Client,
    CsvImportRaw,
    CsvProcessingStatus,
    GhlContactRaw,
    ManychatContactRaw,
    SyncRun,
    SyncRunStatus,
    db,
)
from unify_app.unifier.pipeline.ledger import LOCK_KEY

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def ghl_factory(app):
    counter = {"value": 0}

    def _factory(*, external_id: str | None = None, fetched_at: datetime | None = None, **payload) -> GhlContactRaw:
        counter["value"] += 1
        external_id = external_id or f"ghl-{counter['value']}"
        payload.setdefault("id", external_id)
        row = GhlContactRaw(
            external_id=external_id,
            payload=payload,
            fetched_at=fetched_at or BASE_TIME + timedelta(minutes=counter["value"]),
        )
        db.session.add(row)
        db.session.commit()
        return row

    return _factory


@pytest.fixture
def manychat_factory(app):
    counter = {"value": 0}

    def _factory(*, subscriber_id: str | None = None, fetched_at: datetime | None = None, **payload) -> ManychatContactRaw:
        counter["value"] += 1
        subscriber_id = subscriber_id or f"mc-{counter['value']}"
        row = ManychatContactRaw(
            subscriber_id=subscriber_id,
            payload=payload,
            fetched_at=fetched_at or BASE_TIME + timedelta(minutes=counter["value"]),
        )
        db.session.add(row)
        db.session.commit()
        return row

    return _factory


@pytest.fixture
def csv_factory(app):
    def _factory(
        *,
        email: str | None = None,
        phone: str | None = None,
        full_name: str | None = None,
        raw_data: dict | None = None,
        status: CsvProcessingStatus = CsvProcessingStatus.STAGED,
    ) -> CsvImportRaw:
        row = CsvImportRaw(
            import_id="import-1",
            email=email,
            phone=phone,
            full_name=full_name,
            raw_data=raw_data or {},
            processing_status=status,
        )
        db.session.add(row)
        db.session.commit()
        return row

    return _factory


@pytest.fixture
def client_factory(app):
    def _factory(**fields) -> Client:
        fields.setdefault("tags", [])
        fields.setdefault("customer_metadata", {})
        client = Client(**fields)
        db.session.add(client)
        db.session.commit()
        return client

    return _factory


@pytest.fixture
def sync_run_factory(app):
    def _factory(
        *,
        status: SyncRunStatus = SyncRunStatus.RUNNING,
        sources: tuple[str, ...] = ("ghl", "manychat", "csv"),
        chunk_number: int = 0,
        started_offset_minutes: int = 0,
        cursor: dict | None = None,
    ) -> SyncRun:
        now = datetime.now(timezone.utc) - timedelta(minutes=started_offset_minutes)
        holds_lock = status in (SyncRunStatus.RUNNING, SyncRunStatus.CONTINUING, SyncRunStatus.COMPLETING)
        run = SyncRun(
            status=status,
            lock_key=LOCK_KEY if holds_lock else None,
            sources=list(sources),
            batch_size=50,
            chunk_number=chunk_number,
            started_at=now,
            heartbeat_at=now,
            completed_at=now if status.is_terminal else None,
            checkpoint={"cursor": dict(cursor or {}), "zero_progress_streak": 0},
            counts_json={},
            pending_json={},
            metadata_json={},
        )
        db.session.add(run)
        db.session.commit()
        return run

    return _factory
