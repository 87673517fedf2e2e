from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, insert, select, text, update
from sqlalchemy.orm import Session, sessionmaker

from billing_sync.db.models import (
    SyncedTransactionEvent,
    SyncRun,
    SyncRunLog,
    TransactionSyncState,
)

SEGMENT_TAG_LINKING = "tag_linking"
SEGMENT_TRANSACTION_SYNC = "transaction_sync"
SEGMENT_STATUS_COLUMNS: dict[str, str] = {
    SEGMENT_TAG_LINKING: "tag_linking_status",
    SEGMENT_TRANSACTION_SYNC: "transaction_sync_status",
}
SEGMENT_STATUSES: tuple[str, ...] = ("success", "warning", "error", "skipped")

# Arbitrary application-wide key for pg_try_advisory_lock.
SYNC_RUN_ADVISORY_LOCK_KEY = 724_301_118

_logger = logging.getLogger("billing_sync.sync_runs")


@dataclass(frozen=True)
class SyncStateUpdate:
    steve_transaction_id: int
    last_synced_meter_value: int
    total_kwh_billed: float
    last_sync_run_id: int
    is_finalized: bool


@dataclass(frozen=True)
class SyncedEventRecord:
    steve_transaction_id: int
    lago_event_transaction_id: str
    user_mapping_id: int | None
    kwh_delta: float
    meter_value_from: int
    meter_value_to: int
    is_final: bool
    is_billable: bool
    sync_run_id: int
    transaction_sync_state_id: int | None = None


def create_sync_run(db: Session) -> SyncRun:
    run = SyncRun(status="running")
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def get_running_sync(db: Session) -> SyncRun | None:
    return db.scalars(
        select(SyncRun).where(SyncRun.status == "running").order_by(SyncRun.id).limit(1)
    ).first()


def list_running_runs(db: Session) -> list[SyncRun]:
    return list(db.scalars(select(SyncRun).where(SyncRun.status == "running").order_by(SyncRun.id)))


def mark_sync_complete(
    db: Session,
    *,
    sync_run_id: int,
    transactions_processed: int,
    events_created: int,
    errors: list[str] | None = None,
    tags_activated: int = 0,
    tags_deactivated: int = 0,
    tags_unchanged: int = 0,
) -> None:
    db.execute(
        update(SyncRun)
        .where(SyncRun.id == sync_run_id)
        .values(
            status="completed",
            completed_at=datetime.now(timezone.utc),
            transactions_processed=transactions_processed,
            events_created=events_created,
            errors=_encode_errors(errors),
            tags_activated=tags_activated,
            tags_deactivated=tags_deactivated,
            tags_unchanged=tags_unchanged,
        )
    )


def mark_sync_failed(db: Session, *, sync_run_id: int, errors: list[str]) -> None:
    db.execute(
        update(SyncRun)
        .where(SyncRun.id == sync_run_id)
        .values(
            status="failed",
            completed_at=datetime.now(timezone.utc),
            errors=_encode_errors(errors) or json.dumps(["Sync failed"]),
        )
    )


def reconcile_interrupted_runs(db: Session, *, note: str) -> int:
    interrupted = list_running_runs(db)
    now = datetime.now(timezone.utc)
    for run in interrupted:
        existing = parse_run_errors(run)
        run.status = "failed"
        run.completed_at = now
        run.errors = json.dumps([*existing, note])
        db.add(run)
    return len(interrupted)


def update_segment_status(db: Session, *, sync_run_id: int, segment: str, status: str) -> None:
    column = SEGMENT_STATUS_COLUMNS.get(segment)
    if column is None:
        raise ValueError(f"unknown sync segment: {segment}")
    if status not in SEGMENT_STATUSES:
        raise ValueError(f"unknown segment status: {status}")
    db.execute(update(SyncRun).where(SyncRun.id == sync_run_id).values({column: status}))


def insert_run_logs(db: Session, rows: list[dict[str, Any]]) -> int:
    if not rows:
        return 0
    db.execute(insert(SyncRunLog), rows)
    return len(rows)


def list_sync_runs(db: Session, *, limit: int = 20, offset: int = 0) -> list[SyncRun]:
    return list(
        db.scalars(
            select(SyncRun)
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .limit(limit)
            .offset(offset)
        )
    )


def count_sync_runs(db: Session) -> int:
    return int(db.scalar(select(func.count()).select_from(SyncRun)) or 0)


def get_sync_run_by_id(db: Session, sync_run_id: int) -> SyncRun | None:
    return db.get(SyncRun, sync_run_id)


def get_sync_run_logs(
    db: Session,
    *,
    sync_run_id: int,
    segment: str | None = None,
) -> list[SyncRunLog]:
    statement = select(SyncRunLog).where(SyncRunLog.sync_run_id == sync_run_id)
    if segment is not None:
        statement = statement.where(SyncRunLog.segment == segment)
    return list(db.scalars(statement.order_by(SyncRunLog.created_at, SyncRunLog.id)))


def get_sync_states(db: Session, transaction_ids: list[int]) -> list[TransactionSyncState]:
    if not transaction_ids:
        return []
    return list(
        db.scalars(
            select(TransactionSyncState).where(
                TransactionSyncState.steve_transaction_id.in_(transaction_ids)
            )
        )
    )


def upsert_sync_state(db: Session, state: SyncStateUpdate) -> TransactionSyncState:
    existing = db.scalars(
        select(TransactionSyncState).where(
            TransactionSyncState.steve_transaction_id == state.steve_transaction_id
        )
    ).first()

    if existing is None:
        existing = TransactionSyncState(**asdict(state))
    else:
        existing.last_synced_meter_value = state.last_synced_meter_value
        existing.total_kwh_billed = state.total_kwh_billed
        existing.last_sync_run_id = state.last_sync_run_id
        existing.is_finalized = state.is_finalized
        existing.updated_at = datetime.now(timezone.utc)
    db.add(existing)
    db.flush()
    return existing


def batch_upsert_sync_states(db: Session, states: list[SyncStateUpdate]) -> dict[int, int]:
    """Upsert row by row; returns sync-state primary keys by transaction id."""
    state_ids: dict[int, int] = {}
    for state in states:
        row = upsert_sync_state(db, state)
        state_ids[state.steve_transaction_id] = int(row.id)
    return state_ids


def batch_create_synced_events(db: Session, events: list[SyncedEventRecord]) -> int:
    if not events:
        return 0
    db.execute(insert(SyncedTransactionEvent), [asdict(event) for event in events])
    return len(events)


def parse_run_errors(run: SyncRun) -> list[str]:
    raw = run.errors
    if raw is None or str(raw).strip() == "":
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return [str(raw)]
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    return [str(parsed)]


@contextmanager
def sync_run_lock(session_factory: sessionmaker) -> Iterator[bool]:
    """Hold a PostgreSQL advisory lock for the duration of one sync run.

    Yields False when another process already holds the lock. Other dialects
    have no advisory locks and always yield True.
    """
    with session_factory() as db:
        dialect = db.get_bind().dialect.name
        if dialect != "postgresql":
            yield True
            return

        # No commit until unlock: the open transaction pins the pooled connection holding the lock.
        acquired = bool(
            db.scalar(
                text("SELECT pg_try_advisory_lock(:key)"),
                {"key": SYNC_RUN_ADVISORY_LOCK_KEY},
            )
        )
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    db.execute(
                        text("SELECT pg_advisory_unlock(:key)"),
                        {"key": SYNC_RUN_ADVISORY_LOCK_KEY},
                    )
                    db.commit()
                except Exception:
                    _logger.exception("failed to release sync advisory lock")


def _encode_errors(errors: list[str] | None) -> str | None:
    if not errors:
        return None
    return json.dumps(list(errors))
