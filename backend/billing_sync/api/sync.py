from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from billing_sync.core.config import Settings
from billing_sync.db.models import SyncRun
from billing_sync.db.session import get_db
from billing_sync.dependencies import (
    get_settings_from_app,
    get_sync_service,
    get_sync_trigger_publisher,
    get_sync_worker_service,
)
from billing_sync.repositories.sync_runs import (
    SEGMENT_STATUS_COLUMNS,
    count_sync_runs,
    get_sync_run_by_id,
    get_sync_run_logs,
    list_sync_runs,
    parse_run_errors,
)
from billing_sync.schemas.sync import (
    SyncResultResponse,
    SyncRunDetailResponse,
    SyncRunListResponse,
    SyncRunLogResponse,
    SyncRunSummaryResponse,
    SyncStatusResponse,
    SyncTriggerRequest,
    SyncTriggerResponse,
)
from billing_sync.services.sync_scheduler import SyncWorkerService
from billing_sync.services.sync_service import SyncService
from billing_sync.services.sync_trigger import SyncTriggerError, SyncTriggerPublisher


router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("/trigger", response_model=SyncTriggerResponse, status_code=status.HTTP_202_ACCEPTED)
def post_sync_trigger(
    payload: SyncTriggerRequest | None = None,
    publisher: SyncTriggerPublisher = Depends(get_sync_trigger_publisher),
) -> SyncTriggerResponse:
    source = payload.source if payload is not None else "manual"
    try:
        sent = publisher.trigger(source)
    except SyncTriggerError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))

    return SyncTriggerResponse(
        status="accepted",
        source=sent.source,
        timestamp=sent.timestamp,
        message="Sync trigger sent to the worker",
    )


@router.post("/run", response_model=SyncResultResponse)
def post_sync_run(
    sync_service: SyncService = Depends(get_sync_service),
    worker: SyncWorkerService | None = Depends(get_sync_worker_service),
) -> SyncResultResponse:
    try:
        if worker is not None:
            result = worker.run_once(source="api")
        else:
            result = sync_service.run_sync(source="api")
    except Exception as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Sync failed: {exc}")

    if result is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Sync worker is shutting down")
    if result.already_running:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Sync already in progress")
    return SyncResultResponse(**result.as_dict())


@router.get("/status", response_model=SyncStatusResponse)
def get_sync_status(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings_from_app),
    worker: SyncWorkerService | None = Depends(get_sync_worker_service),
) -> SyncStatusResponse:
    runs = list_sync_runs(db, limit=settings.sync_status_recent_runs, offset=0)
    return SyncStatusResponse(
        recent_runs=[_run_summary(run) for run in runs],
        worker=worker.get_status_snapshot() if worker is not None else None,
    )


@router.get("/runs", response_model=SyncRunListResponse)
def get_sync_runs(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
) -> SyncRunListResponse:
    runs = list_sync_runs(db, limit=limit, offset=skip)
    return SyncRunListResponse(
        total=count_sync_runs(db),
        skip=skip,
        limit=limit,
        runs=[_run_summary(run) for run in runs],
    )


@router.get("/runs/{sync_run_id}", response_model=SyncRunDetailResponse)
def get_sync_run(
    sync_run_id: int,
    segment: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> SyncRunDetailResponse:
    if segment is not None and segment not in SEGMENT_STATUS_COLUMNS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"segment must be one of: {', '.join(sorted(SEGMENT_STATUS_COLUMNS))}",
        )
    run = get_sync_run_by_id(db, sync_run_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync run not found")

    logs = get_sync_run_logs(db, sync_run_id=sync_run_id, segment=segment)
    return SyncRunDetailResponse(
        **_run_summary_fields(run),
        logs=[SyncRunLogResponse.model_validate(log) for log in logs],
    )


def _run_summary(run: SyncRun) -> SyncRunSummaryResponse:
    return SyncRunSummaryResponse(**_run_summary_fields(run))


def _run_summary_fields(run: SyncRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "status": run.status,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "transactions_processed": run.transactions_processed,
        "events_created": run.events_created,
        "tags_activated": run.tags_activated,
        "tags_deactivated": run.tags_deactivated,
        "tags_unchanged": run.tags_unchanged,
        "tag_linking_status": run.tag_linking_status,
        "transaction_sync_status": run.transaction_sync_status,
        "errors": parse_run_errors(run),
    }
