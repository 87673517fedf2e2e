from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SyncResultResponse(BaseModel):
    sync_run_id: int
    transactions_processed: int
    events_created: int
    errors: list[str] = Field(default_factory=list)
    tags_activated: int = 0
    tags_deactivated: int = 0
    tags_unchanged: int = 0
    already_running: bool = False


class SyncTriggerRequest(BaseModel):
    source: str = Field(default="manual", min_length=1, max_length=64)


class SyncTriggerResponse(BaseModel):
    status: str
    source: str
    timestamp: datetime
    message: str


class SyncRunSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    transactions_processed: int
    events_created: int
    tags_activated: int
    tags_deactivated: int
    tags_unchanged: int
    tag_linking_status: str | None = None
    transaction_sync_status: str | None = None
    errors: list[str] = Field(default_factory=list)


class SyncRunLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    segment: str
    level: str
    message: str
    context: dict[str, Any] | None = None
    created_at: datetime


class SyncRunDetailResponse(SyncRunSummaryResponse):
    logs: list[SyncRunLogResponse] = Field(default_factory=list)


class SyncRunListResponse(BaseModel):
    total: int
    skip: int
    limit: int
    runs: list[SyncRunSummaryResponse]


class SyncStatusResponse(BaseModel):
    recent_runs: list[SyncRunSummaryResponse]
    worker: dict[str, Any] | None = None
