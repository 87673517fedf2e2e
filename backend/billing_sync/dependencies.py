from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

from billing_sync.core.config import Settings

if TYPE_CHECKING:
    from billing_sync.services.sync_scheduler import SyncWorkerService
    from billing_sync.services.sync_service import SyncService
    from billing_sync.services.sync_trigger import SyncTriggerPublisher


def get_settings_from_app(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise HTTPException(status_code=503, detail="Application settings are not initialized")
    return settings


def get_sync_service(request: Request) -> "SyncService":
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Sync service is not initialized")
    return service


def get_sync_trigger_publisher(request: Request) -> "SyncTriggerPublisher":
    publisher = getattr(request.app.state, "sync_trigger_publisher", None)
    if publisher is None:
        raise HTTPException(status_code=503, detail="Sync trigger publisher is not initialized")
    return publisher


def get_sync_worker_service(request: Request) -> "SyncWorkerService | None":
    return getattr(request.app.state, "sync_worker_service", None)
