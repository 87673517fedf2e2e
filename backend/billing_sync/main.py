import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from sqlalchemy.orm import Session

from billing_sync.api.sync import router as sync_router
from billing_sync.core.config import Settings, get_settings, validate_worker_settings
from billing_sync.core.logging import configure_logging
from billing_sync.db.session import SessionLocal, check_db_connection, get_db
from billing_sync.services.lago_client import LagoClient
from billing_sync.services.retry import RetryPolicy
from billing_sync.services.steve_client import SteveClient
from billing_sync.services.sync_scheduler import SyncWorkerService
from billing_sync.services.sync_service import SyncService
from billing_sync.services.sync_trigger import SyncTriggerListener, SyncTriggerPublisher

_logger = logging.getLogger("billing_sync.main")


def build_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.http_retry_max_attempts,
        initial_delay_seconds=settings.http_retry_initial_delay_seconds,
        max_delay_seconds=settings.http_retry_max_delay_seconds,
    )


def build_sync_service(settings: Settings) -> SyncService:
    retry_policy = build_retry_policy(settings)
    return SyncService(
        settings=settings,
        session_factory=SessionLocal,
        steve_client=SteveClient(
            base_url=settings.steve_api_url,
            api_key=settings.steve_api_key,
            timeout_seconds=settings.steve_http_timeout_seconds,
            retry_policy=retry_policy,
        ),
        lago_client=LagoClient(
            base_url=settings.lago_api_url,
            api_key=settings.lago_api_key,
            timeout_seconds=settings.lago_http_timeout_seconds,
            retry_policy=retry_policy,
        ),
    )


def build_worker_service(settings: Settings, sync_service: SyncService) -> SyncWorkerService:
    return SyncWorkerService(
        settings=settings,
        session_factory=SessionLocal,
        sync_service=sync_service,
        listener_factory=lambda on_trigger: SyncTriggerListener(settings=settings, on_trigger=on_trigger),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    sync_service = build_sync_service(settings)

    app.state.settings = settings
    app.state.sync_service = sync_service
    app.state.sync_trigger_publisher = SyncTriggerPublisher(settings=settings)
    app.state.sync_worker_service = None

    worker: SyncWorkerService | None = None
    if settings.sync_worker_enabled:
        validate_worker_settings(settings)
        worker = build_worker_service(settings, sync_service)
        app.state.sync_worker_service = worker
        worker.start()
    else:
        missing = settings.missing_required()
        if missing:
            _logger.warning("sync settings incomplete, manual runs will fail missing=%s", ",".join(missing))

    try:
        yield
    finally:
        if worker is not None:
            worker.stop()


app = FastAPI(title="Billing Sync Backend", lifespan=lifespan)
app.include_router(sync_router)


@app.get("/health")
def health(request: Request, db: Session = Depends(get_db)):
    db_ok, db_error = check_db_connection(db)
    worker = getattr(request.app.state, "sync_worker_service", None)
    return {
        "status": "ok" if db_ok else "degraded",
        "service": "billing-sync",
        "db_ok": db_ok,
        "db_error": db_error,
        "worker_enabled": worker is not None,
    }
