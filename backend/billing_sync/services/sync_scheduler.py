from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import sessionmaker

from billing_sync.core.config import Settings
from billing_sync.repositories.sync_runs import reconcile_interrupted_runs, sync_run_lock
from billing_sync.services.sync_service import SyncResult, SyncService
from billing_sync.services.sync_trigger import SyncTriggerListener, SyncTriggerPayload

SYNC_JOB_ID = "billing-sync"
INTERRUPTED_RUN_NOTE = "run interrupted by process restart before completion"

ListenerFactory = Callable[[Callable[[SyncTriggerPayload], Any]], SyncTriggerListener]


class SyncWorkerService:
    """Hosts the cron job and the manual-trigger listener around one SyncService.

    Cron runs, manual triggers and the startup run share one in-process guard,
    so at most one sync executes in this process at any time.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        sync_service: SyncService,
        listener_factory: ListenerFactory | None = None,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._sync_service = sync_service
        self._listener_factory = listener_factory
        self._logger = logging.getLogger("billing_sync.sync_worker")

        self._scheduler = scheduler
        self._listener: SyncTriggerListener | None = None
        self._trigger_executor: ThreadPoolExecutor | None = None

        self._lock = Lock()
        self._running = False
        self._stopping = False
        self._sync_in_progress = False
        self._pending_future: Future[SyncResult | None] | None = None
        self._last_run_started_ts: datetime | None = None
        self._last_run_finished_ts: datetime | None = None
        self._last_run_source: str | None = None
        self._last_result: SyncResult | None = None
        self._last_error: str | None = None

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._stopping = False
            # a shut down pool cannot be reused
            self._trigger_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync-trigger-run")
            self._pending_future = None

        try:
            self._reconcile_interrupted_runs()
        except Exception:
            self._logger.exception("failed to reconcile interrupted runs at startup")

        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(
                job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
                timezone=self._settings.sync_timezone,
            )
        self._scheduler.add_job(
            self._run_scheduled,
            trigger=CronTrigger.from_crontab(
                self._settings.sync_cron_schedule,
                timezone=self._settings.sync_timezone,
            ),
            id=SYNC_JOB_ID,
            name="billing sync",
            replace_existing=True,
        )
        self._scheduler.start()

        if self._listener_factory is not None:
            self._listener = self._listener_factory(self.handle_trigger)
            self._listener.start()

        self._logger.info(
            "started sync worker cron=%s timezone=%s on_startup=%s trigger_listener=%s",
            self._settings.sync_cron_schedule,
            self._settings.sync_timezone,
            self._settings.sync_on_startup,
            self._listener is not None,
        )

        if self._settings.sync_on_startup:
            self.request_run(source="startup")

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._stopping = True

        if self._scheduler is not None and self._scheduler.running:
            # waits for an in-flight cron run
            self._scheduler.shutdown(wait=True)
        if self._listener is not None:
            self._listener.stop()
        if self._trigger_executor is not None:
            self._trigger_executor.shutdown(wait=True, cancel_futures=True)

        with self._lock:
            self._running = False
        self._logger.info("stopped sync worker")

    def run_once(self, *, source: str) -> SyncResult | None:
        """Run one sync now on the calling thread; None when the worker is shutting down."""
        with self._lock:
            if self._stopping:
                self._logger.info("sync rejected during shutdown source=%s", source)
                return None
            if self._sync_in_progress:
                self._logger.info("sync already in progress, skipping source=%s", source)
                return SyncResult.in_progress()
            self._sync_in_progress = True
            self._last_run_started_ts = datetime.now(timezone.utc)
            self._last_run_source = source

        try:
            result = self._sync_service.run_sync(source=source)
        except Exception as exc:
            with self._lock:
                self._last_error = str(exc)
            raise
        else:
            with self._lock:
                self._last_result = result
                if not result.already_running:
                    self._last_error = None
            return result
        finally:
            with self._lock:
                self._sync_in_progress = False
                self._last_run_finished_ts = datetime.now(timezone.utc)

    def request_run(self, *, source: str) -> bool:
        """Queue a run on the trigger executor; False when one is already queued or running."""
        with self._lock:
            if self._stopping or not self._running:
                return False
            pending = self._pending_future
            if self._sync_in_progress or (pending is not None and not pending.done()):
                self._logger.info("sync already queued or running, ignoring source=%s", source)
                return False
            future = self._trigger_executor.submit(self._run_guarded, source)
            self._pending_future = future
        return True

    def handle_trigger(self, payload: SyncTriggerPayload) -> None:
        self.request_run(source=payload.source)

    def is_sync_in_progress(self) -> bool:
        with self._lock:
            return self._sync_in_progress

    def get_status_snapshot(self) -> dict[str, Any]:
        next_run = None
        if self._scheduler is not None and self._scheduler.running:
            job = self._scheduler.get_job(SYNC_JOB_ID)
            if job is not None and job.next_run_time is not None:
                next_run = job.next_run_time.isoformat()
        listener_status = self._listener.get_status() if self._listener is not None else None

        with self._lock:
            last = self._last_result
            return {
                "running": self._running and not self._stopping,
                "sync_in_progress": self._sync_in_progress,
                "cron_schedule": self._settings.sync_cron_schedule,
                "timezone": self._settings.sync_timezone,
                "next_run_ts": next_run,
                "last_run_source": self._last_run_source,
                "last_run_started_ts": _to_iso(self._last_run_started_ts),
                "last_run_finished_ts": _to_iso(self._last_run_finished_ts),
                "last_result": last.as_dict() if last is not None else None,
                "last_error": self._last_error,
                "trigger_listener": listener_status,
            }

    def _run_scheduled(self) -> None:
        self._run_guarded("cron")

    def _run_guarded(self, source: str) -> SyncResult | None:
        try:
            return self.run_once(source=source)
        except Exception:
            self._logger.exception("sync run raised source=%s", source)
            return None

    def _reconcile_interrupted_runs(self) -> None:
        with sync_run_lock(self._session_factory) as acquired:
            if not acquired:
                self._logger.info("sync lock held by another process, skipping reconciliation")
                return
            with self._session_factory() as db:
                count = reconcile_interrupted_runs(db, note=INTERRUPTED_RUN_NOTE)
                db.commit()
        if count:
            self._logger.warning("reconciled interrupted runs at startup count=%s", count)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
