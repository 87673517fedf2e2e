from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest import TestCase
from unittest.mock import MagicMock, patch

from billing_sync.core.config import Settings
from billing_sync.services.sync_scheduler import INTERRUPTED_RUN_NOTE, SYNC_JOB_ID, SyncWorkerService
from billing_sync.services.sync_service import SyncResult


def _result(sync_run_id: int = 1) -> SyncResult:
    return SyncResult(sync_run_id=sync_run_id, transactions_processed=2, events_created=1)


class SyncWorkerServiceTests(TestCase):
    def setUp(self) -> None:
        self.sync_service = MagicMock()
        self.sync_service.run_sync.return_value = _result()
        self.scheduler = MagicMock()
        self.scheduler.running = True
        self.scheduler.get_job.return_value = SimpleNamespace(
            next_run_time=datetime(2026, 10, 16, 12, 15, tzinfo=timezone.utc)
        )
        self.session_factory = MagicMock()

        lock_patcher = patch("billing_sync.services.sync_scheduler.sync_run_lock")
        self.lock_mock = lock_patcher.start()
        self.lock_mock.return_value.__enter__.return_value = True
        self.addCleanup(lock_patcher.stop)
        reconcile_patcher = patch(
            "billing_sync.services.sync_scheduler.reconcile_interrupted_runs",
            return_value=0,
        )
        self.reconcile_mock = reconcile_patcher.start()
        self.addCleanup(reconcile_patcher.stop)

    def _worker(self, *, listener_factory=None, **settings_overrides) -> SyncWorkerService:
        worker = SyncWorkerService(
            settings=Settings(sync_cron_schedule="*/15 * * * *", **settings_overrides),
            session_factory=self.session_factory,
            sync_service=self.sync_service,
            listener_factory=listener_factory,
            scheduler=self.scheduler,
        )
        self.addCleanup(worker.stop)
        return worker

    def test_start_reconciles_and_schedules_cron_job(self) -> None:
        listener = MagicMock()
        worker = self._worker(listener_factory=lambda on_trigger: listener)

        worker.start()

        self.reconcile_mock.assert_called_once()
        self.assertEqual(self.reconcile_mock.call_args.kwargs["note"], INTERRUPTED_RUN_NOTE)
        self.assertEqual(self.scheduler.add_job.call_args.kwargs["id"], SYNC_JOB_ID)
        self.scheduler.start.assert_called_once()
        listener.start.assert_called_once()
        self.sync_service.run_sync.assert_not_called()

    def test_reconcile_is_skipped_when_lock_is_held(self) -> None:
        self.lock_mock.return_value.__enter__.return_value = False

        self._worker().start()

        self.reconcile_mock.assert_not_called()
        self.scheduler.start.assert_called_once()

    def test_run_once_records_last_result(self) -> None:
        worker = self._worker()

        result = worker.run_once(source="api")

        self.assertEqual(result.sync_run_id, 1)
        self.sync_service.run_sync.assert_called_once_with(source="api")
        snapshot = worker.get_status_snapshot()
        self.assertEqual(snapshot["last_run_source"], "api")
        self.assertEqual(snapshot["last_result"]["events_created"], 1)
        self.assertIsNone(snapshot["last_error"])
        self.assertFalse(snapshot["sync_in_progress"])

    def test_overlapping_run_reports_in_progress(self) -> None:
        worker = self._worker()
        nested: list[SyncResult | None] = []

        def _run_sync(*, source: str) -> SyncResult:
            self.assertTrue(worker.is_sync_in_progress())
            nested.append(worker.run_once(source="cron"))
            return _result()

        self.sync_service.run_sync.side_effect = _run_sync

        worker.run_once(source="api")

        self.assertEqual(len(nested), 1)
        self.assertTrue(nested[0].already_running)
        self.assertEqual(self.sync_service.run_sync.call_count, 1)

    def test_failure_is_recorded_and_reraised(self) -> None:
        worker = self._worker()
        self.sync_service.run_sync.side_effect = RuntimeError("database unavailable")

        with self.assertRaises(RuntimeError):
            worker.run_once(source="api")

        self.assertEqual(worker.get_status_snapshot()["last_error"], "database unavailable")
        self.assertFalse(worker.is_sync_in_progress())

    def test_scheduled_run_swallows_failure(self) -> None:
        worker = self._worker()
        self.sync_service.run_sync.side_effect = RuntimeError("down")

        worker._run_scheduled()

        self.sync_service.run_sync.assert_called_once_with(source="cron")

    def test_request_run_executes_on_worker_thread(self) -> None:
        worker = self._worker()
        worker.start()

        self.assertTrue(worker.request_run(source="manual"))
        result = worker._pending_future.result(timeout=5)

        self.assertEqual(result.sync_run_id, 1)
        self.sync_service.run_sync.assert_called_once_with(source="manual")

    def test_request_run_requires_started_worker(self) -> None:
        worker = self._worker()

        self.assertFalse(worker.request_run(source="manual"))
        self.sync_service.run_sync.assert_not_called()

    def test_startup_run_is_requested_when_enabled(self) -> None:
        worker = self._worker(sync_on_startup=True)

        worker.start()
        worker._pending_future.result(timeout=5)

        self.sync_service.run_sync.assert_called_once_with(source="startup")

    def test_runs_are_rejected_after_stop(self) -> None:
        worker = self._worker()
        worker.start()
        worker.stop()

        self.assertIsNone(worker.run_once(source="api"))
        self.assertFalse(worker.request_run(source="manual"))
        self.scheduler.shutdown.assert_called_once_with(wait=True)

    def test_restarted_worker_accepts_triggers(self) -> None:
        worker = self._worker()
        worker.start()
        worker.stop()
        worker.start()

        self.assertTrue(worker.request_run(source="manual"))
        result = worker._pending_future.result(timeout=5)

        self.assertEqual(result.sync_run_id, 1)
        self.sync_service.run_sync.assert_called_once_with(source="manual")

    def test_status_snapshot_includes_schedule(self) -> None:
        worker = self._worker()
        worker.start()

        snapshot = worker.get_status_snapshot()

        self.assertTrue(snapshot["running"])
        self.assertEqual(snapshot["cron_schedule"], "*/15 * * * *")
        self.assertEqual(snapshot["next_run_ts"], "2026-10-16T12:15:00+00:00")
        self.assertIsNone(snapshot["trigger_listener"])
