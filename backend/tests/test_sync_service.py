from __future__ import annotations

from types import SimpleNamespace
from unittest import TestCase
from unittest.mock import MagicMock, patch

from billing_sync.core.config import Settings
from billing_sync.schemas.steve import OcppTag, SteveTransaction
from billing_sync.services.api_client import ApiError
from billing_sync.services.sync_service import ALREADY_RUNNING_MESSAGE, SyncService

_MODULE = "billing_sync.services.sync_service"


def _settings(**overrides) -> Settings:
    values = {
        "steve_api_url": "http://steve.local/steve/api/",
        "steve_api_key": "steve-key",
        "lago_api_url": "http://lago.local/api/v1/",
        "lago_api_key": "lago-key",
        "sync_tag_linking_enabled": True,
    }
    values.update(overrides)
    return Settings(**values)


def _tx(tx_id: int, id_tag: str, *, start: str = "1000", stop: str | None = None, latest: str | None = None):
    return SteveTransaction(
        id=tx_id,
        charge_box_id="CB-1",
        ocpp_id_tag=id_tag,
        start_timestamp="2026-10-16T08:00:00Z",
        start_value=start,
        stop_timestamp="2026-10-16T09:00:00Z" if stop is not None else None,
        stop_value=stop,
        latest_meter_value=latest,
    )


def _tag(id_tag: str, pk: int, *, parent: str | None = None, limit: int | None = -1) -> OcppTag:
    return OcppTag(id_tag=id_tag, ocpp_tag_pk=pk, parent_id_tag=parent, max_active_transaction_count=limit)


def _mapping(mapping_id: int, id_tag: str, subscription: str | None) -> SimpleNamespace:
    return SimpleNamespace(
        id=mapping_id,
        steve_ocpp_id_tag=id_tag,
        lago_customer_external_id=f"cust-{mapping_id}",
        lago_subscription_external_id=subscription,
    )


class SyncServiceTests(TestCase):
    def setUp(self) -> None:
        self.steve = MagicMock()
        self.steve.get_active_transactions.return_value = []
        self.steve.get_recently_completed_transactions.return_value = []
        self.steve.get_ocpp_tags.return_value = []
        self.lago = MagicMock()
        self.lago.get_customers.return_value = []
        self.lago.get_subscriptions.return_value = []
        self.session_factory = MagicMock()

        self.mocks: dict[str, MagicMock] = {}
        for name in (
            "list_active_mappings",
            "get_running_sync",
            "create_sync_run",
            "get_sync_states",
            "batch_upsert_sync_states",
            "batch_create_synced_events",
            "mark_sync_complete",
            "mark_sync_failed",
            "sync_run_lock",
        ):
            patcher = patch(f"{_MODULE}.{name}")
            self.mocks[name] = patcher.start()
            self.addCleanup(patcher.stop)
        for name in ("insert_run_logs", "update_segment_status"):
            patcher = patch(f"billing_sync.services.sync_logger.{name}")
            self.mocks[name] = patcher.start()
            self.addCleanup(patcher.stop)

        self.mocks["sync_run_lock"].return_value.__enter__.return_value = True
        self.mocks["get_running_sync"].return_value = None
        self.mocks["create_sync_run"].return_value = SimpleNamespace(id=5)
        self.mocks["list_active_mappings"].return_value = []
        self.mocks["get_sync_states"].return_value = []
        self.mocks["batch_upsert_sync_states"].side_effect = lambda db, updates: {
            update.steve_transaction_id: 100 + update.steve_transaction_id for update in updates
        }

    def _service(self, **settings_overrides) -> SyncService:
        return SyncService(
            settings=_settings(**settings_overrides),
            session_factory=self.session_factory,
            steve_client=self.steve,
            lago_client=self.lago,
            clock=lambda: 1_760_600_000.0,
        )

    def _segment_statuses(self) -> dict[str, str]:
        return {
            call.kwargs["segment"]: call.kwargs["status"]
            for call in self.mocks["update_segment_status"].call_args_list
        }

    def test_inherited_and_subscriptionless_usage(self) -> None:
        self.steve.get_active_transactions.return_value = [
            _tx(2, "P", latest="3000"),
            _tx(3, "N", latest="2000"),
        ]
        self.steve.get_recently_completed_transactions.return_value = [_tx(1, "A", stop="5000")]
        self.steve.get_ocpp_tags.return_value = [
            _tag("P", 1),
            _tag("A", 2, parent="P"),
            _tag("N", 3, limit=None),
        ]
        self.mocks["list_active_mappings"].return_value = [
            _mapping(10, "P", "S"),
            _mapping(11, "N", None),
        ]

        result = self._service().run_sync(source="cron")

        self.assertEqual(result.sync_run_id, 5)
        self.assertEqual(result.transactions_processed, 3)
        self.assertEqual(result.events_created, 2)
        self.assertEqual(result.errors, [])
        self.assertEqual(result.tags_unchanged, 3)
        self.assertFalse(result.already_running)

        self.lago.create_batch_events.assert_called_once()
        sent = self.lago.create_batch_events.call_args.args[0]
        self.assertEqual(sorted(event.transaction_id for event in sent), ["steve_tx_1_sync_5", "steve_tx_2_sync_5"])
        self.assertTrue(all(event.external_subscription_id == "S" for event in sent))

        updates = {u.steve_transaction_id: u for u in self.mocks["batch_upsert_sync_states"].call_args.args[1]}
        self.assertEqual(sorted(updates), [1, 2, 3])
        self.assertTrue(updates[1].is_finalized)
        self.assertFalse(updates[2].is_finalized)
        self.assertEqual(updates[3].last_synced_meter_value, 2000)
        self.assertEqual(updates[3].total_kwh_billed, 0.0)
        self.assertAlmostEqual(updates[1].total_kwh_billed, 4.0)

        ledger = {row.steve_transaction_id: row for row in self.mocks["batch_create_synced_events"].call_args.args[1]}
        self.assertEqual(sorted(ledger), [1, 2, 3])
        self.assertFalse(ledger[3].is_billable)
        self.assertEqual(ledger[3].user_mapping_id, 11)
        self.assertEqual(ledger[1].user_mapping_id, 10)
        self.assertEqual(ledger[2].transaction_sync_state_id, 102)

        complete_kwargs = self.mocks["mark_sync_complete"].call_args.kwargs
        self.assertEqual(complete_kwargs["transactions_processed"], 3)
        self.assertEqual(complete_kwargs["events_created"], 2)
        self.assertEqual(self._segment_statuses(), {"transaction_sync": "warning", "tag_linking": "success"})

    def test_existing_running_row_short_circuits(self) -> None:
        self.mocks["get_running_sync"].return_value = SimpleNamespace(id=4)

        result = self._service().run_sync()

        self.assertTrue(result.already_running)
        self.assertEqual(result.errors, [ALREADY_RUNNING_MESSAGE])
        self.mocks["create_sync_run"].assert_not_called()
        self.steve.get_active_transactions.assert_not_called()

    def test_lock_held_elsewhere_short_circuits(self) -> None:
        self.mocks["sync_run_lock"].return_value.__enter__.return_value = False

        result = self._service().run_sync()

        self.assertTrue(result.already_running)
        self.mocks["get_running_sync"].assert_not_called()
        self.mocks["create_sync_run"].assert_not_called()

    def test_no_transactions_still_links_tags(self) -> None:
        self.steve.get_ocpp_tags.return_value = [_tag("B", 7, limit=-1)]

        result = self._service().run_sync()

        self.assertEqual(result.transactions_processed, 0)
        self.assertEqual(result.events_created, 0)
        self.assertEqual(result.tags_deactivated, 1)
        self.mocks["batch_upsert_sync_states"].assert_not_called()
        self.lago.create_batch_events.assert_not_called()
        self.steve.update_ocpp_tag.assert_called_once()
        self.assertEqual(self.steve.update_ocpp_tag.call_args.args[0].max_active_transaction_count, 0)
        self.mocks["mark_sync_complete"].assert_called_once()

    def test_batch_failure_is_recorded_and_state_persisted(self) -> None:
        self.steve.get_recently_completed_transactions.return_value = [_tx(1, "P", stop="2500")]
        self.steve.get_ocpp_tags.return_value = [_tag("P", 1)]
        self.mocks["list_active_mappings"].return_value = [_mapping(10, "P", "S")]
        self.lago.create_batch_events.side_effect = ApiError(service="Lago", status_code=422, detail="bad event")

        result = self._service().run_sync()

        self.assertEqual(len(result.errors), 1)
        self.assertTrue(result.errors[0].startswith("Failed to send batch 1:"))
        self.assertEqual(result.events_created, 1)
        self.mocks["batch_upsert_sync_states"].assert_called_once()
        self.mocks["mark_sync_complete"].assert_called_once()
        self.assertEqual(self._segment_statuses()["transaction_sync"], "error")

    def test_failed_batch_does_not_stop_later_batches(self) -> None:
        self.steve.get_recently_completed_transactions.return_value = [
            _tx(1, "P", stop="2000"),
            _tx(2, "P", stop="3000"),
            _tx(3, "P", stop="4000"),
        ]
        self.steve.get_ocpp_tags.return_value = [_tag("P", 1)]
        self.mocks["list_active_mappings"].return_value = [_mapping(10, "P", "S")]
        self.lago.create_batch_events.side_effect = [
            ApiError(service="Lago", status_code=422, detail="bad event"),
            None,
        ]

        result = self._service(lago_batch_size=2).run_sync()

        self.assertEqual(self.lago.create_batch_events.call_count, 2)
        self.assertEqual([len(call.args[0]) for call in self.lago.create_batch_events.call_args_list], [2, 1])
        self.assertEqual(len(result.errors), 1)
        self.assertTrue(result.errors[0].startswith("Failed to send batch 1:"))
        self.assertEqual(result.events_created, 3)
        self.mocks["mark_sync_complete"].assert_called_once()
        updates = self.mocks["batch_upsert_sync_states"].call_args.args[1]
        self.assertEqual(sorted(update.steve_transaction_id for update in updates), [1, 2, 3])

    def test_run_with_only_unbilled_usage_still_records_state(self) -> None:
        self.steve.get_active_transactions.return_value = [_tx(4, "N", latest="1800")]
        self.steve.get_ocpp_tags.return_value = [_tag("N", 3)]
        self.mocks["list_active_mappings"].return_value = [_mapping(11, "N", None)]

        result = self._service().run_sync()

        self.lago.create_batch_events.assert_not_called()
        self.mocks["batch_upsert_sync_states"].assert_called_once()
        self.mocks["batch_create_synced_events"].assert_called_once()
        ledger = self.mocks["batch_create_synced_events"].call_args.args[1]
        self.assertEqual(len(ledger), 1)
        self.assertFalse(ledger[0].is_billable)
        self.assertEqual(ledger[0].meter_value_to, 1800)
        self.assertEqual(result.transactions_processed, 1)
        self.assertEqual(result.events_created, 0)
        self.assertEqual(result.errors, [])
        self.assertEqual(self._segment_statuses(), {"transaction_sync": "warning", "tag_linking": "success"})

    def test_usage_from_failed_batch_is_not_resent_on_next_run(self) -> None:
        self.steve.get_active_transactions.return_value = [_tx(1, "P", latest="2500")]
        self.steve.get_ocpp_tags.return_value = [_tag("P", 1)]
        self.mocks["list_active_mappings"].return_value = [_mapping(10, "P", "S")]
        self.mocks["create_sync_run"].side_effect = [SimpleNamespace(id=5), SimpleNamespace(id=6)]
        self.lago.create_batch_events.side_effect = ApiError(service="Lago", status_code=503, detail="down")
        service = self._service()

        first = service.run_sync()

        self.assertTrue(first.errors[0].startswith("Failed to send batch 1:"))
        saved = self.mocks["batch_upsert_sync_states"].call_args.args[1][0]
        self.assertEqual(saved.last_synced_meter_value, 2500)
        self.assertAlmostEqual(saved.total_kwh_billed, 1.5)
        first_ledger = self.mocks["batch_create_synced_events"].call_args.args[1]
        self.assertEqual([row.sync_run_id for row in first_ledger], [5])

        self.mocks["get_sync_states"].return_value = [
            SimpleNamespace(
                steve_transaction_id=saved.steve_transaction_id,
                last_synced_meter_value=saved.last_synced_meter_value,
                total_kwh_billed=saved.total_kwh_billed,
                is_finalized=saved.is_finalized,
            )
        ]
        self.lago.create_batch_events.reset_mock(side_effect=True)

        second = service.run_sync()

        self.assertEqual(second.sync_run_id, 6)
        self.assertEqual(second.transactions_processed, 0)
        self.assertEqual(second.events_created, 0)
        self.lago.create_batch_events.assert_not_called()
        self.assertEqual(self.mocks["batch_create_synced_events"].call_count, 1)

    def test_unhandled_failure_marks_run_failed_and_reraises(self) -> None:
        self.steve.get_active_transactions.side_effect = ApiError(service="SteVe", status_code=503, detail="down")

        with self.assertRaises(ApiError):
            self._service().run_sync()

        self.mocks["mark_sync_complete"].assert_not_called()
        failed_kwargs = self.mocks["mark_sync_failed"].call_args.kwargs
        self.assertEqual(failed_kwargs["sync_run_id"], 5)
        self.assertTrue(failed_kwargs["errors"][0].startswith("Sync failed:"))
        self.assertEqual(self._segment_statuses(), {"transaction_sync": "error", "tag_linking": "skipped"})

    def test_tag_linking_disabled_is_skipped(self) -> None:
        self.steve.get_ocpp_tags.return_value = [_tag("B", 7, limit=-1)]

        result = self._service(sync_tag_linking_enabled=False).run_sync()

        self.steve.update_ocpp_tag.assert_not_called()
        self.assertEqual(result.tags_deactivated, 0)
        self.assertEqual(self._segment_statuses()["tag_linking"], "skipped")

    def test_failed_tag_update_is_reported_in_run_errors(self) -> None:
        self.steve.get_ocpp_tags.return_value = [_tag("B", 7, limit=-1)]
        self.steve.update_ocpp_tag.side_effect = ApiError(service="SteVe", status_code=400, detail="invalid")

        result = self._service().run_sync()

        self.assertEqual(len(result.errors), 1)
        self.assertTrue(result.errors[0].startswith("Tag B:"))
        self.assertEqual(self._segment_statuses()["tag_linking"], "error")
