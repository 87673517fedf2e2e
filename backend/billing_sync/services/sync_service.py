from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy.orm import sessionmaker

from billing_sync.core.config import Settings
from billing_sync.repositories.mappings import list_active_mappings
from billing_sync.repositories.sync_runs import (
    SEGMENT_TAG_LINKING,
    SEGMENT_TRANSACTION_SYNC,
    SyncedEventRecord,
    SyncStateUpdate,
    batch_create_synced_events,
    batch_upsert_sync_states,
    create_sync_run,
    get_running_sync,
    get_sync_states,
    mark_sync_complete,
    mark_sync_failed,
    sync_run_lock,
)
from billing_sync.schemas.steve import OcppTag
from billing_sync.services.event_builder import batch_events, build_lago_events
from billing_sync.services.lago_client import LagoClient
from billing_sync.services.mapping_resolver import MappingLike, build_mapping_lookup_with_inheritance
from billing_sync.services.steve_client import SteveClient
from billing_sync.services.sync_logger import SegmentLogger
from billing_sync.services.tag_hierarchy import TagGraph
from billing_sync.services.tag_sync import TagSyncResult, sync_tag_status
from billing_sync.services.transaction_processor import (
    ProcessedTransaction,
    TrackedTransaction,
    merge_transactions,
    process_transactions,
)

ALREADY_RUNNING_MESSAGE = "Sync already in progress"


@dataclass(frozen=True)
class SyncResult:
    sync_run_id: int
    transactions_processed: int
    events_created: int
    errors: list[str] = field(default_factory=list)
    tags_activated: int = 0
    tags_deactivated: int = 0
    tags_unchanged: int = 0
    already_running: bool = False

    @classmethod
    def in_progress(cls) -> "SyncResult":
        return cls(
            sync_run_id=0,
            transactions_processed=0,
            events_created=0,
            errors=[ALREADY_RUNNING_MESSAGE],
            already_running=True,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "sync_run_id": self.sync_run_id,
            "transactions_processed": self.transactions_processed,
            "events_created": self.events_created,
            "errors": list(self.errors),
            "tags_activated": self.tags_activated,
            "tags_deactivated": self.tags_deactivated,
            "tags_unchanged": self.tags_unchanged,
            "already_running": self.already_running,
        }


@dataclass(frozen=True)
class _TransactionOutcome:
    transactions_processed: int
    events_created: int


class SyncService:
    """One sync run: fetch, resolve, compute deltas, dispatch, persist, link tags, finalize."""

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        steve_client: SteveClient,
        lago_client: LagoClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._steve_client = steve_client
        self._lago_client = lago_client
        self._clock = clock
        self._logger = logging.getLogger("billing_sync.sync")

    def run_sync(self, *, source: str = "manual") -> SyncResult:
        with sync_run_lock(self._session_factory) as acquired:
            if not acquired:
                self._logger.warning("sync advisory lock held elsewhere, skipping source=%s", source)
                return SyncResult.in_progress()
            return self._run_locked(source=source)

    def _run_locked(self, *, source: str) -> SyncResult:
        with self._session_factory() as db:
            running = get_running_sync(db)
            if running is not None:
                self._logger.warning(
                    "another sync is already running, skipping running_sync_id=%s source=%s",
                    running.id,
                    source,
                )
                return SyncResult.in_progress()
            sync_run_id = int(create_sync_run(db).id)

        self._logger.info("sync run started sync_run_id=%s source=%s", sync_run_id, source)
        segment_logger = SegmentLogger(sync_run_id=sync_run_id, session_factory=self._session_factory)
        errors: list[str] = []
        tag_linking_started = False

        try:
            segment_logger.start_segment(SEGMENT_TRANSACTION_SYNC)
            segment_logger.info("Sync run started", {"syncRunId": sync_run_id, "source": source})

            active = self._steve_client.get_active_transactions()
            completed = self._steve_client.get_recently_completed_transactions(
                self._settings.sync_completed_lookback_minutes
            )
            transactions = merge_transactions(active, completed)
            segment_logger.info(
                "Transactions fetched",
                {
                    "active": len(active),
                    "recentlyCompleted": len(completed),
                    "uniqueTransactions": len(transactions),
                },
            )

            with self._session_factory() as db:
                mappings = list_active_mappings(db)
            tags = self._steve_client.get_ocpp_tags()
            graph = TagGraph(tags)
            billing_lookup = build_mapping_lookup_with_inheritance(mappings, graph)
            authorization_lookup = build_mapping_lookup_with_inheritance(
                mappings,
                graph,
                require_subscription=False,
            )
            segment_logger.info(
                "Mappings resolved",
                {
                    "activeMappings": len(mappings),
                    "tags": len(tags),
                    "billableTags": len(billing_lookup),
                    "authorizedTags": len(authorization_lookup),
                },
            )

            outcome = self._sync_transactions(
                sync_run_id=sync_run_id,
                transactions=transactions,
                billing_lookup=billing_lookup,
                authorization_lookup=authorization_lookup,
                segment_logger=segment_logger,
                errors=errors,
            )
            segment_logger.end_segment()

            tag_linking_started = True
            tag_result = self._sync_tags(
                tags=tags,
                authorization_lookup=authorization_lookup,
                segment_logger=segment_logger,
                errors=errors,
            )

            with self._session_factory() as db:
                mark_sync_complete(
                    db,
                    sync_run_id=sync_run_id,
                    transactions_processed=outcome.transactions_processed,
                    events_created=outcome.events_created,
                    errors=errors,
                    tags_activated=tag_result.activated_tags,
                    tags_deactivated=tag_result.deactivated_tags,
                    tags_unchanged=tag_result.unchanged_tags,
                )
                db.commit()
        except Exception as exc:
            message = f"Sync failed: {exc}"
            errors.append(message)
            self._logger.exception("sync run failed sync_run_id=%s", sync_run_id)
            self._close_segments_after_failure(
                segment_logger,
                message=message,
                tag_linking_started=tag_linking_started,
            )
            with self._session_factory() as db:
                mark_sync_failed(db, sync_run_id=sync_run_id, errors=errors)
                db.commit()
            raise

        self._logger.info(
            "sync run completed sync_run_id=%s processed=%s events=%s errors=%s",
            sync_run_id,
            outcome.transactions_processed,
            outcome.events_created,
            len(errors),
        )
        return SyncResult(
            sync_run_id=sync_run_id,
            transactions_processed=outcome.transactions_processed,
            events_created=outcome.events_created,
            errors=list(errors),
            tags_activated=tag_result.activated_tags,
            tags_deactivated=tag_result.deactivated_tags,
            tags_unchanged=tag_result.unchanged_tags,
        )

    def _sync_transactions(
        self,
        *,
        sync_run_id: int,
        transactions: dict[int, TrackedTransaction],
        billing_lookup: Mapping[str, MappingLike],
        authorization_lookup: Mapping[str, MappingLike],
        segment_logger: SegmentLogger,
        errors: list[str],
    ) -> _TransactionOutcome:
        if not transactions:
            segment_logger.info("No transactions to process")
            return _TransactionOutcome(transactions_processed=0, events_created=0)

        with self._session_factory() as db:
            states = {
                int(state.steve_transaction_id): state
                for state in get_sync_states(db, list(transactions.keys()))
            }

        # A subscription-less mapping still resolves, which keeps its meter progress tracked.
        processed = process_transactions(
            transactions,
            states,
            lambda id_tag: billing_lookup.get(id_tag) or authorization_lookup.get(id_tag),
            sync_run_id,
            event_key_prefix=self._settings.sync_event_key_prefix,
        )
        billable = [item for item in processed if item.is_billable]
        non_billable = [item for item in processed if not item.is_billable]
        segment_logger.info(
            "Transactions processed",
            {
                "candidates": len(transactions),
                "processed": len(processed),
                "billable": len(billable),
                "nonBillable": len(non_billable),
                "skipped": len(transactions) - len(processed),
            },
        )
        for item in non_billable:
            segment_logger.warn(
                "Usage recorded without a subscription",
                {"transactionId": item.steve_transaction_id, "mappingId": item.user_mapping_id},
            )

        events_created = 0
        if billable:
            events = build_lago_events(
                billable,
                metric_code=self._settings.lago_metric_code,
                clock=self._clock,
            )
            events_created = len(events)
            batches = batch_events(events, self._settings.lago_batch_size)
            for index, batch in enumerate(batches, start=1):
                try:
                    self._lago_client.create_batch_events(batch)
                    segment_logger.debug(
                        "Batch sent",
                        {"batch": index, "batches": len(batches), "size": len(batch)},
                    )
                except Exception as exc:
                    message = f"Failed to send batch {index}: {exc}"
                    errors.append(message)
                    self._logger.error("%s sync_run_id=%s", message, sync_run_id)
                    segment_logger.error(
                        message,
                        {
                            "batch": index,
                            "size": len(batch),
                            "eventIds": [event.transaction_id for event in batch],
                        },
                    )

        if processed:
            self._persist_processed(
                sync_run_id=sync_run_id,
                processed=processed,
                states=states,
            )
            segment_logger.info(
                "Sync state persisted",
                {"states": len(processed), "ledgerRows": len(processed)},
            )
        else:
            segment_logger.info("No new usage to record")

        return _TransactionOutcome(
            transactions_processed=len(processed),
            events_created=events_created,
        )

    def _persist_processed(
        self,
        *,
        sync_run_id: int,
        processed: list[ProcessedTransaction],
        states: Mapping[int, Any],
    ) -> None:
        updates: list[SyncStateUpdate] = []
        for item in processed:
            previous = states.get(item.steve_transaction_id)
            previous_total = float(previous.total_kwh_billed) if previous is not None else 0.0
            updates.append(
                SyncStateUpdate(
                    steve_transaction_id=item.steve_transaction_id,
                    last_synced_meter_value=item.meter_value_to,
                    total_kwh_billed=previous_total + (item.kwh_delta if item.is_billable else 0.0),
                    last_sync_run_id=sync_run_id,
                    is_finalized=item.is_final,
                )
            )

        with self._session_factory() as db:
            state_ids = batch_upsert_sync_states(db, updates)
            batch_create_synced_events(
                db,
                [
                    SyncedEventRecord(
                        steve_transaction_id=item.steve_transaction_id,
                        lago_event_transaction_id=item.lago_event_transaction_id,
                        user_mapping_id=item.user_mapping_id,
                        kwh_delta=item.kwh_delta,
                        meter_value_from=item.meter_value_from,
                        meter_value_to=item.meter_value_to,
                        is_final=item.is_final,
                        is_billable=item.is_billable,
                        sync_run_id=sync_run_id,
                        transaction_sync_state_id=state_ids.get(item.steve_transaction_id),
                    )
                    for item in processed
                ],
            )
            db.commit()

    def _sync_tags(
        self,
        *,
        tags: list[OcppTag],
        authorization_lookup: Mapping[str, MappingLike],
        segment_logger: SegmentLogger,
        errors: list[str],
    ) -> TagSyncResult:
        if not self._settings.sync_tag_linking_enabled:
            segment_logger.skip_segment(SEGMENT_TAG_LINKING, "Tag linking disabled by configuration")
            return TagSyncResult(total_tags=len(tags))

        segment_logger.start_segment(SEGMENT_TAG_LINKING)
        try:
            result = sync_tag_status(
                tags=tags,
                lookup=authorization_lookup,
                steve_client=self._steve_client,
                lago_client=self._lago_client,
                dashboard_url=self._settings.lago_dashboard_url,
                segment_logger=segment_logger,
            )
        except Exception as exc:
            self._logger.exception("tag sync failed")
            message = f"Tag sync failed: {exc}"
            errors.append(message)
            segment_logger.error(message)
            result = TagSyncResult(total_tags=len(tags))

        for tag_error in result.errors:
            errors.append(f"Tag {tag_error.tag_id}: {tag_error.error}")
        segment_logger.info(
            "Tag linking finished",
            {
                "activated": result.activated_tags,
                "deactivated": result.deactivated_tags,
                "unchanged": result.unchanged_tags,
                "failed": len(result.errors),
            },
        )
        segment_logger.end_segment()
        return result

    def _close_segments_after_failure(
        self,
        segment_logger: SegmentLogger,
        *,
        message: str,
        tag_linking_started: bool,
    ) -> None:
        try:
            if segment_logger.current_segment is not None:
                segment_logger.error(message)
                segment_logger.end_segment("error")
            if not tag_linking_started:
                segment_logger.skip_segment(SEGMENT_TAG_LINKING, "Run failed before tag linking")
        except Exception:
            self._logger.exception("failed to persist segment logs for failed run")
