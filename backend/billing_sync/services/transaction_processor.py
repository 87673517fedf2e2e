from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Protocol

from billing_sync.schemas.steve import SteveTransaction
from billing_sync.services.mapping_resolver import MappingLike

_logger = logging.getLogger("billing_sync.transaction_processor")


class SyncStateLike(Protocol):
    steve_transaction_id: int
    last_synced_meter_value: int
    total_kwh_billed: float
    is_finalized: bool


@dataclass(frozen=True)
class TrackedTransaction:
    transaction: SteveTransaction
    is_completed: bool

    @property
    def id(self) -> int:
        return self.transaction.id

    @property
    def ocpp_id_tag(self) -> str:
        return self.transaction.ocpp_id_tag


@dataclass(frozen=True)
class MeterDelta:
    kwh_delta: float
    meter_value_from: int
    meter_value_to: int


@dataclass(frozen=True)
class ProcessedTransaction:
    steve_transaction_id: int
    user_mapping_id: int
    lago_subscription_external_id: str | None
    kwh_delta: float
    meter_value_from: int
    meter_value_to: int
    is_final: bool
    lago_event_transaction_id: str

    @property
    def is_billable(self) -> bool:
        return bool(self.lago_subscription_external_id)


def build_event_transaction_id(transaction_id: int, sync_run_id: int, *, prefix: str = "steve") -> str:
    return f"{prefix}_tx_{transaction_id}_sync_{sync_run_id}"


def calculate_delta(tracked: TrackedTransaction, sync_state: SyncStateLike | None) -> MeterDelta | None:
    """Energy consumed since the last recorded meter value; None when nothing new."""
    tx = tracked.transaction
    if tracked.is_completed:
        current_value = _parse_meter_value(tx.stop_value)
    else:
        current_value = _parse_meter_value(tx.latest_meter_value or tx.start_value)

    if sync_state is not None:
        base_value: int | None = int(sync_state.last_synced_meter_value)
    else:
        base_value = _parse_meter_value(tx.start_value)

    if current_value is None or base_value is None:
        _logger.warning(
            "unreadable meter value transaction_id=%s start=%s stop=%s latest=%s",
            tx.id,
            tx.start_value,
            tx.stop_value,
            tx.latest_meter_value,
        )
        return None

    delta_wh = current_value - base_value
    if delta_wh <= 0:
        return None
    return MeterDelta(
        kwh_delta=delta_wh / 1000,
        meter_value_from=base_value,
        meter_value_to=current_value,
    )


def process_transaction(
    tracked: TrackedTransaction,
    sync_state: SyncStateLike | None,
    mapping: MappingLike | None,
    sync_run_id: int,
    *,
    event_key_prefix: str = "steve",
) -> ProcessedTransaction | None:
    if sync_state is not None and sync_state.is_finalized:
        _logger.debug("transaction already finalized transaction_id=%s", tracked.id)
        return None

    if mapping is None:
        _logger.warning(
            "no mapping for ocpp tag transaction_id=%s id_tag=%s",
            tracked.id,
            tracked.ocpp_id_tag,
        )
        return None

    delta = calculate_delta(tracked, sync_state)
    if delta is None:
        _logger.debug("no new usage transaction_id=%s", tracked.id)
        return None

    subscription = (mapping.lago_subscription_external_id or "").strip() or None
    if subscription is None:
        _logger.warning(
            "mapping has no subscription, tracking without billing transaction_id=%s mapping_id=%s",
            tracked.id,
            mapping.id,
        )

    return ProcessedTransaction(
        steve_transaction_id=tracked.id,
        user_mapping_id=mapping.id,
        lago_subscription_external_id=subscription,
        kwh_delta=delta.kwh_delta,
        meter_value_from=delta.meter_value_from,
        meter_value_to=delta.meter_value_to,
        is_final=tracked.is_completed,
        lago_event_transaction_id=build_event_transaction_id(
            tracked.id,
            sync_run_id,
            prefix=event_key_prefix,
        ),
    )


def process_transactions(
    transactions: Mapping[int, TrackedTransaction],
    sync_states: Mapping[int, SyncStateLike],
    mapping_for_tag: Mapping[str, MappingLike] | Callable[[str], MappingLike | None],
    sync_run_id: int,
    *,
    event_key_prefix: str = "steve",
) -> list[ProcessedTransaction]:
    """Run every candidate once; ``mapping_for_tag`` is a dict or a callable keyed by id tag."""
    resolve = mapping_for_tag.get if isinstance(mapping_for_tag, Mapping) else mapping_for_tag
    processed: list[ProcessedTransaction] = []
    for transaction_id, tracked in transactions.items():
        result = process_transaction(
            tracked,
            sync_states.get(transaction_id),
            resolve(tracked.ocpp_id_tag),
            sync_run_id,
            event_key_prefix=event_key_prefix,
        )
        if result is not None:
            processed.append(result)

    _logger.info(
        "transactions processed total=%s processed=%s skipped=%s sync_run_id=%s",
        len(transactions),
        len(processed),
        len(transactions) - len(processed),
        sync_run_id,
    )
    return processed


def merge_transactions(
    active: list[SteveTransaction],
    completed: list[SteveTransaction],
) -> dict[int, TrackedTransaction]:
    merged: dict[int, TrackedTransaction] = {}
    for tx in active:
        merged[tx.id] = TrackedTransaction(transaction=tx, is_completed=False)
    for tx in completed:
        merged[tx.id] = TrackedTransaction(transaction=tx, is_completed=True)
    return merged


def _parse_meter_value(raw: str | None) -> int | None:
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return int(float(text))
    except (ValueError, OverflowError):
        return None
