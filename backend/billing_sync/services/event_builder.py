from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import Callable, TypeVar

from billing_sync.schemas.lago import LAGO_MAX_BATCH_SIZE, LagoEvent
from billing_sync.services.transaction_processor import ProcessedTransaction

T = TypeVar("T")

_logger = logging.getLogger("billing_sync.event_builder")


def build_lago_event(
    processed: ProcessedTransaction,
    *,
    metric_code: str,
    clock: Callable[[], float] = time.time,
) -> LagoEvent:
    if not processed.is_billable:
        raise ValueError(
            f"transaction {processed.steve_transaction_id} has no subscription and cannot be billed"
        )
    return LagoEvent(
        transaction_id=processed.lago_event_transaction_id,
        external_subscription_id=str(processed.lago_subscription_external_id),
        code=metric_code,
        timestamp=int(clock()),
        properties={"kwh": f"{processed.kwh_delta:.3f}"},
    )


def build_lago_events(
    processed: Sequence[ProcessedTransaction],
    *,
    metric_code: str,
    clock: Callable[[], float] = time.time,
) -> list[LagoEvent]:
    events = [build_lago_event(item, metric_code=metric_code, clock=clock) for item in processed]
    _logger.debug("events built count=%s metric=%s", len(events), metric_code)
    return events


def batch_events(events: Sequence[T], batch_size: int = LAGO_MAX_BATCH_SIZE) -> list[list[T]]:
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    size = min(int(batch_size), LAGO_MAX_BATCH_SIZE)
    return [list(events[start : start + size]) for start in range(0, len(events), size)]
