from __future__ import annotations

import time
from typing import Callable

from billing_sync.schemas.lago import (
    LAGO_MAX_BATCH_SIZE,
    LagoCustomer,
    LagoCustomerList,
    LagoEvent,
    LagoSubscription,
    LagoSubscriptionList,
)
from billing_sync.services.api_client import JsonApiClient
from billing_sync.services.retry import RetryPolicy


class LagoClient(JsonApiClient):
    service_name = "Lago"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 20.0,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            retry_policy=retry_policy,
            sleep=sleep,
        )
        self._api_key = api_key

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    def create_event(self, event: LagoEvent) -> None:
        self._logger.info(
            "creating event transaction_id=%s subscription=%s code=%s",
            event.transaction_id,
            event.external_subscription_id,
            event.code,
        )
        self._request_no_content("POST", "events", payload={"event": event.model_dump()})

    def create_batch_events(self, events: list[LagoEvent]) -> None:
        if not events:
            self._logger.debug("no events to send")
            return
        if len(events) > LAGO_MAX_BATCH_SIZE:
            raise ValueError(
                f"Lago batch limit is {LAGO_MAX_BATCH_SIZE} events, got {len(events)}. "
                "Split into smaller batches."
            )
        self._logger.info("creating batch events count=%s", len(events))
        self._request_no_content(
            "POST",
            "events/batch",
            payload={"events": [event.model_dump() for event in events]},
        )

    def get_customers(self) -> list[LagoCustomer]:
        return self._request_model("GET", "customers", LagoCustomerList).customers

    def get_subscriptions(self, external_customer_id: str | None = None) -> list[LagoSubscription]:
        query = {"external_customer_id": external_customer_id} if external_customer_id else None
        return self._request_model("GET", "subscriptions", LagoSubscriptionList, query=query).subscriptions
