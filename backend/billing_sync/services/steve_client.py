from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from billing_sync.schemas.steve import ChargeBox, OcppTag, SteveTransaction, TransactionFilters
from billing_sync.services.api_client import JsonApiClient
from billing_sync.services.retry import RetryPolicy


class SteveClient(JsonApiClient):
    """Client for the OCPP backend REST API (tags, transactions, charge boxes)."""

    service_name = "SteVe"

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
        return {"X-API-KEY": self._api_key}

    def get_ocpp_tags(self) -> list[OcppTag]:
        return self._request_model("GET", "v1/ocppTags", list[OcppTag])

    def get_charge_boxes(self) -> list[ChargeBox]:
        return self._request_model("GET", "v1/chargeBoxes", list[ChargeBox])

    def get_transactions(self, filters: TransactionFilters | None = None) -> list[SteveTransaction]:
        query = (filters or TransactionFilters()).to_query()
        transactions = self._request_model("GET", "v1/transactions", list[SteveTransaction], query=query)
        self._logger.debug("transactions fetched count=%s query=%s", len(transactions), query)
        return transactions

    def get_active_transactions(self) -> list[SteveTransaction]:
        transactions = self.get_transactions(TransactionFilters(type="ACTIVE"))
        return [
            tx if tx.latest_meter_value else tx.model_copy(update={"latest_meter_value": tx.start_value})
            for tx in transactions
        ]

    def get_recently_completed_transactions(
        self,
        minutes_ago: int = 1440,
        *,
        now: datetime | None = None,
    ) -> list[SteveTransaction]:
        to_date = now or datetime.now(timezone.utc)
        from_date = to_date - timedelta(minutes=minutes_ago)
        transactions = self.get_transactions(
            TransactionFilters(
                type="ALL",
                period_type="FROM_TO",
                from_ts=format_steve_datetime(from_date),
                to_ts=format_steve_datetime(to_date),
            )
        )
        completed = [tx for tx in transactions if tx.stop_timestamp is not None]
        self._logger.info(
            "recently completed transactions fetched=%s completed=%s minutes_ago=%s",
            len(transactions),
            len(completed),
            minutes_ago,
        )
        return completed

    def update_ocpp_tag(self, tag: OcppTag) -> None:
        self._logger.info(
            "updating ocpp tag pk=%s id_tag=%s max_active=%s",
            tag.ocpp_tag_pk,
            tag.id_tag,
            tag.max_active_transaction_count,
        )
        self._request_no_content("PUT", f"v1/ocppTags/{tag.ocpp_tag_pk}", payload=tag.to_form())


def format_steve_datetime(value: datetime) -> str:
    """Render a UTC wall-clock timestamp without zone or fraction (2022-10-10T09:00:00)."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None, microsecond=0).isoformat()
