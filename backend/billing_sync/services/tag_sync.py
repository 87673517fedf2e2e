from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from billing_sync.schemas.lago import LagoCustomer, LagoSubscription
from billing_sync.schemas.steve import OcppTag
from billing_sync.services.mapping_resolver import MappingLike
from billing_sync.services.sync_logger import SegmentLogger

UNLIMITED = -1
BLOCKED = 0

_logger = logging.getLogger("billing_sync.tag_sync")


class TagUpdater(Protocol):
    def update_ocpp_tag(self, tag: OcppTag) -> None: ...


class BillingDirectory(Protocol):
    def get_customers(self) -> list[LagoCustomer]: ...

    def get_subscriptions(self, external_customer_id: str | None = None) -> list[LagoSubscription]: ...


@dataclass(frozen=True)
class TagSyncError:
    tag_id: str
    error: str


@dataclass
class TagSyncResult:
    total_tags: int = 0
    activated_tags: int = 0
    deactivated_tags: int = 0
    unchanged_tags: int = 0
    errors: list[TagSyncError] = field(default_factory=list)


@dataclass(frozen=True)
class EntityInfo:
    customer_name: str
    subscription_name: str | None
    customer_url: str | None = None
    subscription_url: str | None = None


def desired_limit_for(tag: OcppTag, lookup: Mapping[str, MappingLike]) -> int:
    return UNLIMITED if tag.id_tag in lookup else BLOCKED


def current_limit_of(tag: OcppTag) -> int:
    # None means no limit configured, which the backend treats as unlimited.
    if tag.max_active_transaction_count is None:
        return UNLIMITED
    return int(tag.max_active_transaction_count)


def linked_note(mapping: MappingLike, info: EntityInfo | None, timestamp: str) -> str:
    customer = (info.customer_name if info else None) or mapping.lago_customer_external_id or "Unknown"
    subscription = (info.subscription_name if info else None) or mapping.lago_subscription_external_id
    lines = [f"Linked to {customer} > {subscription}" if subscription else f"Linked to {customer}"]
    if info is not None and info.customer_url:
        lines.append(f"Customer: {info.customer_url}")
    if info is not None and info.subscription_url:
        lines.append(f"Subscription: {info.subscription_url}")
    lines.append("---")
    lines.append(f"Last synced on {timestamp}")
    return "\n".join(lines)


def unlinked_note(timestamp: str) -> str:
    return f"No active subscription\n---\nLast synced on {timestamp}"


def fetch_entity_info(
    mappings: Iterable[MappingLike],
    lago_client: BillingDirectory,
    *,
    dashboard_url: str | None = None,
) -> dict[str, EntityInfo]:
    """Display names and dashboard links per customer id, keyed ``customer:subscription``."""
    unique = {_entity_key(mapping): mapping for mapping in mappings}
    customer_names: dict[str, str] = {}
    customer_lago_ids: dict[str, str] = {}
    subscription_names: dict[str, str] = {}
    subscription_lago_ids: dict[str, str] = {}

    try:
        for customer in lago_client.get_customers():
            customer_names[customer.external_id] = customer.name or customer.external_id
            customer_lago_ids[customer.external_id] = customer.lago_id
    except Exception as exc:
        _logger.warning("failed to fetch customers for tag notes error=%s", exc)

    customer_ids = sorted({m.lago_customer_external_id for m in unique.values() if m.lago_customer_external_id})
    for customer_id in customer_ids:
        try:
            for subscription in lago_client.get_subscriptions(customer_id):
                subscription_names[subscription.external_id] = subscription.name or subscription.external_id
                subscription_lago_ids[subscription.external_id] = subscription.lago_id
        except Exception as exc:
            _logger.warning("failed to fetch subscriptions customer=%s error=%s", customer_id, exc)

    dashboard = dashboard_url.rstrip("/") if dashboard_url else None
    info: dict[str, EntityInfo] = {}
    for key, mapping in unique.items():
        customer_id = mapping.lago_customer_external_id
        subscription_id = mapping.lago_subscription_external_id
        customer_lago_id = customer_lago_ids.get(customer_id)
        subscription_lago_id = subscription_lago_ids.get(subscription_id) if subscription_id else None
        customer_url = None
        subscription_url = None
        if dashboard and customer_lago_id:
            customer_url = f"{dashboard}/customer/{customer_lago_id}"
            if subscription_lago_id:
                subscription_url = (
                    f"{dashboard}/customer/{customer_lago_id}/subscription/{subscription_lago_id}/overview"
                )
        info[key] = EntityInfo(
            customer_name=customer_names.get(customer_id, customer_id),
            subscription_name=subscription_names.get(subscription_id, subscription_id) if subscription_id else None,
            customer_url=customer_url,
            subscription_url=subscription_url,
        )
    return info


def sync_tag_status(
    *,
    tags: list[OcppTag],
    lookup: Mapping[str, MappingLike],
    steve_client: TagUpdater,
    lago_client: BillingDirectory | None = None,
    dashboard_url: str | None = None,
    segment_logger: SegmentLogger | None = None,
    now: datetime | None = None,
) -> TagSyncResult:
    """Align each tag's authorization limit with whether it resolves to a mapping.

    Tags already at the desired limit get no API call. A failing tag update is
    recorded and the pass continues with the next tag.
    """
    result = TagSyncResult(total_tags=len(tags))
    pending: list[tuple[OcppTag, int, int]] = []
    for tag in tags:
        desired = desired_limit_for(tag, lookup)
        current = current_limit_of(tag)
        if desired == current:
            result.unchanged_tags += 1
        else:
            pending.append((tag, current, desired))

    _log(segment_logger, "info", "Tag limits compared", {
        "totalTags": len(tags),
        "mappedTags": sum(1 for tag in tags if tag.id_tag in lookup),
        "pendingUpdates": len(pending),
        "unchanged": result.unchanged_tags,
    })
    if not pending:
        return result

    entity_info: dict[str, EntityInfo] = {}
    if lago_client is not None:
        involved = [lookup[tag.id_tag] for tag, _, desired in pending if desired == UNLIMITED]
        if involved:
            entity_info = fetch_entity_info(involved, lago_client, dashboard_url=dashboard_url)

    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    for tag, current, desired in pending:
        mapping = lookup.get(tag.id_tag)
        note = (
            linked_note(mapping, entity_info.get(_entity_key(mapping)), timestamp)
            if mapping is not None
            else unlinked_note(timestamp)
        )
        updated = tag.model_copy(update={"max_active_transaction_count": desired, "note": note})
        try:
            steve_client.update_ocpp_tag(updated)
        except Exception as exc:
            result.errors.append(TagSyncError(tag_id=tag.id_tag, error=str(exc)))
            _log(segment_logger, "error", "Failed to update tag", {"tagId": tag.id_tag, "error": str(exc)})
            continue

        if desired == UNLIMITED:
            result.activated_tags += 1
        else:
            result.deactivated_tags += 1
        _log(segment_logger, "info", "Tag updated", {"tagId": tag.id_tag, "from": current, "to": desired})

    _logger.info(
        "tag sync complete total=%s activated=%s deactivated=%s unchanged=%s errors=%s",
        result.total_tags,
        result.activated_tags,
        result.deactivated_tags,
        result.unchanged_tags,
        len(result.errors),
    )
    return result


def _entity_key(mapping: MappingLike) -> str:
    return f"{mapping.lago_customer_external_id}:{mapping.lago_subscription_external_id or ''}"


def _log(segment_logger: SegmentLogger | None, level: str, message: str, context: dict) -> None:
    if segment_logger is not None:
        getattr(segment_logger, level)(message, context)
    else:
        _logger.log(logging.WARNING if level == "warn" else getattr(logging, level.upper()), "%s %s", message, context)
