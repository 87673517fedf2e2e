from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Protocol

from billing_sync.schemas.steve import OcppTag
from billing_sync.services.tag_hierarchy import TagGraph

_logger = logging.getLogger("billing_sync.mapping_resolver")


class MappingLike(Protocol):
    id: int
    steve_ocpp_id_tag: str
    lago_customer_external_id: str
    lago_subscription_external_id: str | None


def resolve_mapping(
    id_tag: str,
    mappings_by_tag: Mapping[str, MappingLike],
    graph: TagGraph,
) -> MappingLike | None:
    direct = mappings_by_tag.get(id_tag)
    if direct is not None:
        return direct

    if id_tag not in graph:
        _logger.warning("tag not found in tag list id_tag=%s", id_tag)
        return None

    for ancestor in graph.ancestors_of(id_tag):
        inherited = mappings_by_tag.get(ancestor.id_tag)
        if inherited is not None:
            _logger.debug(
                "inherited mapping id_tag=%s ancestor=%s mapping_id=%s",
                id_tag,
                ancestor.id_tag,
                inherited.id,
            )
            return inherited
    return None


def build_mapping_lookup_with_inheritance(
    mappings: Iterable[MappingLike],
    tags: Iterable[OcppTag] | TagGraph,
    *,
    require_subscription: bool = True,
) -> dict[str, MappingLike]:
    """Resolve every known tag to its effective mapping (direct, else nearest mapped ancestor).

    With ``require_subscription`` only mappings carrying a subscription take part,
    so the result is the billing lookup; without it every active mapping counts,
    which is what charging authorization needs.
    """
    graph = tags if isinstance(tags, TagGraph) else TagGraph(tags)
    direct: dict[str, MappingLike] = {}
    for mapping in mappings:
        if require_subscription and not (mapping.lago_subscription_external_id or "").strip():
            continue
        direct[mapping.steve_ocpp_id_tag] = mapping

    lookup: dict[str, MappingLike] = dict(direct)
    for tag in graph.nodes:
        if tag.id_tag in lookup:
            continue
        resolved = resolve_mapping(tag.id_tag, direct, graph)
        if resolved is not None:
            lookup[tag.id_tag] = resolved

    _logger.info(
        "mapping lookup built direct=%s total=%s inherited=%s require_subscription=%s",
        len(direct),
        len(lookup),
        len(lookup) - len(direct),
        require_subscription,
    )
    return lookup
