from __future__ import annotations

from types import SimpleNamespace
from unittest import TestCase

from billing_sync.schemas.steve import OcppTag
from billing_sync.services.mapping_resolver import build_mapping_lookup_with_inheritance, resolve_mapping
from billing_sync.services.tag_hierarchy import TagGraph


def _tag(id_tag: str, parent: str | None = None) -> OcppTag:
    return OcppTag(id_tag=id_tag, ocpp_tag_pk=abs(hash(id_tag)) % 10_000, parent_id_tag=parent)


def _mapping(mapping_id: int, id_tag: str, subscription: str | None = "sub-1") -> SimpleNamespace:
    return SimpleNamespace(
        id=mapping_id,
        steve_ocpp_id_tag=id_tag,
        lago_customer_external_id=f"cust-{mapping_id}",
        lago_subscription_external_id=subscription,
    )


class ResolveMappingTests(TestCase):
    def setUp(self) -> None:
        self.graph = TagGraph(
            [
                _tag("GRANDPARENT"),
                _tag("P", parent="GRANDPARENT"),
                _tag("A", parent="P"),
                _tag("B"),
            ]
        )

    def test_child_inherits_parent_mapping(self) -> None:
        parent_mapping = _mapping(1, "P", subscription="S")

        resolved = resolve_mapping("A", {"P": parent_mapping}, self.graph)

        self.assertIs(resolved, parent_mapping)

    def test_direct_mapping_wins_over_ancestor(self) -> None:
        direct = _mapping(2, "A")
        parent = _mapping(1, "P")

        resolved = resolve_mapping("A", {"A": direct, "P": parent}, self.graph)

        self.assertIs(resolved, direct)

    def test_nearest_ancestor_wins(self) -> None:
        near = _mapping(1, "P")
        far = _mapping(3, "GRANDPARENT")

        resolved = resolve_mapping("A", {"GRANDPARENT": far, "P": near}, self.graph)

        self.assertIs(resolved, near)

    def test_unmapped_and_unknown_tags_resolve_to_none(self) -> None:
        mappings = {"P": _mapping(1, "P")}

        self.assertIsNone(resolve_mapping("B", mappings, self.graph))
        self.assertIsNone(resolve_mapping("UNKNOWN", mappings, self.graph))


class BuildLookupTests(TestCase):
    def test_lookup_includes_inherited_entries(self) -> None:
        tags = [_tag("P"), _tag("A", parent="P"), _tag("A2", parent="A"), _tag("B")]
        parent = _mapping(1, "P", subscription="S")

        lookup = build_mapping_lookup_with_inheritance([parent], tags)

        self.assertIs(lookup["P"], parent)
        self.assertIs(lookup["A"], parent)
        self.assertIs(lookup["A2"], parent)
        self.assertNotIn("B", lookup)

    def test_mappings_without_subscription_do_not_propagate_for_billing(self) -> None:
        tags = [_tag("P"), _tag("A", parent="P")]
        parent = _mapping(1, "P", subscription=None)

        billing = build_mapping_lookup_with_inheritance([parent], tags)
        authorization = build_mapping_lookup_with_inheritance([parent], tags, require_subscription=False)

        self.assertEqual(billing, {})
        self.assertIs(authorization["P"], parent)
        self.assertIs(authorization["A"], parent)

    def test_subscriptionless_child_falls_back_to_billed_parent(self) -> None:
        tags = [_tag("P"), _tag("A", parent="P")]
        parent = _mapping(1, "P", subscription="S")
        child = _mapping(2, "A", subscription="")

        billing = build_mapping_lookup_with_inheritance([parent, child], tags)
        authorization = build_mapping_lookup_with_inheritance([parent, child], tags, require_subscription=False)

        self.assertIs(billing["A"], parent)
        self.assertIs(authorization["A"], child)

    def test_resolution_is_deterministic(self) -> None:
        tags = [_tag("R"), _tag("M", parent="R"), _tag("L", parent="M")]
        mappings = [_mapping(1, "R"), _mapping(2, "M")]

        first = build_mapping_lookup_with_inheritance(mappings, tags)
        second = build_mapping_lookup_with_inheritance(list(reversed(mappings)), list(reversed(tags)))

        self.assertEqual({key: value.id for key, value in first.items()}, {"R": 1, "M": 2, "L": 2})
        self.assertEqual({key: value.id for key, value in second.items()}, {"R": 1, "M": 2, "L": 2})
