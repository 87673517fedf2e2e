from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from billing_sync.schemas.steve import OcppTag


@dataclass
class TagNode:
    tag: OcppTag
    children: list["TagNode"] = field(default_factory=list)

    @property
    def id_tag(self) -> str:
        return self.tag.id_tag


class TagGraph:
    """Tag hierarchy as an id-indexed node table with parent and child adjacency.

    All traversals are iterative and carry an explicit visited set, so parent
    cycles and dangling parent references in backend data are handled as
    ordinary branches instead of recursion limits.
    """

    def __init__(self, tags: Iterable[OcppTag]):
        self.nodes: list[OcppTag] = []
        self._by_id: dict[str, OcppTag] = {}
        self._children: dict[str, list[str]] = {}
        for tag in tags:
            if tag.id_tag in self._by_id:
                continue
            self.nodes.append(tag)
            self._by_id[tag.id_tag] = tag
        for tag in self.nodes:
            if tag.parent_id_tag:
                self._children.setdefault(tag.parent_id_tag, []).append(tag.id_tag)

    def __contains__(self, id_tag: object) -> bool:
        return id_tag in self._by_id

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, id_tag: str) -> OcppTag | None:
        return self._by_id.get(id_tag)

    def parent_of(self, id_tag: str) -> OcppTag | None:
        tag = self._by_id.get(id_tag)
        if tag is None or not tag.parent_id_tag:
            return None
        return self._by_id.get(tag.parent_id_tag)

    def children_of(self, id_tag: str) -> list[OcppTag]:
        return [self._by_id[child] for child in self._children.get(id_tag, [])]

    def descendants_of(self, id_tag: str, visited: set[str] | None = None) -> list[OcppTag]:
        """Breadth-first descendants at any depth, excluding the tag itself."""
        seen = visited if visited is not None else set()
        seen.add(id_tag)
        result: list[OcppTag] = []
        queue: deque[str] = deque([id_tag])
        while queue:
            current = queue.popleft()
            for child_id in self._children.get(current, []):
                if child_id in seen:
                    # cycle back into an already expanded node
                    continue
                seen.add(child_id)
                result.append(self._by_id[child_id])
                queue.append(child_id)
        return result

    def ancestors_of(self, id_tag: str, visited: set[str] | None = None) -> list[OcppTag]:
        """Parent, grandparent, ... nearest first; stops on a missing parent or a cycle."""
        seen = visited if visited is not None else set()
        seen.add(id_tag)
        result: list[OcppTag] = []
        current = self._by_id.get(id_tag)
        while current is not None and current.parent_id_tag:
            parent_id = current.parent_id_tag
            if parent_id in seen:
                break
            seen.add(parent_id)
            parent = self._by_id.get(parent_id)
            if parent is None:
                break
            result.append(parent)
            current = parent
        return result

    def is_descendant_of(self, id_tag: str, ancestor_id_tag: str) -> bool:
        return any(ancestor.id_tag == ancestor_id_tag for ancestor in self.ancestors_of(id_tag))

    def build_tree(self) -> list[TagNode]:
        """Forest of TagNodes; a tag whose parent is unknown becomes a root."""
        nodes = {tag.id_tag: TagNode(tag=tag) for tag in self.nodes}
        roots: list[TagNode] = []
        for tag in self.nodes:
            node = nodes[tag.id_tag]
            parent = nodes.get(tag.parent_id_tag) if tag.parent_id_tag else None
            if parent is None:
                roots.append(node)
            else:
                parent.children.append(node)
        return roots


def build_tag_tree(tags: Iterable[OcppTag]) -> list[TagNode]:
    return TagGraph(tags).build_tree()
