from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Iterator

logger = logging.getLogger(__name__)


class TreeError(Exception):
    """Base class for tree consistency failures."""


class NodeNotFoundError(TreeError, LookupError):
    """Raised when a referenced node id is absent."""


class TreeValidationError(TreeError, ValueError):
    """Raised when a tree edit request is malformed."""


class ReorderValidationError(TreeValidationError):
    """Raised when a reorder op list is inconsistent."""


class InvalidMoveError(TreeError, ValueError):
    """Raised when a move would cross a parent boundary or close a cycle."""


class TreeConflictError(TreeError):
    """Raised when storage state disagrees with the requested edit."""


@dataclass(slots=True)
class TreeNode:
    id: str
    parent_id: str | None
    namespace: str
    position: int
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    level: int = 0
    children: list[TreeNode] = field(default_factory=list)

    def to_dict(self, include_children: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            **self.payload,
            "id": self.id,
            "parent_id": self.parent_id,
            "namespace": self.namespace,
            "position": self.position,
            "level": self.level,
            "created_at": self.created_at,
        }
        if include_children:
            data["children"] = [child.to_dict() for child in self.children]
        return data


@dataclass(slots=True)
class NodeLocation:
    parent_id: str | None
    siblings: list[TreeNode]
    index: int

    @property
    def node(self) -> TreeNode:
        return self.siblings[self.index]


def sibling_sort_key(node: TreeNode) -> tuple[int, str, str]:
    return (node.position, node.created_at or "", node.id)


def build_forest(nodes: Iterable[TreeNode]) -> list[TreeNode]:
    """Assemble flat nodes into a forest ordered by position at every level.

    The input nodes are not modified. A node whose parent is missing, lives in
    another namespace, or sits on a parent cycle becomes a root of the returned
    forest. Only one member of each cycle is promoted; the rest of the cycle
    and anything hanging below it keep their parents.
    """
    ordered = sorted((replace(node, children=[]) for node in nodes), key=sibling_sort_key)
    by_id: dict[str, TreeNode] = {}
    for node in ordered:
        if node.id in by_id:
            logger.warning("duplicate_node_ignored", extra={"node_id": node.id, "namespace": node.namespace})
            continue
        by_id[node.id] = node

    roots: list[TreeNode] = []
    for node in by_id.values():
        parent = by_id.get(node.parent_id) if node.parent_id is not None else None
        if parent is not None and parent.namespace == node.namespace and parent is not node:
            parent.children.append(node)
            continue
        if node.parent_id is not None:
            logger.info(
                "orphan_node_promoted",
                extra={"node_id": node.id, "missing_parent_id": node.parent_id, "namespace": node.namespace},
            )
            node.parent_id = None
        roots.append(node)

    reached = {node.id for node in iter_nodes(roots)}
    for node in by_id.values():
        if node.id in reached:
            continue
        member = _cycle_member(node, by_id)
        parent = by_id[member.parent_id]
        parent.children[:] = [child for child in parent.children if child is not member]
        logger.warning(
            "cyclic_parent_link_broken",
            extra={"node_id": member.id, "parent_id": member.parent_id, "namespace": member.namespace},
        )
        member.parent_id = None
        roots.append(member)
        reached.update(item.id for item in iter_nodes([member]))

    _sort_levels(roots, level=0)
    return roots


def _cycle_member(node: TreeNode, by_id: dict[str, TreeNode]) -> TreeNode:
    # Every unreached node has an unreached parent, so the walk ends on a cycle.
    path: list[TreeNode] = []
    seen: set[str] = set()
    current = node
    while current.id not in seen:
        path.append(current)
        seen.add(current.id)
        current = by_id[current.parent_id]
    start = [item.id for item in path].index(current.id)
    cycle = path[start:]
    return min(cycle, key=sibling_sort_key)


def _sort_levels(nodes: list[TreeNode], level: int) -> None:
    nodes.sort(key=sibling_sort_key)
    for node in nodes:
        node.level = level
        _sort_levels(node.children, level + 1)


def clone_forest(forest: list[TreeNode]) -> list[TreeNode]:
    return [_clone_node(node) for node in forest]


def _clone_node(node: TreeNode) -> TreeNode:
    return TreeNode(
        id=node.id,
        parent_id=node.parent_id,
        namespace=node.namespace,
        position=node.position,
        payload=copy.deepcopy(node.payload),
        created_at=node.created_at,
        level=node.level,
        children=[_clone_node(child) for child in node.children],
    )


def locate(forest: list[TreeNode], node_id: str, parent_id: str | None = None) -> NodeLocation | None:
    for index, node in enumerate(forest):
        if node.id == node_id:
            return NodeLocation(parent_id=parent_id, siblings=forest, index=index)
        found = locate(node.children, node_id, node.id)
        if found is not None:
            return found
    return None


def find_node(forest: list[TreeNode], node_id: str) -> TreeNode | None:
    location = locate(forest, node_id)
    return location.node if location is not None else None


def move_within_siblings(forest: list[TreeNode], source_id: str, target_id: str) -> list[TreeNode] | None:
    """Move ``source_id`` into the slot held by ``target_id`` under the same parent.

    Returns a new forest, or None when the move is a no-op or not allowed:
    identical ids, an unknown id, or source and target under different parents.
    """
    if source_id == target_id:
        return None

    cloned = clone_forest(forest)
    source = locate(cloned, source_id)
    target = locate(cloned, target_id)
    if source is None or target is None:
        return None
    if source.parent_id != target.parent_id or source.siblings is not target.siblings:
        return None

    siblings = source.siblings
    moved = siblings.pop(source.index)
    siblings.insert(target.index, moved)
    refresh_metadata(cloned)
    return cloned


def refresh_metadata(forest: list[TreeNode], level: int = 0, parent_id: str | None = None) -> None:
    for index, node in enumerate(forest):
        node.level = level
        node.position = index
        node.parent_id = parent_id
        refresh_metadata(node.children, level + 1, node.id)


def iter_nodes(forest: list[TreeNode]) -> Iterator[TreeNode]:
    for node in forest:
        yield node
        yield from iter_nodes(node.children)


def flatten_forest(forest: list[TreeNode]) -> list[TreeNode]:
    return list(iter_nodes(forest))


def descendant_ids(node: TreeNode) -> set[str]:
    return {child.id for child in iter_nodes(node.children)}


def find_cycle(parent_map: dict[str, str | None]) -> list[str] | None:
    """Return the ids forming a parent cycle, or None when the map is acyclic."""
    settled: set[str] = set()
    for start in parent_map:
        path: list[str] = []
        on_path: set[str] = set()
        current: str | None = start
        while current is not None and current not in settled:
            if current in on_path:
                return path[path.index(current):]
            path.append(current)
            on_path.add(current)
            current = parent_map.get(current)
        settled.update(path)
    return None
