from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from .tree_engine import (
    InvalidMoveError,
    NodeNotFoundError,
    ReorderValidationError,
    TreeNode,
)


@dataclass(slots=True, frozen=True)
class ReorderOp:
    node_id: str
    position: int
    parent_id: str | None = None

    @classmethod
    def from_dict(cls, item: Any) -> ReorderOp:
        if not isinstance(item, dict):
            raise ReorderValidationError("reorder items must be objects")
        node_id = item.get("id", item.get("node_id"))
        if not isinstance(node_id, str) or not node_id.strip():
            raise ReorderValidationError("reorder item requires a string id")
        position = item.get("position")
        if isinstance(position, bool) or not isinstance(position, int) or position < 0:
            raise ReorderValidationError(f"reorder item {node_id} requires a non-negative integer position")
        parent_id = item.get("parent_id", item.get("parentId"))
        if parent_id is not None and not isinstance(parent_id, str):
            raise ReorderValidationError(f"reorder item {node_id} has an invalid parent_id")
        return cls(node_id=node_id.strip(), position=position, parent_id=_normalize_parent(parent_id))

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.node_id, "position": self.position}
        if self.parent_id is not None:
            data["parent_id"] = self.parent_id
        return data


def _normalize_parent(parent_id: str | None) -> str | None:
    if parent_id is None:
        return None
    return parent_id.strip() or None


def build_reorder_ops(forest: list[TreeNode], parent_id: str | None = None) -> list[ReorderOp]:
    """List every node of the forest as an op, parents before their children.

    Positions come from list order and parents from ownership, so the ops
    describe the forest as displayed rather than the stored column values.
    """
    ops: list[ReorderOp] = []
    for index, node in enumerate(forest):
        ops.append(ReorderOp(node_id=node.id, position=index, parent_id=parent_id))
        if node.children:
            ops.extend(build_reorder_ops(node.children, node.id))
    return ops


def diff(before: list[TreeNode], after: list[TreeNode]) -> list[ReorderOp]:
    previous = {op.node_id: op for op in build_reorder_ops(before)}
    return [op for op in build_reorder_ops(after) if previous.get(op.node_id) != op]


def has_changes(before: list[TreeNode], after: list[TreeNode]) -> bool:
    previous_ops = build_reorder_ops(before)
    next_ops = build_reorder_ops(after)
    if len(previous_ops) != len(next_ops):
        return True
    for previous, current in zip(previous_ops, next_ops):
        if (
            previous.node_id != current.node_id
            or previous.position != current.position
            or _normalize_parent(previous.parent_id) != _normalize_parent(current.parent_id)
        ):
            return True
    return False


def validate_same_parent(before: list[TreeNode], ops: Iterable[ReorderOp]) -> None:
    parents = {op.node_id: op.parent_id for op in build_reorder_ops(before)}
    for op in ops:
        if op.node_id not in parents:
            raise NodeNotFoundError(f"node {op.node_id} not found")
        if parents[op.node_id] != op.parent_id:
            raise InvalidMoveError(
                f"node {op.node_id} cannot move from parent {parents[op.node_id] or 'root'} "
                f"to {op.parent_id or 'root'} by reordering"
            )


def validate_ops(ops: Iterable[ReorderOp]) -> None:
    seen_ids: set[str] = set()
    positions_by_parent: dict[str | None, set[int]] = {}
    for op in ops:
        if op.node_id in seen_ids:
            raise ReorderValidationError(f"Duplicate node {op.node_id} in reorder items")
        seen_ids.add(op.node_id)
        if op.position < 0:
            raise ReorderValidationError(f"Negative position {op.position} for node {op.node_id}")
        if op.parent_id == op.node_id:
            raise ReorderValidationError(f"Node {op.node_id} cannot be its own parent")
        taken = positions_by_parent.setdefault(op.parent_id, set())
        if op.position in taken:
            raise ReorderValidationError(f"Duplicate position {op.position} found for parent {op.parent_id or 'root'}")
        taken.add(op.position)


def coerce_ops(items: Iterable[ReorderOp | dict[str, Any]]) -> list[ReorderOp]:
    return [item if isinstance(item, ReorderOp) else ReorderOp.from_dict(item) for item in items]
