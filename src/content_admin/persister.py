from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterable

from .reorder import ReorderOp, build_reorder_ops, coerce_ops, validate_ops
from .tree_engine import (
    InvalidMoveError,
    NodeNotFoundError,
    TreeConflictError,
    TreeError,
    TreeNode,
    TreeValidationError,
    build_forest,
    find_cycle,
)
from .tree_store import NodeStore

logger = logging.getLogger(__name__)

REORDER_FAILED_MESSAGE = "reorder failed, please retry"


@dataclass(slots=True)
class CommitResult:
    ok: bool
    version: int | None = None
    applied: int = 0
    error: str | None = None
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "version": self.version,
            "applied": self.applied,
            "error": self.error,
            "reason": self.reason,
        }


def _failure_reason(error: Exception) -> str:
    if isinstance(error, NodeNotFoundError):
        return "not_found"
    if isinstance(error, TreeConflictError):
        return "conflict"
    if isinstance(error, (InvalidMoveError, TreeValidationError)):
        return "invalid"
    return "storage"


class TreePersister:
    """Applies reorder ops for one namespace as a single transaction."""

    def __init__(self, store: NodeStore) -> None:
        self.store = store

    def commit(
        self,
        namespace: str,
        ops: Iterable[ReorderOp | dict[str, Any]],
        expected_version: int | None = None,
    ) -> CommitResult:
        try:
            op_list = coerce_ops(ops)
            with self.store.conn:
                self.store.begin()
                version = self._apply(namespace, op_list, expected_version)
        except (TreeError, sqlite3.Error) as error:
            reason = _failure_reason(error)
            logger.warning(
                "reorder_failed",
                extra={
                    "table": self.store.table.name,
                    "namespace": namespace,
                    "reason": reason,
                    "error": str(error),
                },
            )
            return CommitResult(ok=False, error=str(error) or REORDER_FAILED_MESSAGE, reason=reason)

        logger.info(
            "reorder_committed",
            extra={
                "table": self.store.table.name,
                "namespace": namespace,
                "op_count": len(op_list),
                "version": version,
            },
        )
        return CommitResult(ok=True, version=version, applied=len(op_list))

    def _apply(self, namespace: str, ops: list[ReorderOp], expected_version: int | None) -> int:
        current_version = self.store.namespace_version(namespace)
        if expected_version is not None and expected_version != current_version:
            raise TreeConflictError(
                f"namespace {namespace} changed (version {current_version}, expected {expected_version})"
            )
        if not ops:
            return current_version

        validate_ops(ops)
        stored = self.store.load_nodes(namespace)
        # Ops index into the forest as loaded, so the layout comes from the projection.
        layout = build_reorder_ops(build_forest(stored))
        current = {op.node_id: op for op in layout}
        for op in ops:
            if op.node_id not in current:
                raise NodeNotFoundError(f"node {op.node_id} not found in namespace {namespace}")
            if op.parent_id is not None and op.parent_id not in current:
                raise NodeNotFoundError(f"parent {op.parent_id} not found in namespace {namespace}")

        proposed = {node_id: op.parent_id for node_id, op in current.items()}
        proposed.update({op.node_id: op.parent_id for op in ops})
        cycle = find_cycle(proposed)
        if cycle:
            raise InvalidMoveError(f"reorder would create a cycle through {', '.join(cycle)}")

        writes = _group_writes(layout, ops, {node.id: node for node in stored})
        self.store.apply_positions(writes)
        return self.store.bump_version(namespace)


def _group_writes(
    layout: list[ReorderOp],
    ops: list[ReorderOp],
    stored: dict[str, TreeNode],
) -> list[ReorderOp]:
    """Renumber every sibling group an op touches to 0..n-1.

    Moved nodes take their requested index and win ties. Untouched siblings
    keep their index in the loaded order and keep their stored parent, so a
    dangling link is only rewritten for nodes the caller actually moved.
    """
    moved = {op.node_id: op for op in ops}
    groups = {current.parent_id for current in layout if current.node_id in moved}
    groups.update(op.parent_id for op in ops)

    writes: list[ReorderOp] = []
    for parent_id in groups:
        ranked: list[tuple[int, int, str]] = []
        for current in layout:
            if current.parent_id == parent_id and current.node_id not in moved:
                ranked.append((current.position, 1, current.node_id))
        for op in ops:
            if op.parent_id == parent_id:
                ranked.append((op.position, 0, op.node_id))
        ranked.sort()
        for index, (_, _, node_id) in enumerate(ranked):
            node = stored[node_id]
            target_parent = parent_id if node_id in moved else node.parent_id
            if node.position != index or node.parent_id != target_parent:
                writes.append(ReorderOp(node_id=node_id, position=index, parent_id=target_parent))
    return writes
