from __future__ import annotations

import copy
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable

from .db import new_id
from .drag import DragController
from .persister import CommitResult, TreePersister
from .reorder import ReorderOp, coerce_ops, diff, validate_ops
from .tree_engine import (
    NodeNotFoundError,
    TreeConflictError,
    TreeNode,
    TreeValidationError,
    descendant_ids,
    find_node,
)
from .tree_store import COMPONENT_TABLE, MENU_TABLE, NodeStore, TreeTable

logger = logging.getLogger(__name__)

MENU_TYPES = {"link", "category", "brand", "product", "custom", "group"}
MENU_TARGETS = {"_self", "_blank"}
COMPONENT_TYPES = {"composite", "atomic"}


@dataclass(slots=True)
class MoveOutcome:
    status: str
    namespace: str
    tree: list[TreeNode]
    version: int
    ops: list[ReorderOp] = field(default_factory=list)
    error: str | None = None
    reason: str | None = None


class TreeService(ABC):
    """Tree operations shared by every node table."""

    table: TreeTable
    breakdown_columns: tuple[str, ...] = ()
    # Path segments the HTTP routes use next to a namespace.
    reserved_namespaces: frozenset[str] = frozenset({"node"})

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.store = NodeStore(conn, self.table)
        self.persister = TreePersister(self.store)

    def get_tree(self, namespace: str) -> list[TreeNode]:
        return self.store.load_tree(namespace)

    def version(self, namespace: str) -> int:
        return self.store.namespace_version(namespace)

    def get(self, node_id: str) -> TreeNode:
        node = self.store.get(node_id)
        if node is None:
            raise NodeNotFoundError(f"{self.table.name} node {node_id} not found")
        return node

    def namespaces(self) -> list[str]:
        return self.store.namespaces()

    def children(self, namespace: str, parent_id: str | None = None) -> list[TreeNode]:
        return self.store.children(namespace, parent_id)

    def find_max_position(self, namespace: str, parent_id: str | None = None) -> int:
        return self.store.find_max_position(namespace, parent_id)

    def next_position(self, namespace: str, parent_id: str | None = None) -> int:
        return self.find_max_position(namespace, parent_id) + 1

    def reorder(
        self,
        namespace: str,
        ops: Iterable[ReorderOp | dict[str, Any]],
        expected_version: int | None = None,
    ) -> CommitResult:
        op_list = coerce_ops(ops)
        validate_ops(op_list)
        return self.persister.commit(namespace, op_list, expected_version)

    def move(
        self,
        namespace: str,
        source_id: str,
        target_id: str,
        expected_version: int | None = None,
    ) -> MoveOutcome:
        version = self.version(namespace)
        if expected_version is not None and expected_version != version:
            return MoveOutcome(
                status="failed",
                namespace=namespace,
                tree=self.get_tree(namespace),
                version=version,
                error=f"namespace {namespace} changed (version {version}, expected {expected_version})",
                reason="conflict",
            )

        forest = self.get_tree(namespace)
        controller = DragController(forest, namespace, version)
        if not controller.drag_start(source_id):
            raise NodeNotFoundError(f"{self.table.name} node {source_id} not found in {namespace}")
        if find_node(controller.displayed, target_id) is None:
            controller.cancel()
            raise NodeNotFoundError(f"{self.table.name} node {target_id} not found in {namespace}")
        if not controller.drag_over(target_id):
            controller.drag_end()
            return MoveOutcome(status="invalid", namespace=namespace, tree=controller.displayed, version=version)

        result = controller.commit_with(self.persister.commit)
        if result is None:
            return MoveOutcome(status="noop", namespace=namespace, tree=controller.displayed, version=version)
        if not result.ok:
            return MoveOutcome(
                status="failed",
                namespace=namespace,
                tree=controller.displayed,
                version=version,
                error=result.error,
                reason=result.reason,
            )
        return MoveOutcome(
            status="committed",
            namespace=namespace,
            tree=controller.displayed,
            version=controller.version if controller.version is not None else self.version(namespace),
            ops=diff(forest, controller.displayed),
        )

    def create(self, data: dict[str, Any]) -> TreeNode:
        values = self._domain_values(data)
        parent_id = _clean_id(data.get("parent_id"))
        namespace = self._requested_namespace(data)
        if parent_id is not None:
            parent = self.get(parent_id)
            if namespace is not None and namespace != parent.namespace:
                raise TreeValidationError(
                    f"parent {parent_id} belongs to {parent.namespace}, not {namespace}"
                )
            namespace = parent.namespace
        namespace = namespace or self.table.default_namespace
        if not namespace:
            raise TreeValidationError(f"{self.table.namespace_column} is required")
        self._check_namespace(namespace)

        node_id = new_id()
        with self.conn:
            position = self._append_position(namespace, parent_id, data.get("position"))
            self.store.insert(node_id, namespace, parent_id, position, values)
            self.store.bump_version(namespace)
        logger.info(
            "node_created",
            extra={"table": self.table.name, "node_id": node_id, "namespace": namespace, "position": position},
        )
        return self.get(node_id)

    def update(self, node_id: str, data: dict[str, Any]) -> TreeNode:
        existing = self.get(node_id)
        values = self._domain_values(data, existing)

        target_namespace = existing.namespace
        target_parent = existing.parent_id
        if "parent_id" in data:
            target_parent = _clean_id(data.get("parent_id"))
        requested_namespace = self._requested_namespace(data)
        if requested_namespace:
            target_namespace = requested_namespace
            if "parent_id" not in data and requested_namespace != existing.namespace:
                target_parent = None

        if target_parent is not None and (
            target_parent != existing.parent_id or target_namespace != existing.namespace
        ):
            if target_parent == node_id:
                raise TreeValidationError("A node cannot reference itself as parent")
            parent = self.get(target_parent)
            subtree = find_node(self.get_tree(existing.namespace), node_id)
            if subtree is not None and target_parent in descendant_ids(subtree):
                raise TreeConflictError(f"node {target_parent} is a descendant of {node_id}")
            target_namespace = parent.namespace

        if target_namespace != existing.namespace:
            self._check_namespace(target_namespace)
        relocating = (target_namespace, target_parent) != (existing.namespace, existing.parent_id)
        with self.conn:
            self.store.update_values(node_id, values)
            if relocating:
                self._relocate(existing, target_namespace, target_parent)
            self.store.bump_version(existing.namespace)
            if target_namespace != existing.namespace:
                self.store.bump_version(target_namespace)
        if relocating:
            logger.info(
                "node_reparented",
                extra={
                    "table": self.table.name,
                    "node_id": node_id,
                    "parent_id": target_parent,
                    "namespace": target_namespace,
                },
            )
        return self.get(node_id)

    def delete(self, node_id: str, cascade: bool = False) -> list[str]:
        existing = self.get(node_id)
        if self.store.count_children(node_id) and not cascade:
            raise TreeConflictError("Cannot delete a node with children. Delete children first.")

        descendants = self.store.subtree(node_id) if cascade else []
        removed = [node_id, *(descendant_id for descendant_id, _ in descendants)]
        namespaces = {existing.namespace, *(namespace for _, namespace in descendants)}
        with self.conn:
            self.store.delete(removed)
            self.store.compact(existing.namespace, existing.parent_id)
            for namespace in sorted(namespaces):
                self.store.bump_version(namespace)
        logger.info(
            "node_deleted",
            extra={"table": self.table.name, "node_id": node_id, "namespace": existing.namespace, "removed": len(removed)},
        )
        return removed

    def clone(self, node_id: str) -> TreeNode:
        existing = self.get(node_id)
        values = self._clone_values(copy.deepcopy(existing.payload))
        clone_id = new_id()
        with self.conn:
            position = self.store.find_max_position(existing.namespace, existing.parent_id) + 1
            self.store.insert(clone_id, existing.namespace, existing.parent_id, position, values)
            self.store.bump_version(existing.namespace)
        logger.info("node_cloned", extra={"table": self.table.name, "node_id": node_id, "clone_id": clone_id})
        return self.get(clone_id)

    def statistics(self, namespace: str | None = None) -> dict[str, Any]:
        nodes = self.store.load_nodes(namespace) if namespace else self.store.load_all()
        enabled = sum(1 for node in nodes if node.payload.get("is_enabled"))
        stats: dict[str, Any] = {
            "total": len(nodes),
            "enabled": enabled,
            "disabled": len(nodes) - enabled,
            "namespaces": len(self.namespaces()),
        }
        for column in self.breakdown_columns:
            counts: dict[str, int] = {}
            for node in nodes:
                key = str(node.payload.get(column))
                counts[key] = counts.get(key, 0) + 1
            stats[f"by_{column}"] = counts
        return stats

    def _requested_namespace(self, data: dict[str, Any]) -> str | None:
        raw = data.get(self.table.namespace_column, data.get("namespace"))
        if raw is None:
            return None
        namespace = str(raw).strip()
        return namespace or None

    def _append_position(self, namespace: str, parent_id: str | None, requested: Any) -> int:
        tail = self.store.find_max_position(namespace, parent_id) + 1
        if requested is None or isinstance(requested, bool):
            return tail
        try:
            position = int(requested)
        except (TypeError, ValueError) as error:
            raise TreeValidationError("position must be an integer") from error
        if position < 0 or position > tail or self.store.position_taken(namespace, parent_id, position):
            return tail
        return position

    def _relocate(self, node: TreeNode, namespace: str, parent_id: str | None) -> None:
        moved_descendants: set[str] = set()
        if namespace != node.namespace:
            subtree = find_node(self.get_tree(node.namespace), node.id)
            if subtree is not None:
                moved_descendants = descendant_ids(subtree)
        position = self.store.find_max_position(namespace, parent_id) + 1
        self.store.relocate(node.id, namespace, parent_id, position)
        self.store.set_namespace(moved_descendants, namespace)
        self.store.compact(node.namespace, node.parent_id)

    def _check_namespace(self, namespace: str) -> None:
        if namespace in self.reserved_namespaces:
            raise TreeValidationError(f"{self.table.namespace_column} {namespace} is reserved")

    @abstractmethod
    def _domain_values(self, data: dict[str, Any], existing: TreeNode | None = None) -> dict[str, Any]:
        """Validate request data into column values for insert or update."""

    def _clone_values(self, payload: dict[str, Any]) -> dict[str, Any]:
        return payload


def _clean_id(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _pick(data: dict[str, Any], key: str, existing: TreeNode | None, default: Any) -> Any:
    if key in data:
        return data[key]
    if existing is not None:
        return existing.payload.get(key, default)
    return default


class MenuService(TreeService):
    table = MENU_TABLE
    breakdown_columns = ("menu_type", "target")

    def get_menu_tree(self, menu_group: str) -> list[TreeNode]:
        return self.get_tree(menu_group)

    def _domain_values(self, data: dict[str, Any], existing: TreeNode | None = None) -> dict[str, Any]:
        menu_type = str(_pick(data, "menu_type", existing, "link"))
        if menu_type not in MENU_TYPES:
            raise TreeValidationError(f"unsupported menu_type {menu_type}")
        target = str(_pick(data, "target", existing, "_self"))
        if target not in MENU_TARGETS:
            raise TreeValidationError(f"unsupported target {target}")
        payload = _pick(data, "payload", existing, {})
        if not isinstance(payload, dict):
            raise TreeValidationError("payload must be an object")
        url = _pick(data, "url", existing, None)
        return {
            "menu_type": menu_type,
            "url": str(url).strip() if url else None,
            "target": target,
            "is_enabled": bool(_pick(data, "is_enabled", existing, True)),
            "payload": payload,
        }


class ComponentConfigService(TreeService):
    table = COMPONENT_TABLE
    breakdown_columns = ("category", "component_type")
    reserved_namespaces = frozenset({"node", "key"})

    def get_by_key(self, component_key: str) -> TreeNode:
        node = self.store.find_by("component_key", component_key)
        if node is None:
            raise NodeNotFoundError(f"component {component_key} not found")
        return node

    def list_components(
        self,
        library: str | None = None,
        category: str | None = None,
        component_type: str | None = None,
        only_enabled: bool = False,
    ) -> list[TreeNode]:
        nodes = self.store.load_nodes(library) if library else self.store.load_all()
        return [
            node
            for node in nodes
            if (category is None or node.payload.get("category") == category)
            and (component_type is None or node.payload.get("component_type") == component_type)
            and (not only_enabled or node.payload.get("is_enabled"))
        ]

    def _domain_values(self, data: dict[str, Any], existing: TreeNode | None = None) -> dict[str, Any]:
        component_key = str(_pick(data, "component_key", existing, "") or "").strip()
        if not component_key:
            raise TreeValidationError("component_key is required")
        holder = self.store.find_by("component_key", component_key)
        if holder is not None and (existing is None or holder.id != existing.id):
            raise TreeConflictError(f"component_key {component_key} is already in use")
        component_type = str(_pick(data, "component_type", existing, "composite"))
        if component_type not in COMPONENT_TYPES:
            raise TreeValidationError(f"unsupported component_type {component_type}")
        values: dict[str, Any] = {
            "component_key": component_key,
            "display_name": str(_pick(data, "display_name", existing, "") or "").strip() or component_key,
            "component_type": component_type,
            "category": str(_pick(data, "category", existing, "layout") or "layout"),
            "is_enabled": bool(_pick(data, "is_enabled", existing, True)),
        }
        for column in ("default_config", "config_schema", "metadata"):
            value = _pick(data, column, existing, {})
            if not isinstance(value, dict):
                raise TreeValidationError(f"{column} must be an object")
            values[column] = value
        return values

    def _clone_values(self, payload: dict[str, Any]) -> dict[str, Any]:
        base_key = f"{payload['component_key']}-copy"
        candidate = base_key
        suffix = 2
        while self.store.find_by("component_key", candidate) is not None:
            candidate = f"{base_key}-{suffix}"
            suffix += 1
        return {**payload, "component_key": candidate, "display_name": f"{payload['display_name']} (copy)"}
