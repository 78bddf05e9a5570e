from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any, Iterable

from .db import json_dumps, json_loads
from .reorder import ReorderOp
from .tree_engine import TreeNode, build_forest


@dataclass(slots=True, frozen=True)
class TreeTable:
    """Describes how one node table maps onto the generic tree columns."""

    name: str
    namespace_column: str
    columns: tuple[str, ...]
    json_columns: frozenset[str] = field(default_factory=frozenset)
    bool_columns: frozenset[str] = field(default_factory=frozenset)
    default_namespace: str | None = None

    @property
    def select_columns(self) -> str:
        return ", ".join(
            ["id", "parent_id", "position", f"{self.namespace_column} AS namespace", "created_at", *self.columns]
        )


MENU_TABLE = TreeTable(
    name="menus",
    namespace_column="menu_group",
    columns=("menu_type", "url", "target", "is_enabled", "payload"),
    json_columns=frozenset({"payload"}),
    bool_columns=frozenset({"is_enabled"}),
)

COMPONENT_TABLE = TreeTable(
    name="component_configs",
    namespace_column="library",
    columns=(
        "component_key",
        "display_name",
        "component_type",
        "category",
        "is_enabled",
        "default_config",
        "config_schema",
        "metadata",
    ),
    json_columns=frozenset({"default_config", "config_schema", "metadata"}),
    bool_columns=frozenset({"is_enabled"}),
    default_namespace="default",
)


class NodeStore:
    def __init__(self, conn: sqlite3.Connection, table: TreeTable) -> None:
        self.conn = conn
        self.table = table

    def node_from_row(self, row: sqlite3.Row) -> TreeNode:
        payload: dict[str, Any] = {}
        for column in self.table.columns:
            value = row[column]
            if column in self.table.json_columns:
                value = json_loads(value)
            elif column in self.table.bool_columns:
                value = bool(value)
            payload[column] = value
        return TreeNode(
            id=str(row["id"]),
            parent_id=row["parent_id"],
            namespace=row["namespace"],
            position=int(row["position"]),
            payload=payload,
            created_at=str(row["created_at"] or ""),
        )

    def encode_values(self, values: dict[str, Any]) -> dict[str, Any]:
        encoded: dict[str, Any] = {}
        for column, value in values.items():
            if column in self.table.json_columns:
                value = json_dumps(value if value is not None else {})
            elif column in self.table.bool_columns:
                value = 1 if value else 0
            encoded[column] = value
        return encoded

    def load_nodes(self, namespace: str) -> list[TreeNode]:
        rows = self.conn.execute(
            f"""
            SELECT {self.table.select_columns}
            FROM {self.table.name}
            WHERE {self.table.namespace_column} = ?
            ORDER BY position, created_at, id
            """,
            (namespace,),
        ).fetchall()
        return [self.node_from_row(row) for row in rows]

    def load_tree(self, namespace: str) -> list[TreeNode]:
        return build_forest(self.load_nodes(namespace))

    def load_all(self) -> list[TreeNode]:
        rows = self.conn.execute(
            f"SELECT {self.table.select_columns} FROM {self.table.name} ORDER BY namespace, position, created_at, id"
        ).fetchall()
        return [self.node_from_row(row) for row in rows]

    def get(self, node_id: str) -> TreeNode | None:
        row = self.conn.execute(
            f"SELECT {self.table.select_columns} FROM {self.table.name} WHERE id = ?",
            (node_id,),
        ).fetchone()
        return self.node_from_row(row) if row else None

    def find_by(self, column: str, value: Any) -> TreeNode | None:
        if column not in self.table.columns:
            raise ValueError(f"unknown column {column}")
        row = self.conn.execute(
            f"SELECT {self.table.select_columns} FROM {self.table.name} WHERE {column} = ?",
            (value,),
        ).fetchone()
        return self.node_from_row(row) if row else None

    def namespaces(self) -> list[str]:
        rows = self.conn.execute(
            f"SELECT DISTINCT {self.table.namespace_column} AS namespace FROM {self.table.name} ORDER BY namespace"
        ).fetchall()
        return [row["namespace"] for row in rows]

    def children(self, namespace: str, parent_id: str | None) -> list[TreeNode]:
        rows = self.conn.execute(
            f"""
            SELECT {self.table.select_columns}
            FROM {self.table.name}
            WHERE {self.table.namespace_column} = ? AND parent_id IS ?
            ORDER BY position, created_at, id
            """,
            (namespace, parent_id),
        ).fetchall()
        return [self.node_from_row(row) for row in rows]

    def count_children(self, node_id: str) -> int:
        row = self.conn.execute(
            f"SELECT COUNT(*) AS total FROM {self.table.name} WHERE parent_id = ?",
            (node_id,),
        ).fetchone()
        return int(row["total"])

    def subtree(self, node_id: str) -> list[tuple[str, str]]:
        """Return ``(id, namespace)`` for every descendant, whatever its namespace."""
        rows = self.conn.execute(
            f"""
            WITH RECURSIVE descendants(id) AS (
                SELECT id FROM {self.table.name} WHERE parent_id = ?
                UNION
                SELECT child.id FROM {self.table.name} AS child
                JOIN descendants ON child.parent_id = descendants.id
            )
            SELECT node.id AS id, node.{self.table.namespace_column} AS namespace
            FROM {self.table.name} AS node
            JOIN descendants ON node.id = descendants.id
            WHERE node.id != ?
            """,
            (node_id, node_id),
        ).fetchall()
        return [(row["id"], row["namespace"]) for row in rows]

    def find_max_position(self, namespace: str, parent_id: str | None) -> int:
        row = self.conn.execute(
            f"""
            SELECT COALESCE(MAX(position), -1) AS max_position
            FROM {self.table.name}
            WHERE {self.table.namespace_column} = ? AND parent_id IS ?
            """,
            (namespace, parent_id),
        ).fetchone()
        return int(row["max_position"])

    def position_taken(self, namespace: str, parent_id: str | None, position: int, exclude_id: str | None = None) -> bool:
        row = self.conn.execute(
            f"""
            SELECT id FROM {self.table.name}
            WHERE {self.table.namespace_column} = ? AND parent_id IS ? AND position = ? AND id IS NOT ?
            LIMIT 1
            """,
            (namespace, parent_id, position, exclude_id),
        ).fetchone()
        return row is not None

    def insert(self, node_id: str, namespace: str, parent_id: str | None, position: int, values: dict[str, Any]) -> None:
        encoded = self.encode_values(values)
        columns = ["id", self.table.namespace_column, "parent_id", "position", *encoded.keys()]
        placeholders = ", ".join("?" for _ in columns)
        self.conn.execute(
            f"INSERT INTO {self.table.name}({', '.join(columns)}) VALUES ({placeholders})",
            (node_id, namespace, parent_id, position, *encoded.values()),
        )

    def update_values(self, node_id: str, values: dict[str, Any]) -> None:
        if not values:
            return
        encoded = self.encode_values(values)
        assignments = ", ".join(f"{column} = ?" for column in encoded)
        self.conn.execute(
            f"UPDATE {self.table.name} SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (*encoded.values(), node_id),
        )

    def relocate(self, node_id: str, namespace: str, parent_id: str | None, position: int) -> None:
        self.conn.execute(
            f"""
            UPDATE {self.table.name}
            SET {self.table.namespace_column} = ?, parent_id = ?, position = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (namespace, parent_id, position, node_id),
        )

    def set_namespace(self, node_ids: Iterable[str], namespace: str) -> None:
        self.conn.executemany(
            f"UPDATE {self.table.name} SET {self.table.namespace_column} = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            [(namespace, node_id) for node_id in node_ids],
        )

    def delete(self, node_ids: Iterable[str]) -> None:
        self.conn.executemany(
            f"DELETE FROM {self.table.name} WHERE id = ?",
            [(node_id,) for node_id in node_ids],
        )

    def apply_positions(self, ops: Iterable[ReorderOp]) -> int:
        cursor = self.conn.executemany(
            f"UPDATE {self.table.name} SET position = ?, parent_id = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            [(op.position, op.parent_id, op.node_id) for op in ops],
        )
        return cursor.rowcount

    def compact(self, namespace: str, parent_id: str | None) -> int:
        """Renumber one sibling group to 0..n-1 in load order."""
        siblings = self.children(namespace, parent_id)
        changes = [(index, node.id) for index, node in enumerate(siblings) if node.position != index]
        if changes:
            self.conn.executemany(
                f"UPDATE {self.table.name} SET position = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                changes,
            )
        return len(changes)

    def namespace_version(self, namespace: str) -> int:
        row = self.conn.execute(
            "SELECT version FROM tree_namespace_versions WHERE table_name = ? AND namespace = ?",
            (self.table.name, namespace),
        ).fetchone()
        return int(row["version"]) if row else 0

    def bump_version(self, namespace: str) -> int:
        self.conn.execute(
            """
            INSERT INTO tree_namespace_versions(table_name, namespace, version)
            VALUES (?, ?, 1)
            ON CONFLICT(table_name, namespace) DO UPDATE SET
                version = version + 1,
                updated_at = CURRENT_TIMESTAMP
            """,
            (self.table.name, namespace),
        )
        return self.namespace_version(namespace)

    def begin(self) -> None:
        if not self.conn.in_transaction:
            self.conn.execute("BEGIN IMMEDIATE")
