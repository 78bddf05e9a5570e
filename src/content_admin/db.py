from __future__ import annotations

import json
import sqlite3
import uuid
from pathlib import Path
from typing import Any

DEFAULT_TIMEOUT = 5.0

SCHEMA = """
CREATE TABLE IF NOT EXISTS menus (
    id TEXT PRIMARY KEY,
    menu_group TEXT NOT NULL,
    parent_id TEXT,
    position INTEGER NOT NULL DEFAULT 0,
    menu_type TEXT NOT NULL DEFAULT 'link',
    url TEXT,
    target TEXT NOT NULL DEFAULT '_self',
    is_enabled INTEGER NOT NULL DEFAULT 1,
    payload TEXT NOT NULL DEFAULT '{}',
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS component_configs (
    id TEXT PRIMARY KEY,
    library TEXT NOT NULL DEFAULT 'default',
    parent_id TEXT,
    position INTEGER NOT NULL DEFAULT 0,
    component_key TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL,
    component_type TEXT NOT NULL DEFAULT 'composite',
    category TEXT NOT NULL DEFAULT 'layout',
    is_enabled INTEGER NOT NULL DEFAULT 1,
    default_config TEXT NOT NULL DEFAULT '{}',
    config_schema TEXT NOT NULL DEFAULT '{}',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS tree_namespace_versions (
    table_name TEXT NOT NULL,
    namespace TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (table_name, namespace)
);
"""


def connect(db_path: str | Path, timeout: float = DEFAULT_TIMEOUT) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), timeout=timeout)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str | Path) -> None:
    conn = connect(db_path)
    with conn:
        conn.executescript(SCHEMA)
        migrate_tree_indexes(conn)
        seed_default_menus(conn)
        seed_default_components(conn)
    conn.close()


def migrate_tree_indexes(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_menus_tree
        ON menus(menu_group, parent_id, position)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_component_configs_tree
        ON component_configs(library, parent_id, position)
        """
    )


def new_id() -> str:
    return uuid.uuid4().hex


def seed_default_menus(conn: sqlite3.Connection) -> None:
    row = conn.execute("SELECT id FROM menus LIMIT 1").fetchone()
    if row is not None:
        return

    home_id = new_id()
    shop_id = new_id()
    entries = [
        (home_id, "main", None, 0, "link", "/", {"translations": {"en": {"label": "Home"}}}),
        (shop_id, "main", None, 1, "category", "/shop", {"translations": {"en": {"label": "Shop"}}}),
        (new_id(), "main", shop_id, 0, "link", "/shop/new", {"translations": {"en": {"label": "New arrivals"}}}),
        (new_id(), "main", shop_id, 1, "link", "/shop/sale", {"translations": {"en": {"label": "Sale"}}}),
        (new_id(), "footer", None, 0, "link", "/about", {"translations": {"en": {"label": "About us"}}}),
        (new_id(), "footer", None, 1, "link", "/contact", {"translations": {"en": {"label": "Contact"}}}),
    ]
    conn.executemany(
        """
        INSERT INTO menus(id, menu_group, parent_id, position, menu_type, url, payload)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        [(*entry[:6], json_dumps(entry[6])) for entry in entries],
    )


def seed_default_components(conn: sqlite3.Connection) -> None:
    row = conn.execute("SELECT id FROM component_configs LIMIT 1").fetchone()
    if row is not None:
        return

    header_id = new_id()
    entries = [
        (header_id, None, 0, "header", "Header", "composite", "layout", {"sticky": True}),
        (new_id(), header_id, 0, "header.logo", "Logo", "atomic", "branding", {"height": 40}),
        (new_id(), header_id, 1, "header.main_menu", "Main menu", "atomic", "navigation", {"menu_group": "main"}),
        (new_id(), None, 1, "footer", "Footer", "composite", "layout", {}),
    ]
    conn.executemany(
        """
        INSERT INTO component_configs(id, library, parent_id, position, component_key, display_name, component_type, category, default_config)
        VALUES (?, 'default', ?, ?, ?, ?, ?, ?, ?)
        """,
        [(*entry[:7], json_dumps(entry[7])) for entry in entries],
    )


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def json_loads(raw: str | None, default: Any = None) -> Any:
    if not raw:
        return {} if default is None else default
    return json.loads(raw)
