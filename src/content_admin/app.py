from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .db import DEFAULT_TIMEOUT, connect, init_db
from .persister import REORDER_FAILED_MESSAGE
from .services import ComponentConfigService, MenuService, TreeService
from .tree_engine import (
    InvalidMoveError,
    NodeNotFoundError,
    TreeConflictError,
    TreeNode,
    TreeValidationError,
)


def _db_path(app: Flask) -> Path:
    return Path(app.config["DATABASE_PATH"])


def _configure(app: Flask, app_name: str, database_path: str | None) -> None:
    app.config["APP_NAME"] = app_name
    app.config["DATABASE_PATH"] = database_path or os.environ.get("TREE_ADMIN_DB_PATH", "./data.db")
    app.config["SQLITE_TIMEOUT"] = float(os.environ.get("SQLITE_TIMEOUT", DEFAULT_TIMEOUT))
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("content_admin").setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(NodeNotFoundError)
    def handle_not_found(error: NodeNotFoundError) -> Any:
        app.logger.info("node_not_found", extra={"path": request.path, "error": str(error)})
        return jsonify({"error": str(error)}), 404

    @app.errorhandler(TreeValidationError)
    def handle_validation_error(error: TreeValidationError) -> Any:
        app.logger.info("tree_validation_failed", extra={"path": request.path, "error": str(error)})
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(InvalidMoveError)
    def handle_invalid_move(error: InvalidMoveError) -> Any:
        app.logger.info("invalid_move", extra={"path": request.path, "error": str(error)})
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(TreeConflictError)
    def handle_conflict(error: TreeConflictError) -> Any:
        app.logger.warning("tree_conflict", extra={"path": request.path, "error": str(error)})
        return jsonify({"error": str(error)}), 409

    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": "invalid request payload"}), 400
        return error

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _configure_connection(app: Flask) -> None:
    @app.teardown_appcontext
    def close_connection(_error: BaseException | None) -> None:
        conn = g.pop("db", None)
        if conn is not None:
            conn.close()


def _connection(app: Flask) -> Any:
    if "db" not in g:
        g.db = connect(_db_path(app), timeout=app.config["SQLITE_TIMEOUT"])
    return g.db


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False)
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


def _optional_version(raw: Any) -> int | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise BadRequest("version must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError) as error:
        raise BadRequest("version must be an integer") from error


def _truthy(raw: str | None) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


def _serialize_tree(namespace: str, version: int, forest: list[TreeNode]) -> dict[str, Any]:
    return {"namespace": namespace, "version": version, "nodes": [node.to_dict() for node in forest]}


def _register_tree_routes(app: Flask, kind: str, service_class: type[TreeService]) -> None:
    def service() -> TreeService:
        return service_class(_connection(app))

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.get(f"/api/{kind}/namespaces")
    def list_namespaces() -> Any:
        return jsonify({"namespaces": service().namespaces()})

    @app.get(f"/api/{kind}/statistics")
    def statistics() -> Any:
        return jsonify(service().statistics(request.args.get("namespace") or None))

    @app.get(f"/api/{kind}/<namespace>/tree")
    def get_tree(namespace: str) -> Any:
        tree_service = service()
        version = tree_service.version(namespace)
        return jsonify(_serialize_tree(namespace, version, tree_service.get_tree(namespace)))

    @app.get(f"/api/{kind}/<namespace>/children")
    def get_children(namespace: str) -> Any:
        parent_id = request.args.get("parent_id") or None
        nodes = service().children(namespace, parent_id)
        return jsonify({"namespace": namespace, "parent_id": parent_id, "nodes": [node.to_dict(False) for node in nodes]})

    @app.get(f"/api/{kind}/<namespace>/next-position")
    def next_position(namespace: str) -> Any:
        parent_id = request.args.get("parent_id") or None
        return jsonify({"namespace": namespace, "parent_id": parent_id, "position": service().next_position(namespace, parent_id)})

    @app.post(f"/api/{kind}/<namespace>/reorder")
    def reorder(namespace: str) -> Any:
        body = _json_body()
        items = body.get("items")
        if not isinstance(items, list):
            return jsonify({"error": "items must be a list"}), 400
        tree_service = service()
        result = tree_service.reorder(namespace, items, _optional_version(body.get("version")))
        if not result.ok:
            app.logger.warning(
                "reorder_rejected",
                extra={"namespace": namespace, "reason": result.reason, "error": result.error},
            )
            return jsonify({"error": REORDER_FAILED_MESSAGE, "reason": result.reason, "detail": result.error}), 409
        app.logger.info("reorder_applied", extra={"namespace": namespace, "op_count": result.applied})
        return jsonify(
            {
                "status": "ok",
                "applied": result.applied,
                **_serialize_tree(namespace, tree_service.version(namespace), tree_service.get_tree(namespace)),
            }
        )

    @app.post(f"/api/{kind}/<namespace>/move")
    def move(namespace: str) -> Any:
        body = _json_body()
        source_id = str(body.get("source_id") or "").strip()
        target_id = str(body.get("target_id") or "").strip()
        if not source_id or not target_id:
            return jsonify({"error": "source_id and target_id are required"}), 400
        outcome = service().move(namespace, source_id, target_id, _optional_version(body.get("version")))
        payload = {
            "status": outcome.status,
            "ops": [op.as_dict() for op in outcome.ops],
            **_serialize_tree(namespace, outcome.version, outcome.tree),
        }
        if outcome.status == "failed":
            return jsonify({**payload, "error": REORDER_FAILED_MESSAGE, "reason": outcome.reason, "detail": outcome.error}), 409
        return jsonify(payload)

    @app.post(f"/api/{kind}")
    def create_node() -> Any:
        node = service().create(_json_body())
        return jsonify(node.to_dict(False)), 201

    @app.get(f"/api/{kind}/node/<node_id>")
    def get_node(node_id: str) -> Any:
        return jsonify(service().get(node_id).to_dict(False))

    @app.put(f"/api/{kind}/node/<node_id>")
    def update_node(node_id: str) -> Any:
        node = service().update(node_id, _json_body())
        return jsonify(node.to_dict(False))

    @app.delete(f"/api/{kind}/node/<node_id>")
    def delete_node(node_id: str) -> Any:
        removed = service().delete(node_id, cascade=_truthy(request.args.get("cascade")))
        return jsonify({"status": "deleted", "ids": removed})

    @app.post(f"/api/{kind}/node/<node_id>/clone")
    def clone_node(node_id: str) -> Any:
        return jsonify(service().clone(node_id).to_dict(False)), 201


def create_menu_app(database_path: str | None = None) -> Flask:
    app = Flask(__name__)
    _configure(app, "menus", database_path)
    _configure_error_handlers(app)
    _configure_connection(app)
    init_db(_db_path(app))
    _register_tree_routes(app, "menus", MenuService)
    return app


def create_component_app(database_path: str | None = None) -> Flask:
    app = Flask(__name__)
    _configure(app, "components", database_path)
    _configure_error_handlers(app)
    _configure_connection(app)
    init_db(_db_path(app))
    _register_tree_routes(app, "components", ComponentConfigService)

    @app.get("/api/components")
    def list_components() -> Any:
        nodes = ComponentConfigService(_connection(app)).list_components(
            library=request.args.get("library") or None,
            category=request.args.get("category") or None,
            component_type=request.args.get("component_type") or None,
            only_enabled=_truthy(request.args.get("only_enabled")),
        )
        return jsonify({"components": [node.to_dict(False) for node in nodes]})

    @app.get("/api/components/key/<component_key>")
    def get_component_by_key(component_key: str) -> Any:
        node = ComponentConfigService(_connection(app)).get_by_key(component_key)
        return jsonify(node.to_dict(False))

    return app
