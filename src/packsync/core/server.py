"""HTTP endpoints of the authoritative packsync server.

Exposes the patch application engine as a Flask blueprint:

    GET  /api/status                 Server status
    POST /api/lists                  Create a packing list
    GET  /api/lists/<id>             Canonical snapshot (X-Requestor-ID header)
    POST /api/lists/<id>/shares      Grant editor/viewer access
    POST /api/lists/<id>/apply       Apply one operation

Apply responses:
    200 {"status": "applied", "snapshot": {...}, "duplicate": false}
    403 {"status": "forbidden", "error": "..."}
    404 {"status": "not_found", "error": "..."}
    409 {"status": "conflict", "snapshot": {...}, "error": "..."}
    422 {"status": "invalid", "error": "..."}

CRITICAL: This module must have NO client-side (queue/driver) dependencies.
"""

from __future__ import annotations

import logging
from typing import Any, Tuple

from flask import Blueprint, jsonify, request

from .errors import ForbiddenError, UnknownEntityError
from .patch_engine import PatchEngine
from .validation import ValidationError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0"


def create_patch_blueprint(engine: PatchEngine, server_name: str = "packsync") -> Blueprint:
    """Create Flask blueprint for the patch endpoints.

    Args:
        engine: PatchEngine instance
        server_name: Human-readable server name reported by /status

    Returns:
        Flask Blueprint with the API routes
    """
    api_bp = Blueprint("packsync_api", __name__, url_prefix="/api")

    @api_bp.route("/status", methods=["GET"])
    def status() -> Tuple[Any, int]:
        """Get server status.

        Response:
            {
                "status": "ok",
                "server_name": "...",
                "protocol_version": "1.0",
                "list_count": 3
            }
        """
        return jsonify({
            "status": "ok",
            "server_name": server_name,
            "protocol_version": PROTOCOL_VERSION,
            "list_count": len(engine.store.get_all_list_ids()),
        }), 200

    @api_bp.route("/lists", methods=["POST"])
    def create_list() -> Tuple[Any, int]:
        """Create a packing list.

        Request body:
            {
                "title": "...",
                "owner_id": "...",
                "items": [{"name": "...", "category": "...", "qty": 1}, ...]
            }
        """
        data = request.get_json(silent=True)
        if not data:
            return jsonify({"error": "Missing JSON request body"}), 400
        items = data.get("items") or []
        if not isinstance(items, list):
            return jsonify({"error": "Invalid items: must be a list"}), 400
        try:
            snapshot = engine.create_list(
                data.get("title"),
                data.get("owner_id"),
                items=items,
                list_id=data.get("id"),
            )
        except ValidationError as e:
            logger.warning(f"Create list rejected: {e}")
            return jsonify({"error": f"Invalid {e.field}: {e.message}"}), 400
        return jsonify(snapshot.to_dict()), 201

    @api_bp.route("/lists/<list_id>", methods=["GET"])
    def get_list(list_id: str) -> Tuple[Any, int]:
        """Get the canonical snapshot of a packing list."""
        requestor = request.headers.get("X-Requestor-ID", "")
        try:
            snapshot = engine.get_snapshot(list_id, requestor)
        except ValidationError as e:
            return jsonify({"error": f"Invalid {e.field}: {e.message}"}), 400
        except UnknownEntityError as e:
            return jsonify({"error": str(e)}), 404
        except ForbiddenError as e:
            return jsonify({"error": str(e)}), 403
        return jsonify(snapshot.to_dict()), 200

    @api_bp.route("/lists/<list_id>/shares", methods=["POST"])
    def share_list(list_id: str) -> Tuple[Any, int]:
        """Grant access to a packing list.

        Request body:
            {
                "requestor_identity": "...",
                "user_id": "...",
                "permission_level": "editor" | "viewer"
            }
        """
        data = request.get_json(silent=True)
        if not data:
            return jsonify({"error": "Missing JSON request body"}), 400
        try:
            engine.share_list(
                list_id,
                data.get("requestor_identity"),
                data.get("user_id"),
                data.get("permission_level", ""),
            )
        except ValidationError as e:
            return jsonify({"error": f"Invalid {e.field}: {e.message}"}), 400
        except UnknownEntityError as e:
            return jsonify({"error": str(e)}), 404
        except ForbiddenError as e:
            return jsonify({"error": str(e)}), 403
        return jsonify({"status": "ok"}), 200

    @api_bp.route("/lists/<list_id>/apply", methods=["POST"])
    def apply(list_id: str) -> Tuple[Any, int]:
        """Apply one operation to a packing list.

        Request body:
            {
                "op_id": "...",
                "kind": "add_item" | "update_item" | "remove_item" | "reorder_items",
                "payload": {...},
                "requestor_identity": "..."
            }
        """
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"status": "invalid", "error": "Missing JSON request body"}), 422

        requestor = data.pop("requestor_identity", None)
        data.setdefault("entity_id", list_id)
        outcome = engine.apply(list_id, data, requestor)

        if outcome.error:
            logger.info(f"Apply {data.get('op_id')} on {list_id}: {outcome.status.value} ({outcome.error})")
        return jsonify(outcome.to_dict()), outcome.http_status

    return api_bp
