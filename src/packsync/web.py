#!/usr/bin/env python3
"""Authoritative packsync server.

This module builds the Flask application that hosts the patch application
engine. Clients submit queued operations to it one at a time and receive
either the new canonical snapshot or a typed refusal.

Endpoints:
    GET  /api/status                 Server status
    POST /api/lists                  Create a packing list
    GET  /api/lists/<id>             Canonical snapshot (X-Requestor-ID header)
    POST /api/lists/<id>/shares      Grant editor/viewer access
    POST /api/lists/<id>/apply       Apply one operation

All endpoints return JSON responses.
IDs are UUID7 hex strings (32 characters, no hyphens).
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Optional, Tuple

from flask import Flask, Response, jsonify
from flask_cors import CORS

from packsync.core.config import Config
from packsync.core.patch_engine import PatchEngine
from packsync.core.server import create_patch_blueprint
from packsync.core.store import CanonicalStore
from packsync.core.validation import ValidationError

logger = logging.getLogger(__name__)


def create_app(
    config_dir: Optional[Path] = None,
    store_path: Optional[Path] = None,
) -> Flask:
    """Create and configure Flask application.

    Args:
        config_dir: Custom configuration directory (default: None)
        store_path: Server database path (default: from config)

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)
    CORS(app)  # Enable CORS for all routes

    config = Config(config_dir=config_dir)
    db_path = Path(store_path or config.get_server_database_file())
    db_path.parent.mkdir(parents=True, exist_ok=True)

    store = CanonicalStore(db_path)
    engine = PatchEngine(store)
    app.config["PATCH_ENGINE"] = engine

    logger.info(f"Server initialized with database: {db_path}")

    # Error handlers
    @app.errorhandler(404)
    def not_found(error: Any) -> Tuple[Response, int]:
        """Handle 404 errors."""
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    def internal_error(error: Any) -> Tuple[Response, int]:
        """Handle 500 errors."""
        logger.error(f"Internal error: {error}")
        return jsonify({"error": "Internal server error"}), 500

    @app.errorhandler(ValidationError)
    def validation_error(error: ValidationError) -> Tuple[Response, int]:
        """Handle validation errors."""
        logger.warning(f"Validation error: {error.field} - {error.message}")
        return jsonify({"error": f"Invalid {error.field}: {error.message}"}), 400

    app.register_blueprint(create_patch_blueprint(engine))

    @app.route("/api/health", methods=["GET"])
    def health_check() -> Tuple[Response, int]:
        """Health check endpoint."""
        return jsonify({"status": "ok"}), 200

    return app


def add_web_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add web subparser and its arguments.

    Args:
        subparsers: Parent subparsers object to add web parser to
    """
    web_parser = subparsers.add_parser(
        "web",
        help="Start the authoritative packsync server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    web_parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)"
    )

    web_parser.add_argument(
        "--port",
        type=int,
        default=8765,
        help="Port to bind to (default: 8765)"
    )

    web_parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run the server with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (host, port, debug)

    Returns:
        Exit code (0 for success)
    """
    logger.info("Starting packsync server")
    if config_dir:
        logger.info(f"Using custom config directory: {config_dir}")

    app = create_app(config_dir=config_dir)

    # threaded: applications to different lists run concurrently
    app.run(
        host=args.host,
        port=args.port,
        debug=args.debug,
        threaded=True,
    )

    return 0
