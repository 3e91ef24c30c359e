"""Pytest fixtures for web API tests.

Provides a Flask test client backed by a fresh server database.
"""

from __future__ import annotations

import pytest
from pathlib import Path
from typing import Any, Dict, Generator

from flask import Flask
from flask.testing import FlaskClient

from packsync.core.patch_engine import PatchEngine
from packsync.web import create_app

from tests.conftest import EDITOR_ID, OWNER_ID, VIEWER_ID


@pytest.fixture
def web_app(test_config_dir: Path) -> Generator[Flask, None, None]:
    """Create Flask app for testing.

    Args:
        test_config_dir: Temporary configuration directory

    Yields:
        Flask application instance
    """
    app = create_app(config_dir=test_config_dir)
    app.config["TESTING"] = True
    yield app
    app.config["PATCH_ENGINE"].store.close()


@pytest.fixture
def client(web_app: Flask) -> FlaskClient:
    """Create Flask test client.

    Args:
        web_app: Flask application

    Returns:
        Flask test client for making requests
    """
    return web_app.test_client()


@pytest.fixture
def server_list(web_app: Flask) -> Dict[str, Any]:
    """Iceland list on the app's store, shared like the packing_list fixture."""
    engine: PatchEngine = web_app.config["PATCH_ENGINE"]
    snapshot = engine.create_list(
        "Iceland",
        OWNER_ID,
        items=[{"name": "Boots"}, {"name": "Parka"}, {"name": "Socks", "qty": 4}],
    )
    engine.share_list(snapshot.entity_id, OWNER_ID, EDITOR_ID, "editor")
    engine.share_list(snapshot.entity_id, OWNER_ID, VIEWER_ID, "viewer")
    return snapshot.to_dict()
