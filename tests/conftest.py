"""Pytest fixtures for packsync tests.

This module provides fixtures for configuration, the authoritative store,
client databases and fully wired sync engines.
"""

from __future__ import annotations

import socket
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Generator, List, Tuple

import pytest
from flask import Flask
from werkzeug.serving import BaseWSGIServer, make_server

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from packsync.core.config import Config
from packsync.core.connectivity import ConnectivitySignal
from packsync.core.database import LocalDatabase
from packsync.core.engine import SyncEngine
from packsync.core.models import CanonicalSnapshot, Notice
from packsync.core.patch_engine import PatchEngine
from packsync.core.projector import InMemoryUIState
from packsync.core.store import CanonicalStore
from packsync.core.store_client import InProcessStoreClient
from packsync.web import create_app


# Test identities
OWNER_ID = "alice"
EDITOR_ID = "bob"
VIEWER_ID = "carol"
OUTSIDER_ID = "mallory"

# Entity ID nobody ever creates
MISSING_LIST_ID = "00000000000070008000000000000099"


def ids_by_name(snapshot: CanonicalSnapshot) -> Dict[str, str]:
    """Map item names to item IDs."""
    return {item.name: item.id for item in snapshot.items}


def names_in_order(snapshot: CanonicalSnapshot) -> List[str]:
    return [item.name for item in snapshot.ordered_items()]


class RecordingScheduler:
    """Retry scheduler that records requests instead of starting timers."""

    def __init__(self) -> None:
        self.calls: List[Tuple[float, Callable[[], None]]] = []

    def __call__(self, delay: float, fn: Callable[[], None]) -> None:
        self.calls.append((delay, fn))

    @property
    def delays(self) -> List[float]:
        return [delay for delay, _ in self.calls]

    def run_all(self) -> None:
        calls, self.calls = self.calls, []
        for _, fn in calls:
            fn()


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        Path to temporary config directory.
    """
    config_dir = tmp_path / "packsync_test"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create test configuration."""
    return Config(config_dir=test_config_dir)


@pytest.fixture
def canonical_store(tmp_path: Path) -> Generator[CanonicalStore, None, None]:
    """Server-side canonical store in a temporary file."""
    store = CanonicalStore(tmp_path / "server.db")
    yield store
    store.close()


@pytest.fixture
def patch_engine(canonical_store: CanonicalStore) -> PatchEngine:
    return PatchEngine(canonical_store)


@pytest.fixture
def packing_list(patch_engine: PatchEngine) -> CanonicalSnapshot:
    """A list owned by OWNER_ID with items Boots, Parka, Socks.

    EDITOR_ID may edit it and VIEWER_ID may only read it.
    """
    snapshot = patch_engine.create_list(
        "Iceland",
        OWNER_ID,
        items=[
            {"name": "Boots", "category": "footwear"},
            {"name": "Parka", "category": "clothes"},
            {"name": "Socks", "category": "clothes", "qty": 4},
        ],
    )
    patch_engine.share_list(snapshot.entity_id, OWNER_ID, EDITOR_ID, "editor")
    patch_engine.share_list(snapshot.entity_id, OWNER_ID, VIEWER_ID, "viewer")
    return snapshot


@pytest.fixture
def local_db(tmp_path: Path) -> Generator[LocalDatabase, None, None]:
    """Client-side local database."""
    db = LocalDatabase(tmp_path / "client.db")
    yield db
    db.close()


@pytest.fixture
def notices() -> List[Notice]:
    """Collects notices emitted by engines built with make_engine."""
    return []


@pytest.fixture
def make_engine(
    tmp_path: Path, patch_engine: PatchEngine, notices: List[Notice]
) -> Generator[Callable[..., SyncEngine], None, None]:
    """Factory for sync engines wired to the in-process store.

    Each engine gets its own database file and store client, so one
    engine can be partitioned from the store while another stays online.
    Drains run inline and retries are recorded, not scheduled.
    """
    engines: List[SyncEngine] = []

    def factory(
        requestor: str = OWNER_ID,
        online: bool = True,
        name: str = "client",
        **kwargs,
    ) -> SyncEngine:
        client = InProcessStoreClient(patch_engine)
        client.online = online
        kwargs.setdefault("ui_sink", InMemoryUIState())
        kwargs.setdefault("notify", notices.append)
        kwargs.setdefault("threaded", False)
        kwargs.setdefault("scheduler", RecordingScheduler())
        engine = SyncEngine(
            LocalDatabase(tmp_path / f"{name}.db"),
            client,
            requestor,
            connectivity=ConnectivitySignal(online=online),
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        engine.close()


def go_offline(engine: SyncEngine) -> None:
    engine.store_client.online = False
    engine.check_connectivity()


def go_online(engine: SyncEngine) -> None:
    engine.store_client.online = True
    engine.check_connectivity()


@dataclass
class LiveServer:
    """A packsync server running in a background thread."""

    app: Flask
    server: BaseWSGIServer
    thread: threading.Thread

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.server.server_port}"

    @property
    def engine(self) -> PatchEngine:
        return self.app.config["PATCH_ENGINE"]


def unused_url() -> str:
    """URL of a local port that refuses connections."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"http://127.0.0.1:{port}"


@pytest.fixture
def live_server(tmp_path: Path) -> Generator[LiveServer, None, None]:
    """Start the server on a free port and stop it after the test."""
    app = create_app(config_dir=tmp_path / "server_config")
    server = make_server("127.0.0.1", 0, app, threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield LiveServer(app=app, server=server, thread=thread)

    server.shutdown()
    thread.join(timeout=5)
    app.config["PATCH_ENGINE"].store.close()
