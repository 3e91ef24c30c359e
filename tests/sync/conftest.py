"""Pytest fixtures for sync tests over real HTTP.

This module provides fixtures for:
- HTTP store clients pointed at the live_server fixture
- Sync engines talking HTTP to a given URL
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Generator, List

import pytest

from packsync.core.connectivity import ConnectivitySignal
from packsync.core.database import LocalDatabase
from packsync.core.engine import SyncEngine
from packsync.core.projector import InMemoryUIState
from packsync.core.store_client import HttpStoreClient

from tests.conftest import OWNER_ID, LiveServer, RecordingScheduler


@pytest.fixture
def http_client(live_server: LiveServer) -> HttpStoreClient:
    return HttpStoreClient(live_server.url, timeout=5)


@pytest.fixture
def make_http_engine(
    tmp_path: Path,
) -> Generator[Callable[..., SyncEngine], None, None]:
    """Factory for sync engines talking HTTP to ``url``."""
    engines: List[SyncEngine] = []

    def factory(url: str, requestor: str = OWNER_ID, name: str = "client") -> SyncEngine:
        engine = SyncEngine(
            LocalDatabase(tmp_path / f"{name}.db"),
            HttpStoreClient(url, timeout=5),
            requestor,
            connectivity=ConnectivitySignal(),
            ui_sink=InMemoryUIState(),
            threaded=False,
            scheduler=RecordingScheduler(),
        )
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        engine.close()
