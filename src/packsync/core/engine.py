"""Client-side sync engine for packsync.

SyncEngine wires the local queue, projector, sync driver and conflict
mediator together behind the operations an application needs. Every
engine is explicitly constructed and owns its collaborators; nothing is
kept in module globals, so tests can run several engines side by side.

Edits never wait for the network: each edit is validated, made durable in
the local queue, folded into the projection and published before the
method returns. Submission happens on the driver's thread pool.

CRITICAL: This module must have NO Flask dependencies.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .config import Config
from .connectivity import BackgroundSyncTrigger, ConnectivityMonitor, ConnectivitySignal
from .database import LocalDatabase
from .driver import EntityState, SyncDriver, SyncSettings
from .errors import QueueError, TransientError
from .mediator import ConflictMediator, Resolution
from .models import (
    ConflictRecord,
    DrainResult,
    Notice,
    Operation,
    ProjectedSnapshot,
    QueueEntry,
)
from .operations import (
    new_add_item,
    new_remove_item,
    new_reorder_items,
    new_update_item,
)
from .projector import LoggingUIState, OptimisticProjector, UIStateSink
from .queue import LocalQueue
from .store_client import HttpStoreClient, StoreClient
from .validation import validate_entity_id, validate_requestor_id

logger = logging.getLogger(__name__)


class SyncEngine:
    """Offline-tolerant editing of packing lists."""

    def __init__(
        self,
        db: LocalDatabase,
        store_client: StoreClient,
        requestor_id: str,
        connectivity: Optional[ConnectivitySignal] = None,
        ui_sink: Optional[UIStateSink] = None,
        notify: Optional[Callable[[Notice], None]] = None,
        settings: Optional[SyncSettings] = None,
        prompt: Optional[Callable[[ConflictRecord], Optional[Resolution]]] = None,
        threaded: bool = True,
        scheduler: Optional[Callable[[float, Callable[[], None]], Any]] = None,
    ) -> None:
        """Initialize sync engine.

        Args:
            db: Local database
            store_client: Authoritative store client
            requestor_id: Identity submitted with every operation
            connectivity: Connectivity signal (starts offline if omitted)
            ui_sink: Surface receiving projected snapshots
            notify: Callback for user-visible notices
            settings: Retry and timeout settings
            prompt: Conflict prompt, see ConflictMediator
            threaded: Drain on a thread pool (False drains inline)
            scheduler: Retry scheduler, see SyncDriver
        """
        self.db = db
        self.store_client = store_client
        self.requestor_id = validate_requestor_id(requestor_id, "requestor_id")
        self.connectivity = connectivity or ConnectivitySignal(online=False)
        self.settings = settings or SyncSettings()
        self.ui_sink = ui_sink or LoggingUIState()

        self.queue = LocalQueue(db)
        self.projector = OptimisticProjector(db, self.queue, self.ui_sink)
        executor = (
            ThreadPoolExecutor(
                max_workers=self.settings.max_workers, thread_name_prefix="packsync-sync"
            )
            if threaded
            else None
        )
        self.driver = SyncDriver(
            self.queue,
            self.projector,
            store_client,
            self.connectivity,
            self.requestor_id,
            db,
            settings=self.settings,
            notify=notify,
            executor=executor,
            scheduler=scheduler,
        )
        self.mediator = ConflictMediator(
            self.driver, db, self.queue, self.projector, prompt=prompt, notify=notify
        )

        self._monitor: Optional[ConnectivityMonitor] = None
        self._background: Optional[BackgroundSyncTrigger] = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        db_path: Optional[Union[Path, str]] = None,
        **kwargs: Any,
    ) -> "SyncEngine":
        """Build an engine talking HTTP to the configured server."""
        settings = config.get_sync_settings()
        client = HttpStoreClient(config.get_server_url(), timeout=settings.request_timeout)
        db = LocalDatabase(db_path or config.get_database_file())
        return cls(
            db,
            client,
            config.get_requestor_id(),
            settings=settings,
            **kwargs,
        )

    # ===== Connectivity / lifecycle =====

    def check_connectivity(self) -> bool:
        """Probe the store once and update the connectivity signal."""
        try:
            online = bool(self.store_client.ping())
        except TransientError:
            online = False
        self.connectivity.set_online(online)
        return online

    def start(
        self,
        probe_interval: Optional[float] = None,
        background_interval: Optional[float] = None,
    ) -> None:
        """Probe connectivity and flush everything left from earlier sessions.

        Args:
            probe_interval: If set, keep probing the store on a daemon thread
            background_interval: If set, periodically wake the driver
        """
        self.check_connectivity()
        if probe_interval:
            self._monitor = ConnectivityMonitor(
                self.connectivity, self.store_client.ping, probe_interval
            )
            self._monitor.start()
        if background_interval:
            self._background = BackgroundSyncTrigger(
                self.driver.trigger_all, background_interval
            )
            self._background.start()
        self.driver.trigger_all(force=True)

    def close(self) -> None:
        """Stop background threads, finish in-flight drains, close the database."""
        if self._monitor is not None:
            self._monitor.stop()
            self._monitor = None
        if self._background is not None:
            self._background.stop()
            self._background = None
        self.driver.shutdown()
        self.db.close()

    # ===== Reading =====

    def load(self, entity_id: str) -> ProjectedSnapshot:
        """Refresh the canonical snapshot from the store when online and
        publish the projection.

        Raises:
            UnknownEntityError: If the store does not know the list
            ForbiddenError: If this identity cannot read it
        """
        entity_id = validate_entity_id(entity_id)
        if self.connectivity.is_online:
            try:
                snapshot = self.store_client.fetch(entity_id, self.requestor_id)
            except TransientError as e:
                logger.warning(f"Could not fetch {entity_id}, using cached state: {e}")
            else:
                return self.projector.install_canonical(snapshot)
        return self.projector.refresh(entity_id)

    def projected(self, entity_id: str) -> ProjectedSnapshot:
        return self.projector.compute(validate_entity_id(entity_id))

    def pending(self, entity_id: Optional[str] = None) -> List[QueueEntry]:
        """Queued operations of one list, or of every list."""
        if entity_id is not None:
            return self.queue.list_pending(entity_id)
        entries: List[QueueEntry] = []
        for eid in self.queue.list_all_entities():
            entries.extend(self.queue.list_pending(eid))
        return entries

    def state(self, entity_id: str) -> EntityState:
        return self.driver.state(entity_id)

    def known_lists(self) -> List[str]:
        """Packing lists with a cached snapshot or queued operations."""
        ids = set(self.db.list_snapshot_entities())
        ids.update(self.queue.list_all_entities())
        return sorted(ids)

    def stats(self) -> Dict[str, Any]:
        data = self.db.get_stats()
        data["online"] = self.connectivity.is_online
        return data

    # ===== List administration (online only) =====

    def create_list(
        self, title: str, items: Optional[List[Dict[str, Any]]] = None
    ) -> ProjectedSnapshot:
        """Create a packing list owned by this identity on the store.

        Raises:
            TransientError: If the store is unreachable
            ValidationError: If the title or an item is invalid
        """
        snapshot = self.store_client.create_list(title, self.requestor_id, items=items)
        return self.projector.install_canonical(snapshot)

    def share_list(self, entity_id: str, user_id: str, level: str) -> None:
        """Grant another identity editor or viewer access (owner only)."""
        self.store_client.share_list(entity_id, self.requestor_id, user_id, level)

    # ===== Editing =====

    def _submit(self, op: Operation) -> Operation:
        self.queue.enqueue(op)
        self.projector.refresh(op.entity_id)
        if self.connectivity.is_online:
            self.driver.trigger(op.entity_id)
        return op

    def add_item(
        self,
        entity_id: str,
        name: str,
        category: str = "general",
        qty: int = 1,
        packed: bool = False,
        notes: Optional[str] = None,
    ) -> Operation:
        """Queue an add_item; the new item's id is ``op.payload["item"]["id"]``."""
        return self._submit(new_add_item(entity_id, name, category, qty, packed, notes))

    def update_item(self, entity_id: str, item_id: str, **fields: Any) -> Operation:
        return self._submit(new_update_item(entity_id, item_id, fields))

    def remove_item(self, entity_id: str, item_id: str) -> Operation:
        return self._submit(new_remove_item(entity_id, item_id))

    def reorder_items(self, entity_id: str, item_ids: List[str]) -> Operation:
        return self._submit(new_reorder_items(entity_id, item_ids))

    def undo(self, op_id: str) -> ProjectedSnapshot:
        """Withdraw a queued operation that has not been submitted yet.

        Raises:
            QueueError: If the operation is unknown, in flight, was already
                sent to the store, or is the subject of an unresolved conflict
        """
        entry = self.queue.get(op_id)
        if entry is None:
            raise QueueError(f"Operation not queued: {op_id}")
        conflict = self.db.get_conflict(entry.entity_id)
        if conflict is not None and conflict.offending_op_id == op_id:
            raise QueueError(f"Operation {op_id} is in conflict; resolve it instead")
        self.queue.cancel(op_id)
        return self.projector.refresh(entry.entity_id)

    # ===== Sync / conflicts =====

    def sync_now(self, entity_id: Optional[str] = None) -> List[DrainResult]:
        """Probe connectivity and drain immediately, ignoring backoff.

        Returns:
            One DrainResult per drained packing list
        """
        self.check_connectivity()
        if entity_id is not None:
            return [self.driver.drain(entity_id, force=True, wait=True)]
        return self.driver.drain_all(force=True, wait=True)

    def conflicts(self) -> List[ConflictRecord]:
        return self.mediator.pending()

    def resolve(self, entity_id: str, resolution: Resolution) -> ProjectedSnapshot:
        return self.mediator.resolve(entity_id, resolution)
