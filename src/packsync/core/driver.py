"""Sync driver for packsync.

Replays queued operations against the authoritative store, one packing
list at a time, and classifies every outcome:

- applied / duplicate: install the returned snapshot, dequeue, continue
- transient: keep the entry, count the attempt, retry with backoff
- permanent: drop the entry, notify the user, continue with the rest
- conflict: record it, pause the packing list, hand it to the mediator

Each packing list moves through IDLE -> DRAINING -> (IDLE | CONFLICT_PAUSED).
At most one submission per packing list is in flight at any moment; different
packing lists drain concurrently on a thread pool.

CRITICAL: This module must have NO Flask dependencies.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .connectivity import ConnectivitySignal
from .database import LocalDatabase
from .errors import FailureKind, TransientError
from .models import ConflictRecord, DrainResult, Notice, NoticeKind, QueueEntry
from .projector import OptimisticProjector
from .queue import LocalQueue
from .store_client import StoreClient
from .timestamp_utils import utc_now_iso

logger = logging.getLogger(__name__)


class EntityState(Enum):
    """Sync state of one packing list."""

    IDLE = "idle"
    DRAINING = "draining"
    CONFLICT_PAUSED = "conflict_paused"


@dataclass
class SyncSettings:
    """Tunables for submission and retry."""

    request_timeout: float = 10.0
    backoff_base: float = 1.0
    backoff_max: float = 300.0
    max_attempts: int = 8
    max_workers: int = 4


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped at maximum.

    Args:
        attempt: Number of failed submissions so far (1 for the first failure)
        base: Delay after the first failure, in seconds
        maximum: Upper bound, in seconds

    Returns:
        Seconds to wait before the next submission
    """
    if attempt < 1:
        return 0.0
    return min(base * (2 ** (attempt - 1)), maximum)


def log_notice(notice: Notice) -> None:
    """Default notice handler for headless use."""
    if notice.kind in (NoticeKind.REJECTED, NoticeKind.STUCK_OFFLINE, NoticeKind.CONFLICT):
        logger.warning(f"[{notice.kind.value}] {notice.entity_id}: {notice.message}")
    else:
        logger.info(f"[{notice.kind.value}] {notice.entity_id}: {notice.message}")


class SyncDriver:
    """Drains the local queue into the authoritative store."""

    def __init__(
        self,
        queue: LocalQueue,
        projector: OptimisticProjector,
        store_client: StoreClient,
        connectivity: ConnectivitySignal,
        requestor: str,
        db: LocalDatabase,
        settings: Optional[SyncSettings] = None,
        notify: Optional[Callable[[Notice], None]] = None,
        executor: Optional[Executor] = None,
        scheduler: Optional[Callable[[float, Callable[[], None]], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize sync driver.

        Args:
            queue: Local durable queue
            projector: Projector to refresh after every state change
            store_client: Authoritative store client
            connectivity: Connectivity signal; a reconnect drains everything
            requestor: Identity submitted with every operation
            db: Local database (conflict records)
            settings: Retry and timeout settings
            notify: Callback for user-visible notices
            executor: Pool that runs triggered drains (None runs them inline)
            scheduler: ``scheduler(delay, fn)`` used to schedule retries
                (defaults to daemon threading.Timer)
            clock: Monotonic clock, replaceable in tests
        """
        self.queue = queue
        self.projector = projector
        self.store_client = store_client
        self.connectivity = connectivity
        self.requestor = requestor
        self.db = db
        self.settings = settings or SyncSettings()
        self.notify = notify or log_notice
        self.executor = executor
        self.scheduler = scheduler
        self.clock = clock

        # Called with the ConflictRecord once the entity lock is released
        self.on_conflict: Optional[Callable[[ConflictRecord], None]] = None

        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._states: Dict[str, EntityState] = {}
        self._retry_at: Dict[str, float] = {}
        self._rerun: Set[str] = set()
        self._stuck_notified: Set[str] = set()
        self._timers: List[threading.Timer] = []

        connectivity.subscribe(self._on_connectivity_change)

    # ===== State =====

    def _entity_lock(self, entity_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(entity_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[entity_id] = lock
            return lock

    def _set_state(self, entity_id: str, state: EntityState) -> None:
        with self._guard:
            self._states[entity_id] = state

    def state(self, entity_id: str) -> EntityState:
        """Current state; a persisted unresolved conflict always means paused."""
        if self.db.get_conflict(entity_id) is not None:
            return EntityState.CONFLICT_PAUSED
        with self._guard:
            state = self._states.get(entity_id, EntityState.IDLE)
        if state == EntityState.CONFLICT_PAUSED:
            return EntityState.IDLE
        return state

    def retry_at(self, entity_id: str) -> Optional[float]:
        with self._guard:
            return self._retry_at.get(entity_id)

    def _backing_off(self, entity_id: str) -> bool:
        with self._guard:
            due = self._retry_at.get(entity_id)
        return due is not None and due > self.clock()

    # ===== Triggers =====

    def _on_connectivity_change(self, online: bool) -> None:
        if not online:
            return
        with self._guard:
            self._retry_at.clear()
        logger.info("Connectivity restored, draining all packing lists")
        self.trigger_all(force=True)

    def trigger(self, entity_id: str, force: bool = False) -> Optional[Future]:
        """Request a drain of one packing list.

        Runs on the executor when one is configured, inline otherwise.
        Does nothing while offline.

        Returns:
            The scheduled Future, or None
        """
        if not self.connectivity.is_online:
            return None
        if self.executor is None:
            self.drain(entity_id, force=force)
            return None
        future = self.executor.submit(self.drain, entity_id, force)
        future.add_done_callback(self._log_drain_failure)
        return future

    def trigger_all(self, force: bool = False) -> List[Future]:
        """Request a drain of every packing list with queued operations."""
        futures = []
        for entity_id in self.queue.list_all_entities():
            future = self.trigger(entity_id, force=force)
            if future is not None:
                futures.append(future)
        return futures

    @staticmethod
    def _log_drain_failure(future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"Drain failed: {error}")

    def drain_all(self, force: bool = False, wait: bool = False) -> List[DrainResult]:
        """Drain every packing list inline and collect the results."""
        return [
            self.drain(entity_id, force=force, wait=wait)
            for entity_id in self.queue.list_all_entities()
        ]

    # ===== Draining =====

    def drain(self, entity_id: str, force: bool = False, wait: bool = False) -> DrainResult:
        """Submit queued operations of one packing list until it is empty,
        a transient failure occurs, or a conflict pauses it.

        Args:
            entity_id: Packing list to drain
            force: Ignore a pending backoff delay
            wait: Block until a concurrent drain of the same list finishes
                instead of leaving the work to it

        Returns:
            DrainResult summarizing the pass
        """
        result = DrainResult(entity_id=entity_id)

        if not self.connectivity.is_online:
            result.skipped = True
            return result
        if self.state(entity_id) == EntityState.CONFLICT_PAUSED:
            logger.debug(f"Not draining {entity_id}: waiting for conflict resolution")
            result.skipped = True
            return result
        if force:
            with self._guard:
                self._retry_at.pop(entity_id, None)
        elif self._backing_off(entity_id):
            logger.debug(f"Not draining {entity_id}: backing off")
            result.skipped = True
            return result

        lock = self._entity_lock(entity_id)
        if not lock.acquire(blocking=wait):
            # Another drain is running; it picks the new work up before exiting
            with self._guard:
                self._rerun.add(entity_id)
            result.skipped = True
            return result
        if self.db.get_conflict(entity_id) is not None:
            # Paused by the drain we waited for
            lock.release()
            result.skipped = True
            return result

        conflict: Optional[ConflictRecord] = None
        try:
            self._set_state(entity_id, EntityState.DRAINING)
            while True:
                with self._guard:
                    self._rerun.discard(entity_id)
                conflict = self._drain_locked(entity_id, result)
                if conflict is not None or result.transient_error is not None:
                    break
                with self._guard:
                    if entity_id not in self._rerun:
                        break
        finally:
            self._set_state(
                entity_id,
                EntityState.CONFLICT_PAUSED if conflict else EntityState.IDLE,
            )
            lock.release()

        if conflict is not None:
            if self.on_conflict is not None:
                self.on_conflict(conflict)
        elif result.transient_error is None:
            # A trigger that arrived after the last rerun check but before
            # release found the lock taken and left only the flag behind
            with self._guard:
                missed = entity_id in self._rerun
            if missed:
                logger.debug(f"Picking up work queued for {entity_id} during drain")
                self.trigger(entity_id)
        return result

    def _drain_locked(
        self, entity_id: str, result: DrainResult
    ) -> Optional[ConflictRecord]:
        """Drain loop body; the caller holds the entity lock."""
        while self.connectivity.is_online:
            entry = self.queue.claim_oldest(entity_id)
            if entry is None:
                break
            op = entry.operation

            try:
                outcome = self.store_client.apply(entity_id, op, self.requestor)
            except TransientError as e:
                self._handle_transient(entry, str(e), result)
                return None
            except Exception:
                self.queue.release(op.op_id)
                raise

            kind = outcome.failure_kind

            if kind is None or kind == FailureKind.DUPLICATE_NOOP:
                if outcome.snapshot is not None:
                    self.projector.store_canonical(outcome.snapshot)
                self.queue.dequeue(op.op_id)
                with self._guard:
                    self._retry_at.pop(entity_id, None)
                    self._stuck_notified.discard(op.op_id)
                self.projector.refresh(entity_id)
                result.applied += 1
                if kind == FailureKind.DUPLICATE_NOOP:
                    logger.info(f"{op.op_id} was already applied, treating as success")
                continue

            if kind == FailureKind.CONFLICT:
                self.queue.release(op.op_id)
                record = ConflictRecord(
                    entity_id=entity_id,
                    local_data=self.projector.compute(entity_id),
                    remote_data=outcome.snapshot or self.projector.canonical(entity_id),
                    offending_op_id=op.op_id,
                    created_at=utc_now_iso(),
                    message=outcome.error or "",
                )
                self.db.save_conflict(record)
                result.conflict = True
                logger.warning(f"Conflict on {entity_id} at {op.op_id}: {outcome.error}")
                self.notify(Notice(
                    kind=NoticeKind.CONFLICT,
                    entity_id=entity_id,
                    op_id=op.op_id,
                    message=f"Your change conflicts with the server: {outcome.error}",
                ))
                return record

            # Permanent: the operation can never succeed
            self.queue.dequeue(op.op_id)
            with self._guard:
                self._stuck_notified.discard(op.op_id)
            result.rejected += 1
            result.errors.append(f"{op.op_id}: {outcome.status.value}: {outcome.error}")
            logger.warning(
                f"Rejected {op.kind} {op.op_id} on {entity_id}: "
                f"{outcome.status.value} ({outcome.error})"
            )
            self.notify(Notice(
                kind=NoticeKind.REJECTED,
                entity_id=entity_id,
                op_id=op.op_id,
                message=f"Change was rejected ({outcome.status.value}): {outcome.error}",
            ))
            self.projector.refresh(entity_id)

        if result.applied and self.queue.count(entity_id) == 0:
            self.notify(Notice(
                kind=NoticeKind.SYNCED,
                entity_id=entity_id,
                message=f"{result.applied} change(s) synced",
            ))
        return None

    def _handle_transient(self, entry: QueueEntry, message: str, result: DrainResult) -> None:
        op = entry.operation
        attempt = self.queue.record_failure(op.op_id)
        delay = backoff_delay(
            attempt, self.settings.backoff_base, self.settings.backoff_max
        )
        with self._guard:
            self._retry_at[op.entity_id] = self.clock() + delay
            stuck = (
                attempt >= self.settings.max_attempts
                and op.op_id not in self._stuck_notified
            )
            if stuck:
                self._stuck_notified.add(op.op_id)
        result.transient_error = message
        logger.warning(
            f"Transient failure submitting {op.op_id} (attempt {attempt}): {message}; "
            f"retrying in {delay:.1f}s"
        )

        if stuck:
            self.notify(Notice(
                kind=NoticeKind.STUCK_OFFLINE,
                entity_id=op.entity_id,
                op_id=op.op_id,
                message=f"Change has not reached the server after {attempt} attempts; "
                        "it stays queued",
            ))

        self._schedule_retry(op.entity_id, delay)

    def _schedule_retry(self, entity_id: str, delay: float) -> None:
        def retry() -> None:
            self.trigger(entity_id, force=True)

        if self.scheduler is not None:
            self.scheduler(delay, retry)
            return
        timer = threading.Timer(delay, retry)
        timer.daemon = True
        with self._guard:
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()

    # ===== Conflict pause =====

    def resume(self, entity_id: str) -> Optional[Future]:
        """Leave CONFLICT_PAUSED after the mediator closed the conflict."""
        self._set_state(entity_id, EntityState.IDLE)
        logger.info(f"Resuming sync of {entity_id}")
        return self.trigger(entity_id, force=True)

    def shutdown(self) -> None:
        """Cancel scheduled retries and stop the executor."""
        with self._guard:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        if self.executor is not None:
            self.executor.shutdown(wait=True)
