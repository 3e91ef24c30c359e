"""Clients for the authoritative packsync store.

The sync driver talks to the authoritative store only through the
StoreClient interface:

- apply(entity_id, op, requestor) -> ApplyOutcome, or raises TransientError
- fetch(entity_id, requestor) -> CanonicalSnapshot
- ping() -> bool

Any failure where the request may or may not have reached the server
(connection refused, timeout, 5xx) raises TransientError. The store's
idempotency on op_id makes the retry safe.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

import requests

from .errors import (
    ApplyOutcome,
    ForbiddenError,
    TransientError,
    UnknownEntityError,
)
from .models import CanonicalSnapshot, Operation
from .operations import operation_to_dict
from .patch_engine import PatchEngine
from .validation import ValidationError

logger = logging.getLogger(__name__)

# Statuses the apply endpoint answers with a typed body
_TYPED_HTTP_STATUSES = (200, 403, 404, 409, 422)


def _error_text(response: requests.Response) -> str:
    try:
        return str(response.json().get("error", response.text))
    except ValueError:
        return response.text


class StoreClient:
    """Interface to the authoritative store."""

    def apply(self, entity_id: str, op: Operation, requestor: str) -> ApplyOutcome:
        raise NotImplementedError

    def fetch(self, entity_id: str, requestor: str) -> CanonicalSnapshot:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    def create_list(
        self, title: str, owner_id: str, items: Optional[List[Dict[str, Any]]] = None
    ) -> CanonicalSnapshot:
        raise NotImplementedError

    def share_list(self, entity_id: str, requestor: str, user_id: str, level: str) -> None:
        raise NotImplementedError


class HttpStoreClient(StoreClient):
    """StoreClient speaking JSON over HTTP to a packsync server."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        """Initialize HTTP store client.

        Args:
            base_url: Server base URL, e.g. "http://127.0.0.1:8765"
            timeout: Bounded wait for each request, in seconds
            session: Optional requests session (for connection reuse/tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            logger.warning(f"Request to {url} timed out after {self.timeout}s")
            raise TransientError(f"Timed out after {self.timeout}s: {url}") from e
        except requests.exceptions.RequestException as e:
            logger.warning(f"Request to {url} failed: {e}")
            raise TransientError(f"Connection failed to {url}: {e}") from e

    def apply(self, entity_id: str, op: Operation, requestor: str) -> ApplyOutcome:
        """Submit one operation.

        Raises:
            TransientError: If the outcome is unknown (network, timeout, 5xx)
        """
        body: Dict[str, Any] = operation_to_dict(op)
        body["requestor_identity"] = requestor
        response = self._request("POST", f"/api/lists/{entity_id}/apply", json=body)

        if response.status_code not in _TYPED_HTTP_STATUSES:
            raise TransientError(
                f"Server error {response.status_code} applying {op.op_id}"
            )
        try:
            return ApplyOutcome.from_dict(response.json())
        except (ValueError, KeyError) as e:
            # An unreadable body says nothing about whether the op was applied
            raise TransientError(f"Malformed response applying {op.op_id}: {e}") from e

    def fetch(self, entity_id: str, requestor: str) -> CanonicalSnapshot:
        """Fetch the canonical snapshot of a packing list.

        Raises:
            TransientError, UnknownEntityError, ForbiddenError
        """
        response = self._request(
            "GET", f"/api/lists/{entity_id}", headers={"X-Requestor-ID": requestor}
        )
        if response.status_code == 404:
            raise UnknownEntityError(entity_id)
        if response.status_code == 403:
            raise ForbiddenError(entity_id, requestor, "read")
        if response.status_code != 200:
            raise TransientError(f"Server error {response.status_code} fetching {entity_id}")
        try:
            return CanonicalSnapshot.from_dict(response.json())
        except (ValueError, KeyError) as e:
            raise TransientError(f"Malformed snapshot for {entity_id}: {e}") from e

    def ping(self) -> bool:
        try:
            response = self._request("GET", "/api/status")
        except TransientError:
            return False
        return response.status_code == 200

    def create_list(
        self, title: str, owner_id: str, items: Optional[List[Dict[str, Any]]] = None
    ) -> CanonicalSnapshot:
        """Create a packing list on the server (requires connectivity)."""
        response = self._request(
            "POST",
            "/api/lists",
            json={"title": title, "owner_id": owner_id, "items": items or []},
        )
        if response.status_code == 400:
            raise ValidationError("list", _error_text(response))
        if response.status_code != 201:
            raise TransientError(
                f"Create list failed ({response.status_code}): {response.text}"
            )
        return CanonicalSnapshot.from_dict(response.json())

    def share_list(self, entity_id: str, requestor: str, user_id: str, level: str) -> None:
        response = self._request(
            "POST",
            f"/api/lists/{entity_id}/shares",
            json={
                "requestor_identity": requestor,
                "user_id": user_id,
                "permission_level": level,
            },
        )
        if response.status_code == 404:
            raise UnknownEntityError(entity_id)
        if response.status_code == 403:
            raise ForbiddenError(entity_id, requestor, "share")
        if response.status_code == 400:
            raise ValidationError("share", _error_text(response))
        if response.status_code != 200:
            raise TransientError(f"Share failed ({response.status_code}): {response.text}")


class InProcessStoreClient(StoreClient):
    """StoreClient calling a PatchEngine in the same process.

    ``online`` can be toggled to simulate a network partition: while
    offline every call raises TransientError.
    """

    def __init__(self, engine: PatchEngine) -> None:
        self.engine = engine
        self.online = True

    def _check_online(self) -> None:
        if not self.online:
            raise TransientError("Store unreachable (offline)")

    def apply(self, entity_id: str, op: Operation, requestor: str) -> ApplyOutcome:
        self._check_online()
        try:
            return self.engine.apply(entity_id, op, requestor)
        except sqlite3.Error as e:
            logger.error(f"Store failure applying {op.op_id}: {e}")
            raise TransientError(f"Store failure: {e}") from e

    def fetch(self, entity_id: str, requestor: str) -> CanonicalSnapshot:
        self._check_online()
        return self.engine.get_snapshot(entity_id, requestor)

    def ping(self) -> bool:
        return self.online

    def create_list(
        self, title: str, owner_id: str, items: Optional[List[Dict[str, Any]]] = None
    ) -> CanonicalSnapshot:
        self._check_online()
        return self.engine.create_list(title, owner_id, items=items)

    def share_list(self, entity_id: str, requestor: str, user_id: str, level: str) -> None:
        self._check_online()
        self.engine.share_list(entity_id, requestor, user_id, level)
