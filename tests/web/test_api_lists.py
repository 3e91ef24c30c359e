"""Web API tests for packing lists.

Tests list creation, reads, sharing, and the apply endpoint's status
codes.
"""

from __future__ import annotations

import json
from typing import Any, Dict

import pytest
from flask.testing import FlaskClient

from packsync.core.operations import (
    new_add_item,
    new_update_item,
    operation_to_dict,
)

from tests.conftest import (
    EDITOR_ID,
    MISSING_LIST_ID,
    OUTSIDER_ID,
    OWNER_ID,
    VIEWER_ID,
)

ITEM_X = "000000000000700080000000000000ff"


def apply_body(op: Any, requestor: str) -> Dict[str, Any]:
    body = operation_to_dict(op)
    body["requestor_identity"] = requestor
    return body


@pytest.mark.web
class TestCreateList:
    """Test POST /api/lists."""

    def test_create_list(self, client: FlaskClient) -> None:
        response = client.post(
            "/api/lists",
            json={"title": "Alps", "owner_id": OWNER_ID, "items": [{"name": "Rope"}]},
        )

        assert response.status_code == 201
        data = json.loads(response.data)
        assert data["title"] == "Alps"
        assert data["version"] == 0
        assert [i["name"] for i in data["items"]] == ["Rope"]
        assert len(data["entity_id"]) == 32

    def test_create_list_missing_body(self, client: FlaskClient) -> None:
        response = client.post("/api/lists")
        assert response.status_code == 400

    def test_create_list_invalid_title(self, client: FlaskClient) -> None:
        response = client.post("/api/lists", json={"title": "", "owner_id": OWNER_ID})

        assert response.status_code == 400
        assert "title" in json.loads(response.data)["error"]

    def test_create_list_items_not_list(self, client: FlaskClient) -> None:
        response = client.post(
            "/api/lists", json={"title": "Alps", "owner_id": OWNER_ID, "items": "rope"}
        )
        assert response.status_code == 400


@pytest.mark.web
class TestGetList:
    """Test GET /api/lists/<id>."""

    def test_viewer_reads(self, client: FlaskClient, server_list: Dict[str, Any]) -> None:
        response = client.get(
            f"/api/lists/{server_list['entity_id']}",
            headers={"X-Requestor-ID": VIEWER_ID},
        )

        assert response.status_code == 200
        assert json.loads(response.data) == server_list

    def test_outsider_forbidden(
        self, client: FlaskClient, server_list: Dict[str, Any]
    ) -> None:
        response = client.get(
            f"/api/lists/{server_list['entity_id']}",
            headers={"X-Requestor-ID": OUTSIDER_ID},
        )
        assert response.status_code == 403

    def test_missing_requestor(
        self, client: FlaskClient, server_list: Dict[str, Any]
    ) -> None:
        response = client.get(f"/api/lists/{server_list['entity_id']}")
        assert response.status_code == 400

    def test_unknown_list(self, client: FlaskClient) -> None:
        response = client.get(
            f"/api/lists/{MISSING_LIST_ID}", headers={"X-Requestor-ID": OWNER_ID}
        )
        assert response.status_code == 404

    def test_bad_list_id(self, client: FlaskClient) -> None:
        response = client.get("/api/lists/not-an-id", headers={"X-Requestor-ID": OWNER_ID})
        assert response.status_code == 400


@pytest.mark.web
class TestShareList:
    """Test POST /api/lists/<id>/shares."""

    def test_owner_shares(self, client: FlaskClient, server_list: Dict[str, Any]) -> None:
        entity_id = server_list["entity_id"]
        response = client.post(
            f"/api/lists/{entity_id}/shares",
            json={
                "requestor_identity": OWNER_ID,
                "user_id": OUTSIDER_ID,
                "permission_level": "viewer",
            },
        )
        assert response.status_code == 200

        read = client.get(f"/api/lists/{entity_id}", headers={"X-Requestor-ID": OUTSIDER_ID})
        assert read.status_code == 200

    def test_editor_cannot_share(
        self, client: FlaskClient, server_list: Dict[str, Any]
    ) -> None:
        response = client.post(
            f"/api/lists/{server_list['entity_id']}/shares",
            json={
                "requestor_identity": EDITOR_ID,
                "user_id": OUTSIDER_ID,
                "permission_level": "editor",
            },
        )
        assert response.status_code == 403

    def test_bad_level(self, client: FlaskClient, server_list: Dict[str, Any]) -> None:
        response = client.post(
            f"/api/lists/{server_list['entity_id']}/shares",
            json={
                "requestor_identity": OWNER_ID,
                "user_id": OUTSIDER_ID,
                "permission_level": "owner",
            },
        )
        assert response.status_code == 400

    def test_unknown_list(self, client: FlaskClient) -> None:
        response = client.post(
            f"/api/lists/{MISSING_LIST_ID}/shares",
            json={
                "requestor_identity": OWNER_ID,
                "user_id": OUTSIDER_ID,
                "permission_level": "viewer",
            },
        )
        assert response.status_code == 404


@pytest.mark.web
class TestApply:
    """Test POST /api/lists/<id>/apply."""

    def test_applied(self, client: FlaskClient, server_list: Dict[str, Any]) -> None:
        entity_id = server_list["entity_id"]
        op = new_add_item(entity_id, "Hat")
        response = client.post(
            f"/api/lists/{entity_id}/apply", json=apply_body(op, EDITOR_ID)
        )

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["status"] == "applied"
        assert data["duplicate"] is False
        assert data["snapshot"]["version"] == server_list["version"] + 1
        assert data["snapshot"]["items"][-1]["name"] == "Hat"

    def test_duplicate(self, client: FlaskClient, server_list: Dict[str, Any]) -> None:
        entity_id = server_list["entity_id"]
        body = apply_body(new_add_item(entity_id, "Hat"), OWNER_ID)
        first = client.post(f"/api/lists/{entity_id}/apply", json=body)
        second = client.post(f"/api/lists/{entity_id}/apply", json=body)

        assert second.status_code == 200
        data = json.loads(second.data)
        assert data["duplicate"] is True
        assert data["snapshot"] == json.loads(first.data)["snapshot"]

    def test_forbidden(self, client: FlaskClient, server_list: Dict[str, Any]) -> None:
        entity_id = server_list["entity_id"]
        response = client.post(
            f"/api/lists/{entity_id}/apply",
            json=apply_body(new_add_item(entity_id, "Hat"), VIEWER_ID),
        )

        assert response.status_code == 403
        data = json.loads(response.data)
        assert data["status"] == "forbidden"
        assert "snapshot" not in data

    def test_not_found(self, client: FlaskClient) -> None:
        response = client.post(
            f"/api/lists/{MISSING_LIST_ID}/apply",
            json=apply_body(new_add_item(MISSING_LIST_ID, "Hat"), OWNER_ID),
        )

        assert response.status_code == 404
        assert json.loads(response.data)["status"] == "not_found"

    def test_conflict_carries_snapshot(
        self, client: FlaskClient, server_list: Dict[str, Any]
    ) -> None:
        entity_id = server_list["entity_id"]
        op = new_update_item(entity_id, ITEM_X, {"packed": True})
        response = client.post(
            f"/api/lists/{entity_id}/apply", json=apply_body(op, OWNER_ID)
        )

        assert response.status_code == 409
        data = json.loads(response.data)
        assert data["status"] == "conflict"
        assert data["snapshot"] == server_list
        assert ITEM_X in data["error"]

    def test_invalid_payload(
        self, client: FlaskClient, server_list: Dict[str, Any]
    ) -> None:
        entity_id = server_list["entity_id"]
        body = apply_body(new_add_item(entity_id, "Hat"), OWNER_ID)
        body["payload"] = {"item": {"name": "no id"}}
        response = client.post(f"/api/lists/{entity_id}/apply", json=body)

        assert response.status_code == 422
        assert json.loads(response.data)["status"] == "invalid"

    def test_missing_body(self, client: FlaskClient, server_list: Dict[str, Any]) -> None:
        response = client.post(f"/api/lists/{server_list['entity_id']}/apply")
        assert response.status_code == 422

    def test_entity_id_defaults_to_url(
        self, client: FlaskClient, server_list: Dict[str, Any]
    ) -> None:
        entity_id = server_list["entity_id"]
        body = apply_body(new_add_item(entity_id, "Hat"), OWNER_ID)
        del body["entity_id"]
        response = client.post(f"/api/lists/{entity_id}/apply", json=body)
        assert response.status_code == 200
