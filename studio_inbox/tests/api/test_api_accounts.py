"""
Tests for the account, folder and conversation endpoints.
"""
from datetime import datetime
from urllib.parse import quote
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

ACCOUNT = {
    "name": "Front Desk",
    "email_address": "desk@example.com",
    "provider": "imap",
    "incoming_server": "imap.example.com",
    "incoming_port": 993,
    "outgoing_server": "smtp.example.com",
    "outgoing_port": 587,
    "credential": "app-password",
}


@pytest.fixture
def created(api_client):
    response = api_client.post("/api/accounts", json=ACCOUNT)
    assert response.status_code == 201
    return response.json()


class TestAuth:
    def test_root_is_open(self, api_app):
        response = TestClient(api_app).get("/")
        assert response.status_code == 200
        assert response.json()["name"] == "Studio Inbox API"

    def test_missing_key(self, api_app):
        response = TestClient(api_app).get("/api/accounts")
        assert response.status_code == 401
        assert response.json()["error"]["kind"] == "AuthenticationError"

    def test_wrong_key(self, api_app):
        response = TestClient(api_app, headers={"X-API-Key": "wrong"}).get("/api/accounts")
        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "AuthorizationError"


class TestAccounts:
    def test_create_never_returns_credential(self, created):
        assert created["email_address"] == "desk@example.com"
        assert created["is_default"] is True
        assert created["status"] == "active"
        assert "credential" not in created
        assert "credential_ref" not in created

    def test_list_and_get(self, api_client, created):
        listed = api_client.get("/api/accounts").json()
        assert [a["id"] for a in listed] == [created["id"]]
        assert api_client.get(f"/api/accounts/{created['id']}").json()["name"] == "Front Desk"

    def test_duplicate_address(self, api_client, created):
        response = api_client.post("/api/accounts", json=ACCOUNT)
        assert response.status_code == 409
        assert response.json()["success"] is False
        assert response.json()["error"]["kind"] == "ConflictError"

    def test_invalid_payload(self, api_client):
        response = api_client.post("/api/accounts", json={**ACCOUNT, "incoming_port": 0})
        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "ValidationError"

    @pytest.mark.parametrize("account_id", ["not-a-uuid", str(uuid4())])
    def test_unknown_account(self, api_client, account_id):
        response = api_client.get(f"/api/accounts/{account_id}")
        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "NotFoundError"

    def test_update(self, api_client, created):
        response = api_client.put(f"/api/accounts/{created['id']}", json={"sync_frequency_minutes": 30})
        assert response.status_code == 200
        assert response.json()["sync_frequency_minutes"] == 30

    @pytest.mark.parametrize("field", ["name", "sync_enabled", "sync_frequency_minutes"])
    def test_update_rejects_null(self, api_client, created, field):
        response = api_client.put(f"/api/accounts/{created['id']}", json={field: None})
        assert response.status_code == 422
        assert api_client.get(f"/api/accounts/{created['id']}").json()["name"] == "Front Desk"

    def test_set_default(self, api_client, created):
        other = api_client.post("/api/accounts", json={**ACCOUNT, "email_address": "other@example.com"}).json()
        assert other["is_default"] is False

        response = api_client.post(f"/api/accounts/{other['id']}/default")

        assert response.json()["is_default"] is True
        assert api_client.get(f"/api/accounts/{created['id']}").json()["is_default"] is False

    def test_delete(self, api_client, created):
        response = api_client.delete(f"/api/accounts/{created['id']}")
        assert response.json() == {"success": True, "id": created["id"]}
        assert api_client.get(f"/api/accounts/{created['id']}").status_code == 404


class TestConnectionCheck:
    def test_incomplete_settings(self, api_client, transport):
        response = api_client.post("/api/accounts/test-connection", json={
            "account": {"name": "x", "email_address": "x@example.com"},
        })
        assert response.status_code == 422
        assert "incoming_server" in response.json()["error"]["details"]["missing"]
        assert transport.tested == []

    def test_stored_account(self, api_client, transport, created):
        response = api_client.post("/api/accounts/test-connection", json={"account_id": created["id"]})
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert transport.tested[0].email_address == "desk@example.com"

    def test_needs_account_or_id(self, api_client):
        response = api_client.post("/api/accounts/test-connection", json={})
        assert response.status_code == 422


class TestFolders:
    def test_default_folders(self, api_client, created):
        folders = api_client.get(f"/api/accounts/{created['id']}/folders").json()
        assert {f["folder_type"] for f in folders} >= {"inbox", "sent", "drafts", "trash", "spam", "archive"}

    def test_create_and_reparent(self, api_client, created):
        url = f"/api/accounts/{created['id']}/folders"
        parent = api_client.post(url, json={"name": "Clients"})
        assert parent.status_code == 201
        child = api_client.post(url, json={"name": "2024", "parent_folder_id": parent.json()["id"]}).json()
        assert child["parent_folder_id"] == parent.json()["id"]

        # A folder cannot become a child of its own descendant
        response = api_client.put(f"/api/folders/{parent.json()['id']}", json={"parent_folder_id": child["id"]})
        assert response.status_code == 409

    def test_rename_rejects_null(self, api_client, created):
        folder = api_client.post(f"/api/accounts/{created['id']}/folders", json={"name": "Clients"}).json()
        response = api_client.put(f"/api/folders/{folder['id']}", json={"name": None})
        assert response.status_code == 422
        assert api_client.get(f"/api/folders/{folder['id']}").json()["name"] == "Clients"

    def test_delete_custom_folder(self, api_client, created):
        folder = api_client.post(f"/api/accounts/{created['id']}/folders", json={"name": "Old"}).json()
        assert api_client.delete(f"/api/folders/{folder['id']}").json()["success"] is True
        assert api_client.get(f"/api/folders/{folder['id']}").status_code == 404

    def test_system_folder_not_deletable(self, api_client, created):
        inbox = next(f for f in api_client.get(f"/api/accounts/{created['id']}/folders").json()
                     if f["folder_type"] == "inbox")
        response = api_client.delete(f"/api/folders/{inbox['id']}")
        assert response.status_code == 409
        assert response.json()["error"]["kind"] == "InvalidOperation"


class TestSyncAndConversations:
    def test_sync_then_browse(self, api_client, transport, make_raw, created):
        transport.results["INBOX"] = [
            make_raw(1, subject="Wedding shoot", date=datetime(2024, 3, 1, 9, 0)),
            make_raw(2, subject="Re: Wedding shoot", in_reply_to="<msg-1@example.org>",
                     date=datetime(2024, 3, 2, 9, 0)),
        ]

        result = api_client.post(f"/api/accounts/{created['id']}/sync").json()

        assert result["status"] == "success"
        assert len(result["new_message_ids"]) == 2

        conversations = api_client.get(f"/api/accounts/{created['id']}/conversations").json()
        assert len(conversations) == 1
        assert conversations[0]["message_count"] == 2

        thread_id = conversations[0]["thread_id"]
        detail = api_client.get(
            f"/api/accounts/{created['id']}/conversations/{quote(thread_id, safe='')}"
        ).json()
        assert detail["conversation"]["thread_id"] == thread_id
        assert [m["subject"] for m in detail["messages"]] == ["Wedding shoot", "Re: Wedding shoot"]

    def test_sync_failure_reported_on_account(self, api_client, transport, created):
        transport.results["INBOX"] = ConnectionRefusedError("connection refused")

        result = api_client.post(f"/api/accounts/{created['id']}/sync").json()

        assert result["status"] == "partial"
        account = api_client.get(f"/api/accounts/{created['id']}").json()
        assert account["status"] == "error"
        assert account["last_error"].startswith("INBOX: ")
        assert "connection refused" in account["last_error"]

    def test_unknown_conversation(self, api_client, created):
        response = api_client.get(f"/api/accounts/{created['id']}/conversations/{quote('<nope@x>', safe='')}")
        assert response.status_code == 404
