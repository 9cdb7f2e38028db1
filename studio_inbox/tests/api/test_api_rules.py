"""
Tests for the rule and contact endpoints, including a rule applied by an
API-triggered sync.
"""
from uuid import uuid4

import pytest

BOOKING_RULE = {
    "name": "Booking requests",
    "priority": 10,
    "conditions": [{"type": "keyword_match", "keywords": ["booking"], "fields": ["subject"]}],
    "actions": [{"type": "add_labels", "labels": ["lead"]}],
}


@pytest.fixture
def rule(api_client):
    response = api_client.post("/api/rules", json=BOOKING_RULE)
    assert response.status_code == 201
    return response.json()


class TestRules:
    def test_create(self, rule):
        assert rule["name"] == "Booking requests"
        assert rule["is_enabled"] is True
        assert rule["account_id"] is None
        assert rule["conditions"][0]["type"] == "keyword_match"
        assert rule["actions"] == [{"type": "add_labels", "labels": ["lead"]}]

    @pytest.mark.parametrize("payload", [
        {"name": "no actions", "actions": []},
        {"name": "bad action", "actions": [{"type": "move_to_folder"}]},
        {"name": "bad flag", "conditions": [{"type": "flag_is", "flag": "is_purple"}],
         "actions": [{"type": "notify"}]},
        {"name": "bad regex", "conditions": [{"type": "sender_matches", "match_type": "regex", "value": "("}],
         "actions": [{"type": "notify"}]},
    ])
    def test_invalid_rule(self, api_client, payload):
        response = api_client.post("/api/rules", json=payload)
        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "ValidationError"

    def test_rule_for_unknown_account(self, api_client):
        response = api_client.post("/api/rules", json={**BOOKING_RULE, "account_id": str(uuid4())})
        assert response.status_code == 404

    def test_update(self, api_client, rule):
        response = api_client.put(f"/api/rules/{rule['id']}", json={"enabled": False, "priority": 1})
        assert response.json()["is_enabled"] is False
        assert response.json()["priority"] == 1

        assert api_client.put(f"/api/rules/{rule['id']}", json={"actions": []}).status_code == 422

    @pytest.mark.parametrize("field", ["name", "priority", "enabled", "conditions", "actions"])
    def test_update_rejects_null(self, api_client, rule, field):
        response = api_client.put(f"/api/rules/{rule['id']}", json={field: None})

        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "ValidationError"
        assert api_client.get(f"/api/rules/{rule['id']}").json()["name"] == "Booking requests"

    def test_update_clears_description(self, api_client, rule):
        response = api_client.put(f"/api/rules/{rule['id']}", json={"description": None})
        assert response.status_code == 200

    def test_list_and_delete(self, api_client, rule):
        assert [r["id"] for r in api_client.get("/api/rules").json()] == [rule["id"]]

        assert api_client.delete(f"/api/rules/{rule['id']}").json() == {"success": True, "id": rule["id"]}
        assert api_client.get(f"/api/rules/{rule['id']}").status_code == 404

    def test_rule_applied_on_sync(self, api_client, transport, make_raw, account, rule):
        transport.results["INBOX"] = [
            make_raw(1, subject="Booking for June"),
            make_raw(2, subject="Newsletter"),
        ]

        api_client.post(f"/api/accounts/{account.id}/sync")

        labelled = api_client.get("/api/messages", params={"labels": ["lead"]}).json()
        assert [m["subject"] for m in labelled["items"]] == ["Booking for June"]


class TestContacts:
    def test_create_and_update(self, api_client):
        response = api_client.post("/api/contacts", json={
            "email_address": "Ana@Example.org", "name": "Ana", "tags": ["client"],
        })
        assert response.status_code == 201
        contact = response.json()
        assert contact["email_address"] == "ana@example.org"
        assert contact["contact_frequency"] == 0

        updated = api_client.put(f"/api/contacts/{contact['id']}", json={"is_favorite": True}).json()
        assert updated["is_favorite"] is True
        assert updated["name"] == "Ana"

        favorites = api_client.get("/api/contacts", params={"favorites_only": True}).json()
        assert [c["id"] for c in favorites] == [contact["id"]]

    def test_duplicate(self, api_client):
        api_client.post("/api/contacts", json={"email_address": "ana@example.org"})
        response = api_client.post("/api/contacts", json={"email_address": "ANA@example.org"})
        assert response.status_code == 409

    def test_invalid_address(self, api_client):
        assert api_client.post("/api/contacts", json={"email_address": "not-an-address"}).status_code == 422

    def test_unknown_contact(self, api_client):
        assert api_client.get(f"/api/contacts/{uuid4()}").status_code == 404
