"""
Tests for the HTTP API.

Tests cover:
- Health probes and metrics
- Message CRUD with 404/409/422 handling
- Regrouping on insert
- Export/import round trip
- Single send, no-op resend and manual verification
- Bulk dispatch (blocking and background), preview, progress and cancel
- Identity validation

External services are served by an in-process fake over
httpx.MockTransport.
"""

import json
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from relaydesk.config import settings
from relaydesk.main import app, build_services, get_services
from relaydesk.storage import Base, engine


DIRECTORY_BASE = "http://directory.test/api/v1"
RELAY_URL = "http://relay.test/bot123"


class FakeRelay:
    """Directory service plus relay bot API behind one mock transport."""

    def __init__(self):
        self.users = {"alice": {"first_name": "Alice", "user_id": 101}}
        self.clock = {}
        self.rejections = {}
        self.sent_texts = []
        self.next_id = 500
        self.delivered_ids = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/search/user"):
            handle = json.loads(request.content)["content"]
            user = self.users.get(handle)
            if user is None:
                return httpx.Response(200, json={"ok": False, "errMessage": "not found"})
            return httpx.Response(200, json={"ok": True, "data": user})
        if path.endswith("/getdialoglastdate"):
            body = json.loads(request.content)
            return httpx.Response(200, json={"ok": True, "data": self.clock.get((body["from"], body["to"]))})
        if path.endswith("/sendTextMessage"):
            text = json.loads(request.content)["text"]
            self.sent_texts.append(text)
            for needle, reason in self.rejections.items():
                if needle in text:
                    return httpx.Response(200, json={"ok": False, "errMessage": reason})
            self.next_id += 1
            self.delivered_ids.append(self.next_id)
            return httpx.Response(200, json={"ok": True, "result": {"message_id": self.next_id}})
        if path.endswith("/getUpdates"):
            updates = [{"update_id": i, "message": {"message_id": m}} for i, m in enumerate(self.delivered_ids)]
            return httpx.Response(200, json={"ok": True, "result": updates})
        return httpx.Response(404)


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture(scope="function")
def client(relay):
    """Create test client with fresh database and faked external services."""
    # Create tables
    Base.metadata.create_all(bind=engine)

    config = settings.model_copy(update={
        "DIRECTORY_API_BASE": DIRECTORY_BASE,
        "RELAY_API_URL": RELAY_URL,
        "SEND_DELAY_SECONDS": 0,
    })
    services = build_services(config, transport=httpx.MockTransport(relay.handler))
    app.dependency_overrides[get_services] = lambda: services

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


def add(client, sender: str, receiver: str, minute: int, content: str) -> dict:
    """Helper to create a message via the API."""
    response = client.post("/messages", json={
        "sender": sender,
        "receiver": receiver,
        "scheduled_time": f"2025-01-15T10:{minute:02d}:00Z",
        "content": content,
    })
    assert response.status_code == 201
    return response.json()


def contents(client) -> list[str]:
    return [m["content"] for m in client.get("/messages").json()["data"]]


# =============================================================================
# Health and Metrics
# =============================================================================

class TestHealth:
    """Test health probes."""

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_metrics_exposed(self, client):
        add(client, "alice", "bob", 0, "hello")
        client.post("/dispatch", params={"wait": "true"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "relay_deliveries_total" in response.text
        assert "dispatch_runs_total" in response.text


# =============================================================================
# Messages
# =============================================================================

class TestMessages:
    """Test message store routes."""

    def test_add_and_get(self, client):
        created = add(client, "alice", "bob", 0, "hello")

        assert created["status"] == "pending"
        assert created["unix_timestamp"] == 1736935200

        response = client.get(f"/messages/{created['id']}")
        assert response.status_code == 200
        assert response.json() == created

    def test_add_rejects_blank_content(self, client):
        response = client.post("/messages", json={
            "sender": "alice", "receiver": "bob",
            "scheduled_time": "2025-01-15T10:00:00Z", "content": "   ",
        })

        assert response.status_code == 422

    def test_add_regroups(self, client):
        add(client, "alice", "bob", 30, "ab-late")
        add(client, "carol", "dave", 0, "cd")
        add(client, "alice", "bob", 10, "ab-early")

        assert contents(client) == ["ab-early", "ab-late", "cd"]

    def test_unknown_message(self, client):
        assert client.get("/messages/nope").status_code == 404
        assert client.delete("/messages/nope").status_code == 404
        response = client.put("/messages/nope", json={
            "sender": "a", "receiver": "b", "scheduled_time": "2025-01-15T10:00:00Z", "content": "x",
        })
        assert response.status_code == 404

    def test_edit_sent_message_conflicts(self, client):
        created = add(client, "alice", "bob", 0, "hello")
        client.post(f"/messages/{created['id']}/send")

        response = client.put(f"/messages/{created['id']}", json={
            "sender": "alice", "receiver": "bob",
            "scheduled_time": "2025-01-15T10:05:00Z", "content": "changed",
        })

        assert response.status_code == 409

    def test_edit_failed_message_resets_to_pending(self, client, relay):
        relay.rejections["doomed"] = "user blocked"
        created = add(client, "alice", "bob", 0, "doomed")
        failed = client.post(f"/messages/{created['id']}/send").json()
        assert failed["status"] == "failed"
        assert failed["last_error"]["kind"] == "PROTOCOL_ERROR"

        response = client.put(f"/messages/{created['id']}", json={
            "sender": "alice", "receiver": "bob",
            "scheduled_time": "2025-01-15T10:05:00Z", "content": "fixed",
        })

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["last_error"] is None

    def test_delete(self, client):
        created = add(client, "alice", "bob", 0, "hello")

        assert client.delete(f"/messages/{created['id']}").status_code == 204
        assert client.get(f"/messages/{created['id']}").status_code == 404

    def test_clear(self, client):
        add(client, "alice", "bob", 0, "one")
        add(client, "alice", "bob", 1, "two")

        response = client.delete("/messages")

        assert response.json() == {"removed": 2}
        assert client.get("/messages").json()["total"] == 0

    def test_filter_by_status(self, client):
        first = add(client, "alice", "bob", 0, "one")
        add(client, "alice", "bob", 1, "two")
        client.post(f"/messages/{first['id']}/send")

        response = client.get("/messages", params={"status": "sent"})

        assert [m["id"] for m in response.json()["data"]] == [first["id"]]


class TestImportExport:
    """Test whole-store export and import."""

    def test_round_trip(self, client):
        add(client, "alice", "bob", 0, "one")
        add(client, "carol", "dave", 1, "two")
        client.post("/dispatch", params={"wait": "true"})
        exported = client.get("/messages/export").json()

        client.delete("/messages")
        response = client.post("/messages/import", json=exported)

        assert response.json() == {"imported": 2}
        assert client.get("/messages/export").json() == exported

    def test_duplicate_ids_rejected(self, client):
        record = {
            "id": "dup", "sender": "a", "receiver": "b",
            "scheduled_time": "2025-01-15T10:00:00Z", "content": "x",
        }

        response = client.post("/messages/import", json=[record, record])

        assert response.status_code == 422


# =============================================================================
# Delivery
# =============================================================================

class TestSend:
    """Test single send and verification."""

    def test_send_one(self, client, relay):
        created = add(client, "alice", "bob", 0, "hello")

        response = client.post(f"/messages/{created['id']}/send")

        assert response.status_code == 200
        assert response.json()["status"] == "sent"
        assert response.json()["delivery_receipt_id"] == 501
        (text,) = relay.sent_texts
        assert text.startswith("#sendmessage\nfrom:alice\nto:bob\ndateunix:1736935200\n")
        assert text.endswith("\nmsg:hello")

    def test_resend_is_noop(self, client, relay):
        created = add(client, "alice", "bob", 0, "hello")
        client.post(f"/messages/{created['id']}/send")

        response = client.post(f"/messages/{created['id']}/send")

        assert response.status_code == 200
        assert len(relay.sent_texts) == 1

    def test_send_unknown(self, client):
        assert client.post("/messages/nope/send").status_code == 404

    def test_clock_blocks_stale_message(self, client, relay):
        relay.clock[("alice", "bob")] = 1736935200 * 1000
        created = add(client, "alice", "bob", 0, "stale")

        response = client.post(f"/messages/{created['id']}/send")

        assert response.json()["last_error"]["kind"] == "ORDER_VIOLATION"
        assert relay.sent_texts == []

    def test_verify(self, client):
        created = add(client, "alice", "bob", 0, "hello")
        client.post(f"/messages/{created['id']}/send")

        response = client.post(f"/messages/{created['id']}/verify")

        assert response.status_code == 200
        assert response.json()["verified"] is True
        assert response.json()["message"]["verification_status"] == "verified"

    def test_verify_pending_message_conflicts(self, client):
        created = add(client, "alice", "bob", 0, "hello")

        assert client.post(f"/messages/{created['id']}/verify").status_code == 409


class TestIdentity:
    """Test identity validation."""

    def test_known_handle(self, client):
        response = client.post("/identities/validate", json={"handle": "alice"})

        assert response.json() == {"exists": True, "display_name": "Alice", "external_id": 101}

    def test_unknown_handle(self, client):
        response = client.post("/identities/validate", json={"handle": "mallory"})

        assert response.json()["exists"] is False


# =============================================================================
# Bulk Dispatch
# =============================================================================

class TestDispatch:
    """Test bulk dispatch routes."""

    def test_preview(self, client):
        add(client, "alice", "bob", 0, "ab1")
        add(client, "carol", "dave", 0, "cd1")
        add(client, "alice", "bob", 1, "ab2")

        response = client.get("/dispatch/preview")

        assert response.json() == {
            "total": 3,
            "conversations": [
                {"sender": "alice", "receiver": "bob", "count": 2},
                {"sender": "carol", "receiver": "dave", "count": 1},
            ],
        }

    def test_dispatch_wait(self, client, relay):
        add(client, "alice", "bob", 20, "ab2")
        add(client, "alice", "bob", 10, "ab1")
        add(client, "carol", "dave", 0, "cd1")

        response = client.post("/dispatch", params={"wait": "true"})

        assert response.status_code == 200
        report = response.json()
        assert (report["total"], report["sent"], report["failed"]) == (3, 3, 0)
        assert [t.rsplit("msg:", 1)[1] for t in relay.sent_texts] == ["ab1", "ab2", "cd1"]

        progress = client.get("/dispatch/progress").json()
        assert (progress["current"], progress["total"], progress["running"]) == (3, 3, False)

    def test_order_violation_skips_conversation_only(self, client, relay):
        relay.rejections["ab1"] = "TIME_ERROR: timestamp earlier than last message"
        add(client, "alice", "bob", 0, "ab1")
        add(client, "alice", "bob", 1, "ab2")
        add(client, "carol", "dave", 0, "cd1")

        report = client.post("/dispatch", params={"wait": "true"}).json()

        assert (report["sent"], report["failed"], report["skipped"]) == (1, 1, 1)
        kinds = {m["content"]: (m["last_error"] or {}).get("kind") for m in client.get("/messages").json()["data"]}
        assert kinds == {"ab1": "ORDER_VIOLATION", "ab2": "SKIPPED", "cd1": None}

    def test_background_dispatch(self, client):
        add(client, "alice", "bob", 0, "one")
        add(client, "alice", "bob", 1, "two")

        response = client.post("/dispatch")
        assert response.status_code == 202
        assert response.json()["running"] is True

        deadline = time.monotonic() + 5
        progress = client.get("/dispatch/progress").json()
        while progress["running"] and time.monotonic() < deadline:
            time.sleep(0.02)
            progress = client.get("/dispatch/progress").json()

        assert progress["running"] is False
        assert progress["current"] == 2
        assert client.get("/messages", params={"status": "sent"}).json()["total"] == 2

    def test_cancel_when_idle(self, client):
        assert client.post("/dispatch/cancel").status_code == 409
