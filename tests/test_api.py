"""HTTP API tests through the ASGI app."""

import hashlib
import hmac
import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import PAGE_A, PAGE_B, FakeSocket, login, messaging_payload
from inbox.config import get_settings
from inbox.models.conversation import Message
from inbox.models.customer import Customer
from inbox.models.user import User, UserRole
from inbox.services.fanout import compute_scopes
from inbox.services.ledger import ConversationLedger
from inbox.services.messenger import PlatformSendError, SendErrorKind


async def _post_webhook(client, payload, headers=None):
    return await client.post(
        "/webhook",
        content=json.dumps(payload),
        headers={"Content-Type": "application/json", **(headers or {})},
    )


@pytest.fixture
async def conversations(db, users) -> dict[str, int]:
    """One conversation on each page."""
    ledger = ConversationLedger(db)
    db.add_all([Customer(id="U1", name="Ada"), Customer(id="U2", name="Grace")])
    await db.commit()
    on_a, _ = await ledger.ensure_conversation("U1", PAGE_A, datetime.now(timezone.utc))
    on_b, _ = await ledger.ensure_conversation("U2", PAGE_B, datetime.now(timezone.utc))
    await db.commit()
    return {"a": on_a, "b": on_b}


# ============================================================================
# Webhook
# ============================================================================


class TestWebhook:
    async def test_verification_echoes_challenge(self, client):
        response = await client.get(
            "/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "test-verify-token", "hub.challenge": "42"},
        )

        assert response.status_code == 200
        assert response.text == "42"
        assert response.headers["content-type"].startswith("text/plain")

    async def test_verification_rejects_wrong_token(self, client):
        response = await client.get(
            "/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "42"},
        )

        assert response.status_code == 403
        assert response.text == ""

    async def test_delivery_is_acknowledged_and_stored(self, client, db, pages, manager):
        socket = FakeSocket()
        manager.connect(socket, 2, "agent-a", compute_scopes(UserRole.AGENT, [PAGE_A]))

        response = await _post_webhook(client, messaging_payload(PAGE_A, "U1", text="hi", mid="m.api"))

        assert response.status_code == 200
        assert response.text == "EVENT_RECEIVED"
        assert await db.scalar(select(func.count(Message.id))) == 1
        assert socket.types() == ["new_message", "conversation_updated"]

    async def test_unknown_shapes_and_garbage_are_acknowledged(self, client, db, pages):
        for body in ('{"object": "instagram", "entry": []}', "not json"):
            response = await client.post("/webhook", content=body)
            assert response.status_code == 200
            assert response.text == "EVENT_RECEIVED"

        assert await db.scalar(select(func.count(Message.id))) == 0

    async def test_signature_is_checked_when_secret_is_set(self, client, db, pages, monkeypatch):
        monkeypatch.setattr(get_settings(), "messenger_app_secret", "app-secret")
        body = json.dumps(messaging_payload(PAGE_A, "U1", mid="m.signed")).encode()
        signature = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

        rejected = await client.post("/webhook", content=body, headers={"X-Hub-Signature-256": "sha256=bad"})
        accepted = await client.post(
            "/webhook", content=body, headers={"X-Hub-Signature-256": f"sha256={signature}"}
        )

        assert rejected.status_code == 403
        assert accepted.status_code == 200
        assert await db.scalar(select(func.count(Message.id))) == 1


# ============================================================================
# Auth
# ============================================================================


class TestAuth:
    async def test_login_me_logout(self, client, users):
        assert (await client.get("/api/auth/me")).status_code == 401

        await login(client, "agent-a")
        me = await client.get("/api/auth/me")
        assert me.json() == {"id": users["agent_a"].id, "username": "agent-a", "role": "agent"}

        await client.post("/api/auth/logout")
        assert (await client.get("/api/auth/me")).status_code == 401

    async def test_wrong_password(self, client, users):
        response = await client.post("/api/auth/login", json={"username": "agent-a", "password": "nope"})

        assert response.status_code == 401

    async def test_push_token_registered_and_cleared_on_logout(self, client, users, db):
        token_of = select(User.fcm_token).where(User.id == users["agent_a"].id)
        assert (await client.put("/api/auth/fcm-token", json={"fcmToken": "device-1"})).status_code == 401

        await login(client, "agent-a")
        response = await client.put("/api/auth/fcm-token", json={"fcmToken": "device-1"})
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert await db.scalar(token_of) == "device-1"

        await client.post("/api/auth/logout")
        assert await db.scalar(token_of) is None


# ============================================================================
# Inbox
# ============================================================================


class TestInbox:
    async def test_agent_sees_only_assigned_pages(self, client, conversations):
        await login(client, "agent-a")

        pages = (await client.get("/api/messages/pages")).json()
        listed = (await client.get("/api/messages/conversations")).json()

        assert pages == [{"id": PAGE_A, "name": "Page A"}]
        assert [c["id"] for c in listed] == [conversations["a"]]
        assert listed[0]["page_name"] == "Page A"
        assert (await client.get("/api/messages/conversations", params={"page_id": PAGE_B})).status_code == 403

    async def test_admin_sees_every_conversation(self, client, conversations):
        await login(client, "admin")

        listed = (await client.get("/api/messages/conversations")).json()

        assert {c["id"] for c in listed} == set(conversations.values())

    async def test_other_pages_conversation_is_forbidden(self, client, conversations):
        await login(client, "agent-a")

        assert (await client.get(f"/api/messages/{conversations['b']}")).status_code == 403
        assert (
            await client.post(f"/api/messages/{conversations['b']}/reply", json={"message": "hi"})
        ).status_code == 403
        assert (await client.get("/api/messages/99999")).status_code == 404

    async def test_reply_and_history(self, client, graph, conversations):
        await login(client, "agent-a")

        response = await client.post(f"/api/messages/{conversations['a']}/reply", json={"message": "Hello!"})
        history = (await client.get(f"/api/messages/{conversations['a']}")).json()

        assert response.status_code == 200
        assert response.json()["is_from_page"] is True
        assert graph.sent[0]["recipient_id"] == "U1"
        assert [m["text"] for m in history["messages"]] == ["Hello!"]
        assert history["pagination"]["total"] == 1

    async def test_reply_requires_content(self, client, conversations):
        await login(client, "agent-a")

        response = await client.post(f"/api/messages/{conversations['a']}/reply", json={"message": ""})

        assert response.status_code == 400

    async def test_rejected_reply_maps_to_502(self, client, db, graph, conversations):
        graph.send_errors.append(PlatformSendError(SendErrorKind.APPROVAL_MISSING, "Permission denied", 10))
        await login(client, "agent-a")

        response = await client.post(f"/api/messages/{conversations['a']}/reply", json={"message": "hi"})

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["error"] == "approval_missing"
        assert "Human Agent" in detail["message"]
        assert await db.scalar(select(func.count(Message.id))) == 0

    async def test_rename_and_mark_read(self, client, conversations):
        await login(client, "agent-a")
        conversation_id = conversations["a"]

        renamed = await client.put(f"/api/messages/{conversation_id}/name", json={"name": " VIP "})
        read = await client.put(f"/api/messages/{conversation_id}/read")
        listed = (await client.get("/api/messages/conversations")).json()

        assert renamed.json() == {"success": True, "name": "VIP"}
        assert read.json()["success"] is True
        assert listed[0]["user_name"] == "VIP"
        assert listed[0]["unread_count"] == 0

    async def test_blank_name_is_rejected(self, client, conversations):
        await login(client, "agent-a")

        response = await client.put(f"/api/messages/{conversations['a']}/name", json={"name": "  "})

        assert response.status_code == 422

    async def test_clear_conversation_notifies_consoles(self, client, manager, conversations):
        socket = FakeSocket()
        manager.connect(socket, 1, "admin", compute_scopes(UserRole.ADMIN, []))
        await login(client, "agent-a")

        response = await client.delete(f"/api/messages/{conversations['a']}/conversation")

        assert response.json() == {"success": True, "deleted_count": 0}
        assert socket.types() == ["conversation_deleted"]
        assert socket.sent[0]["data"] == {"id": conversations["a"]}

    async def test_cleanup_period_validation(self, client, conversations):
        await login(client, "agent-a")

        bad = await client.delete(f"/api/messages/{conversations['a']}/cleanup", params={"period": "2y"})
        good = await client.delete(f"/api/messages/{conversations['a']}/cleanup", params={"period": "7d"})

        assert bad.status_code == 400
        assert good.json() == {"success": True, "deleted_count": 0}

    async def test_delete_latest_and_soft_delete(self, client, conversations):
        await login(client, "agent-a")
        conversation_id = conversations["a"]
        first = (await client.post(f"/api/messages/{conversation_id}/reply", json={"message": "one"})).json()
        second = (await client.post(f"/api/messages/{conversation_id}/reply", json={"message": "two"})).json()

        latest = await client.delete(f"/api/messages/{conversation_id}/latest")
        hidden = await client.delete(f"/api/messages/message/{first['id']}")
        history = (await client.get(f"/api/messages/{conversation_id}")).json()

        assert latest.json() == {"success": True, "message_id": second["id"]}
        assert hidden.json() == {"success": True}
        assert history["messages"] == []
        assert (await client.delete(f"/api/messages/{conversation_id}/latest")).status_code == 200
        assert (await client.delete(f"/api/messages/{conversation_id}/latest")).status_code == 404


# ============================================================================
# Admin
# ============================================================================


class TestAdmin:
    async def test_agents_are_forbidden(self, client, users):
        await login(client, "agent-a")

        assert (await client.get("/api/admin/pages")).status_code == 403
        assert (await client.post("/api/admin/users", json={"username": "x", "password": "secret1"})).status_code == 403

    async def test_page_and_user_management(self, client, users):
        await login(client, "admin")

        page = await client.post("/api/admin/pages", json={"id": "333", "name": "Page C", "access_token": "t"})
        user = await client.post("/api/admin/users", json={"username": "agent-c", "password": "secret1"})
        assigned = await client.post(
            "/api/admin/assignments", json={"userId": user.json()["id"], "pageIds": ["333", PAGE_A]}
        )
        duplicate = await client.post("/api/admin/users", json={"username": "agent-c", "password": "secret1"})
        protected = await client.delete("/api/admin/users/1")

        assert page.json()["success"] is True
        assert user.json()["role"] == "agent"
        assert assigned.json()["success"] is True
        assert duplicate.status_code == 400
        assert protected.status_code == 403

        pages = (await client.get(f"/api/admin/assignments/user/{user.json()['id']}")).json()["pages"]
        assert {p["id"] for p in pages} == {"333", PAGE_A}
        listed = (await client.get("/api/admin/pages")).json()["pages"]
        assert all("access_token" not in p for p in listed)

    async def test_assignment_to_unknown_page(self, client, users):
        await login(client, "admin")

        response = await client.post(
            "/api/admin/assignments", json={"userId": users["agent_a"].id, "pageIds": ["missing"]}
        )

        assert response.status_code == 400

    async def test_agent_can_only_view_own_assignments(self, client, users):
        await login(client, "agent-a")

        own = await client.get(f"/api/admin/assignments/user/{users['agent_a'].id}")
        other = await client.get(f"/api/admin/assignments/user/{users['agent_b'].id}")

        assert own.json() == {"pages": [{"id": PAGE_A, "name": "Page A"}]}
        assert other.status_code == 403

    async def test_retention_endpoints(self, client, users):
        await login(client, "admin")

        stats = await client.get("/api/admin/retention/stats")
        preview = await client.post("/api/admin/retention/cleanup", params={"days": 30})
        invalid = await client.post("/api/admin/retention/cleanup")

        assert stats.json()["messages"]["total"] == 0
        assert preview.json()["dry_run"] is True
        # Retention is "forever" unless configured
        assert invalid.status_code == 400


# ============================================================================
# Notes and health
# ============================================================================


async def test_notes_lifecycle(client, conversations):
    await login(client, "agent-a")

    empty = await client.get("/api/notes/U1")
    saved = await client.put("/api/notes/U1", json={"content": "Prefers email"})
    fetched = await client.get("/api/notes/U1")
    unknown = await client.put("/api/notes/ghost", json={"content": "x"})
    deleted = await client.delete("/api/notes/U1")

    assert empty.json() == {"customer_id": "U1", "content": ""}
    assert saved.json()["content"] == "Prefers email"
    assert fetched.json()["last_edited_by"] is not None
    assert unknown.status_code == 404
    assert deleted.status_code == 200
    assert (await client.delete("/api/notes/U1")).status_code == 404


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_socket_requires_session(app):
    test_client = TestClient(app)

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with test_client.websocket_connect("/ws") as websocket:
            websocket.receive_json()

    assert exc_info.value.code == 1008
