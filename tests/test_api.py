"""
test_api.py — HTTP and WebSocket surface.

Uses httpx.AsyncClient over ASGITransport with the database, rooms,
dispatcher and rate limiter swapped for test instances.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

import json
import logging

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import (
    CREATOR_ID,
    OTHER_ID,
    RESPONDER_ID,
    STRANGER_ID,
    FakeSocket,
    FakeSubscriptionStore,
    auth_header,
    make_token,
)
from guardian.app.api.deps import get_subscription_store
from guardian.app.chat.rate_limit import ChatRateLimiter, get_rate_limiter
from guardian.app.core import database
from guardian.app.core.database import get_db
from guardian.app.core.logging_config import (
    JSONFormatter,
    clear_request_context,
    set_request_context,
)
from guardian.app.core.middleware import emergency_id_from_path
from guardian.app.main import app
from guardian.app.notifications.dispatcher import NotificationDispatcher, get_dispatcher
from guardian.app.notifications.subscriptions import SubscriptionStore
from guardian.app.realtime.rooms import get_rooms

API = "/api/v1/emergencies"


@pytest.fixture
async def client(session_factory, users, rooms, push_disabled):
    async def override_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    limiter = ChatRateLimiter(3, 60)
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_rooms] = lambda: rooms
    app.dependency_overrides[get_dispatcher] = lambda: NotificationDispatcher(FakeSubscriptionStore(), rooms)
    app.dependency_overrides[get_subscription_store] = lambda: SubscriptionStore(session_factory)
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def _create(client) -> str:
    response = await client.post(f"{API}/create", headers=auth_header(CREATOR_ID))
    assert response.status_code == 201
    return response.json()["emergency"]["id"]


async def _accept(client, emergency_id, user_id=RESPONDER_ID):
    response = await client.post(f"{API}/{emergency_id}/accept", headers=auth_header(user_id))
    assert response.status_code == 200
    return response


class TestAuth:

    async def test_missing_token(self, client):
        response = await client.post(f"{API}/create")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHENTICATED"

    async def test_expired_token(self, client):
        token = make_token(CREATOR_ID, expires_in=-10)
        response = await client.get(f"{API}/active", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Token expired"

    async def test_wrong_signature(self, client):
        token = make_token(CREATOR_ID, secret="not-the-server-secret-at-all-000000")
        response = await client.get(f"{API}/active", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401


class TestEmergencyRoutes:

    async def test_create(self, client, rooms):
        sock = FakeSocket()
        await rooms.connect(sock, RESPONDER_ID)

        response = await client.post(f"{API}/create", headers=auth_header(CREATOR_ID))
        assert response.status_code == 201
        body = response.json()
        assert body["emergency"]["status"] == "active"
        assert body["participants_count"] == 2
        assert body["notifications"]["total_recipients"] == 2
        assert body["notifications"]["recipients_reached"] == 1
        assert sock.of("emergency_created")[0]["emergency_id"] == body["emergency"]["id"]

    async def test_second_create_conflicts(self, client):
        emergency_id = await _create(client)
        response = await client.post(f"{API}/create", headers=auth_header(CREATOR_ID))
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "CONFLICT"
        assert error["details"]["emergency_id"] == emergency_id

    async def test_pending_and_accept(self, client):
        emergency_id = await _create(client)
        pending = await client.get(f"{API}/pending", headers=auth_header(RESPONDER_ID))
        assert [p["id"] for p in pending.json()] == [emergency_id]
        assert pending.json()[0]["sender_display_name"] == "Carol"

        response = await _accept(client, emergency_id)
        assert response.json()["status"] == "accepted"
        pending = await client.get(f"{API}/pending", headers=auth_header(RESPONDER_ID))
        assert pending.json() == []

    async def test_reject(self, client):
        emergency_id = await _create(client)
        response = await client.post(f"{API}/{emergency_id}/reject", headers=auth_header(OTHER_ID))
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    async def test_stranger_cannot_answer_or_view(self, client):
        emergency_id = await _create(client)
        accept = await client.post(f"{API}/{emergency_id}/accept", headers=auth_header(STRANGER_ID))
        assert accept.status_code == 403
        view = await client.get(f"{API}/{emergency_id}", headers=auth_header(STRANGER_ID))
        assert view.status_code == 403

    async def test_unknown_emergency(self, client):
        response = await client.get(f"{API}/nope", headers=auth_header(CREATOR_ID))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    async def test_location_and_details(self, client):
        emergency_id = await _create(client)
        await _accept(client, emergency_id)

        response = await client.post(
            f"{API}/{emergency_id}/location",
            json={"latitude": 13.0827, "longitude": 80.2707, "accuracy": 9.5},
            headers=auth_header(CREATOR_ID),
        )
        assert response.status_code == 200
        assert response.json()["accuracy"] == 9.5

        details = (await client.get(f"{API}/{emergency_id}", headers=auth_header(RESPONDER_ID))).json()
        assert details["locations"][0]["user_display_name"] == "Carol"
        assert len(details["participants"]) == 2

        trail = await client.get(
            f"{API}/{emergency_id}/locations/{CREATOR_ID}", headers=auth_header(RESPONDER_ID),
        )
        assert [p["latitude"] for p in trail.json()] == [13.0827]

    @pytest.mark.parametrize("lat,lng,code", [
        (0.0, 0.0, "NULL_ISLAND"),
        (120.0, 10.0, "OUT_OF_RANGE"),
    ])
    async def test_location_rejection_codes(self, client, lat, lng, code):
        emergency_id = await _create(client)
        response = await client.post(
            f"{API}/{emergency_id}/location",
            json={"latitude": lat, "longitude": lng},
            headers=auth_header(CREATOR_ID),
        )
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == code
        assert error["details"]["field"] == "location"

    async def test_malformed_location_body(self, client):
        emergency_id = await _create(client)
        response = await client.post(
            f"{API}/{emergency_id}/location",
            json={"latitude": 13.0, "accuracy": -1},
            headers=auth_header(CREATOR_ID),
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_pending_participant_cannot_share_location(self, client):
        emergency_id = await _create(client)
        response = await client.post(
            f"{API}/{emergency_id}/location",
            json={"latitude": 13.0, "longitude": 80.0},
            headers=auth_header(OTHER_ID),
        )
        assert response.status_code == 403

    async def test_end_then_inactive(self, client):
        emergency_id = await _create(client)
        forbidden = await client.post(f"{API}/{emergency_id}/end", headers=auth_header(RESPONDER_ID))
        assert forbidden.status_code == 403

        ended = await client.post(f"{API}/{emergency_id}/end", headers=auth_header(CREATOR_ID))
        assert ended.status_code == 200
        assert ended.json()["emergency"]["status"] == "ended"

        late = await client.post(f"{API}/{emergency_id}/accept", headers=auth_header(RESPONDER_ID))
        assert late.status_code == 409
        assert late.json()["error"]["code"] == "EMERGENCY_INACTIVE"

        late_fix = await client.post(
            f"{API}/{emergency_id}/location",
            json={"latitude": 40.0, "longitude": -75.0},
            headers=auth_header(CREATOR_ID),
        )
        assert late_fix.status_code == 409
        assert late_fix.json()["error"]["code"] == "EMERGENCY_INACTIVE"

        active = await client.get(f"{API}/active", headers=auth_header(CREATOR_ID))
        assert active.json() == {"emergency": None}

    async def test_cancel(self, client):
        emergency_id = await _create(client)
        response = await client.post(f"{API}/{emergency_id}/cancel", headers=auth_header(CREATOR_ID))
        assert response.json()["emergency"]["status"] == "cancelled"

    async def test_escalate_with_and_without_body(self, client, rooms):
        emergency_id = await _create(client)
        sock = FakeSocket()
        conn = await rooms.connect(sock, RESPONDER_ID)
        await rooms.join_emergency(conn, emergency_id)

        plain = await client.post(f"{API}/{emergency_id}/escalate", headers=auth_header(CREATOR_ID))
        assert plain.status_code == 200
        assert plain.json()["emergency"]["status"] == "active"

        await client.post(
            f"{API}/{emergency_id}/escalate",
            json={"reason": "No answer for 10 minutes"},
            headers=auth_header(CREATOR_ID),
        )
        reasons = [f["reason"] for f in sock.of("emergency_escalated")]
        assert reasons == ["No reason given", "No answer for 10 minutes"]

    async def test_active(self, client):
        emergency_id = await _create(client)
        body = (await client.get(f"{API}/active", headers=auth_header(CREATOR_ID))).json()
        assert body["emergency"]["emergency"]["id"] == emergency_id


class TestMessageRoutes:

    async def test_post_and_list(self, client):
        emergency_id = await _create(client)
        await _accept(client, emergency_id)

        posted = await client.post(
            f"{API}/{emergency_id}/messages",
            json={"message": "Coming now"},
            headers=auth_header(RESPONDER_ID),
        )
        assert posted.status_code == 201
        assert posted.json()["user_display_name"] == "Ravi"

        await client.post(
            f"{API}/{emergency_id}/messages",
            json={"attachment": {"kind": "image", "url": "https://media.example.net/p.jpg"}},
            headers=auth_header(CREATOR_ID),
        )
        history = (await client.get(f"{API}/{emergency_id}/messages", headers=auth_header(CREATOR_ID))).json()
        assert [m["message"] for m in history] == ["Coming now", None]
        assert history[1]["image_url"] == "https://media.example.net/p.jpg"

    async def test_empty_message(self, client):
        emergency_id = await _create(client)
        response = await client.post(
            f"{API}/{emergency_id}/messages", json={"message": "  "}, headers=auth_header(CREATOR_ID),
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "EMPTY_MESSAGE"

    async def test_pending_participant_forbidden(self, client):
        emergency_id = await _create(client)
        response = await client.post(
            f"{API}/{emergency_id}/messages", json={"message": "hi"}, headers=auth_header(OTHER_ID),
        )
        assert response.status_code == 403

    async def test_rate_limited_with_retry_after(self, client):
        emergency_id = await _create(client)
        for i in range(3):
            ok = await client.post(
                f"{API}/{emergency_id}/messages", json={"message": f"m{i}"}, headers=auth_header(CREATOR_ID),
            )
            assert ok.status_code == 201
        blocked = await client.post(
            f"{API}/{emergency_id}/messages", json={"message": "m3"}, headers=auth_header(CREATOR_ID),
        )
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert int(blocked.headers["Retry-After"]) >= 1


class TestNotificationRoutes:

    async def test_subscribe_and_device_token(self, client, session_factory):
        subscription = {
            "endpoint": "https://push.example.net/sub/xyz",
            "keys": {"p256dh": "BKey", "auth": "secret"},
        }
        response = await client.post(
            "/api/v1/notifications/subscribe",
            json={"subscription": subscription},
            headers=auth_header(RESPONDER_ID),
        )
        assert response.status_code == 200
        response = await client.post(
            "/api/v1/notifications/device-token",
            json={"token": " device-123 "},
            headers=auth_header(RESPONDER_ID),
        )
        assert response.status_code == 200

        recipient = await SubscriptionStore(session_factory).get_recipient(RESPONDER_ID)
        assert recipient.device_token == "device-123"
        assert recipient.web_subscription == subscription

    async def test_subscribe_requires_endpoint(self, client):
        response = await client.post(
            "/api/v1/notifications/subscribe",
            json={"subscription": {"keys": {"p256dh": "k", "auth": "a"}}},
            headers=auth_header(RESPONDER_ID),
        )
        assert response.status_code == 422

    async def test_vapid_key_disabled(self, client):
        body = (await client.get("/api/v1/notifications/vapid-public-key")).json()
        assert body == {"enabled": False, "public_key": None}

    async def test_vapid_key_enabled(self, client, push_enabled):
        body = (await client.get("/api/v1/notifications/vapid-public-key")).json()
        assert body == {"enabled": True, "public_key": "vapid-public"}


class TestSubscriptionStore:

    async def test_clear_and_unknown_user(self, session_factory, users):
        store = SubscriptionStore(session_factory)
        await store.save_web_subscription(RESPONDER_ID, {"endpoint": "https://push.example.net/s"})
        await store.clear_web_subscription(RESPONDER_ID)
        assert (await store.get_recipient(RESPONDER_ID)).web_subscription is None

        unknown = await store.get_recipient("ghost")
        assert unknown.device_token is None and unknown.web_subscription is None


class TestHealth:

    async def test_live(self, client):
        assert (await client.get("/health/live")).json() == {"status": "alive"}

    async def test_ready_when_database_answers(self, client, monkeypatch):
        async def ok():
            return None

        monkeypatch.setattr(database, "ping_db", ok)
        response = await client.get("/health/ready")
        assert response.status_code == 200
        # Push channels unconfigured: degraded, not down
        assert response.json()["status"] == "degraded"

    async def test_not_ready_without_database(self, client, monkeypatch):
        async def down():
            raise ConnectionError("connection refused")

        monkeypatch.setattr(database, "ping_db", down)
        response = await client.get("/health/ready")
        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"


class TestWebSocket:

    def test_invalid_token_closed_before_accept(self):
        client = TestClient(app)
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws?token=garbage"):
                pass
        assert exc.value.code == 4401

    def test_missing_token(self):
        client = TestClient(app)
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws"):
                pass
        assert exc.value.code == 4401

    def test_connect_join_ping(self):
        client = TestClient(app)
        with client.websocket_connect(f"/ws?token={make_token(RESPONDER_ID)}") as ws:
            hello = ws.receive_json()
            assert hello["event"] == "connected"
            assert hello["data"]["user_id"] == RESPONDER_ID

            ws.send_json({"type": "join_emergency", "emergency_id": "em-1"})
            assert ws.receive_json() == {"event": "joined_emergency", "data": {"emergency_id": "em-1"}}

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["event"] == "pong"

            ws.send_json({"type": "dance"})
            assert ws.receive_json()["event"] == "error"

            ws.send_json({"type": "leave_emergency", "emergency_id": "em-1"})
            assert ws.receive_json()["event"] == "left_emergency"


class TestRequestContext:

    async def test_request_id_echoed_or_generated(self, client):
        echoed = await client.get("/health/live", headers={"X-Request-ID": "abc-123"})
        assert echoed.headers["X-Request-ID"] == "abc-123"

        generated = await client.get("/health/live", headers={"X-Request-ID": "bad id with spaces"})
        assert generated.headers["X-Request-ID"] != "bad id with spaces"
        assert generated.headers["X-Process-Time"].endswith("ms")

    @pytest.mark.parametrize("path,expected", [
        ("/api/v1/emergencies/em-42/location", "em-42"),
        ("/api/v1/emergencies/em-42", "em-42"),
        ("/api/v1/emergencies/pending", None),
        ("/api/v1/emergencies/create", None),
        ("/api/v1/notifications/subscribe", None),
    ])
    def test_emergency_id_from_path(self, path, expected):
        assert emergency_id_from_path(path) == expected

    def test_json_formatter_merges_context(self):
        set_request_context(request_id="req-1", emergency_id="em-1")
        try:
            record = logging.LogRecord("guardian.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
            record.user_id = "user-9"
            entry = json.loads(JSONFormatter().format(record))
        finally:
            clear_request_context()
        assert entry["msg"] == "hello world"
        assert entry["request_id"] == "req-1"
        assert entry["emergency_id"] == "em-1"
        assert entry["user_id"] == "user-9"
