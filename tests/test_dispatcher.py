"""
test_dispatcher.py — Multi-channel notification fan-out.

Covers:
    • Channel backends (mobile push, web push, realtime)
    • Per-channel and per-user isolation
    • Web-push subscription expiry (404/410) invalidation
    • Templates, deduplication, report totals
    • dispatch never raises

Run with:
    pytest tests/test_dispatcher.py -v
"""

from __future__ import annotations

import json
from types import SimpleNamespace

import httpx
import pytest
from pywebpush import WebPushException

from conftest import FakeSocket, FakeSubscriptionStore
from guardian.app.notifications.channels import mobile_push, realtime, web_push
from guardian.app.notifications.dispatcher import NotificationDispatcher, render
from guardian.app.notifications.models import (
    DeliveryStatus,
    Notification,
    NotificationChannel,
    NotificationRecipient,
)
from guardian.app.realtime.events import EventType

SUBSCRIPTION = {
    "endpoint": "https://push.example.net/sub/abc",
    "keys": {"p256dh": "BPublicKey", "auth": "authsecret"},
}

PAYLOAD = {
    "emergency_id": "em-1",
    "user_id": "creator",
    "user_display_name": "Carol",
    "participants": 2,
}


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"name": "projects/x/messages/1"})


def _recording_webpush(calls, status_by_endpoint=None):
    status_by_endpoint = status_by_endpoint or {}

    def fake_webpush(subscription_info, data, vapid_private_key, vapid_claims, timeout):
        calls.append({"subscription": subscription_info, "data": json.loads(data), "claims": vapid_claims})
        status = status_by_endpoint.get(subscription_info["endpoint"], 201)
        if status >= 400:
            raise WebPushException("Push failed", response=SimpleNamespace(status_code=status))
        return SimpleNamespace(status_code=status)

    return fake_webpush


# ═══════════════════════════════════════════════════════════════════════════
# Channel backends
# ═══════════════════════════════════════════════════════════════════════════

class TestMobilePushChannel:

    async def test_skipped_without_token(self, push_enabled):
        notification = Notification(EventType.EMERGENCY_CREATED, "t", "b")
        attempt = await mobile_push.send(notification, NotificationRecipient("u1"))
        assert attempt.status == DeliveryStatus.SKIPPED

    async def test_skipped_when_unconfigured(self, push_disabled):
        notification = Notification(EventType.EMERGENCY_CREATED, "t", "b")
        attempt = await mobile_push.send(notification, NotificationRecipient("u1", device_token="tok"))
        assert attempt.status == DeliveryStatus.SKIPPED
        assert attempt.reason == "channel_disabled"

    async def test_delivered_message_shape(self, push_enabled):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _ok(request)

        notification = Notification(EventType.EMERGENCY_CREATED, "🚨 Emergency Alert", "Carol needs your help NOW!", dict(PAYLOAD))
        async with _mock_client(handler) as client:
            attempt = await mobile_push.send(
                notification, NotificationRecipient("u1", device_token="device-abc"), client=client,
            )

        assert attempt.status == DeliveryStatus.DELIVERED
        request = seen[0]
        assert request.headers["Authorization"] == "Bearer push-token"
        message = json.loads(request.content)["message"]
        assert message["token"] == "device-abc"
        assert message["data"]["type"] == "emergency_created"
        assert message["data"]["emergency_id"] == "em-1"
        assert message["data"]["participants"] == "2"
        assert message["android"]["priority"] == "high"
        assert message["apns"]["payload"]["aps"]["interruption-level"] == "critical"

    async def test_provider_error_is_failed(self, push_enabled):
        notification = Notification(EventType.EMERGENCY_CREATED, "t", "b")
        async with _mock_client(lambda r: httpx.Response(500, text="boom")) as client:
            attempt = await mobile_push.send(
                notification, NotificationRecipient("u1", device_token="tok"), client=client,
            )
        assert attempt.status == DeliveryStatus.FAILED
        assert "HTTP 500" in attempt.reason

    async def test_transport_error_is_failed(self, push_enabled):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        notification = Notification(EventType.EMERGENCY_CREATED, "t", "b")
        async with _mock_client(handler) as client:
            attempt = await mobile_push.send(
                notification, NotificationRecipient("u1", device_token="tok"), client=client,
            )
        assert attempt.status == DeliveryStatus.FAILED


class TestWebPushChannel:

    async def test_skipped_without_subscription(self, push_enabled):
        notification = Notification(EventType.EMERGENCY_CREATED, "t", "b")
        attempt = await web_push.send(notification, NotificationRecipient("u1"))
        assert attempt.status == DeliveryStatus.SKIPPED

    async def test_delivered(self, push_enabled, monkeypatch):
        calls = []
        monkeypatch.setattr(web_push, "webpush", _recording_webpush(calls))
        notification = Notification(EventType.EMERGENCY_CREATED, "Alert", "Help", dict(PAYLOAD))
        attempt = await web_push.send(notification, NotificationRecipient("u1", web_subscription=SUBSCRIPTION))
        assert attempt.status == DeliveryStatus.DELIVERED
        assert calls[0]["data"]["title"] == "Alert"
        assert calls[0]["data"]["data"]["type"] == "emergency_created"
        assert calls[0]["claims"]["sub"].startswith("mailto:")

    @pytest.mark.parametrize("status", [404, 410])
    async def test_gone_subscription_expired_and_cleared(self, push_enabled, monkeypatch, status):
        monkeypatch.setattr(
            web_push, "webpush",
            _recording_webpush([], {SUBSCRIPTION["endpoint"]: status}),
        )
        store = FakeSubscriptionStore()
        notification = Notification(EventType.EMERGENCY_CREATED, "t", "b")
        attempt = await web_push.send(
            notification, NotificationRecipient("u1", web_subscription=SUBSCRIPTION), subscriptions=store,
        )
        assert attempt.status == DeliveryStatus.EXPIRED
        assert store.cleared == ["u1"]

    async def test_other_errors_keep_subscription(self, push_enabled, monkeypatch):
        monkeypatch.setattr(
            web_push, "webpush",
            _recording_webpush([], {SUBSCRIPTION["endpoint"]: 500}),
        )
        store = FakeSubscriptionStore()
        notification = Notification(EventType.EMERGENCY_CREATED, "t", "b")
        attempt = await web_push.send(
            notification, NotificationRecipient("u1", web_subscription=SUBSCRIPTION), subscriptions=store,
        )
        assert attempt.status == DeliveryStatus.FAILED
        assert store.cleared == []


class TestRealtimeChannel:

    async def test_delivered_to_open_connection(self, rooms):
        sock = FakeSocket()
        await rooms.connect(sock, "u1")
        notification = Notification(EventType.EMERGENCY_CREATED, "t", "b", dict(PAYLOAD))
        attempt = await realtime.send(notification, NotificationRecipient("u1"), rooms=rooms)
        assert attempt.status == DeliveryStatus.DELIVERED
        assert sock.of("emergency_created")[0]["emergency_id"] == "em-1"

    async def test_skipped_when_offline(self, rooms):
        notification = Notification(EventType.EMERGENCY_CREATED, "t", "b")
        attempt = await realtime.send(notification, NotificationRecipient("u1"), rooms=rooms)
        assert attempt.status == DeliveryStatus.SKIPPED


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class TestDispatch:

    async def test_every_channel_attempted_per_recipient(self, rooms, push_enabled, monkeypatch):
        monkeypatch.setattr(web_push, "webpush", _recording_webpush([]))
        store = FakeSubscriptionStore({
            "u1": NotificationRecipient("u1", device_token="tok-1", web_subscription=SUBSCRIPTION),
        })
        await rooms.connect(FakeSocket(), "u1")

        async with _mock_client(_ok) as client:
            dispatcher = NotificationDispatcher(store, rooms, http_client=client)
            report = await dispatcher.dispatch(["u1"], EventType.EMERGENCY_CREATED, PAYLOAD)

        record = report.record_for("u1")
        assert record.status_for(NotificationChannel.MOBILE_PUSH) == DeliveryStatus.DELIVERED
        assert record.status_for(NotificationChannel.WEB_PUSH) == DeliveryStatus.DELIVERED
        assert record.status_for(NotificationChannel.REALTIME) == DeliveryStatus.DELIVERED
        assert report.attempted == 3
        assert report.delivered == 3
        assert report.recipients_reached == 1

    async def test_mobile_failure_does_not_block_other_channels(self, rooms, push_enabled, monkeypatch):
        monkeypatch.setattr(web_push, "webpush", _recording_webpush([]))
        store = FakeSubscriptionStore({
            "u1": NotificationRecipient("u1", device_token="tok-1", web_subscription=SUBSCRIPTION),
        })
        sock = FakeSocket()
        await rooms.connect(sock, "u1")

        async with _mock_client(lambda r: httpx.Response(503)) as client:
            dispatcher = NotificationDispatcher(store, rooms, http_client=client)
            report = await dispatcher.dispatch(["u1"], EventType.EMERGENCY_CREATED, PAYLOAD)

        record = report.record_for("u1")
        assert record.status_for(NotificationChannel.MOBILE_PUSH) == DeliveryStatus.FAILED
        assert record.status_for(NotificationChannel.WEB_PUSH) == DeliveryStatus.DELIVERED
        assert record.status_for(NotificationChannel.REALTIME) == DeliveryStatus.DELIVERED
        assert sock.events() == ["emergency_created"]

    async def test_different_channel_failing_per_user(self, rooms, push_enabled, monkeypatch):
        broken_sub = dict(SUBSCRIPTION, endpoint="https://push.example.net/sub/broken")
        monkeypatch.setattr(
            web_push, "webpush",
            _recording_webpush([], {broken_sub["endpoint"]: 500}),
        )

        def handler(request: httpx.Request) -> httpx.Response:
            token = json.loads(request.content)["message"]["token"]
            return httpx.Response(500) if token == "bad" else httpx.Response(200)

        # u1: mobile push fails, web push works. u2: the other way round.
        store = FakeSubscriptionStore({
            "u1": NotificationRecipient("u1", device_token="bad", web_subscription=SUBSCRIPTION),
            "u2": NotificationRecipient("u2", device_token="good", web_subscription=broken_sub),
        })
        async with _mock_client(handler) as client:
            dispatcher = NotificationDispatcher(store, rooms, http_client=client)
            report = await dispatcher.dispatch(["u1", "u2"], EventType.EMERGENCY_CREATED, PAYLOAD)

        u1, u2 = report.record_for("u1"), report.record_for("u2")
        assert u1.status_for(NotificationChannel.MOBILE_PUSH) == DeliveryStatus.FAILED
        assert u1.status_for(NotificationChannel.WEB_PUSH) == DeliveryStatus.DELIVERED
        assert u2.status_for(NotificationChannel.MOBILE_PUSH) == DeliveryStatus.DELIVERED
        assert u2.status_for(NotificationChannel.WEB_PUSH) == DeliveryStatus.FAILED
        assert u1.is_reached and u2.is_reached
        assert report.failed == 2
        # A plain provider error keeps the stored subscription
        assert store.cleared == []

    async def test_expired_subscription_cleared_only_for_its_owner(self, rooms, push_enabled, monkeypatch):
        gone = dict(SUBSCRIPTION, endpoint="https://push.example.net/sub/gone")
        monkeypatch.setattr(
            web_push, "webpush",
            _recording_webpush([], {gone["endpoint"]: 410}),
        )

        def handler(request: httpx.Request) -> httpx.Response:
            token = json.loads(request.content)["message"]["token"]
            return httpx.Response(500) if token == "bad" else httpx.Response(200)

        store = FakeSubscriptionStore({
            "u1": NotificationRecipient("u1", device_token="bad", web_subscription=gone),
            "u2": NotificationRecipient("u2", device_token="good", web_subscription=SUBSCRIPTION),
        })
        async with _mock_client(handler) as client:
            dispatcher = NotificationDispatcher(store, rooms, http_client=client)
            report = await dispatcher.dispatch(["u1", "u2"], EventType.EMERGENCY_CREATED, PAYLOAD)

        u1, u2 = report.record_for("u1"), report.record_for("u2")
        assert u1.status_for(NotificationChannel.MOBILE_PUSH) == DeliveryStatus.FAILED
        assert u1.status_for(NotificationChannel.WEB_PUSH) == DeliveryStatus.EXPIRED
        assert u2.status_for(NotificationChannel.MOBILE_PUSH) == DeliveryStatus.DELIVERED
        assert u2.status_for(NotificationChannel.WEB_PUSH) == DeliveryStatus.DELIVERED
        assert store.cleared == ["u1"]
        assert store.recipients["u1"].web_subscription is None
        assert store.recipients["u2"].web_subscription == SUBSCRIPTION

    async def test_recipient_lookup_failure_isolated(self, rooms, push_disabled):
        store = FakeSubscriptionStore()
        store.broken.add("u1")
        sock = FakeSocket()
        await rooms.connect(sock, "u1")

        report = await NotificationDispatcher(store, rooms).dispatch(
            ["u1", "u2"], EventType.EMERGENCY_CREATED, PAYLOAD,
        )
        u1 = report.record_for("u1")
        assert u1.status_for(NotificationChannel.MOBILE_PUSH) == DeliveryStatus.FAILED
        assert u1.status_for(NotificationChannel.WEB_PUSH) == DeliveryStatus.FAILED
        # Room delivery needs no handles
        assert u1.status_for(NotificationChannel.REALTIME) == DeliveryStatus.DELIVERED
        assert report.record_for("u2").status_for(NotificationChannel.MOBILE_PUSH) == DeliveryStatus.SKIPPED

    async def test_never_raises_when_a_channel_crashes(self, rooms, push_disabled, monkeypatch):
        async def exploding(*args, **kwargs):
            raise RuntimeError("bug in channel")

        monkeypatch.setattr(realtime, "send", exploding)
        report = await NotificationDispatcher(FakeSubscriptionStore(), rooms).dispatch(
            ["u1"], EventType.EMERGENCY_CREATED, PAYLOAD,
        )
        record = report.record_for("u1")
        assert record.status_for(NotificationChannel.REALTIME) == DeliveryStatus.FAILED
        assert record.status_for(NotificationChannel.MOBILE_PUSH) == DeliveryStatus.SKIPPED

    async def test_targets_deduplicated_in_order(self, rooms, push_disabled):
        report = await NotificationDispatcher(FakeSubscriptionStore(), rooms).dispatch(
            ["u2", "u1", "u2", "", "u1"], EventType.EMERGENCY_CREATED, PAYLOAD,
        )
        assert [r.recipient_id for r in report.records] == ["u2", "u1"]

    async def test_no_targets(self, rooms):
        report = await NotificationDispatcher(FakeSubscriptionStore(), rooms).dispatch(
            [], EventType.EMERGENCY_CREATED, PAYLOAD,
        )
        assert report.total_recipients == 0
        assert report.to_dict()["attempted"] == 0

    async def test_explicit_title_overrides_template(self, rooms, push_disabled):
        report = await NotificationDispatcher(FakeSubscriptionStore(), rooms).dispatch(
            ["u1"], EventType.EMERGENCY_CREATED, PAYLOAD, title="Custom", body="Text",
        )
        assert (report.notification.title, report.notification.body) == ("Custom", "Text")


class TestTemplates:

    def test_created_uses_sender_name(self):
        title, body = render(EventType.EMERGENCY_CREATED, PAYLOAD)
        assert title == "🚨 Emergency Alert"
        assert body == "Carol needs your help NOW!"

    def test_missing_sender_falls_back(self):
        _, body = render(EventType.EMERGENCY_CREATED, {"emergency_id": "e"})
        assert body == "Someone needs your help NOW!"

    def test_missing_placeholder_renders_empty(self):
        _, body = render(EventType.EMERGENCY_ESCALATED, {"user_display_name": "Carol"})
        assert body == "Carol escalated the emergency:"
