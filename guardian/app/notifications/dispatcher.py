"""
Notification fan-out.

``NotificationDispatcher.dispatch`` renders one Notification for an event,
reads each target's device token and web-push subscription at call time,
then runs every channel for every target as its own task. Outcomes are
collected into a DispatchReport and logged.

Failures stay local. A channel that raises becomes a FAILED attempt via
``gather(return_exceptions=True)``, an unreadable recipient affects only
that recipient, and ``dispatch`` itself never raises, so the state change
that triggered it is never undone. Nothing is retried: the realtime room
and the client re-fetching over HTTP cover a missed push.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Protocol

import httpx

from guardian.app.core.database import async_session_factory
from guardian.app.notifications.channels import mobile_push, realtime, web_push
from guardian.app.notifications.models import (
    DeliveryAttempt,
    DeliveryStatus,
    DispatchReport,
    Notification,
    NotificationChannel,
    NotificationRecipient,
    RecipientDeliveryRecord,
)
from guardian.app.notifications.subscriptions import SubscriptionStore
from guardian.app.realtime.events import EventType
from guardian.app.realtime.rooms import RoomBroadcaster, rooms

logger = logging.getLogger(__name__)


class RecipientSource(Protocol):
    async def get_recipient(self, user_id: str) -> NotificationRecipient: ...

    async def clear_web_subscription(self, user_id: str) -> None: ...


# (title, body); body placeholders are filled from the event payload
NOTIFICATION_TEMPLATES: Dict[EventType, tuple] = {
    EventType.EMERGENCY_CREATED:    ("🚨 Emergency Alert", "{sender} needs your help NOW!"),
    EventType.PARTICIPANT_ACCEPTED: ("Help is on the way", "{sender} is responding to your emergency"),
    EventType.PARTICIPANT_REJECTED: ("Contact unavailable", "{sender} can't respond right now"),
    EventType.LOCATION_UPDATE:      ("Location updated", "{sender} shared a new location"),
    EventType.NEW_MESSAGE:          ("New emergency message", "{sender}: {message}"),
    EventType.EMERGENCY_ENDED:      ("Emergency ended", "{sender} is safe. The emergency has ended."),
    EventType.EMERGENCY_CANCELLED:  ("Emergency cancelled", "{sender} cancelled the emergency"),
    EventType.EMERGENCY_ESCALATED:  ("⚠️ Emergency escalated", "{sender} escalated the emergency: {reason}"),
}


class _TemplateFields(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render(event: EventType, payload: Dict[str, Any]) -> tuple:
    """Fill the event's template from ``payload``; missing fields render empty."""
    title, body = NOTIFICATION_TEMPLATES.get(event, ("Guardian Connect", "{sender}"))
    fields = _TemplateFields(
        {k: v for k, v in payload.items() if v is not None}
    )
    fields.setdefault(
        "sender",
        payload.get("user_display_name") or payload.get("user_email") or "Someone",
    )
    return title, body.format_map(fields).strip()


class NotificationDispatcher:
    """
    Best-effort, multi-channel fan-out.

    Parameters
    ----------
    subscriptions : RecipientSource
        Reads device tokens / web-push subscriptions and clears expired ones.
    rooms : RoomBroadcaster
        Target of the realtime channel (``user:<id>`` rooms).
    http_client : httpx.AsyncClient, optional
        Shared client for mobile push; each send opens its own otherwise.
    """

    def __init__(
        self,
        subscriptions: RecipientSource,
        rooms: RoomBroadcaster,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.subscriptions = subscriptions
        self.rooms = rooms
        self.http_client = http_client

    async def dispatch(
        self,
        target_user_ids: Iterable[str],
        event: EventType,
        payload: Dict[str, Any],
        *,
        title: Optional[str] = None,
        body: Optional[str] = None,
    ) -> DispatchReport:
        """
        Notify every target over every channel.

        Returns
        -------
        DispatchReport
            One record per distinct target, in first-seen order.
        """
        default_title, default_body = render(event, payload)
        notification = Notification(
            event=event,
            title=title or default_title,
            body=body or default_body,
            payload=dict(payload),
        )
        report = DispatchReport(
            notification=notification,
            started_at=datetime.now(timezone.utc),
        )
        targets = list(dict.fromkeys(uid for uid in target_user_ids if uid))
        start = time.perf_counter()

        if targets:
            records = await asyncio.gather(
                *(self._deliver_to_recipient(notification, uid) for uid in targets),
                return_exceptions=True,
            )
            for uid, record in zip(targets, records):
                if isinstance(record, BaseException):
                    logger.error("Dispatch to %s crashed: %s", uid, record)
                    record = RecipientDeliveryRecord(
                        recipient_id=uid,
                        attempts=[_failed(channel, uid, record) for channel in NotificationChannel],
                    )
                report.records.append(record)

        report.completed_at = datetime.now(timezone.utc)
        duration_ms = round((time.perf_counter() - start) * 1000, 2)

        logger.info(
            "Dispatched %s to %d recipients: %d delivered, %d skipped, %d expired, %d failed",
            event.value, report.total_recipients,
            report.delivered, report.skipped, report.expired, report.failed,
            extra={
                "event": event.value,
                "emergency_id": payload.get("emergency_id"),
                "recipient_count": report.total_recipients,
                "duration_ms": duration_ms,
            },
        )
        return report

    async def _deliver_to_recipient(
        self,
        notification: Notification,
        user_id: str,
    ) -> RecipientDeliveryRecord:
        record = RecipientDeliveryRecord(recipient_id=user_id)

        try:
            recipient = await self.subscriptions.get_recipient(user_id)
        except Exception as exc:
            # Handles unreadable: push channels can't run, the room still can
            logger.error(
                "Could not load delivery handles for %s: %s", user_id, exc,
                extra={"user_id": user_id},
            )
            recipient = NotificationRecipient(user_id=user_id)
            record.attempts.append(_failed(NotificationChannel.MOBILE_PUSH, user_id, exc))
            record.attempts.append(_failed(NotificationChannel.WEB_PUSH, user_id, exc))
            record.attempts.append(
                await realtime.send(notification, recipient, rooms=self.rooms)
            )
            return record

        channels = (
            NotificationChannel.MOBILE_PUSH,
            NotificationChannel.WEB_PUSH,
            NotificationChannel.REALTIME,
        )
        results = await asyncio.gather(
            mobile_push.send(notification, recipient, client=self.http_client),
            web_push.send(notification, recipient, subscriptions=self.subscriptions),
            realtime.send(notification, recipient, rooms=self.rooms),
            return_exceptions=True,
        )
        for channel, result in zip(channels, results):
            if isinstance(result, BaseException):
                logger.error(
                    "[%s] Unhandled error for %s: %s", channel.value.upper(), user_id, result,
                    extra={"channel": channel.value, "user_id": user_id},
                )
                result = _failed(channel, user_id, result)
            record.attempts.append(result)

        return record


def _failed(channel: NotificationChannel, user_id: str, exc: BaseException) -> DeliveryAttempt:
    return DeliveryAttempt(channel=channel, recipient_id=user_id).finish(
        DeliveryStatus.FAILED, reason=str(exc),
    )


def get_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency: dispatcher over the process-wide rooms."""
    return NotificationDispatcher(SubscriptionStore(async_session_factory), rooms)
