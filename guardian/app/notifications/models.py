"""
Value types for notification fan-out.

One Notification goes to every NotificationRecipient on every channel, each
channel independently, with no escalation and no retry:

    Channel        Handle needed              Skipped when
    ───────────    ─────────────────────────  ──────────────────────────────
    mobile_push    device token (users.fcm)   no token / channel unconfigured
    web_push       subscription (users.push)  no subscription / no VAPID keys
    realtime       none (user room)           user has no open connection

Each (recipient, channel) pair ends in one DeliveryStatus:

    DELIVERED  handed to the provider / at least one socket
    SKIPPED    channel not applicable to this recipient (normal)
    EXPIRED    web-push subscription gone (404/410); stored copy cleared
    FAILED     provider or transport error; logged only
"""

from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from guardian.app.realtime.events import EventType


class NotificationChannel(str, Enum):
    MOBILE_PUSH = "mobile_push"
    WEB_PUSH    = "web_push"
    REALTIME    = "realtime"


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    SKIPPED   = "skipped"
    EXPIRED   = "expired"
    FAILED    = "failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment else None


@dataclass
class Notification:
    """
    One logical notification, rendered for every channel.

    Attributes
    ----------
    event : EventType
        Realtime event name; also sent as ``type`` in push data.
    title, body : str
        Human-readable text for push channels.
    payload : dict
        Realtime event data (any JSON-able values).
    """
    event: EventType
    title: str
    body: str
    payload: Dict[str, Any] = field(default_factory=dict)
    notification_id: str = field(default_factory=lambda: f"NTF-{uuid.uuid4().hex[:12].upper()}")
    created_at: datetime = field(default_factory=_now)

    @property
    def push_data(self) -> Dict[str, str]:
        """Flat string map; push providers reject nested or non-string data."""
        data = {"type": self.event.value, "notification_id": self.notification_id}
        for key, value in self.payload.items():
            if value is None or isinstance(value, (dict, list)):
                continue
            data[key] = value.isoformat() if isinstance(value, datetime) else str(value)
        return data


@dataclass
class NotificationRecipient:
    """
    A target user and the delivery handles on file at dispatch time.

    Attributes
    ----------
    user_id : str
    device_token : str | None
        Mobile push registration token.
    web_subscription : dict | None
        Web Push subscription (``endpoint`` + ``keys``).
    """
    user_id: str
    device_token: Optional[str] = None
    web_subscription: Optional[Dict[str, Any]] = None


@dataclass
class DeliveryAttempt:
    """Outcome of sending one notification to one recipient on one channel.

    ``reason`` names why a channel was skipped, or carries the provider error.
    """
    channel: NotificationChannel
    recipient_id: str
    status: DeliveryStatus = DeliveryStatus.FAILED
    started: datetime = field(default_factory=_now)
    finished: Optional[datetime] = None
    reason: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None

    def finish(self, status: DeliveryStatus, **fields: Any) -> "DeliveryAttempt":
        self.status = status
        self.finished = _now()
        for key, value in fields.items():
            setattr(self, key, value)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "recipient_id": self.recipient_id,
            "status": self.status.value,
            "reason": self.reason,
            "started": _iso(self.started),
            "finished": _iso(self.finished),
        }


@dataclass
class RecipientDeliveryRecord:
    recipient_id: str
    attempts: List[DeliveryAttempt] = field(default_factory=list)

    def channels_with(self, status: DeliveryStatus) -> List[NotificationChannel]:
        return [a.channel for a in self.attempts if a.status == status]

    def status_for(self, channel: NotificationChannel) -> Optional[DeliveryStatus]:
        return next((a.status for a in self.attempts if a.channel == channel), None)

    @property
    def is_reached(self) -> bool:
        return DeliveryStatus.DELIVERED in (a.status for a in self.attempts)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"recipient_id": self.recipient_id, "is_reached": self.is_reached}
        for status in DeliveryStatus:
            out[f"channels_{status.value}"] = [c.value for c in self.channels_with(status)]
        return out


@dataclass
class DispatchReport:
    """Per-recipient records for one dispatch call, plus status totals."""
    notification: Notification
    records: List[RecipientDeliveryRecord] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def total_recipients(self) -> int:
        return len(self.records)

    @property
    def totals(self) -> Counter:
        return Counter(a.status for r in self.records for a in r.attempts)

    @property
    def attempted(self) -> int:
        return sum(self.totals.values())

    @property
    def delivered(self) -> int:
        return self.totals[DeliveryStatus.DELIVERED]

    @property
    def failed(self) -> int:
        return self.totals[DeliveryStatus.FAILED]

    @property
    def skipped(self) -> int:
        return self.totals[DeliveryStatus.SKIPPED]

    @property
    def expired(self) -> int:
        return self.totals[DeliveryStatus.EXPIRED]

    @property
    def recipients_reached(self) -> int:
        return sum(r.is_reached for r in self.records)

    def record_for(self, user_id: str) -> Optional[RecipientDeliveryRecord]:
        return next((r for r in self.records if r.recipient_id == user_id), None)

    def to_dict(self) -> Dict[str, Any]:
        totals = self.totals
        return {
            "notification_id": self.notification.notification_id,
            "event": self.notification.event.value,
            "total_recipients": self.total_recipients,
            "recipients_reached": self.recipients_reached,
            "attempted": self.attempted,
            **{status.value: totals[status] for status in DeliveryStatus},
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "records": [r.to_dict() for r in self.records],
        }
