"""
realtime.py — In-app channel over the user's realtime room.

Delivered when at least one open connection of the recipient received the
frame. A user with the app closed is SKIPPED here and relies on push.
"""

from __future__ import annotations

import logging

from guardian.app.notifications.models import (
    DeliveryAttempt,
    DeliveryStatus,
    Notification,
    NotificationChannel,
    NotificationRecipient,
)
from guardian.app.realtime.rooms import RoomBroadcaster

logger = logging.getLogger(__name__)


async def send(
    notification: Notification,
    recipient: NotificationRecipient,
    *,
    rooms: RoomBroadcaster,
) -> DeliveryAttempt:
    attempt = DeliveryAttempt(
        channel=NotificationChannel.REALTIME,
        recipient_id=recipient.user_id,
    )
    try:
        delivered = await rooms.emit_to_user(
            recipient.user_id, notification.event, notification.payload,
        )
    except Exception as exc:
        logger.error("[REALTIME] Failed for %s: %s", recipient.user_id, exc)
        return attempt.finish(DeliveryStatus.FAILED, reason=str(exc))

    if delivered == 0:
        return attempt.finish(DeliveryStatus.SKIPPED, reason="no_connections")
    return attempt.finish(
        DeliveryStatus.DELIVERED,
        provider_response={"connections": delivered},
    )
