"""
mobile_push.py — Mobile push channel (FCM HTTP v1 message format).

Delivery mechanism:
    • POST {"message": {...}} to MOBILE_PUSH_URL with a bearer token
    • High-priority Android channel, critical-interruption APNs alert so the
      phone rings through Do Not Disturb
    • Data block is a flat string map (provider requirement)

A recipient without a device token is SKIPPED: they never installed the
app or never granted permission, which is normal. Provider errors are
FAILED and logged; a stale token is not cleared here because the app
re-registers its token on every login.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from guardian.app.core.config import settings
from guardian.app.core.errors import ChannelDeliveryError
from guardian.app.notifications.models import (
    DeliveryAttempt,
    DeliveryStatus,
    Notification,
    NotificationChannel,
    NotificationRecipient,
)

logger = logging.getLogger(__name__)

ANDROID_CHANNEL_ID = "emergency_alerts"


def build_message(notification: Notification, token: str) -> Dict[str, Any]:
    """Render the provider request body for one device."""
    return {
        "message": {
            "token": token,
            "notification": {
                "title": notification.title,
                "body": notification.body,
            },
            "data": notification.push_data,
            "android": {
                "priority": "high",
                "ttl": "0s",  # deliver now or not at all
                "notification": {
                    "channel_id": ANDROID_CHANNEL_ID,
                    "notification_priority": "PRIORITY_MAX",
                    "default_sound": True,
                    "default_vibrate_timings": True,
                    "visibility": "PUBLIC",
                    "tag": "emergency",
                },
            },
            "apns": {
                "headers": {
                    "apns-priority": "10",
                    "apns-push-type": "alert",
                    "apns-expiration": "0",
                },
                "payload": {
                    "aps": {
                        "sound": {"critical": 1, "name": "default", "volume": 1.0},
                        "badge": 1,
                        "content-available": 1,
                        "mutable-content": 1,
                        "interruption-level": "critical",
                    },
                },
            },
        },
    }


async def send(
    notification: Notification,
    recipient: NotificationRecipient,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout_seconds: Optional[float] = None,
) -> DeliveryAttempt:
    """
    Send a mobile push notification to one recipient.

    Parameters
    ----------
    notification : Notification
    recipient : NotificationRecipient
        Must carry ``device_token`` for real delivery.
    client : httpx.AsyncClient, optional
        Shared client; a short-lived one is created when omitted.
    timeout_seconds : float, optional
        HTTP timeout; defaults to PUSH_TIMEOUT_SECONDS.

    Returns
    -------
    DeliveryAttempt
    """
    attempt = DeliveryAttempt(
        channel=NotificationChannel.MOBILE_PUSH,
        recipient_id=recipient.user_id,
    )

    if not recipient.device_token:
        logger.debug("No device token for %s", recipient.user_id)
        return attempt.finish(DeliveryStatus.SKIPPED, reason="no_device_token")

    if not settings.mobile_push_enabled:
        logger.debug("Mobile push not configured, skipping %s", recipient.user_id)
        return attempt.finish(DeliveryStatus.SKIPPED, reason="channel_disabled")

    timeout = timeout_seconds or settings.PUSH_TIMEOUT_SECONDS
    body = build_message(notification, recipient.device_token)
    headers = {"Authorization": f"Bearer {settings.MOBILE_PUSH_AUTH_TOKEN}"}

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=timeout) as own_client:
                response = await own_client.post(settings.MOBILE_PUSH_URL, json=body, headers=headers)
        else:
            response = await client.post(
                settings.MOBILE_PUSH_URL, json=body, headers=headers, timeout=timeout,
            )

        if response.status_code >= 400:
            raise ChannelDeliveryError(
                NotificationChannel.MOBILE_PUSH.value,
                recipient.user_id,
                f"HTTP {response.status_code}: {response.text[:200]}",
            )

        logger.info(
            "[MOBILE_PUSH] %s → %s", notification.event.value, recipient.user_id,
            extra={"channel": "mobile_push", "user_id": recipient.user_id},
        )
        return attempt.finish(
            DeliveryStatus.DELIVERED,
            provider_response={"status_code": response.status_code},
        )

    except Exception as exc:
        logger.error(
            "[MOBILE_PUSH] Failed for %s: %s", recipient.user_id, exc,
            extra={"channel": "mobile_push", "user_id": recipient.user_id},
        )
        return attempt.finish(DeliveryStatus.FAILED, reason=str(exc))
