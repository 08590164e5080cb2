"""
web_push.py — Web push notification channel.

Delivery mechanism:
    • Web Push Protocol (RFC 8030) with VAPID authentication via pywebpush
    • Payload: JSON with title, body, icon, tag and the flat event data
    • pywebpush is synchronous, so the call runs in a worker thread

═══════════════════════════════════════════════════════════════════════════
SUBSCRIPTION EXPIRY
═══════════════════════════════════════════════════════════════════════════

The push service answers 404 or 410 once the browser has dropped the
subscription. That subscription will never work again: it is removed from
the user's record and the attempt is reported EXPIRED. Any other error is
FAILED and the subscription is kept.

Limitations:
    - Requires the browser to have granted notification permission
    - Desktop browser must be running for the service worker to show it
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol

from pywebpush import WebPushException, webpush

from guardian.app.core.config import settings
from guardian.app.notifications.models import (
    DeliveryAttempt,
    DeliveryStatus,
    Notification,
    NotificationChannel,
    NotificationRecipient,
)

logger = logging.getLogger(__name__)

EXPIRED_STATUS_CODES = frozenset({404, 410})


class SubscriptionInvalidator(Protocol):
    async def clear_web_subscription(self, user_id: str) -> None: ...


def build_payload(notification: Notification) -> Dict[str, Any]:
    return {
        "title": notification.title,
        "body": notification.body,
        "icon": "/icons/emergency.png",
        "badge": "/icons/badge.png",
        "tag": notification.event.value,
        "requireInteraction": True,
        "data": notification.push_data,
    }


def _status_code(exc: WebPushException) -> Optional[int]:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


async def send(
    notification: Notification,
    recipient: NotificationRecipient,
    *,
    subscriptions: Optional[SubscriptionInvalidator] = None,
    timeout_seconds: Optional[float] = None,
) -> DeliveryAttempt:
    """
    Send a web push notification to a recipient.

    Parameters
    ----------
    notification : Notification
        The message to deliver.
    recipient : NotificationRecipient
        Target user (must have ``web_subscription`` for real delivery).
    subscriptions : SubscriptionInvalidator, optional
        Used to remove the stored subscription when the push service
        reports it gone.
    timeout_seconds : float, optional
        HTTP timeout for the push service call.

    Returns
    -------
    DeliveryAttempt
        Result of the send operation.
    """
    attempt = DeliveryAttempt(
        channel=NotificationChannel.WEB_PUSH,
        recipient_id=recipient.user_id,
    )

    if not recipient.web_subscription:
        logger.debug("No push subscription for %s", recipient.user_id)
        return attempt.finish(DeliveryStatus.SKIPPED, reason="no_subscription")

    if not settings.web_push_enabled:
        logger.debug("VAPID keys not configured, skipping %s", recipient.user_id)
        return attempt.finish(DeliveryStatus.SKIPPED, reason="channel_disabled")

    timeout = timeout_seconds or settings.PUSH_TIMEOUT_SECONDS

    try:
        response = await asyncio.to_thread(
            webpush,
            subscription_info=recipient.web_subscription,
            data=json.dumps(build_payload(notification)),
            vapid_private_key=settings.VAPID_PRIVATE_KEY,
            vapid_claims={"sub": settings.VAPID_SUBJECT},
            timeout=timeout,
        )
        logger.info(
            "[WEB_PUSH] %s → %s", notification.event.value, recipient.user_id,
            extra={"channel": "web_push", "user_id": recipient.user_id},
        )
        return attempt.finish(
            DeliveryStatus.DELIVERED,
            provider_response={"status_code": getattr(response, "status_code", None)},
        )

    except WebPushException as exc:
        status_code = _status_code(exc)
        if status_code in EXPIRED_STATUS_CODES:
            logger.info(
                "[WEB_PUSH] Subscription for %s expired (HTTP %s)",
                recipient.user_id, status_code,
                extra={"channel": "web_push", "user_id": recipient.user_id},
            )
            if subscriptions is not None:
                try:
                    await subscriptions.clear_web_subscription(recipient.user_id)
                except Exception as clear_exc:
                    logger.error(
                        "Could not remove expired subscription for %s: %s",
                        recipient.user_id, clear_exc,
                    )
            return attempt.finish(
                DeliveryStatus.EXPIRED,
                reason=f"subscription_expired (HTTP {status_code})",
                provider_response={"status_code": status_code},
            )

        logger.error(
            "[WEB_PUSH] Failed for %s: %s", recipient.user_id, exc,
            extra={"channel": "web_push", "user_id": recipient.user_id},
        )
        return attempt.finish(
            DeliveryStatus.FAILED,
            reason=str(exc),
            provider_response={"status_code": status_code},
        )

    except Exception as exc:
        logger.error(
            "[WEB_PUSH] Failed for %s: %s", recipient.user_id, exc,
            extra={"channel": "web_push", "user_id": recipient.user_id},
        )
        return attempt.finish(DeliveryStatus.FAILED, reason=str(exc))
