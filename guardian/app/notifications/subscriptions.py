"""
subscriptions.py — Device tokens and web-push subscriptions per user.

Both handles live on the users row (``fcm_token``, ``push_subscription``).
The store opens its own short session per call: dispatch runs channel
attempts as concurrent tasks, and an AsyncSession must not be shared
between tasks.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from guardian.app.emergencies.models import User
from guardian.app.notifications.models import NotificationRecipient

logger = logging.getLogger(__name__)


class SubscriptionStore:
    """Reads and writes delivery handles on the users table."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def get_recipient(self, user_id: str) -> NotificationRecipient:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
        if user is None:
            logger.warning("Notification target %s has no account", user_id)
            return NotificationRecipient(user_id=user_id)
        return NotificationRecipient(
            user_id=user_id,
            device_token=(user.fcm_token or "").strip() or None,
            web_subscription=_parse_subscription(user_id, user.push_subscription),
        )

    async def save_device_token(self, user_id: str, token: str) -> None:
        await self._update(user_id, fcm_token=token)
        logger.info("Device token saved for %s", user_id, extra={"user_id": user_id})

    async def save_web_subscription(self, user_id: str, subscription: Dict[str, Any]) -> None:
        await self._update(user_id, push_subscription=json.dumps(subscription))
        logger.info("Push subscription saved for %s", user_id, extra={"user_id": user_id})

    async def clear_web_subscription(self, user_id: str) -> None:
        await self._update(user_id, push_subscription=None)
        logger.info(
            "Push subscription for %s expired, removed", user_id,
            extra={"user_id": user_id},
        )

    async def _update(self, user_id: str, **values: Any) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(User).where(User.id == user_id).values(**values)
            )
            await session.commit()


def _parse_subscription(user_id: str, raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        subscription = json.loads(raw)
    except ValueError:
        logger.warning("Unreadable push subscription for %s, ignoring", user_id)
        return None
    if not isinstance(subscription, dict) or not subscription.get("endpoint"):
        return None
    return subscription
