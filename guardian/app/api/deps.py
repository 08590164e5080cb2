"""
Shared FastAPI dependencies: caller identity and per-request services.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from guardian.app.chat.rate_limit import ChatRateLimiter, get_rate_limiter
from guardian.app.chat.service import EmergencyChat
from guardian.app.core.database import async_session_factory, get_db
from guardian.app.core.errors import AuthenticationError
from guardian.app.core.logging_config import bind_context
from guardian.app.core.security import (
    AuthenticatedUser,
    decode_access_token,
    extract_bearer_token,
)
from guardian.app.emergencies.service import EmergencyCoordinator
from guardian.app.notifications.dispatcher import NotificationDispatcher, get_dispatcher
from guardian.app.notifications.subscriptions import SubscriptionStore
from guardian.app.realtime.rooms import RoomBroadcaster, get_rooms


async def get_current_user(
    authorization: Optional[str] = Header(None),
) -> AuthenticatedUser:
    token = extract_bearer_token(authorization)
    if not token:
        raise AuthenticationError("Missing bearer token")
    user = decode_access_token(token)
    bind_context(user_id=user.user_id)
    return user


def get_coordinator(
    db: AsyncSession = Depends(get_db),
    rooms: RoomBroadcaster = Depends(get_rooms),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> EmergencyCoordinator:
    return EmergencyCoordinator(db, rooms, dispatcher)


def get_chat(
    db: AsyncSession = Depends(get_db),
    rooms: RoomBroadcaster = Depends(get_rooms),
    limiter: ChatRateLimiter = Depends(get_rate_limiter),
) -> EmergencyChat:
    return EmergencyChat(db, rooms, limiter)


def get_subscription_store() -> SubscriptionStore:
    return SubscriptionStore(async_session_factory)
