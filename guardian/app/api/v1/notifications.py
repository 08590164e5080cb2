"""
FastAPI routes: delivery handle registration.

    POST /api/v1/notifications/subscribe        — store a browser push subscription
    POST /api/v1/notifications/device-token     — store a mobile push token
    GET  /api/v1/notifications/vapid-public-key — key the browser subscribes with
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from guardian.app.api.deps import get_current_user, get_subscription_store
from guardian.app.api.schemas import (
    DeviceTokenRequest,
    SubscribeRequest,
    VapidKeyResponse,
)
from guardian.app.core.config import settings
from guardian.app.core.security import AuthenticatedUser
from guardian.app.notifications.subscriptions import SubscriptionStore

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.post("/subscribe")
async def subscribe(
    body: SubscribeRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    store: SubscriptionStore = Depends(get_subscription_store),
):
    await store.save_web_subscription(
        user.user_id, body.subscription.model_dump(exclude_none=True),
    )
    return {"message": "Push subscription saved"}


@router.post("/device-token")
async def register_device_token(
    body: DeviceTokenRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    store: SubscriptionStore = Depends(get_subscription_store),
):
    await store.save_device_token(user.user_id, body.token.strip())
    return {"message": "Device token saved"}


@router.get("/vapid-public-key", response_model=VapidKeyResponse)
async def vapid_public_key():
    return VapidKeyResponse(
        enabled=settings.web_push_enabled,
        public_key=settings.VAPID_PUBLIC_KEY if settings.web_push_enabled else None,
    )
