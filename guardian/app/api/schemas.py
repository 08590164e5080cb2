"""
Pydantic schemas for the emergency coordination API.

Separated from the route handlers so they are reusable across
the codebase (WebSocket handlers, tests).
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from guardian.app.chat.service import AttachmentKind


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class LocationUpdateRequest(BaseModel):
    """
    A GPS fix from the device.

    Range is not constrained here: out-of-range, (0, 0) and
    simulator fixes are rejected by the location validator with a reason code.
    """
    latitude: float = Field(..., description="Latitude in decimal degrees", examples=[13.0827])
    longitude: float = Field(..., description="Longitude in decimal degrees", examples=[80.2707])
    accuracy: Optional[float] = Field(
        None, ge=0,
        description="Horizontal accuracy in metres",
        examples=[12.5],
    )


class EscalateRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, examples=["No response from contacts"])


class AttachmentInput(BaseModel):
    """Media already uploaded elsewhere; only the URL is relayed."""
    kind: AttachmentKind = Field(..., examples=["image"])
    url: str = Field(..., min_length=1, max_length=2048)


class MessageCreateRequest(BaseModel):
    message: Optional[str] = Field(None, max_length=4000, examples=["I'm on my way"])
    attachment: Optional[AttachmentInput] = None


class WebPushKeys(BaseModel):
    p256dh: str
    auth: str


class WebPushSubscription(BaseModel):
    """Browser PushSubscription.toJSON()."""
    endpoint: str = Field(..., min_length=1)
    expirationTime: Optional[float] = None
    keys: WebPushKeys


class SubscribeRequest(BaseModel):
    subscription: WebPushSubscription


class DeviceTokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class EmergencyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    creator_user_id: str
    status: str
    created_at: datetime
    ended_at: Optional[datetime] = None


class ParticipantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    status: str
    joined_at: Optional[datetime] = None
    created_at: datetime
    user_email: Optional[str] = None
    user_display_name: Optional[str] = None


class LocationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: datetime
    user_email: Optional[str] = None
    user_display_name: Optional[str] = None


class LocationPointOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: datetime


class NotificationSummary(BaseModel):
    total_recipients: int
    recipients_reached: int
    delivered: int
    skipped: int
    expired: int
    failed: int


class CreateEmergencyResponse(BaseModel):
    emergency: EmergencyOut
    participants_count: int
    participants: List[ParticipantOut]
    notifications: NotificationSummary


class EmergencyDetailResponse(BaseModel):
    emergency: EmergencyOut
    participants: List[ParticipantOut]
    locations: List[LocationOut]


class ActiveEmergencyResponse(BaseModel):
    emergency: Optional[EmergencyDetailResponse] = None


class PendingEmergencyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    creator_user_id: str
    status: str
    created_at: datetime
    sender_email: Optional[str] = None
    sender_display_name: Optional[str] = None


class RespondResponse(BaseModel):
    message: str
    emergency_id: str
    status: str


class StatusResponse(BaseModel):
    message: str
    emergency: EmergencyOut


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    emergency_id: str
    user_id: str
    user_email: Optional[str] = None
    user_display_name: Optional[str] = None
    message: Optional[str] = None
    image_url: Optional[str] = None
    audio_url: Optional[str] = None
    video_url: Optional[str] = None
    created_at: datetime


class VapidKeyResponse(BaseModel):
    enabled: bool
    public_key: Optional[str] = None
