"""
service.py — Emergency chat: persist, then broadcast.

post_message checks run in a fixed order, cheapest first:

    1. rate limit          → 429
    2. non-empty content   → 422
    3. emergency exists    → 404
    4. emergency active    → 409
    5. sender may chat     → 403 (creator or accepted participant)
    6. insert + commit
    7. new_message to emergency:<id>

The broadcast happens only after the commit, so every frame a client sees
refers to a stored message. Media bytes never pass through here: an
attachment is a URL produced by the upload service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from guardian.app.chat.rate_limit import ChatRateLimiter
from guardian.app.core.config import settings
from guardian.app.core.errors import (
    ForbiddenError,
    InactiveEmergencyError,
    ValidationError,
)
from guardian.app.emergencies.directory import get_user_summary
from guardian.app.emergencies.models import (
    Emergency,
    EmergencyMessage,
    ParticipantStatus,
    User,
    utcnow,
)
from guardian.app.emergencies.participants import ParticipantStore
from guardian.app.emergencies.store import EmergencyStore
from guardian.app.realtime.events import EventType
from guardian.app.realtime.rooms import RoomBroadcaster

logger = logging.getLogger(__name__)


class AttachmentKind(str, Enum):
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"


_URL_COLUMNS = {
    AttachmentKind.IMAGE: "image_url",
    AttachmentKind.AUDIO: "audio_url",
    AttachmentKind.VIDEO: "video_url",
}


@dataclass(frozen=True)
class Attachment:
    """Reference to already-uploaded media."""
    kind: AttachmentKind
    url: str


@dataclass
class MessageView:
    id: str
    emergency_id: str
    user_id: str
    message: Optional[str]
    image_url: Optional[str]
    audio_url: Optional[str]
    video_url: Optional[str]
    created_at: datetime
    user_email: Optional[str]
    user_display_name: Optional[str]


class EmergencyChat:

    def __init__(
        self,
        session: AsyncSession,
        rooms: RoomBroadcaster,
        limiter: ChatRateLimiter,
    ):
        self.session = session
        self.rooms = rooms
        self.limiter = limiter
        self.emergencies = EmergencyStore(session)
        self.participants = ParticipantStore(session)

    async def _require_chat_member(self, emergency: Emergency, user_id: str, action: str) -> None:
        if emergency.creator_user_id == user_id:
            return
        participant = await self.participants.get(emergency.id, user_id)
        if participant is None or participant.status != ParticipantStatus.ACCEPTED.value:
            raise ForbiddenError(
                f"You must accept the emergency before {action}",
                emergency_id=emergency.id,
            )

    async def post_message(
        self,
        emergency_id: str,
        sender_id: str,
        text: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> MessageView:
        await self.limiter.check(sender_id)

        text = (text or "").strip() or None
        if attachment is not None and not (attachment.url or "").strip():
            attachment = None
        if text is None and attachment is None:
            raise ValidationError(
                "Message, image, audio, or video is required",
                field="message",
                error_code="EMPTY_MESSAGE",
            )

        emergency = await self.emergencies.get(emergency_id)
        if not emergency.is_active:
            raise InactiveEmergencyError(emergency_id, emergency.status)
        await self._require_chat_member(emergency, sender_id, "sending messages")

        row = EmergencyMessage(
            emergency_id=emergency_id,
            user_id=sender_id,
            message=text,
            created_at=utcnow(),
        )
        if attachment is not None:
            setattr(row, _URL_COLUMNS[AttachmentKind(attachment.kind)], attachment.url.strip())
        self.session.add(row)
        await self.session.flush()

        sender = await get_user_summary(self.session, sender_id)
        await self.session.commit()

        view = MessageView(
            id=row.id,
            emergency_id=row.emergency_id,
            user_id=row.user_id,
            message=row.message,
            image_url=row.image_url,
            audio_url=row.audio_url,
            video_url=row.video_url,
            created_at=row.created_at,
            user_email=sender.email,
            user_display_name=sender.display_name,
        )
        delivered = await self.rooms.emit_to_emergency(
            emergency_id, EventType.NEW_MESSAGE, message_payload(view),
        )
        logger.info(
            "Message %s in %s relayed to %d connection(s)", view.id, emergency_id, delivered,
            extra={"emergency_id": emergency_id, "user_id": sender_id},
        )
        return view

    async def list_messages(
        self,
        emergency_id: str,
        requester_id: str,
        limit: Optional[int] = None,
    ) -> List[MessageView]:
        """Most recent messages, oldest first. Readable after the emergency closes."""
        emergency = await self.emergencies.get(emergency_id)
        await self._require_chat_member(emergency, requester_id, "viewing messages")

        limit = limit or settings.MESSAGE_HISTORY_LIMIT
        result = await self.session.execute(
            select(
                EmergencyMessage.id,
                EmergencyMessage.emergency_id,
                EmergencyMessage.user_id,
                EmergencyMessage.message,
                EmergencyMessage.image_url,
                EmergencyMessage.audio_url,
                EmergencyMessage.video_url,
                EmergencyMessage.created_at,
                User.email,
                func.coalesce(User.display_name, User.email),
            )
            .outerjoin(User, User.id == EmergencyMessage.user_id)
            .where(EmergencyMessage.emergency_id == emergency_id)
            .order_by(EmergencyMessage.created_at.desc(), EmergencyMessage.id.desc())
            .limit(limit)
        )
        return [MessageView(*row) for row in reversed(result.all())]


def message_payload(view: MessageView) -> dict:
    return {
        "emergency_id": view.emergency_id,
        "message_id": view.id,
        "user_id": view.user_id,
        "user_email": view.user_email,
        "user_display_name": view.user_display_name,
        "message": view.message,
        "image_url": view.image_url,
        "audio_url": view.audio_url,
        "video_url": view.video_url,
        "created_at": view.created_at,
    }
