"""
store.py — Emergency records and their lifecycle transitions.

Owns the "one active emergency per creator" invariant. The read-then-write
check gives a friendly Conflict carrying the existing emergency id; the
partial unique index catches the concurrent race the check alone would let
through, and its violation is reported as the same Conflict.

All methods flush but never commit; the calling service decides when the
unit of work is durable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from guardian.app.core.errors import ConflictError, ForbiddenError, NotFoundError
from guardian.app.emergencies.models import (
    Emergency,
    EmergencyParticipant,
    EmergencyStatus,
    ParticipantStatus,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class PendingEmergency:
    """An active emergency waiting for the viewer's answer."""
    id: str
    creator_user_id: str
    status: str
    created_at: datetime
    ended_at: Optional[datetime]
    sender_email: Optional[str]
    sender_display_name: Optional[str]


class EmergencyStore:
    """CRUD and state transitions over the emergencies table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_id(self, emergency_id: str) -> Optional[Emergency]:
        return await self.session.get(Emergency, emergency_id)

    async def get(self, emergency_id: str) -> Emergency:
        """Like find_by_id but raises NotFoundError."""
        emergency = await self.find_by_id(emergency_id)
        if emergency is None:
            raise NotFoundError("Emergency", emergency_id=emergency_id)
        return emergency

    async def find_active(self, user_id: str) -> Optional[Emergency]:
        result = await self.session.execute(
            select(Emergency)
            .where(
                Emergency.creator_user_id == user_id,
                Emergency.status == EmergencyStatus.ACTIVE.value,
            )
            .order_by(Emergency.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def create(self, creator_id: str) -> Emergency:
        existing = await self.find_active(creator_id)
        if existing is not None:
            raise ConflictError(
                "You already have an active emergency",
                emergency_id=existing.id,
            )

        emergency = Emergency(
            creator_user_id=creator_id,
            status=EmergencyStatus.ACTIVE.value,
            created_at=utcnow(),
        )
        try:
            async with self.session.begin_nested():
                self.session.add(emergency)
        except IntegrityError:
            logger.warning(
                "Concurrent create lost the race for user %s", creator_id,
                extra={"user_id": creator_id},
            )
            winner = await self.find_active(creator_id)
            raise ConflictError(
                "You already have an active emergency",
                emergency_id=winner.id if winner else None,
            )

        logger.info(
            "Emergency %s created by %s", emergency.id, creator_id,
            extra={"emergency_id": emergency.id, "user_id": creator_id},
        )
        return emergency

    async def end(self, emergency_id: str, requester_id: str) -> Tuple[Emergency, bool]:
        """Move an active emergency to ``ended``. Returns (emergency, changed)."""
        return await self._close(emergency_id, requester_id, EmergencyStatus.ENDED)

    async def cancel(self, emergency_id: str, requester_id: str) -> Tuple[Emergency, bool]:
        """Move an active emergency to ``cancelled``. Returns (emergency, changed)."""
        return await self._close(emergency_id, requester_id, EmergencyStatus.CANCELLED)

    async def _close(
        self,
        emergency_id: str,
        requester_id: str,
        target: EmergencyStatus,
    ) -> Tuple[Emergency, bool]:
        emergency = await self.get(emergency_id)
        if emergency.creator_user_id != requester_id:
            verb = "end" if target is EmergencyStatus.ENDED else "cancel"
            raise ForbiddenError(
                f"Only the emergency creator can {verb} it",
                emergency_id=emergency_id,
            )

        # Conditional on status so a terminal row is never rewritten
        result = await self.session.execute(
            update(Emergency)
            .where(
                Emergency.id == emergency_id,
                Emergency.creator_user_id == requester_id,
                Emergency.status == EmergencyStatus.ACTIVE.value,
            )
            .values(status=target.value, ended_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        await self.session.refresh(emergency)

        if changed:
            logger.info(
                "Emergency %s → %s", emergency_id, target.value,
                extra={"emergency_id": emergency_id, "user_id": requester_id},
            )
        else:
            logger.info(
                "Emergency %s already %s, %s is a no-op",
                emergency_id, emergency.status, target.value,
                extra={"emergency_id": emergency_id},
            )
        return emergency, changed

    async def list_pending_for_user(self, user_id: str) -> List[PendingEmergency]:
        """Active emergencies where ``user_id`` has not answered yet."""
        result = await self.session.execute(
            select(
                Emergency.id,
                Emergency.creator_user_id,
                Emergency.status,
                Emergency.created_at,
                Emergency.ended_at,
                User.email,
                func.coalesce(User.display_name, User.email),
            )
            .join(EmergencyParticipant, EmergencyParticipant.emergency_id == Emergency.id)
            .outerjoin(User, User.id == Emergency.creator_user_id)
            .where(
                EmergencyParticipant.user_id == user_id,
                EmergencyParticipant.status == ParticipantStatus.PENDING.value,
                Emergency.status == EmergencyStatus.ACTIVE.value,
            )
            .order_by(Emergency.created_at.desc())
        )
        return [PendingEmergency(*row) for row in result.all()]
