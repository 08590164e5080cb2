"""
participants.py — Contact participation rows, keyed by (emergency, user).

Insertion is idempotent: a second add for the same pair returns the row
that is already there. The unique constraint backs this up when two
inserts race; the loser re-reads the winner's row inside a savepoint
rollback instead of failing.

Status writes are unconditional. Accepting after rejecting (or the reverse)
simply overwrites the row, with joined_at following the latest answer.
Authorization (is this the caller's own row?) belongs to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from guardian.app.emergencies.models import (
    EmergencyParticipant,
    ParticipantStatus,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class ParticipantView:
    """Participant row joined with the contact's display info."""
    id: str
    emergency_id: str
    user_id: str
    status: str
    joined_at: Optional[datetime]
    created_at: datetime
    user_email: Optional[str]
    user_display_name: Optional[str]

    @property
    def is_accepted(self) -> bool:
        return self.status == ParticipantStatus.ACCEPTED.value


class ParticipantStore:
    """CRUD and state transitions over emergency_participants."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, emergency_id: str, user_id: str) -> Optional[EmergencyParticipant]:
        result = await self.session.execute(
            select(EmergencyParticipant).where(
                EmergencyParticipant.emergency_id == emergency_id,
                EmergencyParticipant.user_id == user_id,
            )
        )
        return result.scalars().first()

    async def add_participant(self, emergency_id: str, user_id: str) -> EmergencyParticipant:
        existing = await self.get(emergency_id, user_id)
        if existing is not None:
            return existing

        participant = EmergencyParticipant(
            emergency_id=emergency_id,
            user_id=user_id,
            status=ParticipantStatus.PENDING.value,
            created_at=utcnow(),
        )
        try:
            async with self.session.begin_nested():
                self.session.add(participant)
        except IntegrityError:
            existing = await self.get(emergency_id, user_id)
            if existing is None:
                raise
            return existing
        return participant

    async def update_status(
        self,
        emergency_id: str,
        user_id: str,
        status: ParticipantStatus,
    ) -> Optional[EmergencyParticipant]:
        """
        Record a participant's answer.

        Returns the updated row, or None when no row exists for the pair.
        """
        if status not in (ParticipantStatus.ACCEPTED, ParticipantStatus.REJECTED):
            raise ValueError(f"Participants can only accept or reject, not {status.value!r}")

        joined_at = utcnow() if status is ParticipantStatus.ACCEPTED else None
        result = await self.session.execute(
            update(EmergencyParticipant)
            .where(
                EmergencyParticipant.emergency_id == emergency_id,
                EmergencyParticipant.user_id == user_id,
            )
            .values(status=status.value, joined_at=joined_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None

        participant = await self.get(emergency_id, user_id)
        await self.session.refresh(participant)
        logger.info(
            "Participant %s → %s on %s", user_id, status.value, emergency_id,
            extra={"emergency_id": emergency_id, "user_id": user_id},
        )
        return participant

    async def list(self, emergency_id: str) -> List[ParticipantView]:
        result = await self.session.execute(
            select(
                EmergencyParticipant.id,
                EmergencyParticipant.emergency_id,
                EmergencyParticipant.user_id,
                EmergencyParticipant.status,
                EmergencyParticipant.joined_at,
                EmergencyParticipant.created_at,
                User.email,
                func.coalesce(User.display_name, User.email),
            )
            .outerjoin(User, User.id == EmergencyParticipant.user_id)
            .where(EmergencyParticipant.emergency_id == emergency_id)
            .order_by(EmergencyParticipant.created_at, EmergencyParticipant.id)
        )
        return [ParticipantView(*row) for row in result.all()]
