"""
locations.py — Append-only location trail per (emergency, user).

"Latest location per user" is derived at read time with a window function
(row_number over user_id, newest first); nothing is overwritten.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from guardian.app.emergencies.models import EmergencyLocation, User, utcnow


@dataclass
class LocationView:
    id: str
    emergency_id: str
    user_id: str
    latitude: float
    longitude: float
    accuracy: Optional[float]
    timestamp: datetime
    user_email: Optional[str]
    user_display_name: Optional[str]


class LocationStore:

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(
        self,
        emergency_id: str,
        user_id: str,
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
    ) -> EmergencyLocation:
        sample = EmergencyLocation(
            emergency_id=emergency_id,
            user_id=user_id,
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
            timestamp=utcnow(),
        )
        self.session.add(sample)
        await self.session.flush()
        return sample

    async def latest_per_user(self, emergency_id: str) -> List[LocationView]:
        ranked = (
            select(
                EmergencyLocation,
                func.row_number()
                .over(
                    partition_by=EmergencyLocation.user_id,
                    order_by=(EmergencyLocation.timestamp.desc(), EmergencyLocation.id.desc()),
                )
                .label("rn"),
            )
            .where(EmergencyLocation.emergency_id == emergency_id)
            .subquery()
        )
        result = await self.session.execute(
            select(
                ranked.c.id,
                ranked.c.emergency_id,
                ranked.c.user_id,
                ranked.c.latitude,
                ranked.c.longitude,
                ranked.c.accuracy,
                ranked.c.timestamp,
                User.email,
                func.coalesce(User.display_name, User.email),
            )
            .outerjoin(User, User.id == ranked.c.user_id)
            .where(ranked.c.rn == 1)
            .order_by(ranked.c.user_id)
        )
        return [LocationView(*row) for row in result.all()]

    async def trail(self, emergency_id: str, user_id: str, limit: int = 500) -> List[EmergencyLocation]:
        """One user's samples, oldest first."""
        result = await self.session.execute(
            select(EmergencyLocation)
            .where(
                EmergencyLocation.emergency_id == emergency_id,
                EmergencyLocation.user_id == user_id,
            )
            .order_by(EmergencyLocation.timestamp.asc())
            .limit(limit)
        )
        return list(result.scalars().all())
