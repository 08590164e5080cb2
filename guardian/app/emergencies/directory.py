"""
directory.py — Read-only views over collaborator-owned tables.

Contact lists and user accounts are maintained by other services; the
emergency workflow only reads them:

    • list_active_contacts — resolved once, when an emergency is created
    • get_user_summary     — email + display name for events and pushes
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from guardian.app.emergencies.models import EmergencyContact, User


@dataclass(frozen=True)
class ContactRecord:
    contact_user_id: Optional[str]
    contact_name: str
    contact_email: Optional[str] = None

    @property
    def is_registered(self) -> bool:
        return self.contact_user_id is not None


@dataclass(frozen=True)
class UserSummary:
    user_id: str
    email: Optional[str]
    display_name: str


async def list_active_contacts(session: AsyncSession, user_id: str) -> List[ContactRecord]:
    """Active contacts of ``user_id``, registered or not, oldest first."""
    result = await session.execute(
        select(
            EmergencyContact.contact_user_id,
            EmergencyContact.contact_name,
            EmergencyContact.contact_email,
        )
        .where(
            EmergencyContact.user_id == user_id,
            EmergencyContact.status == "active",
        )
        .order_by(EmergencyContact.created_at)
    )
    return [ContactRecord(*row) for row in result.all()]


async def get_user_summary(session: AsyncSession, user_id: str) -> UserSummary:
    """Display info for a user; unknown ids fall back to a generic label."""
    user = await session.get(User, user_id)
    if user is None:
        return UserSummary(user_id=user_id, email=None, display_name="Someone")
    return UserSummary(user_id=user_id, email=user.email, display_name=user.label)
