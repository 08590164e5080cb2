"""
service.py — Emergency coordination workflow.

Ties the stores, the notification dispatcher and the realtime rooms into
the operations the API exposes:

    create_emergency → participants from contacts → commit → fan-out
    respond          → participant answer        → commit → room event
    update_location  → validate + append         → commit → room event
    end / cancel     → creator-only transition   → commit → room event
    escalate         → advisory broadcast only, no state change

Every state change is committed before anything is sent, so a client that
reacts to an event and re-fetches over HTTP always sees the new state.
Notification is best-effort: neither the dispatcher nor the rooms raise,
and nothing they do can undo a committed change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from guardian.app.core.errors import (
    ForbiddenError,
    InactiveEmergencyError,
    ValidationError,
)
from guardian.app.emergencies import location_validator
from guardian.app.emergencies.directory import get_user_summary, list_active_contacts
from guardian.app.emergencies.locations import LocationStore, LocationView
from guardian.app.emergencies.models import (
    Emergency,
    EmergencyLocation,
    EmergencyParticipant,
    ParticipantStatus,
)
from guardian.app.emergencies.participants import ParticipantStore, ParticipantView
from guardian.app.emergencies.store import EmergencyStore, PendingEmergency
from guardian.app.notifications.dispatcher import NotificationDispatcher
from guardian.app.notifications.models import DispatchReport
from guardian.app.realtime.events import EventType
from guardian.app.realtime.rooms import RoomBroadcaster

logger = logging.getLogger(__name__)

_REJECTION_CODES = {
    location_validator.RejectionReason.OUT_OF_RANGE: "OUT_OF_RANGE",
    location_validator.RejectionReason.NULL_ISLAND: "NULL_ISLAND",
    location_validator.RejectionReason.FALLBACK_LOCATION: "FALLBACK_LOCATION",
}

_REJECTION_MESSAGES = {
    location_validator.RejectionReason.OUT_OF_RANGE: "Coordinates are out of range",
    location_validator.RejectionReason.NULL_ISLAND: "Invalid location (0, 0). Waiting for a GPS fix.",
    location_validator.RejectionReason.FALLBACK_LOCATION: (
        "Invalid location: simulator default coordinates. Enable real GPS."
    ),
}


@dataclass
class CreateResult:
    emergency: Emergency
    participants: List[ParticipantView]
    report: DispatchReport


@dataclass
class EmergencyDetails:
    emergency: Emergency
    participants: List[ParticipantView] = field(default_factory=list)
    locations: List[LocationView] = field(default_factory=list)


class EmergencyCoordinator:
    """
    One unit of work per request.

    Parameters
    ----------
    session : AsyncSession
        Request-scoped session; the coordinator commits it.
    rooms : RoomBroadcaster
    dispatcher : NotificationDispatcher
    """

    def __init__(
        self,
        session: AsyncSession,
        rooms: RoomBroadcaster,
        dispatcher: NotificationDispatcher,
    ):
        self.session = session
        self.rooms = rooms
        self.dispatcher = dispatcher
        self.emergencies = EmergencyStore(session)
        self.participants = ParticipantStore(session)
        self.locations = LocationStore(session)

    # ── Guards ──

    async def _require_active(self, emergency_id: str) -> Emergency:
        emergency = await self.emergencies.get(emergency_id)
        if not emergency.is_active:
            raise InactiveEmergencyError(emergency_id, emergency.status)
        return emergency

    async def _require_sharer(self, emergency: Emergency, user_id: str) -> None:
        """Creator or accepted participant."""
        if emergency.creator_user_id == user_id:
            return
        participant = await self.participants.get(emergency.id, user_id)
        if participant is None or participant.status != ParticipantStatus.ACCEPTED.value:
            raise ForbiddenError(
                "Only the creator and accepted participants can do this",
                emergency_id=emergency.id,
            )

    async def _require_viewer(self, emergency: Emergency, user_id: str) -> None:
        """Creator or any participant."""
        if emergency.creator_user_id == user_id:
            return
        if await self.participants.get(emergency.id, user_id) is None:
            raise ForbiddenError(
                "You are not part of this emergency",
                emergency_id=emergency.id,
            )

    # ── Create ──

    async def create_emergency(self, creator_id: str) -> CreateResult:
        emergency = await self.emergencies.create(creator_id)

        contacts = await list_active_contacts(self.session, creator_id)
        seen = set()
        for contact in contacts:
            uid = contact.contact_user_id
            if not contact.is_registered or uid == creator_id or uid in seen:
                continue
            seen.add(uid)
            await self.participants.add_participant(emergency.id, uid)

        skipped = sum(1 for c in contacts if not c.is_registered)
        if skipped:
            logger.info(
                "%d contact(s) of %s have no account and will not be notified",
                skipped, creator_id,
                extra={"emergency_id": emergency.id, "user_id": creator_id},
            )

        creator = await get_user_summary(self.session, creator_id)
        await self.session.commit()

        participants = await self.participants.list(emergency.id)
        payload = {
            "emergency_id": emergency.id,
            "user_id": creator_id,
            "user_email": creator.email,
            "user_display_name": creator.display_name,
            "participants": len(participants),
            "created_at": emergency.created_at,
        }
        report = await self.dispatcher.dispatch(
            [p.user_id for p in participants],
            EventType.EMERGENCY_CREATED,
            payload,
        )
        logger.info(
            "Emergency %s: %d participants, %d reached",
            emergency.id, len(participants), report.recipients_reached,
            extra={"emergency_id": emergency.id, "recipient_count": len(participants)},
        )
        return CreateResult(emergency=emergency, participants=participants, report=report)

    # ── Respond ──

    async def respond(
        self,
        emergency_id: str,
        user_id: str,
        status: ParticipantStatus,
    ) -> EmergencyParticipant:
        emergency = await self._require_active(emergency_id)

        if await self.participants.get(emergency_id, user_id) is None:
            raise ForbiddenError(
                "You are not a participant of this emergency",
                emergency_id=emergency_id,
            )

        participant = await self.participants.update_status(emergency_id, user_id, status)
        user = await get_user_summary(self.session, user_id)
        await self.session.commit()

        event = (
            EventType.PARTICIPANT_ACCEPTED
            if status is ParticipantStatus.ACCEPTED
            else EventType.PARTICIPANT_REJECTED
        )
        await self.rooms.emit_to_emergency(emergency.id, event, {
            "emergency_id": emergency.id,
            "user_id": user_id,
            "user_email": user.email,
            "user_display_name": user.display_name,
            "status": participant.status,
            "joined_at": participant.joined_at,
        })
        return participant

    # ── Location ──

    async def update_location(
        self,
        emergency_id: str,
        user_id: str,
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
    ) -> EmergencyLocation:
        emergency = await self._require_active(emergency_id)
        await self._require_sharer(emergency, user_id)

        verdict = location_validator.validate(latitude, longitude, accuracy)
        if verdict.rejected:
            logger.warning(
                "Rejected location from %s: %s (%s)",
                user_id, verdict.reason.value, verdict.detail,
                extra={"emergency_id": emergency_id, "user_id": user_id},
            )
            raise ValidationError(
                _REJECTION_MESSAGES[verdict.reason],
                field="location",
                error_code=_REJECTION_CODES[verdict.reason],
                reason=verdict.reason.value,
                detail=verdict.detail,
            )

        sample = await self.locations.add(emergency_id, user_id, latitude, longitude, accuracy)
        user = await get_user_summary(self.session, user_id)
        await self.session.commit()

        await self.rooms.emit_to_emergency(emergency_id, EventType.LOCATION_UPDATE, {
            "emergency_id": emergency_id,
            "user_id": user_id,
            "user_email": user.email,
            "user_display_name": user.display_name,
            "latitude": sample.latitude,
            "longitude": sample.longitude,
            "accuracy": sample.accuracy,
            "low_accuracy": verdict.low_accuracy,
            "timestamp": sample.timestamp,
        })
        return sample

    # ── End / cancel / escalate ──

    async def end(self, emergency_id: str, requester_id: str) -> Emergency:
        emergency, changed = await self.emergencies.end(emergency_id, requester_id)
        await self.session.commit()
        if changed:
            await self.rooms.emit_to_emergency(emergency_id, EventType.EMERGENCY_ENDED, {
                "emergency_id": emergency_id,
                "ended_at": emergency.ended_at,
            })
        return emergency

    async def cancel(self, emergency_id: str, requester_id: str) -> Emergency:
        emergency, changed = await self.emergencies.cancel(emergency_id, requester_id)
        await self.session.commit()
        if changed:
            await self.rooms.emit_to_emergency(emergency_id, EventType.EMERGENCY_CANCELLED, {
                "emergency_id": emergency_id,
                "cancelled_at": emergency.ended_at,
            })
        return emergency

    async def escalate(
        self,
        emergency_id: str,
        requester_id: str,
        reason: Optional[str] = None,
    ) -> Emergency:
        """
        Signal that outside help should be brought in.

        Advisory only: the emergency stays ``active`` and nothing is written.
        """
        emergency = await self._require_active(emergency_id)
        await self._require_sharer(emergency, requester_id)

        user = await get_user_summary(self.session, requester_id)
        reason = (reason or "").strip() or "No reason given"
        logger.warning(
            "Escalation requested on %s by %s: %s", emergency_id, requester_id, reason,
            extra={"emergency_id": emergency_id, "user_id": requester_id},
        )
        await self.rooms.emit_to_emergency(emergency_id, EventType.EMERGENCY_ESCALATED, {
            "emergency_id": emergency_id,
            "user_id": requester_id,
            "user_display_name": user.display_name,
            "reason": reason,
        })
        return emergency

    # ── Reads ──

    async def get_details(self, emergency_id: str, requester_id: str) -> EmergencyDetails:
        emergency = await self.emergencies.get(emergency_id)
        await self._require_viewer(emergency, requester_id)
        return EmergencyDetails(
            emergency=emergency,
            participants=await self.participants.list(emergency_id),
            locations=await self.locations.latest_per_user(emergency_id),
        )

    async def get_active(self, user_id: str) -> Optional[EmergencyDetails]:
        emergency = await self.emergencies.find_active(user_id)
        if emergency is None:
            return None
        return EmergencyDetails(
            emergency=emergency,
            participants=await self.participants.list(emergency.id),
            locations=await self.locations.latest_per_user(emergency.id),
        )

    async def list_pending(self, user_id: str) -> List[PendingEmergency]:
        return await self.emergencies.list_pending_for_user(user_id)

    async def location_trail(
        self,
        emergency_id: str,
        requester_id: str,
        user_id: str,
    ) -> List[EmergencyLocation]:
        emergency = await self.emergencies.get(emergency_id)
        await self._require_viewer(emergency, requester_id)
        return await self.locations.trail(emergency_id, user_id)
