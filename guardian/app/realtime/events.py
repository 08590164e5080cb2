"""
events.py — Realtime event names and the wire envelope.

Every frame pushed to a client is:

    {"event": "<EventType value>", "data": {...}}

``data`` always carries ``emergency_id`` plus whatever the client needs to
update its view without a follow-up fetch.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict

from fastapi.encoders import jsonable_encoder


class EventType(str, Enum):
    EMERGENCY_CREATED    = "emergency_created"
    PARTICIPANT_ACCEPTED = "participant_accepted"
    PARTICIPANT_REJECTED = "participant_rejected"
    LOCATION_UPDATE      = "location_update"
    NEW_MESSAGE          = "new_message"
    EMERGENCY_ENDED      = "emergency_ended"
    EMERGENCY_CANCELLED  = "emergency_cancelled"
    EMERGENCY_ESCALATED  = "emergency_escalated"


def emergency_room(emergency_id: str) -> str:
    return f"emergency:{emergency_id}"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def envelope(event: EventType, data: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe frame (datetimes → ISO strings)."""
    return jsonable_encoder({"event": event.value, "data": data})
