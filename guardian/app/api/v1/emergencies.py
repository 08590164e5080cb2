"""
FastAPI routes: emergency lifecycle.

Provides endpoints to:
    POST /api/v1/emergencies/create               — raise an emergency
    GET  /api/v1/emergencies/pending              — emergencies awaiting my answer
    GET  /api/v1/emergencies/active               — my active emergency, if any
    GET  /api/v1/emergencies/{id}                 — details, participants, latest locations
    POST /api/v1/emergencies/{id}/accept          — accept as a contact
    POST /api/v1/emergencies/{id}/reject          — decline as a contact
    POST /api/v1/emergencies/{id}/location        — share a GPS fix
    GET  /api/v1/emergencies/{id}/locations/{uid} — one user's trail
    POST /api/v1/emergencies/{id}/end             — creator: resolved
    POST /api/v1/emergencies/{id}/cancel          — creator: false alarm
    POST /api/v1/emergencies/{id}/escalate        — advisory escalation
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Body, Depends

from guardian.app.api.deps import get_coordinator, get_current_user
from guardian.app.api.schemas import (
    ActiveEmergencyResponse,
    CreateEmergencyResponse,
    EmergencyDetailResponse,
    EmergencyOut,
    EscalateRequest,
    LocationOut,
    LocationPointOut,
    LocationUpdateRequest,
    NotificationSummary,
    ParticipantOut,
    PendingEmergencyOut,
    RespondResponse,
    StatusResponse,
)
from guardian.app.core.security import AuthenticatedUser
from guardian.app.emergencies.models import ParticipantStatus
from guardian.app.emergencies.service import EmergencyCoordinator, EmergencyDetails

router = APIRouter(prefix="/api/v1/emergencies", tags=["emergencies"])


def _detail_response(details: EmergencyDetails) -> EmergencyDetailResponse:
    return EmergencyDetailResponse(
        emergency=EmergencyOut.model_validate(details.emergency),
        participants=[ParticipantOut.model_validate(p) for p in details.participants],
        locations=[LocationOut.model_validate(loc) for loc in details.locations],
    )


@router.post("/create", response_model=CreateEmergencyResponse, status_code=201)
async def create_emergency(
    user: AuthenticatedUser = Depends(get_current_user),
    coordinator: EmergencyCoordinator = Depends(get_coordinator),
):
    result = await coordinator.create_emergency(user.user_id)
    report = result.report
    return CreateEmergencyResponse(
        emergency=EmergencyOut.model_validate(result.emergency),
        participants_count=len(result.participants),
        participants=[ParticipantOut.model_validate(p) for p in result.participants],
        notifications=NotificationSummary(
            total_recipients=report.total_recipients,
            recipients_reached=report.recipients_reached,
            delivered=report.delivered,
            skipped=report.skipped,
            expired=report.expired,
            failed=report.failed,
        ),
    )


@router.get("/pending", response_model=List[PendingEmergencyOut])
async def list_pending(
    user: AuthenticatedUser = Depends(get_current_user),
    coordinator: EmergencyCoordinator = Depends(get_coordinator),
):
    pending = await coordinator.list_pending(user.user_id)
    return [PendingEmergencyOut.model_validate(p) for p in pending]


@router.get("/active", response_model=ActiveEmergencyResponse)
async def get_active(
    user: AuthenticatedUser = Depends(get_current_user),
    coordinator: EmergencyCoordinator = Depends(get_coordinator),
):
    details = await coordinator.get_active(user.user_id)
    if details is None:
        return ActiveEmergencyResponse(emergency=None)
    return ActiveEmergencyResponse(emergency=_detail_response(details))


@router.get("/{emergency_id}", response_model=EmergencyDetailResponse)
async def get_emergency(
    emergency_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    coordinator: EmergencyCoordinator = Depends(get_coordinator),
):
    details = await coordinator.get_details(emergency_id, user.user_id)
    return _detail_response(details)


@router.post("/{emergency_id}/accept", response_model=RespondResponse)
async def accept_emergency(
    emergency_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    coordinator: EmergencyCoordinator = Depends(get_coordinator),
):
    participant = await coordinator.respond(emergency_id, user.user_id, ParticipantStatus.ACCEPTED)
    return RespondResponse(
        message="Emergency accepted. Your location will now be shared.",
        emergency_id=emergency_id,
        status=participant.status,
    )


@router.post("/{emergency_id}/reject", response_model=RespondResponse)
async def reject_emergency(
    emergency_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    coordinator: EmergencyCoordinator = Depends(get_coordinator),
):
    participant = await coordinator.respond(emergency_id, user.user_id, ParticipantStatus.REJECTED)
    return RespondResponse(
        message="Emergency declined",
        emergency_id=emergency_id,
        status=participant.status,
    )


@router.post("/{emergency_id}/location", response_model=LocationPointOut)
async def update_location(
    emergency_id: str,
    body: LocationUpdateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    coordinator: EmergencyCoordinator = Depends(get_coordinator),
):
    sample = await coordinator.update_location(
        emergency_id, user.user_id, body.latitude, body.longitude, body.accuracy,
    )
    return LocationPointOut.model_validate(sample)


@router.get("/{emergency_id}/locations/{user_id}", response_model=List[LocationPointOut])
async def location_trail(
    emergency_id: str,
    user_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    coordinator: EmergencyCoordinator = Depends(get_coordinator),
):
    samples = await coordinator.location_trail(emergency_id, user.user_id, user_id)
    return [LocationPointOut.model_validate(s) for s in samples]


@router.post("/{emergency_id}/end", response_model=StatusResponse)
async def end_emergency(
    emergency_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    coordinator: EmergencyCoordinator = Depends(get_coordinator),
):
    emergency = await coordinator.end(emergency_id, user.user_id)
    return StatusResponse(message="Emergency ended", emergency=EmergencyOut.model_validate(emergency))


@router.post("/{emergency_id}/cancel", response_model=StatusResponse)
async def cancel_emergency(
    emergency_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    coordinator: EmergencyCoordinator = Depends(get_coordinator),
):
    emergency = await coordinator.cancel(emergency_id, user.user_id)
    return StatusResponse(message="Emergency cancelled", emergency=EmergencyOut.model_validate(emergency))


@router.post("/{emergency_id}/escalate", response_model=StatusResponse)
async def escalate_emergency(
    emergency_id: str,
    body: Optional[EscalateRequest] = Body(None),
    user: AuthenticatedUser = Depends(get_current_user),
    coordinator: EmergencyCoordinator = Depends(get_coordinator),
):
    reason = body.reason if body else None
    emergency = await coordinator.escalate(emergency_id, user.user_id, reason)
    return StatusResponse(message="Escalation broadcast", emergency=EmergencyOut.model_validate(emergency))
