"""
FastAPI routes: emergency chat.

    GET  /api/v1/emergencies/{id}/messages — history, oldest first
    POST /api/v1/emergencies/{id}/messages — post text and/or an attachment URL
"""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends

from guardian.app.api.deps import get_chat, get_current_user
from guardian.app.api.schemas import MessageCreateRequest, MessageOut
from guardian.app.chat.service import Attachment, EmergencyChat
from guardian.app.core.security import AuthenticatedUser

router = APIRouter(prefix="/api/v1/emergencies", tags=["chat"])


@router.get("/{emergency_id}/messages", response_model=List[MessageOut])
async def list_messages(
    emergency_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    chat: EmergencyChat = Depends(get_chat),
):
    messages = await chat.list_messages(emergency_id, user.user_id)
    return [MessageOut.model_validate(m) for m in messages]


@router.post("/{emergency_id}/messages", response_model=MessageOut, status_code=201)
async def post_message(
    emergency_id: str,
    body: MessageCreateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    chat: EmergencyChat = Depends(get_chat),
):
    attachment = (
        Attachment(kind=body.attachment.kind, url=body.attachment.url)
        if body.attachment
        else None
    )
    view = await chat.post_message(
        emergency_id, user.user_id, text=body.message, attachment=attachment,
    )
    return MessageOut.model_validate(view)
