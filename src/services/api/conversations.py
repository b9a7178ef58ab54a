# src/services/api/conversations.py
"""
Endpoints бесед. Живые события идут через realtime_ws.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.core.conversations import ConversationService
from src.services.api.dependencies import CurrentActor, CurrentAdmin, get_conversation_service
from src.services.api.errors import to_jsonable

router = APIRouter(prefix="/api/v1/conversations", tags=["Conversations"])

Conversations = Annotated[ConversationService, Depends(get_conversation_service)]


class MessageRequest(BaseModel):
    content: str = Field(..., min_length=1)


@router.get("/{conversation_id}/messages", summary="Сообщения беседы")
async def list_messages(
    conversation_id: int,
    actor: CurrentActor,
    service: Conversations,
    after_id: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
) -> list[dict[str, Any]]:
    return to_jsonable(await service.list_messages(actor, conversation_id, after_id, limit))


@router.post("/{conversation_id}/messages", status_code=201, summary="Отправить сообщение")
async def post_message(
    conversation_id: int,
    request: MessageRequest,
    actor: CurrentActor,
    service: Conversations,
) -> dict[str, Any]:
    return to_jsonable(await service.post_message(actor, conversation_id, request.content))


@router.post("/{conversation_id}/read", summary="Отметить беседу прочитанной")
async def mark_read(conversation_id: int, actor: CurrentActor, service: Conversations) -> dict[str, str]:
    await service.mark_conversation_read(actor, conversation_id)
    return {"status": "ok"}


@router.post("/{conversation_id}/close", summary="Закрыть беседу")
async def close_conversation(conversation_id: int, admin: CurrentAdmin, service: Conversations) -> dict[str, str]:
    await service.close(admin, conversation_id)
    return {"status": "closed"}
