# src/core/conversations/models.py
"""
Модели бесед.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Conversation(BaseModel):
    """Беседа участников (обычно по бронированию)."""

    id: int
    booking_id: Optional[int] = None
    active: bool = True
    participant_ids: list[int] = Field(default_factory=list)
    created_at: datetime
    closed_at: Optional[datetime] = None


class Message(BaseModel):
    """Сообщение в беседе."""

    id: int
    conversation_id: int
    sender_id: int
    content: str
    sent_at: datetime
