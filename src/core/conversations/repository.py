# src/core/conversations/repository.py
"""
Репозиторий бесед и сообщений.
"""

from __future__ import annotations

from typing import Optional

from src.common.errors import NotFoundError
from src.core.conversations.models import Conversation, Message
from src.infra.database import DatabaseManager


class ConversationRepository:
    """Репозиторий бесед."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get(self, conversation_id: int) -> Optional[Conversation]:
        row = await self._db.fetchrow(
            """
            SELECT c.id, c.booking_id, c.is_active, c.created_at, c.closed_at,
                   COALESCE(ARRAY_AGG(p.user_id ORDER BY p.user_id) FILTER (WHERE p.user_id IS NOT NULL), '{}') AS participant_ids
            FROM conversations c
            LEFT JOIN conversation_participants p ON p.conversation_id = c.id
            WHERE c.id = $1
            GROUP BY c.id
            """,
            conversation_id,
        )
        if row is None:
            return None
        return Conversation(
            id=row["id"],
            booking_id=row["booking_id"],
            active=row["is_active"],
            participant_ids=list(row["participant_ids"]),
            created_at=row["created_at"],
            closed_at=row["closed_at"],
        )

    async def require(self, conversation_id: int) -> Conversation:
        """
        Raises:
            NotFoundError: Беседа не найдена
        """
        conversation = await self.get(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Беседа {conversation_id} не найдена", {"conversation_id": conversation_id})
        return conversation

    async def insert_message(self, conversation_id: int, sender_id: int, content: str) -> Message:
        row = await self._db.fetchrow(
            """
            INSERT INTO messages (conversation_id, sender_id, content)
            VALUES ($1, $2, $3)
            RETURNING id, conversation_id, sender_id, content, sent_at
            """,
            conversation_id,
            sender_id,
            content,
        )
        return Message(**dict(row))

    async def list_messages(self, conversation_id: int, after_id: int = 0, limit: int = 50) -> list[Message]:
        rows = await self._db.fetch(
            """
            SELECT id, conversation_id, sender_id, content, sent_at FROM messages
            WHERE conversation_id = $1 AND id > $2
            ORDER BY id
            LIMIT $3
            """,
            conversation_id,
            after_id,
            limit,
        )
        return [Message(**dict(r)) for r in rows]

    async def mark_read(self, conversation_id: int, user_id: int) -> bool:
        result = await self._db.execute(
            """
            UPDATE conversation_participants SET read_at = NOW()
            WHERE conversation_id = $1 AND user_id = $2
            """,
            conversation_id,
            user_id,
        )
        return result == "UPDATE 1"

    async def close(self, conversation_id: int) -> bool:
        result = await self._db.execute(
            "UPDATE conversations SET is_active = FALSE, closed_at = NOW() WHERE id = $1 AND is_active",
            conversation_id,
        )
        return result == "UPDATE 1"
