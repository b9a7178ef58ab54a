# src/core/conversations/service.py
"""
Сервис бесед.

Сообщение сохраняется и рассылается в область беседы, копия уходит
в область user_monitor для надзора администраторов.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.common.constants import TypeMsg
from src.common.errors import ConflictingTransitionError, ForbiddenError, ValidationError
from src.common.logger import log_info
from src.core.conversations.models import Conversation, Message
from src.core.conversations.repository import ConversationRepository
from src.core.presence.scopes import PresenceScope
from src.core.users.models import Actor

if TYPE_CHECKING:
    from src.core.presence.publisher import PresenceSink
    from src.infra.database import DatabaseManager


NEW_MESSAGE = "new_message"
CONVERSATION_CLOSED = "conversation_closed"
MAX_MESSAGE_LENGTH = 4000


class ConversationService:
    """Сообщения в беседах и доступ к их каналам."""

    def __init__(
        self,
        db: "DatabaseManager",
        presence: "PresenceSink",
        repository: ConversationRepository | None = None,
    ) -> None:
        self.presence = presence
        self.repository = repository or ConversationRepository(db)

    async def require_access(self, actor: Actor, conversation_id: int) -> Conversation:
        """
        Участник беседы или администратор.

        Raises:
            NotFoundError: Беседа не найдена
            ForbiddenError: Нет доступа
        """
        conversation = await self.repository.require(conversation_id)
        if not actor.is_admin and actor.id not in conversation.participant_ids:
            raise ForbiddenError("Нет доступа к беседе", {"conversation_id": conversation_id})
        return conversation

    async def post_message(self, sender: Actor, conversation_id: int, content: str) -> Message:
        """
        Отправляет сообщение.

        Raises:
            ForbiddenError: Отправитель не участник беседы
            ValidationError: Пустое или слишком длинное сообщение
            ConflictingTransitionError: Беседа закрыта
        """
        content = (content or "").strip()
        if not content:
            raise ValidationError("Сообщение пустое")
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationError("Сообщение слишком длинное", {"max_length": MAX_MESSAGE_LENGTH})

        conversation = await self.repository.require(conversation_id)
        if sender.id not in conversation.participant_ids:
            raise ForbiddenError("Отправитель не участник беседы", {"conversation_id": conversation_id})
        if not conversation.active:
            raise ConflictingTransitionError("Беседа закрыта", {"conversation_id": conversation_id})

        message = await self.repository.insert_message(conversation_id, sender.id, content)
        event = {"type": NEW_MESSAGE, "message": message.model_dump(mode="json")}
        await self.presence.to_scope(PresenceScope.conversation(conversation_id), event)
        await self.presence.to_scope(
            PresenceScope.user_monitor(),
            {**event, "conversation_id": conversation_id, "sender_kind": sender.kind.value},
        )
        await log_info(
            f"Сообщение {message.id} в беседе {conversation_id} от {sender.id}",
            type_msg=TypeMsg.DEBUG,
        )
        return message

    async def list_messages(self, actor: Actor, conversation_id: int, after_id: int = 0, limit: int = 50) -> list[Message]:
        await self.require_access(actor, conversation_id)
        return await self.repository.list_messages(conversation_id, after_id, min(limit, 200))

    async def mark_conversation_read(self, actor: Actor, conversation_id: int) -> None:
        """
        Raises:
            ForbiddenError: Не участник беседы
        """
        conversation = await self.repository.require(conversation_id)
        if actor.id not in conversation.participant_ids:
            raise ForbiddenError("Не участник беседы", {"conversation_id": conversation_id})
        await self.repository.mark_read(conversation_id, actor.id)

    async def close(self, admin: Actor, conversation_id: int) -> None:
        """Закрывает беседу, её каналы закрываются хабом."""
        if not admin.is_admin:
            raise ForbiddenError("Закрыть беседу может только администратор", {"conversation_id": conversation_id})
        if await self.repository.close(conversation_id):
            await self.presence.to_scope(
                PresenceScope.conversation(conversation_id),
                {"type": CONVERSATION_CLOSED, "conversation_id": conversation_id},
            )
            await log_info(f"Беседа {conversation_id} закрыта", type_msg=TypeMsg.INFO)
