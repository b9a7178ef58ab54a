"""Беседы участников."""

from src.core.conversations.models import Conversation, Message
from src.core.conversations.service import ConversationService

__all__ = ["Conversation", "ConversationService", "Message"]
