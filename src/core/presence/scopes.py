# src/core/presence/scopes.py
"""
Области рассылки хаба присутствия и имена каналов Redis.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from src.common.constants import PresenceScopeKind

DEFAULT_PREFIX = "presence"


@dataclass(frozen=True)
class PresenceScope:
    """Область рассылки. У conversation есть ID беседы."""
    kind: PresenceScopeKind
    entity_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind == PresenceScopeKind.CONVERSATION and self.entity_id is None:
            raise ValueError("Для области conversation нужен ID беседы")

    @property
    def key(self) -> str:
        if self.entity_id is None:
            return self.kind.value
        return f"{self.kind.value}:{self.entity_id}"

    @classmethod
    def parse(cls, key: str) -> "PresenceScope":
        """
        Raises:
            ValueError: Неизвестная область
        """
        kind, _, entity = key.partition(":")
        return cls(PresenceScopeKind(kind), int(entity) if entity else None)

    @classmethod
    def user_notifications(cls) -> "PresenceScope":
        return cls(PresenceScopeKind.USER_NOTIFICATIONS)

    @classmethod
    def admin_notifications(cls) -> "PresenceScope":
        return cls(PresenceScopeKind.ADMIN_NOTIFICATIONS)

    @classmethod
    def conversation(cls, conversation_id: int) -> "PresenceScope":
        return cls(PresenceScopeKind.CONVERSATION, conversation_id)

    @classmethod
    def user_monitor(cls) -> "PresenceScope":
        return cls(PresenceScopeKind.USER_MONITOR)


def user_channel(user_id: int, prefix: str = DEFAULT_PREFIX) -> str:
    return f"{prefix}:user:{user_id}"


def scope_channel(scope: PresenceScope, prefix: str = DEFAULT_PREFIX) -> str:
    return f"{prefix}:scope:{scope.key}"
