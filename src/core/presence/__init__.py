"""Области и публикация событий присутствия."""

from src.core.presence.publisher import PresenceSink, RedisPresencePublisher
from src.core.presence.scopes import PresenceScope, scope_channel, user_channel

__all__ = [
    "PresenceScope",
    "PresenceSink",
    "RedisPresencePublisher",
    "scope_channel",
    "user_channel",
]
