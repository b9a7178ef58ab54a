# src/core/presence/publisher.py
"""
Публикация событий присутствия через Redis pub/sub.

Процессы API и воркеров не держат соединений клиентов: события уходят
в Redis, процесс realtime_ws раздаёт их своим каналам.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Protocol

from redis.exceptions import RedisError

from src.common.constants import TypeMsg
from src.common.logger import log_info, log_warning
from src.core.presence.scopes import DEFAULT_PREFIX, PresenceScope, scope_channel, user_channel

if TYPE_CHECKING:
    from src.infra.redis_client import RedisClient


class PresenceSink(Protocol):
    """Получатель событий присутствия."""

    async def to_user(self, user_id: int, event: dict[str, Any], scope: Optional[PresenceScope] = None) -> int:
        ...

    async def to_scope(self, scope: PresenceScope, event: dict[str, Any]) -> int:
        ...


class RedisPresencePublisher:
    """
    Каналы:
    - {prefix}:user:{user_id}: все каналы участника (или одной области)
    - {prefix}:scope:{scope}: все каналы области
    """

    def __init__(self, redis: "RedisClient", prefix: str = DEFAULT_PREFIX) -> None:
        self._redis = redis
        self._prefix = prefix

    async def to_user(self, user_id: int, event: dict[str, Any], scope: Optional[PresenceScope] = None) -> int:
        """
        Returns:
            Количество процессов-получателей (0 при сбое Redis)
        """
        message = {"scope": scope.key if scope else None, "event": event}
        return await self._publish(user_channel(user_id, self._prefix), message)

    async def to_scope(self, scope: PresenceScope, event: dict[str, Any]) -> int:
        return await self._publish(scope_channel(scope, self._prefix), {"event": event})

    async def _publish(self, channel: str, message: dict[str, Any]) -> int:
        # Сбой Redis не прерывает вызывающего
        try:
            receivers = await self._redis.publish(channel, message)
        except RedisError as e:
            await log_warning(f"Не удалось опубликовать событие в {channel}: {e}")
            return 0
        await log_info(f"Событие присутствия в {channel}: получателей {receivers}", type_msg=TypeMsg.DEBUG)
        return receivers
