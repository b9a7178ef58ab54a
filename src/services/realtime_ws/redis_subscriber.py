# src/services/realtime_ws/redis_subscriber.py
"""
Подписчик на Redis Pub/Sub для получения событий присутствия.

Слушает паттерны:
- {prefix}:user:*: события конкретному участнику
- {prefix}:scope:*: события области
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Optional

from redis.exceptions import RedisError

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info, log_warning

if TYPE_CHECKING:
    from redis.asyncio.client import PubSub

    from src.infra.redis_client import RedisClient


MessageHandler = Callable[[str, dict[str, Any]], Coroutine[Any, Any, None]]


class RedisSubscriber:
    """
    Подписчик на Redis Pub/Sub.

    Получает сообщения и передаёт их обработчику (channel, data).
    """

    def __init__(
        self,
        redis: "RedisClient",
        message_handler: MessageHandler,
        patterns: tuple[str, ...] = ("presence:user:*", "presence:scope:*"),
    ) -> None:
        """
        Args:
            redis: Клиент Redis
            message_handler: Обработчик сообщений (channel, data)
            patterns: Паттерны каналов
        """
        self._redis = redis
        self._handler = message_handler
        self._initial_patterns = patterns
        self._pubsub: Optional["PubSub"] = None
        self._task: asyncio.Task | None = None
        self._running = False
        self._patterns: set[str] = set()

    async def start(self) -> None:
        """Запустить подписчика."""
        if self._running:
            return

        self._pubsub = self._redis.pubsub()
        self._running = True
        for pattern in self._initial_patterns:
            await self.subscribe_pattern(pattern)

        self._task = asyncio.create_task(self._listen(), name="presence-redis-subscriber")
        await log_info(f"Подписка на Redis: {', '.join(sorted(self._patterns))}", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        """Остановить подписчика."""
        self._running = False

        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        if self._pubsub:
            await self._pubsub.punsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None
        self._patterns.clear()

    async def subscribe_pattern(self, pattern: str) -> None:
        """Подписаться на паттерн каналов."""
        if self._pubsub and pattern not in self._patterns:
            await self._pubsub.psubscribe(pattern)
            self._patterns.add(pattern)

    async def _listen(self) -> None:
        while self._running:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if message is None:
                    continue
                await self.process_message(message)
            except asyncio.CancelledError:
                raise
            except RedisError as e:
                await log_warning(f"Ошибка подписки Redis: {e}")
                await asyncio.sleep(1)
            except Exception as e:
                await log_error(f"Ошибка обработки сообщения Redis: {e}", exc_info=True)

    async def process_message(self, message: dict[str, Any]) -> None:
        """Разобрать сообщение pub/sub и передать обработчику."""
        if message.get("type") not in ("message", "pmessage"):
            return

        channel = message.get("channel", "")
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8")

        data = message.get("data", "")
        if isinstance(data, bytes):
            data = data.decode("utf-8")

        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            await log_warning(f"Некорректный JSON в канале {channel}")
            return
        if not isinstance(parsed, dict):
            return

        await self._handler(channel, parsed)
