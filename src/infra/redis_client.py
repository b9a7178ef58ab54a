# src/infra/redis_client.py
"""
Клиент Redis: кэш настроек и pub/sub для доставки событий в каналы
присутствия других процессов.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Type, TypeVar

import redis.asyncio as redis
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info

if TYPE_CHECKING:
    from redis.asyncio.client import PubSub

    from src.config.loader import RedisSettings

T = TypeVar("T", bound=BaseModel)


class RedisClient:
    """
    Асинхронный клиент Redis с namespace для ключей.
    Каналы pub/sub не префиксуются: их имена задают вызывающие.
    """

    def __init__(self, config: "RedisSettings | None" = None) -> None:
        self._config = config
        self._client: redis.Redis | None = None
        self._namespace = config.REDIS_NAMESPACE if config else "treesindia"

    @property
    def client(self) -> redis.Redis:
        """Возвращает клиент Redis."""
        if self._client is None:
            raise RuntimeError("Redis клиент не инициализирован. Вызовите connect() сначала.")
        return self._client

    def _make_key(self, key: str) -> str:
        """Добавляет namespace к ключу."""
        return f"{self._namespace}:{key}"

    async def connect(self) -> None:
        """Подключается к Redis и проверяет соединение."""
        if self._client is not None:
            return

        if self._config is None:
            from src.config import settings
            self._config = settings.redis
            self._namespace = self._config.REDIS_NAMESPACE

        await log_info("Подключение к Redis...", type_msg=TypeMsg.INFO)

        self._client = redis.from_url(
            self._config.url,
            max_connections=self._config.REDIS_MAX_CONNECTIONS,
            decode_responses=True,
        )
        await self._client.ping()

        await log_info(
            f"Redis подключён: {self._config.REDIS_HOST}:{self._config.REDIS_PORT}/{self._config.REDIS_DB}",
            type_msg=TypeMsg.INFO,
        )

    async def disconnect(self) -> None:
        """Закрывает соединение с Redis."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            await log_info("Соединение с Redis закрыто", type_msg=TypeMsg.INFO)

    # =========================================================================
    # БАЗОВЫЕ ОПЕРАЦИИ
    # =========================================================================

    async def get(self, key: str) -> str | None:
        """Получает значение по ключу."""
        return await self.client.get(self._make_key(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        """
        Устанавливает значение.

        Args:
            key: Ключ
            value: Значение
            ttl: Время жизни в секундах
        """
        return await self.client.set(self._make_key(key), value, ex=ttl)

    async def delete(self, key: str) -> int:
        """Удаляет ключ."""
        return await self.client.delete(self._make_key(key))

    # =========================================================================
    # ТИПИЗИРОВАННЫЕ ОПЕРАЦИИ
    # =========================================================================

    async def get_model(self, key: str, model_class: Type[T]) -> T | None:
        """Получает и десериализует Pydantic модель."""
        data = await self.get(key)
        if data is None:
            return None
        try:
            return model_class.model_validate_json(data)
        except PydanticValidationError as e:
            await log_error(f"Ошибка десериализации модели {model_class.__name__}: {e}")
            return None

    async def set_model(self, key: str, model: BaseModel, ttl: int | None = None) -> bool:
        """Сериализует и сохраняет Pydantic модель."""
        return await self.set(key, model.model_dump_json(), ttl=ttl)

    # =========================================================================
    # PUB/SUB
    # =========================================================================

    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        """
        Публикует JSON-сообщение в канал.

        Returns:
            Количество получивших подписчиков
        """
        return await self.client.publish(channel, json.dumps(message, ensure_ascii=False, default=str))

    def pubsub(self) -> "PubSub":
        """Новый объект подписки на этом соединении."""
        return self.client.pubsub()

    async def health_check(self) -> bool:
        """Проверяет здоровье подключения к Redis."""
        try:
            return await self.client.ping()
        except (RedisError, RuntimeError) as e:
            await log_error(f"Health check Redis failed: {e}")
            return False
