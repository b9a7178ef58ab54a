# src/infra/event_bus.py
"""
Шина доменных событий на базе RabbitMQ.
Через неё публикуются аудиторские события переходов бронирований
и исходы платежей.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable
from uuid import uuid4

import aio_pika
from aio_pika import ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue, AbstractRobustConnection

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info

if TYPE_CHECKING:
    from src.config.loader import RabbitMQSettings


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# ДОМЕННЫЕ СОБЫТИЯ
# =============================================================================

@dataclass
class DomainEvent:
    """Доменное событие."""
    event_id: str = field(default_factory=lambda: str(uuid4()))
    event_type: str = ""
    timestamp: str = field(default_factory=_utc_now_iso)
    payload: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        """Сериализует событие в JSON."""
        return json.dumps({
            "event_id": self.event_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }, ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, data: str) -> DomainEvent:
        """Десериализует событие из JSON."""
        parsed = json.loads(data)
        return cls(
            event_id=parsed.get("event_id", str(uuid4())),
            event_type=parsed.get("event_type", ""),
            timestamp=parsed.get("timestamp", ""),
            payload=parsed.get("payload", {}),
        )


class EventTypes:
    """Константы типов событий (routing keys)."""
    # Бронирования
    BOOKING_TRANSITIONED = "booking.transitioned"
    ASSIGNMENT_TRANSITIONED = "assignment.transitioned"

    # Платежи
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELLED = "payment.cancelled"
    PAYMENT_REFUNDED = "payment.refunded"

    # Выводы средств
    WITHDRAWAL_REQUESTED = "withdrawal.requested"
    WITHDRAWAL_APPROVED = "withdrawal.approved"
    WITHDRAWAL_REJECTED = "withdrawal.rejected"

    # Кошелёк
    LEDGER_DRIFT = "ledger.drift"

    # Все аудиторские события
    AUDIT_PATTERNS = ("booking.#", "assignment.#", "payment.#", "withdrawal.#", "ledger.#")


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """
    Шина событий на базе RabbitMQ.

    - Публикация событий в topic exchange
    - Подписка через именованные durable очереди
    - Автоматическое переподключение (connect_robust)
    """

    def __init__(self, config: "RabbitMQSettings | None" = None) -> None:
        self._config = config
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._handlers: dict[str, list[EventHandler]] = {}
        self._queues: dict[str, AbstractQueue] = {}

    @property
    def is_connected(self) -> bool:
        """Проверяет, активно ли соединение."""
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> None:
        """Подключается к RabbitMQ и объявляет exchange."""
        if self.is_connected:
            return

        if self._config is None:
            from src.config import settings
            self._config = settings.rabbitmq

        await log_info("Подключение к RabbitMQ...", type_msg=TypeMsg.INFO)

        self._connection = await aio_pika.connect_robust(self._config.url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self._config.RABBITMQ_PREFETCH_COUNT)

        self._exchange = await self._channel.declare_exchange(
            self._config.RABBITMQ_EXCHANGE,
            ExchangeType.TOPIC,
            durable=True,
        )

        await log_info(
            f"RabbitMQ подключён: {self._config.RABBITMQ_HOST}:{self._config.RABBITMQ_PORT}",
            type_msg=TypeMsg.INFO,
        )

    async def disconnect(self) -> None:
        """Закрывает соединение с RabbitMQ."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._channel = None
            self._exchange = None
            self._queues = {}
            await log_info("Соединение с RabbitMQ закрыто", type_msg=TypeMsg.INFO)

    async def publish(self, event: DomainEvent) -> None:
        """
        Публикует событие. Routing key равен event_type.

        Сбой публикации логируется и не прерывает вызывающую операцию:
        аудит не должен откатывать уже закоммиченный переход.
        """
        if not self.is_connected or self._exchange is None:
            await log_error(
                f"Не удалось опубликовать событие {event.event_type}: нет соединения с RabbitMQ",
                extra={"event_id": event.event_id},
            )
            return

        message = Message(
            body=event.to_json().encode(),
            content_type="application/json",
            message_id=event.event_id,
            timestamp=datetime.now(timezone.utc),
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await self._exchange.publish(message, routing_key=event.event_type)
        except aio_pika.exceptions.AMQPError as e:
            await log_error(f"Ошибка публикации события {event.event_type}: {e}")
            return

        await log_info(f"Событие опубликовано: {event.event_type}", type_msg=TypeMsg.DEBUG)

    async def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        queue_name: str | None = None,
    ) -> None:
        """
        Подписывается на события.

        Args:
            event_type: Routing key или паттерн (booking.#)
            handler: Асинхронный обработчик
            queue_name: Имя очереди (по умолчанию выводится из event_type)
        """
        if not self.is_connected or self._channel is None or self._exchange is None:
            await log_error("Не удалось подписаться: нет соединения с RabbitMQ")
            return

        self._handlers.setdefault(event_type, []).append(handler)

        if queue_name is None:
            safe = event_type.replace(".", "_").replace("#", "all").replace("*", "any")
            queue_name = f"treesindia.{safe}"

        if queue_name not in self._queues:
            queue = await self._channel.declare_queue(queue_name, durable=True)
            await queue.bind(self._exchange, routing_key=event_type)
            self._queues[queue_name] = queue
            await queue.consume(self._make_consumer(event_type))

        await log_info(f"Подписка на события: {event_type}", type_msg=TypeMsg.DEBUG)

    def _make_consumer(self, event_type: str) -> Callable[[aio_pika.abc.AbstractIncomingMessage], Awaitable[None]]:
        """Создаёт consumer, раздающий событие зарегистрированным обработчикам."""
        async def consumer(message: aio_pika.abc.AbstractIncomingMessage) -> None:
            # Исключение внутри process() приводит к reject без requeue
            async with message.process():
                try:
                    event = DomainEvent.from_json(message.body.decode())
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    await log_error(f"Битое сообщение в очереди {event_type}: {e}")
                    return

                for handler in self._handlers.get(event_type, []):
                    await handler(event)

        return consumer

    async def health_check(self) -> bool:
        """Проверяет здоровье подключения к RabbitMQ."""
        return self.is_connected
