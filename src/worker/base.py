# src/worker/base.py
"""
Базовый класс для потребителей доменных событий.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.infra.event_bus import DomainEvent

if TYPE_CHECKING:
    from src.infra.database import DatabaseManager
    from src.infra.event_bus import EventBus


def queue_suffix(pattern: str) -> str:
    """Имя очереди для паттерна routing key: booking.# -> booking_all."""
    return pattern.replace(".", "_").replace("#", "all").replace("*", "any")


class BaseWorker(ABC):
    """
    Потребитель событий шины.

    Каждый паттерн подписки получает собственную durable-очередь
    `treesindia.<имя воркера>.<паттерн>`, поэтому несколько экземпляров
    одного воркера делят поток событий между собой.
    """

    def __init__(self, event_bus: "EventBus", db: "DatabaseManager") -> None:
        self.event_bus = event_bus
        self.db = db
        self._running = False
        self.processed = 0
        self.failed = 0

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""

    @property
    @abstractmethod
    def subscriptions(self) -> List[str]:
        """Паттерны routing key."""

    @property
    def queue_prefix(self) -> str:
        return f"treesindia.{self.name.lower()}"

    @property
    def is_running(self) -> bool:
        return self._running

    @abstractmethod
    async def handle_event(self, event: DomainEvent) -> None:
        """Обрабатывает одно событие. Исключения перехватывает базовый класс."""

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        for pattern in self.subscriptions:
            await self.event_bus.subscribe(
                event_type=pattern,
                handler=self._on_event,
                queue_name=f"{self.queue_prefix}.{queue_suffix(pattern)}",
            )

        await log_info(
            f"Воркер {self.name} запущен, подписки: {', '.join(self.subscriptions)}",
            type_msg=TypeMsg.INFO,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        await log_info(
            f"Воркер {self.name} остановлен: обработано {self.processed}, ошибок {self.failed}",
            type_msg=TypeMsg.INFO,
        )

    async def _on_event(self, event: DomainEvent) -> None:
        if not self._running:
            return

        started = time.monotonic()
        try:
            await self.handle_event(event)
        except Exception as e:
            self.failed += 1
            await log_error(
                f"Воркер {self.name} не обработал {event.event_type}: {e}",
                extra={"event_id": event.event_id, "event_type": event.event_type, "payload": event.payload},
                exc_info=True,
            )
            return

        self.processed += 1
        await log_info(
            f"Воркер {self.name}: {event.event_type} за {time.monotonic() - started:.3f}с",
            type_msg=TypeMsg.DEBUG,
            extra={"event_id": event.event_id},
        )
