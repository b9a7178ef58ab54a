# src/core/environment.py
"""
Сборка окружения процесса.

Один экземпляр на процесс: подключения к инфраструктуре и доменные
сервисы, связанные через конструкторы.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.config.runtime import RuntimeConfig, RuntimeSettings
from src.core.auth import TokenService
from src.core.availability.service import AvailabilityService
from src.core.bookings import BookingNotifier, BookingService
from src.core.catalog.repository import CatalogRepository
from src.core.conversations import ConversationService
from src.core.ledger.service import LedgerService
from src.core.notifications import NotificationService, PushDispatcher
from src.core.notifications.repository import NotificationRepository
from src.core.payments.hooks import PaymentHooks
from src.core.payments.service import PaymentService
from src.core.presence import RedisPresencePublisher
from src.core.users.repository import UserRepository
from src.infra.database import DatabaseManager
from src.infra.event_bus import EventBus
from src.infra.payment_gateway import RazorpayGateway
from src.infra.push_provider import PushProvider
from src.infra.redis_client import RedisClient

if TYPE_CHECKING:
    from src.config.loader import Settings


@dataclass
class Environment:
    """Инфраструктура и сервисы одного процесса."""
    settings: "Settings"
    db: DatabaseManager
    redis: RedisClient
    event_bus: EventBus
    runtime: RuntimeConfig
    gateway: RazorpayGateway
    push: PushProvider
    users: UserRepository
    catalog: CatalogRepository
    ledger: LedgerService
    payments: PaymentService
    availability: AvailabilityService
    notifications: NotificationService
    dispatcher: PushDispatcher
    bookings: BookingService
    conversations: ConversationService
    tokens: Optional[TokenService]

    async def start(self, apply_schema: bool = False, start_dispatcher: bool = True) -> None:
        """
        Подключается к PostgreSQL, Redis и RabbitMQ.

        Args:
            apply_schema: Применить migrations/init.sql
            start_dispatcher: Запустить фоновую отправку push
        """
        await self.db.connect()
        if apply_schema:
            await self.db.apply_schema()
        await self.redis.connect()
        await self.event_bus.connect()
        if start_dispatcher:
            await self.dispatcher.start()
        await log_info("Окружение запущено", type_msg=TypeMsg.INFO)

    async def close(self) -> None:
        await self.dispatcher.stop()
        await self.push.close()
        await self.gateway.close()
        await self.event_bus.disconnect()
        await self.redis.disconnect()
        await self.db.disconnect()
        await log_info("Окружение остановлено", type_msg=TypeMsg.INFO)


def build_environment(settings: "Settings") -> Environment:
    """
    Создаёт объекты окружения без подключения к инфраструктуре.

    Args:
        settings: Статические настройки

    Returns:
        Environment, который нужно запустить через start()
    """
    db = DatabaseManager(settings.database)
    redis = RedisClient(settings.redis)
    event_bus = EventBus(settings.rabbitmq)
    runtime = RuntimeConfig(
        db,
        redis,
        RuntimeSettings.defaults_from(settings),
        cache_ttl=settings.redis.RUNTIME_CONFIG_TTL,
    )
    currency = settings.domain.CURRENCY

    users = UserRepository(db)
    catalog = CatalogRepository(db)

    presence = RedisPresencePublisher(redis, settings.presence.REDIS_CHANNEL_PREFIX)
    push = PushProvider(settings.push)
    notification_repository = NotificationRepository(db)
    dispatcher = PushDispatcher(
        push,
        notification_repository,
        runtime,
        queue_size=settings.push.PUSH_QUEUE_SIZE,
        backoff_base=settings.push.PUSH_BACKOFF_BASE,
        backoff_max=settings.push.PUSH_BACKOFF_MAX,
    )
    notifications = NotificationService(
        db,
        presence,
        dispatcher=dispatcher,
        users=users,
        repository=notification_repository,
    )

    ledger = LedgerService(db, users=users)
    gateway = RazorpayGateway(settings.gateway, currency=currency)
    payments = PaymentService(
        db,
        gateway,
        ledger,
        runtime,
        event_bus,
        hooks=PaymentHooks(),
        notifications=notifications,
        users=users,
        catalog=catalog,
        currency=currency,
        min_withdrawal_amount=Decimal(str(settings.wallet.MIN_WITHDRAWAL_AMOUNT)),
    )
    availability = AvailabilityService(db, runtime, settings.domain.TIMEZONE, catalog=catalog)
    bookings = BookingService(
        db,
        availability,
        payments,
        runtime,
        BookingNotifier(event_bus, notifications),
        catalog=catalog,
        users=users,
    )
    conversations = ConversationService(db, presence)
    tokens = TokenService(settings.auth, users) if settings.auth.JWT_SECRET else None

    return Environment(
        settings=settings,
        db=db,
        redis=redis,
        event_bus=event_bus,
        runtime=runtime,
        gateway=gateway,
        push=push,
        users=users,
        catalog=catalog,
        ledger=ledger,
        payments=payments,
        availability=availability,
        notifications=notifications,
        dispatcher=dispatcher,
        bookings=bookings,
        conversations=conversations,
        tokens=tokens,
    )
