# src/core/notifications/service.py
"""
Сервис уведомлений.

Уведомление сохраняется в БД, push ставится в очередь диспетчера,
открытые каналы пользователя получают событие со счётчиком непрочитанных.
Сбой push или рассылки по каналам не блокирует создание уведомления.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from src.common.constants import NotificationKind, TypeMsg
from src.common.errors import ForbiddenError, NotFoundError, ValidationError
from src.common.logger import log_info, log_warning
from src.core.notifications.models import DeviceToken, Notification, PushJob
from src.core.notifications.repository import NotificationRepository
from src.core.presence.scopes import PresenceScope
from src.core.users.models import Actor
from src.core.users.repository import UserRepository

if TYPE_CHECKING:
    from src.core.notifications.dispatcher import PushDispatcher
    from src.core.presence.publisher import PresenceSink
    from src.infra.database import DatabaseManager


NEW_NOTIFICATION = "new_notification"
UNREAD_COUNT_UPDATE = "unread_count_update"

_PLATFORMS = frozenset({"android", "ios", "web"})


class NotificationService:
    """
    Сервис уведомлений.

    Ответственности:
    - Хранение уведомлений и счётчик непрочитанных
    - Постановка push в очередь
    - События для открытых каналов пользователя и администраторов
    """

    def __init__(
        self,
        db: "DatabaseManager",
        presence: "PresenceSink",
        dispatcher: "PushDispatcher | None" = None,
        users: UserRepository | None = None,
        repository: NotificationRepository | None = None,
    ) -> None:
        """
        Args:
            db: Менеджер базы данных
            presence: Публикация событий в каналы присутствия
            dispatcher: Очередь push (None отключает push)
            users: Репозиторий участников
            repository: Репозиторий уведомлений
        """
        self.presence = presence
        self.dispatcher = dispatcher
        self.users = users or UserRepository(db)
        self.repository = repository or NotificationRepository(db)

    async def create(
        self,
        user_id: int,
        kind: NotificationKind,
        title: str,
        body: str,
        data: Optional[dict[str, Any]] = None,
    ) -> Notification:
        """
        Создаёт уведомление пользователю.

        Args:
            user_id: Получатель
            kind: Тип уведомления
            title: Заголовок
            body: Текст
            data: Дополнительные данные для клиента

        Returns:
            Сохранённое уведомление
        """
        notification = await self._store(user_id, kind, title, body, data)
        unread = await self.repository.unread_count(user_id)
        await self._broadcast_to_user(
            user_id,
            {
                "type": NEW_NOTIFICATION,
                "notification": notification.model_dump(mode="json"),
                "unread_count": unread,
            },
        )
        return notification

    async def notify_admins(
        self,
        kind: NotificationKind,
        title: str,
        body: str,
        data: Optional[dict[str, Any]] = None,
    ) -> list[Notification]:
        """
        По уведомлению каждому активному администратору и одно событие
        в область admin_notifications.
        """
        admin_ids = await self.users.list_admin_ids()
        created = [await self._store(admin_id, kind, title, body, data) for admin_id in admin_ids]
        if created:
            await self.presence.to_scope(
                PresenceScope.admin_notifications(),
                {
                    "type": NEW_NOTIFICATION,
                    "kind": kind.value,
                    "title": title,
                    "body": body,
                    "data": data or {},
                    "notification_ids": [n.id for n in created],
                },
            )
        await log_info(
            f"Уведомление {kind.value} отправлено {len(created)} администраторам",
            type_msg=TypeMsg.DEBUG,
        )
        return created

    async def mark_read(self, actor: Actor, notification_id: int) -> Notification:
        """
        Отмечает уведомление прочитанным.

        Raises:
            NotFoundError: Уведомление не найдено
            ForbiddenError: Уведомление другого пользователя
        """
        notification = await self.repository.mark_read(notification_id, actor.id)
        if notification is None:
            existing = await self.repository.get(notification_id)
            if existing is None:
                raise NotFoundError(f"Уведомление {notification_id} не найдено", {"notification_id": notification_id})
            raise ForbiddenError("Уведомление принадлежит другому пользователю", {"notification_id": notification_id})

        await self._broadcast_unread(actor.id)
        return notification

    async def mark_all_read(self, actor: Actor) -> int:
        """
        Returns:
            Количество отмеченных уведомлений
        """
        updated = await self.repository.mark_all_read(actor.id)
        await self._broadcast_unread(actor.id)
        return updated

    async def unread_count(self, user_id: int) -> int:
        return await self.repository.unread_count(user_id)

    async def list_notifications(
        self,
        actor: Actor,
        unread_only: bool = False,
        page: int = 1,
        page_size: int = 20,
    ) -> list[Notification]:
        if page < 1 or not 1 <= page_size <= 100:
            raise ValidationError("Некорректная страница", {"page": page, "page_size": page_size})
        return await self.repository.list_for_user(
            actor.id,
            unread_only=unread_only,
            limit=page_size,
            offset=(page - 1) * page_size,
        )

    # =========================================================================
    # УСТРОЙСТВА
    # =========================================================================

    async def register_device(self, actor: Actor, token: str, platform: str = "android") -> DeviceToken:
        """
        Raises:
            ValidationError: Пустой токен или неизвестная платформа
        """
        token = (token or "").strip()
        if not token:
            raise ValidationError("Токен устройства пуст")
        if platform not in _PLATFORMS:
            raise ValidationError(f"Неизвестная платформа: {platform}", {"platform": platform})
        device = await self.repository.upsert_token(actor.id, token, platform)
        await log_info(f"Устройство {platform} зарегистрировано для {actor.id}", type_msg=TypeMsg.DEBUG)
        return device

    async def unregister_device(self, actor: Actor, token: str) -> bool:
        return await self.repository.deactivate_token(actor.id, token)

    # =========================================================================
    # ВСПОМОГАТЕЛЬНОЕ
    # =========================================================================

    async def _store(
        self,
        user_id: int,
        kind: NotificationKind,
        title: str,
        body: str,
        data: Optional[dict[str, Any]],
    ) -> Notification:
        notification = await self.repository.insert(user_id, kind, title, body, data or {})
        await self._enqueue_push(notification)
        return notification

    async def _enqueue_push(self, notification: Notification) -> None:
        if self.dispatcher is None:
            return
        tokens = await self.repository.list_active_tokens(notification.user_id)
        data = {**notification.data, "notification_id": notification.id, "kind": notification.kind.value}
        for token in tokens:
            job = PushJob(
                notification_id=notification.id,
                token=token,
                title=notification.title,
                body=notification.body,
                data=data,
            )
            if not self.dispatcher.enqueue(job):
                await log_warning(
                    f"Очередь push заполнена, уведомление {notification.id} без push",
                    extra={"notification_id": notification.id},
                )

    async def _broadcast_to_user(self, user_id: int, event: dict[str, Any]) -> None:
        await self.presence.to_user(user_id, event, PresenceScope.user_notifications())

    async def _broadcast_unread(self, user_id: int) -> None:
        unread = await self.repository.unread_count(user_id)
        await self._broadcast_to_user(user_id, {"type": UNREAD_COUNT_UPDATE, "unread_count": unread})
