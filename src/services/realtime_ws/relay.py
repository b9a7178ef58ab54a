# src/services/realtime_ws/relay.py
"""
Маршрутизация событий из Redis в хаб присутствия.

- {prefix}:user:{id} → unicast участнику ({"scope": key|None, "event": ...})
- {prefix}:scope:{key} → broadcast в область ({"event": ...})

conversation_closed закрывает каналы беседы после рассылки события.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from src.common.logger import log_warning
from src.core.presence.scopes import DEFAULT_PREFIX, PresenceScope
from src.services.realtime_ws.hub import PresenceHub

DeliveredCallback = Callable[[int], Awaitable[None]]

NEW_NOTIFICATION = "new_notification"
CONVERSATION_CLOSED = "conversation_closed"


class PresenceRelay:
    """Обработчик сообщений RedisSubscriber."""

    def __init__(
        self,
        hub: PresenceHub,
        prefix: str = DEFAULT_PREFIX,
        on_delivered: Optional[DeliveredCallback] = None,
    ) -> None:
        """
        Args:
            hub: Хаб присутствия процесса
            prefix: Префикс каналов Redis
            on_delivered: Вызывается с ID уведомления, доставленного хотя бы в один канал
        """
        self.hub = hub
        self._user_prefix = f"{prefix}:user:"
        self._scope_prefix = f"{prefix}:scope:"
        self._on_delivered = on_delivered

    async def __call__(self, channel: str, data: dict[str, Any]) -> None:
        event = data.get("event")
        if not isinstance(event, dict):
            await log_warning(f"Сообщение без события в канале {channel}")
            return

        if channel.startswith(self._user_prefix):
            await self._to_user(channel[len(self._user_prefix):], data.get("scope"), event)
        elif channel.startswith(self._scope_prefix):
            await self._to_scope(channel[len(self._scope_prefix):], event)

    async def _to_user(self, raw_id: str, scope_key: Optional[str], event: dict[str, Any]) -> None:
        try:
            user_id = int(raw_id)
            scope = PresenceScope.parse(scope_key) if scope_key else None
        except ValueError:
            await log_warning(f"Некорректный адресат события: {raw_id} / {scope_key}")
            return

        delivered = await self.hub.unicast(user_id, event, scope)
        if delivered and event.get("type") == NEW_NOTIFICATION and self._on_delivered is not None:
            notification_id = (event.get("notification") or {}).get("id")
            if notification_id is not None:
                await self._on_delivered(int(notification_id))

    async def _to_scope(self, scope_key: str, event: dict[str, Any]) -> None:
        try:
            scope = PresenceScope.parse(scope_key)
        except ValueError:
            await log_warning(f"Неизвестная область: {scope_key}")
            return

        await self.hub.broadcast(scope, event)
        if event.get("type") == CONVERSATION_CLOSED:
            await self.hub.close_scope(scope)
