# src/services/realtime_ws/app.py
"""
FastAPI приложение для Realtime WebSocket Gateway.

WebSocket endpoints (токен доступа в query-параметре token):
- /ws/notifications: уведомления пользователя (администраторы также
  получают admin_notifications)
- /ws/conversations/{conversation_id}: сообщения беседы
- /ws/monitor: надзор администраторов за беседами

REST endpoints:
- GET /health: проверка здоровья
- GET /stats: статистика каналов
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Optional

from fastapi import FastAPI, Query, WebSocket
from pydantic import BaseModel

from src.common.constants import TypeMsg
from src.common.errors import CoreError
from src.common.logger import log_info, log_warning
from src.config import settings
from src.core.auth import AuthenticationError
from src.core.presence.scopes import PresenceScope
from src.core.users.models import Actor
from src.services.realtime_ws.hub import Channel, PresenceHub
from src.services.realtime_ws.redis_subscriber import RedisSubscriber
from src.services.realtime_ws.relay import PresenceRelay
from src.shared.models.common import HealthStatus

if TYPE_CHECKING:
    from src.core.environment import Environment

SERVICE_NAME = "realtime_ws_gateway"

# Коды закрытия до регистрации канала
CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN = 4403


class StatsResponse(BaseModel):
    """Статистика каналов."""
    active_channels: int
    active_actors: int
    total_channels_ever: int
    total_dropped: int
    channels_by_scope: dict[str, int]


def _error_frame(error: CoreError) -> dict[str, Any]:
    return {"type": "error", **error.to_dict()}


def create_app(
    env: Optional["Environment"] = None,
    hub: Optional[PresenceHub] = None,
    subscribe: bool = True,
) -> FastAPI:
    """
    Args:
        env: Готовое окружение (по умолчанию собирается из настроек)
        hub: Хаб присутствия (по умолчанию из настроек presence)
        subscribe: Подписаться на события присутствия в Redis
    """
    owns_env = env is None
    presence = settings.presence
    hub = hub or PresenceHub(
        queue_size=presence.OUTBOUND_QUEUE_SIZE,
        ping_interval=presence.PING_INTERVAL,
        read_deadline=presence.READ_DEADLINE,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal env
        if owns_env:
            from src.core.environment import build_environment

            env = build_environment(settings)
            await env.start(start_dispatcher=False)

        subscriber: Optional[RedisSubscriber] = None
        if subscribe:
            prefix = presence.REDIS_CHANNEL_PREFIX
            relay = PresenceRelay(hub, prefix, on_delivered=env.notifications.repository.mark_delivered)
            subscriber = RedisSubscriber(
                env.redis,
                relay,
                patterns=(f"{prefix}:user:*", f"{prefix}:scope:*"),
            )
            await subscriber.start()
        await log_info("Realtime WS Gateway запущен", type_msg=TypeMsg.INFO)

        yield

        if subscriber is not None:
            await subscriber.stop()
        if owns_env:
            await env.close()

    app = FastAPI(
        title="Realtime WebSocket Gateway",
        description="Живые каналы уведомлений и бесед.",
        version=settings.system.VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.hub = hub

    async def reject(websocket: WebSocket, code: int) -> None:
        # Код закрытия доходит до клиента только после accept
        await websocket.accept()
        await websocket.close(code=code)

    async def authenticate(websocket: WebSocket, token: str) -> Optional[Actor]:
        if env.tokens is None:
            await reject(websocket, CLOSE_UNAUTHORIZED)
            return None
        try:
            return await env.tokens.authenticate(token)
        except AuthenticationError as e:
            await log_warning(f"WebSocket отклонён: {e.message}")
            await reject(websocket, CLOSE_UNAUTHORIZED)
            return None

    # === HEALTH / STATS ===

    @app.get("/health", response_model=HealthStatus, tags=["Health"])
    async def health_check() -> HealthStatus:
        return HealthStatus.from_checks(
            SERVICE_NAME,
            {"redis": await env.redis.health_check()},
            settings.system.VERSION,
        )

    @app.get("/stats", response_model=StatsResponse, tags=["Stats"])
    async def get_stats() -> StatsResponse:
        return StatsResponse(**hub.stats())

    # === WEBSOCKET ENDPOINTS ===

    @app.websocket("/ws/notifications")
    async def websocket_notifications(websocket: WebSocket, token: str = Query("")) -> None:
        """
        Входящие сообщения:
        - {"type": "mark_read", "notification_id": 1}
        - {"type": "mark_all_read"}
        - {"type": "ping"}
        """
        actor = await authenticate(websocket, token)
        if actor is None:
            return

        scopes = [PresenceScope.user_notifications()]
        if actor.is_admin:
            scopes.append(PresenceScope.admin_notifications())
        channel = await hub.register(websocket, actor.id, actor.kind, scopes)
        channel.offer({
            "type": "connected",
            "unread_count": await env.notifications.unread_count(actor.id),
        })

        async def on_message(ch: Channel, frame: dict[str, Any]) -> None:
            try:
                match frame.get("type"):
                    case "mark_read":
                        await env.notifications.mark_read(actor, int(frame.get("notification_id", 0)))
                    case "mark_all_read":
                        await env.notifications.mark_all_read(actor)
                    case other:
                        ch.offer({"type": "error", "message": f"unknown frame type: {other}"})
            except CoreError as e:
                ch.offer(_error_frame(e))

        await hub.serve(channel, on_message)

    @app.websocket("/ws/conversations/{conversation_id}")
    async def websocket_conversation(
        websocket: WebSocket,
        conversation_id: int,
        token: str = Query(""),
    ) -> None:
        """
        Входящие сообщения:
        - {"type": "message", "content": "..."}
        - {"type": "read"}
        - {"type": "ping"}
        """
        actor = await authenticate(websocket, token)
        if actor is None:
            return
        try:
            await env.conversations.require_access(actor, conversation_id)
        except CoreError as e:
            await log_warning(f"Доступ к беседе {conversation_id} для {actor.id} отклонён: {e.message}")
            await reject(websocket, CLOSE_FORBIDDEN)
            return

        channel = await hub.register(websocket, actor.id, actor.kind, [PresenceScope.conversation(conversation_id)])

        async def on_message(ch: Channel, frame: dict[str, Any]) -> None:
            try:
                match frame.get("type"):
                    case "message":
                        # Рассылка придёт обратно через Redis
                        await env.conversations.post_message(actor, conversation_id, str(frame.get("content", "")))
                    case "read":
                        await env.conversations.mark_conversation_read(actor, conversation_id)
                    case other:
                        ch.offer({"type": "error", "message": f"unknown frame type: {other}"})
            except CoreError as e:
                ch.offer(_error_frame(e))

        await hub.serve(channel, on_message)

    @app.websocket("/ws/monitor")
    async def websocket_monitor(websocket: WebSocket, token: str = Query("")) -> None:
        """Копии сообщений всех бесед. Только для администраторов."""
        actor = await authenticate(websocket, token)
        if actor is None:
            return
        if not actor.is_admin:
            await reject(websocket, CLOSE_FORBIDDEN)
            return

        channel = await hub.register(websocket, actor.id, actor.kind, [PresenceScope.user_monitor()])
        await hub.serve(channel)

    return app
