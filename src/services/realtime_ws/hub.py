# src/services/realtime_ws/hub.py
"""
Хаб присутствия: реестр каналов клиентов и рассылка событий.

На каждый канал одна задача чтения (serve) и одна задача записи,
разбирающая ограниченную исходящую очередь. Канал с переполненной
очередью отключается. Порядок событий внутри канала сохраняется.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect

from src.common.constants import ActorKind, TypeMsg
from src.common.logger import log_info, log_warning
from src.core.presence.scopes import PresenceScope

InboundHandler = Callable[["Channel", dict[str, Any]], Awaitable[None]]

# Маркер завершения очереди записи
_CLOSE = object()


@dataclass(eq=False)
class Channel:
    """Постоянное соединение одного клиента с набором областей."""
    websocket: WebSocket
    actor_id: int
    actor_kind: ActorKind
    scopes: tuple[PresenceScope, ...]
    queue_size: int = 64
    id: str = field(default_factory=lambda: uuid4().hex)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    closed: bool = False
    sent: int = 0

    def __post_init__(self) -> None:
        self.queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self.queue_size)
        self.writer: Optional[asyncio.Task] = None

    @property
    def scope_keys(self) -> frozenset[str]:
        return frozenset(scope.key for scope in self.scopes)

    def offer(self, event: dict[str, Any]) -> bool:
        """Ставит событие в очередь без ожидания. False, если очередь полна или канал закрыт."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True


class PresenceHub:
    """
    Реестр каналов по участникам и областям.

    Поддерживает:
    - register / unregister каналов
    - broadcast в область и unicast участнику
    - закрытие всех каналов области
    - ping/pong с дедлайном чтения
    """

    def __init__(
        self,
        queue_size: int = 64,
        ping_interval: float = 25.0,
        read_deadline: float = 60.0,
    ) -> None:
        self.queue_size = queue_size
        self.ping_interval = ping_interval
        self.read_deadline = read_deadline
        self._by_actor: dict[int, set[Channel]] = {}
        self._by_scope: dict[str, set[Channel]] = {}
        self._total_channels = 0
        self._total_dropped = 0

    @property
    def active_channels(self) -> int:
        return sum(len(channels) for channels in self._by_actor.values())

    async def register(
        self,
        websocket: WebSocket,
        actor_id: int,
        actor_kind: ActorKind,
        scopes: Iterable[PresenceScope],
    ) -> Channel:
        """
        Принимает соединение и регистрирует канал.

        У участника может быть несколько каналов, у канала несколько областей.
        """
        await websocket.accept()
        channel = Channel(
            websocket=websocket,
            actor_id=actor_id,
            actor_kind=actor_kind,
            scopes=tuple(scopes),
            queue_size=self.queue_size,
        )
        self._by_actor.setdefault(actor_id, set()).add(channel)
        for key in channel.scope_keys:
            self._by_scope.setdefault(key, set()).add(channel)
        channel.writer = asyncio.create_task(self._write_loop(channel), name=f"presence-writer-{channel.id}")
        self._total_channels += 1
        await log_info(
            f"Канал {channel.id} открыт: участник {actor_id}, области {sorted(channel.scope_keys)}",
            type_msg=TypeMsg.DEBUG,
        )
        return channel

    async def unregister(self, channel: Channel, code: int = 1000) -> None:
        """Снимает канал с учёта и закрывает соединение."""
        if not self._detach(channel):
            return
        if channel.writer is not None and channel.writer is not asyncio.current_task():
            await asyncio.gather(channel.writer, return_exceptions=True)
        await self._close_socket(channel, code)
        await log_info(f"Канал {channel.id} закрыт (код {code})", type_msg=TypeMsg.DEBUG)

    def _detach(self, channel: Channel) -> bool:
        """Синхронно убирает канал из реестра. False, если уже убран."""
        if channel.closed:
            return False
        self._by_actor.get(channel.actor_id, set()).discard(channel)
        if not self._by_actor.get(channel.actor_id):
            self._by_actor.pop(channel.actor_id, None)
        for key in channel.scope_keys:
            self._by_scope.get(key, set()).discard(channel)
            if not self._by_scope.get(key):
                self._by_scope.pop(key, None)
        # offer(_CLOSE) должен пройти до флага closed
        queued = channel.offer(_CLOSE)
        channel.closed = True
        if not queued and channel.writer is not None:
            channel.writer.cancel()
        return True

    async def broadcast(self, scope: PresenceScope, event: dict[str, Any]) -> int:
        """
        Рассылает событие всем каналам области.

        Returns:
            Количество каналов, принявших событие
        """
        return await self._fan_out(list(self._by_scope.get(scope.key, ())), event)

    async def unicast(self, actor_id: int, event: dict[str, Any], scope: Optional[PresenceScope] = None) -> int:
        """Событие во все каналы участника (или только в каналы одной области)."""
        channels = [
            ch for ch in self._by_actor.get(actor_id, ())
            if scope is None or scope.key in ch.scope_keys
        ]
        return await self._fan_out(channels, event)

    async def close_scope(self, scope: PresenceScope, code: int = 1000) -> int:
        """Закрывает все каналы области. Последующие рассылки их не видят."""
        channels = list(self._by_scope.get(scope.key, ()))
        for channel in channels:
            self._detach(channel)
        for channel in channels:
            if channel.writer is not None:
                await asyncio.gather(channel.writer, return_exceptions=True)
            await self._close_socket(channel, code)
        if channels:
            await log_info(f"Область {scope.key} закрыта: каналов {len(channels)}", type_msg=TypeMsg.INFO)
        return len(channels)

    async def serve(self, channel: Channel, on_message: Optional[InboundHandler] = None) -> None:
        """
        Читает входящие кадры канала до отключения или пропуска дедлайна.

        Сервер шлёт ping каждые ping_interval секунд, любой входящий кадр
        продлевает дедлайн чтения.
        """
        pinger = asyncio.create_task(self._ping_loop(channel), name=f"presence-ping-{channel.id}")
        code = 1000
        try:
            while not channel.closed:
                try:
                    frame = await asyncio.wait_for(channel.websocket.receive_json(), timeout=self.read_deadline)
                except asyncio.TimeoutError:
                    await log_warning(f"Канал {channel.id}: нет ответа {self.read_deadline}с, закрываем")
                    code = 1001
                    break
                except (WebSocketDisconnect, RuntimeError):
                    # RuntimeError: starlette после закрытия сокета
                    break
                except ValueError:
                    channel.offer({"type": "error", "message": "invalid frame"})
                    continue

                frame_type = frame.get("type") if isinstance(frame, dict) else None
                if frame_type == "ping":
                    channel.offer({"type": "pong"})
                elif frame_type == "pong":
                    continue
                elif on_message is not None:
                    await on_message(channel, frame)
        finally:
            pinger.cancel()
            await asyncio.gather(pinger, return_exceptions=True)
            await self.unregister(channel, code)

    def stats(self) -> dict[str, Any]:
        by_scope: dict[str, int] = {}
        for key, channels in self._by_scope.items():
            kind = key.partition(":")[0]
            by_scope[kind] = by_scope.get(kind, 0) + len(channels)
        return {
            "active_channels": self.active_channels,
            "active_actors": len(self._by_actor),
            "total_channels_ever": self._total_channels,
            "total_dropped": self._total_dropped,
            "channels_by_scope": by_scope,
        }

    async def _fan_out(self, channels: list[Channel], event: dict[str, Any]) -> int:
        delivered = 0
        slow: list[Channel] = []
        for channel in channels:
            if channel.offer(event):
                delivered += 1
            elif not channel.closed:
                slow.append(channel)
        for channel in slow:
            self._total_dropped += 1
            await log_warning(
                f"Канал {channel.id} участника {channel.actor_id} не успевает, отключаем",
                extra={"scopes": sorted(channel.scope_keys)},
            )
            await self.unregister(channel, code=1013)
        return delivered

    async def _write_loop(self, channel: Channel) -> None:
        while True:
            event = await channel.queue.get()
            if event is _CLOSE:
                return
            try:
                await channel.websocket.send_json(event)
            except Exception as e:
                await log_warning(f"Запись в канал {channel.id} не удалась: {e}")
                self._detach(channel)
                return
            channel.sent += 1

    async def _ping_loop(self, channel: Channel) -> None:
        while not channel.closed:
            await asyncio.sleep(self.ping_interval)
            if not channel.offer({"type": "ping"}) and not channel.closed:
                await self.unregister(channel, code=1013)
                return

    @staticmethod
    async def _close_socket(channel: Channel, code: int) -> None:
        try:
            await channel.websocket.close(code=code)
        except (RuntimeError, WebSocketDisconnect):
            # Соединение уже закрыто клиентом
            pass
