# src/worker/audit.py
"""
Воркер аудита.

Сохраняет переходы бронирований, назначений, платежей и выводов
в audit_events. Повторная доставка события не создаёт дубликат.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.infra.event_bus import DomainEvent, EventTypes
from src.worker.base import BaseWorker


class AuditWorker(BaseWorker):
    """Запись аудиторских событий."""

    @property
    def name(self) -> str:
        return "AuditWorker"

    @property
    def subscriptions(self) -> List[str]:
        return list(EventTypes.AUDIT_PATTERNS)

    async def handle_event(self, event: DomainEvent) -> None:
        payload = event.payload
        status = await self.db.execute(
            """
            INSERT INTO audit_events (
                event_id, event_type, entity_kind, entity_id, actor_id, payload, occurred_at
            )
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
            ON CONFLICT (event_id) DO NOTHING
            """,
            event.event_id,
            event.event_type,
            payload.get("entity_kind"),
            _as_int(payload.get("entity_id")),
            _as_int(payload.get("actor_id")),
            payload,
            _parse_timestamp(event.timestamp),
        )
        if status == "INSERT 0 0":
            await log_info(f"Событие {event.event_id} уже записано", type_msg=TypeMsg.DEBUG)


def _as_int(value: object) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_timestamp(raw: str) -> datetime:
    if raw:
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)
