# src/core/availability/repository.py
"""
Занятые интервалы услуги за сутки.
"""

from __future__ import annotations

from datetime import datetime

from src.common.constants import SLOT_OCCUPYING_STATES, BookingState
from src.infra.database import DatabaseManager

# held учитывается отдельно: только с непросроченной заморозкой
_OCCUPYING = sorted(s.value for s in SLOT_OCCUPYING_STATES if s != BookingState.HELD)


class AvailabilityRepository:
    """Чтение бронирований, занимающих слоты."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def occupied_intervals(
        self,
        service_id: int,
        window_start: datetime,
        window_end: datetime,
        now: datetime,
    ) -> list[tuple[datetime, datetime]]:
        """
        Интервалы [start, end) активных бронирований, пересекающих окно.

        Просроченные held считаются освобождёнными, даже если сборщик
        ещё не перевёл их в expired.
        """
        rows = await self._db.fetch(
            """
            SELECT scheduled_start, scheduled_end FROM bookings
            WHERE service_id = $1
              AND scheduled_start < $3 AND scheduled_end > $2
              AND (state = ANY($4::text[]) OR (state = 'held' AND hold_expires_at > $5))
            ORDER BY scheduled_start
            """,
            service_id,
            window_start,
            window_end,
            _OCCUPYING,
            now,
        )
        return [(r["scheduled_start"], r["scheduled_end"]) for r in rows]
