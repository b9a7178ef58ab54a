# src/core/availability/service.py
"""
Свободные слоты услуги на дату.

Сетка слотов привязана к локальной полуночи настроенного часового пояса
с шагом duration + buffer. Слот выдаётся, если целиком помещается в
рабочие часы, начинается не раньше now + buffer и не пересекается с
активными бронированиями (с учётом буфера после каждого).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import TYPE_CHECKING, Any, Iterable, Optional
from zoneinfo import ZoneInfo

from src.common.constants import TypeMsg
from src.common.errors import ValidationError
from src.common.logger import log_info
from src.core.availability.repository import AvailabilityRepository
from src.core.catalog.models import Service
from src.core.catalog.repository import CatalogRepository

if TYPE_CHECKING:
    from src.config.runtime import RuntimeConfig, RuntimeSettings
    from src.infra.database import DatabaseManager


@dataclass(frozen=True, order=True)
class Slot:
    """Полуоткрытый интервал [start, end) в UTC."""
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end

    def to_dict(self, tz: Optional[ZoneInfo] = None) -> dict[str, Any]:
        data = {"start": self.start.isoformat(), "end": self.end.isoformat()}
        if tz is not None:
            data["local_time"] = self.start.astimezone(tz).strftime("%H:%M")
        return data


def compute_free_slots(
    day: date,
    tz: ZoneInfo,
    working_start: time,
    working_end: time,
    duration_minutes: int,
    buffer_minutes: int,
    occupied: Iterable[tuple[datetime, datetime]],
    now: datetime,
) -> list[Slot]:
    """
    Свободные слоты за локальные сутки.

    Args:
        day: Локальная дата
        tz: Часовой пояс площадки
        working_start: Начало рабочего дня (локальное)
        working_end: Конец рабочего дня (локальное)
        duration_minutes: Длительность услуги
        buffer_minutes: Буфер между бронированиями
        occupied: Занятые интервалы [start, end)
        now: Текущий момент (aware)

    Returns:
        Слоты по возрастанию начала
    """
    if duration_minutes <= 0:
        raise ValidationError("Длительность услуги должна быть положительной")

    midnight = datetime.combine(day, time(0, 0), tzinfo=tz)
    open_at = datetime.combine(day, working_start, tzinfo=tz)
    close_at = datetime.combine(day, working_end, tzinfo=tz)
    duration = timedelta(minutes=duration_minutes)
    buffer = timedelta(minutes=buffer_minutes)
    step = duration + buffer
    earliest = now + buffer

    # Буфер после каждого бронирования
    busy = [(start, end + buffer) for start, end in occupied]

    # Первый узел сетки не раньше открытия
    offset = open_at - midnight
    steps_before_open = -(-offset // step)
    candidate = midnight + step * steps_before_open

    slots: list[Slot] = []
    while candidate + duration <= close_at:
        slot = Slot(
            start=candidate.astimezone(timezone.utc),
            end=(candidate + duration).astimezone(timezone.utc),
        )
        if slot.start >= earliest and not any(slot.overlaps(b_start, b_end) for b_start, b_end in busy):
            slots.append(slot)
        candidate += step
    return slots


class AvailabilityService:
    """Сервис доступности слотов."""

    def __init__(
        self,
        db: "DatabaseManager",
        runtime: "RuntimeConfig",
        timezone_name: str = "Asia/Kolkata",
        catalog: CatalogRepository | None = None,
        repository: AvailabilityRepository | None = None,
    ) -> None:
        self.runtime = runtime
        self.tz = ZoneInfo(timezone_name)
        self.catalog = catalog or CatalogRepository(db)
        self.repository = repository or AvailabilityRepository(db)

    def local_date(self, moment: datetime) -> date:
        return moment.astimezone(self.tz).date()

    @staticmethod
    def service_duration(service: Service, config: "RuntimeSettings") -> int:
        return service.duration_minutes or config.default_service_duration_minutes

    async def free_slots(
        self,
        service_id: int,
        day: date,
        now: Optional[datetime] = None,
        duration_minutes: Optional[int] = None,
    ) -> list[Slot]:
        """
        Свободные слоты услуги на дату.

        Args:
            service_id: ID услуги
            day: Локальная дата
            now: Текущий момент (по умолчанию сейчас)
            duration_minutes: Явная длительность (для inquiry по смете)

        Raises:
            NotFoundError: Услуга не найдена
            ValidationError: Услуга отключена или дата вне окна бронирования
        """
        now = now or datetime.now(timezone.utc)
        service = await self.catalog.require_service(service_id)
        if not service.active:
            raise ValidationError(f"Услуга {service_id} недоступна", {"service_id": service_id})

        config = await self.runtime.get()
        today = self.local_date(now)
        last_day = today + timedelta(days=config.booking_advance_days)
        if day < today or day > last_day:
            raise ValidationError(
                f"Дата должна быть в интервале {today} - {last_day}",
                {"date": day.isoformat(), "from": today.isoformat(), "to": last_day.isoformat()},
            )

        window_start = datetime.combine(day, time(0, 0), tzinfo=self.tz)
        window_end = window_start + timedelta(days=1)
        occupied = await self.repository.occupied_intervals(service_id, window_start, window_end, now)

        slots = compute_free_slots(
            day=day,
            tz=self.tz,
            working_start=config.working_hours_start,
            working_end=config.working_hours_end,
            duration_minutes=duration_minutes or self.service_duration(service, config),
            buffer_minutes=config.booking_buffer_time_minutes,
            occupied=occupied,
            now=now,
        )
        await log_info(
            f"Слоты услуги {service_id} на {day}: свободно {len(slots)}, занято {len(occupied)}",
            type_msg=TypeMsg.DEBUG,
        )
        return slots

    async def ensure_slot_free(
        self,
        service_id: int,
        start: datetime,
        end: datetime,
        now: Optional[datetime] = None,
        duration_minutes: Optional[int] = None,
    ) -> Slot:
        """
        Проверяет, что [start, end) входит в свободную сетку.

        Raises:
            ValidationError: Слот не свободен или не совпадает с сеткой
        """
        if start.tzinfo is None or end.tzinfo is None:
            raise ValidationError("Время слота должно содержать часовой пояс")
        wanted = Slot(start=start.astimezone(timezone.utc), end=end.astimezone(timezone.utc))
        free = await self.free_slots(service_id, self.local_date(start), now, duration_minutes)
        if wanted not in free:
            raise ValidationError(
                "Выбранный слот недоступен",
                {"service_id": service_id, "start": wanted.start.isoformat(), "end": wanted.end.isoformat()},
            )
        return wanted
