# src/config/runtime.py
"""
Настройки, изменяемые администратором в рантайме.

Хранятся в таблице admin_configs, кэшируются в Redis.
Отсутствующие и некорректные значения заменяются значениями по умолчанию
из config.json (секции booking, wallet, scheduler).
"""

from __future__ import annotations

from datetime import time
from decimal import Decimal
from typing import TYPE_CHECKING, Annotated, Any

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from src.common.constants import TypeMsg
from src.common.errors import ValidationError
from src.common.logger import log_info, log_warning

if TYPE_CHECKING:
    from src.config.loader import Settings
    from src.infra.database import DatabaseManager
    from src.infra.redis_client import RedisClient


CACHE_KEY = "runtime_config"


class RuntimeSettings(BaseModel):
    """Типизированный снимок настраиваемых ключей."""

    working_hours_start: time = Field(default=time(9, 0))
    working_hours_end: time = Field(default=time(22, 0))
    booking_advance_days: int = Field(default=3, ge=0)
    booking_buffer_time_minutes: int = Field(default=30, ge=0)
    booking_hold_time_minutes: int = Field(default=7, ge=1)
    default_service_duration_minutes: int = Field(default=120, ge=1)
    quote_ttl_hours: int = Field(default=48, ge=1)
    push_retry_max: int = Field(default=5, ge=0)
    refund_policy_cutoff_minutes: int = Field(default=120, ge=0)
    refund_late_fraction: Decimal = Field(default=Decimal("0.5"), ge=0, le=1)
    refund_started_fraction: Decimal = Field(default=Decimal("0"), ge=0, le=1)
    inquiry_booking_fee: Decimal = Field(default=Decimal("100.00"), gt=0)
    min_recharge_amount: Decimal = Field(default=Decimal("100.00"), gt=0)
    max_recharge_amount: Decimal = Field(default=Decimal("50000.00"), gt=0)
    max_wallet_balance: Decimal = Field(default=Decimal("100000.00"), gt=0)
    withdrawal_reminder_after_hours: int = Field(default=24, ge=1)

    @classmethod
    def defaults_from(cls, settings: "Settings") -> "RuntimeSettings":
        """Значения по умолчанию из статической конфигурации."""
        b = settings.booking
        w = settings.wallet
        return cls(
            working_hours_start=b.WORKING_HOURS_START,
            working_hours_end=b.WORKING_HOURS_END,
            booking_advance_days=b.BOOKING_ADVANCE_DAYS,
            booking_buffer_time_minutes=b.BOOKING_BUFFER_TIME_MINUTES,
            booking_hold_time_minutes=b.BOOKING_HOLD_TIME_MINUTES,
            default_service_duration_minutes=b.DEFAULT_SERVICE_DURATION_MINUTES,
            quote_ttl_hours=b.QUOTE_TTL_HOURS,
            push_retry_max=b.PUSH_RETRY_MAX,
            refund_policy_cutoff_minutes=b.REFUND_POLICY_CUTOFF_MINUTES,
            refund_late_fraction=str(b.REFUND_LATE_FRACTION),
            refund_started_fraction=str(b.REFUND_STARTED_FRACTION),
            inquiry_booking_fee=str(b.INQUIRY_BOOKING_FEE),
            min_recharge_amount=str(w.MIN_RECHARGE_AMOUNT),
            max_recharge_amount=str(w.MAX_RECHARGE_AMOUNT),
            max_wallet_balance=str(w.MAX_WALLET_BALANCE),
            withdrawal_reminder_after_hours=settings.scheduler.WITHDRAWAL_REMINDER_AFTER_HOURS,
        )

    @classmethod
    def parse_value(cls, key: str, raw: Any) -> Any:
        """
        Приводит сырое значение из admin_configs к типу поля.

        Raises:
            KeyError: Неизвестный ключ
            pydantic.ValidationError: Значение не приводится к типу
        """
        field = cls.model_fields[key]
        return TypeAdapter(Annotated[field.annotation, field]).validate_python(raw)


class RuntimeConfig:
    """
    Доступ к настраиваемым ключам.

    Чтение идёт из кэша Redis, при промахе из admin_configs.
    Изменение значения сбрасывает кэш.
    """

    def __init__(
        self,
        db: "DatabaseManager",
        redis: "RedisClient",
        defaults: RuntimeSettings,
        cache_ttl: int = 60,
    ) -> None:
        self._db = db
        self._redis = redis
        self._defaults = defaults
        self._cache_ttl = cache_ttl

    @property
    def defaults(self) -> RuntimeSettings:
        return self._defaults

    async def get(self) -> RuntimeSettings:
        """Возвращает актуальный снимок настроек."""
        cached = await self._redis.get_model(CACHE_KEY, RuntimeSettings)
        if cached is not None:
            return cached

        snapshot = await self._load()
        await self._redis.set_model(CACHE_KEY, snapshot, ttl=self._cache_ttl)
        return snapshot

    async def _load(self) -> RuntimeSettings:
        rows = await self._db.fetch(
            "SELECT key, value FROM admin_configs WHERE is_active = TRUE"
        )
        values = self._defaults.model_dump()

        for row in rows:
            key = row["key"]
            if key not in RuntimeSettings.model_fields:
                continue
            try:
                values[key] = RuntimeSettings.parse_value(key, row["value"])
            except PydanticValidationError:
                await log_warning(
                    f"Некорректное значение admin_configs[{key}]={row['value']!r}, используется значение по умолчанию",
                )

        try:
            return RuntimeSettings.model_validate(values)
        except PydanticValidationError as e:
            # Набор значений несовместим целиком (например, end < start по ограничениям полей)
            await log_warning(f"Настройки admin_configs отклонены: {e}")
            return self._defaults

    async def set_value(self, key: str, value: Any, admin_id: int | None = None) -> RuntimeSettings:
        """
        Изменяет значение ключа и сбрасывает кэш.

        Args:
            key: Имя ключа
            value: Новое значение
            admin_id: Кто изменил

        Returns:
            Обновлённый снимок

        Raises:
            ValidationError: Неизвестный ключ или неверное значение
        """
        if key not in RuntimeSettings.model_fields:
            raise ValidationError(f"Неизвестный ключ настройки: {key}", {"key": key})
        try:
            parsed = RuntimeSettings.parse_value(key, value)
        except PydanticValidationError as e:
            raise ValidationError(f"Некорректное значение для {key}: {value!r}", {"key": key}) from e

        stored = parsed.strftime("%H:%M") if isinstance(parsed, time) else str(parsed)
        await self._db.execute(
            """
            INSERT INTO admin_configs (key, value, is_active, updated_by, updated_at)
            VALUES ($1, $2, TRUE, $3, NOW())
            ON CONFLICT (key) DO UPDATE SET
                value = EXCLUDED.value,
                is_active = TRUE,
                updated_by = EXCLUDED.updated_by,
                updated_at = EXCLUDED.updated_at
            """,
            key,
            stored,
            admin_id,
        )
        await self._redis.delete(CACHE_KEY)
        await log_info(f"Настройка {key} изменена на {stored} (admin={admin_id})", type_msg=TypeMsg.INFO)
        return await self.get()
