# src/config/loader.py
"""
Загрузчик конфигурации проекта.
Статические настройки берутся только из config/config.json.
Секреты переопределяются из переменных окружения и .env.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "treesindia"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    RUN_DEV_MODE: bool = True
    COMPONENT_MODE: str = "all"


class DeploymentSettings(BaseModel):
    """Порты и хосты компонентов."""
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8080
    REALTIME_WS_HOST: str = "0.0.0.0"
    REALTIME_WS_PORT: int = 8089
    WORKER_INSTANCES_COUNT: int = 1


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = True
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760


class DomainSettings(BaseModel):
    """Регион и валюта маркетплейса."""
    DOMAIN: str = "treesindia.com"
    TIMEZONE: str = "Asia/Kolkata"
    CURRENCY: str = "INR"


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "treesindia"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "treesindia"
    REDIS_MAX_CONNECTIONS: int = 50
    RUNTIME_CONFIG_TTL: int = 60

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("REDIS_PASSWORD", "")
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ."""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "treesindia.events"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class BookingSettings(BaseModel):
    """
    Значения по умолчанию для настраиваемых в рантайме ключей бронирования.
    Актуальные значения хранятся в admin_configs (см. RuntimeConfig).
    """
    WORKING_HOURS_START: str = "09:00"
    WORKING_HOURS_END: str = "22:00"
    BOOKING_ADVANCE_DAYS: int = 3
    BOOKING_BUFFER_TIME_MINUTES: int = 30
    BOOKING_HOLD_TIME_MINUTES: int = 7
    DEFAULT_SERVICE_DURATION_MINUTES: int = 120
    QUOTE_TTL_HOURS: int = 48
    INQUIRY_BOOKING_FEE: float = 100.0
    REFUND_POLICY_CUTOFF_MINUTES: int = 120
    REFUND_LATE_FRACTION: float = 0.5
    REFUND_STARTED_FRACTION: float = 0.0
    PUSH_RETRY_MAX: int = 5


class WalletSettings(BaseModel):
    """Лимиты кошелька."""
    MIN_RECHARGE_AMOUNT: float = 100.0
    MAX_RECHARGE_AMOUNT: float = 50000.0
    MAX_WALLET_BALANCE: float = 100000.0
    MIN_WITHDRAWAL_AMOUNT: float = 100.0


class GatewaySettings(BaseModel):
    """Настройки платёжного шлюза (Razorpay-совместимый REST)."""
    GATEWAY_BASE_URL: str = "https://api.razorpay.com/v1"
    GATEWAY_KEY_ID: str = ""
    GATEWAY_KEY_SECRET: str = ""
    GATEWAY_WEBHOOK_SECRET: str = ""
    GATEWAY_PAYOUT_ACCOUNT_NUMBER: str = ""
    GATEWAY_TIMEOUT: float = 10.0
    GATEWAY_MAX_CONNECTIONS: int = 20


class PushSettings(BaseModel):
    """Настройки push-провайдера (FCM-совместимый REST)."""
    PUSH_URL: str = "https://fcm.googleapis.com/fcm/send"
    PUSH_SERVER_KEY: str = ""
    PUSH_TIMEOUT: float = 5.0
    PUSH_MAX_CONNECTIONS: int = 20
    PUSH_QUEUE_SIZE: int = 1000
    PUSH_BACKOFF_BASE: float = 1.0
    PUSH_BACKOFF_MAX: float = 60.0


class AuthSettings(BaseModel):
    """Настройки JWT."""
    JWT_SECRET: str = ""
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_TTL_MINUTES: int = 60
    REFRESH_TOKEN_TTL_DAYS: int = 30


class PresenceSettings(BaseModel):
    """Настройки хаба присутствия."""
    OUTBOUND_QUEUE_SIZE: int = 64
    PING_INTERVAL: float = 25.0
    READ_DEADLINE: float = 60.0
    REDIS_CHANNEL_PREFIX: str = "presence"


class SchedulerSettings(BaseModel):
    """Периодичность фоновых задач (секунды)."""
    EXPIRE_HOLDS_INTERVAL: int = 60
    EXPIRE_QUOTES_INTERVAL: int = 3600
    WITHDRAWAL_REMINDERS_INTERVAL: int = 21600
    RECONCILE_BALANCES_INTERVAL: int = 86400
    RETRY_GATEWAY_ORDERS_INTERVAL: int = 300
    RESUME_PAID_BOOKINGS_INTERVAL: int = 300
    WITHDRAWAL_REMINDER_AFTER_HOURS: int = 24
    MISFIRE_GRACE_SECONDS: int = 60


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    domain: DomainSettings = Field(default_factory=DomainSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    booking: BookingSettings = Field(default_factory=BookingSettings)
    wallet: WalletSettings = Field(default_factory=WalletSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    push: PushSettings = Field(default_factory=PushSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    presence: PresenceSettings = Field(default_factory=PresenceSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)

    @classmethod
    def from_dict(cls, config_data: dict[str, Any]) -> "Settings":
        """
        Раскладывает плоский словарь ключей по секциям.
        Секреты и адреса инфраструктуры переопределяются из окружения.
        """
        # Ключи _comment_* служат документацией внутри JSON
        data = {k: v for k, v in config_data.items() if not k.startswith("_comment_")}

        def pick(model: type[BaseModel], env_keys: tuple[str, ...] = ()) -> dict[str, Any]:
            values: dict[str, Any] = {}
            for name in model.model_fields:
                if name in env_keys and os.getenv(name):
                    values[name] = os.getenv(name)
                elif name in data:
                    values[name] = data[name]
            return values

        return cls(
            system=SystemSettings(**pick(SystemSettings, ("COMPONENT_MODE", "ENVIRONMENT"))),
            deployment=DeploymentSettings(**pick(DeploymentSettings, ("API_PORT", "REALTIME_WS_PORT"))),
            logging=LoggingSettings(**pick(LoggingSettings, ("LOG_LEVEL",))),
            domain=DomainSettings(**pick(DomainSettings)),
            database=DatabaseSettings(**pick(
                DatabaseSettings, ("DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD"),
            )),
            redis=RedisSettings(**pick(RedisSettings, ("REDIS_HOST", "REDIS_PORT", "REDIS_PASSWORD"))),
            rabbitmq=RabbitMQSettings(**pick(
                RabbitMQSettings, ("RABBITMQ_HOST", "RABBITMQ_PORT", "RABBITMQ_USER", "RABBITMQ_PASSWORD"),
            )),
            booking=BookingSettings(**pick(BookingSettings)),
            wallet=WalletSettings(**pick(WalletSettings)),
            gateway=GatewaySettings(**pick(
                GatewaySettings,
                ("GATEWAY_BASE_URL", "GATEWAY_KEY_ID", "GATEWAY_KEY_SECRET",
                 "GATEWAY_WEBHOOK_SECRET", "GATEWAY_PAYOUT_ACCOUNT_NUMBER"),
            )),
            push=PushSettings(**pick(PushSettings, ("PUSH_URL", "PUSH_SERVER_KEY"))),
            auth=AuthSettings(**pick(AuthSettings, ("JWT_SECRET",))),
            presence=PresenceSettings(**pick(PresenceSettings)),
            scheduler=SchedulerSettings(**pick(SchedulerSettings)),
        )

    @classmethod
    def from_config_json(cls) -> "Settings":
        """Создаёт объект Settings из config.json."""
        return cls.from_dict(load_config_json())


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Перед чтением config.json подгружает .env из корня проекта.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
