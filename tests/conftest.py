# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")

from src.common.constants import ActorKind
from src.config.runtime import RuntimeSettings
from src.core.users.models import Actor
from tests.fakes import make_actor


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def runtime_settings() -> RuntimeSettings:
    """Снимок рантайм-настроек со значениями по умолчанию."""
    return RuntimeSettings()


@pytest.fixture
def mock_runtime(runtime_settings: RuntimeSettings) -> AsyncMock:
    """Мок RuntimeConfig, всегда отдающий один снимок."""
    runtime = AsyncMock()
    runtime.get = AsyncMock(return_value=runtime_settings)
    runtime.defaults = runtime_settings
    return runtime


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_conn() -> AsyncMock:
    """Мок соединения asyncpg внутри транзакции."""
    conn = AsyncMock()
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.execute = AsyncMock(return_value="UPDATE 1")
    conn.fetchval = AsyncMock(return_value=None)
    return conn


@pytest.fixture
def mock_db(mock_conn: AsyncMock) -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)

    @asynccontextmanager
    async def transaction(*args: Any, **kwargs: Any):
        yield mock_conn

    @asynccontextmanager
    async def use(conn: Any = None):
        yield conn if conn is not None else mock_conn

    @asynccontextmanager
    async def advisory_lock(key: int):
        yield db.lock_acquired

    db.transaction = MagicMock(side_effect=transaction)
    db.use = MagicMock(side_effect=use)
    db.advisory_lock = MagicMock(side_effect=advisory_lock)
    db.lock_acquired = True
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.get_model = AsyncMock(return_value=None)
    redis.set_model = AsyncMock(return_value=True)
    redis.publish = AsyncMock(return_value=1)
    redis.health_check = AsyncMock(return_value=True)
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=None)
    event_bus.subscribe = AsyncMock(return_value=None)
    event_bus.is_connected = True
    return event_bus


# =============================================================================
# ФИКСТУРЫ МОДЕЛЕЙ
# =============================================================================

@pytest.fixture
def customer() -> Actor:
    """Клиент."""
    return make_actor(101, ActorKind.CUSTOMER)


@pytest.fixture
def other_customer() -> Actor:
    """Другой клиент."""
    return make_actor(102, ActorKind.CUSTOMER)


@pytest.fixture
def worker() -> Actor:
    """Исполнитель."""
    return make_actor(201, ActorKind.WORKER)


@pytest.fixture
def admin() -> Actor:
    """Администратор."""
    return make_actor(1, ActorKind.ADMIN)
