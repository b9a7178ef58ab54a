# src/services/api/app.py
"""
FastAPI приложение HTTP API маркетплейса.

Тонкая проекция сервисов ядра: разбор запроса, вызов сервиса,
сериализация результата. Ошибки ядра отображаются в HTTP коды
одним обработчиком.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date
from typing import TYPE_CHECKING, Annotated, Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query

from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.config import settings
from src.core.auth import AuthenticationError, TokenService
from src.core.availability.service import AvailabilityService
from src.services.api import bookings, conversations, notifications, payments
from src.services.api.dependencies import (
    cleanup_dependencies,
    get_availability_service,
    get_env,
    get_token_service,
    init_dependencies,
)
from src.services.api.errors import install_error_handlers
from src.services.api.schemas import RefreshRequest, TokenResponse
from src.shared.models.common import HealthStatus

if TYPE_CHECKING:
    from src.core.environment import Environment

SERVICE_NAME = "treesindia_api"


def create_app(env: Optional["Environment"] = None) -> FastAPI:
    """
    Args:
        env: Готовое окружение. Если не передано, собирается и запускается
            из настроек при старте приложения и закрывается при остановке.
    """
    owns_env = env is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal env
        if owns_env:
            from src.core.environment import build_environment

            env = build_environment(settings)
            await env.start(apply_schema=True)
        init_dependencies(env)
        await log_info("HTTP API запущен", type_msg=TypeMsg.INFO)

        yield

        cleanup_dependencies()
        if owns_env:
            await env.close()

    app = FastAPI(
        title="TreesIndia API",
        description="Бронирования, платежи, кошелёк и уведомления.",
        version=settings.system.VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    install_error_handlers(app)

    app.include_router(bookings.router)
    app.include_router(payments.router)
    app.include_router(notifications.router)
    app.include_router(conversations.router)

    @app.get("/health", response_model=HealthStatus, tags=["Health"])
    async def health_check() -> HealthStatus:
        """Проверка здоровья сервиса и его зависимостей."""
        current = get_env()
        checks = {
            "postgres": await current.db.health_check(),
            "redis": await current.redis.health_check(),
            "rabbitmq": await current.event_bus.health_check(),
        }
        return HealthStatus.from_checks(SERVICE_NAME, checks, current.settings.system.VERSION)

    @app.post("/api/v1/auth/refresh", response_model=TokenResponse, tags=["Auth"])
    async def refresh_tokens(
        request: RefreshRequest,
        tokens: Annotated[TokenService, Depends(get_token_service)],
    ) -> TokenResponse:
        """Новая пара токенов по refresh-токену."""
        try:
            pair = await tokens.refresh(request.refresh_token)
        except AuthenticationError as e:
            raise HTTPException(status_code=401, detail=e.message) from e
        return TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        )

    @app.get("/api/v1/availability/{service_id}", tags=["Availability"])
    async def get_availability(
        service_id: int,
        day: Annotated[date, Query(alias="date")],
        service: Annotated[AvailabilityService, Depends(get_availability_service)],
    ) -> dict[str, Any]:
        """Свободные слоты услуги на локальную дату."""
        slots = await service.free_slots(service_id, day)
        return {
            "service_id": service_id,
            "date": day.isoformat(),
            "timezone": str(service.tz),
            "slots": [slot.to_dict(service.tz) for slot in slots],
        }

    return app
