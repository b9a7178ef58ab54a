# src/shared/models/common.py
"""
Модели ответов, общие для HTTP API и WebSocket-шлюза.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from src.common.errors import CoreError


HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
DEGRADED = "degraded"


class PaginationParams(BaseModel):
    """Параметры страницы в query-строке."""

    model_config = ConfigDict(extra="ignore")

    page: int = Field(default=1, ge=1, description="Номер страницы, с единицы")
    page_size: int = Field(default=20, ge=1, le=100, description="Записей на странице")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @property
    def limit(self) -> int:
        return self.page_size


class ErrorResponse(BaseModel):
    """Тело ответа для ошибок доменного слоя."""

    error_code: str
    message: str
    details: dict[str, Any] | None = None
    request_id: str | None = None

    @classmethod
    def from_error(cls, error: "CoreError", request_id: str | None = None) -> "ErrorResponse":
        payload = error.to_dict()
        return cls(
            error_code=payload["error_code"],
            message=payload["message"],
            details=payload["details"] or None,
            request_id=request_id,
        )


class HealthStatus(BaseModel):
    """Состояние процесса и его зависимостей."""

    service: str
    status: str = HEALTHY
    version: str | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_checks(cls, service: str, checks: Mapping[str, bool], version: str | None = None) -> "HealthStatus":
        """
        Собирает статус по результатам проверок зависимостей.

        Процесс считается degraded, если хотя бы одна зависимость недоступна.
        """
        dependencies = {name: HEALTHY if ok else UNHEALTHY for name, ok in checks.items()}
        return cls(
            service=service,
            status=HEALTHY if all(checks.values()) else DEGRADED,
            version=version,
            dependencies=dependencies,
        )
