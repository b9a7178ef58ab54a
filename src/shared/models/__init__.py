# src/shared/models/__init__.py
"""
Общие Pydantic-модели ответов.
"""

from src.shared.models.common import (
    PaginationParams,
    ErrorResponse,
    HealthStatus,
)

__all__ = [
    "PaginationParams",
    "ErrorResponse",
    "HealthStatus",
]
