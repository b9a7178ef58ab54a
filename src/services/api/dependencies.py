# src/services/api/dependencies.py
"""
Dependency Injection для HTTP API.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Optional

from fastapi import Depends, Header, HTTPException, Query

from src.common.constants import ActorKind
from src.core.auth import AuthenticationError, TokenService
from src.core.users.models import Actor
from src.shared.models.common import PaginationParams

if TYPE_CHECKING:
    from src.core.availability.service import AvailabilityService
    from src.core.bookings import BookingService
    from src.core.conversations import ConversationService
    from src.core.environment import Environment
    from src.core.ledger.service import LedgerService
    from src.core.notifications import NotificationService
    from src.core.payments.service import PaymentService


# Синглтон окружения процесса
_env: "Environment | None" = None


def init_dependencies(env: "Environment") -> None:
    """Инициализировать зависимости при старте приложения."""
    global _env
    _env = env


def cleanup_dependencies() -> None:
    global _env
    _env = None


def get_env() -> "Environment":
    if _env is None:
        raise RuntimeError("Окружение не инициализировано. Вызовите init_dependencies()")
    return _env


def get_token_service() -> TokenService:
    tokens = get_env().tokens
    if tokens is None:
        raise HTTPException(status_code=503, detail="Аутентификация не настроена")
    return tokens


def get_booking_service() -> "BookingService":
    return get_env().bookings


def get_payment_service() -> "PaymentService":
    return get_env().payments


def get_ledger_service() -> "LedgerService":
    return get_env().ledger


def get_availability_service() -> "AvailabilityService":
    return get_env().availability


def get_notification_service() -> "NotificationService":
    return get_env().notifications


def get_conversation_service() -> "ConversationService":
    return get_env().conversations


def bearer_token(authorization: Optional[str]) -> str:
    """Токен из заголовка Authorization: Bearer <token>."""
    if not authorization:
        return ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


async def get_current_actor(
    tokens: Annotated[TokenService, Depends(get_token_service)],
    authorization: Annotated[Optional[str], Header()] = None,
) -> Actor:
    """Текущий участник по access-токену."""
    try:
        return await tokens.authenticate(bearer_token(authorization))
    except AuthenticationError as e:
        raise HTTPException(
            status_code=401,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def get_current_admin(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
    if actor.kind != ActorKind.ADMIN:
        raise HTTPException(status_code=403, detail="Требуются права администратора")
    return actor


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
CurrentAdmin = Annotated[Actor, Depends(get_current_admin)]
Page = Annotated[PaginationParams, Query()]
