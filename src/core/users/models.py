# src/core/users/models.py
"""
Модель участника.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.common.constants import ActorKind


class Actor(BaseModel):
    """Участник маркетплейса."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="ID пользователя")
    phone: str = Field(..., description="Телефон в формате E.164")
    email: Optional[str] = Field(None, description="Email")
    name: str = Field("", description="Имя")
    kind: ActorKind = Field(ActorKind.CUSTOMER, description="Роль")
    active: bool = Field(True, description="Активен ли аккаунт")
    verified: bool = Field(False, description="Подтверждён ли аккаунт")
    wallet_balance: Decimal = Field(Decimal("0.00"), ge=0, description="Баланс кошелька (производный)")
    has_active_subscription: bool = Field(False, description="Есть ли действующая подписка")
    created_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.kind == ActorKind.ADMIN

    @property
    def is_worker(self) -> bool:
        return self.kind == ActorKind.WORKER

    def contact_snapshot(self) -> dict[str, Any]:
        """Контакты для фиксации в бронировании."""
        return {"name": self.name, "phone": self.phone, "email": self.email}
