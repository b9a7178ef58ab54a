# src/core/catalog/models.py
"""
Модели справочных сущностей.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from src.common.constants import PricingMode


class Service(BaseModel):
    """Услуга каталога."""

    id: int
    name: str = ""
    active: bool = True
    pricing_mode: PricingMode
    price: Optional[Decimal] = Field(None, description="Есть только у fixed")
    duration_minutes: Optional[int] = Field(None, description="Есть только у fixed")
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None

    @property
    def is_inquiry(self) -> bool:
        return self.pricing_mode == PricingMode.INQUIRY


class SubscriptionPlan(BaseModel):
    """Тариф подписки."""

    id: int
    name: str = ""
    price: Decimal
    duration_days: int
    active: bool = True


class Address(BaseModel):
    """Адрес клиента."""

    id: int
    user_id: int
    name: str = ""
    address: str
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def snapshot(self) -> dict[str, Any]:
        """Копия адреса, фиксируемая в бронировании."""
        return self.model_dump(exclude={"user_id"})
