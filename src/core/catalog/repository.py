# src/core/catalog/repository.py
"""
Чтение справочников каталога.
"""

from __future__ import annotations

from typing import Optional

from src.common.constants import PricingMode
from src.common.errors import ForbiddenError, NotFoundError
from src.core.catalog.models import Address, Service, SubscriptionPlan
from src.infra.database import DatabaseManager


class CatalogRepository:
    """Услуги, тарифы подписки и адреса."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get_service(self, service_id: int) -> Optional[Service]:
        row = await self._db.fetchrow(
            """
            SELECT id, name, is_active, price_type, price, duration_minutes,
                   category_id, subcategory_id
            FROM services WHERE id = $1
            """,
            service_id,
        )
        if row is None:
            return None
        return Service(
            id=row["id"],
            name=row["name"],
            active=row["is_active"],
            pricing_mode=PricingMode(row["price_type"]),
            price=row["price"],
            duration_minutes=row["duration_minutes"],
            category_id=row["category_id"],
            subcategory_id=row["subcategory_id"],
        )

    async def require_service(self, service_id: int) -> Service:
        """
        Raises:
            NotFoundError: Услуга не найдена
        """
        service = await self.get_service(service_id)
        if service is None:
            raise NotFoundError(f"Услуга {service_id} не найдена", {"service_id": service_id})
        return service

    async def require_plan(self, plan_id: int) -> SubscriptionPlan:
        """
        Raises:
            NotFoundError: Тариф не найден или отключён
        """
        row = await self._db.fetchrow(
            "SELECT id, name, price, duration_days, is_active FROM subscription_plans WHERE id = $1",
            plan_id,
        )
        if row is None or not row["is_active"]:
            raise NotFoundError(f"Тариф подписки {plan_id} не найден", {"plan_id": plan_id})
        return SubscriptionPlan(
            id=row["id"],
            name=row["name"],
            price=row["price"],
            duration_days=row["duration_days"],
            active=row["is_active"],
        )

    async def require_customer_address(self, address_id: int, customer_id: int) -> Address:
        """
        Адрес, принадлежащий клиенту.

        Raises:
            NotFoundError: Адрес не найден
            ForbiddenError: Адрес принадлежит другому пользователю
        """
        row = await self._db.fetchrow(
            """
            SELECT id, user_id, name, address, city, state, postal_code, latitude, longitude
            FROM addresses WHERE id = $1
            """,
            address_id,
        )
        if row is None:
            raise NotFoundError(f"Адрес {address_id} не найден", {"address_id": address_id})
        if row["user_id"] != customer_id:
            raise ForbiddenError("Адрес принадлежит другому пользователю", {"address_id": address_id})
        return Address(**dict(row))
