# src/core/catalog/__init__.py
"""
Справочные сущности внешних модулей: услуги, тарифы подписки, адреса.
Ядро их только читает.
"""

from src.core.catalog.models import Address, Service, SubscriptionPlan
from src.core.catalog.repository import CatalogRepository

__all__ = [
    "Address",
    "Service",
    "SubscriptionPlan",
    "CatalogRepository",
]
