# src/infra/__init__.py
"""
Инфраструктурный слой.
PostgreSQL, Redis, RabbitMQ и внешние HTTP-провайдеры.
"""

from src.infra.database import DatabaseManager
from src.infra.redis_client import RedisClient
from src.infra.event_bus import DomainEvent, EventBus, EventTypes

__all__ = [
    "DatabaseManager",
    "RedisClient",
    "EventBus",
    "DomainEvent",
    "EventTypes",
]
