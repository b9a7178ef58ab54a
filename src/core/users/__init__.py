# src/core/users/__init__.py
"""
Участники маркетплейса: клиенты, исполнители, брокеры, администраторы.
"""

from src.core.users.models import Actor
from src.core.users.repository import UserRepository

__all__ = [
    "Actor",
    "UserRepository",
]
