# src/core/notifications/models.py
"""
Модели уведомлений и токенов устройств.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from src.common.constants import NotificationKind


class Notification(BaseModel):
    """Уведомление пользователя."""

    id: int
    user_id: int
    kind: NotificationKind
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    created_at: datetime

    @property
    def is_read(self) -> bool:
        return self.read_at is not None


class DeviceToken(BaseModel):
    """Токен устройства для push."""

    id: int
    user_id: int
    token: str
    platform: str = "android"
    active: bool = True
    last_error: Optional[str] = None


@dataclass
class PushJob:
    """Отправка одного уведомления на одно устройство."""
    notification_id: int
    token: str
    title: str
    body: str
    data: dict[str, Any]
    attempt: int = 0
