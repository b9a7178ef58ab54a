"""Уведомления: хранение, счётчик непрочитанных, push."""

from src.core.notifications.dispatcher import PushDispatcher
from src.core.notifications.models import DeviceToken, Notification, PushJob
from src.core.notifications.service import NotificationService

__all__ = [
    "DeviceToken",
    "Notification",
    "NotificationService",
    "PushDispatcher",
    "PushJob",
]
