# src/services/api/notifications.py
"""
Endpoints уведомлений и устройств.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends

from src.core.notifications import NotificationService
from src.services.api.dependencies import CurrentActor, Page, get_notification_service
from src.services.api.errors import to_jsonable
from src.services.api.schemas import DeviceRequest, UnreadCountResponse

router = APIRouter(prefix="/api/v1", tags=["Notifications"])

Notifications = Annotated[NotificationService, Depends(get_notification_service)]


@router.get("/notifications", summary="Уведомления пользователя")
async def list_notifications(
    actor: CurrentActor,
    service: Notifications,
    pagination: Page,
    unread_only: bool = False,
) -> list[dict[str, Any]]:
    notifications = await service.list_notifications(actor, unread_only, pagination.page, pagination.page_size)
    return to_jsonable(notifications)


@router.get("/notifications/unread-count", response_model=UnreadCountResponse, summary="Непрочитанные")
async def unread_count(actor: CurrentActor, service: Notifications) -> UnreadCountResponse:
    return UnreadCountResponse(unread_count=await service.unread_count(actor.id))


@router.post("/notifications/read-all", summary="Отметить все прочитанными")
async def mark_all_read(actor: CurrentActor, service: Notifications) -> dict[str, int]:
    return {"updated": await service.mark_all_read(actor)}


@router.post("/notifications/{notification_id}/read", summary="Отметить прочитанным")
async def mark_read(notification_id: int, actor: CurrentActor, service: Notifications) -> dict[str, Any]:
    return to_jsonable(await service.mark_read(actor, notification_id))


@router.post("/devices", status_code=201, tags=["Devices"], summary="Зарегистрировать устройство")
async def register_device(request: DeviceRequest, actor: CurrentActor, service: Notifications) -> dict[str, Any]:
    return to_jsonable(await service.register_device(actor, request.token, request.platform))


@router.delete("/devices/{token}", tags=["Devices"], summary="Отключить устройство")
async def unregister_device(token: str, actor: CurrentActor, service: Notifications) -> dict[str, bool]:
    return {"removed": await service.unregister_device(actor, token)}
