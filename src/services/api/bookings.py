# src/services/api/bookings.py
"""
Endpoints бронирований, смет и назначений.
"""

from __future__ import annotations

from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends

from src.common.constants import AssignmentState, BookingState
from src.core.bookings import BookingService
from src.services.api.dependencies import CurrentActor, CurrentAdmin, Page, get_booking_service
from src.services.api.errors import to_jsonable
from src.services.api.schemas import (
    AssignWorkerRequest,
    CancelRequest,
    CreateBookingRequest,
    QuoteRequest,
    ReasonRequest,
    ScheduleRequest,
    VerifyPaymentRequest,
    WorkCompleteRequest,
    WorkStartRequest,
)

router = APIRouter(prefix="/api/v1", tags=["Bookings"])

Bookings = Annotated[BookingService, Depends(get_booking_service)]


@router.post("/bookings", status_code=201, summary="Создать бронирование")
async def create_booking(request: CreateBookingRequest, actor: CurrentActor, service: Bookings) -> dict[str, Any]:
    """
    Фиксированная услуга: слот удерживается до оплаты.
    Inquiry-услуга: оплачивается сбор за заявку, время выбирается после сметы.
    """
    created = await service.create(
        actor,
        request.service_id,
        request.address_id,
        start=request.scheduled_start,
        end=request.scheduled_end,
        description=request.description,
        method=request.payment_method,
    )
    return created.to_dict()


@router.get("/bookings", summary="Бронирования клиента")
async def list_bookings(
    actor: CurrentActor,
    service: Bookings,
    pagination: Page,
    state: Optional[BookingState] = None,
) -> list[dict[str, Any]]:
    bookings = await service.list_customer_bookings(actor, state, limit=pagination.limit, offset=pagination.offset)
    return to_jsonable(bookings)


@router.get("/bookings/{booking_id}", summary="Бронирование")
async def get_booking(booking_id: int, actor: CurrentActor, service: Bookings) -> dict[str, Any]:
    return to_jsonable(await service.get_booking(actor, booking_id))


@router.post("/bookings/{booking_id}/verify-payment", summary="Подтвердить оплату бронирования")
async def verify_booking_payment(
    booking_id: int,
    request: VerifyPaymentRequest,
    actor: CurrentActor,
    service: Bookings,
) -> dict[str, Any]:
    booking = await service.verify_payment(actor, booking_id, request.gateway_payment_id, request.signature)
    return to_jsonable(booking)


@router.post("/bookings/{booking_id}/cancel", summary="Отменить бронирование")
async def cancel_booking(
    booking_id: int,
    request: CancelRequest,
    actor: CurrentActor,
    service: Bookings,
) -> dict[str, Any]:
    return to_jsonable(await service.cancel(actor, booking_id, request.reason))


# === СМЕТЫ ===

@router.post("/bookings/{booking_id}/quote/review", tags=["Quotes"], summary="Взять заявку в работу")
async def start_quote_review(booking_id: int, admin: CurrentAdmin, service: Bookings) -> dict[str, Any]:
    return to_jsonable(await service.start_quote_review(admin, booking_id))


@router.post("/bookings/{booking_id}/quote", tags=["Quotes"], summary="Выставить смету")
async def provide_quote(
    booking_id: int,
    request: QuoteRequest,
    admin: CurrentAdmin,
    service: Bookings,
) -> dict[str, Any]:
    booking = await service.provide_quote(admin, booking_id, request.amount, request.notes, request.ttl_hours)
    return to_jsonable(booking)


@router.put("/bookings/{booking_id}/quote", tags=["Quotes"], summary="Изменить смету")
async def update_quote(
    booking_id: int,
    request: QuoteRequest,
    admin: CurrentAdmin,
    service: Bookings,
) -> dict[str, Any]:
    booking = await service.update_quote(admin, booking_id, request.amount, request.notes, request.ttl_hours)
    return to_jsonable(booking)


@router.post("/bookings/{booking_id}/quote/accept", tags=["Quotes"], summary="Принять смету")
async def accept_quote(booking_id: int, actor: CurrentActor, service: Bookings) -> dict[str, Any]:
    return to_jsonable(await service.accept_quote(actor, booking_id))


@router.post("/bookings/{booking_id}/quote/reject", tags=["Quotes"], summary="Отклонить смету")
async def reject_quote(
    booking_id: int,
    request: ReasonRequest,
    actor: CurrentActor,
    service: Bookings,
) -> dict[str, Any]:
    return to_jsonable(await service.reject_quote(actor, booking_id, request.reason))


@router.post("/bookings/{booking_id}/quote/reopen", tags=["Quotes"], summary="Вернуть заявку на оценку")
async def reopen_inquiry(booking_id: int, admin: CurrentAdmin, service: Bookings) -> dict[str, Any]:
    return to_jsonable(await service.reopen_inquiry(admin, booking_id))


@router.post("/bookings/{booking_id}/schedule", tags=["Quotes"], summary="Выбрать время по принятой смете")
async def schedule_after_quote(
    booking_id: int,
    request: ScheduleRequest,
    actor: CurrentActor,
    service: Bookings,
) -> dict[str, Any]:
    created = await service.schedule_after_quote(
        actor,
        booking_id,
        request.scheduled_start,
        request.scheduled_end,
        method=request.payment_method,
    )
    return created.to_dict()


# === НАЗНАЧЕНИЯ ===

@router.post("/bookings/{booking_id}/assign", tags=["Assignments"], summary="Назначить исполнителя")
async def assign_worker(
    booking_id: int,
    request: AssignWorkerRequest,
    admin: CurrentAdmin,
    service: Bookings,
) -> dict[str, Any]:
    return to_jsonable(await service.assign_worker(admin, booking_id, request.worker_id))


@router.get("/assignments", tags=["Assignments"], summary="Назначения исполнителя")
async def list_assignments(
    actor: CurrentActor,
    service: Bookings,
    pagination: Page,
    state: Optional[AssignmentState] = None,
) -> list[dict[str, Any]]:
    assignments = await service.list_worker_assignments(actor, state, limit=pagination.limit, offset=pagination.offset)
    return to_jsonable(assignments)


@router.post("/assignments/{assignment_id}/accept", tags=["Assignments"], summary="Принять назначение")
async def accept_assignment(assignment_id: int, actor: CurrentActor, service: Bookings) -> dict[str, Any]:
    return to_jsonable(await service.accept_assignment(actor, assignment_id))


@router.post("/assignments/{assignment_id}/reject", tags=["Assignments"], summary="Отклонить назначение")
async def reject_assignment(
    assignment_id: int,
    request: ReasonRequest,
    actor: CurrentActor,
    service: Bookings,
) -> dict[str, Any]:
    return to_jsonable(await service.reject_assignment(actor, assignment_id, request.reason))


@router.post("/assignments/{assignment_id}/start", tags=["Assignments"], summary="Начать работу")
async def start_work(
    assignment_id: int,
    request: WorkStartRequest,
    actor: CurrentActor,
    service: Bookings,
) -> dict[str, Any]:
    return to_jsonable(await service.start_work(actor, assignment_id, request.notes, request.photos))


@router.post("/assignments/{assignment_id}/complete", tags=["Assignments"], summary="Завершить работу")
async def complete_work(
    assignment_id: int,
    request: WorkCompleteRequest,
    actor: CurrentActor,
    service: Bookings,
) -> dict[str, Any]:
    assignment = await service.complete_work(
        actor,
        assignment_id,
        request.notes,
        materials_used=request.materials_used,
        photos=request.photos,
    )
    return to_jsonable(assignment)
