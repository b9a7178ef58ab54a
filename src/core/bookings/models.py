# src/core/bookings/models.py
"""
Модели бронирований и назначений исполнителей.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from src.common.constants import (
    SLOT_OCCUPYING_STATES,
    TERMINAL_BOOKING_STATES,
    ActorKind,
    AssignmentState,
    BookingKind,
    BookingState,
    QuoteDecision,
)
from src.core.payments.models import OrderResult


class Quote(BaseModel):
    """Смета администратора по inquiry-бронированию."""

    amount: Decimal = Field(..., gt=0)
    notes: Optional[str] = None
    provided_by: Optional[int] = None
    provided_at: datetime
    expires_at: datetime
    decided_at: Optional[datetime] = None
    decision: Optional[QuoteDecision] = None
    reject_reason: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @property
    def is_decided(self) -> bool:
        return self.decided_at is not None


class Cancellation(BaseModel):
    """Сведения об отмене."""

    actor_id: Optional[int] = None
    actor_kind: Optional[ActorKind] = None
    reason: Optional[str] = None
    refund_ledger_id: Optional[int] = None
    cancelled_at: Optional[datetime] = None


class WorkerAssignment(BaseModel):
    """Назначение исполнителя на бронирование."""

    id: int
    booking_id: int
    worker_id: int
    state: AssignmentState = AssignmentState.PENDING
    assigned_by: Optional[int] = None
    assigned_at: datetime
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    start_notes: Optional[str] = None
    completion_notes: Optional[str] = None
    materials_used: list[str] = Field(default_factory=list)
    photos: list[str] = Field(default_factory=list)
    tracking_session_id: Optional[int] = None


class Booking(BaseModel):
    """Бронирование (оба трека)."""

    id: int
    reference: str
    customer_id: int
    service_id: int
    kind: BookingKind
    state: BookingState
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    address_snapshot: dict[str, Any] = Field(default_factory=dict)
    contact_snapshot: dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None
    hold_expires_at: Optional[datetime] = None
    quote: Optional[Quote] = None
    payment_id: Optional[int] = None
    cancellation: Optional[Cancellation] = None
    assignment: Optional[WorkerAssignment] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def is_inquiry(self) -> bool:
        return self.kind == BookingKind.INQUIRY

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_BOOKING_STATES

    def occupies_slot(self, now: datetime) -> bool:
        """Занимает ли бронирование свой слот в момент now."""
        if self.state == BookingState.HELD:
            return self.hold_expires_at is not None and self.hold_expires_at > now
        return self.state in SLOT_OCCUPYING_STATES

    def hold_expired(self, now: datetime) -> bool:
        return self.hold_expires_at is not None and self.hold_expires_at <= now


@dataclass
class BookingCreated:
    """Созданное бронирование и платёж для него."""
    booking: Booking
    order: OrderResult

    def to_dict(self) -> dict[str, Any]:
        return {"booking": self.booking.model_dump(mode="json"), **self.order.to_dict()}


@dataclass
class Transition:
    """Совершённый переход, для аудита и уведомлений."""
    booking: Booking
    from_state: BookingState
    to_state: BookingState
    actor_id: Optional[int] = None
    actor_kind: Optional[ActorKind] = None
    reason: Optional[str] = None
