# src/core/bookings/policies.py
"""
Правила отмены и возврата.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from src.common.constants import ActorKind, BookingState
from src.common.money import ZERO, to_money
from src.core.bookings.models import Booking

# Что клиент может отменить сам
CUSTOMER_CANCELLABLE: frozenset[BookingState] = frozenset({
    BookingState.CREATED,
    BookingState.HELD,
    BookingState.INQUIRY_PAID,
    BookingState.AWAITING_QUOTE,
    BookingState.QUOTED,
    BookingState.QUOTE_ACCEPTED,
    BookingState.QUOTE_REJECTED,
    BookingState.SCHEDULED,
    BookingState.CONFIRMED,
    BookingState.ASSIGNED,
})

# Исполнитель приступил к работе
WORK_STARTED_STATES: frozenset[BookingState] = frozenset({BookingState.IN_PROGRESS})


def can_cancel(booking: Booking, actor_kind: ActorKind) -> bool:
    """Администратор отменяет любое неитоговое, клиент до начала работ."""
    if booking.is_terminal:
        return False
    if actor_kind == ActorKind.ADMIN:
        return True
    if actor_kind == ActorKind.CUSTOMER:
        return booking.state in CUSTOMER_CANCELLABLE
    return False


@dataclass(frozen=True)
class RefundPolicy:
    """
    Доля возврата при отмене.

    Полный возврат, если работы не начаты и до начала больше cutoff.
    Внутри cutoff возвращается late_fraction, после начала работ started_fraction.
    """
    cutoff_minutes: int
    late_fraction: Decimal
    started_fraction: Decimal

    def fraction(self, booking: Booking, now: datetime) -> Decimal:
        if booking.state in WORK_STARTED_STATES:
            return self.started_fraction
        if booking.scheduled_start is None:
            return Decimal("1")
        if booking.scheduled_start - now < timedelta(minutes=self.cutoff_minutes):
            return self.late_fraction
        return Decimal("1")

    def refund_amount(self, booking: Booking, paid: Decimal, now: datetime) -> Decimal:
        amount = to_money(paid * self.fraction(booking, now))
        return max(amount, ZERO)
