# src/core/bookings/state_machine.py
"""
Машины состояний бронирования и назначения.

Регулярный трек: created -> held -> confirmed -> assigned -> in_progress -> completed
Inquiry трек: created -> inquiry_paid -> awaiting_quote -> quoted ->
    quote_accepted | quote_rejected -> (held | scheduled) -> confirmed -> ...
"""

from __future__ import annotations

from typing import Optional

from src.common.constants import AssignmentState, BookingState
from src.common.errors import AlreadyTerminalError, ConflictingTransitionError


class BookingStateMachine:
    """Допустимые переходы бронирования."""

    ALLOWED_TRANSITIONS: dict[BookingState, list[BookingState]] = {
        BookingState.CREATED: [BookingState.HELD, BookingState.INQUIRY_PAID, BookingState.CANCELLED],
        BookingState.HELD: [BookingState.CONFIRMED, BookingState.EXPIRED, BookingState.CANCELLED],
        BookingState.INQUIRY_PAID: [BookingState.AWAITING_QUOTE, BookingState.QUOTED, BookingState.CANCELLED],
        BookingState.AWAITING_QUOTE: [BookingState.QUOTED, BookingState.CANCELLED],
        BookingState.QUOTED: [
            BookingState.QUOTE_ACCEPTED,
            BookingState.QUOTE_REJECTED,
            BookingState.QUOTE_EXPIRED,
            BookingState.CANCELLED,
        ],
        BookingState.QUOTE_ACCEPTED: [BookingState.HELD, BookingState.SCHEDULED, BookingState.CANCELLED],
        BookingState.QUOTE_REJECTED: [BookingState.AWAITING_QUOTE, BookingState.CANCELLED],
        BookingState.SCHEDULED: [BookingState.CONFIRMED, BookingState.CANCELLED],
        BookingState.CONFIRMED: [BookingState.ASSIGNED, BookingState.CANCELLED],
        BookingState.ASSIGNED: [BookingState.IN_PROGRESS, BookingState.CONFIRMED, BookingState.CANCELLED],
        BookingState.IN_PROGRESS: [BookingState.COMPLETED, BookingState.CANCELLED],
        BookingState.COMPLETED: [],
        BookingState.CANCELLED: [],
        BookingState.EXPIRED: [],
        BookingState.QUOTE_EXPIRED: [],
    }

    @staticmethod
    def can_transition(current: BookingState, new: BookingState) -> bool:
        return new in BookingStateMachine.ALLOWED_TRANSITIONS.get(current, [])

    @classmethod
    def validate(cls, current: BookingState, new: BookingState, booking_id: Optional[int] = None) -> None:
        """
        Raises:
            AlreadyTerminalError: Бронирование уже в целевом итоговом состоянии
            ConflictingTransitionError: Переход не разрешён
        """
        if current == new and not cls.ALLOWED_TRANSITIONS.get(current):
            raise AlreadyTerminalError(
                f"Бронирование {booking_id} уже в состоянии {current.value}",
                details={"booking_id": booking_id, "state": current.value},
            )
        if not cls.can_transition(current, new):
            raise ConflictingTransitionError(
                f"Недопустимый переход бронирования: {current.value} -> {new.value}",
                {"booking_id": booking_id, "from": current.value, "to": new.value},
            )


class AssignmentStateMachine:
    """Допустимые переходы назначения исполнителя."""

    ALLOWED_TRANSITIONS: dict[AssignmentState, list[AssignmentState]] = {
        AssignmentState.PENDING: [AssignmentState.ACCEPTED, AssignmentState.REJECTED],
        AssignmentState.ACCEPTED: [AssignmentState.IN_PROGRESS],
        AssignmentState.IN_PROGRESS: [AssignmentState.COMPLETED],
        # Повторное назначение после отказа
        AssignmentState.REJECTED: [AssignmentState.PENDING],
        AssignmentState.COMPLETED: [],
    }

    @staticmethod
    def can_transition(current: AssignmentState, new: AssignmentState) -> bool:
        return new in AssignmentStateMachine.ALLOWED_TRANSITIONS.get(current, [])

    @classmethod
    def validate(cls, current: AssignmentState, new: AssignmentState, assignment_id: Optional[int] = None) -> None:
        """
        Raises:
            ConflictingTransitionError: Переход не разрешён
        """
        if not cls.can_transition(current, new):
            raise ConflictingTransitionError(
                f"Недопустимый переход назначения: {current.value} -> {new.value}",
                {"assignment_id": assignment_id, "from": current.value, "to": new.value},
            )
