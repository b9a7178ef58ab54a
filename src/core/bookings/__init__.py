"""Бронирования: оба трека, смета, назначение исполнителя."""

from src.core.bookings.models import Booking, BookingCreated, Quote, Transition, WorkerAssignment
from src.core.bookings.notifier import BookingNotifier
from src.core.bookings.policies import RefundPolicy, can_cancel
from src.core.bookings.service import BookingService
from src.core.bookings.state_machine import AssignmentStateMachine, BookingStateMachine

__all__ = [
    "AssignmentStateMachine",
    "Booking",
    "BookingCreated",
    "BookingNotifier",
    "BookingService",
    "BookingStateMachine",
    "Quote",
    "RefundPolicy",
    "Transition",
    "WorkerAssignment",
    "can_cancel",
]
