# src/core/bookings/notifier.py
"""
Побочные эффекты переходов бронирования.

Каждый переход публикуется как аудиторское событие и порождает
уведомление контрагенту. Вызывается после коммита, сбои не откатывают переход.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional

from src.common.constants import ActorKind, AssignmentState, BookingState, NotificationKind
from src.common.errors import CoreError
from src.common.logger import log_error
from src.core.bookings.models import Booking, Transition, WorkerAssignment
from src.infra.event_bus import DomainEvent, EventTypes

if TYPE_CHECKING:
    from src.core.notifications.service import NotificationService
    from src.infra.event_bus import EventBus


# Уведомление клиенту по целевому состоянию
_CUSTOMER_MESSAGES: dict[BookingState, tuple[NotificationKind, str, str]] = {
    BookingState.CONFIRMED: (
        NotificationKind.BOOKING_CONFIRMED,
        "Booking confirmed",
        "Your booking {reference} is confirmed.",
    ),
    BookingState.AWAITING_QUOTE: (
        NotificationKind.QUOTE_REVIEW_STARTED,
        "Inquiry under review",
        "We are preparing a quote for {reference}.",
    ),
    BookingState.QUOTED: (
        NotificationKind.QUOTE_PROVIDED,
        "Quote ready",
        "A quote of ₹{quote_amount} is ready for {reference}.",
    ),
    BookingState.QUOTE_EXPIRED: (
        NotificationKind.QUOTE_EXPIRED,
        "Quote expired",
        "The quote for {reference} has expired.",
    ),
    BookingState.EXPIRED: (
        NotificationKind.BOOKING_EXPIRED,
        "Booking expired",
        "The hold on {reference} expired before payment.",
    ),
    BookingState.CANCELLED: (
        NotificationKind.BOOKING_CANCELLED,
        "Booking cancelled",
        "Booking {reference} has been cancelled.",
    ),
    BookingState.IN_PROGRESS: (
        NotificationKind.WORK_STARTED,
        "Work started",
        "Work on {reference} has started.",
    ),
    BookingState.COMPLETED: (
        NotificationKind.WORK_COMPLETED,
        "Work completed",
        "Booking {reference} is completed.",
    ),
}

# Уведомление администраторам, когда переход совершил клиент
_ADMIN_MESSAGES: dict[BookingState, tuple[NotificationKind, str, str]] = {
    BookingState.HELD: (
        NotificationKind.BOOKING_CREATED,
        "New booking",
        "Booking {reference} is waiting for payment.",
    ),
    BookingState.CONFIRMED: (
        NotificationKind.BOOKING_CONFIRMED,
        "Booking confirmed",
        "Booking {reference} is paid and needs a worker.",
    ),
    BookingState.INQUIRY_PAID: (
        NotificationKind.INQUIRY_PAID,
        "Inquiry paid",
        "Inquiry {reference} is paid and needs a quote.",
    ),
    BookingState.QUOTE_ACCEPTED: (
        NotificationKind.QUOTE_ACCEPTED,
        "Quote accepted",
        "The customer accepted the quote for {reference}.",
    ),
    BookingState.QUOTE_REJECTED: (
        NotificationKind.QUOTE_REJECTED,
        "Quote rejected",
        "The customer rejected the quote for {reference}.",
    ),
    BookingState.CANCELLED: (
        NotificationKind.BOOKING_CANCELLED,
        "Booking cancelled",
        "The customer cancelled {reference}.",
    ),
}


class BookingNotifier:
    """Аудит и уведомления по переходам бронирований и назначений."""

    def __init__(
        self,
        event_bus: "EventBus",
        notifications: "NotificationService | None" = None,
    ) -> None:
        self.event_bus = event_bus
        self.notifications = notifications

    async def transitioned(self, transition: Transition) -> None:
        """
        Публикует аудит и уведомляет контрагента.

        Args:
            transition: Совершённый переход
        """
        booking = transition.booking
        await self.event_bus.publish(DomainEvent(
            event_type=EventTypes.BOOKING_TRANSITIONED,
            payload={
                "entity_kind": "booking",
                "entity_id": booking.id,
                "actor_id": transition.actor_id,
                "actor_kind": transition.actor_kind.value if transition.actor_kind else None,
                "reference": booking.reference,
                "from": transition.from_state.value,
                "to": transition.to_state.value,
                "reason": transition.reason,
            },
        ))

        data = {"booking_id": booking.id, "reference": booking.reference, "state": booking.state.value}
        fmt = _format_args(booking)

        if transition.actor_kind == ActorKind.CUSTOMER:
            message = _ADMIN_MESSAGES.get(transition.to_state)
            if message is not None:
                kind, title, body = message
                await self._notify_admins(kind, title, body.format(**fmt), data)
        else:
            message = _CUSTOMER_MESSAGES.get(transition.to_state)
            if message is not None:
                kind, title, body = message
                await self._notify(booking.customer_id, kind, title, body.format(**fmt), data)

        # Исполнитель узнаёт об отмене назначенной работы
        if (
            transition.to_state == BookingState.CANCELLED
            and booking.assignment is not None
            and booking.assignment.state != AssignmentState.REJECTED
        ):
            await self._notify(
                booking.assignment.worker_id,
                NotificationKind.BOOKING_CANCELLED,
                "Assignment cancelled",
                f"Booking {booking.reference} has been cancelled.",
                data,
            )

    async def quote_updated(self, booking: Booking, actor_id: Optional[int]) -> None:
        """Смета изменена без смены состояния."""
        await self.event_bus.publish(DomainEvent(
            event_type=EventTypes.BOOKING_TRANSITIONED,
            payload={
                "entity_kind": "booking",
                "entity_id": booking.id,
                "actor_id": actor_id,
                "reference": booking.reference,
                "from": booking.state.value,
                "to": booking.state.value,
                "reason": "quote_updated",
            },
        ))
        amount = booking.quote.amount if booking.quote else ""
        await self._notify(
            booking.customer_id,
            NotificationKind.QUOTE_UPDATED,
            "Quote updated",
            f"The quote for {booking.reference} was updated to ₹{amount}.",
            {"booking_id": booking.id, "reference": booking.reference},
        )

    async def hold_expired_refunded(self, booking: Booking, amount: Decimal) -> None:
        await self._notify(
            booking.customer_id,
            NotificationKind.HOLD_EXPIRED_REFUNDED,
            "Payment refunded",
            f"Payment for {booking.reference} arrived after the hold expired. ₹{amount} was refunded to your wallet.",
            {"booking_id": booking.id, "reference": booking.reference, "amount": str(amount)},
        )

    async def assignment_transitioned(
        self,
        booking: Booking,
        assignment: WorkerAssignment,
        from_state: Optional[AssignmentState],
        actor_id: Optional[int],
    ) -> None:
        """Аудит и уведомления по переходу назначения."""
        await self.event_bus.publish(DomainEvent(
            event_type=EventTypes.ASSIGNMENT_TRANSITIONED,
            payload={
                "entity_kind": "assignment",
                "entity_id": assignment.id,
                "actor_id": actor_id,
                "booking_id": booking.id,
                "worker_id": assignment.worker_id,
                "reference": booking.reference,
                "from": from_state.value if from_state else None,
                "to": assignment.state.value,
            },
        ))

        data = {"booking_id": booking.id, "assignment_id": assignment.id, "reference": booking.reference}
        match assignment.state:
            case AssignmentState.PENDING:
                await self._notify(
                    assignment.worker_id,
                    NotificationKind.NEW_ASSIGNMENT,
                    "New assignment",
                    f"You have been assigned to booking {booking.reference}.",
                    data,
                )
            case AssignmentState.ACCEPTED:
                await self._notify_admins(
                    NotificationKind.ASSIGNMENT_ACCEPTED,
                    "Assignment accepted",
                    f"The worker accepted booking {booking.reference}.",
                    data,
                )
            case AssignmentState.REJECTED:
                await self._notify_admins(
                    NotificationKind.ASSIGNMENT_REJECTED,
                    "Assignment rejected",
                    f"The worker rejected booking {booking.reference}: {assignment.rejection_reason}",
                    data,
                )
            case _:
                pass

    async def _notify(
        self,
        user_id: int,
        kind: NotificationKind,
        title: str,
        body: str,
        data: dict[str, Any],
    ) -> None:
        if self.notifications is None:
            return
        try:
            await self.notifications.create(user_id, kind, title, body, data)
        except CoreError as e:
            await log_error(f"Не удалось создать уведомление {kind.value} для {user_id}: {e.message}")

    async def _notify_admins(self, kind: NotificationKind, title: str, body: str, data: dict[str, Any]) -> None:
        if self.notifications is None:
            return
        try:
            await self.notifications.notify_admins(kind, title, body, data)
        except CoreError as e:
            await log_error(f"Не удалось уведомить администраторов ({kind.value}): {e.message}")


def _format_args(booking: Booking) -> dict[str, Any]:
    return {
        "reference": booking.reference,
        "quote_amount": booking.quote.amount if booking.quote else "",
    }
