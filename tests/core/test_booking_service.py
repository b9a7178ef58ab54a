# tests/core/test_booking_service.py
"""
Тесты для сервиса бронирований.

Бронирования, платежи и кошелёк живут в памяти, шлюз и доступность замоканы.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from src.common.constants import (
    ActorKind,
    AssignmentState,
    BookingKind,
    BookingState,
    PaymentKind,
    PaymentMethod,
    PaymentStatus,
    PricingMode,
    QuoteDecision,
)
from src.common.errors import (
    AlreadyTerminalError,
    ConflictingTransitionError,
    ForbiddenError,
    GatewayFailureError,
    ValidationError,
)
from src.core.availability.service import Slot
from src.core.bookings.repository import ACTIVE_WINDOW_CONSTRAINT
from src.core.bookings.service import BookingService
from src.core.catalog.models import Address, Service
from src.core.ledger.service import LedgerService
from src.core.payments.service import PaymentService
from src.infra.payment_gateway import GatewayOrder, GatewayPayment
from tests.fakes import (
    NOW,
    InMemoryBookingRepository,
    InMemoryLedgerRepository,
    InMemoryPaymentRepository,
    InMemoryUserLocks,
    make_actor,
)

FIXED_SERVICE = 5
INQUIRY_SERVICE = 6
START = NOW + timedelta(days=1)
END = START + timedelta(hours=2)


class Clock:
    """Управляемые часы."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


# =============================================================================
# ФИКСТУРЫ
# =============================================================================

@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def actors(customer, other_customer, worker, admin) -> dict:
    return {a.id: a for a in (customer, other_customer, worker, admin)}


@pytest.fixture
def users(actors: dict) -> AsyncMock:
    users = AsyncMock()
    users.require = AsyncMock(side_effect=lambda user_id, conn=None: actors[user_id])
    return users


@pytest.fixture
def catalog() -> AsyncMock:
    services = {
        FIXED_SERVICE: Service(
            id=FIXED_SERVICE, name="Garden cleanup", pricing_mode=PricingMode.FIXED,
            price=Decimal("999.00"), duration_minutes=120,
        ),
        INQUIRY_SERVICE: Service(id=INQUIRY_SERVICE, name="Landscaping", pricing_mode=PricingMode.INQUIRY),
    }
    catalog = AsyncMock()
    catalog.require_service = AsyncMock(side_effect=lambda service_id: services[service_id])
    catalog.require_customer_address.return_value = Address(
        id=1, user_id=101, name="Home", address="12 MG Road", city="Bengaluru",
    )
    return catalog


@pytest.fixture
def availability() -> AsyncMock:
    availability = AsyncMock()
    availability.ensure_slot_free = AsyncMock(side_effect=lambda service_id, start, end, now=None: Slot(start, end))
    return availability


@pytest.fixture
def gateway() -> MagicMock:
    gateway = MagicMock()
    gateway.create_order = AsyncMock(return_value=GatewayOrder(
        order_id="order_1", key_id="rzp_test", amount=Decimal("999.00"), receipt="PAY",
    ))
    gateway.fetch_payment = AsyncMock(return_value=GatewayPayment(
        payment_id="pay_1", order_id="order_1", status="captured", amount=Decimal("999.00"),
    ))
    return gateway


@pytest.fixture
def ledger_repo() -> InMemoryLedgerRepository:
    return InMemoryLedgerRepository()


@pytest.fixture
def ledger(mock_db, ledger_repo: InMemoryLedgerRepository) -> LedgerService:
    return LedgerService(mock_db, users=InMemoryUserLocks(ledger_repo), repository=ledger_repo)


@pytest.fixture
def payments_repo() -> InMemoryPaymentRepository:
    return InMemoryPaymentRepository()


@pytest.fixture
def payments(
    mock_db, gateway, ledger, mock_runtime, mock_event_bus, users, catalog, payments_repo,
) -> PaymentService:
    return PaymentService(
        mock_db, gateway, ledger, mock_runtime, mock_event_bus,
        users=users, catalog=catalog, repository=payments_repo,
    )


@pytest.fixture
def repository(clock: Clock, payments_repo: InMemoryPaymentRepository) -> InMemoryBookingRepository:
    return InMemoryBookingRepository(clock, payments=payments_repo)


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def service(
    mock_db, availability, payments, mock_runtime, notifier, catalog, users, repository, clock,
) -> BookingService:
    return BookingService(
        mock_db,
        availability,
        payments,
        mock_runtime,
        notifier,
        catalog=catalog,
        users=users,
        repository=repository,
        clock=clock,
    )


def transitions(notifier: AsyncMock) -> list[tuple[str, str]]:
    return [
        (call.args[0].from_state.value, call.args[0].to_state.value)
        for call in notifier.transitioned.await_args_list
    ]


async def confirmed_booking(service: BookingService, ledger: LedgerService, customer, start=START):
    """Бронирование, оплаченное с кошелька."""
    await ledger.credit(customer.id, Decimal("999.00"))
    created = await service.create(
        customer, FIXED_SERVICE, 1, start, start + timedelta(hours=2), method=PaymentMethod.WALLET,
    )
    return created.booking


# =============================================================================
# СОЗДАНИЕ И ОПЛАТА
# =============================================================================

class TestCreate:
    """Тесты создания бронирований."""

    @pytest.mark.asyncio
    async def test_fixed_service_holds_slot(
        self,
        service: BookingService,
        customer,
        payments_repo: InMemoryPaymentRepository,
        notifier: AsyncMock,
    ) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END, description="Trim hedges")

        booking = created.booking
        assert booking.state == BookingState.HELD
        assert booking.kind == BookingKind.REGULAR
        assert booking.hold_expires_at == NOW + timedelta(minutes=7)
        assert booking.address_snapshot["address"] == "12 MG Road"
        assert booking.contact_snapshot == customer.contact_snapshot()
        payment = payments_repo.payments[booking.payment_id]
        assert payment.amount == Decimal("999.00")
        assert payment.is_pending
        assert created.order.gateway_order.order_id == "order_1"
        assert transitions(notifier) == [("created", "held")]

    @pytest.mark.asyncio
    async def test_only_customers_book(self, service: BookingService, worker) -> None:
        with pytest.raises(ForbiddenError):
            await service.create(worker, FIXED_SERVICE, 1, START, END)

    @pytest.mark.asyncio
    async def test_fixed_service_needs_slot(self, service: BookingService, customer) -> None:
        with pytest.raises(ValidationError):
            await service.create(customer, FIXED_SERVICE, 1)

    @pytest.mark.asyncio
    async def test_cash_not_supported(self, service: BookingService, customer) -> None:
        with pytest.raises(ValidationError):
            await service.create(customer, FIXED_SERVICE, 1, START, END, method=PaymentMethod.CASH)

    @pytest.mark.asyncio
    async def test_inquiry_charges_fee_without_slot(
        self,
        service: BookingService,
        customer,
        payments_repo: InMemoryPaymentRepository,
        availability: AsyncMock,
    ) -> None:
        created = await service.create(customer, INQUIRY_SERVICE, 1, description="Redesign backyard")

        assert created.booking.state == BookingState.CREATED
        assert created.booking.scheduled_start is None
        assert payments_repo.payments[created.booking.payment_id].amount == Decimal("100.00")
        availability.ensure_slot_free.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wallet_payment_confirms_immediately(
        self,
        service: BookingService,
        ledger: LedgerService,
        customer,
        notifier: AsyncMock,
        gateway: MagicMock,
    ) -> None:
        booking = await confirmed_booking(service, ledger, customer)

        assert booking.state == BookingState.CONFIRMED
        assert booking.confirmed_at == NOW
        assert transitions(notifier) == [("created", "held"), ("held", "confirmed")]
        gateway.create_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_taken_window_is_conflict(
        self,
        service: BookingService,
        repository: InMemoryBookingRepository,
        customer,
    ) -> None:
        error = asyncpg.UniqueViolationError("duplicate key")
        error.constraint_name = ACTIVE_WINDOW_CONSTRAINT
        repository.insert = AsyncMock(side_effect=error)

        with pytest.raises(ConflictingTransitionError):
            await service.create(customer, FIXED_SERVICE, 1, START, END)

    @pytest.mark.asyncio
    async def test_gateway_failure_keeps_hold(
        self,
        service: BookingService,
        gateway: MagicMock,
        repository: InMemoryBookingRepository,
        customer,
    ) -> None:
        gateway.create_order.side_effect = GatewayFailureError("down")

        with pytest.raises(GatewayFailureError) as exc_info:
            await service.create(customer, FIXED_SERVICE, 1, START, END)

        assert exc_info.value.details["booking_id"] == 1
        assert (await repository.require(1)).state == BookingState.HELD


    @pytest.mark.asyncio
    async def test_stale_hold_in_window_expires_through_state_machine(
        self,
        service: BookingService,
        repository: InMemoryBookingRepository,
        customer,
        other_customer,
        clock: Clock,
        notifier: AsyncMock,
    ) -> None:
        stale = await service.create(customer, FIXED_SERVICE, 1, START, END)
        clock.advance(minutes=8)
        notifier.transitioned.reset_mock()

        fresh = await service.create(other_customer, FIXED_SERVICE, 1, START, END)

        assert (await repository.require(stale.booking.id)).state == BookingState.EXPIRED
        assert fresh.booking.state == BookingState.HELD
        first = notifier.transitioned.await_args_list[0].args[0]
        assert first.booking.id == stale.booking.id
        assert first.reason == "hold_expired"
        assert transitions(notifier) == [("held", "expired"), ("created", "held")]

    @pytest.mark.asyncio
    async def test_live_hold_in_window_untouched(
        self,
        service: BookingService,
        repository: InMemoryBookingRepository,
        customer,
        clock: Clock,
    ) -> None:
        live = await service.create(customer, FIXED_SERVICE, 1, START, END)
        clock.advance(minutes=3)

        stale = await repository.lock_stale_holds_for_window(None, FIXED_SERVICE, START, END, clock.now)

        assert stale == []
        assert (await repository.require(live.booking.id)).state == BookingState.HELD


class TestResumePaidBookings:
    """Тесты досчёта бронирований, чей платёж завершён без перехода."""

    @pytest.mark.asyncio
    async def test_paid_hold_is_confirmed(
        self,
        service: BookingService,
        payments: PaymentService,
        repository: InMemoryBookingRepository,
        customer,
    ) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)
        await payments.verify_and_complete(created.booking.payment_id, "pay_1", "sig", actor=customer, run_hooks=False)
        assert (await repository.require(created.booking.id)).state == BookingState.HELD

        assert await service.resume_paid_bookings() == 1

        assert (await repository.require(created.booking.id)).state == BookingState.CONFIRMED
        assert await service.resume_paid_bookings() == 0

    @pytest.mark.asyncio
    async def test_paid_hold_past_deadline_is_refunded(
        self,
        service: BookingService,
        payments: PaymentService,
        repository: InMemoryBookingRepository,
        ledger_repo: InMemoryLedgerRepository,
        customer,
        clock: Clock,
    ) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)
        await payments.verify_and_complete(created.booking.payment_id, "pay_1", "sig", actor=customer, run_hooks=False)
        clock.advance(minutes=10)
        assert await service.expire_holds() == 0

        assert await service.resume_paid_bookings() == 1

        booking = await repository.require(created.booking.id)
        assert booking.state == BookingState.EXPIRED
        assert booking.cancellation.refund_ledger_id is not None
        assert ledger_repo.balances[customer.id] == Decimal("999.00")
        assert await service.resume_paid_bookings() == 0

    @pytest.mark.asyncio
    async def test_unpaid_hold_not_resumed(self, service: BookingService, customer) -> None:
        await service.create(customer, FIXED_SERVICE, 1, START, END)
        assert await service.resume_paid_bookings() == 0


class TestPaymentOutcome:
    """Тесты реакции на исход платежа."""

    @pytest.mark.asyncio
    async def test_paid_within_hold_confirms(self, service: BookingService, customer, clock: Clock) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)
        clock.advance(minutes=5)

        booking = await service.verify_payment(customer, created.booking.id, "pay_1", "sig")

        assert booking.state == BookingState.CONFIRMED
        assert booking.confirmed_at == clock.now

    @pytest.mark.asyncio
    async def test_late_payment_expires_and_refunds_to_wallet(
        self,
        service: BookingService,
        customer,
        clock: Clock,
        ledger_repo: InMemoryLedgerRepository,
        payments_repo: InMemoryPaymentRepository,
        notifier: AsyncMock,
    ) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)
        clock.advance(minutes=10)

        booking = await service.verify_payment(customer, created.booking.id, "pay_1", "sig")

        assert booking.state == BookingState.EXPIRED
        assert booking.cancellation.refund_ledger_id == ledger_repo.entries[-1].id
        assert ledger_repo.balances[customer.id] == Decimal("999.00")
        assert payments_repo.payments[booking.payment_id].status == PaymentStatus.REFUNDED
        notifier.hold_expired_refunded.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_payment_after_expiry_job_still_refunded(
        self,
        service: BookingService,
        customer,
        clock: Clock,
        ledger_repo: InMemoryLedgerRepository,
    ) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)
        clock.advance(minutes=10)
        assert await service.expire_holds() == 1

        booking = await service.verify_payment(customer, created.booking.id, "pay_1", "sig")

        assert booking.state == BookingState.EXPIRED
        assert ledger_repo.balances[customer.id] == Decimal("999.00")

    @pytest.mark.asyncio
    async def test_repeat_completion_is_idempotent(
        self,
        service: BookingService,
        payments: PaymentService,
        customer,
        notifier: AsyncMock,
    ) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)
        await service.verify_payment(customer, created.booking.id, "pay_1", "sig")
        payment = await payments.get_payment(created.booking.payment_id)

        booking = await service.on_payment_completed(payment)

        assert booking.state == BookingState.CONFIRMED
        assert transitions(notifier).count(("held", "confirmed")) == 1

    @pytest.mark.asyncio
    async def test_other_customer_cannot_pay(self, service: BookingService, customer, other_customer) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)
        with pytest.raises(ForbiddenError):
            await service.verify_payment(other_customer, created.booking.id, "pay_1", "sig")

    @pytest.mark.asyncio
    async def test_cancelled_payment_releases_hold(
        self,
        service: BookingService,
        payments: PaymentService,
        repository: InMemoryBookingRepository,
        customer,
    ) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)

        await payments.cancel(created.booking.payment_id, customer)

        booking = await repository.require(created.booking.id)
        assert booking.hold_expires_at == NOW
        assert not booking.occupies_slot(NOW)

    @pytest.mark.asyncio
    async def test_expire_holds_skips_live_holds(
        self,
        service: BookingService,
        customer,
        clock: Clock,
        notifier: AsyncMock,
    ) -> None:
        await service.create(customer, FIXED_SERVICE, 1, START, END)
        clock.advance(minutes=6)
        assert await service.expire_holds() == 0
        clock.advance(minutes=1)
        assert await service.expire_holds() == 1
        assert transitions(notifier)[-1] == ("held", "expired")


# =============================================================================
# СМЕТА
# =============================================================================

class TestInquiry:
    """Тесты inquiry-трека."""

    async def paid_inquiry(self, service: BookingService, customer):
        created = await service.create(customer, INQUIRY_SERVICE, 1, description="Redesign backyard")
        return await service.verify_payment(customer, created.booking.id, "pay_1", "sig")

    @pytest.mark.asyncio
    async def test_full_flow_to_confirmed(
        self,
        service: BookingService,
        customer,
        admin,
        payments_repo: InMemoryPaymentRepository,
        gateway: MagicMock,
        clock: Clock,
    ) -> None:
        booking = await self.paid_inquiry(service, customer)
        assert booking.state == BookingState.INQUIRY_PAID

        booking = await service.start_quote_review(admin, booking.id)
        assert booking.state == BookingState.AWAITING_QUOTE

        booking = await service.provide_quote(admin, booking.id, Decimal("4500"), notes="Includes plants")
        assert booking.state == BookingState.QUOTED
        assert booking.quote.amount == Decimal("4500")
        assert booking.quote.expires_at == NOW + timedelta(hours=48)

        booking = await service.accept_quote(customer, booking.id)
        assert booking.state == BookingState.QUOTE_ACCEPTED
        assert booking.quote.decision == QuoteDecision.ACCEPTED

        scheduled = await service.schedule_after_quote(customer, booking.id, START, END)
        assert scheduled.booking.state == BookingState.HELD
        quote_payment = payments_repo.payments[scheduled.booking.payment_id]
        assert quote_payment.kind == PaymentKind.QUOTE
        assert quote_payment.amount == Decimal("4500.00")

        clock.advance(minutes=1)
        gateway.fetch_payment.return_value = GatewayPayment(
            payment_id="pay_2", order_id="order_1", status="captured", amount=Decimal("4500.00"),
        )
        booking = await service.verify_payment(customer, booking.id, "pay_2", "sig")
        assert booking.state == BookingState.CONFIRMED

    @pytest.mark.asyncio
    async def test_quote_paid_from_wallet_goes_through_scheduled(
        self,
        service: BookingService,
        ledger: LedgerService,
        customer,
        admin,
        notifier: AsyncMock,
    ) -> None:
        booking = await self.paid_inquiry(service, customer)
        await service.provide_quote(admin, booking.id, Decimal("300"))
        await service.accept_quote(customer, booking.id)
        await ledger.credit(customer.id, Decimal("300"))

        scheduled = await service.schedule_after_quote(customer, booking.id, START, END, method=PaymentMethod.WALLET)

        assert scheduled.booking.state == BookingState.CONFIRMED
        assert transitions(notifier)[-2:] == [("quote_accepted", "scheduled"), ("scheduled", "confirmed")]

    @pytest.mark.asyncio
    async def test_provide_quote_admin_only(self, service: BookingService, customer) -> None:
        booking = await self.paid_inquiry(service, customer)
        with pytest.raises(ForbiddenError):
            await service.provide_quote(customer, booking.id, Decimal("100"))

    @pytest.mark.asyncio
    async def test_quote_on_regular_booking_rejected(self, service: BookingService, customer, admin) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)
        with pytest.raises(ValidationError):
            await service.provide_quote(admin, created.booking.id, Decimal("100"))

    @pytest.mark.asyncio
    async def test_quote_before_fee_paid_conflicts(self, service: BookingService, customer, admin) -> None:
        created = await service.create(customer, INQUIRY_SERVICE, 1)
        with pytest.raises(ConflictingTransitionError):
            await service.provide_quote(admin, created.booking.id, Decimal("100"))

    @pytest.mark.asyncio
    async def test_reject_then_reopen(self, service: BookingService, customer, admin) -> None:
        booking = await self.paid_inquiry(service, customer)
        await service.provide_quote(admin, booking.id, Decimal("4500"))

        with pytest.raises(ValidationError):
            await service.reject_quote(customer, booking.id, "   ")

        booking = await service.reject_quote(customer, booking.id, "Too expensive")
        assert booking.state == BookingState.QUOTE_REJECTED
        assert booking.quote.reject_reason == "Too expensive"

        booking = await service.reopen_inquiry(admin, booking.id)
        assert booking.state == BookingState.AWAITING_QUOTE
        assert booking.quote is None

    @pytest.mark.asyncio
    async def test_update_quote_only_before_decision(
        self,
        service: BookingService,
        customer,
        admin,
        notifier: AsyncMock,
    ) -> None:
        booking = await self.paid_inquiry(service, customer)
        await service.provide_quote(admin, booking.id, Decimal("4500"))

        booking = await service.update_quote(admin, booking.id, Decimal("4000"), ttl_hours=24)
        assert booking.quote.amount == Decimal("4000")
        assert booking.quote.expires_at == NOW + timedelta(hours=24)
        notifier.quote_updated.assert_awaited_once()

        await service.accept_quote(customer, booking.id)
        with pytest.raises(ConflictingTransitionError):
            await service.update_quote(admin, booking.id, Decimal("3900"))

    @pytest.mark.asyncio
    async def test_expired_quote_cannot_be_accepted(
        self,
        service: BookingService,
        customer,
        admin,
        clock: Clock,
    ) -> None:
        booking = await self.paid_inquiry(service, customer)
        await service.provide_quote(admin, booking.id, Decimal("4500"), ttl_hours=1)
        clock.advance(hours=1)

        with pytest.raises(ConflictingTransitionError):
            await service.accept_quote(customer, booking.id)

        assert await service.expire_quotes() == 1
        assert (await service.get_booking(customer, booking.id)).state == BookingState.QUOTE_EXPIRED

    @pytest.mark.asyncio
    async def test_non_positive_ttl_rejected(self, service: BookingService, customer, admin) -> None:
        booking = await self.paid_inquiry(service, customer)
        with pytest.raises(ValidationError):
            await service.provide_quote(admin, booking.id, Decimal("4500"), ttl_hours=0)

    @pytest.mark.asyncio
    async def test_schedule_requires_accepted_quote(self, service: BookingService, customer, admin) -> None:
        booking = await self.paid_inquiry(service, customer)
        await service.provide_quote(admin, booking.id, Decimal("4500"))
        with pytest.raises(ConflictingTransitionError):
            await service.schedule_after_quote(customer, booking.id, START, END)


# =============================================================================
# НАЗНАЧЕНИЕ И РАБОТЫ
# =============================================================================

class TestAssignment:
    """Тесты назначения исполнителя и выполнения работ."""

    @pytest.mark.asyncio
    async def test_full_work_cycle(
        self,
        service: BookingService,
        ledger: LedgerService,
        repository: InMemoryBookingRepository,
        customer,
        worker,
        admin,
    ) -> None:
        booking = await confirmed_booking(service, ledger, customer)

        assignment = await service.assign_worker(admin, booking.id, worker.id)
        assert assignment.state == AssignmentState.PENDING
        assert (await repository.require(booking.id)).state == BookingState.ASSIGNED

        assignment = await service.accept_assignment(worker, assignment.id)
        assert assignment.state == AssignmentState.ACCEPTED
        assert (await repository.require(booking.id)).state == BookingState.ASSIGNED

        assignment = await service.start_work(worker, assignment.id, "Arrived on site", photos=["before.jpg"])
        assert assignment.state == AssignmentState.IN_PROGRESS
        assert assignment.tracking_session_id is not None
        assert (await repository.require(booking.id)).state == BookingState.IN_PROGRESS

        assignment = await service.complete_work(
            worker, assignment.id, "Hedges trimmed", materials_used=["bags"], photos=["after.jpg"],
        )
        assert assignment.state == AssignmentState.COMPLETED
        assert assignment.photos == ["before.jpg", "after.jpg"]
        assert assignment.materials_used == ["bags"]
        finished = await repository.require(booking.id)
        assert finished.state == BookingState.COMPLETED
        assert finished.completed_at == NOW
        assert repository.closed_sessions == [booking.id]

    @pytest.mark.asyncio
    async def test_reject_returns_to_confirmed_and_reassigns(
        self,
        service: BookingService,
        ledger: LedgerService,
        repository: InMemoryBookingRepository,
        customer,
        worker,
        admin,
        actors: dict,
    ) -> None:
        booking = await confirmed_booking(service, ledger, customer)
        assignment = await service.assign_worker(admin, booking.id, worker.id)

        with pytest.raises(ValidationError):
            await service.reject_assignment(worker, assignment.id, "")

        rejected = await service.reject_assignment(worker, assignment.id, "Too far")
        assert rejected.state == AssignmentState.REJECTED
        assert (await repository.require(booking.id)).state == BookingState.CONFIRMED

        second = make_actor(202, ActorKind.WORKER)
        actors[second.id] = second
        reassigned = await service.assign_worker(admin, booking.id, second.id)
        assert reassigned.id == assignment.id
        assert reassigned.worker_id == second.id
        assert reassigned.state == AssignmentState.PENDING

    @pytest.mark.asyncio
    async def test_double_assignment_conflicts(
        self,
        service: BookingService,
        ledger: LedgerService,
        customer,
        worker,
        admin,
    ) -> None:
        booking = await confirmed_booking(service, ledger, customer)
        await service.assign_worker(admin, booking.id, worker.id)
        with pytest.raises(ConflictingTransitionError):
            await service.assign_worker(admin, booking.id, worker.id)

    @pytest.mark.asyncio
    async def test_assign_requires_worker(self, service: BookingService, ledger, customer, other_customer, admin) -> None:
        booking = await confirmed_booking(service, ledger, customer)
        with pytest.raises(ValidationError):
            await service.assign_worker(admin, booking.id, other_customer.id)

    @pytest.mark.asyncio
    async def test_assign_unpaid_booking_conflicts(self, service: BookingService, customer, worker, admin) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)
        with pytest.raises(ConflictingTransitionError):
            await service.assign_worker(admin, created.booking.id, worker.id)

    @pytest.mark.asyncio
    async def test_other_worker_cannot_accept(self, service: BookingService, ledger, customer, worker, admin) -> None:
        booking = await confirmed_booking(service, ledger, customer)
        assignment = await service.assign_worker(admin, booking.id, worker.id)
        with pytest.raises(ForbiddenError):
            await service.accept_assignment(make_actor(202, ActorKind.WORKER), assignment.id)

    @pytest.mark.asyncio
    async def test_start_requires_notes_and_acceptance(
        self,
        service: BookingService,
        ledger,
        customer,
        worker,
        admin,
    ) -> None:
        booking = await confirmed_booking(service, ledger, customer)
        assignment = await service.assign_worker(admin, booking.id, worker.id)

        with pytest.raises(ValidationError):
            await service.start_work(worker, assignment.id, " ")
        with pytest.raises(ConflictingTransitionError):
            await service.start_work(worker, assignment.id, "Arrived")

    @pytest.mark.asyncio
    async def test_assigned_worker_can_read_booking(
        self,
        service: BookingService,
        ledger,
        customer,
        other_customer,
        worker,
        admin,
    ) -> None:
        booking = await confirmed_booking(service, ledger, customer)
        await service.assign_worker(admin, booking.id, worker.id)

        seen = await service.get_booking(worker, booking.id)
        assert seen.assignment.worker_id == worker.id
        with pytest.raises(ForbiddenError):
            await service.get_booking(other_customer, booking.id)

    @pytest.mark.asyncio
    async def test_list_assignments_workers_only(self, service: BookingService, customer) -> None:
        with pytest.raises(ForbiddenError):
            await service.list_worker_assignments(customer)


# =============================================================================
# ОТМЕНА
# =============================================================================

class TestCancel:
    """Тесты отмены бронирований."""

    @pytest.mark.asyncio
    async def test_unpaid_booking_cancels_pending_payment(
        self,
        service: BookingService,
        payments_repo: InMemoryPaymentRepository,
        customer,
    ) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)

        booking = await service.cancel(customer, created.booking.id, "Changed plans")

        assert booking.state == BookingState.CANCELLED
        assert booking.cancellation.reason == "Changed plans"
        assert booking.cancellation.actor_kind == ActorKind.CUSTOMER
        assert booking.cancellation.refund_ledger_id is None
        assert payments_repo.payments[booking.payment_id].status == PaymentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_paid_booking_full_refund_before_cutoff(
        self,
        service: BookingService,
        ledger: LedgerService,
        ledger_repo: InMemoryLedgerRepository,
        customer,
    ) -> None:
        booking = await confirmed_booking(service, ledger, customer)

        cancelled = await service.cancel(customer, booking.id)

        assert ledger_repo.balances[customer.id] == Decimal("999.00")
        assert cancelled.cancellation.refund_ledger_id == ledger_repo.entries[-1].id

    @pytest.mark.asyncio
    async def test_late_cancel_partial_refund(
        self,
        service: BookingService,
        ledger: LedgerService,
        ledger_repo: InMemoryLedgerRepository,
        customer,
    ) -> None:
        booking = await confirmed_booking(service, ledger, customer, start=NOW + timedelta(minutes=60))

        await service.cancel(customer, booking.id)

        assert ledger_repo.balances[customer.id] == Decimal("499.50")

    @pytest.mark.asyncio
    async def test_customer_cannot_cancel_started_work(
        self,
        service: BookingService,
        ledger,
        customer,
        worker,
        admin,
    ) -> None:
        booking = await confirmed_booking(service, ledger, customer)
        assignment = await service.assign_worker(admin, booking.id, worker.id)
        await service.accept_assignment(worker, assignment.id)
        await service.start_work(worker, assignment.id, "Arrived")

        with pytest.raises(ConflictingTransitionError):
            await service.cancel(customer, booking.id)

    @pytest.mark.asyncio
    async def test_admin_cancels_started_work_without_refund(
        self,
        service: BookingService,
        ledger,
        ledger_repo: InMemoryLedgerRepository,
        repository: InMemoryBookingRepository,
        customer,
        worker,
        admin,
    ) -> None:
        booking = await confirmed_booking(service, ledger, customer)
        assignment = await service.assign_worker(admin, booking.id, worker.id)
        await service.accept_assignment(worker, assignment.id)
        await service.start_work(worker, assignment.id, "Arrived")

        cancelled = await service.cancel(admin, booking.id, "Customer unreachable")

        assert cancelled.state == BookingState.CANCELLED
        assert cancelled.cancellation.refund_ledger_id is None
        assert ledger_repo.balances[customer.id] == Decimal("0.00")
        assert repository.closed_sessions == [booking.id]

    @pytest.mark.asyncio
    async def test_second_cancel_is_already_terminal(self, service: BookingService, customer) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)
        await service.cancel(customer, created.booking.id)

        with pytest.raises(AlreadyTerminalError) as exc_info:
            await service.cancel(customer, created.booking.id)
        assert exc_info.value.result.state == BookingState.CANCELLED

    @pytest.mark.asyncio
    async def test_foreign_booking_forbidden(self, service: BookingService, customer, other_customer) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)
        with pytest.raises(ForbiddenError):
            await service.cancel(other_customer, created.booking.id)

    @pytest.mark.asyncio
    async def test_worker_cannot_cancel(self, service: BookingService, customer, worker) -> None:
        created = await service.create(customer, FIXED_SERVICE, 1, START, END)
        with pytest.raises(ForbiddenError):
            await service.cancel(worker, created.booking.id)

    @pytest.mark.asyncio
    async def test_paid_inquiry_fee_refunded(
        self,
        service: BookingService,
        customer,
        ledger_repo: InMemoryLedgerRepository,
    ) -> None:
        created = await service.create(customer, INQUIRY_SERVICE, 1)
        await service.verify_payment(customer, created.booking.id, "pay_1", "sig")

        await service.cancel(customer, created.booking.id)

        assert ledger_repo.balances[customer.id] == Decimal("100.00")
