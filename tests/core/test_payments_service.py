# tests/core/test_payments_service.py
"""
Тесты для сервиса платежей.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from src.common.constants import (
    ActorKind,
    LedgerEntryKind,
    NotificationKind,
    PaymentKind,
    PaymentMethod,
    PaymentStatus,
    RefundDestination,
    RelationKind,
)
from src.common.errors import (
    AlreadyTerminalError,
    AmountMismatchError,
    ConflictingTransitionError,
    ForbiddenError,
    GatewayFailureError,
    InsufficientFundsError,
    NotFoundError,
    SignatureMismatchError,
    ValidationError,
)
from src.core.catalog.models import SubscriptionPlan
from src.core.ledger.service import LedgerService
from src.core.payments.hooks import PaymentHooks
from src.core.payments.models import PaymentRelation
from src.core.payments.service import PaymentService
from src.infra.event_bus import EventTypes
from src.infra.payment_gateway import GatewayOrder, GatewayPayment, WebhookEvent
from tests.fakes import InMemoryLedgerRepository, InMemoryPaymentRepository, InMemoryUserLocks, make_actor

USER_ID = 101
BOOKING = PaymentRelation(kind=RelationKind.BOOKING, id=55)


def captured(payment_id: str = "pay_1", order_id: str = "order_1", amount: str = "500.00") -> GatewayPayment:
    return GatewayPayment(payment_id=payment_id, order_id=order_id, status="captured", amount=Decimal(amount))


# =============================================================================
# ФИКСТУРЫ
# =============================================================================

@pytest.fixture
def ledger_repo() -> InMemoryLedgerRepository:
    return InMemoryLedgerRepository()


@pytest.fixture
def ledger(mock_db: AsyncMock, ledger_repo: InMemoryLedgerRepository) -> LedgerService:
    return LedgerService(mock_db, users=InMemoryUserLocks(ledger_repo), repository=ledger_repo)


@pytest.fixture
def payments_repo() -> InMemoryPaymentRepository:
    return InMemoryPaymentRepository()


@pytest.fixture
def gateway() -> MagicMock:
    """Шлюз: HTTP-методы асинхронные, проверки подписи синхронные."""
    gateway = MagicMock()
    gateway.create_order = AsyncMock(return_value=GatewayOrder(
        order_id="order_1", key_id="rzp_test", amount=Decimal("500.00"), receipt="PAY20250110000001",
    ))
    gateway.fetch_payment = AsyncMock(return_value=captured())
    gateway.refund = AsyncMock(return_value="rfnd_1")
    gateway.payout = AsyncMock(return_value="pout_1")
    return gateway


@pytest.fixture
def users() -> AsyncMock:
    users = AsyncMock()
    users.require.return_value = make_actor(USER_ID)
    return users


@pytest.fixture
def catalog() -> AsyncMock:
    catalog = AsyncMock()
    catalog.require_plan.return_value = SubscriptionPlan(
        id=3, name="Broker monthly", price=Decimal("499.00"), duration_days=30,
    )
    return catalog


@pytest.fixture
def notifications() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def hooks() -> PaymentHooks:
    return PaymentHooks()


@pytest.fixture
def service(
    mock_db: AsyncMock,
    gateway: MagicMock,
    ledger: LedgerService,
    mock_runtime: AsyncMock,
    mock_event_bus: AsyncMock,
    hooks: PaymentHooks,
    notifications: AsyncMock,
    users: AsyncMock,
    catalog: AsyncMock,
    payments_repo: InMemoryPaymentRepository,
) -> PaymentService:
    return PaymentService(
        mock_db,
        gateway,
        ledger,
        mock_runtime,
        mock_event_bus,
        hooks=hooks,
        notifications=notifications,
        users=users,
        catalog=catalog,
        repository=payments_repo,
    )


def published_types(event_bus: AsyncMock) -> list[str]:
    return [call.args[0].event_type for call in event_bus.publish.await_args_list]


# =============================================================================
# СОЗДАНИЕ ЗАКАЗА
# =============================================================================

class TestCreateOrder:
    """Тесты создания платежей."""

    @pytest.mark.asyncio
    async def test_gateway_order_pending_with_order_id(
        self,
        service: PaymentService,
        gateway: MagicMock,
        payments_repo: InMemoryPaymentRepository,
    ) -> None:
        result = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"), relation=BOOKING)

        assert result.payment.status == PaymentStatus.PENDING
        assert result.payment.gateway_order_id == "order_1"
        assert payments_repo.payments[1].gateway_order_id == "order_1"
        gateway.create_order.assert_awaited_once_with(
            Decimal("500.00"), receipt=result.payment.reference, description="booking",
        )
        assert result.to_dict()["order"]["order_id"] == "order_1"

    @pytest.mark.asyncio
    async def test_gateway_failure_keeps_payment_pending(
        self,
        service: PaymentService,
        gateway: MagicMock,
        payments_repo: InMemoryPaymentRepository,
    ) -> None:
        gateway.create_order.side_effect = GatewayFailureError("timeout", retryable=True)

        with pytest.raises(GatewayFailureError) as exc_info:
            await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"))

        assert exc_info.value.details["payment_id"] == 1
        assert payments_repo.payments[1].is_pending
        assert payments_repo.payments[1].gateway_order_id is None

    @pytest.mark.asyncio
    async def test_retry_pending_orders_issues_missing(
        self,
        service: PaymentService,
        gateway: MagicMock,
        payments_repo: InMemoryPaymentRepository,
    ) -> None:
        gateway.create_order.side_effect = [GatewayFailureError("down"), gateway.create_order.return_value]
        with pytest.raises(GatewayFailureError):
            await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"))

        issued = await service.retry_pending_orders()

        assert issued == 1
        assert payments_repo.payments[1].gateway_order_id == "order_1"

    @pytest.mark.asyncio
    async def test_wallet_payment_debits_and_completes(
        self,
        service: PaymentService,
        ledger: LedgerService,
        ledger_repo: InMemoryLedgerRepository,
        gateway: MagicMock,
        mock_event_bus: AsyncMock,
    ) -> None:
        await ledger.credit(USER_ID, Decimal("800"))

        result = await service.create_order(
            USER_ID, PaymentKind.BOOKING, Decimal("300"), relation=BOOKING, method=PaymentMethod.WALLET,
        )

        assert result.payment.status == PaymentStatus.COMPLETED
        assert result.gateway_order is None
        assert ledger_repo.entries[-1].kind == LedgerEntryKind.DEBIT
        assert ledger_repo.entries[-1].cause_payment_id == result.payment.id
        assert ledger_repo.balances[USER_ID] == Decimal("500.00")
        gateway.create_order.assert_not_awaited()
        assert EventTypes.PAYMENT_COMPLETED in published_types(mock_event_bus)

    @pytest.mark.asyncio
    async def test_wallet_payment_insufficient_funds(self, service: PaymentService) -> None:
        with pytest.raises(InsufficientFundsError):
            await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("1"), method=PaymentMethod.WALLET)

    @pytest.mark.asyncio
    async def test_recharge_cannot_use_wallet(self, service: PaymentService) -> None:
        with pytest.raises(ValidationError):
            await service.create_order(
                USER_ID, PaymentKind.WALLET_RECHARGE, Decimal("100"), method=PaymentMethod.WALLET,
            )

    @pytest.mark.asyncio
    async def test_cash_method_rejected(self, service: PaymentService) -> None:
        with pytest.raises(ValidationError):
            await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("100"), method=PaymentMethod.CASH)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-10")])
    async def test_non_positive_amount_rejected(self, service: PaymentService, amount: Decimal) -> None:
        with pytest.raises(ValidationError):
            await service.create_order(USER_ID, PaymentKind.BOOKING, amount)


class TestRechargeAndSubscription:
    """Тесты пополнения и подписки."""

    @pytest.mark.asyncio
    async def test_recharge_below_minimum_rejected(self, service: PaymentService) -> None:
        with pytest.raises(ValidationError):
            await service.recharge_wallet(USER_ID, Decimal("1"))

    @pytest.mark.asyncio
    async def test_recharge_over_max_balance_rejected(
        self,
        service: PaymentService,
        users: AsyncMock,
        runtime_settings,
    ) -> None:
        users.require.return_value = make_actor(USER_ID, wallet_balance=runtime_settings.max_wallet_balance)
        with pytest.raises(ValidationError):
            await service.recharge_wallet(USER_ID, runtime_settings.min_recharge_amount)

    @pytest.mark.asyncio
    async def test_recharge_creates_gateway_order(self, service: PaymentService, runtime_settings) -> None:
        result = await service.recharge_wallet(USER_ID, runtime_settings.min_recharge_amount)
        assert result.payment.kind == PaymentKind.WALLET_RECHARGE
        assert result.payment.method == PaymentMethod.GATEWAY

    @pytest.mark.asyncio
    async def test_recharge_verified_credits_wallet(
        self,
        service: PaymentService,
        gateway: MagicMock,
        ledger_repo: InMemoryLedgerRepository,
        notifications: AsyncMock,
    ) -> None:
        order = await service.create_order(USER_ID, PaymentKind.WALLET_RECHARGE, Decimal("500"))

        await service.verify_and_complete(order.payment.id, "pay_1", "sig")

        assert ledger_repo.balances[USER_ID] == Decimal("500.00")
        assert ledger_repo.entries[-1].cause_payment_id == order.payment.id
        assert notifications.create.await_args.args[1] == NotificationKind.WALLET_TRANSACTION

    @pytest.mark.asyncio
    async def test_subscription_extends_period(
        self,
        service: PaymentService,
        gateway: MagicMock,
        payments_repo: InMemoryPaymentRepository,
    ) -> None:
        gateway.fetch_payment.return_value = captured(amount="499.00")
        order = await service.purchase_subscription(USER_ID, 3)

        await service.verify_and_complete(order.payment.id, "pay_1", "sig")

        assert order.payment.related_to(RelationKind.SUBSCRIPTION_PLAN) == 3
        assert len(payments_repo.subscriptions) == 1
        assert payments_repo.subscriptions[0]["plan_id"] == 3
        assert payments_repo.subscriptions[0]["payment_id"] == order.payment.id


# =============================================================================
# ПОДТВЕРЖДЕНИЕ
# =============================================================================

class TestVerifyAndComplete:
    """Тесты подтверждения оплаты по подписи."""

    @pytest_asyncio.fixture
    async def pending(self, service: PaymentService):
        result = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"), relation=BOOKING)
        return result.payment

    @pytest.mark.asyncio
    async def test_completes_and_runs_hooks(
        self,
        service: PaymentService,
        hooks: PaymentHooks,
        pending,
        mock_event_bus: AsyncMock,
    ) -> None:
        seen = []

        async def on_booking_paid(payment):
            seen.append(payment.id)

        hooks.on_completed(RelationKind.BOOKING, on_booking_paid)

        payment = await service.verify_and_complete(pending.id, "pay_1", "sig")

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.gateway_payment_id == "pay_1"
        assert seen == [pending.id]
        assert published_types(mock_event_bus).count(EventTypes.PAYMENT_COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_repeat_with_same_gateway_id_is_idempotent(
        self,
        service: PaymentService,
        gateway: MagicMock,
        pending,
        mock_event_bus: AsyncMock,
    ) -> None:
        first = await service.verify_and_complete(pending.id, "pay_1", "sig")
        second = await service.verify_and_complete(pending.id, "pay_1", "sig")

        assert second == first
        gateway.fetch_payment.assert_awaited_once()
        assert published_types(mock_event_bus).count(EventTypes.PAYMENT_COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_other_gateway_id_after_completion_is_terminal(self, service: PaymentService, pending) -> None:
        await service.verify_and_complete(pending.id, "pay_1", "sig")
        with pytest.raises(AlreadyTerminalError) as exc_info:
            await service.verify_and_complete(pending.id, "pay_2", "sig")
        assert exc_info.value.result.gateway_payment_id == "pay_1"

    @pytest.mark.asyncio
    async def test_signature_mismatch_leaves_pending(
        self,
        service: PaymentService,
        gateway: MagicMock,
        payments_repo: InMemoryPaymentRepository,
        pending,
    ) -> None:
        gateway.verify_payment_signature.side_effect = SignatureMismatchError("bad")

        with pytest.raises(SignatureMismatchError):
            await service.verify_and_complete(pending.id, "pay_1", "forged")

        assert payments_repo.payments[pending.id].is_pending
        gateway.fetch_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_underpaid_capture_rejected(
        self,
        service: PaymentService,
        gateway: MagicMock,
        payments_repo: InMemoryPaymentRepository,
        pending,
    ) -> None:
        gateway.fetch_payment.return_value = captured(amount="499.99")

        with pytest.raises(AmountMismatchError):
            await service.verify_and_complete(pending.id, "pay_1", "sig")

        assert payments_repo.payments[pending.id].is_pending

    @pytest.mark.asyncio
    async def test_uncaptured_payment_is_gateway_failure(
        self,
        service: PaymentService,
        gateway: MagicMock,
        pending,
    ) -> None:
        gateway.fetch_payment.return_value = GatewayPayment(
            payment_id="pay_1", order_id="order_1", status="authorized", amount=Decimal("500"),
        )
        with pytest.raises(GatewayFailureError):
            await service.verify_and_complete(pending.id, "pay_1", "sig")

    @pytest.mark.asyncio
    async def test_foreign_order_rejected(self, service: PaymentService, gateway: MagicMock, pending) -> None:
        gateway.fetch_payment.return_value = captured(order_id="order_other")
        with pytest.raises(ValidationError):
            await service.verify_and_complete(pending.id, "pay_1", "sig")

    @pytest.mark.asyncio
    async def test_other_user_cannot_verify(self, service: PaymentService, other_customer, pending) -> None:
        with pytest.raises(ForbiddenError):
            await service.verify_and_complete(pending.id, "pay_1", "sig", actor=other_customer)

    @pytest.mark.asyncio
    async def test_unknown_payment(self, service: PaymentService) -> None:
        with pytest.raises(NotFoundError):
            await service.verify_and_complete(999, "pay_1", "sig")


class TestWebhook:
    """Тесты обработки вебхуков."""

    @pytest_asyncio.fixture
    async def pending(self, service: PaymentService):
        result = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"), relation=BOOKING)
        return result.payment

    @staticmethod
    def event(name: str = "payment.captured", amount: str = "500.00") -> WebhookEvent:
        return WebhookEvent(
            event=name, payment_id="pay_1", order_id="order_1", status="captured", amount=Decimal(amount),
        )

    @pytest.mark.asyncio
    async def test_capture_completes(self, service: PaymentService, gateway: MagicMock, pending) -> None:
        gateway.parse_webhook.return_value = self.event()

        payment = await service.handle_webhook(b"{}", "sig")

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.gateway_payment_id == "pay_1"

    @pytest.mark.asyncio
    async def test_duplicate_delivery_has_no_second_effect(
        self,
        service: PaymentService,
        gateway: MagicMock,
        mock_event_bus: AsyncMock,
        pending,
    ) -> None:
        gateway.parse_webhook.return_value = self.event()

        first = await service.handle_webhook(b"{}", "sig")
        second = await service.handle_webhook(b"{}", "sig")

        assert second.id == first.id
        assert published_types(mock_event_bus).count(EventTypes.PAYMENT_COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_verify_then_webhook_completes_once(
        self,
        service: PaymentService,
        gateway: MagicMock,
        mock_event_bus: AsyncMock,
        pending,
    ) -> None:
        await service.verify_and_complete(pending.id, "pay_1", "sig")
        gateway.parse_webhook.return_value = self.event("order.paid")

        payment = await service.handle_webhook(b"{}", "sig")

        assert payment.status == PaymentStatus.COMPLETED
        assert published_types(mock_event_bus).count(EventTypes.PAYMENT_COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_failure_event_marks_failed(
        self,
        service: PaymentService,
        gateway: MagicMock,
        mock_event_bus: AsyncMock,
        pending,
    ) -> None:
        gateway.parse_webhook.return_value = self.event("payment.failed")

        payment = await service.handle_webhook(b"{}", "sig")

        assert payment.status == PaymentStatus.FAILED
        assert EventTypes.PAYMENT_FAILED in published_types(mock_event_bus)

    @pytest.mark.asyncio
    async def test_bad_signature_raises(self, service: PaymentService, gateway: MagicMock) -> None:
        gateway.verify_webhook_signature.side_effect = SignatureMismatchError("bad")
        with pytest.raises(SignatureMismatchError):
            await service.handle_webhook(b"{}", "forged")
        gateway.parse_webhook.assert_not_called()

    @pytest.mark.asyncio
    async def test_unrelated_event_ignored(self, service: PaymentService, gateway: MagicMock) -> None:
        gateway.parse_webhook.return_value = self.event("refund.processed")
        assert await service.handle_webhook(b"{}", "sig") is None

    @pytest.mark.asyncio
    async def test_unknown_order_ignored(self, service: PaymentService, gateway: MagicMock) -> None:
        gateway.parse_webhook.return_value = self.event()
        assert await service.handle_webhook(b"{}", "sig") is None


# =============================================================================
# ОТМЕНА, ВОЗВРАТ, КОРРЕКТИРОВКА
# =============================================================================

class TestCancelAndRefund:
    """Тесты отмены и возврата."""

    @pytest.mark.asyncio
    async def test_cancel_pending_runs_cancel_hooks(self, service: PaymentService, hooks: PaymentHooks, customer) -> None:
        seen = []

        async def on_cancel(payment):
            seen.append(payment.status)

        hooks.on_cancelled(RelationKind.BOOKING, on_cancel)
        order = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"), relation=BOOKING)

        cancelled = await service.cancel(order.payment.id, customer)

        assert cancelled.status == PaymentStatus.CANCELLED
        assert cancelled.metadata["cancelled_by"] == customer.id
        assert seen == [PaymentStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_cancel_twice_is_already_terminal(self, service: PaymentService, customer) -> None:
        order = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"))
        await service.cancel(order.payment.id, customer)
        with pytest.raises(AlreadyTerminalError):
            await service.cancel(order.payment.id, customer)

    @pytest.mark.asyncio
    async def test_cancel_completed_conflicts(self, service: PaymentService, customer) -> None:
        order = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"))
        await service.verify_and_complete(order.payment.id, "pay_1", "sig")
        with pytest.raises(ConflictingTransitionError):
            await service.cancel(order.payment.id, customer)

    @pytest.mark.asyncio
    async def test_cancel_foreign_payment_forbidden(self, service: PaymentService, other_customer) -> None:
        order = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"))
        with pytest.raises(ForbiddenError):
            await service.cancel(order.payment.id, other_customer)

    @pytest.mark.asyncio
    async def test_refund_to_wallet_credits(
        self,
        service: PaymentService,
        ledger_repo: InMemoryLedgerRepository,
        gateway: MagicMock,
    ) -> None:
        order = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"))
        await service.verify_and_complete(order.payment.id, "pay_1", "sig")

        outcome = await service.refund(order.payment.id, notes="customer cancelled")

        assert outcome.destination == RefundDestination.WALLET
        assert outcome.payment.status == PaymentStatus.REFUNDED
        assert outcome.payment.refund_amount == Decimal("500.00")
        assert outcome.ledger_entry_id == ledger_repo.entries[-1].id
        assert ledger_repo.balances[USER_ID] == Decimal("500.00")
        gateway.refund.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_partial_refund_to_source(
        self,
        service: PaymentService,
        gateway: MagicMock,
        ledger_repo: InMemoryLedgerRepository,
    ) -> None:
        order = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"))
        await service.verify_and_complete(order.payment.id, "pay_1", "sig")

        outcome = await service.refund(order.payment.id, Decimal("200"), destination=RefundDestination.SOURCE)

        assert outcome.gateway_refund_id == "rfnd_1"
        assert outcome.payment.gateway_refund_id == "rfnd_1"
        assert outcome.ledger_entry is None
        assert ledger_repo.entries == []
        gateway.refund.assert_awaited_once_with("pay_1", Decimal("200.00"))

    @pytest.mark.asyncio
    async def test_source_refund_calls_gateway_outside_transaction(
        self,
        service: PaymentService,
        mock_db: AsyncMock,
        gateway: MagicMock,
        payments_repo: InMemoryPaymentRepository,
    ) -> None:
        order = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"))
        await service.verify_and_complete(order.payment.id, "pay_1", "sig")

        opened = 0
        inner = mock_db.transaction.side_effect

        @asynccontextmanager
        async def tracked(*args, **kwargs):
            nonlocal opened
            opened += 1
            try:
                async with inner(*args, **kwargs) as conn:
                    yield conn
            finally:
                opened -= 1

        mock_db.transaction.side_effect = tracked
        seen: list[tuple[int, str]] = []

        async def refund(gateway_payment_id, amount):
            seen.append((opened, payments_repo.payments[order.payment.id].metadata.get("refund_in_progress")))
            return "rfnd_1"

        gateway.refund.side_effect = refund

        outcome = await service.refund(order.payment.id, destination=RefundDestination.SOURCE)

        assert seen == [(0, "500.00")]
        assert outcome.payment.status == PaymentStatus.REFUNDED
        assert "refund_in_progress" not in outcome.payment.metadata

    @pytest.mark.asyncio
    async def test_wallet_refund_blocked_while_source_refund_in_flight(
        self,
        service: PaymentService,
        gateway: MagicMock,
        ledger_repo: InMemoryLedgerRepository,
    ) -> None:
        order = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"))
        await service.verify_and_complete(order.payment.id, "pay_1", "sig")
        errors: list[Exception] = []

        async def refund(gateway_payment_id, amount):
            try:
                await service.refund(order.payment.id)
            except ConflictingTransitionError as e:
                errors.append(e)
            return "rfnd_1"

        gateway.refund.side_effect = refund

        await service.refund(order.payment.id, destination=RefundDestination.SOURCE)

        assert len(errors) == 1
        assert ledger_repo.entries == []

    @pytest.mark.asyncio
    async def test_source_refund_failure_clears_claim(
        self,
        service: PaymentService,
        gateway: MagicMock,
        payments_repo: InMemoryPaymentRepository,
    ) -> None:
        order = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"))
        await service.verify_and_complete(order.payment.id, "pay_1", "sig")
        gateway.refund.side_effect = GatewayFailureError("refund down")

        with pytest.raises(GatewayFailureError):
            await service.refund(order.payment.id, destination=RefundDestination.SOURCE)

        payment = payments_repo.payments[order.payment.id]
        assert payment.status == PaymentStatus.COMPLETED
        assert "refund_in_progress" not in payment.metadata
        outcome = await service.refund(order.payment.id)
        assert outcome.destination == RefundDestination.WALLET

    @pytest.mark.asyncio
    async def test_source_refund_of_wallet_payment_goes_to_wallet(
        self,
        service: PaymentService,
        ledger: LedgerService,
    ) -> None:
        await ledger.credit(USER_ID, Decimal("300"))
        order = await service.create_order(
            USER_ID, PaymentKind.BOOKING, Decimal("300"), method=PaymentMethod.WALLET,
        )

        outcome = await service.refund(order.payment.id, destination=RefundDestination.SOURCE)

        assert outcome.destination == RefundDestination.WALLET
        assert outcome.ledger_entry.new_balance == Decimal("300.00")

    @pytest.mark.asyncio
    async def test_second_refund_is_already_terminal(self, service: PaymentService) -> None:
        order = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"))
        await service.verify_and_complete(order.payment.id, "pay_1", "sig")
        await service.refund(order.payment.id)

        with pytest.raises(AlreadyTerminalError):
            await service.refund(order.payment.id)

    @pytest.mark.asyncio
    async def test_refund_above_paid_rejected(self, service: PaymentService) -> None:
        order = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"))
        await service.verify_and_complete(order.payment.id, "pay_1", "sig")
        with pytest.raises(ValidationError):
            await service.refund(order.payment.id, Decimal("500.01"))

    @pytest.mark.asyncio
    async def test_refund_pending_conflicts(self, service: PaymentService) -> None:
        order = await service.create_order(USER_ID, PaymentKind.BOOKING, Decimal("500"))
        with pytest.raises(ConflictingTransitionError):
            await service.refund(order.payment.id)

    @pytest.mark.asyncio
    async def test_admin_adjust_records_manual_payment(
        self,
        service: PaymentService,
        ledger_repo: InMemoryLedgerRepository,
        admin,
    ) -> None:
        payment, entry = await service.admin_adjust(USER_ID, Decimal("150"), "goodwill", admin.id)

        assert payment.kind == PaymentKind.MANUAL
        assert payment.method == PaymentMethod.ADMIN
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.metadata == {"admin_id": admin.id, "direction": "credit"}
        assert entry.kind == LedgerEntryKind.ADJUST
        assert entry.cause_payment_id == payment.id
        assert ledger_repo.balances[USER_ID] == Decimal("150.00")

    @pytest.mark.asyncio
    async def test_admin_adjust_requires_reason(self, service: PaymentService, admin) -> None:
        with pytest.raises(ValidationError):
            await service.admin_adjust(USER_ID, Decimal("10"), "  ", admin.id)

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_payment(
        self,
        service: PaymentService,
        notifications: AsyncMock,
        admin,
    ) -> None:
        notifications.create.side_effect = NotFoundError("user")
        payment, _ = await service.admin_adjust(USER_ID, Decimal("10"), "bonus", admin.id)
        assert payment.status == PaymentStatus.COMPLETED


# =============================================================================
# ВЫВОД СРЕДСТВ
# =============================================================================

class TestWithdrawals:
    """Тесты выводов средств исполнителей."""

    @pytest_asyncio.fixture
    async def funded_worker(self, ledger: LedgerService, worker):
        await ledger.credit(worker.id, Decimal("1000"))
        return worker

    @pytest.mark.asyncio
    async def test_request_holds_amount(
        self,
        service: PaymentService,
        funded_worker,
        ledger_repo: InMemoryLedgerRepository,
        notifications: AsyncMock,
        mock_event_bus: AsyncMock,
    ) -> None:
        payment = await service.request_withdrawal(funded_worker, Decimal("400"), "fa_1")

        assert payment.kind == PaymentKind.WITHDRAWAL
        assert payment.is_pending
        assert ledger_repo.entries[-1].kind == LedgerEntryKind.HOLD
        assert ledger_repo.balances[funded_worker.id] == Decimal("600.00")
        notifications.notify_admins.assert_awaited_once()
        assert EventTypes.WITHDRAWAL_REQUESTED in published_types(mock_event_bus)

    @pytest.mark.asyncio
    async def test_customer_cannot_withdraw(self, service: PaymentService, customer) -> None:
        with pytest.raises(ForbiddenError):
            await service.request_withdrawal(customer, Decimal("400"), "fa_1")

    @pytest.mark.asyncio
    async def test_below_minimum_rejected(self, service: PaymentService, funded_worker) -> None:
        with pytest.raises(ValidationError):
            await service.request_withdrawal(funded_worker, Decimal("99.99"), "fa_1")

    @pytest.mark.asyncio
    async def test_over_balance_rejected(
        self,
        service: PaymentService,
        funded_worker,
    ) -> None:
        with pytest.raises(InsufficientFundsError):
            await service.request_withdrawal(funded_worker, Decimal("1000.01"), "fa_1")

    @pytest.mark.asyncio
    async def test_approve_releases_then_debits(
        self,
        service: PaymentService,
        funded_worker,
        admin,
        gateway: MagicMock,
        ledger_repo: InMemoryLedgerRepository,
    ) -> None:
        payment = await service.request_withdrawal(funded_worker, Decimal("400"), "fa_1")

        completed = await service.approve_withdrawal(payment.id, admin)

        kinds = [e.kind for e in ledger_repo.entries]
        assert kinds[-3:] == [LedgerEntryKind.HOLD, LedgerEntryKind.RELEASE, LedgerEntryKind.DEBIT]
        assert ledger_repo.balances[funded_worker.id] == Decimal("600.00")
        assert completed.status == PaymentStatus.COMPLETED
        assert completed.gateway_payout_id == "pout_1"
        assert completed.metadata["processed_by"] == admin.id
        gateway.payout.assert_awaited_once_with(
            Decimal("400.00"), reference=payment.reference, fund_account_id="fa_1",
        )

    @pytest.mark.asyncio
    async def test_payout_failure_keeps_hold(
        self,
        service: PaymentService,
        funded_worker,
        admin,
        gateway: MagicMock,
        payments_repo: InMemoryPaymentRepository,
        ledger_repo: InMemoryLedgerRepository,
    ) -> None:
        payment = await service.request_withdrawal(funded_worker, Decimal("400"), "fa_1")
        gateway.payout.side_effect = GatewayFailureError("payout down")

        with pytest.raises(GatewayFailureError):
            await service.approve_withdrawal(payment.id, admin)

        assert payments_repo.payments[payment.id].is_pending
        assert ledger_repo.entries[-1].kind == LedgerEntryKind.HOLD

    @pytest.mark.asyncio
    async def test_reject_while_payout_in_flight_conflicts(
        self,
        service: PaymentService,
        funded_worker,
        admin,
        gateway: MagicMock,
        payments_repo: InMemoryPaymentRepository,
        ledger_repo: InMemoryLedgerRepository,
    ) -> None:
        payment = await service.request_withdrawal(funded_worker, Decimal("400"), "fa_1")
        errors: list[Exception] = []

        async def payout(amount, reference, fund_account_id):
            assert payments_repo.payments[payment.id].metadata["payout_claimed_by"] == admin.id
            for attempt in (
                service.reject_withdrawal(payment.id, admin, "changed my mind"),
                service.approve_withdrawal(payment.id, admin),
            ):
                try:
                    await attempt
                except ConflictingTransitionError as e:
                    errors.append(e)
            return "pout_1"

        gateway.payout.side_effect = payout

        completed = await service.approve_withdrawal(payment.id, admin)

        assert len(errors) == 2
        assert completed.status == PaymentStatus.COMPLETED
        assert "payout_claimed_by" not in completed.metadata
        assert [e.kind for e in ledger_repo.entries].count(LedgerEntryKind.DEBIT) == 1
        assert ledger_repo.balances[funded_worker.id] == Decimal("600.00")
        gateway.payout.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_payout_failure_clears_claim(
        self,
        service: PaymentService,
        funded_worker,
        admin,
        gateway: MagicMock,
        payments_repo: InMemoryPaymentRepository,
    ) -> None:
        payment = await service.request_withdrawal(funded_worker, Decimal("400"), "fa_1")
        gateway.payout.side_effect = GatewayFailureError("payout down")

        with pytest.raises(GatewayFailureError):
            await service.approve_withdrawal(payment.id, admin)

        assert "payout_claimed_by" not in payments_repo.payments[payment.id].metadata
        rejected = await service.reject_withdrawal(payment.id, admin, "payout failed")
        assert rejected.status == PaymentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_reject_releases_hold(
        self,
        service: PaymentService,
        funded_worker,
        admin,
        ledger_repo: InMemoryLedgerRepository,
    ) -> None:
        payment = await service.request_withdrawal(funded_worker, Decimal("400"), "fa_1")

        rejected = await service.reject_withdrawal(payment.id, admin, "bank details invalid")

        assert rejected.status == PaymentStatus.CANCELLED
        assert rejected.metadata["rejection_reason"] == "bank details invalid"
        assert ledger_repo.entries[-1].kind == LedgerEntryKind.RELEASE
        assert ledger_repo.balances[funded_worker.id] == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_processed_withdrawal_is_terminal(self, service: PaymentService, funded_worker, admin) -> None:
        payment = await service.request_withdrawal(funded_worker, Decimal("400"), "fa_1")
        await service.reject_withdrawal(payment.id, admin, "duplicate")

        with pytest.raises(AlreadyTerminalError):
            await service.approve_withdrawal(payment.id, admin)

    @pytest.mark.asyncio
    async def test_only_admin_processes(self, service: PaymentService, funded_worker) -> None:
        payment = await service.request_withdrawal(funded_worker, Decimal("400"), "fa_1")
        with pytest.raises(ForbiddenError):
            await service.approve_withdrawal(payment.id, funded_worker)

    @pytest.mark.asyncio
    async def test_withdrawal_cannot_be_cancelled(self, service: PaymentService, funded_worker) -> None:
        payment = await service.request_withdrawal(funded_worker, Decimal("400"), "fa_1")
        with pytest.raises(ValidationError):
            await service.cancel(payment.id, funded_worker)

    @pytest.mark.asyncio
    async def test_list_scoped_to_worker(
        self,
        service: PaymentService,
        funded_worker,
        admin,
        ledger: LedgerService,
    ) -> None:
        other = make_actor(202, ActorKind.WORKER)
        await ledger.credit(other.id, Decimal("500"))
        await service.request_withdrawal(funded_worker, Decimal("100"), "fa_1")
        await service.request_withdrawal(other, Decimal("100"), "fa_2")

        assert len(await service.list_withdrawals(funded_worker)) == 1
        assert len(await service.list_withdrawals(admin)) == 2
