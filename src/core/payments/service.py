# src/core/payments/service.py
"""
Сервис платежей.

Связывает кошелёк, платёжный шлюз и связанные сущности:
- заказ у шлюза или мгновенное списание с кошелька
- подтверждение оплаты по подписи и вебхукам (идемпотентно)
- отмена, возврат, ручная корректировка
- выводы средств исполнителей
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional

from asyncpg import Connection

from src.common.constants import (
    ActorKind,
    NotificationKind,
    PaymentKind,
    PaymentMethod,
    PaymentStatus,
    RefundDestination,
    RelationKind,
    TypeMsg,
)
from src.common.errors import (
    AlreadyTerminalError,
    AmountMismatchError,
    ConflictingTransitionError,
    CoreError,
    ForbiddenError,
    GatewayFailureError,
    ValidationError,
)
from src.common.logger import log_error, log_info, log_warning
from src.common.money import require_positive, to_money
from src.core.catalog.repository import CatalogRepository
from src.core.ledger.models import LedgerEntry
from src.core.ledger.service import LedgerService
from src.core.payments.hooks import PaymentHooks
from src.core.payments.models import OrderResult, Payment, PaymentRelation, RefundOutcome
from src.core.payments.repository import PaymentRepository
from src.core.users.models import Actor
from src.core.users.repository import UserRepository
from src.infra.event_bus import DomainEvent, EventTypes
from src.infra.payment_gateway import RazorpayGateway

if TYPE_CHECKING:
    from src.config.runtime import RuntimeConfig
    from src.core.notifications.service import NotificationService
    from src.infra.database import DatabaseManager
    from src.infra.event_bus import EventBus


# События вебхука, означающие успешное списание
CAPTURE_EVENTS = frozenset({"payment.captured", "order.paid"})
FAILURE_EVENT = "payment.failed"
# Ключ события для подтверждения по подписи клиента
VERIFY_EVENT = "payment.verified"

# Виды платежей, которые нельзя вернуть
_NON_REFUNDABLE = frozenset({PaymentKind.WITHDRAWAL, PaymentKind.MANUAL, PaymentKind.REFUND})

# Ключи metadata, которыми платёж помечается на время вызова шлюза
_REFUND_CLAIM = "refund_in_progress"
_PAYOUT_CLAIM = "payout_claimed_by"


class PaymentService:
    """
    Сервис платежей.

    Ответственности:
    - Жизненный цикл Payment (pending -> completed/failed/cancelled, completed -> refunded)
    - Мутации кошелька, вызванные платежами
    - Вызовы шлюза вне транзакций БД
    """

    def __init__(
        self,
        db: "DatabaseManager",
        gateway: RazorpayGateway,
        ledger: LedgerService,
        runtime: "RuntimeConfig",
        event_bus: "EventBus",
        hooks: PaymentHooks | None = None,
        notifications: "NotificationService | None" = None,
        users: UserRepository | None = None,
        catalog: CatalogRepository | None = None,
        repository: PaymentRepository | None = None,
        currency: str = "INR",
        min_withdrawal_amount: Decimal = Decimal("100.00"),
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.ledger = ledger
        self.runtime = runtime
        self.event_bus = event_bus
        self.hooks = hooks or PaymentHooks()
        self.notifications = notifications
        self.users = users or UserRepository(db)
        self.catalog = catalog or CatalogRepository(db)
        self.repository = repository or PaymentRepository(db)
        self.currency = currency
        self.min_withdrawal_amount = to_money(min_withdrawal_amount)

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get_payment(self, payment_id: int, actor: Optional[Actor] = None) -> Payment:
        """
        Платёж по ID с проверкой владельца.

        Raises:
            NotFoundError: Платёж не найден
            ForbiddenError: Чужой платёж
        """
        payment = await self.repository.require(payment_id)
        if actor is not None:
            self._ensure_owner_or_admin(payment, actor)
        return payment

    async def list_payments(self, user_id: int, limit: int = 50, offset: int = 0) -> list[Payment]:
        return await self.repository.list_for_user(user_id, limit=limit, offset=offset)

    # =========================================================================
    # СОЗДАНИЕ ЗАКАЗА
    # =========================================================================

    async def create_order(
        self,
        user_id: int,
        kind: PaymentKind,
        amount: Decimal,
        relation: Optional[PaymentRelation] = None,
        method: PaymentMethod = PaymentMethod.GATEWAY,
        notes: Optional[str] = None,
    ) -> OrderResult:
        """
        Создаёт платёж.

        Для gateway платёж фиксируется в pending до обращения к шлюзу,
        сбой шлюза оставляет его в pending. Для wallet списание и
        завершение выполняются одной транзакцией.

        Raises:
            ValidationError: Неверная сумма или способ оплаты
            InsufficientFundsError: Недостаточно средств на кошельке
            GatewayFailureError: Шлюз недоступен (платёж остаётся pending)
        """
        amount = require_positive(amount)

        if method == PaymentMethod.WALLET:
            async with self.db.transaction() as conn:
                payment = await self.create_wallet_payment(conn, user_id, kind, amount, relation, notes)
            await self.announce_completed(payment, run_hooks=True)
            return OrderResult(payment=payment)

        if method != PaymentMethod.GATEWAY:
            raise ValidationError(f"Способ оплаты {method.value} не поддерживается для заказа")

        async with self.db.transaction() as conn:
            payment = await self.create_pending(conn, user_id, kind, amount, relation, notes)
        return await self.issue_gateway_order(payment)

    async def create_pending(
        self,
        conn: Connection,
        user_id: int,
        kind: PaymentKind,
        amount: Decimal,
        relation: Optional[PaymentRelation] = None,
        notes: Optional[str] = None,
    ) -> Payment:
        """Платёж через шлюз в статусе pending внутри транзакции вызывающего."""
        payment = await self.repository.insert(
            conn,
            user_id=user_id,
            amount=require_positive(amount),
            kind=kind,
            method=PaymentMethod.GATEWAY,
            currency=self.currency,
            relation=relation,
            notes=notes,
        )
        await log_info(
            f"Платёж {payment.reference} создан: {kind.value} {payment.amount} {self.currency}",
            type_msg=TypeMsg.INFO,
            extra={"payment_id": payment.id, "user_id": user_id},
        )
        return payment

    async def create_wallet_payment(
        self,
        conn: Connection,
        user_id: int,
        kind: PaymentKind,
        amount: Decimal,
        relation: Optional[PaymentRelation] = None,
        notes: Optional[str] = None,
    ) -> Payment:
        """
        Оплата с кошелька внутри транзакции вызывающего.

        Raises:
            InsufficientFundsError: Недостаточно средств
        """
        if kind in (PaymentKind.WALLET_RECHARGE, PaymentKind.WITHDRAWAL):
            raise ValidationError(f"Платёж {kind.value} нельзя оплатить с кошелька")
        payment = await self.repository.insert(
            conn,
            user_id=user_id,
            amount=require_positive(amount),
            kind=kind,
            method=PaymentMethod.WALLET,
            currency=self.currency,
            relation=relation,
            status=PaymentStatus.COMPLETED,
            notes=notes,
        )
        await self.ledger.debit(user_id, payment.amount, cause_payment_id=payment.id, note=kind.value, conn=conn)
        await self._apply_completion_effects(conn, payment)
        return payment

    async def issue_gateway_order(self, payment: Payment) -> OrderResult:
        """
        Создаёт заказ у шлюза для pending-платежа. Повторный вызов
        безопасен: шлюз идемпотентен по receipt (референсу платежа).

        Raises:
            GatewayFailureError: Шлюз недоступен
        """
        try:
            order = await self.gateway.create_order(
                payment.amount,
                receipt=payment.reference,
                description=payment.kind.value,
            )
        except GatewayFailureError as e:
            e.details.setdefault("payment_id", payment.id)
            await log_warning(
                f"Заказ шлюза для платежа {payment.reference} не создан: {e.message}",
                extra={"payment_id": payment.id, "retryable": e.retryable},
            )
            raise

        await self.repository.set_gateway_order(payment.id, order.order_id)
        payment = payment.model_copy(update={"gateway_order_id": order.order_id})
        return OrderResult(payment=payment, gateway_order=order)

    async def retry_pending_orders(self, limit: int = 100) -> int:
        """
        Повторно создаёт заказы шлюза для pending-платежей без order_id.

        Returns:
            Количество успешно созданных заказов
        """
        issued = 0
        for payment in await self.repository.list_orderless_gateway_payments(limit):
            try:
                await self.issue_gateway_order(payment)
            except GatewayFailureError:
                continue
            issued += 1
        if issued:
            await log_info(f"Повторно создано заказов шлюза: {issued}", type_msg=TypeMsg.INFO)
        return issued

    # =========================================================================
    # ПОПОЛНЕНИЕ И ПОДПИСКА
    # =========================================================================

    async def recharge_wallet(self, user_id: int, amount: Decimal) -> OrderResult:
        """
        Заказ на пополнение кошелька.

        Raises:
            ValidationError: Сумма вне лимитов или превышен максимальный баланс
        """
        amount = require_positive(amount)
        config = await self.runtime.get()
        if amount < config.min_recharge_amount or amount > config.max_recharge_amount:
            raise ValidationError(
                f"Сумма пополнения должна быть от {config.min_recharge_amount} до {config.max_recharge_amount}",
                {"min": str(config.min_recharge_amount), "max": str(config.max_recharge_amount)},
            )
        actor = await self.users.require(user_id)
        if actor.wallet_balance + amount > config.max_wallet_balance:
            raise ValidationError(
                f"Баланс кошелька не может превышать {config.max_wallet_balance}",
                {"balance": str(actor.wallet_balance), "max": str(config.max_wallet_balance)},
            )
        return await self.create_order(user_id, PaymentKind.WALLET_RECHARGE, amount)

    async def purchase_subscription(
        self,
        user_id: int,
        plan_id: int,
        method: PaymentMethod = PaymentMethod.GATEWAY,
    ) -> OrderResult:
        """Заказ на покупку подписки по тарифу."""
        plan = await self.catalog.require_plan(plan_id)
        return await self.create_order(
            user_id,
            PaymentKind.SUBSCRIPTION,
            plan.price,
            relation=PaymentRelation(kind=RelationKind.SUBSCRIPTION_PLAN, id=plan.id),
            method=method,
            notes=plan.name,
        )

    # =========================================================================
    # ПОДТВЕРЖДЕНИЕ ОПЛАТЫ
    # =========================================================================

    async def verify_and_complete(
        self,
        payment_id: int,
        gateway_payment_id: str,
        signature: str,
        actor: Optional[Actor] = None,
        run_hooks: bool = True,
    ) -> Payment:
        """
        Проверяет подпись и сумму у шлюза и завершает платёж.

        Повторный вызов с тем же gateway_payment_id возвращает тот же платёж.

        Args:
            payment_id: ID платежа
            gateway_payment_id: ID платежа у шлюза
            signature: Подпись от клиента
            actor: Кто подтверждает (проверка владельца)
            run_hooks: Вызывать обработчики связанной сущности

        Raises:
            AlreadyTerminalError: Платёж уже не pending
            SignatureMismatchError: Подпись не совпала
            AmountMismatchError: Шлюз списал меньше суммы платежа
            GatewayFailureError: Шлюз недоступен или платёж ещё не списан
        """
        payment = await self.repository.require(payment_id)
        if actor is not None:
            self._ensure_owner_or_admin(payment, actor)

        settled = self._settled_result(payment, gateway_payment_id)
        if settled is not None:
            return settled

        if payment.method != PaymentMethod.GATEWAY or not payment.gateway_order_id:
            raise ValidationError(
                "Платёж не ожидает подтверждения шлюза",
                {"payment_id": payment.id},
            )

        self.gateway.verify_payment_signature(payment.gateway_order_id, gateway_payment_id, signature)

        captured = await self.gateway.fetch_payment(gateway_payment_id)
        if captured.order_id and captured.order_id != payment.gateway_order_id:
            raise ValidationError(
                "Платёж шлюза относится к другому заказу",
                {"payment_id": payment.id, "gateway_payment_id": gateway_payment_id},
            )
        if not captured.is_captured:
            raise GatewayFailureError(
                f"Платёж шлюза в статусе {captured.status}, списание не завершено",
                {"payment_id": payment.id, "status": captured.status},
            )

        completed, changed = await self._complete(
            payment.id,
            gateway_payment_id,
            captured.amount,
            event_kind=VERIFY_EVENT,
            event_payload={"status": captured.status, "amount": str(captured.amount)},
        )
        if changed:
            await self.announce_completed(completed, run_hooks=run_hooks)
        return completed

    async def handle_webhook(self, body: bytes, signature: str) -> Optional[Payment]:
        """
        Обрабатывает вебхук шлюза.

        Returns:
            Затронутый платёж или None, если событие не относится к платежам

        Raises:
            SignatureMismatchError: Подпись тела не совпала
            ValidationError: Тело не разбирается
            AmountMismatchError: Шлюз списал меньше суммы платежа
        """
        self.gateway.verify_webhook_signature(body, signature)
        event = self.gateway.parse_webhook(body)

        if event.event not in CAPTURE_EVENTS and event.event != FAILURE_EVENT:
            await log_info(f"Вебхук {event.event} пропущен", type_msg=TypeMsg.DEBUG)
            return None

        if await self.repository.event_processed(event.event, event.payment_id):
            await log_info(
                f"Повторная доставка вебхука {event.event} для {event.payment_id}",
                type_msg=TypeMsg.DEBUG,
            )
            return await self.repository.get_by_gateway_payment_id(event.payment_id)

        payment = None
        if event.order_id:
            payment = await self.repository.get_by_gateway_order_id(event.order_id)
        if payment is None:
            payment = await self.repository.get_by_gateway_payment_id(event.payment_id)
        if payment is None:
            await log_warning(
                f"Вебхук {event.event}: платёж для заказа {event.order_id} не найден",
                extra={"gateway_payment_id": event.payment_id},
            )
            return None

        if event.event == FAILURE_EVENT:
            return await self._fail_from_webhook(payment, event.payment_id, event.raw)

        settled = self._settled_result(payment, event.payment_id)
        if settled is not None:
            return settled

        completed, changed = await self._complete(
            payment.id,
            event.payment_id,
            event.amount,
            event_kind=event.event,
            event_payload=event.raw,
        )
        if changed:
            await self.announce_completed(completed, run_hooks=True)
        return completed

    def _settled_result(self, payment: Payment, gateway_payment_id: str) -> Optional[Payment]:
        """Платёж, уже завершённый этим gateway_payment_id, или ошибка для иных итоговых статусов."""
        if payment.status == PaymentStatus.COMPLETED and payment.gateway_payment_id == gateway_payment_id:
            return payment
        if payment.is_terminal:
            raise AlreadyTerminalError(
                f"Платёж {payment.id} уже в статусе {payment.status.value}",
                result=payment,
                details={"payment_id": payment.id, "status": payment.status.value},
            )
        return None

    async def _complete(
        self,
        payment_id: int,
        gateway_payment_id: str,
        captured_amount: Decimal,
        event_kind: str,
        event_payload: dict[str, Any],
    ) -> tuple[Payment, bool]:
        """
        Завершает платёж и применяет эффекты одной транзакцией.

        Returns:
            Платёж и признак того, что статус изменён этим вызовом.
            Если платёж уже завершён этим же gateway_payment_id (гонка
            двух подтверждений), признак равен False.
        """
        async with self.db.transaction() as conn:
            locked = await self.repository.lock(conn, payment_id)
            if locked.status == PaymentStatus.COMPLETED and locked.gateway_payment_id == gateway_payment_id:
                return locked, False
            if locked.is_terminal:
                raise AlreadyTerminalError(
                    f"Платёж {payment_id} уже в статусе {locked.status.value}",
                    result=locked,
                    details={"payment_id": payment_id, "status": locked.status.value},
                )
            if to_money(captured_amount) < locked.amount:
                raise AmountMismatchError(
                    f"Шлюз списал {captured_amount}, ожидалось {locked.amount}",
                    {"payment_id": payment_id, "expected": str(locked.amount), "captured": str(captured_amount)},
                )

            completed = await self.repository.mark_completed(conn, payment_id, gateway_payment_id)
            await self._apply_completion_effects(conn, completed)
            await self.repository.record_event(conn, event_kind, gateway_payment_id, payment_id, event_payload)

        await log_info(
            f"Платёж {completed.reference} завершён ({event_kind})",
            type_msg=TypeMsg.INFO,
            extra={"payment_id": payment_id, "gateway_payment_id": gateway_payment_id},
        )
        return completed, True

    async def _apply_completion_effects(self, conn: Connection, payment: Payment) -> None:
        """Эффекты завершения, зависящие от вида платежа, в той же транзакции."""
        if payment.kind == PaymentKind.WALLET_RECHARGE:
            await self.ledger.credit(
                payment.user_id, payment.amount, cause_payment_id=payment.id, note="wallet_recharge", conn=conn,
            )
        elif payment.kind == PaymentKind.SUBSCRIPTION:
            plan_id = payment.related_to(RelationKind.SUBSCRIPTION_PLAN)
            if plan_id is None:
                raise ValidationError("Платёж подписки без тарифа", {"payment_id": payment.id})
            plan = await self.catalog.require_plan(plan_id)
            period = await self.repository.extend_subscription(
                conn, payment.user_id, plan.id, plan.duration_days, payment.id,
            )
            await log_info(
                f"Подписка пользователя {payment.user_id} продлена до {period['expires_at']}",
                type_msg=TypeMsg.INFO,
            )

    async def _fail_from_webhook(self, payment: Payment, gateway_payment_id: str, raw: dict[str, Any]) -> Payment:
        async with self.db.transaction() as conn:
            locked = await self.repository.lock(conn, payment.id)
            if locked.is_terminal:
                await self.repository.record_event(conn, FAILURE_EVENT, gateway_payment_id, payment.id, raw)
                return locked
            failed = await self.repository.mark_failed(conn, payment.id, "gateway reported failure")
            await self.repository.record_event(conn, FAILURE_EVENT, gateway_payment_id, payment.id, raw)

        await log_warning(f"Платёж {failed.reference} отклонён шлюзом", extra={"payment_id": failed.id})
        await self._publish(EventTypes.PAYMENT_FAILED, failed)
        return failed

    async def announce_completed(self, payment: Payment, run_hooks: bool) -> None:
        """Событие, уведомление и обработчики после коммита завершённого платежа."""
        await self._publish(EventTypes.PAYMENT_COMPLETED, payment)

        if payment.kind == PaymentKind.WALLET_RECHARGE:
            await self._notify(
                payment.user_id,
                NotificationKind.WALLET_TRANSACTION,
                "Wallet recharged",
                f"₹{payment.amount} has been added to your wallet.",
                {"payment_id": payment.id, "amount": str(payment.amount)},
            )
        elif payment.kind == PaymentKind.SUBSCRIPTION:
            await self._notify(
                payment.user_id,
                NotificationKind.SUBSCRIPTION_ACTIVATED,
                "Subscription activated",
                "Your subscription is now active.",
                {"payment_id": payment.id},
            )
        else:
            await self._notify(
                payment.user_id,
                NotificationKind.PAYMENT_RECEIVED,
                "Payment received",
                f"We received your payment of ₹{payment.amount}.",
                {"payment_id": payment.id, "reference": payment.reference},
            )

        if run_hooks:
            await self.hooks.completed(payment)

    # =========================================================================
    # ОТМЕНА И ВОЗВРАТ
    # =========================================================================

    async def cancel(self, payment_id: int, actor: Actor) -> Payment:
        """
        Отменяет ожидающий платёж.

        Raises:
            ForbiddenError: Чужой платёж
            AlreadyTerminalError: Платёж уже отменён
            ConflictingTransitionError: Платёж не в pending
        """
        async with self.db.transaction() as conn:
            payment = await self.repository.lock(conn, payment_id)
            self._ensure_owner_or_admin(payment, actor)
            if payment.kind == PaymentKind.WITHDRAWAL:
                raise ValidationError("Вывод средств отклоняется через reject_withdrawal")
            if payment.status == PaymentStatus.CANCELLED:
                raise AlreadyTerminalError("Платёж уже отменён", result=payment)
            if not payment.is_pending:
                raise ConflictingTransitionError(
                    f"Нельзя отменить платёж в статусе {payment.status.value}",
                    {"payment_id": payment_id, "status": payment.status.value},
                )
            cancelled = await self.repository.mark_cancelled(conn, payment_id, {"cancelled_by": actor.id})

        await self.announce_cancelled(cancelled, actor.id, run_hooks=True)
        return cancelled

    async def announce_cancelled(self, payment: Payment, actor_id: int, run_hooks: bool) -> None:
        """Лог, событие и обработчики после коммита отмены."""
        await log_info(f"Платёж {payment.reference} отменён пользователем {actor_id}", type_msg=TypeMsg.INFO)
        await self._publish(EventTypes.PAYMENT_CANCELLED, payment)
        if run_hooks:
            await self.hooks.cancelled(payment)

    async def refund(
        self,
        payment_id: int,
        amount: Optional[Decimal] = None,
        notes: Optional[str] = None,
        destination: RefundDestination = RefundDestination.WALLET,
    ) -> RefundOutcome:
        """
        Возврат завершённого платежа. Один возврат закрывает платёж.

        Args:
            payment_id: ID платежа
            amount: Сумма возврата (по умолчанию вся сумма платежа)
            notes: Причина
            destination: Кошелёк или исходный способ оплаты

        Raises:
            AlreadyTerminalError: Платёж уже возвращён
            ConflictingTransitionError: Платёж не в completed
            ValidationError: Сумма больше суммы платежа или вид не возвращается
            GatewayFailureError: Шлюз не принял возврат на источник
        """
        if destination == RefundDestination.SOURCE:
            claimed = await self._claim_source_refund(payment_id, amount)
            if claimed is not None:
                outcome = await self._refund_to_source(*claimed, notes)
                await self.announce_refund(outcome)
                return outcome

        async with self.db.transaction() as conn:
            outcome = await self.refund_in(conn, payment_id, amount, notes)
        await self.announce_refund(outcome)
        return outcome

    async def _claim_source_refund(
        self,
        payment_id: int,
        amount: Optional[Decimal],
    ) -> Optional[tuple[Payment, Decimal]]:
        """
        Помечает платёж шлюза как возвращаемый на источник.

        Returns:
            Платёж и сумма возврата или None, если платёж оплачен не через шлюз
        """
        async with self.db.transaction() as conn:
            payment = await self.repository.lock(conn, payment_id)
            refund_amount = self._refundable_amount(payment, amount)
            if payment.method != PaymentMethod.GATEWAY:
                return None
            if not payment.gateway_payment_id:
                raise ValidationError("У платежа нет идентификатора шлюза", {"payment_id": payment_id})
            payment = await self.repository.update_metadata(
                conn, payment_id, {_REFUND_CLAIM: str(refund_amount)},
            )
        return payment, refund_amount

    async def _refund_to_source(self, payment: Payment, refund_amount: Decimal, notes: Optional[str]) -> RefundOutcome:
        """Вызов шлюза вне транзакции, затем фиксация возврата под локом платежа."""
        try:
            gateway_refund_id = await self.gateway.refund(payment.gateway_payment_id, refund_amount)
        except CoreError:
            async with self.db.transaction() as conn:
                await self.repository.lock(conn, payment.id)
                await self.repository.update_metadata(conn, payment.id, drop=[_REFUND_CLAIM])
            raise

        async with self.db.transaction() as conn:
            await self.repository.lock(conn, payment.id)
            await self.repository.mark_refunded(conn, payment.id, refund_amount, notes, gateway_refund_id)
            refunded = await self.repository.update_metadata(conn, payment.id, drop=[_REFUND_CLAIM])
        return RefundOutcome(
            payment=refunded,
            destination=RefundDestination.SOURCE,
            amount=refund_amount,
            gateway_refund_id=gateway_refund_id,
        )

    async def announce_refund(self, outcome: RefundOutcome) -> None:
        """Лог, событие и уведомление после коммита возврата."""
        payment_id = outcome.payment.id
        await log_info(
            f"Возврат по платежу {outcome.payment.reference}: {outcome.amount} -> {outcome.destination.value}",
            type_msg=TypeMsg.INFO,
            extra={"payment_id": payment_id, "ledger_entry_id": outcome.ledger_entry_id},
        )
        await self._publish(EventTypes.PAYMENT_REFUNDED, outcome.payment)
        await self._notify(
            outcome.payment.user_id,
            NotificationKind.PAYMENT_REFUNDED,
            "Refund processed",
            f"₹{outcome.amount} has been refunded to your "
            f"{'wallet' if outcome.destination == RefundDestination.WALLET else 'original payment method'}.",
            {"payment_id": payment_id, "amount": str(outcome.amount)},
        )

    async def refund_in(
        self,
        conn: Connection,
        payment_id: int,
        amount: Optional[Decimal] = None,
        notes: Optional[str] = None,
    ) -> RefundOutcome:
        """
        Возврат на кошелёк внутри транзакции вызывающего.
        После коммита нужен announce_refund.
        """
        payment = await self.repository.lock(conn, payment_id)
        refund_amount = self._refundable_amount(payment, amount)
        entry = await self.ledger.credit(
            payment.user_id, refund_amount, cause_payment_id=payment.id, note="refund", conn=conn,
        )
        refunded = await self.repository.mark_refunded(conn, payment.id, refund_amount, notes)
        return RefundOutcome(
            payment=refunded,
            destination=RefundDestination.WALLET,
            amount=refund_amount,
            ledger_entry=entry,
        )

    @staticmethod
    def _refundable_amount(payment: Payment, amount: Optional[Decimal]) -> Decimal:
        payment_id = payment.id
        if payment.status == PaymentStatus.REFUNDED:
            raise AlreadyTerminalError("Платёж уже возвращён", result=payment, details={"payment_id": payment_id})
        if payment.status != PaymentStatus.COMPLETED:
            raise ConflictingTransitionError(
                f"Нельзя вернуть платёж в статусе {payment.status.value}",
                {"payment_id": payment_id, "status": payment.status.value},
            )
        if payment.kind in _NON_REFUNDABLE:
            raise ValidationError(f"Платёж вида {payment.kind.value} не возвращается", {"payment_id": payment_id})

        refund_amount = payment.amount if amount is None else require_positive(amount)
        if refund_amount > payment.amount:
            raise ValidationError(
                "Сумма возврата больше суммы платежа",
                {"payment_id": payment_id, "amount": str(refund_amount), "paid": str(payment.amount)},
            )
        if _REFUND_CLAIM in payment.metadata:
            raise ConflictingTransitionError(
                "Возврат на источник уже выполняется",
                {"payment_id": payment_id, "amount": payment.metadata[_REFUND_CLAIM]},
            )
        return refund_amount

    async def cancel_pending_in(self, conn: Connection, payment_id: int, actor_id: int) -> Optional[Payment]:
        """
        Отменяет платёж внутри транзакции вызывающего, если он ещё pending.
        Обработчики связанной сущности не вызываются.

        Returns:
            Отменённый платёж или None, если платёж уже не pending
        """
        payment = await self.repository.lock(conn, payment_id)
        if not payment.is_pending:
            return None
        return await self.repository.mark_cancelled(conn, payment_id, {"cancelled_by": actor_id})

    async def admin_adjust(
        self,
        user_id: int,
        signed_amount: Decimal,
        reason: str,
        admin_id: int,
    ) -> tuple[Payment, LedgerEntry]:
        """
        Ручная корректировка кошелька: платёж manual и запись adjust.

        Returns:
            Пара (платёж, запись кошелька)

        Raises:
            ValidationError: Пустая причина или нулевая сумма
            InsufficientFundsError: Списание больше баланса
        """
        if not reason or not reason.strip():
            raise ValidationError("Причина корректировки обязательна")
        signed = to_money(signed_amount)
        if signed == 0:
            raise ValidationError("Сумма корректировки не может быть нулевой")

        async with self.db.transaction() as conn:
            payment = await self.repository.insert(
                conn,
                user_id=user_id,
                amount=abs(signed),
                kind=PaymentKind.MANUAL,
                method=PaymentMethod.ADMIN,
                currency=self.currency,
                status=PaymentStatus.COMPLETED,
                notes=reason,
                metadata={"admin_id": admin_id, "direction": "credit" if signed > 0 else "debit"},
            )
            entry = await self.ledger.adjust(user_id, signed, cause_payment_id=payment.id, note=reason, conn=conn)

        await log_info(
            f"Корректировка кошелька {user_id} на {signed:+} администратором {admin_id}: {reason}",
            type_msg=TypeMsg.INFO,
        )
        await self._notify(
            user_id,
            NotificationKind.WALLET_TRANSACTION,
            "Wallet adjusted",
            f"Your wallet balance was adjusted by ₹{signed:+}.",
            {"payment_id": payment.id, "amount": str(signed)},
        )
        return payment, entry

    # =========================================================================
    # ВЫВОД СРЕДСТВ
    # =========================================================================

    async def request_withdrawal(
        self,
        worker: Actor,
        amount: Decimal,
        fund_account_id: str,
        notes: Optional[str] = None,
    ) -> Payment:
        """
        Заявка исполнителя на вывод: платёж withdrawal и заморозка суммы.

        Raises:
            ForbiddenError: Участник не исполнитель
            ValidationError: Сумма меньше минимальной или нет счёта
            InsufficientFundsError: Сумма больше баланса
        """
        if not worker.is_worker:
            raise ForbiddenError("Вывод средств доступен только исполнителям")
        amount = require_positive(amount)
        if amount < self.min_withdrawal_amount:
            raise ValidationError(
                f"Минимальная сумма вывода {self.min_withdrawal_amount}",
                {"min": str(self.min_withdrawal_amount)},
            )
        if not fund_account_id:
            raise ValidationError("Не указан счёт для выплаты")

        async with self.db.transaction() as conn:
            payment = await self.repository.insert(
                conn,
                user_id=worker.id,
                amount=amount,
                kind=PaymentKind.WITHDRAWAL,
                method=PaymentMethod.WALLET,
                currency=self.currency,
                notes=notes,
                metadata={"fund_account_id": fund_account_id},
            )
            await self.ledger.hold(worker.id, amount, cause_payment_id=payment.id, note="withdrawal", conn=conn)

        await log_info(
            f"Заявка на вывод {payment.reference}: исполнитель {worker.id}, {amount}",
            type_msg=TypeMsg.INFO,
        )
        await self._publish(EventTypes.WITHDRAWAL_REQUESTED, payment)
        await self._notify_admins(
            NotificationKind.WITHDRAWAL_REQUESTED,
            "New withdrawal request",
            f"{worker.name or worker.phone} requested a withdrawal of ₹{amount}.",
            {"payment_id": payment.id, "worker_id": worker.id, "amount": str(amount)},
        )
        return payment

    async def approve_withdrawal(self, payment_id: int, admin: Actor) -> Payment:
        """
        Одобряет вывод.

        Заявка помечается администратором под локом, выплата идёт через
        шлюз вне транзакции, затем снятие заморозки и окончательное
        списание фиксируются одной транзакцией. Пока метка стоит,
        отклонить или повторно одобрить заявку нельзя.

        Raises:
            ForbiddenError: Не администратор
            AlreadyTerminalError: Вывод уже обработан
            ConflictingTransitionError: Выплата по заявке уже выполняется
            GatewayFailureError: Выплата не прошла (заявка остаётся pending)
        """
        await self._require_pending_withdrawal(payment_id, admin)

        async with self.db.transaction() as conn:
            payment = self._ensure_withdrawal_open(await self.repository.lock(conn, payment_id))
            payment = await self.repository.update_metadata(conn, payment_id, {_PAYOUT_CLAIM: admin.id})

        try:
            payout_id = await self.gateway.payout(
                payment.amount,
                reference=payment.reference,
                fund_account_id=str(payment.metadata.get("fund_account_id", "")),
            )
        except CoreError:
            async with self.db.transaction() as conn:
                await self.repository.lock(conn, payment_id)
                await self.repository.update_metadata(conn, payment_id, drop=[_PAYOUT_CLAIM])
            raise

        async with self.db.transaction() as conn:
            locked = await self.repository.lock(conn, payment_id)
            await self.ledger.release(locked.user_id, locked.amount, cause_payment_id=locked.id, note="withdrawal", conn=conn)
            await self.ledger.debit(locked.user_id, locked.amount, cause_payment_id=locked.id, note="withdrawal", conn=conn)
            await self.repository.mark_completed(
                conn,
                payment_id,
                gateway_payout_id=payout_id,
                metadata={"processed_by": admin.id},
            )
            completed = await self.repository.update_metadata(conn, payment_id, drop=[_PAYOUT_CLAIM])

        await log_info(f"Вывод {completed.reference} одобрен администратором {admin.id}", type_msg=TypeMsg.INFO)
        await self._publish(EventTypes.WITHDRAWAL_APPROVED, completed)
        await self._notify(
            completed.user_id,
            NotificationKind.WITHDRAWAL_APPROVED,
            "Withdrawal approved",
            f"Your withdrawal of ₹{completed.amount} has been processed.",
            {"payment_id": completed.id},
        )
        return completed

    async def reject_withdrawal(self, payment_id: int, admin: Actor, reason: str) -> Payment:
        """
        Отклоняет вывод и снимает заморозку.

        Raises:
            ValidationError: Не указана причина
            ForbiddenError: Не администратор
            AlreadyTerminalError: Вывод уже обработан
            ConflictingTransitionError: Выплата по заявке уже выполняется
        """
        if not reason or not reason.strip():
            raise ValidationError("Причина отклонения обязательна")
        await self._require_pending_withdrawal(payment_id, admin)

        async with self.db.transaction() as conn:
            locked = self._ensure_withdrawal_open(await self.repository.lock(conn, payment_id))
            await self.ledger.release(locked.user_id, locked.amount, cause_payment_id=locked.id, note="withdrawal", conn=conn)
            cancelled = await self.repository.mark_cancelled(
                conn,
                payment_id,
                {"rejection_reason": reason.strip(), "processed_by": admin.id},
            )

        await log_info(
            f"Вывод {cancelled.reference} отклонён администратором {admin.id}: {reason}",
            type_msg=TypeMsg.INFO,
        )
        await self._publish(EventTypes.WITHDRAWAL_REJECTED, cancelled)
        await self._notify(
            cancelled.user_id,
            NotificationKind.WITHDRAWAL_REJECTED,
            "Withdrawal rejected",
            f"Your withdrawal of ₹{cancelled.amount} was rejected: {reason.strip()}",
            {"payment_id": cancelled.id, "reason": reason.strip()},
        )
        return cancelled

    async def list_withdrawals(
        self,
        actor: Actor,
        status: Optional[PaymentStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Payment]:
        """История выводов исполнителя или все выводы для администратора."""
        user_id = None if actor.is_admin else actor.id
        return await self.repository.list_withdrawals(user_id, status, limit, offset)

    async def pending_withdrawals_older_than(self, hours: int) -> list[Payment]:
        moment = datetime.now(timezone.utc) - timedelta(hours=hours)
        return await self.repository.list_pending_withdrawals_before(moment)

    async def _require_pending_withdrawal(self, payment_id: int, admin: Actor) -> Payment:
        if not admin.is_admin:
            raise ForbiddenError("Обработка выводов доступна только администратору")
        payment = await self.repository.require(payment_id)
        if payment.kind != PaymentKind.WITHDRAWAL:
            raise ValidationError(f"Платёж {payment_id} не является выводом", {"payment_id": payment_id})
        return self._ensure_withdrawal_open(payment)

    @staticmethod
    def _ensure_withdrawal_open(payment: Payment) -> Payment:
        if payment.is_terminal:
            raise AlreadyTerminalError(
                f"Вывод {payment.id} уже обработан", result=payment, details={"payment_id": payment.id},
            )
        if _PAYOUT_CLAIM in payment.metadata:
            raise ConflictingTransitionError(
                f"Выплата по выводу {payment.id} уже выполняется",
                {"payment_id": payment.id, "claimed_by": payment.metadata[_PAYOUT_CLAIM]},
            )
        return payment


    # =========================================================================
    # ВСПОМОГАТЕЛЬНОЕ
    # =========================================================================

    @staticmethod
    def _ensure_owner_or_admin(payment: Payment, actor: Actor) -> None:
        if payment.user_id != actor.id and actor.kind != ActorKind.ADMIN:
            raise ForbiddenError("Платёж принадлежит другому пользователю", {"payment_id": payment.id})

    async def _publish(self, event_type: str, payment: Payment) -> None:
        await self.event_bus.publish(DomainEvent(
            event_type=event_type,
            payload={
                "entity_kind": "payment",
                "entity_id": payment.id,
                "actor_id": payment.user_id,
                "reference": payment.reference,
                "kind": payment.kind.value,
                "method": payment.method.value,
                "status": payment.status.value,
                "amount": str(payment.amount),
            },
        ))

    async def _notify(
        self,
        user_id: int,
        kind: NotificationKind,
        title: str,
        body: str,
        data: dict[str, Any],
    ) -> None:
        """Уведомление после коммита. Сбой уведомления не откатывает платёж."""
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
