# src/core/bookings/service.py
"""
Сервис бронирований.

Два трека на общем хранилище:
- regular: слот замораживается на время оплаты, после оплаты подтверждается
- inquiry: оплата сбора, смета администратора, решение клиента, выбор слота

Каждый переход выполняется под блокировкой строки бронирования.
Аудит и уведомления отправляются после коммита.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Optional

import asyncpg
from asyncpg import Connection

from src.common.constants import (
    ActorKind,
    AssignmentState,
    BookingKind,
    BookingState,
    PaymentKind,
    PaymentMethod,
    PaymentStatus,
    QuoteDecision,
    RelationKind,
    TypeMsg,
)
from src.common.errors import (
    AlreadyTerminalError,
    ConflictingTransitionError,
    CoreError,
    ForbiddenError,
    GatewayFailureError,
    InternalError,
    ValidationError,
)
from src.common.logger import log_error, log_info, log_warning
from src.common.money import ZERO, require_positive
from src.core.availability.service import AvailabilityService
from src.core.bookings.models import Booking, BookingCreated, Transition, WorkerAssignment
from src.core.bookings.notifier import BookingNotifier
from src.core.bookings.policies import RefundPolicy, can_cancel
from src.core.bookings.repository import ACTIVE_WINDOW_CONSTRAINT, BookingRepository
from src.core.bookings.state_machine import AssignmentStateMachine, BookingStateMachine
from src.core.catalog.models import Service
from src.core.catalog.repository import CatalogRepository
from src.core.payments.models import OrderResult, Payment, PaymentRelation, RefundOutcome
from src.core.payments.service import PaymentService
from src.core.users.models import Actor
from src.core.users.repository import UserRepository

if TYPE_CHECKING:
    from src.config.runtime import RuntimeConfig
    from src.infra.database import DatabaseManager


_SUPPORTED_METHODS = (PaymentMethod.GATEWAY, PaymentMethod.WALLET)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BookingService:
    """
    Машина состояний бронирований.

    Ответственности:
    - Создание бронирования и платежа под него
    - Подтверждение после оплаты, истечение заморозок и смет
    - Смета inquiry-трека
    - Назначение исполнителя и выполнение работ
    - Отмена с возвратом по политике
    """

    def __init__(
        self,
        db: "DatabaseManager",
        availability: AvailabilityService,
        payments: PaymentService,
        runtime: "RuntimeConfig",
        notifier: BookingNotifier,
        catalog: CatalogRepository | None = None,
        users: UserRepository | None = None,
        repository: BookingRepository | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.db = db
        self.availability = availability
        self.payments = payments
        self.runtime = runtime
        self.notifier = notifier
        self.catalog = catalog or CatalogRepository(db)
        self.users = users or UserRepository(db)
        self.repository = repository or BookingRepository(db)
        self.clock = clock

        payments.hooks.on_completed(RelationKind.BOOKING, self._on_payment_completed)
        payments.hooks.on_cancelled(RelationKind.BOOKING, self._on_payment_cancelled)

    # =========================================================================
    # СОЗДАНИЕ
    # =========================================================================

    async def create(
        self,
        customer: Actor,
        service_id: int,
        address_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        description: Optional[str] = None,
        method: PaymentMethod = PaymentMethod.GATEWAY,
    ) -> BookingCreated:
        """
        Создаёт бронирование.

        Fixed-услуга: слот замораживается (held) и создаётся платёж на цену услуги.
        Inquiry-услуга: бронирование в created и платёж на сбор за заявку.
        При оплате с кошелька бронирование подтверждается сразу.

        Args:
            customer: Клиент
            service_id: ID услуги
            address_id: ID адреса клиента
            start: Начало слота (только fixed)
            end: Конец слота (только fixed)
            description: Описание работ
            method: Способ оплаты (gateway или wallet)

        Returns:
            Бронирование и заказ шлюза

        Raises:
            ForbiddenError: Бронирует не клиент или чужой адрес
            ValidationError: Услуга отключена, слот не свободен, неверный способ оплаты
            ConflictingTransitionError: Слот заняли параллельно, нужно обновить список
            InsufficientFundsError: Не хватает средств на кошельке
            GatewayFailureError: Шлюз недоступен (бронирование остаётся held)
        """
        if customer.kind != ActorKind.CUSTOMER:
            raise ForbiddenError("Бронировать могут только клиенты", {"user_id": customer.id})
        if method not in _SUPPORTED_METHODS:
            raise ValidationError(f"Способ оплаты {method.value} не поддерживается", {"method": method.value})

        service = await self.catalog.require_service(service_id)
        if not service.active:
            raise ValidationError(f"Услуга {service_id} недоступна", {"service_id": service_id})
        address = await self.catalog.require_customer_address(address_id, customer.id)

        if service.is_inquiry:
            return await self._create_inquiry(customer, service, address.snapshot(), description, method)

        if start is None or end is None:
            raise ValidationError("Для услуги с фиксированной ценой нужен слот", {"service_id": service_id})
        if service.price is None:
            raise ValidationError(f"У услуги {service_id} не задана цена", {"service_id": service_id})

        now = self.clock()
        config = await self.runtime.get()
        slot = await self.availability.ensure_slot_free(service_id, start, end, now=now)
        hold_expires_at = now + timedelta(minutes=config.booking_hold_time_minutes)

        transitions: list[Transition] = []
        try:
            async with self.db.transaction() as conn:
                await self._expire_stale_holds(conn, service_id, slot.start, slot.end, now, transitions)
                booking = await self.repository.insert(
                    conn,
                    customer_id=customer.id,
                    service_id=service_id,
                    kind=BookingKind.REGULAR,
                    state=BookingState.HELD,
                    address_snapshot=address.snapshot(),
                    contact_snapshot=customer.contact_snapshot(),
                    description=description,
                    scheduled_start=slot.start,
                    scheduled_end=slot.end,
                    hold_expires_at=hold_expires_at,
                )
                transitions.append(Transition(booking, BookingState.CREATED, BookingState.HELD, customer.id, customer.kind))
                booking, payment = await self._attach_payment(
                    conn, booking, customer, PaymentKind.BOOKING, service.price, method, now, transitions,
                )
        except asyncpg.UniqueViolationError as e:
            if e.constraint_name != ACTIVE_WINDOW_CONSTRAINT:
                raise
            raise ConflictingTransitionError(
                "Слот уже занят, обновите список свободных слотов",
                {"service_id": service_id, "start": slot.start.isoformat(), "end": slot.end.isoformat()},
            ) from e

        await log_info(
            f"Бронирование {booking.reference} создано: услуга {service_id}, {slot.start.isoformat()}, "
            f"заморозка до {hold_expires_at.isoformat()}",
            type_msg=TypeMsg.INFO,
            extra={"booking_id": booking.id, "customer_id": customer.id},
        )
        order = await self._finish_payment(booking, payment, transitions)
        return BookingCreated(booking=booking, order=order)

    async def _create_inquiry(
        self,
        customer: Actor,
        service: Service,
        address_snapshot: dict,
        description: Optional[str],
        method: PaymentMethod,
    ) -> BookingCreated:
        config = await self.runtime.get()
        now = self.clock()
        transitions: list[Transition] = []
        async with self.db.transaction() as conn:
            booking = await self.repository.insert(
                conn,
                customer_id=customer.id,
                service_id=service.id,
                kind=BookingKind.INQUIRY,
                state=BookingState.CREATED,
                address_snapshot=address_snapshot,
                contact_snapshot=customer.contact_snapshot(),
                description=description,
            )
            booking, payment = await self._attach_payment(
                conn, booking, customer, PaymentKind.BOOKING, config.inquiry_booking_fee, method, now, transitions,
            )

        await log_info(
            f"Заявка {booking.reference} создана: услуга {service.id}, сбор {payment.amount}",
            type_msg=TypeMsg.INFO,
            extra={"booking_id": booking.id, "customer_id": customer.id},
        )
        order = await self._finish_payment(booking, payment, transitions)
        return BookingCreated(booking=booking, order=order)

    async def _attach_payment(
        self,
        conn: Connection,
        booking: Booking,
        customer: Actor,
        kind: PaymentKind,
        amount: Decimal,
        method: PaymentMethod,
        now: datetime,
        transitions: list[Transition],
    ) -> tuple[Booking, Payment]:
        """Платёж под бронирование. Оплата с кошелька сразу продвигает состояние."""
        relation = PaymentRelation(kind=RelationKind.BOOKING, id=booking.id)
        if method == PaymentMethod.GATEWAY:
            payment = await self.payments.create_pending(conn, customer.id, kind, amount, relation, booking.reference)
            booking = await self.repository.update_state(conn, booking.id, booking.state, payment_id=payment.id)
            return booking, payment

        payment = await self.payments.create_wallet_payment(conn, customer.id, kind, amount, relation, booking.reference)
        booking = await self.repository.update_state(conn, booking.id, booking.state, payment_id=payment.id)
        booking = await self._advance_paid(conn, booking, customer, now, transitions)
        return booking, payment

    async def _expire_stale_holds(
        self,
        conn: Connection,
        service_id: int,
        start: datetime,
        end: datetime,
        now: datetime,
        transitions: list[Transition],
    ) -> None:
        """Просроченные held того же окна уходят в expired до вставки новой заморозки."""
        for stale in await self.repository.lock_stale_holds_for_window(conn, service_id, start, end, now):
            await self._transition(
                conn, stale, BookingState.EXPIRED, None, None, transitions, reason="hold_expired",
            )

    async def _finish_payment(self, booking: Booking, payment: Payment, transitions: list[Transition]) -> OrderResult:
        """После коммита: аудит, заказ шлюза или объявление оплаты с кошелька."""
        for transition in transitions:
            await self.notifier.transitioned(transition)

        if payment.method == PaymentMethod.WALLET:
            await self.payments.announce_completed(payment, run_hooks=False)
            return OrderResult(payment=payment)

        try:
            return await self.payments.issue_gateway_order(payment)
        except GatewayFailureError as e:
            e.details.setdefault("booking_id", booking.id)
            raise

    # =========================================================================
    # ОПЛАТА
    # =========================================================================

    async def verify_payment(
        self,
        actor: Actor,
        booking_id: int,
        gateway_payment_id: str,
        signature: str,
    ) -> Booking:
        """
        Подтверждает оплату бронирования по подписи шлюза.

        Если заморозка истекла до оплаты, платёж всё равно фиксируется,
        бронирование переходит в expired, а сумма возвращается на кошелёк.

        Raises:
            ForbiddenError: Чужое бронирование
            ValidationError: У бронирования нет платежа
            SignatureMismatchError: Подпись не совпала
            AmountMismatchError: Шлюз списал меньше суммы
            GatewayFailureError: Шлюз недоступен
        """
        booking = await self.repository.require(booking_id)
        self._ensure_customer(booking, actor)
        if booking.payment_id is None:
            raise ValidationError("У бронирования нет платежа", {"booking_id": booking_id})

        payment = await self.payments.verify_and_complete(
            booking.payment_id,
            gateway_payment_id,
            signature,
            actor=actor,
            run_hooks=False,
        )
        return await self.on_payment_completed(payment)

    async def on_payment_completed(self, payment: Payment) -> Booking:
        """
        Продвигает бронирование после завершения его платежа. Идемпотентно.

        - held в пределах заморозки -> confirmed
        - held после заморозки или expired -> expired и возврат на кошелёк
        - created (inquiry) -> inquiry_paid
        """
        booking_id = payment.related_to(RelationKind.BOOKING)
        if booking_id is None:
            raise InternalError("Платёж не привязан к бронированию", {"payment_id": payment.id})

        now = self.clock()
        transitions: list[Transition] = []
        refund: Optional[RefundOutcome] = None

        async with self.db.transaction() as conn:
            booking = await self.repository.lock(conn, booking_id)
            if booking.payment_id != payment.id:
                await log_warning(
                    f"Платёж {payment.reference} не является текущим для бронирования {booking.reference}",
                    extra={"booking_id": booking.id, "payment_id": payment.id},
                )
                return booking

            late = booking.state == BookingState.EXPIRED or (
                booking.state == BookingState.HELD and booking.hold_expired(now)
            )
            if late:
                booking, refund = await self._expire_and_refund(conn, booking, payment, transitions)
            elif booking.state == BookingState.HELD or (
                booking.state == BookingState.CREATED and booking.is_inquiry
            ):
                customer = await self.users.require(booking.customer_id, conn)
                booking = await self._advance_paid(conn, booking, customer, now, transitions)

        for transition in transitions:
            await self.notifier.transitioned(transition)
        if refund is not None:
            await self.payments.announce_refund(refund)
            await self.notifier.hold_expired_refunded(booking, refund.amount)
        return booking

    async def _advance_paid(
        self,
        conn: Connection,
        booking: Booking,
        customer: Actor,
        now: datetime,
        transitions: list[Transition],
    ) -> Booking:
        """Переход оплаченного бронирования: held -> confirmed, created -> inquiry_paid."""
        if booking.state == BookingState.CREATED:
            return await self._transition(
                conn, booking, BookingState.INQUIRY_PAID, customer.id, customer.kind, transitions,
            )
        if booking.state == BookingState.QUOTE_ACCEPTED:
            booking = await self._transition(
                conn, booking, BookingState.SCHEDULED, customer.id, customer.kind, transitions,
            )
        return await self._transition(
            conn, booking, BookingState.CONFIRMED, customer.id, customer.kind, transitions, confirmed_at=now,
        )

    async def _expire_and_refund(
        self,
        conn: Connection,
        booking: Booking,
        payment: Payment,
        transitions: list[Transition],
    ) -> tuple[Booking, Optional[RefundOutcome]]:
        if booking.state == BookingState.HELD:
            booking = await self._transition(
                conn, booking, BookingState.EXPIRED, None, None, transitions, reason="hold_expired",
            )
        if booking.cancellation is not None and booking.cancellation.refund_ledger_id is not None:
            return booking, None

        try:
            refund = await self.payments.refund_in(
                conn, payment.id, notes="hold_expired",
            )
        except AlreadyTerminalError:
            return booking, None

        booking = await self.repository.update_state(
            conn, booking.id, booking.state, refund_ledger_id=refund.ledger_entry_id,
        )
        await log_info(
            f"Оплата {payment.reference} пришла после заморозки {booking.reference}, возврат {refund.amount}",
            type_msg=TypeMsg.WARNING,
            extra={"booking_id": booking.id, "payment_id": payment.id},
        )
        return booking, refund

    async def _on_payment_completed(self, payment: Payment) -> None:
        await self.on_payment_completed(payment)

    async def _on_payment_cancelled(self, payment: Payment) -> None:
        booking_id = payment.related_to(RelationKind.BOOKING)
        if booking_id is None:
            return
        if await self.repository.release_hold(booking_id, payment.id):
            await log_info(
                f"Заморозка бронирования {booking_id} снята после отмены платежа {payment.reference}",
                type_msg=TypeMsg.INFO,
            )

    async def expire_holds(self, limit: int = 500) -> int:
        """
        Переводит в expired заморозки с истёкшим сроком без завершённой оплаты.

        Returns:
            Количество истёкших бронирований
        """
        now = self.clock()
        expired = 0
        for booking_id in await self.repository.list_expired_hold_ids(now, limit):
            transitions: list[Transition] = []
            async with self.db.transaction() as conn:
                booking = await self.repository.lock(conn, booking_id)
                if booking.state != BookingState.HELD or not booking.hold_expired(now):
                    continue
                await self._transition(
                    conn, booking, BookingState.EXPIRED, None, None, transitions, reason="hold_expired",
                )
            for transition in transitions:
                await self.notifier.transitioned(transition)
            expired += 1
        if expired:
            await log_info(f"Истекло заморозок: {expired}", type_msg=TypeMsg.INFO)
        return expired

    async def resume_paid_bookings(self, limit: int = 500) -> int:
        """
        Досчитывает бронирования, чей платёж завершён, а переход не случился.

        Returns:
            Количество продвинутых бронирований
        """
        resumed = 0
        for booking_id, payment_id in await self.repository.list_paid_unsettled(limit):
            try:
                payment = await self.payments.get_payment(payment_id)
                await self.on_payment_completed(payment)
            except CoreError as e:
                await log_error(
                    f"Не удалось продвинуть оплаченное бронирование {booking_id}: {e.message}",
                    extra={"booking_id": booking_id, "payment_id": payment_id, **e.details},
                )
                continue
            resumed += 1
        if resumed:
            await log_info(f"Продвинуто оплаченных бронирований: {resumed}", type_msg=TypeMsg.INFO)
        return resumed

    # =========================================================================
    # СМЕТА (INQUIRY)
    # =========================================================================

    async def start_quote_review(self, admin: Actor, booking_id: int) -> Booking:
        """inquiry_paid -> awaiting_quote."""
        self._ensure_admin(admin)
        transitions: list[Transition] = []
        async with self.db.transaction() as conn:
            booking = await self.repository.lock(conn, booking_id)
            self._ensure_inquiry(booking)
            booking = await self._transition(
                conn, booking, BookingState.AWAITING_QUOTE, admin.id, admin.kind, transitions,
            )
        await self._announce(transitions)
        return booking

    async def provide_quote(
        self,
        admin: Actor,
        booking_id: int,
        amount: Decimal,
        notes: Optional[str] = None,
        ttl_hours: Optional[int] = None,
    ) -> Booking:
        """
        Выставляет смету.

        Args:
            admin: Администратор
            booking_id: ID бронирования
            amount: Сумма сметы
            notes: Комментарий
            ttl_hours: Срок действия (по умолчанию quote_ttl_hours)

        Raises:
            ForbiddenError: Не администратор
            ValidationError: Не inquiry, неверная сумма или срок
            ConflictingTransitionError: Бронирование не в inquiry_paid/awaiting_quote
        """
        self._ensure_admin(admin)
        amount = require_positive(amount)
        expires_at = await self._quote_expiry(ttl_hours)
        now = self.clock()
        transitions: list[Transition] = []
        async with self.db.transaction() as conn:
            booking = await self.repository.lock(conn, booking_id)
            self._ensure_inquiry(booking)
            booking = await self._transition(
                conn,
                booking,
                BookingState.QUOTED,
                admin.id,
                admin.kind,
                transitions,
                quote_amount=amount,
                quote_notes=notes,
                quote_provided_by=admin.id,
                quote_provided_at=now,
                quote_expires_at=expires_at,
                quote_decided_at=None,
                quote_decision=None,
                quote_reject_reason=None,
            )
        await self._announce(transitions)
        return booking

    async def update_quote(
        self,
        admin: Actor,
        booking_id: int,
        amount: Decimal,
        notes: Optional[str] = None,
        ttl_hours: Optional[int] = None,
    ) -> Booking:
        """
        Меняет смету, пока клиент не принял решение.

        Raises:
            ConflictingTransitionError: Смета не в quoted или уже решена
        """
        self._ensure_admin(admin)
        amount = require_positive(amount)
        now = self.clock()
        async with self.db.transaction() as conn:
            booking = await self.repository.lock(conn, booking_id)
            self._ensure_inquiry(booking)
            if booking.state != BookingState.QUOTED or booking.quote is None or booking.quote.is_decided:
                raise ConflictingTransitionError(
                    "Смету можно изменить только до решения клиента",
                    {"booking_id": booking_id, "state": booking.state.value},
                )
            fields = {"quote_amount": amount, "quote_notes": notes, "quote_provided_by": admin.id, "quote_provided_at": now}
            if ttl_hours is not None:
                fields["quote_expires_at"] = await self._quote_expiry(ttl_hours)
            booking = await self.repository.update_state(conn, booking.id, BookingState.QUOTED, **fields)

        await log_info(f"Смета {booking.reference} изменена: {amount}", type_msg=TypeMsg.INFO)
        await self.notifier.quote_updated(booking, admin.id)
        return booking

    async def accept_quote(self, customer: Actor, booking_id: int) -> Booking:
        """
        Принимает смету. Слот выбирается отдельно (schedule_after_quote).

        Raises:
            ConflictingTransitionError: Не quoted, смета решена или истекла
        """
        now = self.clock()
        transitions: list[Transition] = []
        async with self.db.transaction() as conn:
            booking = await self.repository.lock(conn, booking_id)
            self._ensure_customer(booking, customer)
            self._ensure_quote_open(booking, now)
            booking = await self._transition(
                conn,
                booking,
                BookingState.QUOTE_ACCEPTED,
                customer.id,
                customer.kind,
                transitions,
                quote_decided_at=now,
                quote_decision=QuoteDecision.ACCEPTED,
            )
        await self._announce(transitions)
        return booking

    async def reject_quote(self, customer: Actor, booking_id: int, reason: str) -> Booking:
        """
        Отклоняет смету с причиной.

        Raises:
            ValidationError: Пустая причина
            ConflictingTransitionError: Не quoted, смета решена или истекла
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Укажите причину отказа от сметы", {"booking_id": booking_id})
        now = self.clock()
        transitions: list[Transition] = []
        async with self.db.transaction() as conn:
            booking = await self.repository.lock(conn, booking_id)
            self._ensure_customer(booking, customer)
            self._ensure_quote_open(booking, now)
            booking = await self._transition(
                conn,
                booking,
                BookingState.QUOTE_REJECTED,
                customer.id,
                customer.kind,
                transitions,
                reason=reason,
                quote_decided_at=now,
                quote_decision=QuoteDecision.REJECTED,
                quote_reject_reason=reason,
            )
        await self._announce(transitions)
        return booking

    async def reopen_inquiry(self, admin: Actor, booking_id: int) -> Booking:
        """quote_rejected -> awaiting_quote, прежняя смета очищается."""
        self._ensure_admin(admin)
        transitions: list[Transition] = []
        async with self.db.transaction() as conn:
            booking = await self.repository.lock(conn, booking_id)
            self._ensure_inquiry(booking)
            booking = await self._transition(
                conn,
                booking,
                BookingState.AWAITING_QUOTE,
                admin.id,
                admin.kind,
                transitions,
                quote_amount=None,
                quote_notes=None,
                quote_provided_by=None,
                quote_provided_at=None,
                quote_expires_at=None,
                quote_decided_at=None,
                quote_decision=None,
                quote_reject_reason=None,
            )
        await self._announce(transitions)
        return booking

    async def schedule_after_quote(
        self,
        customer: Actor,
        booking_id: int,
        start: datetime,
        end: datetime,
        method: PaymentMethod = PaymentMethod.GATEWAY,
    ) -> BookingCreated:
        """
        Выбор слота после принятия сметы: заморозка и платёж на сумму сметы.

        Raises:
            ConflictingTransitionError: Смета не принята или слот заняли параллельно
            ValidationError: Слот не свободен
        """
        if method not in _SUPPORTED_METHODS:
            raise ValidationError(f"Способ оплаты {method.value} не поддерживается", {"method": method.value})

        booking = await self.repository.require(booking_id)
        self._ensure_customer(booking, customer)
        BookingStateMachine.validate(booking.state, BookingState.HELD, booking.id)
        if booking.quote is None or booking.quote.decision != QuoteDecision.ACCEPTED:
            raise ConflictingTransitionError("Смета не принята", {"booking_id": booking_id})

        now = self.clock()
        config = await self.runtime.get()
        slot = await self.availability.ensure_slot_free(booking.service_id, start, end, now=now)

        transitions: list[Transition] = []
        try:
            async with self.db.transaction() as conn:
                await self._expire_stale_holds(conn, booking.service_id, slot.start, slot.end, now, transitions)
                booking = await self.repository.lock(conn, booking_id)
                if booking.state != BookingState.QUOTE_ACCEPTED:
                    BookingStateMachine.validate(booking.state, BookingState.HELD, booking.id)
                relation = PaymentRelation(kind=RelationKind.BOOKING, id=booking.id)
                amount = booking.quote.amount

                if method == PaymentMethod.GATEWAY:
                    payment = await self.payments.create_pending(
                        conn, customer.id, PaymentKind.QUOTE, amount, relation, booking.reference,
                    )
                    booking = await self._transition(
                        conn,
                        booking,
                        BookingState.HELD,
                        customer.id,
                        customer.kind,
                        transitions,
                        scheduled_start=slot.start,
                        scheduled_end=slot.end,
                        hold_expires_at=now + timedelta(minutes=config.booking_hold_time_minutes),
                        payment_id=payment.id,
                    )
                else:
                    payment = await self.payments.create_wallet_payment(
                        conn, customer.id, PaymentKind.QUOTE, amount, relation, booking.reference,
                    )
                    booking = await self.repository.update_state(
                        conn,
                        booking.id,
                        booking.state,
                        scheduled_start=slot.start,
                        scheduled_end=slot.end,
                        payment_id=payment.id,
                    )
                    booking = await self._advance_paid(conn, booking, customer, now, transitions)
        except asyncpg.UniqueViolationError as e:
            if e.constraint_name != ACTIVE_WINDOW_CONSTRAINT:
                raise
            raise ConflictingTransitionError(
                "Слот уже занят, обновите список свободных слотов",
                {"booking_id": booking_id, "start": slot.start.isoformat()},
            ) from e

        await log_info(
            f"Бронирование {booking.reference} запланировано на {slot.start.isoformat()} ({method.value})",
            type_msg=TypeMsg.INFO,
            extra={"booking_id": booking.id},
        )
        order = await self._finish_payment(booking, payment, transitions)
        return BookingCreated(booking=booking, order=order)

    async def expire_quotes(self, limit: int = 500) -> int:
        """
        Переводит нерешённые истёкшие сметы в quote_expired.

        Returns:
            Количество истёкших смет
        """
        now = self.clock()
        expired = 0
        for booking_id in await self.repository.list_expired_quote_ids(now, limit):
            transitions: list[Transition] = []
            async with self.db.transaction() as conn:
                booking = await self.repository.lock(conn, booking_id)
                if (
                    booking.state != BookingState.QUOTED
                    or booking.quote is None
                    or booking.quote.is_decided
                    or not booking.quote.is_expired(now)
                ):
                    continue
                await self._transition(
                    conn, booking, BookingState.QUOTE_EXPIRED, None, None, transitions, reason="quote_expired",
                )
            await self._announce(transitions)
            expired += 1
        if expired:
            await log_info(f"Истекло смет: {expired}", type_msg=TypeMsg.INFO)
        return expired

    # =========================================================================
    # НАЗНАЧЕНИЕ ИСПОЛНИТЕЛЯ
    # =========================================================================

    async def assign_worker(self, admin: Actor, booking_id: int, worker_id: int) -> WorkerAssignment:
        """
        Назначает исполнителя: бронирование confirmed -> assigned, назначение pending.

        Raises:
            ForbiddenError: Не администратор
            ValidationError: Пользователь не активный исполнитель
            ConflictingTransitionError: Бронирование не confirmed или назначение уже активно
        """
        self._ensure_admin(admin)
        worker = await self.users.require(worker_id)
        if not worker.is_worker or not worker.active:
            raise ValidationError(f"Пользователь {worker_id} не является активным исполнителем", {"worker_id": worker_id})

        transitions: list[Transition] = []
        async with self.db.transaction() as conn:
            booking = await self.repository.lock(conn, booking_id)
            BookingStateMachine.validate(booking.state, BookingState.ASSIGNED, booking.id)
            previous = await self.repository.get_assignment_for_booking(booking.id, conn)
            if previous is not None:
                AssignmentStateMachine.validate(previous.state, AssignmentState.PENDING, previous.id)
            assignment = await self.repository.upsert_assignment(conn, booking.id, worker.id, admin.id)
            if assignment is None:
                raise ConflictingTransitionError("У бронирования уже есть активное назначение", {"booking_id": booking_id})
            booking = await self._transition(
                conn, booking, BookingState.ASSIGNED, admin.id, admin.kind, transitions,
            )

        await log_info(
            f"Исполнитель {worker.id} назначен на {booking.reference}",
            type_msg=TypeMsg.INFO,
            extra={"booking_id": booking.id, "assignment_id": assignment.id},
        )
        await self._announce(transitions)
        await self.notifier.assignment_transitioned(booking, assignment, previous.state if previous else None, admin.id)
        return assignment

    async def accept_assignment(self, worker: Actor, assignment_id: int) -> WorkerAssignment:
        """pending -> accepted. Бронирование остаётся assigned."""
        now = self.clock()
        async with self.db.transaction() as conn:
            assignment = await self.repository.lock_assignment(conn, assignment_id)
            self._ensure_assignee(assignment, worker)
            booking = await self.repository.lock(conn, assignment.booking_id)
            if booking.state != BookingState.ASSIGNED:
                raise ConflictingTransitionError(
                    f"Бронирование в состоянии {booking.state.value}",
                    {"booking_id": booking.id, "state": booking.state.value},
                )
            previous = assignment.state
            AssignmentStateMachine.validate(previous, AssignmentState.ACCEPTED, assignment.id)
            assignment = await self.repository.update_assignment_state(
                conn, assignment.id, AssignmentState.ACCEPTED, accepted_at=now,
            )

        await self.notifier.assignment_transitioned(booking, assignment, previous, worker.id)
        return assignment

    async def reject_assignment(self, worker: Actor, assignment_id: int, reason: str) -> WorkerAssignment:
        """
        pending -> rejected, бронирование возвращается в confirmed для переназначения.

        Raises:
            ValidationError: Пустая причина
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Укажите причину отказа", {"assignment_id": assignment_id})
        now = self.clock()
        transitions: list[Transition] = []
        async with self.db.transaction() as conn:
            assignment = await self.repository.lock_assignment(conn, assignment_id)
            self._ensure_assignee(assignment, worker)
            booking = await self.repository.lock(conn, assignment.booking_id)
            previous = assignment.state
            AssignmentStateMachine.validate(previous, AssignmentState.REJECTED, assignment.id)
            assignment = await self.repository.update_assignment_state(
                conn, assignment.id, AssignmentState.REJECTED, rejected_at=now, rejection_reason=reason,
            )
            booking = await self._transition(
                conn, booking, BookingState.CONFIRMED, worker.id, worker.kind, transitions, reason=reason,
            )

        await self._announce(transitions)
        await self.notifier.assignment_transitioned(booking, assignment, previous, worker.id)
        return assignment

    async def start_work(
        self,
        worker: Actor,
        assignment_id: int,
        notes: str,
        photos: Optional[list[str]] = None,
    ) -> WorkerAssignment:
        """
        accepted -> in_progress. Открывает сессию трекинга.

        Raises:
            ValidationError: Пустые заметки
        """
        notes = (notes or "").strip()
        if not notes:
            raise ValidationError("Заметки о начале работ обязательны", {"assignment_id": assignment_id})
        now = self.clock()
        transitions: list[Transition] = []
        async with self.db.transaction() as conn:
            assignment = await self.repository.lock_assignment(conn, assignment_id)
            self._ensure_assignee(assignment, worker)
            booking = await self.repository.lock(conn, assignment.booking_id)
            previous = assignment.state
            AssignmentStateMachine.validate(previous, AssignmentState.IN_PROGRESS, assignment.id)
            booking = await self._transition(
                conn, booking, BookingState.IN_PROGRESS, worker.id, worker.kind, transitions,
            )
            session_id = await self.repository.open_tracking_session(conn, assignment)
            assignment = await self.repository.update_assignment_state(
                conn,
                assignment.id,
                AssignmentState.IN_PROGRESS,
                started_at=now,
                start_notes=notes,
                photos=[*assignment.photos, *(photos or [])],
                tracking_session_id=session_id,
            )

        await self._announce(transitions)
        await self.notifier.assignment_transitioned(booking, assignment, previous, worker.id)
        return assignment

    async def complete_work(
        self,
        worker: Actor,
        assignment_id: int,
        notes: str,
        materials_used: Optional[list[str]] = None,
        photos: Optional[list[str]] = None,
    ) -> WorkerAssignment:
        """
        in_progress -> completed. Закрывает сессию трекинга.

        Raises:
            ValidationError: Пустые заметки
        """
        notes = (notes or "").strip()
        if not notes:
            raise ValidationError("Заметки о завершении работ обязательны", {"assignment_id": assignment_id})
        now = self.clock()
        transitions: list[Transition] = []
        async with self.db.transaction() as conn:
            assignment = await self.repository.lock_assignment(conn, assignment_id)
            self._ensure_assignee(assignment, worker)
            booking = await self.repository.lock(conn, assignment.booking_id)
            previous = assignment.state
            AssignmentStateMachine.validate(previous, AssignmentState.COMPLETED, assignment.id)
            booking = await self._transition(
                conn, booking, BookingState.COMPLETED, worker.id, worker.kind, transitions, completed_at=now,
            )
            await self.repository.close_tracking_sessions(conn, booking.id)
            assignment = await self.repository.update_assignment_state(
                conn,
                assignment.id,
                AssignmentState.COMPLETED,
                completed_at=now,
                completion_notes=notes,
                materials_used=list(materials_used or []),
                photos=[*assignment.photos, *(photos or [])],
            )

        await self._announce(transitions)
        await self.notifier.assignment_transitioned(booking, assignment, previous, worker.id)
        return assignment

    # =========================================================================
    # ОТМЕНА
    # =========================================================================

    async def cancel(self, actor: Actor, booking_id: int, reason: Optional[str] = None) -> Booking:
        """
        Отменяет бронирование.

        Ожидающий платёж отменяется. Завершённый возвращается на кошелёк
        в доле по RefundPolicy.

        Raises:
            ForbiddenError: Чужое бронирование или роль без права отмены
            AlreadyTerminalError: Бронирование уже отменено
            ConflictingTransitionError: Состояние не допускает отмену этим участником
        """
        if actor.kind not in (ActorKind.CUSTOMER, ActorKind.ADMIN):
            raise ForbiddenError("Отменять бронирования могут клиент и администратор", {"booking_id": booking_id})

        config = await self.runtime.get()
        policy = RefundPolicy(
            cutoff_minutes=config.refund_policy_cutoff_minutes,
            late_fraction=config.refund_late_fraction,
            started_fraction=config.refund_started_fraction,
        )
        now = self.clock()
        transitions: list[Transition] = []
        refund: Optional[RefundOutcome] = None
        cancelled_payment: Optional[Payment] = None

        async with self.db.transaction() as conn:
            booking = await self.repository.lock(conn, booking_id)
            if actor.kind == ActorKind.CUSTOMER:
                self._ensure_customer(booking, actor)
            if booking.state == BookingState.CANCELLED:
                raise AlreadyTerminalError("Бронирование уже отменено", result=booking, details={"booking_id": booking_id})
            if not can_cancel(booking, actor.kind):
                raise ConflictingTransitionError(
                    f"Нельзя отменить бронирование в состоянии {booking.state.value}",
                    {"booking_id": booking_id, "state": booking.state.value},
                )

            if booking.payment_id is not None:
                cancelled_payment = await self.payments.cancel_pending_in(conn, booking.payment_id, actor.id)
                if cancelled_payment is None:
                    payment = await self.payments.repository.require(booking.payment_id, conn)
                    if payment.status == PaymentStatus.COMPLETED:
                        amount = policy.refund_amount(booking, payment.amount, now)
                        if amount > ZERO:
                            refund = await self.payments.refund_in(
                                conn, payment.id, amount, notes=reason,
                            )

            await self.repository.close_tracking_sessions(conn, booking.id)
            booking = await self._transition(
                conn,
                booking,
                BookingState.CANCELLED,
                actor.id,
                actor.kind,
                transitions,
                reason=reason,
                cancelled_by=actor.id,
                cancelled_by_kind=actor.kind,
                cancellation_reason=reason,
                refund_ledger_id=refund.ledger_entry_id if refund else None,
                cancelled_at=now,
            )
            booking = booking.model_copy(
                update={"assignment": await self.repository.get_assignment_for_booking(booking.id, conn)},
            )

        await log_info(
            f"Бронирование {booking.reference} отменено ({actor.kind.value} {actor.id}), "
            f"возврат {refund.amount if refund else ZERO}",
            type_msg=TypeMsg.INFO,
            extra={"booking_id": booking.id},
        )
        for transition in transitions:
            transition.booking = booking
        await self._announce(transitions)
        if cancelled_payment is not None:
            await self.payments.announce_cancelled(cancelled_payment, actor.id, run_hooks=False)
        if refund is not None:
            await self.payments.announce_refund(refund)
        return booking

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get_booking(self, actor: Actor, booking_id: int) -> Booking:
        """
        Бронирование с назначением.

        Raises:
            NotFoundError: Не найдено
            ForbiddenError: Не владелец, не администратор и не назначенный исполнитель
        """
        booking = await self.repository.require(booking_id)
        assignment = await self.repository.get_assignment_for_booking(booking.id)
        allowed = (
            actor.is_admin
            or booking.customer_id == actor.id
            or (assignment is not None and assignment.worker_id == actor.id)
        )
        if not allowed:
            raise ForbiddenError("Нет доступа к бронированию", {"booking_id": booking_id})
        return booking.model_copy(update={"assignment": assignment})

    async def list_customer_bookings(
        self,
        customer: Actor,
        state: Optional[BookingState] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Booking]:
        return await self.repository.list_for_customer(customer.id, state, limit, offset)

    async def list_worker_assignments(
        self,
        worker: Actor,
        state: Optional[AssignmentState] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkerAssignment]:
        if not worker.is_worker:
            raise ForbiddenError("Список назначений доступен только исполнителям", {"user_id": worker.id})
        return await self.repository.list_for_worker(worker.id, state, limit, offset)

    # =========================================================================
    # ВСПОМОГАТЕЛЬНОЕ
    # =========================================================================

    async def _transition(
        self,
        conn: Connection,
        booking: Booking,
        to_state: BookingState,
        actor_id: Optional[int],
        actor_kind: Optional[ActorKind],
        transitions: list[Transition],
        reason: Optional[str] = None,
        **fields,
    ) -> Booking:
        """Проверяет переход по машине состояний и сохраняет его."""
        BookingStateMachine.validate(booking.state, to_state, booking.id)
        updated = await self.repository.update_state(conn, booking.id, to_state, **fields)
        transitions.append(Transition(updated, booking.state, to_state, actor_id, actor_kind, reason))
        await log_info(
            f"Бронирование {booking.reference}: {booking.state.value} -> {to_state.value}",
            type_msg=TypeMsg.INFO,
            extra={"booking_id": booking.id, "actor_id": actor_id},
        )
        return updated

    async def _announce(self, transitions: list[Transition]) -> None:
        for transition in transitions:
            await self.notifier.transitioned(transition)

    async def _quote_expiry(self, ttl_hours: Optional[int]) -> datetime:
        if ttl_hours is None:
            ttl_hours = (await self.runtime.get()).quote_ttl_hours
        if ttl_hours <= 0:
            raise ValidationError("Срок действия сметы должен быть положительным", {"ttl_hours": ttl_hours})
        return self.clock() + timedelta(hours=ttl_hours)

    def _ensure_quote_open(self, booking: Booking, now: datetime) -> None:
        if booking.state != BookingState.QUOTED or booking.quote is None:
            raise ConflictingTransitionError(
                f"Смета недоступна в состоянии {booking.state.value}",
                {"booking_id": booking.id, "state": booking.state.value},
            )
        if booking.quote.is_decided:
            raise ConflictingTransitionError("Решение по смете уже принято", {"booking_id": booking.id})
        if booking.quote.is_expired(now):
            raise ConflictingTransitionError(
                "Срок действия сметы истёк",
                {"booking_id": booking.id, "expires_at": booking.quote.expires_at.isoformat()},
            )

    @staticmethod
    def _ensure_admin(actor: Actor) -> None:
        if not actor.is_admin:
            raise ForbiddenError("Операция доступна только администратору", {"user_id": actor.id})

    @staticmethod
    def _ensure_customer(booking: Booking, actor: Actor) -> None:
        if booking.customer_id != actor.id and not actor.is_admin:
            raise ForbiddenError("Бронирование принадлежит другому клиенту", {"booking_id": booking.id})

    @staticmethod
    def _ensure_inquiry(booking: Booking) -> None:
        if not booking.is_inquiry:
            raise ValidationError("Операция доступна только для заявок со сметой", {"booking_id": booking.id})

    @staticmethod
    def _ensure_assignee(assignment: WorkerAssignment, worker: Actor) -> None:
        if assignment.worker_id != worker.id:
            raise ForbiddenError("Назначение принадлежит другому исполнителю", {"assignment_id": assignment.id})
