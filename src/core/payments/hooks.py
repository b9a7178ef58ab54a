# src/core/payments/hooks.py
"""
Реакции связанных сущностей на исход платежа.

Платежи не знают о бронированиях: модуль бронирований регистрирует
обработчики для своего вида связи. Обработчики вызываются после коммита.
"""

from __future__ import annotations

from typing import Awaitable, Callable

from src.common.constants import RelationKind, TypeMsg
from src.common.errors import CoreError, InternalError
from src.common.logger import log_info, log_warning
from src.core.payments.models import Payment

PaymentHook = Callable[[Payment], Awaitable[None]]


class PaymentHooks:
    """Реестр обработчиков по виду связанной сущности."""

    def __init__(self) -> None:
        self._completed: dict[RelationKind, list[PaymentHook]] = {}
        self._cancelled: dict[RelationKind, list[PaymentHook]] = {}

    def on_completed(self, relation_kind: RelationKind, hook: PaymentHook) -> None:
        self._completed.setdefault(relation_kind, []).append(hook)

    def on_cancelled(self, relation_kind: RelationKind, hook: PaymentHook) -> None:
        self._cancelled.setdefault(relation_kind, []).append(hook)

    async def completed(self, payment: Payment) -> None:
        await self._run(self._completed, payment, "completed")

    async def cancelled(self, payment: Payment) -> None:
        await self._run(self._cancelled, payment, "cancelled")

    async def _run(
        self,
        registry: dict[RelationKind, list[PaymentHook]],
        payment: Payment,
        outcome: str,
    ) -> None:
        if payment.relation is None:
            return
        for hook in registry.get(payment.relation.kind, []):
            try:
                await hook(payment)
            except InternalError:
                raise
            except CoreError as e:
                # Платёж уже закоммичен, сущность сама решает, что делать дальше
                await log_warning(
                    f"Обработчик {outcome} для платежа {payment.id} отклонён: {e.kind.value}: {e.message}",
                    extra={"payment_id": payment.id},
                )
            else:
                await log_info(
                    f"Обработчик {outcome} выполнен для платежа {payment.id} ({payment.relation.kind.value})",
                    type_msg=TypeMsg.DEBUG,
                )
