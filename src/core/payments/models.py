# src/core/payments/models.py
"""
Модели платежей.

Поля, зависящие от вида платежа (идентификаторы шлюза, связанная
сущность), хранятся как теговые значения, без подклассов Payment.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.common.constants import (
    PaymentKind,
    PaymentMethod,
    PaymentStatus,
    RefundDestination,
    RelationKind,
)
from src.core.ledger.models import LedgerEntry
from src.infra.payment_gateway import GatewayOrder


class PaymentRelation(BaseModel):
    """Ссылка платежа на связанную сущность."""

    model_config = ConfigDict(frozen=True)

    kind: RelationKind
    id: int


class Payment(BaseModel):
    """Платёж (голова денежного потока)."""

    id: int
    reference: str = Field(..., description="Уникальный внешний референс")
    user_id: int
    amount: Decimal = Field(..., gt=0)
    currency: str = "INR"
    kind: PaymentKind
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING

    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    gateway_payout_id: Optional[str] = None
    relation: Optional[PaymentRelation] = None

    notes: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None

    initiated_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        """Итоговый статус. Из completed возможен только refunded."""
        return self.status != PaymentStatus.PENDING

    def related_to(self, kind: RelationKind) -> Optional[int]:
        """ID связанной сущности заданного вида или None."""
        if self.relation is not None and self.relation.kind == kind:
            return self.relation.id
        return None


@dataclass
class OrderResult:
    """Платёж и, для оплаты через шлюз, заказ у шлюза."""
    payment: Payment
    gateway_order: Optional[GatewayOrder] = None

    def to_dict(self) -> dict[str, Any]:
        order = None
        if self.gateway_order is not None:
            order = {
                "order_id": self.gateway_order.order_id,
                "key_id": self.gateway_order.key_id,
                "amount": str(self.gateway_order.amount),
                "currency": self.payment.currency,
                "receipt": self.gateway_order.receipt,
            }
        return {"payment": self.payment.model_dump(mode="json"), "order": order}


@dataclass
class RefundOutcome:
    """Результат возврата."""
    payment: Payment
    destination: RefundDestination
    amount: Decimal
    ledger_entry: Optional[LedgerEntry] = None
    gateway_refund_id: Optional[str] = None

    @property
    def ledger_entry_id(self) -> Optional[int]:
        return self.ledger_entry.id if self.ledger_entry else None
