# src/core/ledger/models.py
"""
Модели кошелька.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from src.common.constants import LedgerEntryKind
from src.common.money import ZERO


class LedgerEntry(BaseModel):
    """Неизменяемая запись кошелька."""

    id: int
    user_id: int
    amount: Decimal = Field(..., description="Знаковая сумма")
    cause_payment_id: Optional[int] = None
    prev_balance: Decimal
    new_balance: Decimal = Field(..., ge=0)
    kind: LedgerEntryKind
    note: Optional[str] = None
    created_at: datetime


@dataclass
class LedgerSummary:
    """Итоги по видам записей за период."""
    user_id: int
    period_start: datetime
    period_end: datetime
    totals: dict[LedgerEntryKind, Decimal] = field(default_factory=dict)
    counts: dict[LedgerEntryKind, int] = field(default_factory=dict)
    opening_balance: Decimal = ZERO
    closing_balance: Decimal = ZERO

    @property
    def net_change(self) -> Decimal:
        return sum(self.totals.values(), ZERO)


@dataclass
class BalanceDrift:
    """Расхождение баланса пользователя с цепочкой."""
    user_id: int
    wallet_balance: Decimal
    head_balance: Decimal
    chain_total: Decimal

    def to_dict(self) -> dict[str, str | int]:
        return {
            "user_id": self.user_id,
            "wallet_balance": str(self.wallet_balance),
            "head_balance": str(self.head_balance),
            "chain_total": str(self.chain_total),
        }
