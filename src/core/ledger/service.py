# src/core/ledger/service.py
"""
Сервис кошелька.

Единственный источник истины для баланса. Каждое изменение баланса
добавляет новую запись в цепочку пользователя под блокировкой строки
users (SELECT ... FOR UPDATE), поэтому конкурентные списания
сериализуются: проигравший видит новую голову цепочки.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from asyncpg import Connection

from src.common.constants import LedgerEntryKind, TypeMsg
from src.common.errors import InsufficientFundsError, InternalError, ValidationError
from src.common.logger import log_critical, log_info
from src.common.money import ZERO, require_positive, to_money
from src.core.ledger.models import BalanceDrift, LedgerEntry, LedgerSummary
from src.core.ledger.repository import LedgerRepository
from src.core.users.repository import UserRepository

if TYPE_CHECKING:
    from src.infra.database import DatabaseManager


class LedgerService:
    """Операции над кошельком."""

    def __init__(
        self,
        db: "DatabaseManager",
        users: UserRepository | None = None,
        repository: LedgerRepository | None = None,
    ) -> None:
        self.db = db
        self.users = users or UserRepository(db)
        self.repository = repository or LedgerRepository(db)

    # === ЗАПИСЬ ===

    async def credit(
        self,
        user_id: int,
        amount: Decimal,
        cause_payment_id: Optional[int] = None,
        note: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> LedgerEntry:
        """Зачисление на кошелёк."""
        return await self._append(
            user_id, require_positive(amount), LedgerEntryKind.CREDIT, cause_payment_id, note, conn,
        )

    async def debit(
        self,
        user_id: int,
        amount: Decimal,
        cause_payment_id: Optional[int] = None,
        note: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> LedgerEntry:
        """
        Списание с кошелька.

        Raises:
            InsufficientFundsError: Сумма больше текущего баланса
        """
        return await self._append(
            user_id, -require_positive(amount), LedgerEntryKind.DEBIT, cause_payment_id, note, conn,
        )

    async def hold(
        self,
        user_id: int,
        amount: Decimal,
        cause_payment_id: Optional[int] = None,
        note: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> LedgerEntry:
        """Заморозка суммы (уменьшает доступный баланс)."""
        return await self._append(
            user_id, -require_positive(amount), LedgerEntryKind.HOLD, cause_payment_id, note, conn,
        )

    async def release(
        self,
        user_id: int,
        amount: Decimal,
        cause_payment_id: Optional[int] = None,
        note: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> LedgerEntry:
        """Снятие заморозки."""
        return await self._append(
            user_id, require_positive(amount), LedgerEntryKind.RELEASE, cause_payment_id, note, conn,
        )

    async def adjust(
        self,
        user_id: int,
        signed_amount: Decimal,
        cause_payment_id: Optional[int] = None,
        note: Optional[str] = None,
        conn: Optional[Connection] = None,
    ) -> LedgerEntry:
        """Ручная корректировка, знак определяет направление."""
        amount = to_money(signed_amount)
        if amount == ZERO:
            raise ValidationError("Сумма корректировки не может быть нулевой")
        return await self._append(user_id, amount, LedgerEntryKind.ADJUST, cause_payment_id, note, conn)

    async def _append(
        self,
        user_id: int,
        amount: Decimal,
        kind: LedgerEntryKind,
        cause_payment_id: Optional[int],
        note: Optional[str],
        conn: Optional[Connection],
    ) -> LedgerEntry:
        if conn is None:
            async with self.db.transaction() as tx:
                return await self._append_locked(tx, user_id, amount, kind, cause_payment_id, note)
        return await self._append_locked(conn, user_id, amount, kind, cause_payment_id, note)

    async def _append_locked(
        self,
        conn: Connection,
        user_id: int,
        amount: Decimal,
        kind: LedgerEntryKind,
        cause_payment_id: Optional[int],
        note: Optional[str],
    ) -> LedgerEntry:
        user_row = await self.users.lock_for_update(conn, user_id)
        head = await self.repository.get_head(conn, user_id)

        prev_balance = head.new_balance if head else ZERO
        stored_balance = to_money(user_row["wallet_balance"])
        if stored_balance != prev_balance:
            await log_critical(
                f"Расхождение цепочки кошелька пользователя {user_id}: "
                f"wallet_balance={stored_balance}, голова={prev_balance}",
                extra={"user_id": user_id},
            )
            raise InternalError(
                "Баланс кошелька расходится с цепочкой записей",
                {"user_id": user_id, "wallet_balance": str(stored_balance), "head": str(prev_balance)},
            )

        new_balance = prev_balance + amount
        if new_balance < ZERO:
            raise InsufficientFundsError(
                f"Недостаточно средств: баланс {prev_balance}, требуется {-amount}",
                {"balance": str(prev_balance), "required": str(-amount)},
            )

        entry = await self.repository.append(
            conn, user_id, amount, prev_balance, new_balance, kind, cause_payment_id, note,
        )
        await log_info(
            f"Кошелёк {user_id}: {kind.value} {amount:+} -> {new_balance} (запись {entry.id})",
            type_msg=TypeMsg.INFO,
            extra={"user_id": user_id, "cause_payment_id": cause_payment_id},
        )
        return entry

    # === ЧТЕНИЕ ===

    async def balance(self, user_id: int) -> Decimal:
        """Баланс из users.wallet_balance."""
        actor = await self.users.require(user_id)
        return actor.wallet_balance

    async def entries(self, user_id: int, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        return await self.repository.list_entries(user_id, limit, offset)

    async def summary(self, user_id: int, period_start: datetime, period_end: datetime) -> LedgerSummary:
        """
        Итоги по видам записей за период [start, end).

        Raises:
            ValidationError: Начало периода позже конца
        """
        if period_start >= period_end:
            raise ValidationError("Начало периода должно быть раньше конца")
        await self.users.require(user_id)

        rows = await self.repository.totals_by_kind(user_id, period_start, period_end)
        opening = await self.repository.balance_at(user_id, period_start)
        closing = await self.repository.balance_at(user_id, period_end)

        summary = LedgerSummary(
            user_id=user_id,
            period_start=period_start,
            period_end=period_end,
            opening_balance=to_money(opening or ZERO),
            closing_balance=to_money(closing or ZERO),
        )
        for row in rows:
            kind = LedgerEntryKind(row["kind"])
            summary.totals[kind] = to_money(row["total"])
            summary.counts[kind] = row["cnt"]
        return summary

    async def find_drifts(self) -> list[BalanceDrift]:
        """Все пользователи с расхождением баланса и цепочки."""
        rows = await self.repository.find_drifts()
        return [
            BalanceDrift(
                user_id=r["user_id"],
                wallet_balance=to_money(r["wallet_balance"]),
                head_balance=to_money(r["head_balance"]),
                chain_total=to_money(r["chain_total"]),
            )
            for r in rows
        ]
