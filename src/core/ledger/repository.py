# src/core/ledger/repository.py
"""
SQL для цепочки записей кошелька.
Все записывающие методы требуют соединение внутри транзакции.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from asyncpg import Connection, Record

from src.common.constants import LedgerEntryKind
from src.core.ledger.models import LedgerEntry
from src.infra.database import DatabaseManager

_COLUMNS = "id, user_id, amount, cause_payment_id, prev_balance, new_balance, kind, note, created_at"


def to_entry(row: Record) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        user_id=row["user_id"],
        amount=row["amount"],
        cause_payment_id=row["cause_payment_id"],
        prev_balance=row["prev_balance"],
        new_balance=row["new_balance"],
        kind=LedgerEntryKind(row["kind"]),
        note=row["note"],
        created_at=row["created_at"],
    )


class LedgerRepository:
    """Доступ к таблице ledger_entries."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get_head(self, conn: Connection, user_id: int) -> Optional[LedgerEntry]:
        row = await conn.fetchrow(
            f"SELECT {_COLUMNS} FROM ledger_entries WHERE user_id = $1 AND is_latest",
            user_id,
        )
        return to_entry(row) if row else None

    async def append(
        self,
        conn: Connection,
        user_id: int,
        amount: Decimal,
        prev_balance: Decimal,
        new_balance: Decimal,
        kind: LedgerEntryKind,
        cause_payment_id: Optional[int],
        note: Optional[str],
    ) -> LedgerEntry:
        """Переносит голову цепочки на новую запись и обновляет users.wallet_balance."""
        await conn.execute(
            "UPDATE ledger_entries SET is_latest = FALSE WHERE user_id = $1 AND is_latest",
            user_id,
        )
        row = await conn.fetchrow(
            f"""
            INSERT INTO ledger_entries
                (user_id, amount, cause_payment_id, prev_balance, new_balance, kind, note, is_latest)
            VALUES ($1, $2, $3, $4, $5, $6, $7, TRUE)
            RETURNING {_COLUMNS}
            """,
            user_id,
            amount,
            cause_payment_id,
            prev_balance,
            new_balance,
            kind.value,
            note,
        )
        await conn.execute(
            "UPDATE users SET wallet_balance = $2, updated_at = NOW() WHERE id = $1",
            user_id,
            new_balance,
        )
        return to_entry(row)

    async def list_entries(self, user_id: int, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        rows = await self._db.fetch(
            f"""
            SELECT {_COLUMNS} FROM ledger_entries
            WHERE user_id = $1
            ORDER BY id DESC
            LIMIT $2 OFFSET $3
            """,
            user_id,
            limit,
            offset,
        )
        return [to_entry(r) for r in rows]

    async def totals_by_kind(self, user_id: int, start: datetime, end: datetime) -> list[Record]:
        return await self._db.fetch(
            """
            SELECT kind, SUM(amount) AS total, COUNT(*) AS cnt
            FROM ledger_entries
            WHERE user_id = $1 AND created_at >= $2 AND created_at < $3
            GROUP BY kind
            """,
            user_id,
            start,
            end,
        )

    async def balance_at(self, user_id: int, moment: datetime) -> Optional[Decimal]:
        """new_balance последней записи строго до момента."""
        return await self._db.fetchval(
            """
            SELECT new_balance FROM ledger_entries
            WHERE user_id = $1 AND created_at < $2
            ORDER BY id DESC LIMIT 1
            """,
            user_id,
            moment,
        )

    async def find_drifts(self) -> list[Record]:
        """
        Пользователи, у которых баланс расходится с головой цепочки
        или голова расходится с суммой записей.
        """
        return await self._db.fetch(
            """
            SELECT u.id AS user_id,
                   u.wallet_balance,
                   COALESCE(h.new_balance, 0) AS head_balance,
                   COALESCE(s.total, 0) AS chain_total
            FROM users u
            LEFT JOIN ledger_entries h ON h.user_id = u.id AND h.is_latest
            LEFT JOIN (
                SELECT user_id, SUM(amount) AS total FROM ledger_entries GROUP BY user_id
            ) s ON s.user_id = u.id
            WHERE u.wallet_balance <> COALESCE(h.new_balance, 0)
               OR COALESCE(h.new_balance, 0) <> COALESCE(s.total, 0)
            """
        )
