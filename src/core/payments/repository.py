# src/core/payments/repository.py
"""
Репозиторий платежей.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

import asyncpg
from asyncpg import Connection, Record

from src.common.constants import (
    PaymentKind,
    PaymentMethod,
    PaymentStatus,
    RelationKind,
    TypeMsg,
)
from src.common.errors import NotFoundError, ValidationError
from src.common.logger import log_info
from src.common.references import PAYMENT_PREFIX, make_reference
from src.core.payments.models import Payment, PaymentRelation
from src.infra.database import DatabaseManager

_COLUMNS = """
    id, payment_reference, user_id, amount, currency, kind, method, status,
    gateway_order_id, gateway_payment_id, gateway_refund_id, gateway_payout_id,
    related_entity_kind, related_entity_id, notes, metadata,
    refund_amount, refund_reason,
    initiated_at, completed_at, failed_at, refunded_at, cancelled_at
"""

# Попыток сгенерировать уникальный референс
_REFERENCE_ATTEMPTS = 5


def to_payment(row: Record) -> Payment:
    relation = None
    if row["related_entity_kind"] is not None and row["related_entity_id"] is not None:
        relation = PaymentRelation(kind=RelationKind(row["related_entity_kind"]), id=row["related_entity_id"])
    return Payment(
        id=row["id"],
        reference=row["payment_reference"],
        user_id=row["user_id"],
        amount=row["amount"],
        currency=row["currency"],
        kind=PaymentKind(row["kind"]),
        method=PaymentMethod(row["method"]),
        status=PaymentStatus(row["status"]),
        gateway_order_id=row["gateway_order_id"],
        gateway_payment_id=row["gateway_payment_id"],
        gateway_refund_id=row["gateway_refund_id"],
        gateway_payout_id=row["gateway_payout_id"],
        relation=relation,
        notes=row["notes"],
        metadata=row["metadata"] or {},
        refund_amount=row["refund_amount"],
        refund_reason=row["refund_reason"],
        initiated_at=row["initiated_at"],
        completed_at=row["completed_at"],
        failed_at=row["failed_at"],
        refunded_at=row["refunded_at"],
        cancelled_at=row["cancelled_at"],
    )


class PaymentRepository:
    """Доступ к таблицам payments и payment_events."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # =========================================================================
    # СОЗДАНИЕ
    # =========================================================================

    async def insert(
        self,
        conn: Connection,
        user_id: int,
        amount: Decimal,
        kind: PaymentKind,
        method: PaymentMethod,
        currency: str,
        relation: Optional[PaymentRelation] = None,
        status: PaymentStatus = PaymentStatus.PENDING,
        notes: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Payment:
        """
        Вставляет платёж с новым референсом.

        Коллизия референса повторяется внутри savepoint, чтобы не
        обрывать внешнюю транзакцию.
        """
        for attempt in range(1, _REFERENCE_ATTEMPTS + 1):
            reference = make_reference(PAYMENT_PREFIX)
            try:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        INSERT INTO payments
                            (payment_reference, user_id, amount, currency, kind, method, status,
                             related_entity_kind, related_entity_id, notes, metadata,
                             completed_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11,
                                CASE WHEN $7 = 'completed' THEN NOW() END)
                        RETURNING {_COLUMNS}
                        """,
                        reference,
                        user_id,
                        amount,
                        currency,
                        kind.value,
                        method.value,
                        status.value,
                        relation.kind.value if relation else None,
                        relation.id if relation else None,
                        notes,
                        metadata or {},
                    )
                return to_payment(row)
            except asyncpg.UniqueViolationError as e:
                if e.constraint_name != "payments_payment_reference_key" or attempt == _REFERENCE_ATTEMPTS:
                    raise
                await log_info(f"Коллизия референса платежа {reference}, повтор", type_msg=TypeMsg.DEBUG)
        raise RuntimeError("unreachable")

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get(self, payment_id: int, conn: Optional[Connection] = None) -> Optional[Payment]:
        async with self._db.use(conn) as c:
            row = await c.fetchrow(f"SELECT {_COLUMNS} FROM payments WHERE id = $1", payment_id)
        return to_payment(row) if row else None

    async def require(self, payment_id: int, conn: Optional[Connection] = None) -> Payment:
        """
        Raises:
            NotFoundError: Платёж не найден
        """
        payment = await self.get(payment_id, conn)
        if payment is None:
            raise NotFoundError(f"Платёж {payment_id} не найден", {"payment_id": payment_id})
        return payment

    async def lock(self, conn: Connection, payment_id: int) -> Payment:
        """
        Блокирует строку платежа до конца транзакции.

        Raises:
            NotFoundError: Платёж не найден
        """
        row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM payments WHERE id = $1 FOR UPDATE", payment_id)
        if row is None:
            raise NotFoundError(f"Платёж {payment_id} не найден", {"payment_id": payment_id})
        return to_payment(row)

    async def get_by_gateway_order_id(self, order_id: str) -> Optional[Payment]:
        row = await self._db.fetchrow(
            f"SELECT {_COLUMNS} FROM payments WHERE gateway_order_id = $1 ORDER BY id DESC LIMIT 1",
            order_id,
        )
        return to_payment(row) if row else None

    async def get_by_gateway_payment_id(self, gateway_payment_id: str) -> Optional[Payment]:
        row = await self._db.fetchrow(
            f"SELECT {_COLUMNS} FROM payments WHERE gateway_payment_id = $1",
            gateway_payment_id,
        )
        return to_payment(row) if row else None

    async def list_for_user(
        self,
        user_id: int,
        kind: Optional[PaymentKind] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Payment]:
        rows = await self._db.fetch(
            f"""
            SELECT {_COLUMNS} FROM payments
            WHERE user_id = $1 AND ($2::text IS NULL OR kind = $2)
            ORDER BY initiated_at DESC, id DESC
            LIMIT $3 OFFSET $4
            """,
            user_id,
            kind.value if kind else None,
            limit,
            offset,
        )
        return [to_payment(r) for r in rows]

    async def list_withdrawals(
        self,
        user_id: Optional[int] = None,
        status: Optional[PaymentStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Payment]:
        rows = await self._db.fetch(
            f"""
            SELECT {_COLUMNS} FROM payments
            WHERE kind = 'withdrawal'
              AND ($1::bigint IS NULL OR user_id = $1)
              AND ($2::text IS NULL OR status = $2)
            ORDER BY initiated_at DESC, id DESC
            LIMIT $3 OFFSET $4
            """,
            user_id,
            status.value if status else None,
            limit,
            offset,
        )
        return [to_payment(r) for r in rows]

    async def list_pending_withdrawals_before(self, moment: datetime) -> list[Payment]:
        rows = await self._db.fetch(
            f"""
            SELECT {_COLUMNS} FROM payments
            WHERE kind = 'withdrawal' AND status = 'pending' AND initiated_at <= $1
            ORDER BY initiated_at
            """,
            moment,
        )
        return [to_payment(r) for r in rows]

    async def list_orderless_gateway_payments(self, limit: int = 100) -> list[Payment]:
        """Ожидающие оплаты через шлюз, у которых заказ ещё не создан."""
        rows = await self._db.fetch(
            f"""
            SELECT {_COLUMNS} FROM payments
            WHERE status = 'pending' AND method = 'gateway' AND gateway_order_id IS NULL
            ORDER BY initiated_at
            LIMIT $1
            """,
            limit,
        )
        return [to_payment(r) for r in rows]

    # =========================================================================
    # ИЗМЕНЕНИЕ СТАТУСА
    # =========================================================================

    async def set_gateway_order(self, payment_id: int, order_id: str) -> None:
        await self._db.execute(
            """
            UPDATE payments SET gateway_order_id = $2, updated_at = NOW()
            WHERE id = $1 AND gateway_order_id IS NULL
            """,
            payment_id,
            order_id,
        )

    async def mark_completed(
        self,
        conn: Connection,
        payment_id: int,
        gateway_payment_id: Optional[str] = None,
        gateway_payout_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Payment:
        """
        Raises:
            ValidationError: gateway_payment_id уже использован другим платежом
        """
        try:
            row = await conn.fetchrow(
                f"""
                UPDATE payments SET
                    status = 'completed',
                    gateway_payment_id = COALESCE($2, gateway_payment_id),
                    gateway_payout_id = COALESCE($3, gateway_payout_id),
                    metadata = metadata || $4::jsonb,
                    completed_at = NOW(),
                    updated_at = NOW()
                WHERE id = $1
                RETURNING {_COLUMNS}
                """,
                payment_id,
                gateway_payment_id,
                gateway_payout_id,
                metadata or {},
            )
        except asyncpg.UniqueViolationError as e:
            raise ValidationError(
                "Платёж шлюза уже привязан к другому платежу",
                {"gateway_payment_id": gateway_payment_id},
            ) from e
        return to_payment(row)

    async def mark_failed(self, conn: Connection, payment_id: int, reason: str) -> Payment:
        row = await conn.fetchrow(
            f"""
            UPDATE payments SET
                status = 'failed',
                metadata = metadata || jsonb_build_object('failure_reason', $2::text),
                failed_at = NOW(),
                updated_at = NOW()
            WHERE id = $1
            RETURNING {_COLUMNS}
            """,
            payment_id,
            reason,
        )
        return to_payment(row)

    async def mark_cancelled(
        self,
        conn: Connection,
        payment_id: int,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Payment:
        row = await conn.fetchrow(
            f"""
            UPDATE payments SET
                status = 'cancelled',
                metadata = metadata || $2::jsonb,
                cancelled_at = NOW(),
                updated_at = NOW()
            WHERE id = $1
            RETURNING {_COLUMNS}
            """,
            payment_id,
            metadata or {},
        )
        return to_payment(row)

    async def update_metadata(
        self,
        conn: Connection,
        payment_id: int,
        changes: Optional[dict[str, Any]] = None,
        drop: Sequence[str] = (),
    ) -> Payment:
        """Сливает changes в metadata и удаляет ключи drop."""
        row = await conn.fetchrow(
            f"""
            UPDATE payments SET
                metadata = (metadata || $2::jsonb) - $3::text[],
                updated_at = NOW()
            WHERE id = $1
            RETURNING {_COLUMNS}
            """,
            payment_id,
            changes or {},
            list(drop),
        )
        return to_payment(row)

    async def mark_refunded(
        self,
        conn: Connection,
        payment_id: int,
        amount: Decimal,
        reason: Optional[str],
        gateway_refund_id: Optional[str] = None,
    ) -> Payment:
        row = await conn.fetchrow(
            f"""
            UPDATE payments SET
                status = 'refunded',
                refund_amount = $2,
                refund_reason = $3,
                gateway_refund_id = $4,
                refunded_at = NOW(),
                updated_at = NOW()
            WHERE id = $1
            RETURNING {_COLUMNS}
            """,
            payment_id,
            amount,
            reason,
            gateway_refund_id,
        )
        return to_payment(row)

    # =========================================================================
    # СОБЫТИЯ ШЛЮЗА И ПОДПИСКИ
    # =========================================================================

    async def record_event(
        self,
        conn: Connection,
        event_kind: str,
        gateway_payment_id: str,
        payment_id: Optional[int],
        payload: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Фиксирует обработку события шлюза.

        Returns:
            False, если пара (event_kind, gateway_payment_id) уже обработана
        """
        inserted = await conn.fetchval(
            """
            INSERT INTO payment_events (event_kind, gateway_payment_id, payment_id, payload)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (event_kind, gateway_payment_id) DO NOTHING
            RETURNING id
            """,
            event_kind,
            gateway_payment_id,
            payment_id,
            payload or {},
        )
        return inserted is not None

    async def event_processed(self, event_kind: str, gateway_payment_id: str) -> bool:
        return bool(await self._db.fetchval(
            "SELECT EXISTS (SELECT 1 FROM payment_events WHERE event_kind = $1 AND gateway_payment_id = $2)",
            event_kind,
            gateway_payment_id,
        ))

    async def extend_subscription(
        self,
        conn: Connection,
        user_id: int,
        plan_id: int,
        duration_days: int,
        payment_id: int,
    ) -> Record:
        """
        Добавляет период подписки, продлевая действующую.

        Returns:
            Строка с started_at и expires_at
        """
        return await conn.fetchrow(
            """
            WITH current AS (
                SELECT GREATEST(NOW(), COALESCE(MAX(expires_at), NOW())) AS start_at
                FROM user_subscriptions WHERE user_id = $1
            )
            INSERT INTO user_subscriptions (user_id, plan_id, started_at, expires_at, payment_id)
            SELECT $1, $2, start_at, start_at + make_interval(days => $3), $4 FROM current
            RETURNING started_at, expires_at
            """,
            user_id,
            plan_id,
            duration_days,
            payment_id,
        )
