# src/core/bookings/repository.py
"""
Репозиторий бронирований, назначений и сессий трекинга.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg
from asyncpg import Connection, Record

from src.common.constants import (
    ActorKind,
    AssignmentState,
    BookingKind,
    BookingState,
    QuoteDecision,
    TypeMsg,
)
from src.common.errors import NotFoundError
from src.common.logger import log_info
from src.common.references import BOOKING_PREFIX, make_reference
from src.core.bookings.models import Booking, Cancellation, Quote, WorkerAssignment
from src.infra.database import DatabaseManager

_BOOKING_COLUMNS = """
    id, reference, customer_id, service_id, kind, state,
    scheduled_start, scheduled_end, address_snapshot, contact_snapshot, description,
    hold_expires_at, quote_amount, quote_notes, quote_provided_by, quote_provided_at,
    quote_expires_at, quote_decided_at, quote_decision, quote_reject_reason,
    payment_id, cancelled_by, cancelled_by_kind, cancellation_reason, refund_ledger_id,
    confirmed_at, completed_at, cancelled_at, created_at, updated_at
"""

_ASSIGNMENT_COLUMNS = """
    id, booking_id, worker_id, state, assigned_by, assigned_at, accepted_at,
    rejected_at, rejection_reason, started_at, completed_at, start_notes,
    completion_notes, materials_used, photos, tracking_session_id
"""

# Поля, которые можно менять вместе с состоянием
_UPDATABLE_BOOKING_FIELDS = frozenset({
    "scheduled_start", "scheduled_end", "hold_expires_at",
    "quote_amount", "quote_notes", "quote_provided_by", "quote_provided_at",
    "quote_expires_at", "quote_decided_at", "quote_decision", "quote_reject_reason",
    "payment_id", "cancelled_by", "cancelled_by_kind", "cancellation_reason", "refund_ledger_id",
    "confirmed_at", "completed_at", "cancelled_at",
})

_UPDATABLE_ASSIGNMENT_FIELDS = frozenset({
    "accepted_at", "rejected_at", "rejection_reason", "started_at", "completed_at",
    "start_notes", "completion_notes", "materials_used", "photos", "tracking_session_id",
})

_REFERENCE_ATTEMPTS = 5

# Уникальный индекс активного окна услуги
ACTIVE_WINDOW_CONSTRAINT = "uq_bookings_active_window"


def to_booking(row: Record) -> Booking:
    quote = None
    if row["quote_amount"] is not None:
        quote = Quote(
            amount=row["quote_amount"],
            notes=row["quote_notes"],
            provided_by=row["quote_provided_by"],
            provided_at=row["quote_provided_at"],
            expires_at=row["quote_expires_at"],
            decided_at=row["quote_decided_at"],
            decision=QuoteDecision(row["quote_decision"]) if row["quote_decision"] else None,
            reject_reason=row["quote_reject_reason"],
        )
    cancellation = None
    if row["cancelled_at"] is not None or row["refund_ledger_id"] is not None:
        cancellation = Cancellation(
            actor_id=row["cancelled_by"],
            actor_kind=ActorKind(row["cancelled_by_kind"]) if row["cancelled_by_kind"] else None,
            reason=row["cancellation_reason"],
            refund_ledger_id=row["refund_ledger_id"],
            cancelled_at=row["cancelled_at"],
        )
    return Booking(
        id=row["id"],
        reference=row["reference"],
        customer_id=row["customer_id"],
        service_id=row["service_id"],
        kind=BookingKind(row["kind"]),
        state=BookingState(row["state"]),
        scheduled_start=row["scheduled_start"],
        scheduled_end=row["scheduled_end"],
        address_snapshot=row["address_snapshot"] or {},
        contact_snapshot=row["contact_snapshot"] or {},
        description=row["description"],
        hold_expires_at=row["hold_expires_at"],
        quote=quote,
        payment_id=row["payment_id"],
        cancellation=cancellation,
        confirmed_at=row["confirmed_at"],
        completed_at=row["completed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def to_assignment(row: Record) -> WorkerAssignment:
    return WorkerAssignment(
        id=row["id"],
        booking_id=row["booking_id"],
        worker_id=row["worker_id"],
        state=AssignmentState(row["state"]),
        assigned_by=row["assigned_by"],
        assigned_at=row["assigned_at"],
        accepted_at=row["accepted_at"],
        rejected_at=row["rejected_at"],
        rejection_reason=row["rejection_reason"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        start_notes=row["start_notes"],
        completion_notes=row["completion_notes"],
        materials_used=row["materials_used"] or [],
        photos=row["photos"] or [],
        tracking_session_id=row["tracking_session_id"],
    )


class BookingRepository:
    """Репозиторий бронирований."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных
        """
        self._db = db

    # =========================================================================
    # БРОНИРОВАНИЯ
    # =========================================================================

    async def insert(
        self,
        conn: Connection,
        customer_id: int,
        service_id: int,
        kind: BookingKind,
        state: BookingState,
        address_snapshot: dict[str, Any],
        contact_snapshot: dict[str, Any],
        description: Optional[str] = None,
        scheduled_start: Optional[datetime] = None,
        scheduled_end: Optional[datetime] = None,
        hold_expires_at: Optional[datetime] = None,
    ) -> Booking:
        """
        Вставляет бронирование.

        Raises:
            asyncpg.UniqueViolationError: Окно услуги уже занято (uq_bookings_active_window)
        """
        for attempt in range(1, _REFERENCE_ATTEMPTS + 1):
            reference = make_reference(BOOKING_PREFIX)
            try:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        INSERT INTO bookings
                            (reference, customer_id, service_id, kind, state,
                             scheduled_start, scheduled_end, address_snapshot, contact_snapshot,
                             description, hold_expires_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                        RETURNING {_BOOKING_COLUMNS}
                        """,
                        reference,
                        customer_id,
                        service_id,
                        kind.value,
                        state.value,
                        scheduled_start,
                        scheduled_end,
                        address_snapshot,
                        contact_snapshot,
                        description,
                        hold_expires_at,
                    )
                return to_booking(row)
            except asyncpg.UniqueViolationError as e:
                if e.constraint_name != "bookings_reference_key" or attempt == _REFERENCE_ATTEMPTS:
                    raise
                await log_info(f"Коллизия референса бронирования {reference}, повтор", type_msg=TypeMsg.DEBUG)
        raise RuntimeError("unreachable")

    async def get(self, booking_id: int, conn: Optional[Connection] = None) -> Optional[Booking]:
        async with self._db.use(conn) as c:
            row = await c.fetchrow(f"SELECT {_BOOKING_COLUMNS} FROM bookings WHERE id = $1", booking_id)
        return to_booking(row) if row else None

    async def require(self, booking_id: int, conn: Optional[Connection] = None) -> Booking:
        """
        Raises:
            NotFoundError: Бронирование не найдено
        """
        booking = await self.get(booking_id, conn)
        if booking is None:
            raise NotFoundError(f"Бронирование {booking_id} не найдено", {"booking_id": booking_id})
        return booking

    async def lock(self, conn: Connection, booking_id: int) -> Booking:
        """
        Блокирует строку бронирования до конца транзакции.
        Конкурентный переход ждёт и затем видит уже обновлённое состояние.

        Raises:
            NotFoundError: Бронирование не найдено
        """
        row = await conn.fetchrow(
            f"SELECT {_BOOKING_COLUMNS} FROM bookings WHERE id = $1 FOR UPDATE",
            booking_id,
        )
        if row is None:
            raise NotFoundError(f"Бронирование {booking_id} не найдено", {"booking_id": booking_id})
        return to_booking(row)

    async def update_state(
        self,
        conn: Connection,
        booking_id: int,
        state: BookingState,
        **fields: Any,
    ) -> Booking:
        """
        Меняет состояние и указанные поля. Переданное None очищает поле.

        Args:
            conn: Соединение транзакции
            booking_id: ID бронирования
            state: Новое состояние
            **fields: Дополнительные поля из _UPDATABLE_BOOKING_FIELDS
        """
        unknown = set(fields) - _UPDATABLE_BOOKING_FIELDS
        if unknown:
            raise ValueError(f"Неизвестные поля бронирования: {sorted(unknown)}")

        set_clauses = ["state = $2", "updated_at = NOW()"]
        params: list[Any] = [booking_id, state.value]
        for key, value in fields.items():
            params.append(value.value if isinstance(value, (QuoteDecision, ActorKind)) else value)
            set_clauses.append(f"{key} = ${len(params)}")

        row = await conn.fetchrow(
            f"""
            UPDATE bookings SET {", ".join(set_clauses)}
            WHERE id = $1
            RETURNING {_BOOKING_COLUMNS}
            """,
            *params,
        )
        await log_info(f"Бронирование {booking_id} -> {state.value}", type_msg=TypeMsg.DEBUG)
        return to_booking(row)

    async def release_hold(self, booking_id: int, payment_id: int) -> bool:
        """Переносит дедлайн заморозки в прошлое, освобождая слот для расчёта."""
        result = await self._db.execute(
            """
            UPDATE bookings SET hold_expires_at = NOW(), updated_at = NOW()
            WHERE id = $1 AND payment_id = $2 AND state = 'held' AND hold_expires_at > NOW()
            """,
            booking_id,
            payment_id,
        )
        return result == "UPDATE 1"

    async def lock_stale_holds_for_window(
        self,
        conn: Connection,
        service_id: int,
        start: datetime,
        end: datetime,
        now: datetime,
    ) -> list[Booking]:
        """Блокирует просроченные held того же окна, чтобы перевести их в expired."""
        rows = await conn.fetch(
            f"""
            SELECT {_BOOKING_COLUMNS} FROM bookings
            WHERE service_id = $1 AND scheduled_start = $2 AND scheduled_end = $3
              AND state = 'held' AND hold_expires_at <= $4
            ORDER BY id
            FOR UPDATE
            """,
            service_id,
            start,
            end,
            now,
        )
        return [to_booking(r) for r in rows]

    async def list_expired_hold_ids(self, now: datetime, limit: int = 500) -> list[int]:
        """held с истёкшей заморозкой и без завершённого платежа."""
        rows = await self._db.fetch(
            """
            SELECT b.id FROM bookings b
            LEFT JOIN payments p ON p.id = b.payment_id
            WHERE b.state = 'held' AND b.hold_expires_at <= $1
              AND (p.id IS NULL OR p.status <> 'completed')
            ORDER BY b.hold_expires_at
            LIMIT $2
            """,
            now,
            limit,
        )
        return [r["id"] for r in rows]

    async def list_paid_unsettled(self, limit: int = 500) -> list[tuple[int, int]]:
        """
        Бронирования с завершённым платежом, которые не продвинулись дальше.

        Сюда попадают held и inquiry в created после сбоя между фиксацией
        платежа и переходом, а также expired без возврата.
        """
        rows = await self._db.fetch(
            """
            SELECT b.id, b.payment_id FROM bookings b
            JOIN payments p ON p.id = b.payment_id
            WHERE p.status = 'completed'
              AND (b.state IN ('held', 'created')
                   OR (b.state = 'expired' AND b.refund_ledger_id IS NULL))
            ORDER BY b.id
            LIMIT $1
            """,
            limit,
        )
        return [(r["id"], r["payment_id"]) for r in rows]

    async def list_expired_quote_ids(self, now: datetime, limit: int = 500) -> list[int]:
        rows = await self._db.fetch(
            """
            SELECT id FROM bookings
            WHERE state = 'quoted' AND quote_expires_at <= $1 AND quote_decided_at IS NULL
            ORDER BY quote_expires_at
            LIMIT $2
            """,
            now,
            limit,
        )
        return [r["id"] for r in rows]

    async def list_for_customer(
        self,
        customer_id: int,
        state: Optional[BookingState] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Booking]:
        rows = await self._db.fetch(
            f"""
            SELECT {_BOOKING_COLUMNS} FROM bookings
            WHERE customer_id = $1 AND ($2::text IS NULL OR state = $2)
            ORDER BY created_at DESC, id DESC
            LIMIT $3 OFFSET $4
            """,
            customer_id,
            state.value if state else None,
            limit,
            offset,
        )
        return [to_booking(r) for r in rows]

    # =========================================================================
    # НАЗНАЧЕНИЯ
    # =========================================================================

    async def get_assignment_for_booking(
        self,
        booking_id: int,
        conn: Optional[Connection] = None,
    ) -> Optional[WorkerAssignment]:
        async with self._db.use(conn) as c:
            row = await c.fetchrow(
                f"SELECT {_ASSIGNMENT_COLUMNS} FROM worker_assignments WHERE booking_id = $1",
                booking_id,
            )
        return to_assignment(row) if row else None

    async def lock_assignment(self, conn: Connection, assignment_id: int) -> WorkerAssignment:
        """
        Raises:
            NotFoundError: Назначение не найдено
        """
        row = await conn.fetchrow(
            f"SELECT {_ASSIGNMENT_COLUMNS} FROM worker_assignments WHERE id = $1 FOR UPDATE",
            assignment_id,
        )
        if row is None:
            raise NotFoundError(f"Назначение {assignment_id} не найдено", {"assignment_id": assignment_id})
        return to_assignment(row)

    async def upsert_assignment(
        self,
        conn: Connection,
        booking_id: int,
        worker_id: int,
        assigned_by: int,
    ) -> Optional[WorkerAssignment]:
        """
        Создаёт назначение или переиспользует отклонённое.

        Returns:
            Назначение в pending или None, если у бронирования есть
            неотклонённое назначение
        """
        row = await conn.fetchrow(
            f"""
            INSERT INTO worker_assignments (booking_id, worker_id, state, assigned_by, assigned_at)
            VALUES ($1, $2, 'pending', $3, NOW())
            ON CONFLICT (booking_id) DO UPDATE SET
                worker_id = EXCLUDED.worker_id,
                state = 'pending',
                assigned_by = EXCLUDED.assigned_by,
                assigned_at = NOW(),
                accepted_at = NULL,
                rejected_at = NULL,
                rejection_reason = NULL,
                updated_at = NOW()
            WHERE worker_assignments.state = 'rejected'
            RETURNING {_ASSIGNMENT_COLUMNS}
            """,
            booking_id,
            worker_id,
            assigned_by,
        )
        return to_assignment(row) if row else None

    async def update_assignment_state(
        self,
        conn: Connection,
        assignment_id: int,
        state: AssignmentState,
        **fields: Any,
    ) -> WorkerAssignment:
        unknown = set(fields) - _UPDATABLE_ASSIGNMENT_FIELDS
        if unknown:
            raise ValueError(f"Неизвестные поля назначения: {sorted(unknown)}")

        set_clauses = ["state = $2", "updated_at = NOW()"]
        params: list[Any] = [assignment_id, state.value]
        for key, value in fields.items():
            params.append(value)
            set_clauses.append(f"{key} = ${len(params)}")

        row = await conn.fetchrow(
            f"""
            UPDATE worker_assignments SET {", ".join(set_clauses)}
            WHERE id = $1
            RETURNING {_ASSIGNMENT_COLUMNS}
            """,
            *params,
        )
        return to_assignment(row)

    async def list_for_worker(
        self,
        worker_id: int,
        state: Optional[AssignmentState] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WorkerAssignment]:
        rows = await self._db.fetch(
            f"""
            SELECT {_ASSIGNMENT_COLUMNS} FROM worker_assignments
            WHERE worker_id = $1 AND ($2::text IS NULL OR state = $2)
            ORDER BY assigned_at DESC, id DESC
            LIMIT $3 OFFSET $4
            """,
            worker_id,
            state.value if state else None,
            limit,
            offset,
        )
        return [to_assignment(r) for r in rows]

    # =========================================================================
    # ТРЕКИНГ
    # =========================================================================

    async def open_tracking_session(self, conn: Connection, assignment: WorkerAssignment) -> int:
        return await conn.fetchval(
            """
            INSERT INTO tracking_sessions (assignment_id, booking_id, worker_id)
            VALUES ($1, $2, $3)
            RETURNING id
            """,
            assignment.id,
            assignment.booking_id,
            assignment.worker_id,
        )

    async def close_tracking_sessions(self, conn: Connection, booking_id: int) -> int:
        """Закрывает открытые сессии трекинга бронирования."""
        result = await conn.execute(
            "UPDATE tracking_sessions SET ended_at = NOW() WHERE booking_id = $1 AND ended_at IS NULL",
            booking_id,
        )
        return int(result.split()[-1]) if result else 0
