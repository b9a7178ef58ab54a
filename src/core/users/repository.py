# src/core/users/repository.py
"""
Репозиторий участников.
"""

from __future__ import annotations

from typing import Optional

from asyncpg import Connection, Record

from src.common.constants import ActorKind
from src.common.errors import NotFoundError
from src.core.users.models import Actor
from src.infra.database import DatabaseManager


_ACTOR_COLUMNS = """
    u.id, u.phone, u.email, u.name, u.user_type, u.is_active, u.is_verified,
    u.wallet_balance, u.created_at,
    EXISTS (
        SELECT 1 FROM user_subscriptions s
        WHERE s.user_id = u.id AND s.expires_at > NOW()
    ) AS has_active_subscription
"""


def _to_actor(row: Record) -> Actor:
    return Actor(
        id=row["id"],
        phone=row["phone"],
        email=row["email"],
        name=row["name"],
        kind=ActorKind(row["user_type"]),
        active=row["is_active"],
        verified=row["is_verified"],
        wallet_balance=row["wallet_balance"],
        has_active_subscription=row["has_active_subscription"],
        created_at=row["created_at"],
    )


class UserRepository:
    """Репозиторий участников."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных
        """
        self._db = db

    async def get_by_id(self, user_id: int, conn: Optional[Connection] = None) -> Optional[Actor]:
        """Участник по ID или None."""
        async with self._db.use(conn) as c:
            row = await c.fetchrow(f"SELECT {_ACTOR_COLUMNS} FROM users u WHERE u.id = $1", user_id)
        return _to_actor(row) if row else None

    async def require(self, user_id: int, conn: Optional[Connection] = None) -> Actor:
        """
        Участник по ID.

        Raises:
            NotFoundError: Участник не найден
        """
        actor = await self.get_by_id(user_id, conn)
        if actor is None:
            raise NotFoundError(f"Пользователь {user_id} не найден", {"user_id": user_id})
        return actor

    async def lock_for_update(self, conn: Connection, user_id: int) -> Record:
        """
        Блокирует строку пользователя до конца транзакции.

        Returns:
            Строка с id и wallet_balance

        Raises:
            NotFoundError: Пользователь не найден
        """
        row = await conn.fetchrow(
            "SELECT id, wallet_balance FROM users WHERE id = $1 FOR UPDATE",
            user_id,
        )
        if row is None:
            raise NotFoundError(f"Пользователь {user_id} не найден", {"user_id": user_id})
        return row

    async def list_admin_ids(self) -> list[int]:
        """ID активных администраторов."""
        rows = await self._db.fetch(
            "SELECT id FROM users WHERE user_type = $1 AND is_active = TRUE ORDER BY id",
            ActorKind.ADMIN.value,
        )
        return [r["id"] for r in rows]

    async def has_active_subscription(self, user_id: int) -> bool:
        return bool(await self._db.fetchval(
            "SELECT EXISTS (SELECT 1 FROM user_subscriptions WHERE user_id = $1 AND expires_at > NOW())",
            user_id,
        ))
