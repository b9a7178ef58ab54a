# src/core/notifications/repository.py
"""
Репозиторий уведомлений и токенов устройств.
"""

from __future__ import annotations

from typing import Any, Optional

from asyncpg import Record

from src.common.constants import NotificationKind
from src.core.notifications.models import DeviceToken, Notification
from src.infra.database import DatabaseManager

_COLUMNS = "id, user_id, kind, title, body, data, delivered_at, read_at, created_at"


def to_notification(row: Record) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        kind=NotificationKind(row["kind"]),
        title=row["title"],
        body=row["body"],
        data=row["data"] or {},
        delivered_at=row["delivered_at"],
        read_at=row["read_at"],
        created_at=row["created_at"],
    )


class NotificationRepository:
    """Репозиторий уведомлений."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def insert(
        self,
        user_id: int,
        kind: NotificationKind,
        title: str,
        body: str,
        data: dict[str, Any],
    ) -> Notification:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO notifications (user_id, kind, title, body, data)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING {_COLUMNS}
            """,
            user_id,
            kind.value,
            title,
            body,
            data,
        )
        return to_notification(row)

    async def get(self, notification_id: int) -> Optional[Notification]:
        row = await self._db.fetchrow(f"SELECT {_COLUMNS} FROM notifications WHERE id = $1", notification_id)
        return to_notification(row) if row else None

    async def mark_read(self, notification_id: int, user_id: int) -> Optional[Notification]:
        """
        Отмечает прочитанным уведомление владельца.

        Returns:
            Уведомление или None, если у пользователя нет такого уведомления
        """
        row = await self._db.fetchrow(
            f"""
            UPDATE notifications SET read_at = COALESCE(read_at, NOW())
            WHERE id = $1 AND user_id = $2
            RETURNING {_COLUMNS}
            """,
            notification_id,
            user_id,
        )
        return to_notification(row) if row else None

    async def mark_all_read(self, user_id: int) -> int:
        result = await self._db.execute(
            "UPDATE notifications SET read_at = NOW() WHERE user_id = $1 AND read_at IS NULL",
            user_id,
        )
        return int(result.split()[-1])

    async def unread_count(self, user_id: int) -> int:
        return await self._db.fetchval(
            "SELECT COUNT(*) FROM notifications WHERE user_id = $1 AND read_at IS NULL",
            user_id,
        )

    async def list_for_user(
        self,
        user_id: int,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Notification]:
        rows = await self._db.fetch(
            f"""
            SELECT {_COLUMNS} FROM notifications
            WHERE user_id = $1 AND (NOT $2 OR read_at IS NULL)
            ORDER BY created_at DESC, id DESC
            LIMIT $3 OFFSET $4
            """,
            user_id,
            unread_only,
            limit,
            offset,
        )
        return [to_notification(r) for r in rows]

    async def mark_delivered(self, notification_id: int) -> None:
        await self._db.execute(
            "UPDATE notifications SET delivered_at = NOW() WHERE id = $1 AND delivered_at IS NULL",
            notification_id,
        )

    # =========================================================================
    # ТОКЕНЫ УСТРОЙСТВ
    # =========================================================================

    async def upsert_token(self, user_id: int, token: str, platform: str) -> DeviceToken:
        """Токен переходит к последнему зарегистрировавшему его пользователю."""
        row = await self._db.fetchrow(
            """
            INSERT INTO device_tokens (user_id, token, platform)
            VALUES ($1, $2, $3)
            ON CONFLICT (token) DO UPDATE SET
                user_id = EXCLUDED.user_id,
                platform = EXCLUDED.platform,
                is_active = TRUE,
                last_error = NULL,
                updated_at = NOW()
            RETURNING id, user_id, token, platform, is_active, last_error
            """,
            user_id,
            token,
            platform,
        )
        return _to_token(row)

    async def deactivate_token(self, user_id: int, token: str) -> bool:
        result = await self._db.execute(
            """
            UPDATE device_tokens SET is_active = FALSE, updated_at = NOW()
            WHERE user_id = $1 AND token = $2 AND is_active
            """,
            user_id,
            token,
        )
        return result == "UPDATE 1"

    async def disable_token(self, token: str, error: str) -> None:
        await self._db.execute(
            """
            UPDATE device_tokens SET is_active = FALSE, last_error = $2, updated_at = NOW()
            WHERE token = $1
            """,
            token,
            error,
        )

    async def list_active_tokens(self, user_id: int) -> list[str]:
        rows = await self._db.fetch(
            "SELECT token FROM device_tokens WHERE user_id = $1 AND is_active ORDER BY id",
            user_id,
        )
        return [r["token"] for r in rows]


def _to_token(row: Record) -> DeviceToken:
    return DeviceToken(
        id=row["id"],
        user_id=row["user_id"],
        token=row["token"],
        platform=row["platform"],
        active=row["is_active"],
        last_error=row["last_error"],
    )
