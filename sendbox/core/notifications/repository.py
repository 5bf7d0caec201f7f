# sendbox/core/notifications/repository.py
"""
Репозиторий уведомлений.
"""

from __future__ import annotations

from typing import Optional

from asyncpg import Record

from sendbox.common.constants import NotificationType
from sendbox.core.notifications.models import Notification
from sendbox.infra.database import DatabaseManager

_NOTIFICATION_COLUMNS = "id, user_id, type, title, content, booking_id, read_at, created_at"


class NotificationRepository:
    """Репозиторий уведомлений."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def replace_unread(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        content: str,
        booking_id: str | None = None,
    ) -> Notification:
        """
        Удаляет непрочитанные дубликаты и вставляет свежее уведомление.
        При гонке двух вставок уникальный индекс оставляет одну строку,
        вторая вставка обновляет её текст.
        """
        async with self._db.transaction() as conn:
            await conn.execute(
                """
                DELETE FROM notifications
                WHERE user_id = $1 AND type = $2 AND title = $3 AND read_at IS NULL
                """,
                user_id,
                type.value,
                title,
            )
            row = await conn.fetchrow(
                f"""
                INSERT INTO notifications (user_id, type, title, content, booking_id)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (user_id, type, title) WHERE read_at IS NULL
                DO UPDATE SET content = EXCLUDED.content,
                              booking_id = EXCLUDED.booking_id,
                              created_at = NOW()
                RETURNING {_NOTIFICATION_COLUMNS}
                """,
                user_id,
                type.value,
                title,
                content,
                booking_id,
            )
        return self._row_to_notification(row)

    async def list_unread(self, user_id: str, limit: int = 50) -> list[Notification]:
        rows = await self._db.fetch(
            f"""
            SELECT {_NOTIFICATION_COLUMNS}
            FROM notifications
            WHERE user_id = $1 AND read_at IS NULL
            ORDER BY created_at DESC
            LIMIT $2
            """,
            user_id,
            limit,
        )
        return [self._row_to_notification(r) for r in rows]

    async def mark_read(self, user_id: str, notification_id: str) -> Optional[Notification]:
        row = await self._db.fetchrow(
            f"""
            UPDATE notifications
            SET read_at = COALESCE(read_at, NOW())
            WHERE id = $1 AND user_id = $2
            RETURNING {_NOTIFICATION_COLUMNS}
            """,
            notification_id,
            user_id,
        )
        return self._row_to_notification(row) if row else None

    @staticmethod
    def _row_to_notification(row: Record) -> Notification:
        return Notification(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            type=row["type"],
            title=row["title"],
            content=row["content"],
            booking_id=str(row["booking_id"]) if row["booking_id"] else None,
            read_at=row["read_at"],
            created_at=row["created_at"],
        )
