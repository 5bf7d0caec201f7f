# sendbox/core/capacity/repository.py
"""
Репозиторий объявлений.
"""

from __future__ import annotations

from typing import Any, Optional

from asyncpg import Record

from sendbox.common.constants import AnnouncementStatus
from sendbox.core.capacity.models import Announcement
from sendbox.infra.database import DatabaseManager

_ANNOUNCEMENT_COLUMNS = """
    id, traveler_id, departure_country, departure_city, arrival_country, arrival_city,
    departure_date, max_weight_kg, price_per_kg_cents, currency, status, created_at
"""


class AnnouncementRepository:
    """Репозиторий объявлений."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get_by_id(self, announcement_id: str, conn: Any = None) -> Optional[Announcement]:
        executor = conn or self._db
        row = await executor.fetchrow(
            f"SELECT {_ANNOUNCEMENT_COLUMNS} FROM announcements WHERE id = $1",
            announcement_id,
        )
        return self._row_to_announcement(row) if row else None

    async def lock_for_update(self, announcement_id: str, conn: Any) -> Optional[Announcement]:
        """
        Читает объявление с блокировкой строки до конца транзакции.
        Все изменения веса объявления сериализуются через эту блокировку.
        """
        row = await conn.fetchrow(
            f"SELECT {_ANNOUNCEMENT_COLUMNS} FROM announcements WHERE id = $1 FOR UPDATE",
            announcement_id,
        )
        return self._row_to_announcement(row) if row else None

    async def set_status(
        self,
        announcement_id: str,
        status: AnnouncementStatus,
        from_statuses: tuple[AnnouncementStatus, ...],
        conn: Any = None,
    ) -> bool:
        executor = conn or self._db
        result = await executor.execute(
            """
            UPDATE announcements
            SET status = $2, updated_at = NOW()
            WHERE id = $1 AND status = ANY($3::text[])
            """,
            announcement_id,
            status.value,
            [s.value for s in from_statuses],
        )
        return result == "UPDATE 1"

    @staticmethod
    def _row_to_announcement(row: Record) -> Announcement:
        return Announcement(
            id=str(row["id"]),
            traveler_id=str(row["traveler_id"]),
            departure_country=row["departure_country"],
            departure_city=row["departure_city"],
            arrival_country=row["arrival_country"],
            arrival_city=row["arrival_city"],
            departure_date=row["departure_date"],
            max_weight_kg=row["max_weight_kg"],
            price_per_kg_cents=row["price_per_kg_cents"],
            currency=row["currency"],
            status=row["status"],
            created_at=row["created_at"],
        )
