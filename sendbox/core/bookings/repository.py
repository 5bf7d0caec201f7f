# sendbox/core/bookings/repository.py
"""
Репозиторий бронирований.

Все изменения статуса условные: UPDATE ... WHERE status = ANY(...).
Конкурирующие вебхуки и действия пользователей сходятся на одном
исходе, потому что проигравшая сторона просто не находит строку.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from asyncpg import Record

from sendbox.common.constants import WEIGHT_HOLDING_STATUSES, BookingStatus
from sendbox.core.bookings.models import Booking
from sendbox.infra.database import DatabaseManager

_BOOKING_COLUMNS = """
    id, announcement_id, sender_id, traveler_id,
    kilos_requested, package_description, package_value_cents, insurance_opted,
    price_per_kg_cents, transport_cents, commission_cents, insurance_premium_cents,
    insurance_coverage_cents, total_cents, currency,
    status, payment_intent_id, payout_id,
    created_at, updated_at, accepted_at, paid_at, in_transit_at, delivered_at,
    delivery_confirmed_at, cancelled_at, dispute_opened_at, refunded_at, payout_at,
    cancelled_reason, refused_reason, disputed_reason
"""

# Поля, которые можно менять вместе со статусом
_UPDATABLE_FIELDS = frozenset({
    "payment_intent_id",
    "payout_id",
    "accepted_at",
    "paid_at",
    "in_transit_at",
    "delivered_at",
    "delivery_confirmed_at",
    "cancelled_at",
    "dispute_opened_at",
    "refunded_at",
    "payout_at",
    "cancelled_reason",
    "refused_reason",
    "disputed_reason",
})


def _status_values(statuses: Iterable[BookingStatus]) -> list[str]:
    return [BookingStatus(s).value for s in statuses]


class BookingRepository:
    """Репозиторий бронирований."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных. Методы принимают conn, чтобы
                работать внутри транзакции вызывающего кода.
        """
        self._db = db

    # ===== ЧТЕНИЕ =====

    async def get_by_id(self, booking_id: str, conn: Any = None) -> Optional[Booking]:
        executor = conn or self._db
        row = await executor.fetchrow(
            f"SELECT {_BOOKING_COLUMNS} FROM bookings WHERE id = $1",
            booking_id,
        )
        return self._row_to_booking(row) if row else None

    async def get_by_payment_intent(self, payment_intent_id: str) -> Optional[Booking]:
        row = await self._db.fetchrow(
            f"SELECT {_BOOKING_COLUMNS} FROM bookings WHERE payment_intent_id = $1",
            payment_intent_id,
        )
        return self._row_to_booking(row) if row else None

    async def sum_reserved_kg(self, announcement_id: str, conn: Any = None) -> Decimal:
        """Вес, удерживаемый бронированиями в статусах pending/confirmed/in_transit."""
        executor = conn or self._db
        value = await executor.fetchval(
            """
            SELECT COALESCE(SUM(kilos_requested), 0)
            FROM bookings
            WHERE announcement_id = $1 AND status = ANY($2::text[])
            """,
            announcement_id,
            _status_values(WEIGHT_HOLDING_STATUSES),
        )
        return Decimal(value or 0)

    async def lock_sender(self, sender_id: str, conn: Any) -> None:
        """Блокировка отправителя до конца транзакции: его брони создаются по одной."""
        await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", f"booking_sender:{sender_id}")

    async def count_pending_by_sender(self, sender_id: str, conn: Any = None) -> int:
        executor = conn or self._db
        value = await executor.fetchval(
            "SELECT COUNT(*) FROM bookings WHERE sender_id = $1 AND status = $2",
            sender_id,
            BookingStatus.PENDING.value,
        )
        return int(value or 0)

    async def list_ready_for_auto_release(self, delivered_before: datetime, limit: int) -> list[Booking]:
        """Доставленные без спора и без подтверждения отправителя."""
        rows = await self._db.fetch(
            f"""
            SELECT {_BOOKING_COLUMNS} FROM bookings
            WHERE status = $1 AND delivered_at <= $2 AND dispute_opened_at IS NULL
            ORDER BY delivered_at
            LIMIT $3
            """,
            BookingStatus.DELIVERED.value,
            delivered_before,
            limit,
        )
        return [self._row_to_booking(r) for r in rows]

    async def list_awaiting_payout(self, limit: int, traveler_id: str | None = None) -> list[Booking]:
        """Завершённые бронирования, по которым ещё нет перевода."""
        rows = await self._db.fetch(
            f"""
            SELECT {_BOOKING_COLUMNS} FROM bookings
            WHERE status = $1 AND payout_at IS NULL
              AND ($3::uuid IS NULL OR traveler_id = $3::uuid)
            ORDER BY delivery_confirmed_at NULLS LAST
            LIMIT $2
            """,
            BookingStatus.COMPLETED.value,
            limit,
            traveler_id,
        )
        return [self._row_to_booking(r) for r in rows]

    async def list_stale_pending(self, created_before: datetime, limit: int) -> list[Booking]:
        """Ожидающие оплаты дольше допустимого."""
        rows = await self._db.fetch(
            f"""
            SELECT {_BOOKING_COLUMNS} FROM bookings
            WHERE status = $1 AND paid_at IS NULL AND created_at <= $2
            ORDER BY created_at
            LIMIT $3
            """,
            BookingStatus.PENDING.value,
            created_before,
            limit,
        )
        return [self._row_to_booking(r) for r in rows]

    # ===== ЗАПИСЬ =====

    async def insert(self, booking: Booking, conn: Any = None) -> Booking:
        executor = conn or self._db
        row = await executor.fetchrow(
            f"""
            INSERT INTO bookings (
                id, announcement_id, sender_id, traveler_id,
                kilos_requested, package_description, package_value_cents, insurance_opted,
                price_per_kg_cents, transport_cents, commission_cents, insurance_premium_cents,
                insurance_coverage_cents, total_cents, currency, status, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
            RETURNING {_BOOKING_COLUMNS}
            """,
            booking.id,
            booking.announcement_id,
            booking.sender_id,
            booking.traveler_id,
            booking.kilos_requested,
            booking.package_description,
            booking.package_value_cents,
            booking.insurance_opted,
            booking.price_per_kg_cents,
            booking.transport_cents,
            booking.commission_cents,
            booking.insurance_premium_cents,
            booking.insurance_coverage_cents,
            booking.total_cents,
            booking.currency,
            booking.status.value,
            booking.created_at,
        )
        return self._row_to_booking(row)

    async def update_if_status(
        self,
        booking_id: str,
        allowed_statuses: Iterable[BookingStatus],
        *,
        status: BookingStatus | None = None,
        conn: Any = None,
        **fields: Any,
    ) -> Optional[Booking]:
        """
        Обновляет бронирование, только если его статус входит в allowed_statuses.

        Returns:
            Обновлённое бронирование или None, если статус уже другой

        Raises:
            ValueError: Поле вне белого списка
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Недопустимые поля бронирования: {sorted(unknown)}")

        assignments = ["updated_at = NOW()"]
        params: list[Any] = [booking_id, _status_values(allowed_statuses)]

        if status is not None:
            params.append(BookingStatus(status).value)
            assignments.append(f"status = ${len(params)}")

        for name, value in fields.items():
            params.append(value)
            assignments.append(f"{name} = ${len(params)}")

        executor = conn or self._db
        row = await executor.fetchrow(
            f"""
            UPDATE bookings
            SET {", ".join(assignments)}
            WHERE id = $1 AND status = ANY($2::text[])
            RETURNING {_BOOKING_COLUMNS}
            """,
            *params,
        )
        return self._row_to_booking(row) if row else None

    async def delete(self, booking_id: str) -> bool:
        """Удаляет только отменённое бронирование."""
        result = await self._db.execute(
            "DELETE FROM bookings WHERE id = $1 AND status = $2",
            booking_id,
            BookingStatus.CANCELLED.value,
        )
        return result == "DELETE 1"

    @staticmethod
    def _row_to_booking(row: Record) -> Booking:
        data = dict(row)
        for key in ("id", "announcement_id", "sender_id", "traveler_id"):
            data[key] = str(data[key])
        return Booking(**data)
