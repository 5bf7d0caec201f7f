# sendbox/core/capacity/ledger.py
"""
Учёт веса объявлений.

Зарезервированный вес не хранится счётчиком: он каждый раз выводится
суммой kilos_requested по бронированиям в удерживающих статусах,
под блокировкой строки объявления. Две конкурентные брони последних
килограммов не могут пройти обе. Лимит ожидающих бронирований
отправителя считается в той же транзакции под его advisory-блокировкой.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable

from sendbox.common.constants import (
    WEIGHT_HOLDING_STATUSES,
    AnnouncementStatus,
    BookingStatus,
    TypeMsg,
)
from sendbox.common.logger import log_info, log_warning
from sendbox.core.bookings.models import Booking
from sendbox.core.bookings.repository import BookingRepository
from sendbox.core.capacity.models import ReleaseResult, ReservationOutcome, ReservationResult
from sendbox.core.capacity.repository import AnnouncementRepository
from sendbox.infra.database import DatabaseManager


class CapacityLedger:
    """Резервирование и освобождение веса объявления."""

    def __init__(
        self,
        db: DatabaseManager,
        announcements: AnnouncementRepository,
        bookings: BookingRepository,
    ) -> None:
        """
        Args:
            db: Менеджер базы данных (транзакции)
            announcements: Репозиторий объявлений
            bookings: Репозиторий бронирований
        """
        self._db = db
        self._announcements = announcements
        self._bookings = bookings

    async def reserved_kg(self, announcement_id: str) -> Decimal:
        return await self._bookings.sum_reserved_kg(announcement_id)

    async def remaining_kg(self, announcement_id: str) -> Decimal:
        announcement = await self._announcements.get_by_id(announcement_id)
        if announcement is None:
            return Decimal(0)
        reserved = await self._bookings.sum_reserved_kg(announcement_id)
        return max(announcement.max_weight_kg - reserved, Decimal(0))

    async def reserve(self, booking: Booking, max_pending: int | None = None) -> ReservationResult:
        """
        Проверяет свободный вес и вставляет бронирование одной транзакцией.

        Args:
            booking: Новое бронирование
            max_pending: Лимит ожидающих бронирований отправителя; считается
                под блокировкой отправителя, которая берётся раньше блокировки объявления

        Returns:
            ReservationResult с outcome ok / insufficient_capacity /
            announcement_not_bookable / pending_limit_reached
        """
        async with self._db.transaction() as conn:
            if max_pending is not None:
                await self._bookings.lock_sender(booking.sender_id, conn)
                if await self._bookings.count_pending_by_sender(booking.sender_id, conn) >= max_pending:
                    return ReservationResult(ReservationOutcome.PENDING_LIMIT_REACHED)

            announcement = await self._announcements.lock_for_update(booking.announcement_id, conn)
            if announcement is None or not announcement.is_bookable:
                return ReservationResult(ReservationOutcome.ANNOUNCEMENT_NOT_BOOKABLE)

            reserved = await self._bookings.sum_reserved_kg(announcement.id, conn)
            remaining = announcement.max_weight_kg - reserved

            if booking.kilos_requested > remaining:
                return ReservationResult(
                    ReservationOutcome.INSUFFICIENT_CAPACITY,
                    remaining_kg=max(remaining, Decimal(0)),
                )

            created = await self._bookings.insert(booking, conn)

        await log_info(
            f"Зарезервировано {booking.kilos_requested} кг в объявлении {announcement.id}",
            type_msg=TypeMsg.DEBUG,
            extra={"booking_id": created.id, "announcement_id": announcement.id},
        )
        await self._refresh_announcement_status(announcement.id)

        return ReservationResult(
            ReservationOutcome.OK,
            booking=created,
            remaining_kg=remaining - booking.kilos_requested,
        )

    async def release(
        self,
        booking: Booking,
        from_statuses: Iterable[BookingStatus] = WEIGHT_HOLDING_STATUSES,
        reason: str | None = None,
        **fields: object,
    ) -> ReleaseResult:
        """
        Переводит бронирование в cancelled и возвращает вес объявлению.

        Идемпотентна: если бронирование уже не в from_statuses,
        возвращает released=False без ошибки.

        Args:
            booking: Бронирование
            from_statuses: Допустимые исходные статусы (подмножество удерживающих)
            reason: Причина отмены
            **fields: Дополнительные поля (например, refused_reason)
        """
        allowed = [s for s in from_statuses if s in WEIGHT_HOLDING_STATUSES]

        async with self._db.transaction() as conn:
            await self._announcements.lock_for_update(booking.announcement_id, conn)
            updated = await self._bookings.update_if_status(
                booking.id,
                allowed,
                status=BookingStatus.CANCELLED,
                conn=conn,
                cancelled_at=datetime.now(timezone.utc),
                cancelled_reason=reason,
                **fields,
            )

        if updated is None:
            await log_info(
                f"Бронирование {booking.id} уже не удерживает вес",
                type_msg=TypeMsg.DEBUG,
                extra={"booking_id": booking.id},
            )
            return ReleaseResult(released=False)

        await log_info(
            f"Освобождено {booking.kilos_requested} кг в объявлении {booking.announcement_id}",
            type_msg=TypeMsg.DEBUG,
            extra={"booking_id": booking.id, "reason": reason},
        )
        await self._refresh_announcement_status(booking.announcement_id)
        return ReleaseResult(released=True, booking=updated)

    async def _refresh_announcement_status(self, announcement_id: str) -> None:
        """Переключает active <-> partially_booked. Сбой только логируется."""
        try:
            reserved = await self._bookings.sum_reserved_kg(announcement_id)
            if reserved > 0:
                target, source = AnnouncementStatus.PARTIALLY_BOOKED, (AnnouncementStatus.ACTIVE,)
            else:
                target, source = AnnouncementStatus.ACTIVE, (AnnouncementStatus.PARTIALLY_BOOKED,)
            await self._announcements.set_status(announcement_id, target, source)
        except Exception as e:
            await log_warning(
                f"Не удалось обновить статус объявления {announcement_id}: {e}",
                extra={"announcement_id": announcement_id},
            )
