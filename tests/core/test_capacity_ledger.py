# tests/core/test_capacity_ledger.py
"""
Тесты учёта веса объявлений.
Резерв выводится суммой бронирований в удерживающих статусах
под блокировкой объявления.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from types import SimpleNamespace

import pytest

from sendbox.common.constants import AnnouncementStatus, BookingStatus
from sendbox.core.bookings.models import Booking
from sendbox.core.capacity.models import ReservationOutcome


def _booking(market: SimpleNamespace, kilos: str) -> Booking:
    return Booking(
        announcement_id=market.announcement.id,
        sender_id=market.sender.id,
        traveler_id=market.traveler.id,
        kilos_requested=Decimal(kilos),
        package_description="Livres et vêtements",
        price_per_kg_cents=1000,
        transport_cents=int(Decimal(kilos) * 1000),
        commission_cents=0,
        total_cents=int(Decimal(kilos) * 1000),
    )


class TestReserve:
    """Резервирование веса."""

    @pytest.mark.asyncio
    async def test_reserve_within_capacity(self, market: SimpleNamespace) -> None:
        result = await market.ledger.reserve(_booking(market, "4"))

        assert result.ok
        assert result.remaining_kg == Decimal("6")
        assert result.booking.id in market.bookings.items
        assert await market.ledger.remaining_kg(market.announcement.id) == Decimal("6")

    @pytest.mark.asyncio
    async def test_exact_remaining_capacity_allowed(self, market: SimpleNamespace) -> None:
        """Бронирование ровно на оставшийся вес проходит."""
        await market.ledger.reserve(_booking(market, "6"))

        result = await market.ledger.reserve(_booking(market, "4"))

        assert result.ok
        assert result.remaining_kg == Decimal("0")

    @pytest.mark.asyncio
    async def test_over_capacity_rejected(self, market: SimpleNamespace) -> None:
        await market.ledger.reserve(_booking(market, "8"))

        result = await market.ledger.reserve(_booking(market, "2.5"))

        assert result.outcome == ReservationOutcome.INSUFFICIENT_CAPACITY
        assert result.remaining_kg == Decimal("2")
        assert len(market.bookings.items) == 1

    @pytest.mark.asyncio
    async def test_not_bookable_announcement(self, market: SimpleNamespace) -> None:
        market.announcements.items[market.announcement.id] = market.announcement.model_copy(
            update={"status": AnnouncementStatus.COMPLETED}
        )

        result = await market.ledger.reserve(_booking(market, "1"))

        assert result.outcome == ReservationOutcome.ANNOUNCEMENT_NOT_BOOKABLE
        assert market.bookings.items == {}

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_overbook(self, market: SimpleNamespace) -> None:
        """Две брони по 6 кг на 10 кг: ровно одна проходит."""
        results = await asyncio.gather(
            market.ledger.reserve(_booking(market, "6")),
            market.ledger.reserve(_booking(market, "6")),
        )

        assert sorted(r.ok for r in results) == [False, True]
        assert await market.ledger.reserved_kg(market.announcement.id) == Decimal("6")

    @pytest.mark.asyncio
    async def test_many_concurrent_small_reservations(self, market: SimpleNamespace) -> None:
        results = await asyncio.gather(*(market.ledger.reserve(_booking(market, "1.5")) for _ in range(10)))

        assert sum(1 for r in results if r.ok) == 6
        assert await market.ledger.reserved_kg(market.announcement.id) <= market.announcement.max_weight_kg

    @pytest.mark.asyncio
    async def test_pending_limit_checked_in_transaction(self, market: SimpleNamespace) -> None:
        results = await asyncio.gather(*(market.ledger.reserve(_booking(market, "1"), max_pending=3) for _ in range(5)))

        outcomes = [r.outcome for r in results]
        assert outcomes.count(ReservationOutcome.OK) == 3
        assert outcomes.count(ReservationOutcome.PENDING_LIMIT_REACHED) == 2
        assert len(market.bookings.items) == 3

    @pytest.mark.asyncio
    async def test_announcement_becomes_partially_booked(self, market: SimpleNamespace) -> None:
        await market.ledger.reserve(_booking(market, "1"))

        assert market.announcements.items[market.announcement.id].status == AnnouncementStatus.PARTIALLY_BOOKED


class TestRelease:
    """Освобождение веса."""

    @pytest.mark.asyncio
    async def test_release_restores_capacity(self, market: SimpleNamespace) -> None:
        reserved = await market.ledger.reserve(_booking(market, "10"))

        result = await market.ledger.release(reserved.booking, reason="cancelled_by_sender")

        assert result.released
        assert result.booking.status == BookingStatus.CANCELLED
        assert result.booking.cancelled_reason == "cancelled_by_sender"
        assert result.booking.cancelled_at is not None
        assert await market.ledger.remaining_kg(market.announcement.id) == Decimal("10")
        assert market.announcements.items[market.announcement.id].status == AnnouncementStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, market: SimpleNamespace) -> None:
        reserved = await market.ledger.reserve(_booking(market, "3"))

        first = await market.ledger.release(reserved.booking)
        second = await market.ledger.release(reserved.booking)

        assert first.released
        assert not second.released
        assert await market.ledger.reserved_kg(market.announcement.id) == Decimal("0")

    @pytest.mark.asyncio
    async def test_release_limited_to_given_statuses(self, market: SimpleNamespace) -> None:
        """Подтверждённое бронирование не освобождается как pending."""
        reserved = await market.ledger.reserve(_booking(market, "3"))
        await market.bookings.update_if_status(
            reserved.booking.id, [BookingStatus.PENDING], status=BookingStatus.CONFIRMED,
        )

        result = await market.ledger.release(reserved.booking, [BookingStatus.PENDING])

        assert not result.released
        assert market.bookings.items[reserved.booking.id].status == BookingStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_delivered_booking_does_not_hold_weight(self, market: SimpleNamespace) -> None:
        reserved = await market.ledger.reserve(_booking(market, "7"))
        await market.bookings.update_if_status(
            reserved.booking.id, [BookingStatus.PENDING], status=BookingStatus.DELIVERED,
        )

        assert await market.ledger.remaining_kg(market.announcement.id) == Decimal("10")

    @pytest.mark.asyncio
    async def test_extra_fields_stored(self, market: SimpleNamespace) -> None:
        reserved = await market.ledger.reserve(_booking(market, "1"))

        result = await market.ledger.release(
            reserved.booking, [BookingStatus.PENDING], reason="refused_by_traveler", refused_reason="Valise pleine",
        )

        assert result.booking.refused_reason == "Valise pleine"
