# sendbox/core/capacity/models.py
"""
Модели объявления и результатов операций над весом.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

from sendbox.common.constants import BOOKABLE_ANNOUNCEMENT_STATUSES, AnnouncementStatus

if TYPE_CHECKING:
    from sendbox.core.bookings.models import Booking


class Announcement(BaseModel):
    """Поездка путешественника со свободным местом в багаже."""

    id: str = Field(..., description="UUID объявления")
    traveler_id: str = Field(..., description="UUID путешественника")
    departure_country: str = Field(..., description="Страна отправления")
    departure_city: str = Field(..., description="Город отправления")
    arrival_country: str = Field(..., description="Страна прибытия")
    arrival_city: str = Field(..., description="Город прибытия")
    departure_date: date = Field(..., description="Дата вылета")
    max_weight_kg: Decimal = Field(..., gt=0, description="Общая вместимость, кг")
    price_per_kg_cents: int = Field(..., ge=0, description="Цена за кг в центах")
    currency: str = Field("eur", description="Валюта")
    status: AnnouncementStatus = Field(AnnouncementStatus.ACTIVE, description="Статус")
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def is_bookable(self) -> bool:
        return self.status in BOOKABLE_ANNOUNCEMENT_STATUSES


class ReservationOutcome(str, Enum):
    OK = "ok"
    INSUFFICIENT_CAPACITY = "insufficient_capacity"
    ANNOUNCEMENT_NOT_BOOKABLE = "announcement_not_bookable"
    PENDING_LIMIT_REACHED = "pending_limit_reached"


@dataclass
class ReservationResult:
    """Результат резервирования веса."""
    outcome: ReservationOutcome
    booking: Optional["Booking"] = None
    remaining_kg: Decimal = Decimal(0)

    @property
    def ok(self) -> bool:
        return self.outcome == ReservationOutcome.OK


@dataclass
class ReleaseResult:
    """
    Результат освобождения веса.
    released=False означает, что бронирование уже не удерживало вес.
    """
    released: bool
    booking: Optional["Booking"] = None
