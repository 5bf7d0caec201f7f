# sendbox/core/bookings/models.py
"""
Модели бронирования.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from sendbox.common.constants import WEIGHT_HOLDING_STATUSES, BookingStatus
from sendbox.config import settings
from sendbox.core.pricing.engine import PriceBreakdown


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Booking(BaseModel):
    """Бронирование части веса объявления под посылку."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="UUID бронирования")
    announcement_id: str = Field(..., description="UUID объявления")
    sender_id: str = Field(..., description="UUID отправителя")
    traveler_id: str = Field(..., description="UUID путешественника")

    # Посылка
    kilos_requested: Decimal = Field(..., gt=0, description="Запрошенный вес, кг")
    package_description: str = Field(..., description="Описание содержимого")
    package_value_cents: int = Field(0, ge=0, description="Объявленная стоимость, центы")
    insurance_opted: bool = Field(False, description="Подключена страховка")

    # Цена, зафиксированная при создании
    price_per_kg_cents: int = Field(..., ge=0)
    transport_cents: int = Field(..., ge=0)
    commission_cents: int = Field(..., ge=0)
    insurance_premium_cents: int = Field(0, ge=0)
    insurance_coverage_cents: int = Field(0, ge=0)
    total_cents: int = Field(..., ge=0)
    currency: str = Field("eur")

    status: BookingStatus = Field(BookingStatus.PENDING, description="Статус")
    payment_intent_id: Optional[str] = Field(None, description="Удержание у платёжного провайдера")
    payout_id: Optional[str] = Field(None, description="Перевод путешественнику")

    # Временные метки
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    in_transit_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    delivery_confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    dispute_opened_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    payout_at: Optional[datetime] = None

    cancelled_reason: Optional[str] = None
    refused_reason: Optional[str] = None
    disputed_reason: Optional[str] = None

    class Config:
        from_attributes = True

    @classmethod
    def from_pricing(
        cls,
        *,
        announcement_id: str,
        sender_id: str,
        traveler_id: str,
        kilos_requested: Decimal,
        package_description: str,
        package_value_cents: int,
        insurance_opted: bool,
        price: PriceBreakdown,
    ) -> Booking:
        return cls(
            announcement_id=announcement_id,
            sender_id=sender_id,
            traveler_id=traveler_id,
            kilos_requested=kilos_requested,
            package_description=package_description,
            package_value_cents=package_value_cents,
            insurance_opted=insurance_opted,
            price_per_kg_cents=price.price_per_kg,
            transport_cents=price.transport,
            commission_cents=price.commission,
            insurance_premium_cents=price.insurance_premium,
            insurance_coverage_cents=price.insurance_coverage,
            total_cents=price.total,
            currency=price.currency,
        )

    @property
    def holds_weight(self) -> bool:
        return self.status in WEIGHT_HOLDING_STATUSES

    @property
    def is_paid(self) -> bool:
        return self.paid_at is not None or self.status in (
            BookingStatus.CONFIRMED,
            BookingStatus.IN_TRANSIT,
            BookingStatus.DELIVERED,
            BookingStatus.COMPLETED,
            BookingStatus.DISPUTED,
        )

    @property
    def platform_fee_cents(self) -> int:
        """Комиссия плюс страховой взнос остаются платформе."""
        return self.commission_cents + self.insurance_premium_cents

    @property
    def traveler_amount_cents(self) -> int:
        return self.total_cents - self.platform_fee_cents

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.sender_id, self.traveler_id)


class BookingCreateDTO(BaseModel):
    """Запрос отправителя на бронирование."""

    announcement_id: str
    kilos_requested: Decimal = Field(
        ...,
        ge=settings.bookings.MIN_KILOS,
        le=settings.bookings.MAX_KILOS,
    )
    package_description: str = Field(
        ...,
        min_length=settings.bookings.DESCRIPTION_MIN_LENGTH,
        max_length=settings.bookings.DESCRIPTION_MAX_LENGTH,
    )
    package_value: Decimal = Field(
        Decimal(0),
        ge=0,
        le=settings.bookings.MAX_PACKAGE_VALUE,
        description="Объявленная стоимость в единицах валюты",
    )
    insurance_opted: bool = False

    @field_validator("announcement_id")
    @classmethod
    def check_announcement_id(cls, v: str) -> str:
        return str(UUID(v))

    @field_validator("package_description", mode="before")
    @classmethod
    def strip_description(cls, v: object) -> object:
        return v.strip() if isinstance(v, str) else v

    @property
    def package_value_cents(self) -> int:
        return int((self.package_value * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


class ReasonDTO(BaseModel):
    """Причина отказа, отмены или спора."""
    reason: Optional[str] = Field(None, max_length=1000)

    @field_validator("reason", mode="before")
    @classmethod
    def strip_reason(cls, v: object) -> object:
        return v.strip() if isinstance(v, str) else v
