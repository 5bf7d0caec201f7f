# sendbox/core/pricing/engine.py
"""
Движок тарификации.

Все суммы в минимальных единицах валюты (центах), арифметика на Decimal.
Каждая составляющая округляется до цента по правилу half-up,
итог равен сумме уже округлённых составляющих.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache

from sendbox.common.errors import ValidationError

CENTS_PER_UNIT = Decimal(100)


def _to_cents(amount: Decimal) -> int:
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class PriceBreakdown:
    """Замороженные условия цены бронирования."""
    price_per_kg: int
    transport: int
    commission: int
    insurance_premium: int
    insurance_coverage: int
    total: int
    currency: str

    @property
    def platform_fee(self) -> int:
        """Доля платформы: комиссия плюс страховой взнос."""
        return self.commission + self.insurance_premium

    @property
    def traveler_amount(self) -> int:
        """Сумма перевода путешественнику после подтверждения доставки."""
        return self.total - self.platform_fee

    def to_dict(self) -> dict[str, int | str]:
        return asdict(self)


class PricingEngine:
    """
    Чистый расчёт цены без обращения к хранилищу.

    Args:
        commission_rate: Доля комиссии платформы от стоимости перевозки
        insurance_rate: Доля страхового взноса от объявленной стоимости
        insurance_base_fee: Фиксированная часть взноса (в единицах валюты)
        max_insurance_coverage: Потолок страхового покрытия (в единицах валюты)
        currency: Код валюты
    """

    def __init__(
        self,
        commission_rate: Decimal,
        insurance_rate: Decimal,
        insurance_base_fee: Decimal,
        max_insurance_coverage: Decimal,
        currency: str = "eur",
    ) -> None:
        self._commission_rate = Decimal(commission_rate)
        self._insurance_rate = Decimal(insurance_rate)
        self._insurance_base_fee_cents = _to_cents(Decimal(insurance_base_fee) * CENTS_PER_UNIT)
        self._max_coverage_cents = _to_cents(Decimal(max_insurance_coverage) * CENTS_PER_UNIT)
        self._currency = currency

    def price(
        self,
        weight_kg: Decimal | float | str,
        price_per_kg: int,
        declared_value: int,
        insurance_opted: bool,
    ) -> PriceBreakdown:
        """
        Рассчитывает стоимость бронирования.

        Args:
            weight_kg: Запрошенный вес
            price_per_kg: Цена за кг в центах
            declared_value: Объявленная стоимость посылки в центах
            insurance_opted: Подключена ли страховка

        Raises:
            ValidationError: Вес не положителен или суммы отрицательны
        """
        weight = Decimal(str(weight_kg))
        if weight <= 0:
            raise ValidationError("Вес должен быть больше нуля", field="kilos_requested")
        if price_per_kg < 0:
            raise ValidationError("Цена за кг не может быть отрицательной", field="price_per_kg")
        if declared_value < 0:
            raise ValidationError("Стоимость посылки не может быть отрицательной", field="package_value")

        transport = _to_cents(weight * Decimal(price_per_kg))
        commission = _to_cents(Decimal(transport) * self._commission_rate)

        if insurance_opted:
            insurance_premium = _to_cents(
                Decimal(declared_value) * self._insurance_rate + self._insurance_base_fee_cents
            )
            insurance_coverage = min(declared_value, self._max_coverage_cents)
        else:
            insurance_premium = 0
            insurance_coverage = 0

        return PriceBreakdown(
            price_per_kg=price_per_kg,
            transport=transport,
            commission=commission,
            insurance_premium=insurance_premium,
            insurance_coverage=insurance_coverage,
            total=transport + commission + insurance_premium,
            currency=self._currency,
        )


@lru_cache()
def get_pricing_engine() -> PricingEngine:
    """Движок с тарифами из конфигурации."""
    from sendbox.config import settings

    return PricingEngine(
        commission_rate=settings.pricing.COMMISSION_RATE,
        insurance_rate=settings.pricing.INSURANCE_RATE,
        insurance_base_fee=settings.pricing.INSURANCE_BASE_FEE,
        max_insurance_coverage=settings.pricing.MAX_INSURANCE_COVERAGE,
        currency=settings.payments.CURRENCY,
    )
