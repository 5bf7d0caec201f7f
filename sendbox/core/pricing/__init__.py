# sendbox/core/pricing/__init__.py
"""
Расчёт стоимости бронирования.
"""

from sendbox.core.pricing.engine import PriceBreakdown, PricingEngine, get_pricing_engine

__all__ = [
    "PriceBreakdown",
    "PricingEngine",
    "get_pricing_engine",
]
