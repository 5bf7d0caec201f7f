# sendbox/core/capacity/__init__.py
"""
Вес объявлений: резервирование и освобождение.
"""

from sendbox.core.capacity.ledger import CapacityLedger
from sendbox.core.capacity.models import Announcement, ReleaseResult, ReservationOutcome, ReservationResult
from sendbox.core.capacity.repository import AnnouncementRepository

__all__ = [
    "Announcement",
    "AnnouncementRepository",
    "CapacityLedger",
    "ReleaseResult",
    "ReservationOutcome",
    "ReservationResult",
]
