# sendbox/core/bookings/state_machine.py
from __future__ import annotations

from sendbox.common.constants import BookingStatus
from sendbox.common.errors import StateError


class BookingStateMachine:
    ALLOWED_TRANSITIONS: dict[BookingStatus, list[BookingStatus]] = {
        BookingStatus.PENDING: [BookingStatus.CONFIRMED, BookingStatus.CANCELLED],
        BookingStatus.CONFIRMED: [BookingStatus.IN_TRANSIT, BookingStatus.DELIVERED, BookingStatus.CANCELLED],
        BookingStatus.IN_TRANSIT: [BookingStatus.DELIVERED, BookingStatus.DISPUTED],
        BookingStatus.DELIVERED: [BookingStatus.COMPLETED, BookingStatus.DISPUTED],
        BookingStatus.DISPUTED: [],
        BookingStatus.COMPLETED: [],
        BookingStatus.CANCELLED: [],
    }

    TERMINAL = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

    @staticmethod
    def can_transition(current_status: str, new_status: str) -> bool:
        try:
            curr = BookingStatus(current_status)
            new = BookingStatus(new_status)
            return new in BookingStateMachine.ALLOWED_TRANSITIONS.get(curr, [])
        except ValueError:
            return False

    @staticmethod
    def sources_of(new_status: BookingStatus) -> list[BookingStatus]:
        """Статусы, из которых допустим переход в new_status."""
        return [
            source
            for source, targets in BookingStateMachine.ALLOWED_TRANSITIONS.items()
            if new_status in targets
        ]

    @staticmethod
    def ensure(current_status: str, new_status: BookingStatus) -> None:
        if not BookingStateMachine.can_transition(current_status, new_status):
            current = getattr(current_status, "value", current_status)
            raise StateError(
                f"Переход {current} -> {new_status.value} недопустим",
                field="status",
                details={"current_status": current, "target_status": new_status.value},
            )
