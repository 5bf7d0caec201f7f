# sendbox/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class UserRole(str, Enum):
    """Роли пользователей."""
    USER = "user"
    ADMIN = "admin"


class KYCStatus(str, Enum):
    """Статусы проверки личности."""
    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    INCOMPLETE = "incomplete"


class PayoutStatus(str, Enum):
    """Статусы аккаунта для выплат."""
    INACTIVE = "inactive"
    PENDING = "pending"
    ACTIVE = "active"


class AnnouncementStatus(str, Enum):
    """Статусы объявления (поездки)."""
    DRAFT = "draft"
    ACTIVE = "active"
    PARTIALLY_BOOKED = "partially_booked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingStatus(str, Enum):
    """Статусы бронирования."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


# Статусы, в которых бронирование удерживает вес объявления
WEIGHT_HOLDING_STATUSES: tuple[BookingStatus, ...] = (
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.IN_TRANSIT,
)

# Объявление принимает новые бронирования только в этих статусах
BOOKABLE_ANNOUNCEMENT_STATUSES: tuple[AnnouncementStatus, ...] = (
    AnnouncementStatus.ACTIVE,
    AnnouncementStatus.PARTIALLY_BOOKED,
)


class PaymentStatus(str, Enum):
    """Статусы платежа (удержания средств)."""
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"


class TransferStatus(str, Enum):
    """Статусы перевода путешественнику."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REVERSED = "reversed"


class TransactionType(str, Enum):
    """Типы записей денежного журнала."""
    PAYMENT = "payment"
    REFUND = "refund"
    TRANSFER = "transfer"


class TransactionStatus(str, Enum):
    """Статусы записей денежного журнала."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


# Статусы платежа после списания: запись статуса идёт только вперёд по этому порядку
SETTLED_PAYMENT_STATUSES: tuple[PaymentStatus, ...] = (
    PaymentStatus.SUCCEEDED,
    PaymentStatus.REFUND_PENDING,
    PaymentStatus.REFUNDED,
)


def payment_statuses_after(status: str) -> list[str]:
    """Статусы, которые уже нельзя перезаписать статусом status."""
    values = [s.value for s in SETTLED_PAYMENT_STATUSES]
    if status in values:
        return values[values.index(status) + 1:]
    return values


class PaymentsMode(str, Enum):
    """Режим работы платежей."""
    STRIPE = "stripe"
    SIMULATION = "simulation"
    DISABLED = "disabled"


class ReleaseReason(str, Enum):
    """Причина перевода средств путешественнику."""
    DELIVERY_CONFIRMED = "delivery_confirmed"
    AUTO_RELEASE = "auto_release"


class NotificationType(str, Enum):
    """Типы уведомлений."""
    BOOKING_REQUEST = "booking_request"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_REFUSED = "booking_refused"
    BOOKING_CANCELLED = "booking_cancelled"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    TRANSIT_STARTED = "transit_started"
    DELIVERY_CONFIRMED = "delivery_confirmed"
    DISPUTE_OPENED = "dispute_opened"
    SYSTEM_ALERT = "system_alert"
