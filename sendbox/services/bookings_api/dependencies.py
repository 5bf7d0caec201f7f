# sendbox/services/bookings_api/dependencies.py
"""
Dependency Injection для Bookings Service.
Сервисы собираются один раз при старте и общие для HTTP и воркеров.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sendbox.core.bookings.service import BookingService
    from sendbox.core.notifications.service import NotificationService
    from sendbox.core.payments.gateway import PaymentGateway
    from sendbox.core.payments.reconciler import PaymentEventReconciler
    from sendbox.core.payments.transfers import PayoutService
    from sendbox.core.profiles.service import PayoutOnboardingService
    from sendbox.infra.database import DatabaseManager
    from sendbox.infra.event_bus import EventBus
    from sendbox.infra.redis_client import RedisClient


# Синглтоны для сервисов
_booking_service: "BookingService | None" = None
_reconciler: "PaymentEventReconciler | None" = None
_payout_service: "PayoutService | None" = None
_onboarding_service: "PayoutOnboardingService | None" = None
_notification_service: "NotificationService | None" = None


async def init_dependencies(
    db: "DatabaseManager",
    redis: "RedisClient",
    event_bus: "EventBus",
    gateway: "PaymentGateway | None",
) -> None:
    """Собирает сервисы при старте приложения или воркера."""
    global _booking_service, _reconciler, _payout_service, _onboarding_service, _notification_service

    from sendbox.config import settings
    from sendbox.core.bookings.repository import BookingRepository
    from sendbox.core.bookings.service import BookingService
    from sendbox.core.capacity.ledger import CapacityLedger
    from sendbox.core.capacity.repository import AnnouncementRepository
    from sendbox.core.eligibility.gate import get_eligibility_gate
    from sendbox.core.notifications.repository import NotificationRepository
    from sendbox.core.notifications.service import NotificationService
    from sendbox.core.payments.reconciler import PaymentEventReconciler
    from sendbox.core.payments.repository import PaymentRepository
    from sendbox.core.payments.transfers import PayoutService
    from sendbox.core.pricing.engine import get_pricing_engine
    from sendbox.core.profiles.repository import ProfileRepository
    from sendbox.core.profiles.service import PayoutOnboardingService

    bookings = BookingRepository(db)
    announcements = AnnouncementRepository(db)
    profiles = ProfileRepository(db)
    payments = PaymentRepository(db)
    ledger = CapacityLedger(db, announcements, bookings)
    gate = get_eligibility_gate()

    _payout_service = PayoutService(
        bookings=bookings,
        payments=payments,
        profiles=profiles,
        gateway=gateway,
        gate=gate,
        event_bus=event_bus,
    )
    _reconciler = PaymentEventReconciler(
        bookings=bookings,
        payments=payments,
        profiles=profiles,
        ledger=ledger,
        gateway=gateway,
        redis=redis,
        event_bus=event_bus,
        dedup_ttl=settings.redis_ttl.WEBHOOK_EVENT_TTL,
    )
    _booking_service = BookingService(
        bookings=bookings,
        announcements=announcements,
        profiles=profiles,
        payments=payments,
        ledger=ledger,
        pricing=get_pricing_engine(),
        gate=gate,
        gateway=gateway,
        payouts=_payout_service,
        event_bus=event_bus,
        limits=settings.bookings,
        reconciler=_reconciler,
    )
    _onboarding_service = PayoutOnboardingService(
        profiles=profiles,
        gateway=gateway,
        gate=gate,
        event_bus=event_bus,
        countries=settings.payments.CONNECT_COUNTRIES,
        default_country=settings.payments.CONNECT_DEFAULT_COUNTRY,
    )
    _notification_service = NotificationService(
        NotificationRepository(db),
        language=settings.system.DEFAULT_LANGUAGE,
    )


def get_booking_service() -> "BookingService":
    """Получить сервис бронирований."""
    if _booking_service is None:
        raise RuntimeError("BookingService не инициализирован. Вызовите init_dependencies()")
    return _booking_service


def get_reconciler() -> "PaymentEventReconciler":
    """Получить сверщик событий провайдера."""
    if _reconciler is None:
        raise RuntimeError("PaymentEventReconciler не инициализирован. Вызовите init_dependencies()")
    return _reconciler


def get_payout_service() -> "PayoutService":
    """Получить сервис выплат."""
    if _payout_service is None:
        raise RuntimeError("PayoutService не инициализирован. Вызовите init_dependencies()")
    return _payout_service


def get_onboarding_service() -> "PayoutOnboardingService":
    """Получить сервис подключения выплат."""
    if _onboarding_service is None:
        raise RuntimeError("PayoutOnboardingService не инициализирован. Вызовите init_dependencies()")
    return _onboarding_service


def get_notification_service() -> "NotificationService":
    """Получить сервис уведомлений."""
    if _notification_service is None:
        raise RuntimeError("NotificationService не инициализирован. Вызовите init_dependencies()")
    return _notification_service


async def cleanup_dependencies() -> None:
    """Очистить ресурсы при остановке приложения."""
    global _booking_service, _reconciler, _payout_service, _onboarding_service, _notification_service
    _booking_service = None
    _reconciler = None
    _payout_service = None
    _onboarding_service = None
    _notification_service = None
