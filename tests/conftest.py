# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.

Репозитории подменяются фейками в памяти с теми же сигнатурами,
что и у asyncpg-реализаций. Блокировка строки объявления
моделируется asyncio.Lock на объявление, удерживаемым до конца транзакции.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import os
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace
from typing import Any, AsyncIterator, Iterable, Optional
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("PAYMENTS_MODE", "simulation")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
WEBHOOK_SECRET = "whsec_test_dummy"
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)

from sendbox.common.constants import (  # noqa: E402
    WEIGHT_HOLDING_STATUSES,
    AnnouncementStatus,
    BookingStatus,
    KYCStatus,
    PaymentStatus,
    PayoutStatus,
    TransactionStatus,
    TransferStatus,
    payment_statuses_after,
)
from sendbox.config.loader import BookingSettings  # noqa: E402
from sendbox.core.bookings.models import Booking  # noqa: E402
from sendbox.core.bookings.service import BookingService  # noqa: E402
from sendbox.core.capacity.ledger import CapacityLedger  # noqa: E402
from sendbox.core.capacity.models import Announcement  # noqa: E402
from sendbox.core.eligibility.gate import EligibilityGate  # noqa: E402
from sendbox.core.payments.gateway import SimulatedGateway, TransferReceipt  # noqa: E402
from sendbox.core.payments.models import Payment, Transfer  # noqa: E402
from sendbox.core.payments.reconciler import PaymentEventReconciler  # noqa: E402
from sendbox.core.payments.transfers import PayoutService  # noqa: E402
from sendbox.core.pricing.engine import PricingEngine  # noqa: E402
from sendbox.core.profiles.models import Profile  # noqa: E402


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    return project_root / "config" / "config.json"


@pytest.fixture(scope="session")
def lang_dict_path(project_root: Path) -> Path:
    return project_root / "config" / "lang_dict.json"


@pytest.fixture
def mock_lang_dict() -> dict[str, dict[str, str]]:
    """Мок словаря локализации для тестов."""
    return {
        "WELCOME": {"fr": "Bienvenue !", "en": "Welcome!"},
        "GREETING": {"fr": "Bonjour, {name} !", "en": "Hello, {name}!"},
        "ONLY_EN": {"en": "English only"},
    }


@pytest.fixture
def temp_lang_dict_file(tmp_path: Path, mock_lang_dict: dict[str, dict[str, str]]) -> Path:
    lang_file = tmp_path / "lang_dict.json"
    lang_file.write_text(json.dumps(mock_lang_dict, ensure_ascii=False, indent=2))
    return lang_file


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=None)
    event_bus.subscribe = AsyncMock(return_value=None)
    event_bus.is_connected = True
    return event_bus


# =============================================================================
# ФЕЙКИ ХРАНИЛИЩА
# =============================================================================

class FakeConnection:
    """Соединение внутри транзакции: помнит взятые блокировки."""

    def __init__(self) -> None:
        self.held: list[asyncio.Lock] = []


class FakeDatabase:
    def __init__(self) -> None:
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[FakeConnection]:
        conn = FakeConnection()
        try:
            yield conn
        finally:
            for lock in reversed(conn.held):
                lock.release()


class FakeAnnouncementRepository:
    def __init__(self, db: FakeDatabase) -> None:
        self._db = db
        self.items: dict[str, Announcement] = {}

    async def get_by_id(self, announcement_id: str, conn: Any = None) -> Optional[Announcement]:
        return self.items.get(announcement_id)

    async def lock_for_update(self, announcement_id: str, conn: FakeConnection) -> Optional[Announcement]:
        lock = self._db.locks[announcement_id]
        await lock.acquire()
        conn.held.append(lock)
        return self.items.get(announcement_id)

    async def set_status(
        self,
        announcement_id: str,
        status: AnnouncementStatus,
        from_statuses: Iterable[AnnouncementStatus],
        conn: Any = None,
    ) -> bool:
        item = self.items.get(announcement_id)
        if item is None or item.status not in tuple(from_statuses):
            return False
        self.items[announcement_id] = item.model_copy(update={"status": status})
        return True


class FakeBookingRepository:
    def __init__(self, db: FakeDatabase) -> None:
        self._db = db
        self.items: dict[str, Booking] = {}

    async def get_by_id(self, booking_id: str, conn: Any = None) -> Optional[Booking]:
        return self.items.get(booking_id)

    async def get_by_payment_intent(self, payment_intent_id: str) -> Optional[Booking]:
        for booking in self.items.values():
            if booking.payment_intent_id == payment_intent_id:
                return booking
        return None

    async def sum_reserved_kg(self, announcement_id: str, conn: Any = None) -> Decimal:
        # Точка переключения задач: без блокировки гонка была бы видна
        await asyncio.sleep(0)
        return sum(
            (b.kilos_requested for b in self.items.values()
             if b.announcement_id == announcement_id and b.status in WEIGHT_HOLDING_STATUSES),
            Decimal(0),
        )

    async def lock_sender(self, sender_id: str, conn: FakeConnection) -> None:
        lock = self._db.locks[f"booking_sender:{sender_id}"]
        await lock.acquire()
        conn.held.append(lock)

    async def count_pending_by_sender(self, sender_id: str, conn: Any = None) -> int:
        await asyncio.sleep(0)
        return sum(
            1 for b in self.items.values()
            if b.sender_id == sender_id and b.status == BookingStatus.PENDING
        )

    async def list_ready_for_auto_release(self, delivered_before: datetime, limit: int) -> list[Booking]:
        return [
            b for b in self.items.values()
            if b.status == BookingStatus.DELIVERED
            and b.delivered_at is not None
            and b.delivered_at <= delivered_before
            and b.dispute_opened_at is None
        ][:limit]

    async def list_awaiting_payout(self, limit: int, traveler_id: str | None = None) -> list[Booking]:
        return [
            b for b in self.items.values()
            if b.status == BookingStatus.COMPLETED
            and b.payout_at is None
            and (traveler_id is None or b.traveler_id == traveler_id)
        ][:limit]

    async def list_stale_pending(self, created_before: datetime, limit: int) -> list[Booking]:
        return [
            b for b in self.items.values()
            if b.status == BookingStatus.PENDING and b.paid_at is None and b.created_at <= created_before
        ][:limit]

    async def insert(self, booking: Booking, conn: Any = None) -> Booking:
        await asyncio.sleep(0)
        self.items[booking.id] = booking
        return booking

    async def update_if_status(
        self,
        booking_id: str,
        allowed_statuses: Iterable[BookingStatus],
        *,
        status: BookingStatus | None = None,
        conn: Any = None,
        **fields: Any,
    ) -> Optional[Booking]:
        booking = self.items.get(booking_id)
        if booking is None or booking.status not in tuple(allowed_statuses):
            return None
        update = dict(fields)
        if status is not None:
            update["status"] = status
        update["updated_at"] = datetime.now(timezone.utc)
        updated = booking.model_copy(update=update)
        self.items[booking_id] = updated
        return updated

    async def delete(self, booking_id: str) -> bool:
        booking = self.items.get(booking_id)
        if booking is None or booking.status != BookingStatus.CANCELLED:
            return False
        del self.items[booking_id]
        return True


class FakeProfileRepository:
    def __init__(self) -> None:
        self.items: dict[str, Profile] = {}

    async def get_by_id(self, profile_id: str) -> Optional[Profile]:
        return self.items.get(profile_id)

    async def get_by_stripe_account(self, account_id: str) -> Optional[Profile]:
        return next((p for p in self.items.values() if p.stripe_account_id == account_id), None)

    async def get_by_kyc_session(self, session_id: str) -> Optional[Profile]:
        return next((p for p in self.items.values() if p.kyc_session_id == session_id), None)

    async def set_stripe_account(self, profile_id: str, account_id: str) -> bool:
        profile = self.items.get(profile_id)
        if profile is None or profile.stripe_account_id:
            return False
        self.items[profile_id] = profile.model_copy(
            update={"stripe_account_id": account_id, "payout_status": PayoutStatus.PENDING}
        )
        return True

    async def update_kyc(
        self,
        profile_id: str,
        status: KYCStatus,
        event_at: datetime,
        rejection_reason: str | None = None,
    ) -> bool:
        profile = self.items.get(profile_id)
        if profile is None or (profile.kyc_updated_at and profile.kyc_updated_at > event_at):
            return False
        self.items[profile_id] = profile.model_copy(update={
            "kyc_status": status,
            "kyc_rejection_reason": rejection_reason,
            "kyc_updated_at": event_at,
        })
        return True

    async def update_payout(
        self,
        profile_id: str,
        status: PayoutStatus,
        payouts_enabled: bool,
        requirements: dict[str, Any],
        event_at: datetime,
    ) -> bool:
        profile = self.items.get(profile_id)
        if profile is None or (profile.payout_updated_at and profile.payout_updated_at > event_at):
            return False
        self.items[profile_id] = profile.model_copy(update={
            "payout_status": status,
            "payouts_enabled": payouts_enabled,
            "payout_requirements": requirements,
            "payout_updated_at": event_at,
        })
        return True


class FakePaymentRepository:
    def __init__(self) -> None:
        self.payments: dict[str, Payment] = {}
        self.transactions: dict[tuple[str, str], dict[str, Any]] = {}
        self.transfers: list[Transfer] = []
        self.processed: set[str] = set()

    async def upsert_payment(self, payment: Payment) -> None:
        current = self.payments.get(payment.payment_intent_id)
        if current is not None and current.status in payment_statuses_after(payment.status):
            payment = payment.model_copy(update={"status": current.status})
        self.payments[payment.payment_intent_id] = payment

    async def get_latest_for_booking(self, booking_id: str) -> Optional[Payment]:
        matches = [p for p in self.payments.values() if p.booking_id == booking_id]
        return matches[-1] if matches else None

    async def update_payment_status(self, payment_intent_id: str, status: str, last_error: str | None = None) -> bool:
        payment = self.payments.get(payment_intent_id)
        if payment is None or payment.status in payment_statuses_after(status):
            return False
        self.payments[payment_intent_id] = payment.model_copy(
            update={"status": status, "last_error": last_error or payment.last_error}
        )
        return True

    async def record_transaction(self, *, provider_reference: str, type: Any, **fields: Any) -> bool:
        key = (provider_reference, type.value)
        current = self.transactions.get(key)
        if current is not None:
            old, new = current["status"], fields["status"]
            promotable = old == TransactionStatus.PENDING or (
                old == TransactionStatus.FAILED and new == TransactionStatus.SUCCEEDED
            )
            if old == new or not promotable:
                return False
        self.transactions[key] = {"provider_reference": provider_reference, "type": type, **fields}
        return True

    async def get_active_transfer(self, booking_id: str) -> Optional[Transfer]:
        active = (TransferStatus.PENDING.value, TransferStatus.PAID.value)
        return next((t for t in self.transfers if t.booking_id == booking_id and t.status in active), None)

    async def insert_transfer(self, transfer: Transfer) -> bool:
        if await self.get_active_transfer(transfer.booking_id) is not None:
            return False
        self.transfers.append(transfer)
        return True

    async def is_event_processed(self, event_id: str) -> bool:
        return event_id in self.processed

    async def mark_event_processed(self, event_id: str, event_type: str) -> None:
        self.processed.add(event_id)


class FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    async def set_nx(self, key: str, value: str, ttl: int | None = None) -> bool:
        if key in self.store:
            return False
        self.store[key] = value
        return True

    async def delete(self, key: str) -> int:
        return 1 if self.store.pop(key, None) is not None else 0


class RecordingGateway(SimulatedGateway):
    """Симуляция провайдера с журналом денежных вызовов."""

    def __init__(self) -> None:
        super().__init__(webhook_secret=WEBHOOK_SECRET)
        self.refunds: list[str] = []
        self.transfers: dict[str, TransferReceipt] = {}
        self.transfer_calls = 0

    async def refund(self, hold_id: str, idempotency_key: str, reason: str | None = None):
        self.refunds.append(idempotency_key)
        return await super().refund(hold_id, idempotency_key, reason)

    async def create_transfer(self, amount, currency, destination, idempotency_key, metadata):
        self.transfer_calls += 1
        if idempotency_key not in self.transfers:
            self.transfers[idempotency_key] = await super().create_transfer(
                amount, currency, destination, idempotency_key, metadata
            )
        return self.transfers[idempotency_key]


# =============================================================================
# СБОРКА ЯДРА
# =============================================================================

def make_profile(**overrides: Any) -> Profile:
    data: dict[str, Any] = {
        "id": str(uuid4()),
        "email": f"user-{uuid4().hex[:8]}@example.com",
        "country": "FR",
        "kyc_status": KYCStatus.APPROVED,
        "payout_status": PayoutStatus.ACTIVE,
        "payouts_enabled": True,
        "stripe_account_id": None,
    }
    data.update(overrides)
    return Profile(**data)


def make_announcement(traveler_id: str, **overrides: Any) -> Announcement:
    data: dict[str, Any] = {
        "id": str(uuid4()),
        "traveler_id": traveler_id,
        "departure_country": "FR",
        "departure_city": "Paris",
        "arrival_country": "BJ",
        "arrival_city": "Cotonou",
        "departure_date": date(2026, 12, 1),
        "max_weight_kg": Decimal("10"),
        "price_per_kg_cents": 1000,
    }
    data.update(overrides)
    return Announcement(**data)


@pytest.fixture
def booking_limits() -> BookingSettings:
    return BookingSettings()


@pytest.fixture
def pricing_engine() -> PricingEngine:
    return PricingEngine(
        commission_rate=Decimal("0.12"),
        insurance_rate=Decimal("0.015"),
        insurance_base_fee=Decimal("2.00"),
        max_insurance_coverage=Decimal("500.00"),
        currency="eur",
    )


@pytest.fixture
def market(mock_event_bus: AsyncMock, pricing_engine: PricingEngine, booking_limits: BookingSettings) -> SimpleNamespace:
    """
    Ядро на фейках: сервис бронирований, сверщик и выплаты.
    Путешественник и отправитель уже созданы, объявление на 10 кг по 10 EUR/кг.
    """
    db = FakeDatabase()
    announcements = FakeAnnouncementRepository(db)
    bookings = FakeBookingRepository(db)
    profiles = FakeProfileRepository()
    payments = FakePaymentRepository()
    redis = FakeRedis()
    gateway = RecordingGateway()
    gate = EligibilityGate(kyc_enabled=True, enforce_payouts=False)
    ledger = CapacityLedger(db, announcements, bookings)

    payouts = PayoutService(bookings, payments, profiles, gateway, gate, mock_event_bus)
    reconciler = PaymentEventReconciler(
        bookings, payments, profiles, ledger, gateway, redis, mock_event_bus, dedup_ttl=60,
    )
    service = BookingService(
        bookings=bookings,
        announcements=announcements,
        profiles=profiles,
        payments=payments,
        ledger=ledger,
        pricing=pricing_engine,
        gate=gate,
        gateway=gateway,
        payouts=payouts,
        event_bus=mock_event_bus,
        limits=booking_limits,
        reconciler=reconciler,
    )

    traveler = make_profile(first_name="Awa")
    sender = make_profile(first_name="Luc")
    profiles.items[traveler.id] = traveler
    profiles.items[sender.id] = sender
    announcement = make_announcement(traveler.id)
    announcements.items[announcement.id] = announcement

    return SimpleNamespace(
        db=db,
        announcements=announcements,
        bookings=bookings,
        profiles=profiles,
        payments=payments,
        redis=redis,
        gateway=gateway,
        gate=gate,
        ledger=ledger,
        payouts=payouts,
        reconciler=reconciler,
        service=service,
        event_bus=mock_event_bus,
        traveler=traveler,
        sender=sender,
        announcement=announcement,
    )


def booking_request(announcement_id: str, kilos: str = "5", **overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "announcement_id": announcement_id,
        "kilos_requested": kilos,
        "package_description": "Vêtements et livres pour la famille",
        "package_value": "100",
        "insurance_opted": True,
    }
    data.update(overrides)
    return data


def payment_succeeded_event(payment_intent_id: str, booking_id: str, amount: int, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid4().hex[:16]}",
        "type": "payment_intent.succeeded",
        "created": int(datetime.now(timezone.utc).timestamp()),
        "data": {
            "object": {
                "id": payment_intent_id,
                "amount": amount,
                "currency": "eur",
                "status": PaymentStatus.SUCCEEDED.value,
                "metadata": {"booking_id": booking_id},
            },
        },
    }


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Заголовок Stripe-Signature для тела вебхука."""
    timestamp = timestamp or int(time.time())
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={digest}"
