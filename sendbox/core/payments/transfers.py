# sendbox/core/payments/transfers.py
"""
Перевод средств путешественнику после завершения доставки.

Выплата идемпотентна на трёх уровнях: проверка действующего перевода,
ключ идемпотентности провайдера transfer_<booking_id> и частичный
уникальный индекс transfers(booking_id).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sendbox.common.constants import (
    BookingStatus,
    PaymentStatus,
    PaymentsMode,
    ReleaseReason,
    TransactionStatus,
    TransactionType,
    TransferStatus,
    TypeMsg,
)
from sendbox.common.errors import ExternalServiceError
from sendbox.common.logger import log_error, log_info, log_warning
from sendbox.core.bookings.repository import BookingRepository
from sendbox.core.eligibility.gate import EligibilityGate, GateAction
from sendbox.core.payments.gateway import PaymentGateway
from sendbox.core.payments.models import Transfer
from sendbox.core.payments.repository import PaymentRepository
from sendbox.core.profiles.repository import ProfileRepository
from sendbox.infra.event_bus import DomainEvent, EventBus, EventTypes


class TransferOutcome(str, Enum):
    RELEASED = "released"
    ALREADY_RELEASED = "already_released"
    BOOKING_NOT_FOUND = "booking_not_found"
    NOT_COMPLETED = "not_completed"
    BLOCKED_DISPUTED = "blocked_disputed"
    PAYMENT_MISSING = "payment_not_captured"
    PAYOUTS_NOT_ENABLED = "payouts_not_enabled"
    INVALID_AMOUNT = "invalid_transfer_amount"
    PAYMENTS_DISABLED = "payments_disabled"


@dataclass
class TransferResult:
    outcome: TransferOutcome
    transfer_id: Optional[str] = None
    amount_cents: int = 0

    @property
    def released(self) -> bool:
        return self.outcome in (TransferOutcome.RELEASED, TransferOutcome.ALREADY_RELEASED)


class PayoutService:
    """Выплаты путешественникам."""

    def __init__(
        self,
        bookings: BookingRepository,
        payments: PaymentRepository,
        profiles: ProfileRepository,
        gateway: PaymentGateway | None,
        gate: EligibilityGate,
        event_bus: EventBus,
    ) -> None:
        """
        Args:
            bookings: Репозиторий бронирований
            payments: Репозиторий платежей и переводов
            profiles: Репозиторий профилей
            gateway: Платёжный шлюз (None в режиме disabled)
            gate: Шлюз допуска
            event_bus: Шина событий
        """
        self._bookings = bookings
        self._payments = payments
        self._profiles = profiles
        self._gateway = gateway
        self._gate = gate
        self._event_bus = event_bus

    async def release_for_booking(self, booking_id: str, reason: ReleaseReason) -> TransferResult:
        """
        Переводит путешественнику total - (комиссия + страховка).

        Raises:
            ExternalServiceError: Провайдер отклонил перевод или недоступен
        """
        booking = await self._bookings.get_by_id(booking_id)
        if booking is None:
            return TransferResult(TransferOutcome.BOOKING_NOT_FOUND)

        if booking.status == BookingStatus.DISPUTED:
            await log_warning(
                f"Выплата по {booking_id} заблокирована: открыт спор",
                extra={"booking_id": booking_id},
            )
            return TransferResult(TransferOutcome.BLOCKED_DISPUTED)

        active = await self._payments.get_active_transfer(booking_id)
        if active is not None:
            return TransferResult(
                TransferOutcome.ALREADY_RELEASED,
                transfer_id=active.stripe_transfer_id,
                amount_cents=active.amount_cents,
            )

        if booking.status != BookingStatus.COMPLETED:
            return TransferResult(TransferOutcome.NOT_COMPLETED)

        if self._gateway is None:
            return TransferResult(TransferOutcome.PAYMENTS_DISABLED)

        payment = await self._payments.get_latest_for_booking(booking_id)
        if payment is None or payment.status != PaymentStatus.SUCCEEDED.value:
            return TransferResult(TransferOutcome.PAYMENT_MISSING)

        traveler = await self._profiles.get_by_id(booking.traveler_id)
        decision = self._gate.can_transact(traveler, GateAction.RECEIVE_PAYOUT) if traveler else None
        needs_account = self._gateway.mode == PaymentsMode.STRIPE
        if (
            traveler is None
            or not decision.allowed
            or (needs_account and not traveler.stripe_account_id)
        ):
            await self._publish(EventTypes.PAYOUT_BLOCKED, {
                "booking_id": booking_id,
                "traveler_id": booking.traveler_id,
                "reason": TransferOutcome.PAYOUTS_NOT_ENABLED.value,
            })
            return TransferResult(TransferOutcome.PAYOUTS_NOT_ENABLED)

        amount = payment.amount_total_cents - payment.platform_fee_cents
        if amount <= 0:
            await log_error(
                f"Некорректная сумма перевода по {booking_id}: {amount}",
                extra={"booking_id": booking_id},
            )
            return TransferResult(TransferOutcome.INVALID_AMOUNT)

        receipt = await self._gateway.create_transfer(
            amount=amount,
            currency=payment.currency,
            destination=traveler.stripe_account_id or f"acct_local_{traveler.id}",
            idempotency_key=f"transfer_{booking_id}",
            metadata={"booking_id": booking_id, "reason": reason.value},
        )

        inserted = await self._payments.insert_transfer(Transfer(
            booking_id=booking_id,
            traveler_id=booking.traveler_id,
            stripe_transfer_id=receipt.id,
            amount_cents=receipt.amount,
            currency=receipt.currency,
            status=TransferStatus.PAID.value,
            reason=reason.value,
        ))
        if not inserted:
            # Параллельная выплата уже записала перевод (тот же ключ идемпотентности)
            return TransferResult(TransferOutcome.ALREADY_RELEASED, transfer_id=receipt.id, amount_cents=receipt.amount)

        await self._payments.record_transaction(
            booking_id=booking_id,
            user_id=booking.traveler_id,
            type=TransactionType.TRANSFER,
            status=TransactionStatus.SUCCEEDED,
            amount_cents=receipt.amount,
            currency=receipt.currency,
            provider_reference=receipt.id,
        )
        await self._bookings.update_if_status(
            booking_id,
            [BookingStatus.COMPLETED],
            payout_at=datetime.now(timezone.utc),
            payout_id=receipt.id,
        )

        await log_info(
            f"Выплата {receipt.amount} {receipt.currency} по бронированию {booking_id}",
            type_msg=TypeMsg.INFO,
            extra={"booking_id": booking_id, "transfer_id": receipt.id, "reason": reason.value},
        )
        await self._publish(EventTypes.PAYOUT_RELEASED, {
            "booking_id": booking_id,
            "traveler_id": booking.traveler_id,
            "amount_cents": receipt.amount,
            "currency": receipt.currency,
            "reason": reason.value,
        })
        return TransferResult(TransferOutcome.RELEASED, transfer_id=receipt.id, amount_cents=receipt.amount)

    async def release_awaiting(self, limit: int, traveler_id: str | None = None) -> int:
        """
        Повторяет выплаты по завершённым бронированиям без перевода.
        Сбой одной выплаты не останавливает проход.
        """
        candidates = await self._bookings.list_awaiting_payout(limit, traveler_id=traveler_id)
        released = 0
        for booking in candidates:
            try:
                result = await self.release_for_booking(booking.id, ReleaseReason.DELIVERY_CONFIRMED)
            except ExternalServiceError as e:
                await log_error(
                    f"Повторная выплата по {booking.id} не прошла: {e.message}",
                    extra={"booking_id": booking.id, "retryable": e.retryable},
                )
                continue
            if result.outcome == TransferOutcome.RELEASED:
                released += 1
        return released

    async def _publish(self, event_type: str, payload: dict) -> None:
        try:
            await self._event_bus.publish(DomainEvent(event_type=event_type, payload=payload))
        except Exception as e:
            await log_error(
                f"Не удалось опубликовать {event_type}: {e}",
                extra={"booking_id": payload.get("booking_id")},
            )
