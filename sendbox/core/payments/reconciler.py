# sendbox/core/payments/reconciler.py
"""
Сверщик событий платёжного провайдера.

Порядок обработки вебхука:
    1. Проверка подписи SDK провайдера (до любого разбора).
    2. Разбор в типизированные модели.
    3. Быстрый отсев повторов (Redis SET NX + таблица processed_events).
    4. Применение эффекта с проверкой текущего статуса.
    5. Отметка события как обработанного.

Повторная доставка события приводит к тому же конечному состоянию
и не двигает деньги второй раз.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from pydantic import ValidationError as PydanticValidationError

from sendbox.common.constants import (
    BookingStatus,
    KYCStatus,
    PaymentStatus,
    PayoutStatus,
    TransactionStatus,
    TransactionType,
    TypeMsg,
    WEIGHT_HOLDING_STATUSES,
)
from sendbox.common.errors import ExternalServiceError, ValidationError
from sendbox.common.logger import log_error, log_info, log_warning
from sendbox.core.bookings.repository import BookingRepository
from sendbox.core.capacity.ledger import CapacityLedger
from sendbox.core.payments.gateway import PaymentGateway
from sendbox.core.payments.models import (
    AccountObject,
    ChargeObject,
    PaymentIntentObject,
    ProviderEvent,
    ProviderEventType,
    ReconcileOutcome,
    ReconcileStatus,
    VerificationSessionObject,
)
from sendbox.core.payments.repository import PaymentRepository
from sendbox.core.profiles.repository import ProfileRepository
from sendbox.infra.event_bus import DomainEvent, EventBus, EventTypes
from sendbox.infra.redis_client import RedisClient

_VERIFICATION_STATUS: dict[str, KYCStatus] = {
    ProviderEventType.VERIFICATION_VERIFIED.value: KYCStatus.APPROVED,
    ProviderEventType.VERIFICATION_REQUIRES_INPUT.value: KYCStatus.REJECTED,
    ProviderEventType.VERIFICATION_PROCESSING.value: KYCStatus.PENDING,
    ProviderEventType.VERIFICATION_CANCELED.value: KYCStatus.INCOMPLETE,
    ProviderEventType.VERIFICATION_REDACTED.value: KYCStatus.INCOMPLETE,
}


class PaymentEventReconciler:
    """Применение событий провайдера к бронированиям, платежам и профилям."""

    def __init__(
        self,
        bookings: BookingRepository,
        payments: PaymentRepository,
        profiles: ProfileRepository,
        ledger: CapacityLedger,
        gateway: PaymentGateway | None,
        redis: RedisClient,
        event_bus: EventBus,
        dedup_ttl: int = 86400,
    ) -> None:
        """
        Args:
            bookings: Репозиторий бронирований
            payments: Репозиторий платежей
            profiles: Репозиторий профилей
            ledger: Учёт веса (возврат веса при возврате средств)
            gateway: Платёжный шлюз (проверка подписи, возврат осиротевших удержаний)
            redis: Клиент Redis для быстрого отсева повторов
            event_bus: Шина событий
            dedup_ttl: Время жизни ключа отсева, секунды
        """
        self._bookings = bookings
        self._payments = payments
        self._profiles = profiles
        self._ledger = ledger
        self._gateway = gateway
        self._redis = redis
        self._event_bus = event_bus
        self._dedup_ttl = dedup_ttl

        self._handlers: dict[str, Callable[[ProviderEvent], Awaitable[str | None]]] = {
            ProviderEventType.PAYMENT_INTENT_SUCCEEDED.value: self._on_payment_succeeded,
            ProviderEventType.PAYMENT_INTENT_FAILED.value: self._on_payment_failed,
            ProviderEventType.CHARGE_REFUNDED.value: self._on_charge_refunded,
            ProviderEventType.ACCOUNT_UPDATED.value: self._on_account_updated,
        }
        for event_type in _VERIFICATION_STATUS:
            self._handlers[event_type] = self._on_verification_session

    # =========================================================================
    # ВХОД
    # =========================================================================

    async def handle_webhook(self, payload: bytes, signature: str | None) -> ReconcileOutcome:
        """
        Точка входа вебхука.

        Raises:
            EventAuthenticityError: Подпись не прошла проверку
            ValidationError: Событие не разбирается
            ExternalServiceError: Платежи выключены
        """
        if self._gateway is None:
            raise ExternalServiceError("Платежи отключены", retryable=False, code="payments_disabled")

        raw = self._gateway.construct_event(payload, signature)
        try:
            event = ProviderEvent.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError.from_errors(e.errors()) from e

        return await self.apply(event)

    async def apply(self, event: ProviderEvent) -> ReconcileOutcome:
        """Применяет проверенное событие."""
        handler = self._handlers.get(event.type)
        if handler is None:
            await log_info(
                f"Событие {event.type} не обрабатывается",
                type_msg=TypeMsg.DEBUG,
                extra={"event_id": event.id},
            )
            return ReconcileOutcome(event_id=event.id, event_type=event.type, status=ReconcileStatus.IGNORED)

        if await self._is_duplicate(event):
            await log_info(
                f"Повтор события {event.id} ({event.type})",
                type_msg=TypeMsg.DEBUG,
                extra={"event_id": event.id},
            )
            return ReconcileOutcome(event_id=event.id, event_type=event.type, status=ReconcileStatus.DUPLICATE)

        try:
            detail = await handler(event)
        except Exception:
            # Событие должно прийти повторно
            await self._redis.delete(self._dedup_key(event.id))
            raise

        await self._payments.mark_event_processed(event.id, event.type)
        await log_info(
            f"Событие {event.type} применено: {detail or 'ok'}",
            type_msg=TypeMsg.INFO,
            extra={"event_id": event.id},
        )
        return ReconcileOutcome(
            event_id=event.id,
            event_type=event.type,
            status=ReconcileStatus.APPLIED,
            detail=detail,
        )

    # =========================================================================
    # ПЛАТЕЖИ
    # =========================================================================

    async def _on_payment_succeeded(self, event: ProviderEvent) -> str | None:
        intent = self._decode(PaymentIntentObject, event)
        booking = await self._find_booking(intent)
        if booking is None:
            await log_warning(
                f"Платёж {intent.id} без бронирования",
                extra={"event_id": event.id, "payment_intent_id": intent.id},
            )
            return "booking_not_found"

        await self._payments.update_payment_status(intent.id, PaymentStatus.SUCCEEDED.value)
        await self._payments.record_transaction(
            booking_id=booking.id,
            user_id=booking.sender_id,
            type=TransactionType.PAYMENT,
            status=TransactionStatus.SUCCEEDED,
            amount_cents=intent.amount,
            currency=intent.currency,
            provider_reference=intent.id,
        )

        if booking.status == BookingStatus.CANCELLED:
            return await self._refund_orphan(booking.id, intent.id)

        confirmed = await self._bookings.update_if_status(
            booking.id,
            [BookingStatus.PENDING],
            status=BookingStatus.CONFIRMED,
            paid_at=event.created_at,
            payment_intent_id=intent.id,
        )
        if confirmed is None:
            current = await self._bookings.get_by_id(booking.id)
            if current is not None and current.status == BookingStatus.CANCELLED:
                return await self._refund_orphan(booking.id, intent.id)
            return "already_confirmed"

        await self._publish(EventTypes.PAYMENT_SUCCEEDED, {
            "booking_id": confirmed.id,
            "sender_id": confirmed.sender_id,
            "traveler_id": confirmed.traveler_id,
            "amount_cents": intent.amount,
            "currency": intent.currency,
        })
        await self._publish(EventTypes.BOOKING_CONFIRMED, {
            "booking_id": confirmed.id,
            "sender_id": confirmed.sender_id,
            "traveler_id": confirmed.traveler_id,
            "status": confirmed.status.value,
        })
        return "confirmed"

    async def _refund_orphan(self, booking_id: str, payment_intent_id: str) -> str:
        """Оплата пришла после отмены: средства возвращаются."""
        await log_warning(
            f"Оплата {payment_intent_id} для отменённого бронирования {booking_id}, возврат",
            extra={"booking_id": booking_id, "payment_intent_id": payment_intent_id},
        )
        await self._gateway.refund(
            payment_intent_id,
            idempotency_key=f"refund_{booking_id}",
            reason="requested_by_customer",
        )
        await self._payments.update_payment_status(payment_intent_id, PaymentStatus.REFUND_PENDING.value)
        return "refunded_orphan"

    async def _on_payment_failed(self, event: ProviderEvent) -> str | None:
        intent = self._decode(PaymentIntentObject, event)
        error = intent.last_payment_error.message if intent.last_payment_error else None

        booking = await self._find_booking(intent)
        if booking is not None and booking.is_paid:
            await log_warning(
                f"Отказ по {intent.id} пришёл после оплаты бронирования {booking.id}, пропущен",
                extra={"event_id": event.id, "booking_id": booking.id, "payment_intent_id": intent.id},
            )
            return "stale_failure"

        await self._payments.update_payment_status(intent.id, PaymentStatus.FAILED.value, last_error=error)
        if booking is None:
            return "booking_not_found"

        await self._payments.record_transaction(
            booking_id=booking.id,
            user_id=booking.sender_id,
            type=TransactionType.PAYMENT,
            status=TransactionStatus.FAILED,
            amount_cents=intent.amount,
            currency=intent.currency,
            provider_reference=intent.id,
        )
        await self._publish(EventTypes.PAYMENT_FAILED, {
            "booking_id": booking.id,
            "sender_id": booking.sender_id,
            "traveler_id": booking.traveler_id,
            "error": error,
        })
        return "payment_failed"

    async def _on_charge_refunded(self, event: ProviderEvent) -> str | None:
        charge = self._decode(ChargeObject, event)
        reference = charge.payment_intent or charge.id

        booking = None
        if charge.payment_intent:
            booking = await self._bookings.get_by_payment_intent(charge.payment_intent)
        if booking is None and charge.metadata.get("booking_id"):
            booking = await self._bookings.get_by_id(charge.metadata["booking_id"])

        if charge.payment_intent:
            await self._payments.update_payment_status(charge.payment_intent, PaymentStatus.REFUNDED.value)
        if booking is None:
            return "booking_not_found"

        await self._payments.record_transaction(
            booking_id=booking.id,
            user_id=booking.sender_id,
            type=TransactionType.REFUND,
            status=TransactionStatus.SUCCEEDED,
            amount_cents=charge.amount_refunded or charge.amount,
            currency=charge.currency,
            provider_reference=reference,
        )

        if booking.status in WEIGHT_HOLDING_STATUSES:
            result = await self._ledger.release(
                booking,
                WEIGHT_HOLDING_STATUSES,
                reason="refunded",
                refunded_at=event.created_at,
            )
            if result.released:
                await self._publish(EventTypes.BOOKING_CANCELLED, {
                    "booking_id": booking.id,
                    "sender_id": booking.sender_id,
                    "traveler_id": booking.traveler_id,
                    "status": BookingStatus.CANCELLED.value,
                    "cancelled_by": "refund",
                })
        else:
            await self._bookings.update_if_status(
                booking.id, [booking.status], refunded_at=event.created_at,
            )

        await self._publish(EventTypes.PAYMENT_REFUNDED, {
            "booking_id": booking.id,
            "sender_id": booking.sender_id,
            "amount_cents": charge.amount_refunded or charge.amount,
        })
        return "refunded"

    # =========================================================================
    # ПРОФИЛИ
    # =========================================================================

    async def _on_verification_session(self, event: ProviderEvent) -> str | None:
        session = self._decode(VerificationSessionObject, event)
        status = _VERIFICATION_STATUS[event.type]

        profile = None
        if session.user_id:
            profile = await self._profiles.get_by_id(session.user_id)
        if profile is None:
            profile = await self._profiles.get_by_kyc_session(session.id)
        if profile is None:
            await log_warning(
                f"Сессия верификации {session.id} без профиля",
                extra={"event_id": event.id},
            )
            return "profile_not_found"

        reason = None
        if status == KYCStatus.REJECTED and session.last_error:
            reason = session.last_error.reason or session.last_error.code

        applied = await self._profiles.update_kyc(profile.id, status, event.created_at, reason)
        if not applied:
            return "stale_event"

        await self._publish(EventTypes.KYC_UPDATED, {
            "user_id": profile.id,
            "kyc_status": status.value,
            "reason": reason,
        })
        return f"kyc_{status.value}"

    async def _on_account_updated(self, event: ProviderEvent) -> str | None:
        account = self._decode(AccountObject, event)
        profile = await self._profiles.get_by_stripe_account(account.id)
        if profile is None:
            return "profile_not_found"

        status = PayoutStatus.ACTIVE if account.payouts_enabled else PayoutStatus.PENDING
        requirements = account.requirements.model_dump() if account.requirements else {}

        applied = await self._profiles.update_payout(
            profile.id, status, account.payouts_enabled, requirements, event.created_at,
        )
        if not applied:
            return "stale_event"

        if account.individual_verified and profile.kyc_status != KYCStatus.APPROVED:
            await self._profiles.update_kyc(profile.id, KYCStatus.APPROVED, event.created_at)
            await self._publish(EventTypes.KYC_UPDATED, {
                "user_id": profile.id,
                "kyc_status": KYCStatus.APPROVED.value,
            })

        if account.payouts_enabled and not profile.payouts_enabled:
            await self._publish(EventTypes.PAYOUT_ENABLED, {"user_id": profile.id})
        return f"payout_{status.value}"

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ МЕТОДЫ
    # =========================================================================

    def _dedup_key(self, event_id: str) -> str:
        return f"webhook:event:{event_id}"

    async def _is_duplicate(self, event: ProviderEvent) -> bool:
        fresh = await self._redis.set_nx(self._dedup_key(event.id), event.type, ttl=self._dedup_ttl)
        if not fresh:
            return True
        if await self._payments.is_event_processed(event.id):
            return True
        return False

    @staticmethod
    def _decode(model: type, event: ProviderEvent) -> Any:
        try:
            return model.model_validate(event.data.object)
        except PydanticValidationError as e:
            raise ValidationError.from_errors(e.errors()) from e

    async def _find_booking(self, intent: PaymentIntentObject):
        booking = await self._bookings.get_by_payment_intent(intent.id)
        if booking is None and intent.booking_id:
            booking = await self._bookings.get_by_id(intent.booking_id)
        return booking

    async def _publish(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self._event_bus.publish(DomainEvent(event_type=event_type, payload=payload))
        except Exception as e:
            await log_error(
                f"Не удалось опубликовать {event_type}: {e}",
                extra={"booking_id": payload.get("booking_id")},
            )
