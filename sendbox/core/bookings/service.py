# sendbox/core/bookings/service.py
"""
Сервис бронирований: жизненный цикл от запроса до выплаты.

Правила:
    - подтверждение оплаты приходит только через сверщик событий;
    - блокировка веса объявления не держится во время вызовов провайдера;
    - повтор уже выполненного действия возвращает успех без побочных эффектов.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from sendbox.common.constants import (
    BookingStatus,
    PaymentStatus,
    PaymentsMode,
    ReleaseReason,
    TransactionStatus,
    TransactionType,
    TypeMsg,
)
from sendbox.common.errors import (
    AuthorizationError,
    CapacityError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    StateError,
    ValidationError,
)
from sendbox.common.logger import log_error, log_info, log_warning
from sendbox.config.loader import BookingSettings
from sendbox.core.bookings.models import Booking, BookingCreateDTO
from sendbox.core.bookings.repository import BookingRepository
from sendbox.core.bookings.state_machine import BookingStateMachine
from sendbox.core.capacity.ledger import CapacityLedger
from sendbox.core.capacity.models import ReservationOutcome
from sendbox.core.capacity.repository import AnnouncementRepository
from sendbox.core.eligibility.gate import EligibilityGate, GateAction
from sendbox.core.payments.gateway import PaymentGateway, SimulatedGateway
from sendbox.core.payments.models import Payment, ProviderEvent
from sendbox.core.payments.repository import PaymentRepository
from sendbox.core.payments.transfers import PayoutService, TransferResult
from sendbox.core.pricing.engine import PricingEngine
from sendbox.core.profiles.models import AuthContext, Profile
from sendbox.core.profiles.repository import ProfileRepository
from sendbox.infra.event_bus import DomainEvent, EventBus, EventTypes

if TYPE_CHECKING:
    from sendbox.core.payments.reconciler import PaymentEventReconciler


# =============================================================================
# РЕЗУЛЬТАТЫ ОПЕРАЦИЙ
# =============================================================================

@dataclass
class PaymentInit:
    """Ответ на запрос оплаты."""
    booking_id: str
    already_paid: bool = False
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    amount_cents: int = 0
    currency: str = "eur"
    mode: str = PaymentsMode.STRIPE.value


@dataclass
class DeliveryConfirmation:
    booking: Booking
    already_completed: bool = False
    payout: Optional[TransferResult] = None


@dataclass
class Cancellation:
    booking: Booking
    already_cancelled: bool = False
    refunded: bool = False


class BookingService:
    """Оркестрация жизненного цикла бронирования."""

    def __init__(
        self,
        bookings: BookingRepository,
        announcements: AnnouncementRepository,
        profiles: ProfileRepository,
        payments: PaymentRepository,
        ledger: CapacityLedger,
        pricing: PricingEngine,
        gate: EligibilityGate,
        gateway: PaymentGateway | None,
        payouts: PayoutService,
        event_bus: EventBus,
        limits: BookingSettings,
        reconciler: "PaymentEventReconciler | None" = None,
    ) -> None:
        """
        Args:
            bookings: Репозиторий бронирований
            announcements: Репозиторий объявлений
            profiles: Репозиторий профилей
            payments: Репозиторий платежей
            ledger: Учёт веса объявлений
            pricing: Движок тарификации
            gate: Шлюз допуска к денежным операциям
            gateway: Платёжный шлюз (None, если платежи выключены)
            payouts: Сервис выплат путешественникам
            event_bus: Шина событий
            limits: Правила бронирования из конфигурации
            reconciler: Сверщик событий (для режима симуляции)
        """
        self._bookings = bookings
        self._announcements = announcements
        self._profiles = profiles
        self._payments = payments
        self._ledger = ledger
        self._pricing = pricing
        self._gate = gate
        self._gateway = gateway
        self._payouts = payouts
        self._event_bus = event_bus
        self._limits = limits
        self._reconciler = reconciler

    # =========================================================================
    # СОЗДАНИЕ
    # =========================================================================

    async def create_booking(self, ctx: AuthContext, data: BookingCreateDTO | dict[str, Any]) -> Booking:
        """
        Создаёт бронирование в статусе pending.

        Проверка входа, допуск и цена вычисляются до транзакции резервирования.
        Лимит ожидающих бронирований и свободный вес проверяются внутри неё;
        при любом отказе ничего не записывается.

        Raises:
            ValidationError, AuthorizationError, NotFoundError,
            ConflictError, StateError, CapacityError
        """
        dto = self._parse_create(data)

        sender = await self._get_profile(ctx.user_id)
        self._gate.require(sender, GateAction.BOOK)

        announcement = await self._announcements.get_by_id(dto.announcement_id)
        if announcement is None:
            raise NotFoundError("Объявление не найдено", field="announcement_id")
        if announcement.traveler_id == ctx.user_id:
            raise AuthorizationError(
                "Нельзя бронировать собственное объявление",
                field="announcement_id",
                code="own_announcement",
            )
        if not announcement.is_bookable:
            raise StateError(
                "Объявление больше не принимает бронирования",
                field="announcement_id",
                code="announcement_not_bookable",
            )

        price = self._pricing.price(
            weight_kg=dto.kilos_requested,
            price_per_kg=announcement.price_per_kg_cents,
            declared_value=dto.package_value_cents,
            insurance_opted=dto.insurance_opted,
        )
        booking = Booking.from_pricing(
            announcement_id=announcement.id,
            sender_id=ctx.user_id,
            traveler_id=announcement.traveler_id,
            kilos_requested=dto.kilos_requested,
            package_description=dto.package_description,
            package_value_cents=dto.package_value_cents,
            insurance_opted=dto.insurance_opted,
            price=price,
        )

        result = await self._ledger.reserve(booking, max_pending=self._limits.MAX_PENDING_BOOKINGS)
        match result.outcome:
            case ReservationOutcome.PENDING_LIMIT_REACHED:
                raise ConflictError(
                    f"Достигнут лимит в {self._limits.MAX_PENDING_BOOKINGS} ожидающих бронирований",
                    field="limit",
                    code="pending_limit_reached",
                )
            case ReservationOutcome.INSUFFICIENT_CAPACITY:
                raise CapacityError(
                    f"Недостаточно места: доступно {result.remaining_kg} кг",
                    field="kilos_requested",
                    details={"remaining_kg": str(result.remaining_kg)},
                )
            case ReservationOutcome.ANNOUNCEMENT_NOT_BOOKABLE:
                raise StateError(
                    "Объявление больше не принимает бронирования",
                    field="announcement_id",
                    code="announcement_not_bookable",
                )

        created = result.booking
        await log_info(
            f"Создано бронирование {created.id}: {created.kilos_requested} кг, {created.total_cents} {created.currency}",
            type_msg=TypeMsg.INFO,
            extra={"booking_id": created.id, "announcement_id": created.announcement_id},
        )
        await self._publish(EventTypes.BOOKING_CREATED, created, kilos=str(created.kilos_requested))
        return created

    # =========================================================================
    # ДЕЙСТВИЯ ПУТЕШЕСТВЕННИКА
    # =========================================================================

    async def accept_booking(self, ctx: AuthContext, booking_id: str) -> Booking:
        booking = await self._get_booking(booking_id)
        self._require_traveler(ctx, booking)

        if booking.accepted_at is not None:
            return booking
        if booking.status != BookingStatus.PENDING:
            BookingStateMachine.ensure(booking.status, BookingStatus.CONFIRMED)

        traveler = await self._get_profile(ctx.user_id)
        self._gate.require(traveler, GateAction.ACCEPT_BOOKING)

        updated = await self._bookings.update_if_status(
            booking.id,
            [BookingStatus.PENDING],
            accepted_at=datetime.now(timezone.utc),
        )
        if updated is None:
            current = await self._get_booking(booking_id)
            if current.accepted_at is not None:
                return current
            raise StateError("Бронирование больше не ожидает ответа", field="status")

        await log_info(f"Бронирование {booking_id} принято", type_msg=TypeMsg.INFO, extra={"booking_id": booking_id})
        await self._publish(EventTypes.BOOKING_ACCEPTED, updated)
        return updated

    async def refuse_booking(self, ctx: AuthContext, booking_id: str, reason: str | None) -> Booking:
        booking = await self._get_booking(booking_id)
        self._require_traveler(ctx, booking)

        reason = (reason or "").strip()
        if len(reason) < self._limits.REFUSAL_REASON_MIN_LENGTH:
            raise ValidationError(
                f"Причина отказа: минимум {self._limits.REFUSAL_REASON_MIN_LENGTH} символов",
                field="reason",
            )

        if booking.status == BookingStatus.CANCELLED:
            return booking
        if booking.status != BookingStatus.PENDING:
            raise StateError("Отказать можно только в ожидающем бронировании", field="status")

        result = await self._ledger.release(
            booking,
            [BookingStatus.PENDING],
            reason="refused_by_traveler",
            refused_reason=reason,
        )
        if not result.released:
            current = await self._get_booking(booking_id)
            if current.status == BookingStatus.CANCELLED:
                return current
            raise StateError("Бронирование больше не ожидает ответа", field="status")

        await log_info(f"Бронирование {booking_id} отклонено", type_msg=TypeMsg.INFO, extra={"booking_id": booking_id})
        await self._publish(EventTypes.BOOKING_REFUSED, result.booking, reason=reason)
        return result.booking

    async def mark_in_transit(self, ctx: AuthContext, booking_id: str) -> Booking:
        booking = await self._get_booking(booking_id)
        self._require_traveler(ctx, booking)
        if booking.status == BookingStatus.IN_TRANSIT:
            return booking

        updated, changed = await self._transition(
            booking, BookingStatus.IN_TRANSIT, in_transit_at=datetime.now(timezone.utc),
        )
        if changed:
            await self._publish(EventTypes.BOOKING_IN_TRANSIT, updated)
        return updated

    async def mark_delivered(self, ctx: AuthContext, booking_id: str) -> Booking:
        booking = await self._get_booking(booking_id)
        self._require_traveler(ctx, booking)
        if booking.status == BookingStatus.DELIVERED:
            return booking

        updated, changed = await self._transition(
            booking, BookingStatus.DELIVERED, delivered_at=datetime.now(timezone.utc),
        )
        if changed:
            await self._publish(EventTypes.BOOKING_DELIVERED, updated)
        return updated

    # =========================================================================
    # ОПЛАТА
    # =========================================================================

    async def pay(self, ctx: AuthContext, booking_id: str) -> PaymentInit:
        """
        Создаёт (или переиспользует) удержание средств отправителя.

        Бронирование остаётся pending до события payment_intent.succeeded.

        Raises:
            ExternalServiceError: Провайдер недоступен или платежи выключены
        """
        booking = await self._get_booking(booking_id)
        self._require_sender(ctx, booking)

        if booking.is_paid:
            return self._already_paid(booking)

        if booking.status != BookingStatus.PENDING:
            raise StateError("Бронирование не ожидает оплаты", field="status")
        if booking.accepted_at is None:
            raise StateError(
                "Путешественник ещё не принял запрос",
                field="status",
                code="not_accepted",
            )

        sender = await self._get_profile(ctx.user_id)
        self._gate.require(sender, GateAction.PAY)

        if self._gateway is None:
            raise ExternalServiceError(
                "Платежи временно отключены",
                retryable=False,
                code="payments_disabled",
            )

        if booking.payment_intent_id:
            hold = await self._gateway.retrieve_hold(booking.payment_intent_id)
            if hold.succeeded:
                return self._already_paid(booking)
        else:
            hold = await self._gateway.create_hold(
                amount=booking.total_cents,
                currency=booking.currency,
                idempotency_key=f"payment_intent_{booking.id}",
                metadata={
                    "booking_id": booking.id,
                    "sender_id": booking.sender_id,
                    "traveler_id": booking.traveler_id,
                    "platform_fee": str(booking.platform_fee_cents),
                    "total_amount": str(booking.total_cents),
                },
                description=f"Sendbox booking {booking.kilos_requested}kg",
            )
            updated = await self._bookings.update_if_status(
                booking.id, [BookingStatus.PENDING], payment_intent_id=hold.id,
            )
            if updated is None:
                await log_warning(
                    f"Бронирование {booking.id} изменилось во время создания удержания",
                    extra={"booking_id": booking.id, "payment_intent_id": hold.id},
                )

        await self._payments.upsert_payment(Payment(
            booking_id=booking.id,
            payment_intent_id=hold.id,
            amount_total_cents=booking.total_cents,
            platform_fee_cents=booking.platform_fee_cents,
            currency=booking.currency,
            status=hold.status,
        ))

        await log_info(
            f"Удержание {hold.id} для бронирования {booking.id}",
            type_msg=TypeMsg.INFO,
            extra={"booking_id": booking.id, "payment_intent_id": hold.id},
        )
        return PaymentInit(
            booking_id=booking.id,
            payment_intent_id=hold.id,
            client_secret=hold.client_secret,
            amount_cents=booking.total_cents,
            currency=booking.currency,
            mode=self._gateway.mode.value,
        )

    async def simulate_payment(self, ctx: AuthContext, booking_id: str) -> Booking:
        """Режим simulation: синтетическое payment_intent.succeeded через сверщик."""
        if not isinstance(self._gateway, SimulatedGateway) or self._reconciler is None:
            raise AuthorizationError(
                "Симуляция оплаты доступна только в режиме simulation",
                code="simulation_disabled",
            )

        init = await self.pay(ctx, booking_id)
        if init.already_paid:
            return await self._get_booking(booking_id)

        self._gateway.mark_succeeded(init.payment_intent_id)
        event = ProviderEvent.model_validate({
            "id": f"evt_sim_{uuid4().hex[:24]}",
            "type": "payment_intent.succeeded",
            "created": int(datetime.now(timezone.utc).timestamp()),
            "data": {
                "object": {
                    "id": init.payment_intent_id,
                    "amount": init.amount_cents,
                    "currency": init.currency,
                    "status": PaymentStatus.SUCCEEDED.value,
                    "metadata": {"booking_id": booking_id},
                },
            },
        })
        await self._reconciler.apply(event)
        return await self._get_booking(booking_id)

    # =========================================================================
    # ДЕЙСТВИЯ ОТПРАВИТЕЛЯ
    # =========================================================================

    async def confirm_delivery(self, ctx: AuthContext, booking_id: str) -> DeliveryConfirmation:
        """
        delivered -> completed и выплата путешественнику.
        Повторное подтверждение возвращает успех без второго перевода.
        """
        booking = await self._get_booking(booking_id)
        self._require_sender(ctx, booking)

        if booking.status == BookingStatus.COMPLETED:
            return DeliveryConfirmation(booking=booking, already_completed=True)

        updated, changed = await self._transition(
            booking,
            BookingStatus.COMPLETED,
            delivery_confirmed_at=datetime.now(timezone.utc),
        )
        if not changed:
            return DeliveryConfirmation(booking=updated, already_completed=True)

        await log_info(
            f"Доставка по {booking_id} подтверждена",
            type_msg=TypeMsg.INFO,
            extra={"booking_id": booking_id},
        )
        await self._publish(EventTypes.BOOKING_COMPLETED, updated)
        payout = await self._release_funds(booking_id, ReleaseReason.DELIVERY_CONFIRMED)
        return DeliveryConfirmation(booking=updated, payout=payout)

    async def open_dispute(self, ctx: AuthContext, booking_id: str, reason: str | None) -> Booking:
        booking = await self._get_booking(booking_id)
        self._require_participant(ctx, booking)

        reason = (reason or "").strip()
        if len(reason) < self._limits.REFUSAL_REASON_MIN_LENGTH:
            raise ValidationError("Опишите причину спора", field="reason")

        if booking.status == BookingStatus.DISPUTED:
            return booking

        updated, changed = await self._transition(
            booking,
            BookingStatus.DISPUTED,
            dispute_opened_at=datetime.now(timezone.utc),
            disputed_reason=reason,
        )
        if changed:
            await log_warning(
                f"Открыт спор по бронированию {booking_id}",
                extra={"booking_id": booking_id, "opened_by": ctx.user_id},
            )
            await self._publish(EventTypes.BOOKING_DISPUTED, updated, reason=reason, opened_by=ctx.user_id)
        return updated

    # =========================================================================
    # ОТМЕНА И УДАЛЕНИЕ
    # =========================================================================

    async def cancel_booking(self, ctx: AuthContext, booking_id: str, reason: str | None = None) -> Cancellation:
        """
        Отмена участником.
        pending: вес освобождается сразу.
        confirmed: сначала возврат средств, затем освобождение веса.

        Raises:
            ExternalServiceError: Возврат не прошёл, статус не изменён
        """
        booking = await self._get_booking(booking_id)
        self._require_participant(ctx, booking)
        cancelled_by = "sender" if ctx.user_id == booking.sender_id else "traveler"
        reason = (reason or "").strip() or f"cancelled_by_{cancelled_by}"

        if booking.status == BookingStatus.CANCELLED:
            return Cancellation(booking=booking, already_cancelled=True)

        if booking.status == BookingStatus.PENDING:
            result = await self._ledger.release(booking, [BookingStatus.PENDING], reason=reason)
            if result.released:
                await self._after_cancel(result.booking, cancelled_by)
                return Cancellation(booking=result.booking)
            booking = await self._get_booking(booking_id)
            if booking.status == BookingStatus.CANCELLED:
                return Cancellation(booking=booking, already_cancelled=True)

        if booking.status != BookingStatus.CONFIRMED:
            raise StateError(
                "Отменить можно только ожидающее или оплаченное бронирование",
                field="status",
            )

        refunded = await self._refund(booking)
        result = await self._ledger.release(booking, [BookingStatus.CONFIRMED], reason=reason)
        if not result.released:
            current = await self._get_booking(booking_id)
            if current.status == BookingStatus.CANCELLED:
                return Cancellation(booking=current, already_cancelled=True, refunded=refunded)
            await log_error(
                f"Возврат по {booking_id} выполнен, но статус сменился на {current.status.value}",
                extra={"booking_id": booking_id},
            )
            raise StateError("Бронирование изменилось во время отмены", field="status")

        await self._after_cancel(result.booking, cancelled_by)
        return Cancellation(booking=result.booking, refunded=refunded)

    async def delete_booking(self, ctx: AuthContext, booking_id: str) -> None:
        booking = await self._get_booking(booking_id)
        self._require_participant(ctx, booking)
        if booking.status != BookingStatus.CANCELLED:
            raise StateError("Удалить можно только отменённое бронирование", field="status")
        await self._bookings.delete(booking_id)
        await log_info(f"Бронирование {booking_id} удалено", type_msg=TypeMsg.INFO, extra={"booking_id": booking_id})

    # =========================================================================
    # СИСТЕМНЫЕ ПРОХОДЫ
    # =========================================================================

    async def auto_release(self, now: datetime | None = None) -> int:
        """Завершает доставленные без спора через AUTO_RELEASE_DAYS и выплачивает."""
        now = now or datetime.now(timezone.utc)
        threshold = now - timedelta(days=self._limits.AUTO_RELEASE_DAYS)
        candidates = await self._bookings.list_ready_for_auto_release(threshold, self._limits.SWEEP_BATCH_SIZE)

        completed = 0
        for booking in candidates:
            updated = await self._bookings.update_if_status(
                booking.id, [BookingStatus.DELIVERED], status=BookingStatus.COMPLETED,
            )
            if updated is None:
                continue
            completed += 1
            await self._publish(EventTypes.BOOKING_COMPLETED, updated, auto=True)
            await self._release_funds(booking.id, ReleaseReason.AUTO_RELEASE)

        if completed:
            await log_info(f"Автозавершено бронирований: {completed}", type_msg=TypeMsg.INFO)
        return completed

    async def expire_unpaid(self, now: datetime | None = None) -> int:
        """Освобождает вес бронирований, не оплаченных за PENDING_PAYMENT_TIMEOUT_HOURS."""
        now = now or datetime.now(timezone.utc)
        threshold = now - timedelta(hours=self._limits.PENDING_PAYMENT_TIMEOUT_HOURS)
        stale = await self._bookings.list_stale_pending(threshold, self._limits.SWEEP_BATCH_SIZE)

        expired = 0
        for booking in stale:
            result = await self._ledger.release(booking, [BookingStatus.PENDING], reason="payment_timeout")
            if result.released:
                expired += 1
                await self._publish(EventTypes.BOOKING_EXPIRED, result.booking)

        if expired:
            await log_info(f"Истекло неоплаченных бронирований: {expired}", type_msg=TypeMsg.INFO)
        return expired

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ МЕТОДЫ
    # =========================================================================

    @staticmethod
    def _parse_create(data: BookingCreateDTO | dict[str, Any]) -> BookingCreateDTO:
        if isinstance(data, BookingCreateDTO):
            return data
        try:
            return BookingCreateDTO.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError.from_errors(e.errors()) from e

    async def _get_booking(self, booking_id: str) -> Booking:
        booking = await self._bookings.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Бронирование не найдено", field="booking_id")
        return booking

    async def _get_profile(self, user_id: str) -> Profile:
        profile = await self._profiles.get_by_id(user_id)
        if profile is None:
            raise NotFoundError("Профиль не найден", field="profile")
        return profile

    @staticmethod
    def _require_sender(ctx: AuthContext, booking: Booking) -> None:
        if ctx.user_id != booking.sender_id:
            raise AuthorizationError("Действие доступно только отправителю", code="not_sender")

    @staticmethod
    def _require_traveler(ctx: AuthContext, booking: Booking) -> None:
        if ctx.user_id != booking.traveler_id:
            raise AuthorizationError("Действие доступно только путешественнику", code="not_traveler")

    @staticmethod
    def _require_participant(ctx: AuthContext, booking: Booking) -> None:
        if not booking.is_participant(ctx.user_id):
            raise AuthorizationError("Вы не участник этого бронирования", code="not_participant")

    def _already_paid(self, booking: Booking) -> PaymentInit:
        return PaymentInit(
            booking_id=booking.id,
            already_paid=True,
            payment_intent_id=booking.payment_intent_id,
            amount_cents=booking.total_cents,
            currency=booking.currency,
            mode=self._gateway.mode.value if self._gateway else PaymentsMode.DISABLED.value,
        )

    async def _transition(
        self,
        booking: Booking,
        target: BookingStatus,
        **fields: Any,
    ) -> tuple[Booking, bool]:
        """
        Условный переход из текущего статуса бронирования.

        Returns:
            (бронирование, выполнен ли переход этим вызовом)
        """
        BookingStateMachine.ensure(booking.status, target)
        updated = await self._bookings.update_if_status(booking.id, [booking.status], status=target, **fields)
        if updated is not None:
            await log_info(
                f"Бронирование {booking.id}: {booking.status.value} -> {target.value}",
                type_msg=TypeMsg.DEBUG,
                extra={"booking_id": booking.id},
            )
            return updated, True

        current = await self._get_booking(booking.id)
        if current.status == target:
            return current, False
        raise StateError(
            f"Статус бронирования изменился: {current.status.value}",
            field="status",
            details={"current_status": current.status.value, "target_status": target.value},
        )

    async def _refund(self, booking: Booking) -> bool:
        if not booking.payment_intent_id:
            return False
        if self._gateway is None:
            raise ExternalServiceError("Платежи временно отключены", retryable=False, code="payments_disabled")

        receipt = await self._gateway.refund(
            booking.payment_intent_id,
            idempotency_key=f"refund_{booking.id}",
        )
        await self._payments.update_payment_status(booking.payment_intent_id, PaymentStatus.REFUND_PENDING.value)
        await self._payments.record_transaction(
            booking_id=booking.id,
            user_id=booking.sender_id,
            type=TransactionType.REFUND,
            status=TransactionStatus.PENDING,
            amount_cents=receipt.amount or booking.total_cents,
            currency=booking.currency,
            provider_reference=booking.payment_intent_id,
        )
        await log_info(
            f"Возврат {receipt.id} по бронированию {booking.id}",
            type_msg=TypeMsg.INFO,
            extra={"booking_id": booking.id, "refund_id": receipt.id},
        )
        return True

    async def _after_cancel(self, booking: Booking, cancelled_by: str) -> None:
        await log_info(
            f"Бронирование {booking.id} отменено ({cancelled_by})",
            type_msg=TypeMsg.INFO,
            extra={"booking_id": booking.id},
        )
        await self._publish(EventTypes.BOOKING_CANCELLED, booking, cancelled_by=cancelled_by)

    async def _release_funds(self, booking_id: str, reason: ReleaseReason) -> TransferResult | None:
        """Сбой провайдера не откатывает завершение: выплату повторит воркер."""
        try:
            return await self._payouts.release_for_booking(booking_id, reason)
        except ExternalServiceError as e:
            await log_error(
                f"Выплата по {booking_id} отложена: {e.message}",
                extra={"booking_id": booking_id, "retryable": e.retryable},
            )
            return None

    async def _publish(self, event_type: str, booking: Booking, **extra: Any) -> None:
        payload = {
            "booking_id": booking.id,
            "announcement_id": booking.announcement_id,
            "sender_id": booking.sender_id,
            "traveler_id": booking.traveler_id,
            "status": booking.status.value,
            **extra,
        }
        try:
            await self._event_bus.publish(DomainEvent(event_type=event_type, payload=payload))
        except Exception as e:
            await log_error(
                f"Не удалось опубликовать {event_type}: {e}",
                extra={"booking_id": booking.id},
            )
