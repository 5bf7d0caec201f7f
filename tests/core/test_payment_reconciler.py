# tests/core/test_payment_reconciler.py
"""
Тесты сверщика событий платёжного провайдера.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from sendbox.common.constants import (
    BookingStatus,
    KYCStatus,
    PaymentStatus,
    PayoutStatus,
    TransactionStatus,
    TransactionType,
)
from sendbox.common.errors import EventAuthenticityError, ExternalServiceError, ValidationError
from sendbox.core.bookings.models import Booking
from sendbox.core.payments.models import ProviderEvent, ReconcileStatus
from sendbox.core.payments.transfers import TransferOutcome
from sendbox.core.profiles.models import AuthContext
from sendbox.infra.event_bus import EventTypes
from conftest import booking_request, payment_succeeded_event, sign_payload


def event(event_type: str, obj: dict[str, Any], event_id: str | None = None, created: datetime | None = None) -> ProviderEvent:
    return ProviderEvent.model_validate({
        "id": event_id or f"evt_{uuid4().hex[:16]}",
        "type": event_type,
        "created": int((created or datetime.now(timezone.utc)).timestamp()),
        "data": {"object": obj},
    })


def event_types(market: SimpleNamespace) -> list[str]:
    return [call.args[0].event_type for call in market.event_bus.publish.await_args_list]


def payment_failed_object(intent_id: str, booking_id: str) -> dict[str, Any]:
    return {
        "id": intent_id,
        "amount": 5950,
        "currency": "eur",
        "status": "requires_payment_method",
        "metadata": {"booking_id": booking_id},
        "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
    }


async def paying_booking(market: SimpleNamespace) -> tuple[Booking, str]:
    """Принятое бронирование с созданным удержанием."""
    sender = AuthContext(user_id=market.sender.id)
    booking = await market.service.create_booking(sender, booking_request(market.announcement.id))
    await market.service.accept_booking(AuthContext(user_id=market.traveler.id), booking.id)
    init = await market.service.pay(sender, booking.id)
    return booking, init.payment_intent_id


# =============================================================================
# ОТСЕВ ПОВТОРОВ
# =============================================================================

class TestDeduplication:
    """Повторная доставка события не меняет результат."""

    @pytest.mark.asyncio
    async def test_replay_is_duplicate(self, market: SimpleNamespace) -> None:
        booking, intent_id = await paying_booking(market)
        evt = ProviderEvent.model_validate(payment_succeeded_event(intent_id, booking.id, 5950, "evt_replay"))

        first = await market.reconciler.apply(evt)
        second = await market.reconciler.apply(evt)

        assert first.status == ReconcileStatus.APPLIED
        assert first.detail == "confirmed"
        assert second.status == ReconcileStatus.DUPLICATE
        assert market.bookings.items[booking.id].status == BookingStatus.CONFIRMED
        assert event_types(market).count(EventTypes.BOOKING_CONFIRMED) == 1
        assert "evt_replay" in market.payments.processed

    @pytest.mark.asyncio
    async def test_processed_table_catches_expired_redis_key(self, market: SimpleNamespace) -> None:
        booking, intent_id = await paying_booking(market)
        evt = ProviderEvent.model_validate(payment_succeeded_event(intent_id, booking.id, 5950))
        await market.reconciler.apply(evt)

        market.redis.store.clear()
        outcome = await market.reconciler.apply(evt)

        assert outcome.status == ReconcileStatus.DUPLICATE

    @pytest.mark.asyncio
    async def test_second_event_for_same_payment(self, market: SimpleNamespace) -> None:
        """Другое событие по тому же платежу не подтверждает повторно."""
        booking, intent_id = await paying_booking(market)
        await market.reconciler.apply(ProviderEvent.model_validate(payment_succeeded_event(intent_id, booking.id, 5950)))

        outcome = await market.reconciler.apply(
            ProviderEvent.model_validate(payment_succeeded_event(intent_id, booking.id, 5950))
        )

        assert outcome.detail == "already_confirmed"
        assert len([k for k in market.payments.transactions if k[1] == TransactionType.PAYMENT.value]) == 1

    @pytest.mark.asyncio
    async def test_unknown_type_ignored(self, market: SimpleNamespace) -> None:
        outcome = await market.reconciler.apply(event("customer.created", {"id": "cus_1"}, "evt_unknown"))

        assert outcome.status == ReconcileStatus.IGNORED
        assert market.redis.store == {}
        assert market.payments.processed == set()

    @pytest.mark.asyncio
    async def test_handler_failure_allows_redelivery(self, market: SimpleNamespace) -> None:
        booking, intent_id = await paying_booking(market)
        evt = ProviderEvent.model_validate(payment_succeeded_event(intent_id, booking.id, 5950, "evt_retry"))

        with patch.object(market.payments, "update_payment_status", new=AsyncMock(side_effect=RuntimeError("db down"))):
            with pytest.raises(RuntimeError):
                await market.reconciler.apply(evt)

        assert "webhook:event:evt_retry" not in market.redis.store
        assert "evt_retry" not in market.payments.processed

        outcome = await market.reconciler.apply(evt)
        assert outcome.status == ReconcileStatus.APPLIED


# =============================================================================
# ПОДПИСЬ
# =============================================================================

class TestHandleWebhook:
    """Проверка подписи до разбора."""

    @pytest.mark.asyncio
    async def test_valid_signature(self, market: SimpleNamespace) -> None:
        booking, intent_id = await paying_booking(market)
        payload = json.dumps(payment_succeeded_event(intent_id, booking.id, 5950)).encode()

        outcome = await market.reconciler.handle_webhook(payload, sign_payload(payload))

        assert outcome.status == ReconcileStatus.APPLIED
        assert market.bookings.items[booking.id].status == BookingStatus.CONFIRMED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("signature", [None, "", "simulated", "t=1,v1=forged"])
    async def test_bad_signature_rejected(self, market: SimpleNamespace, signature: str | None) -> None:
        booking, intent_id = await paying_booking(market)
        payload = json.dumps(payment_succeeded_event(intent_id, booking.id, 5950)).encode()

        with pytest.raises(EventAuthenticityError) as exc_info:
            await market.reconciler.handle_webhook(payload, signature)

        assert exc_info.value.http_status == 400
        assert market.bookings.items[booking.id].status == BookingStatus.PENDING
        assert market.redis.store == {}

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, market: SimpleNamespace) -> None:
        booking, intent_id = await paying_booking(market)
        payload = json.dumps(payment_succeeded_event(intent_id, booking.id, 5950)).encode()

        with pytest.raises(EventAuthenticityError):
            await market.reconciler.handle_webhook(payload, sign_payload(payload, secret="whsec_attacker"))

        assert market.bookings.items[booking.id].status == BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, market: SimpleNamespace) -> None:
        booking, intent_id = await paying_booking(market)
        payload = json.dumps(payment_succeeded_event(intent_id, booking.id, 5950)).encode()
        old = int((datetime.now(timezone.utc) - timedelta(hours=1)).timestamp())

        with pytest.raises(EventAuthenticityError):
            await market.reconciler.handle_webhook(payload, sign_payload(payload, timestamp=old))

    @pytest.mark.asyncio
    async def test_simulation_without_secret_refuses_webhooks(self, market: SimpleNamespace) -> None:
        """Без секрета подписи вебхук в режиме simulation не принимается ни с какой подписью."""
        booking, intent_id = await paying_booking(market)
        market.gateway._webhook_secret = ""
        payload = json.dumps(payment_succeeded_event(intent_id, booking.id, 5950)).encode()

        for signature in ("simulated", sign_payload(payload, secret="")):
            with pytest.raises(EventAuthenticityError):
                await market.reconciler.handle_webhook(payload, signature)

        assert market.bookings.items[booking.id].status == BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_not_json(self, market: SimpleNamespace) -> None:
        with pytest.raises(EventAuthenticityError):
            await market.reconciler.handle_webhook(b"not json", sign_payload(b"not json"))

    @pytest.mark.asyncio
    async def test_malformed_event(self, market: SimpleNamespace) -> None:
        payload = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded"}).encode()

        with pytest.raises(ValidationError) as exc_info:
            await market.reconciler.handle_webhook(payload, sign_payload(payload))

        assert exc_info.value.field == "data"

    @pytest.mark.asyncio
    async def test_payments_disabled(self, market: SimpleNamespace) -> None:
        market.reconciler._gateway = None

        with pytest.raises(ExternalServiceError) as exc_info:
            await market.reconciler.handle_webhook(b"{}", sign_payload(b"{}"))

        assert exc_info.value.code == "payments_disabled"


# =============================================================================
# ПЛАТЕЖИ
# =============================================================================

class TestPaymentEvents:
    """Эффекты событий по платежам."""

    @pytest.mark.asyncio
    async def test_payment_after_cancel_refunds(self, market: SimpleNamespace) -> None:
        """Оплата, пришедшая после отмены, возвращается, бронирование остаётся отменённым."""
        booking, intent_id = await paying_booking(market)
        await market.service.cancel_booking(AuthContext(user_id=market.sender.id), booking.id)

        outcome = await market.reconciler.apply(
            ProviderEvent.model_validate(payment_succeeded_event(intent_id, booking.id, 5950))
        )

        assert outcome.detail == "refunded_orphan"
        assert market.gateway.refunds == [f"refund_{booking.id}"]
        assert market.bookings.items[booking.id].status == BookingStatus.CANCELLED
        assert market.payments.payments[intent_id].status == PaymentStatus.REFUND_PENDING.value
        assert EventTypes.BOOKING_CONFIRMED not in event_types(market)

    @pytest.mark.asyncio
    async def test_payment_without_booking(self, market: SimpleNamespace) -> None:
        outcome = await market.reconciler.apply(
            ProviderEvent.model_validate(payment_succeeded_event("pi_unknown", str(uuid4()), 100))
        )

        assert outcome.status == ReconcileStatus.APPLIED
        assert outcome.detail == "booking_not_found"

    @pytest.mark.asyncio
    async def test_payment_failed(self, market: SimpleNamespace) -> None:
        booking, intent_id = await paying_booking(market)

        outcome = await market.reconciler.apply(event("payment_intent.payment_failed", {
            "id": intent_id,
            "amount": 5950,
            "currency": "eur",
            "status": "requires_payment_method",
            "metadata": {"booking_id": booking.id},
            "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
        }))

        assert outcome.detail == "payment_failed"
        payment = market.payments.payments[intent_id]
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.last_error == "Your card was declined."
        assert market.bookings.items[booking.id].status == BookingStatus.PENDING
        assert EventTypes.PAYMENT_FAILED in event_types(market)

    @pytest.mark.asyncio
    async def test_late_failure_does_not_undo_payment(self, market: SimpleNamespace) -> None:
        """Отказ по ранней попытке, пришедший после успеха, не мешает выплате."""
        booking, intent_id = await paying_booking(market)
        sender, traveler = AuthContext(user_id=market.sender.id), AuthContext(user_id=market.traveler.id)
        await market.reconciler.apply(ProviderEvent.model_validate(payment_succeeded_event(intent_id, booking.id, 5950)))

        outcome = await market.reconciler.apply(event("payment_intent.payment_failed", payment_failed_object(intent_id, booking.id)))

        assert outcome.detail == "stale_failure"
        assert market.payments.payments[intent_id].status == PaymentStatus.SUCCEEDED.value
        assert market.payments.transactions[(intent_id, TransactionType.PAYMENT.value)]["status"] == TransactionStatus.SUCCEEDED
        assert EventTypes.PAYMENT_FAILED not in event_types(market)

        await market.service.mark_in_transit(traveler, booking.id)
        await market.service.mark_delivered(traveler, booking.id)
        result = await market.service.confirm_delivery(sender, booking.id)

        assert result.payout.outcome == TransferOutcome.RELEASED

    @pytest.mark.asyncio
    async def test_success_after_failed_attempt_promotes_ledger(self, market: SimpleNamespace) -> None:
        """Успех после отказа по тому же платежу фиксируется в журнале как succeeded."""
        booking, intent_id = await paying_booking(market)

        await market.reconciler.apply(event("payment_intent.payment_failed", payment_failed_object(intent_id, booking.id)))
        await market.reconciler.apply(ProviderEvent.model_validate(payment_succeeded_event(intent_id, booking.id, 5950)))

        entry = market.payments.transactions[(intent_id, TransactionType.PAYMENT.value)]
        assert entry["status"] == TransactionStatus.SUCCEEDED
        assert market.payments.payments[intent_id].status == PaymentStatus.SUCCEEDED.value
        assert market.bookings.items[booking.id].status == BookingStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_pay_racing_success_event_keeps_payment_succeeded(self, market: SimpleNamespace) -> None:
        """Статус удержания, прочитанный до вебхука, не перетирает succeeded."""
        booking, intent_id = await paying_booking(market)
        stale_hold = await market.gateway.retrieve_hold(intent_id)

        async def webhook_lands_first(hold_id: str):
            await market.reconciler.apply(
                ProviderEvent.model_validate(payment_succeeded_event(intent_id, booking.id, 5950))
            )
            return stale_hold

        with patch.object(market.gateway, "retrieve_hold", new=AsyncMock(side_effect=webhook_lands_first)):
            await market.service.pay(AuthContext(user_id=market.sender.id), booking.id)

        assert market.payments.payments[intent_id].status == PaymentStatus.SUCCEEDED.value

    @pytest.mark.asyncio
    async def test_charge_refunded_releases_weight(self, market: SimpleNamespace) -> None:
        booking, intent_id = await paying_booking(market)
        await market.reconciler.apply(ProviderEvent.model_validate(payment_succeeded_event(intent_id, booking.id, 5950)))

        outcome = await market.reconciler.apply(event("charge.refunded", {
            "id": "ch_1",
            "payment_intent": intent_id,
            "amount": 5950,
            "amount_refunded": 5950,
            "currency": "eur",
            "refunded": True,
        }))

        assert outcome.detail == "refunded"
        stored = market.bookings.items[booking.id]
        assert stored.status == BookingStatus.CANCELLED
        assert stored.cancelled_reason == "refunded"
        assert stored.refunded_at is not None
        assert market.payments.payments[intent_id].status == PaymentStatus.REFUNDED.value
        assert await market.ledger.remaining_kg(market.announcement.id) == Decimal("10")
        cancelled = [
            call.args[0].payload for call in market.event_bus.publish.await_args_list
            if call.args[0].event_type == EventTypes.BOOKING_CANCELLED
        ]
        assert cancelled[0]["cancelled_by"] == "refund"

    @pytest.mark.asyncio
    async def test_charge_refunded_after_cancel(self, market: SimpleNamespace) -> None:
        """Возврат, инициированный отменой, записывается в журнал один раз."""
        booking, intent_id = await paying_booking(market)
        await market.reconciler.apply(ProviderEvent.model_validate(payment_succeeded_event(intent_id, booking.id, 5950)))
        await market.service.cancel_booking(AuthContext(user_id=market.sender.id), booking.id)

        await market.reconciler.apply(event("charge.refunded", {
            "id": "ch_2", "payment_intent": intent_id, "amount": 5950, "amount_refunded": 5950,
        }))

        assert market.bookings.items[booking.id].refunded_at is not None
        assert len([k for k in market.payments.transactions if k[1] == TransactionType.REFUND.value]) == 1

    @pytest.mark.asyncio
    async def test_charge_refunded_settles_pending_refund(self, market: SimpleNamespace) -> None:
        """Возврат при отмене сначала pending, событие провайдера переводит его в succeeded."""
        booking, intent_id = await paying_booking(market)
        await market.reconciler.apply(ProviderEvent.model_validate(payment_succeeded_event(intent_id, booking.id, 5950)))
        await market.service.cancel_booking(AuthContext(user_id=market.sender.id), booking.id)
        refund_key = (intent_id, TransactionType.REFUND.value)
        assert market.payments.transactions[refund_key]["status"] == TransactionStatus.PENDING

        await market.reconciler.apply(event("charge.refunded", {
            "id": "ch_3", "payment_intent": intent_id, "amount": 5950, "amount_refunded": 5950,
        }))

        assert market.payments.transactions[refund_key]["status"] == TransactionStatus.SUCCEEDED
        assert market.payments.payments[intent_id].status == PaymentStatus.REFUNDED.value


# =============================================================================
# ПРОФИЛИ
# =============================================================================

class TestProfileEvents:
    """Статусы KYC и аккаунта выплат."""

    @pytest.mark.asyncio
    async def test_verification_verified(self, market: SimpleNamespace) -> None:
        profile = market.sender.model_copy(update={"kyc_status": KYCStatus.PENDING})
        market.profiles.items[profile.id] = profile

        outcome = await market.reconciler.apply(event(
            "identity.verification_session.verified",
            {"id": "vs_1", "status": "verified", "metadata": {"user_id": profile.id}},
        ))

        assert outcome.detail == "kyc_approved"
        assert market.profiles.items[profile.id].kyc_status == KYCStatus.APPROVED
        assert EventTypes.KYC_UPDATED in event_types(market)

    @pytest.mark.asyncio
    async def test_verification_requires_input_stores_reason(self, market: SimpleNamespace) -> None:
        profile = market.sender.model_copy(update={"kyc_session_id": "vs_2"})
        market.profiles.items[profile.id] = profile

        outcome = await market.reconciler.apply(event(
            "identity.verification_session.requires_input",
            {"id": "vs_2", "status": "requires_input", "last_error": {"code": "document_expired"}},
        ))

        assert outcome.detail == "kyc_rejected"
        stored = market.profiles.items[profile.id]
        assert stored.kyc_status == KYCStatus.REJECTED
        assert stored.kyc_rejection_reason == "document_expired"

    @pytest.mark.asyncio
    async def test_stale_verification_event(self, market: SimpleNamespace) -> None:
        """Событие старше уже применённого не откатывает статус."""
        now = datetime.now(timezone.utc)
        market.profiles.items[market.sender.id] = market.sender.model_copy(update={"kyc_updated_at": now})

        outcome = await market.reconciler.apply(event(
            "identity.verification_session.processing",
            {"id": "vs_3", "status": "processing", "metadata": {"user_id": market.sender.id}},
            created=now - timedelta(hours=1),
        ))

        assert outcome.detail == "stale_event"
        assert market.profiles.items[market.sender.id].kyc_status == KYCStatus.APPROVED

    @pytest.mark.asyncio
    async def test_verification_without_profile(self, market: SimpleNamespace) -> None:
        outcome = await market.reconciler.apply(event(
            "identity.verification_session.canceled", {"id": "vs_x", "status": "canceled"},
        ))

        assert outcome.detail == "profile_not_found"

    @pytest.mark.asyncio
    async def test_account_updated_enables_payouts(self, market: SimpleNamespace) -> None:
        traveler = market.traveler.model_copy(update={
            "stripe_account_id": "acct_awa",
            "payout_status": PayoutStatus.PENDING,
            "payouts_enabled": False,
        })
        market.profiles.items[traveler.id] = traveler

        outcome = await market.reconciler.apply(event("account.updated", {
            "id": "acct_awa",
            "payouts_enabled": True,
            "charges_enabled": True,
            "requirements": {"currently_due": []},
        }))

        assert outcome.detail == "payout_active"
        stored = market.profiles.items[traveler.id]
        assert stored.payout_status == PayoutStatus.ACTIVE
        assert stored.payouts_enabled is True
        assert EventTypes.PAYOUT_ENABLED in event_types(market)

    @pytest.mark.asyncio
    async def test_account_with_requirements_stays_pending(self, market: SimpleNamespace) -> None:
        traveler = market.traveler.model_copy(update={
            "stripe_account_id": "acct_awa",
            "payout_status": PayoutStatus.PENDING,
            "payouts_enabled": False,
            "kyc_status": KYCStatus.NONE,
        })
        market.profiles.items[traveler.id] = traveler

        outcome = await market.reconciler.apply(event("account.updated", {
            "id": "acct_awa",
            "payouts_enabled": False,
            "requirements": {"currently_due": ["external_account"]},
            "individual": {"verification": {"status": "verified"}},
        }))

        assert outcome.detail == "payout_pending"
        stored = market.profiles.items[traveler.id]
        assert stored.payout_requirements["currently_due"] == ["external_account"]
        # Проверка личности через Connect засчитывается как KYC
        assert stored.kyc_status == KYCStatus.APPROVED
        assert EventTypes.PAYOUT_ENABLED not in event_types(market)
