# sendbox/core/payments/gateway.py
"""
Шлюз платёжного провайдера.

Ядро только оркестрирует вызовы: удержание средств отправителя,
возврат, перевод путешественнику, Connect-аккаунты и проверка подписи
вебхуков. Реализации: Stripe (SDK stripe) и локальная симуляция.
Ошибки провайдера приводятся к ExternalServiceError с признаком retryable.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, TypeVar
from uuid import uuid4

import stripe

from sendbox.common.constants import PaymentStatus, PaymentsMode, TypeMsg
from sendbox.common.errors import EventAuthenticityError, ExternalServiceError
from sendbox.common.logger import log_error, log_info

T = TypeVar("T")


# =============================================================================
# РЕЗУЛЬТАТЫ ВЫЗОВОВ
# =============================================================================

@dataclass
class PaymentHold:
    """Удержание средств отправителя (PaymentIntent)."""
    id: str
    status: str
    amount: int
    currency: str
    client_secret: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED.value


@dataclass
class RefundReceipt:
    id: str
    status: str
    amount: int


@dataclass
class TransferReceipt:
    id: str
    amount: int
    currency: str
    reversed: bool = False


@dataclass
class AccountStatus:
    """Состояние Connect-аккаунта путешественника."""
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool
    requirements: dict[str, Any] = field(default_factory=dict)


@dataclass
class OnboardingLink:
    url: str
    expires_at: int | None = None


class PaymentGateway(ABC):
    """Интерфейс платёжного провайдера."""

    mode: PaymentsMode

    @abstractmethod
    async def create_hold(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
        description: str | None = None,
    ) -> PaymentHold: ...

    @abstractmethod
    async def retrieve_hold(self, hold_id: str) -> PaymentHold: ...

    @abstractmethod
    async def refund(self, hold_id: str, idempotency_key: str, reason: str | None = None) -> RefundReceipt: ...

    @abstractmethod
    async def create_transfer(
        self,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> TransferReceipt: ...

    @abstractmethod
    async def create_connected_account(self, user_id: str, email: str | None, country: str) -> str: ...

    @abstractmethod
    async def create_onboarding_link(self, account_id: str) -> OnboardingLink: ...

    @abstractmethod
    async def get_account_status(self, account_id: str) -> AccountStatus: ...

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """
        Проверяет подпись и возвращает разобранное событие.

        Raises:
            EventAuthenticityError: Подпись отсутствует или неверна
        """


# =============================================================================
# STRIPE
# =============================================================================

def _is_retryable(error: stripe.StripeError) -> bool:
    """Сетевые сбои, лимиты и 5xx повторяемы; отказ карты и неверный запрос нет."""
    if isinstance(error, (stripe.RateLimitError, stripe.APIConnectionError)):
        return True
    if isinstance(error, (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError, stripe.PermissionError)):
        return False
    if isinstance(error, stripe.APIError):
        return True
    return (error.http_status or 500) >= 500


def _verify_signed_event(payload: bytes, signature: str | None, secret: str) -> dict[str, Any]:
    """Проверяет подпись вебхука (схема Stripe: t=..., v1=HMAC-SHA256) и разбирает тело."""
    if not signature:
        raise EventAuthenticityError("Отсутствует подпись события", field="stripe-signature")
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature,
            secret,
            stripe.Webhook.DEFAULT_TOLERANCE,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
        raise EventAuthenticityError("Подпись события не прошла проверку", field="stripe-signature") from e
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise EventAuthenticityError("Тело события не является JSON") from e


class StripeGateway(PaymentGateway):
    """
    Реализация на stripe SDK.
    Синхронные вызовы SDK уходят в пул потоков через asyncio.to_thread.
    """

    mode = PaymentsMode.STRIPE

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        connect_return_url: str,
        connect_refresh_url: str,
        api_version: str | None = None,
        max_network_retries: int = 0,
    ) -> None:
        self._api_key = secret_key
        self._webhook_secret = webhook_secret
        self._return_url = connect_return_url
        self._refresh_url = connect_refresh_url
        if api_version:
            stripe.api_version = api_version
        stripe.max_network_retries = max_network_retries

    async def _call(self, operation: str, func: Callable[..., T], **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(partial(func, api_key=self._api_key, **kwargs))
        except stripe.StripeError as e:
            retryable = _is_retryable(e)
            await log_error(
                f"Stripe: ошибка операции {operation}: {e.user_message or e}",
                extra={
                    "operation": operation,
                    "stripe_code": e.code,
                    "http_status": e.http_status,
                    "retryable": retryable,
                },
            )
            raise ExternalServiceError(
                "Платёжный сервис недоступен, попробуйте позже" if retryable
                else "Платёжный сервис отклонил операцию",
                retryable=retryable,
                code="payment_provider_error",
                details={"operation": operation},
            ) from e

    @staticmethod
    def _to_hold(intent: Any) -> PaymentHold:
        return PaymentHold(
            id=intent["id"],
            status=intent["status"],
            amount=intent["amount"],
            currency=intent["currency"],
            client_secret=intent.get("client_secret"),
            metadata=dict(intent.get("metadata") or {}),
        )

    async def create_hold(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
        description: str | None = None,
    ) -> PaymentHold:
        intent = await self._call(
            "payment_intent.create",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            capture_method="automatic",
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
            description=description,
            idempotency_key=idempotency_key,
        )
        await log_info(
            f"Stripe: создан PaymentIntent {intent['id']}",
            type_msg=TypeMsg.DEBUG,
            extra={"booking_id": metadata.get("booking_id")},
        )
        return self._to_hold(intent)

    async def retrieve_hold(self, hold_id: str) -> PaymentHold:
        intent = await self._call("payment_intent.retrieve", stripe.PaymentIntent.retrieve, id=hold_id)
        return self._to_hold(intent)

    async def refund(self, hold_id: str, idempotency_key: str, reason: str | None = None) -> RefundReceipt:
        refund = await self._call(
            "refund.create",
            stripe.Refund.create,
            payment_intent=hold_id,
            reason=reason or "requested_by_customer",
            idempotency_key=idempotency_key,
        )
        return RefundReceipt(id=refund["id"], status=refund["status"], amount=refund["amount"])

    async def create_transfer(
        self,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> TransferReceipt:
        transfer = await self._call(
            "transfer.create",
            stripe.Transfer.create,
            amount=amount,
            currency=currency,
            destination=destination,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return TransferReceipt(
            id=transfer["id"],
            amount=transfer["amount"],
            currency=transfer["currency"],
            reversed=bool(transfer.get("reversed")),
        )

    async def create_connected_account(self, user_id: str, email: str | None, country: str) -> str:
        params: dict[str, Any] = {
            "type": "express",
            "country": country,
            "capabilities": {"transfers": {"requested": True}},
            "metadata": {"sendbox_user_id": user_id},
            "idempotency_key": f"connect_account_{user_id}",
        }
        if email:
            params["email"] = email
        account = await self._call("account.create", stripe.Account.create, **params)
        return account["id"]

    async def create_onboarding_link(self, account_id: str) -> OnboardingLink:
        link = await self._call(
            "account_link.create",
            stripe.AccountLink.create,
            account=account_id,
            type="account_onboarding",
            refresh_url=self._refresh_url,
            return_url=self._return_url,
        )
        return OnboardingLink(url=link["url"], expires_at=link.get("expires_at"))

    async def get_account_status(self, account_id: str) -> AccountStatus:
        account = await self._call("account.retrieve", stripe.Account.retrieve, id=account_id)
        requirements = account.get("requirements") or {}
        return AccountStatus(
            account_id=account["id"],
            charges_enabled=bool(account.get("charges_enabled")),
            payouts_enabled=bool(account.get("payouts_enabled")),
            details_submitted=bool(account.get("details_submitted")),
            requirements={
                "currently_due": list(requirements.get("currently_due") or []),
                "pending_verification": list(requirements.get("pending_verification") or []),
                "disabled_reason": requirements.get("disabled_reason"),
            },
        )

    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        return _verify_signed_event(payload, signature, self._webhook_secret)


# =============================================================================
# СИМУЛЯЦИЯ
# =============================================================================

class SimulatedGateway(PaymentGateway):
    """
    Локальная симуляция провайдера (режим simulation).
    Удержания живут в памяти процесса; подтверждение оплаты приходит
    синтетическим событием через сверщик, как и в реальном режиме.
    Входящие вебхуки проверяются той же подписью, что и в режиме stripe;
    без секрета подписи вебхуки отклоняются, а simulate_payment
    передаёт событие сверщику напрямую.
    """

    mode = PaymentsMode.SIMULATION

    def __init__(self, webhook_secret: str = "") -> None:
        self._webhook_secret = webhook_secret
        self._holds: dict[str, PaymentHold] = {}
        self._by_key: dict[str, str] = {}

    async def create_hold(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
        description: str | None = None,
    ) -> PaymentHold:
        existing = self._by_key.get(idempotency_key)
        if existing:
            return self._holds[existing]
        hold_id = f"pi_sim_{uuid4().hex[:24]}"
        hold = PaymentHold(
            id=hold_id,
            status=PaymentStatus.REQUIRES_PAYMENT_METHOD.value,
            amount=amount,
            currency=currency,
            client_secret=f"{hold_id}_secret_sim",
            metadata=dict(metadata),
        )
        self._holds[hold_id] = hold
        self._by_key[idempotency_key] = hold_id
        return hold

    async def retrieve_hold(self, hold_id: str) -> PaymentHold:
        hold = self._holds.get(hold_id)
        if hold is None:
            # Удержание из другого процесса: считаем его ожидающим оплаты
            return PaymentHold(
                id=hold_id,
                status=PaymentStatus.REQUIRES_PAYMENT_METHOD.value,
                amount=0,
                currency="eur",
                client_secret=f"{hold_id}_secret_sim",
            )
        return hold

    def mark_succeeded(self, hold_id: str) -> None:
        if hold_id in self._holds:
            self._holds[hold_id].status = PaymentStatus.SUCCEEDED.value

    async def refund(self, hold_id: str, idempotency_key: str, reason: str | None = None) -> RefundReceipt:
        hold = self._holds.get(hold_id)
        return RefundReceipt(id=f"re_sim_{uuid4().hex[:24]}", status="succeeded", amount=hold.amount if hold else 0)

    async def create_transfer(
        self,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> TransferReceipt:
        return TransferReceipt(id=f"tr_sim_{uuid4().hex[:24]}", amount=amount, currency=currency)

    async def create_connected_account(self, user_id: str, email: str | None, country: str) -> str:
        return f"acct_sim_{user_id.replace('-', '')[:16]}"

    async def create_onboarding_link(self, account_id: str) -> OnboardingLink:
        return OnboardingLink(url=f"https://connect.simulated.local/onboarding/{account_id}")

    async def get_account_status(self, account_id: str) -> AccountStatus:
        return AccountStatus(
            account_id=account_id,
            charges_enabled=True,
            payouts_enabled=True,
            details_submitted=True,
        )

    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        if not self._webhook_secret:
            raise EventAuthenticityError(
                "Вебхуки в режиме simulation отключены: не задан секрет подписи",
                field="stripe-signature",
            )
        return _verify_signed_event(payload, signature, self._webhook_secret)


def build_gateway() -> PaymentGateway | None:
    """
    Шлюз по режиму из конфигурации.
    В режиме disabled возвращает None: оплата отклоняется сервисом.
    """
    from sendbox.config import settings

    mode = settings.payments.PAYMENTS_MODE
    if mode == PaymentsMode.STRIPE:
        return StripeGateway(
            secret_key=settings.payments.STRIPE_SECRET_KEY,
            webhook_secret=settings.payments.STRIPE_WEBHOOK_SECRET,
            connect_return_url=settings.payments.CONNECT_RETURN_URL,
            connect_refresh_url=settings.payments.CONNECT_REFRESH_URL,
            api_version=settings.payments.STRIPE_API_VERSION,
            max_network_retries=settings.payments.STRIPE_MAX_NETWORK_RETRIES,
        )
    if mode == PaymentsMode.SIMULATION:
        return SimulatedGateway(webhook_secret=settings.payments.STRIPE_WEBHOOK_SECRET)
    return None
