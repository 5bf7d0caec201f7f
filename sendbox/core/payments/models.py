# sendbox/core/payments/models.py
"""
Типизированные модели событий платёжного провайдера.
Полезная нагрузка вебхука разбирается здесь, на границе; дальше по коду
ходят только эти модели.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProviderEventType(str, Enum):
    """Обрабатываемые типы событий."""
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    CHARGE_REFUNDED = "charge.refunded"
    VERIFICATION_VERIFIED = "identity.verification_session.verified"
    VERIFICATION_REQUIRES_INPUT = "identity.verification_session.requires_input"
    VERIFICATION_PROCESSING = "identity.verification_session.processing"
    VERIFICATION_CANCELED = "identity.verification_session.canceled"
    VERIFICATION_REDACTED = "identity.verification_session.redacted"
    ACCOUNT_UPDATED = "account.updated"


class _ProviderObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PaymentError(_ProviderObject):
    code: Optional[str] = None
    message: Optional[str] = None


class PaymentIntentObject(_ProviderObject):
    id: str
    amount: int = 0
    currency: str = "eur"
    status: str
    metadata: dict[str, str] = Field(default_factory=dict)
    last_payment_error: Optional[PaymentError] = None

    @property
    def booking_id(self) -> Optional[str]:
        return self.metadata.get("booking_id")


class ChargeObject(_ProviderObject):
    id: str
    payment_intent: Optional[str] = None
    amount: int = 0
    amount_refunded: int = 0
    currency: str = "eur"
    refunded: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)


class VerificationError(_ProviderObject):
    code: Optional[str] = None
    reason: Optional[str] = None


class VerificationSessionObject(_ProviderObject):
    id: str
    status: str
    metadata: dict[str, str] = Field(default_factory=dict)
    last_error: Optional[VerificationError] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("user_id") or self.metadata.get("sendbox_user_id")


class AccountRequirements(_ProviderObject):
    currently_due: list[str] = Field(default_factory=list)
    pending_verification: list[str] = Field(default_factory=list)
    disabled_reason: Optional[str] = None


class IndividualVerification(_ProviderObject):
    status: Optional[str] = None


class AccountIndividual(_ProviderObject):
    verification: Optional[IndividualVerification] = None


class AccountObject(_ProviderObject):
    id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    requirements: Optional[AccountRequirements] = None
    individual: Optional[AccountIndividual] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def individual_verified(self) -> bool:
        return bool(
            self.individual
            and self.individual.verification
            and self.individual.verification.status == "verified"
        )


class ProviderEventData(_ProviderObject):
    object: dict[str, Any]


class ProviderEvent(_ProviderObject):
    """Конверт события провайдера."""
    id: str
    type: str
    created: int = 0
    livemode: bool = False
    data: ProviderEventData

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.created, tz=timezone.utc)


class ReconcileStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class ReconcileOutcome(BaseModel):
    """Итог обработки события."""
    event_id: str
    event_type: str
    status: ReconcileStatus
    detail: Optional[str] = None


class Payment(BaseModel):
    """Строка таблицы payments."""
    booking_id: str
    payment_intent_id: str
    amount_total_cents: int
    platform_fee_cents: int
    currency: str = "eur"
    status: str
    last_error: Optional[str] = None


class Transfer(BaseModel):
    """Строка таблицы transfers."""
    id: Optional[str] = None
    booking_id: str
    traveler_id: str
    stripe_transfer_id: Optional[str] = None
    amount_cents: int
    currency: str = "eur"
    status: str
    reason: str
