# sendbox/core/eligibility/gate.py
"""
Шлюз допуска к денежным операциям.

Проверки выполняются до любых побочных эффектов:
    1. администратор не участвует в сделках;
    2. при включённом KYC нужен статус approved;
    3. принять бронирование и получить выплату может только
       путешественник с активным аккаунтом выплат (если выплаты реальные).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

from sendbox.common.constants import KYCStatus, PayoutStatus, UserRole
from sendbox.common.errors import AuthorizationError
from sendbox.core.profiles.models import Profile


class GateAction(str, Enum):
    """Операции, проходящие через шлюз."""
    BOOK = "book"
    PAY = "pay"
    ACCEPT_BOOKING = "accept_booking"
    RECEIVE_PAYOUT = "receive_payout"
    ONBOARD_PAYOUTS = "onboard_payouts"


# Операции, где деньги уходят путешественнику
_PAYOUT_ACTIONS = frozenset({GateAction.ACCEPT_BOOKING, GateAction.RECEIVE_PAYOUT})

_KYC_DENIALS: dict[KYCStatus, tuple[str, str]] = {
    KYCStatus.PENDING: ("kyc_pending", "Проверка личности ещё не завершена"),
    KYCStatus.REJECTED: ("kyc_rejected", "Проверка личности отклонена"),
    KYCStatus.INCOMPLETE: ("kyc_incomplete", "Проверка личности не завершена: не хватает данных"),
    KYCStatus.NONE: ("kyc_required", "Для этой операции нужна проверка личности"),
}


@dataclass(frozen=True)
class EligibilityDecision:
    """Результат проверки: allowed либо отказ с кодом и полем."""
    allowed: bool
    reason: str | None = None
    code: str | None = None
    field: str | None = None

    @classmethod
    def allow(cls) -> EligibilityDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, code: str, field: str | None = None) -> EligibilityDecision:
        return cls(allowed=False, reason=reason, code=code, field=field)

    def raise_for_denial(self) -> None:
        """Поднимает AuthorizationError, если операция запрещена."""
        if not self.allowed:
            raise AuthorizationError(self.reason or "Операция запрещена", field=self.field, code=self.code)


class EligibilityGate:
    """
    Args:
        kyc_enabled: Требовать ли approved KYC
        enforce_payouts: Требовать ли активный аккаунт выплат
    """

    def __init__(self, kyc_enabled: bool = True, enforce_payouts: bool = True) -> None:
        self._kyc_enabled = kyc_enabled
        self._enforce_payouts = enforce_payouts

    def can_transact(self, profile: Profile, action: GateAction) -> EligibilityDecision:
        if profile.role == UserRole.ADMIN:
            return EligibilityDecision.deny(
                "Администраторы не участвуют в сделках",
                code="admin_not_allowed",
            )

        if self._kyc_enabled and profile.kyc_status != KYCStatus.APPROVED:
            code, reason = _KYC_DENIALS.get(profile.kyc_status, _KYC_DENIALS[KYCStatus.NONE])
            if profile.kyc_status == KYCStatus.REJECTED and profile.kyc_rejection_reason:
                reason = f"{reason}: {profile.kyc_rejection_reason}"
            return EligibilityDecision.deny(reason, code=code, field="kyc")

        if (
            action in _PAYOUT_ACTIONS
            and self._enforce_payouts
            and profile.payout_status != PayoutStatus.ACTIVE
        ):
            return EligibilityDecision.deny(
                "Сначала подключите аккаунт для получения выплат",
                code="payouts_not_enabled",
                field="payouts",
            )

        return EligibilityDecision.allow()

    def require(self, profile: Profile, action: GateAction) -> None:
        """can_transact + исключение при отказе."""
        self.can_transact(profile, action).raise_for_denial()


@lru_cache()
def get_eligibility_gate() -> EligibilityGate:
    from sendbox.config import settings

    return EligibilityGate(
        kyc_enabled=settings.features.KYC_ENABLED,
        enforce_payouts=settings.payments.payouts_enforced,
    )
