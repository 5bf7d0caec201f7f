# sendbox/core/profiles/service.py
"""
Подключение путешественника к выплатам (Connect-аккаунт).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sendbox.common.constants import PayoutStatus, TypeMsg
from sendbox.common.errors import ExternalServiceError, NotFoundError, ValidationError
from sendbox.common.logger import log_error, log_info
from sendbox.core.eligibility.gate import EligibilityGate, GateAction
from sendbox.core.payments.gateway import PaymentGateway
from sendbox.core.profiles.models import AuthContext, Profile
from sendbox.core.profiles.repository import ProfileRepository
from sendbox.infra.event_bus import DomainEvent, EventBus, EventTypes


@dataclass
class PayoutAccountLink:
    account_id: str
    onboarding_url: str
    created: bool = False


class PayoutOnboardingService:
    """Создание аккаунта выплат и синхронизация его статуса."""

    def __init__(
        self,
        profiles: ProfileRepository,
        gateway: PaymentGateway | None,
        gate: EligibilityGate,
        event_bus: EventBus,
        countries: list[str],
        default_country: str = "FR",
    ) -> None:
        """
        Args:
            profiles: Репозиторий профилей
            gateway: Платёжный шлюз
            gate: Шлюз допуска
            event_bus: Шина событий
            countries: Страны, где доступны выплаты
            default_country: Страна, если в профиле не указана
        """
        self._profiles = profiles
        self._gateway = gateway
        self._gate = gate
        self._event_bus = event_bus
        self._countries = [c.upper() for c in countries]
        self._default_country = default_country.upper()

    async def create_payout_account(self, ctx: AuthContext) -> PayoutAccountLink:
        """
        Возвращает ссылку онбординга; аккаунт создаётся один раз.

        Raises:
            AuthorizationError: Шлюз допуска отказал
            ValidationError: Страна профиля не поддерживается
            ExternalServiceError: Провайдер недоступен
        """
        profile = await self._require(ctx)
        gateway = self._require_gateway()

        created = False
        account_id = profile.stripe_account_id
        if not account_id:
            country = (profile.country or self._default_country).upper()
            if country not in self._countries:
                raise ValidationError(
                    f"Выплаты недоступны для страны {country}",
                    field="country",
                    code="country_not_supported",
                )
            account_id = await gateway.create_connected_account(profile.id, profile.email, country)
            if not await self._profiles.set_stripe_account(profile.id, account_id):
                # Параллельный запрос уже привязал аккаунт
                current = await self._profiles.get_by_id(profile.id)
                account_id = current.stripe_account_id if current and current.stripe_account_id else account_id
            else:
                created = True
                await log_info(
                    f"Создан аккаунт выплат {account_id} для {profile.id}",
                    type_msg=TypeMsg.INFO,
                    extra={"user_id": profile.id},
                )

        link = await gateway.create_onboarding_link(account_id)
        return PayoutAccountLink(account_id=account_id, onboarding_url=link.url, created=created)

    async def refresh_payout_status(self, ctx: AuthContext) -> Profile:
        profile = await self._require(ctx)
        gateway = self._require_gateway()

        if not profile.stripe_account_id:
            raise NotFoundError("Аккаунт выплат ещё не создан", field="payouts", code="payout_account_missing")

        status = await gateway.get_account_status(profile.stripe_account_id)
        payout_status = PayoutStatus.ACTIVE if status.payouts_enabled else PayoutStatus.PENDING
        await self._profiles.update_payout(
            profile.id,
            payout_status,
            status.payouts_enabled,
            status.requirements,
            datetime.now(timezone.utc),
        )

        if status.payouts_enabled and not profile.payouts_enabled:
            try:
                await self._event_bus.publish(
                    DomainEvent(event_type=EventTypes.PAYOUT_ENABLED, payload={"user_id": profile.id})
                )
            except Exception as e:
                await log_error(
                    f"Не удалось опубликовать {EventTypes.PAYOUT_ENABLED}: {e}",
                    extra={"user_id": profile.id},
                )

        return await self._profiles.get_by_id(profile.id) or profile

    async def _require(self, ctx: AuthContext) -> Profile:
        profile = await self._profiles.get_by_id(ctx.user_id)
        if profile is None:
            raise NotFoundError("Профиль не найден", field="profile")
        self._gate.require(profile, GateAction.ONBOARD_PAYOUTS)
        return profile

    def _require_gateway(self) -> PaymentGateway:
        if self._gateway is None:
            raise ExternalServiceError("Платежи временно отключены", retryable=False, code="payments_disabled")
        return self._gateway
