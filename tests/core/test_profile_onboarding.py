# tests/core/test_profile_onboarding.py
"""
Тесты подключения путешественника к выплатам.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from sendbox.common.constants import KYCStatus, PayoutStatus
from sendbox.common.errors import AuthorizationError, ExternalServiceError, NotFoundError, ValidationError
from sendbox.core.eligibility.gate import EligibilityGate
from sendbox.core.profiles.models import AuthContext
from sendbox.core.profiles.service import PayoutOnboardingService
from sendbox.infra.event_bus import EventTypes
from conftest import make_profile


@pytest.fixture
def onboarding(market: SimpleNamespace) -> PayoutOnboardingService:
    return PayoutOnboardingService(
        profiles=market.profiles,
        gateway=market.gateway,
        gate=EligibilityGate(kyc_enabled=True, enforce_payouts=True),
        event_bus=market.event_bus,
        countries=["fr", "BE"],
        default_country="fr",
    )


def add_profile(market: SimpleNamespace, **overrides):
    data = {"payout_status": PayoutStatus.INACTIVE, "payouts_enabled": False}
    data.update(overrides)
    profile = make_profile(**data)
    market.profiles.items[profile.id] = profile
    return profile


class TestCreatePayoutAccount:

    @pytest.mark.asyncio
    async def test_creates_account_once(self, market: SimpleNamespace, onboarding: PayoutOnboardingService) -> None:
        profile = add_profile(market)

        first = await onboarding.create_payout_account(AuthContext(user_id=profile.id))
        second = await onboarding.create_payout_account(AuthContext(user_id=profile.id))

        assert first.created is True
        assert first.account_id.startswith("acct_sim_")
        assert first.account_id in first.onboarding_url
        assert second.created is False
        assert second.account_id == first.account_id
        stored = market.profiles.items[profile.id]
        assert stored.stripe_account_id == first.account_id
        assert stored.payout_status == PayoutStatus.PENDING

    @pytest.mark.asyncio
    async def test_missing_country_uses_default(self, market: SimpleNamespace, onboarding: PayoutOnboardingService) -> None:
        profile = add_profile(market, country=None)

        link = await onboarding.create_payout_account(AuthContext(user_id=profile.id))

        assert link.created is True

    @pytest.mark.asyncio
    async def test_unsupported_country(self, market: SimpleNamespace, onboarding: PayoutOnboardingService) -> None:
        profile = add_profile(market, country="BJ")

        with pytest.raises(ValidationError) as exc_info:
            await onboarding.create_payout_account(AuthContext(user_id=profile.id))

        assert exc_info.value.code == "country_not_supported"
        assert market.profiles.items[profile.id].stripe_account_id is None

    @pytest.mark.asyncio
    async def test_kyc_required(self, market: SimpleNamespace, onboarding: PayoutOnboardingService) -> None:
        profile = add_profile(market, kyc_status=KYCStatus.NONE)

        with pytest.raises(AuthorizationError) as exc_info:
            await onboarding.create_payout_account(AuthContext(user_id=profile.id))

        assert exc_info.value.code == "kyc_required"

    @pytest.mark.asyncio
    async def test_concurrent_request_keeps_existing_account(
        self, market: SimpleNamespace, onboarding: PayoutOnboardingService,
    ) -> None:
        """Если аккаунт уже привязан параллельно, возвращается привязанный."""
        profile = add_profile(market)

        async def attach_other(profile_id: str, account_id: str) -> bool:
            market.profiles.items[profile_id] = market.profiles.items[profile_id].model_copy(
                update={"stripe_account_id": "acct_first"}
            )
            return False

        with patch.object(market.profiles, "set_stripe_account", new=AsyncMock(side_effect=attach_other)):
            link = await onboarding.create_payout_account(AuthContext(user_id=profile.id))

        assert link.account_id == "acct_first"
        assert link.created is False

    @pytest.mark.asyncio
    async def test_payments_disabled(self, market: SimpleNamespace) -> None:
        profile = add_profile(market)
        service = PayoutOnboardingService(
            market.profiles, None, EligibilityGate(), market.event_bus, ["FR"],
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await service.create_payout_account(AuthContext(user_id=profile.id))

        assert exc_info.value.code == "payments_disabled"

    @pytest.mark.asyncio
    async def test_unknown_profile(self, onboarding: PayoutOnboardingService) -> None:
        with pytest.raises(NotFoundError):
            await onboarding.create_payout_account(AuthContext(user_id="missing"))


class TestRefreshPayoutStatus:

    @pytest.mark.asyncio
    async def test_without_account(self, market: SimpleNamespace, onboarding: PayoutOnboardingService) -> None:
        profile = add_profile(market)

        with pytest.raises(NotFoundError) as exc_info:
            await onboarding.refresh_payout_status(AuthContext(user_id=profile.id))

        assert exc_info.value.code == "payout_account_missing"

    @pytest.mark.asyncio
    async def test_activates_payouts(self, market: SimpleNamespace, onboarding: PayoutOnboardingService) -> None:
        profile = add_profile(market, stripe_account_id="acct_sim_1", payout_status=PayoutStatus.PENDING)

        refreshed = await onboarding.refresh_payout_status(AuthContext(user_id=profile.id))

        assert refreshed.payout_status == PayoutStatus.ACTIVE
        assert refreshed.payouts_enabled is True
        event = market.event_bus.publish.await_args.args[0]
        assert event.event_type == EventTypes.PAYOUT_ENABLED
        assert event.payload == {"user_id": profile.id}

    @pytest.mark.asyncio
    async def test_already_active_does_not_republish(
        self, market: SimpleNamespace, onboarding: PayoutOnboardingService,
    ) -> None:
        profile = add_profile(
            market, stripe_account_id="acct_sim_2", payout_status=PayoutStatus.ACTIVE, payouts_enabled=True,
        )

        await onboarding.refresh_payout_status(AuthContext(user_id=profile.id))

        market.event_bus.publish.assert_not_awaited()
