# sendbox/core/profiles/repository.py
"""
Репозиторий профилей.
Обновления KYC и статуса выплат приходят из вебхуков и применяются
только если событие не старше уже применённого.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from asyncpg import Record

from sendbox.common.constants import KYCStatus, PayoutStatus
from sendbox.core.profiles.models import Profile
from sendbox.infra.database import DatabaseManager

_PROFILE_COLUMNS = """
    id, email, first_name, last_name, role, country,
    kyc_status, kyc_session_id, kyc_rejection_reason, kyc_updated_at,
    stripe_account_id, payout_status, payouts_enabled, payout_requirements, payout_updated_at,
    rating, completed_services
"""


class ProfileRepository:
    """Репозиторий профилей."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных
        """
        self._db = db

    async def get_by_id(self, profile_id: str) -> Optional[Profile]:
        row = await self._db.fetchrow(
            f"SELECT {_PROFILE_COLUMNS} FROM profiles WHERE id = $1",
            profile_id,
        )
        return self._row_to_profile(row) if row else None

    async def get_by_stripe_account(self, account_id: str) -> Optional[Profile]:
        row = await self._db.fetchrow(
            f"SELECT {_PROFILE_COLUMNS} FROM profiles WHERE stripe_account_id = $1",
            account_id,
        )
        return self._row_to_profile(row) if row else None

    async def get_by_kyc_session(self, session_id: str) -> Optional[Profile]:
        row = await self._db.fetchrow(
            f"SELECT {_PROFILE_COLUMNS} FROM profiles WHERE kyc_session_id = $1",
            session_id,
        )
        return self._row_to_profile(row) if row else None

    async def set_stripe_account(self, profile_id: str, account_id: str) -> bool:
        """Привязывает Connect-аккаунт, если он ещё не привязан."""
        result = await self._db.execute(
            """
            UPDATE profiles
            SET stripe_account_id = $2, payout_status = $3, updated_at = NOW()
            WHERE id = $1 AND stripe_account_id IS NULL
            """,
            profile_id,
            account_id,
            PayoutStatus.PENDING.value,
        )
        return result == "UPDATE 1"

    async def update_kyc(
        self,
        profile_id: str,
        status: KYCStatus,
        event_at: datetime,
        rejection_reason: str | None = None,
    ) -> bool:
        """
        Применяет статус верификации.

        Returns:
            False, если уже применено более новое событие
        """
        result = await self._db.execute(
            """
            UPDATE profiles
            SET kyc_status = $2,
                kyc_rejection_reason = $3,
                kyc_updated_at = $4,
                updated_at = NOW()
            WHERE id = $1
              AND (kyc_updated_at IS NULL OR kyc_updated_at <= $4)
            """,
            profile_id,
            status.value,
            rejection_reason,
            event_at,
        )
        return result == "UPDATE 1"

    async def update_payout(
        self,
        profile_id: str,
        status: PayoutStatus,
        payouts_enabled: bool,
        requirements: dict[str, Any],
        event_at: datetime,
    ) -> bool:
        """Применяет состояние Connect-аккаунта (с той же защитой от устаревших событий)."""
        result = await self._db.execute(
            """
            UPDATE profiles
            SET payout_status = $2,
                payouts_enabled = $3,
                payout_requirements = $4::jsonb,
                payout_updated_at = $5,
                updated_at = NOW()
            WHERE id = $1
              AND (payout_updated_at IS NULL OR payout_updated_at <= $5)
            """,
            profile_id,
            status.value,
            payouts_enabled,
            json.dumps(requirements),
            event_at,
        )
        return result == "UPDATE 1"

    @staticmethod
    def _row_to_profile(row: Record) -> Profile:
        requirements = row["payout_requirements"]
        if isinstance(requirements, str):
            requirements = json.loads(requirements)
        return Profile(
            id=str(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=row["role"],
            country=row["country"],
            kyc_status=row["kyc_status"],
            kyc_session_id=row["kyc_session_id"],
            kyc_rejection_reason=row["kyc_rejection_reason"],
            kyc_updated_at=row["kyc_updated_at"],
            stripe_account_id=row["stripe_account_id"],
            payout_status=row["payout_status"],
            payouts_enabled=row["payouts_enabled"],
            payout_requirements=requirements or {},
            payout_updated_at=row["payout_updated_at"],
            rating=float(row["rating"] or 0),
            completed_services=row["completed_services"] or 0,
        )
