# sendbox/core/profiles/models.py
"""
Модели профилей и контекста аутентификации.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from sendbox.common.constants import KYCStatus, PayoutStatus, UserRole


@dataclass(frozen=True)
class AuthContext:
    """Кто выполняет операцию. Передаётся явно в каждый вызов сервиса."""
    user_id: str
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Profile(BaseModel):
    """Профиль пользователя платформы (отправитель и/или путешественник)."""

    id: str = Field(..., description="UUID профиля")
    email: str = Field(..., description="Email")
    first_name: Optional[str] = Field(None, description="Имя")
    last_name: Optional[str] = Field(None, description="Фамилия")
    role: UserRole = Field(UserRole.USER, description="Роль")
    country: Optional[str] = Field(None, description="Страна (ISO-2)")

    # Проверка личности
    kyc_status: KYCStatus = Field(KYCStatus.NONE, description="Статус KYC")
    kyc_session_id: Optional[str] = Field(None, description="Сессия верификации у провайдера")
    kyc_rejection_reason: Optional[str] = Field(None, description="Причина отказа KYC")
    kyc_updated_at: Optional[datetime] = Field(None, description="Время последнего применённого события KYC")

    # Выплаты
    stripe_account_id: Optional[str] = Field(None, description="Connect-аккаунт для выплат")
    payout_status: PayoutStatus = Field(PayoutStatus.INACTIVE, description="Статус выплат")
    payouts_enabled: bool = Field(False, description="Провайдер разрешил выплаты")
    payout_requirements: dict[str, Any] = Field(default_factory=dict, description="Недостающие данные аккаунта")
    payout_updated_at: Optional[datetime] = Field(None, description="Время последнего применённого события аккаунта")

    rating: float = Field(0.0, ge=0.0, le=5.0, description="Средняя оценка")
    completed_services: int = Field(0, ge=0, description="Завершённых доставок")

    class Config:
        from_attributes = True

    @property
    def full_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or self.email
