# sendbox/core/notifications/models.py
"""
Модель уведомления.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from sendbox.common.constants import NotificationType


class Notification(BaseModel):
    """Уведомление пользователя в приложении."""

    id: str = Field(..., description="UUID уведомления")
    user_id: str = Field(..., description="Получатель")
    type: NotificationType = Field(..., description="Тип")
    title: str = Field(..., description="Заголовок (часть ключа уникальности)")
    content: str = Field(..., description="Текст")
    booking_id: Optional[str] = Field(None, description="Связанное бронирование")
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def is_read(self) -> bool:
        return self.read_at is not None
