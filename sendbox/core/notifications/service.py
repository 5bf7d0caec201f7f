# sendbox/core/notifications/service.py
"""
Сервис уведомлений.
Хранит уведомления в приложении: не больше одного непрочитанного
на (пользователь, тип, заголовок).
"""

from __future__ import annotations

from sendbox.common.constants import NotificationType, TypeMsg
from sendbox.common.errors import NotFoundError
from sendbox.common.localization import get_text
from sendbox.common.logger import log_info
from sendbox.core.notifications.models import Notification
from sendbox.core.notifications.repository import NotificationRepository


class NotificationService:
    """Создание и чтение уведомлений."""

    def __init__(self, repository: NotificationRepository, language: str = "fr") -> None:
        """
        Args:
            repository: Репозиторий уведомлений
            language: Язык текстов по умолчанию
        """
        self._repository = repository
        self._language = language

    async def notify(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        content: str,
        booking_id: str | None = None,
    ) -> Notification:
        notification = await self._repository.replace_unread(
            user_id=user_id,
            type=type,
            title=title,
            content=content,
            booking_id=booking_id,
        )
        await log_info(
            f"Уведомление {type.value} для {user_id}",
            type_msg=TypeMsg.DEBUG,
            extra={"notification_id": notification.id, "booking_id": booking_id},
        )
        return notification

    async def notify_template(
        self,
        user_id: str,
        type: NotificationType,
        key: str,
        booking_id: str | None = None,
        **params: object,
    ) -> Notification:
        """
        Уведомление по шаблону из lang_dict: <key>_TITLE и <key>_CONTENT.

        Example:
            await service.notify_template(traveler_id, NotificationType.BOOKING_REQUEST,
                                          "NOTIF_BOOKING_REQUEST", booking_id, kilos="5")
        """
        return await self.notify(
            user_id=user_id,
            type=type,
            title=get_text(f"{key}_TITLE", self._language),
            content=get_text(f"{key}_CONTENT", self._language, **params),
            booking_id=booking_id,
        )

    async def list_unread(self, user_id: str, limit: int = 50) -> list[Notification]:
        return await self._repository.list_unread(user_id, limit=limit)

    async def mark_read(self, user_id: str, notification_id: str) -> Notification:
        notification = await self._repository.mark_read(user_id, notification_id)
        if notification is None:
            raise NotFoundError("Уведомление не найдено", field="notification_id")
        return notification
