# sendbox/core/notifications/__init__.py
"""
Уведомления в приложении.
"""

from sendbox.core.notifications.models import Notification
from sendbox.core.notifications.repository import NotificationRepository
from sendbox.core.notifications.service import NotificationService

__all__ = [
    "Notification",
    "NotificationRepository",
    "NotificationService",
]
