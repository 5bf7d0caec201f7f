# sendbox/worker/__init__.py
"""
Фоновые воркеры для обработки событий из RabbitMQ.
"""

from sendbox.worker.base import BaseWorker
from sendbox.worker.notifications import NotificationWorker
from sendbox.worker.payouts import PayoutWorker

__all__ = ["BaseWorker", "NotificationWorker", "PayoutWorker"]
