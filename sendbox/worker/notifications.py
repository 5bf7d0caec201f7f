# sendbox/worker/notifications.py
"""
Воркер уведомлений.
Превращает доменные события в уведомления в приложении.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

from sendbox.common.constants import KYCStatus, NotificationType
from sendbox.core.notifications.service import NotificationService
from sendbox.infra.event_bus import DomainEvent, EventBus, EventTypes
from sendbox.worker.base import BaseWorker


def _format_amount(cents: Any) -> str:
    return f"{int(cents or 0) / 100:.2f}"


class NotificationWorker(BaseWorker):
    """
    Воркер уведомлений.
    Получатель выбирается по роли в событии: отправитель, путешественник
    или противоположная сторона того, кто выполнил действие.
    """

    def __init__(self, notifications: NotificationService, event_bus: Optional[EventBus] = None) -> None:
        super().__init__(event_bus)
        self._notifications = notifications
        self._handlers: Dict[str, Callable[[dict], Awaitable[None]]] = {
            EventTypes.BOOKING_CREATED: self._on_booking_created,
            EventTypes.BOOKING_ACCEPTED: self._on_booking_accepted,
            EventTypes.BOOKING_REFUSED: self._on_booking_refused,
            EventTypes.BOOKING_CANCELLED: self._on_booking_cancelled,
            EventTypes.BOOKING_EXPIRED: self._on_booking_expired,
            EventTypes.BOOKING_IN_TRANSIT: self._on_in_transit,
            EventTypes.BOOKING_DELIVERED: self._on_delivered,
            EventTypes.BOOKING_COMPLETED: self._on_completed,
            EventTypes.BOOKING_DISPUTED: self._on_disputed,
            EventTypes.PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            EventTypes.PAYMENT_FAILED: self._on_payment_failed,
            EventTypes.PAYOUT_RELEASED: self._on_payout_released,
            EventTypes.PAYOUT_BLOCKED: self._on_payout_blocked,
            EventTypes.PAYOUT_ENABLED: self._on_payout_enabled,
            EventTypes.KYC_UPDATED: self._on_kyc_updated,
        }

    @property
    def name(self) -> str:
        return "NotificationWorker"

    @property
    def subscriptions(self) -> List[str]:
        return list(self._handlers)

    async def handle_event(self, event: DomainEvent) -> None:
        handler = self._handlers.get(event.event_type)
        if handler:
            await handler(event.payload)

    # ===== БРОНИРОВАНИЯ =====

    async def _on_booking_created(self, payload: dict) -> None:
        await self._notifications.notify_template(
            payload["traveler_id"],
            NotificationType.BOOKING_REQUEST,
            "NOTIF_BOOKING_REQUEST",
            payload.get("booking_id"),
            kilos=payload.get("kilos", ""),
        )

    async def _on_booking_accepted(self, payload: dict) -> None:
        await self._notifications.notify_template(
            payload["sender_id"],
            NotificationType.BOOKING_ACCEPTED,
            "NOTIF_BOOKING_ACCEPTED",
            payload.get("booking_id"),
        )

    async def _on_booking_refused(self, payload: dict) -> None:
        await self._notifications.notify_template(
            payload["sender_id"],
            NotificationType.BOOKING_REFUSED,
            "NOTIF_BOOKING_REFUSED",
            payload.get("booking_id"),
            reason=payload.get("reason", ""),
        )

    async def _on_booking_cancelled(self, payload: dict) -> None:
        cancelled_by = payload.get("cancelled_by")
        if cancelled_by == "sender":
            recipients = [payload["traveler_id"]]
        elif cancelled_by == "traveler":
            recipients = [payload["sender_id"]]
        else:
            recipients = [payload["sender_id"], payload["traveler_id"]]

        for user_id in recipients:
            await self._notifications.notify_template(
                user_id,
                NotificationType.BOOKING_CANCELLED,
                "NOTIF_BOOKING_CANCELLED",
                payload.get("booking_id"),
            )

    async def _on_booking_expired(self, payload: dict) -> None:
        for user_id in (payload["sender_id"], payload["traveler_id"]):
            await self._notifications.notify_template(
                user_id,
                NotificationType.BOOKING_CANCELLED,
                "NOTIF_BOOKING_CANCELLED",
                payload.get("booking_id"),
            )

    async def _on_in_transit(self, payload: dict) -> None:
        await self._notifications.notify_template(
            payload["sender_id"],
            NotificationType.TRANSIT_STARTED,
            "NOTIF_TRANSIT_STARTED",
            payload.get("booking_id"),
        )

    async def _on_delivered(self, payload: dict) -> None:
        await self._notifications.notify_template(
            payload["sender_id"],
            NotificationType.DELIVERY_CONFIRMED,
            "NOTIF_DELIVERED",
            payload.get("booking_id"),
        )

    async def _on_completed(self, payload: dict) -> None:
        await self._notifications.notify_template(
            payload["traveler_id"],
            NotificationType.DELIVERY_CONFIRMED,
            "NOTIF_DELIVERY_CONFIRMED",
            payload.get("booking_id"),
        )

    async def _on_disputed(self, payload: dict) -> None:
        opened_by = payload.get("opened_by")
        for user_id in (payload["sender_id"], payload["traveler_id"]):
            if user_id == opened_by:
                continue
            await self._notifications.notify_template(
                user_id,
                NotificationType.DISPUTE_OPENED,
                "NOTIF_DISPUTE_OPENED",
                payload.get("booking_id"),
                reason=payload.get("reason", ""),
            )

    # ===== ПЛАТЕЖИ =====

    async def _on_payment_succeeded(self, payload: dict) -> None:
        amount = _format_amount(payload.get("amount_cents"))
        currency = str(payload.get("currency", "eur")).upper()
        await self._notifications.notify_template(
            payload["sender_id"],
            NotificationType.PAYMENT_CONFIRMED,
            "NOTIF_PAYMENT_CONFIRMED",
            payload.get("booking_id"),
            amount=amount,
            currency=currency,
        )
        await self._notifications.notify_template(
            payload["traveler_id"],
            NotificationType.PAYMENT_CONFIRMED,
            "NOTIF_PAYMENT_RECEIVED",
            payload.get("booking_id"),
        )

    async def _on_payment_failed(self, payload: dict) -> None:
        await self._notifications.notify_template(
            payload["sender_id"],
            NotificationType.PAYMENT_FAILED,
            "NOTIF_PAYMENT_FAILED",
            payload.get("booking_id"),
        )

    async def _on_payout_released(self, payload: dict) -> None:
        await self._notifications.notify_template(
            payload["traveler_id"],
            NotificationType.SYSTEM_ALERT,
            "NOTIF_PAYOUT_RELEASED",
            payload.get("booking_id"),
            amount=_format_amount(payload.get("amount_cents")),
            currency=str(payload.get("currency", "eur")).upper(),
        )

    async def _on_payout_blocked(self, payload: dict) -> None:
        await self._notifications.notify_template(
            payload["traveler_id"],
            NotificationType.SYSTEM_ALERT,
            "NOTIF_PAYOUTS_REQUIRED",
            payload.get("booking_id"),
        )

    async def _on_payout_enabled(self, payload: dict) -> None:
        await self._notifications.notify_template(
            payload["user_id"],
            NotificationType.SYSTEM_ALERT,
            "NOTIF_PAYOUTS_ENABLED",
        )

    # ===== ПРОФИЛЬ =====

    async def _on_kyc_updated(self, payload: dict) -> None:
        status = payload.get("kyc_status")
        if status == KYCStatus.APPROVED.value:
            await self._notifications.notify_template(
                payload["user_id"],
                NotificationType.SYSTEM_ALERT,
                "NOTIF_KYC_APPROVED",
            )
        elif status == KYCStatus.REJECTED.value:
            await self._notifications.notify_template(
                payload["user_id"],
                NotificationType.SYSTEM_ALERT,
                "NOTIF_KYC_REJECTED",
                reason=payload.get("reason") or "",
            )
