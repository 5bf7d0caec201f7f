# sendbox/worker/payouts.py
"""
Воркер выплат и системных проходов.

- payout.enabled: повторяет отложенные выплаты путешественника;
- периодически: автозавершение доставленных, истечение неоплаченных,
  повтор выплат после сбоев провайдера.
"""

from __future__ import annotations

from typing import List, Optional

from sendbox.common.constants import TypeMsg
from sendbox.common.logger import log_info
from sendbox.config.loader import BookingSettings
from sendbox.core.bookings.service import BookingService
from sendbox.core.payments.transfers import PayoutService
from sendbox.infra.event_bus import DomainEvent, EventBus, EventTypes
from sendbox.worker.base import BaseWorker, PeriodicTask


class PayoutWorker(BaseWorker):
    """Выплаты путешественникам и проходы по просроченным бронированиям."""

    def __init__(
        self,
        bookings: BookingService,
        payouts: PayoutService,
        limits: BookingSettings,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        super().__init__(event_bus)
        self._bookings = bookings
        self._payouts = payouts
        self._limits = limits

    @property
    def name(self) -> str:
        return "PayoutWorker"

    @property
    def subscriptions(self) -> List[str]:
        return [EventTypes.PAYOUT_ENABLED]

    @property
    def periodic_tasks(self) -> List[PeriodicTask]:
        return [(self._limits.SWEEP_INTERVAL_SECONDS, self.sweep)]

    async def handle_event(self, event: DomainEvent) -> None:
        if event.event_type != EventTypes.PAYOUT_ENABLED:
            return
        user_id = event.payload.get("user_id")
        if not user_id:
            return

        released = await self._payouts.release_awaiting(self._limits.SWEEP_BATCH_SIZE, traveler_id=user_id)
        if released:
            await log_info(
                f"Выплачено {released} отложенных бронирований путешественнику {user_id}",
                type_msg=TypeMsg.INFO,
                extra={"user_id": user_id},
            )

    async def sweep(self) -> None:
        """Один проход по просроченным бронированиям и отложенным выплатам."""
        completed = await self._bookings.auto_release()
        expired = await self._bookings.expire_unpaid()
        retried = await self._payouts.release_awaiting(self._limits.SWEEP_BATCH_SIZE)
        await log_info(
            f"Проход: автозавершено {completed}, истекло {expired}, выплат повторено {retried}",
            type_msg=TypeMsg.DEBUG,
        )
