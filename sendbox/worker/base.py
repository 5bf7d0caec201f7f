# sendbox/worker/base.py
"""
Базовый класс для воркеров.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Tuple

from sendbox.common.constants import TypeMsg
from sendbox.common.logger import log_error, log_info
from sendbox.infra.event_bus import DomainEvent, EventBus, get_event_bus

PeriodicTask = Tuple[float, Callable[[], Awaitable[object]]]


class BaseWorker(ABC):
    """
    Базовый класс для всех воркеров.
    Подписывается на события своей очередью и, при необходимости,
    крутит периодические задачи.
    """

    def __init__(self, event_bus: Optional[EventBus] = None) -> None:
        """
        Args:
            event_bus: Шина событий
        """
        self.event_bus = event_bus or get_event_bus()
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""

    @property
    @abstractmethod
    def subscriptions(self) -> List[str]:
        """Список типов событий для подписки."""

    @property
    def queue_name(self) -> str:
        return f"sendbox.worker.{self.name.lower()}"

    @property
    def periodic_tasks(self) -> List[PeriodicTask]:
        """Пары (интервал в секундах, корутина без аргументов)."""
        return []

    @abstractmethod
    async def handle_event(self, event: DomainEvent) -> None:
        """
        Обрабатывает событие.

        Args:
            event: Доменное событие
        """

    async def start(self) -> None:
        """Запускает воркер."""
        if self._running:
            return

        self._running = True
        await log_info(f"Воркер {self.name} запускается...", type_msg=TypeMsg.INFO)

        for event_type in self.subscriptions:
            await self.event_bus.subscribe(
                event_type=event_type,
                handler=self._on_event,
                queue_name=self.queue_name,
            )

        for interval, job in self.periodic_tasks:
            self._tasks.append(asyncio.create_task(self._run_periodic(interval, job)))

        await log_info(f"Воркер {self.name} запущен", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        """Останавливает воркер."""
        if not self._running:
            return

        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        await log_info(f"Воркер {self.name} остановлен", type_msg=TypeMsg.INFO)

    async def _on_event(self, event: DomainEvent) -> None:
        if not self._running:
            return

        try:
            await log_info(
                f"Воркер {self.name} получил событие {event.event_type}",
                type_msg=TypeMsg.DEBUG,
            )
            await self.handle_event(event)
        except Exception as e:
            await log_error(
                f"Ошибка в воркере {self.name}: {e}",
                extra={"event_type": event.event_type, "payload": event.payload},
                exc_info=True,
            )

    async def _run_periodic(self, interval: float, job: Callable[[], Awaitable[object]]) -> None:
        """Повторяет job каждые interval секунд; сбой одного прогона не останавливает цикл."""
        while self._running:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await log_error(
                    f"Ошибка периодической задачи {getattr(job, '__name__', job)} в {self.name}: {e}",
                    exc_info=True,
                )
            await asyncio.sleep(interval)
