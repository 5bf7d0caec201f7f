# sendbox/worker/runner.py
"""
Запускалка всех воркеров.
"""

from __future__ import annotations

import asyncio
from typing import List

from sendbox.common.constants import TypeMsg
from sendbox.common.localization import validate_lang_dict
from sendbox.common.logger import log_error, log_info, log_warning
from sendbox.config import settings
from sendbox.core.payments.gateway import build_gateway
from sendbox.infra.database import close_db, get_db, init_db
from sendbox.infra.event_bus import close_event_bus, get_event_bus, init_event_bus
from sendbox.infra.redis_client import close_redis, get_redis, init_redis
from sendbox.services.bookings_api.dependencies import (
    cleanup_dependencies,
    get_booking_service,
    get_notification_service,
    get_payout_service,
    init_dependencies,
)
from sendbox.worker.base import BaseWorker
from sendbox.worker.notifications import NotificationWorker
from sendbox.worker.payouts import PayoutWorker


async def check_translations() -> None:
    """Тексты уведомлений без перевода на один из языков только логируются."""
    for problem in validate_lang_dict():
        await log_warning(f"Словарь переводов: {problem}")


def build_workers() -> List[BaseWorker]:
    """Воркеры поверх уже собранных сервисов."""
    return [
        NotificationWorker(get_notification_service()),
        PayoutWorker(get_booking_service(), get_payout_service(), settings.bookings),
    ]


async def run_workers(init_infra: bool = True) -> None:
    """
    Запускает NotificationWorker и PayoutWorker.

    Args:
        init_infra: Если True, инициализирует инфраструктуру (БД, Redis, RabbitMQ).
                    При запуске через main.py в режиме all передаётся False,
                    так как инфраструктура уже инициализирована.
    """
    await log_info("Запуск воркеров...", type_msg=TypeMsg.INFO)

    if init_infra:
        await log_info("Инициализация инфраструктуры для воркеров...", type_msg=TypeMsg.DEBUG)
        await init_db()
        await init_redis()
        await init_event_bus()
        await init_dependencies(get_db(), get_redis(), get_event_bus(), build_gateway())

    await check_translations()
    workers = build_workers()

    try:
        for worker in workers:
            await worker.start()

        await log_info(f"Запущено {len(workers)} воркеров", type_msg=TypeMsg.INFO)

        while True:
            await asyncio.sleep(1)

    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка воркеров: {e}", exc_info=True)
    finally:
        for worker in workers:
            await worker.stop()

        if init_infra:
            await cleanup_dependencies()
            await close_event_bus()
            await close_redis()
            await close_db()

        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)


def main() -> None:
    """Точка входа."""
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
