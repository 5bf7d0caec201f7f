#!/usr/bin/env python3
# main.py
"""
Главная точка входа Sendbox.
Запускает Bookings Service, воркеры или всё вместе в зависимости от аргументов.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from sendbox.config import settings
from sendbox.common.logger import setup_logging, log_info, log_error
from sendbox.common.constants import TypeMsg
from sendbox.infra.database import init_db, close_db, get_db
from sendbox.infra.redis_client import init_redis, close_redis, get_redis
from sendbox.infra.event_bus import init_event_bus, close_event_bus, get_event_bus

VALID_MODES = ("bookings_service", "worker", "all")

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def init_infrastructure() -> None:
    """Подключения к инфраструктуре и сборка сервисов."""
    from sendbox.core.payments.gateway import build_gateway
    from sendbox.services.bookings_api.dependencies import init_dependencies

    await log_info("Инициализация инфраструктуры...", type_msg=TypeMsg.INFO)

    await init_db()
    await init_redis()
    await init_event_bus()
    await init_dependencies(get_db(), get_redis(), get_event_bus(), build_gateway())

    await log_info("Инфраструктура инициализирована", type_msg=TypeMsg.INFO)


async def close_infrastructure() -> None:
    """Закрывает все подключения."""
    from sendbox.services.bookings_api.dependencies import cleanup_dependencies

    await log_info("Закрытие подключений...", type_msg=TypeMsg.INFO)

    await cleanup_dependencies()
    await close_event_bus()
    await close_redis()
    await close_db()

    await log_info("Подключения закрыты", type_msg=TypeMsg.INFO)


async def run_bookings_service(manage_infra: bool = True) -> None:
    """
    Запускает Bookings Service (uvicorn).

    Args:
        manage_infra: Если False, инфраструктура уже поднята в этом процессе
                      и приложение стартует без собственного lifespan.
    """
    import uvicorn

    await log_info(
        f"Запуск Bookings Service на порту {settings.deployment.BOOKINGS_SERVICE_PORT}...",
        type_msg=TypeMsg.INFO,
    )

    if manage_infra:
        app: object = "sendbox.services.bookings_api.app:app"
    else:
        from sendbox.services.bookings_api.app import create_app
        app = create_app(use_lifespan=False)

    config = uvicorn.Config(
        app,
        host=settings.deployment.BOOKINGS_SERVICE_HOST,
        port=settings.deployment.BOOKINGS_SERVICE_PORT,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info("Bookings Service: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def run_worker(manage_infra: bool = True) -> None:
    """Запускает NotificationWorker и PayoutWorker."""
    from sendbox.worker.runner import run_workers

    await run_workers(init_infra=manage_infra)


async def main(mode: str | None = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: bookings_service, worker или all.
              Если None, берётся из настроек (RUN_DEV_MODE / COMPONENT_MODE).
    """
    global _running_tasks

    setup_logging()
    setup_signal_handlers()

    if mode is None:
        if settings.system.RUN_DEV_MODE:
            mode = "all"
        elif settings.system.COMPONENT_MODE in VALID_MODES:
            mode = settings.system.COMPONENT_MODE
        else:
            await log_error(f"Неизвестный COMPONENT_MODE '{settings.system.COMPONENT_MODE}'")
            sys.exit(1)

    await log_info(
        f"Sendbox v{settings.system.VERSION}: запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    try:
        if mode == "bookings_service":
            await run_bookings_service()
        elif mode == "worker":
            await run_worker()
        elif mode == "all":
            await init_infrastructure()
            _running_tasks = [
                asyncio.create_task(run_bookings_service(manage_infra=False)),
                asyncio.create_task(run_worker(manage_infra=False)),
            ]
            try:
                await asyncio.gather(*_running_tasks, return_exceptions=True)
            finally:
                await close_infrastructure()

    except KeyboardInterrupt:
        await log_info("Получен сигнал остановки (Ctrl+C)", type_msg=TypeMsg.INFO)
    except asyncio.CancelledError:
        await log_info("Задача отменена, выполняется graceful shutdown", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
        raise
    finally:
        if _running_tasks:
            for task in _running_tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*_running_tasks, return_exceptions=True)
            _running_tasks.clear()
        await log_info("Приложение остановлено", type_msg=TypeMsg.INFO)


def print_usage() -> None:
    """Выводит справку по использованию."""
    print("""
Sendbox: бронирования и эскроу для доставки посылок попутчиками

Использование:
    python main.py [mode]

Режимы:
    bookings_service   HTTP API бронирований (:8090)
    worker             уведомления, выплаты и системные проходы
    all                всё в одном процессе (разработка)

Примеры:
    python main.py                     # Режим из config.json
    python main.py bookings_service    # Только API
    python main.py worker              # Только воркеры
    """)


if __name__ == "__main__":
    mode = None

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in VALID_MODES:
            mode = arg
        else:
            print(f"Ошибка: неизвестный режим '{arg}'")
            print_usage()
            sys.exit(1)

    try:
        asyncio.run(main(mode))
    except KeyboardInterrupt:
        pass
