#!/usr/bin/env python3
# entrypoint_bookings_service.py
"""
Entrypoint для Bookings Service.

Запуск:
    python entrypoints/entrypoint_bookings_service.py

Порт по умолчанию: 8090
"""

import sys
from pathlib import Path

# Добавляем корневую директорию проекта в путь
project_root = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(project_root))

import uvicorn

from sendbox.config import settings


def main() -> None:
    """Запустить Bookings Service."""
    uvicorn.run(
        "sendbox.services.bookings_api.app:app",
        host=settings.deployment.BOOKINGS_SERVICE_HOST,
        port=settings.deployment.BOOKINGS_SERVICE_PORT,
        reload=settings.system.DEBUG,
        log_level=settings.logging.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
