# sendbox/services/__init__.py
"""
HTTP-сервисы приложения.

Архитектура:
- bookings_api: FastAPI-приложение бронирований, оплаты и выплат
- Общая PostgreSQL, события через RabbitMQ, Redis для отсева повторов вебхуков
"""

__all__: list[str] = []
