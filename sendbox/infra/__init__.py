# sendbox/infra/__init__.py
"""
Инфраструктурный слой: PostgreSQL, Redis, RabbitMQ.
"""

from sendbox.infra.database import DatabaseManager, get_db
from sendbox.infra.event_bus import DomainEvent, EventBus, EventTypes, get_event_bus
from sendbox.infra.redis_client import RedisClient, get_redis

__all__ = [
    "DatabaseManager",
    "get_db",
    "RedisClient",
    "get_redis",
    "DomainEvent",
    "EventBus",
    "EventTypes",
    "get_event_bus",
]
