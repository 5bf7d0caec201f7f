# sendbox/infra/event_bus.py
"""
Шина событий на базе RabbitMQ.
Сервис бронирований публикует факты жизненного цикла, воркеры
подписываются на них (уведомления, выплаты).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

import aio_pika
from aio_pika import ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange, AbstractQueue

from sendbox.common.constants import TypeMsg
from sendbox.common.logger import log_error, log_info, log_warning


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# ДОМЕННЫЕ СОБЫТИЯ
# =============================================================================

@dataclass
class DomainEvent:
    """Конверт доменного события."""
    event_id: str = field(default_factory=lambda: str(uuid4()))
    event_type: str = ""
    timestamp: str = field(default_factory=_utc_now_iso)
    payload: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps({
            "event_id": self.event_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }, ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, data: str | bytes) -> DomainEvent:
        parsed = json.loads(data)
        return cls(
            event_id=parsed.get("event_id", str(uuid4())),
            event_type=parsed.get("event_type", ""),
            timestamp=parsed.get("timestamp", ""),
            payload=parsed.get("payload", {}),
        )


class EventTypes:
    """Routing keys доменных событий."""
    # Бронирования
    BOOKING_CREATED = "booking.created"
    BOOKING_ACCEPTED = "booking.accepted"
    BOOKING_REFUSED = "booking.refused"
    BOOKING_CONFIRMED = "booking.confirmed"
    BOOKING_IN_TRANSIT = "booking.in_transit"
    BOOKING_DELIVERED = "booking.delivered"
    BOOKING_COMPLETED = "booking.completed"
    BOOKING_CANCELLED = "booking.cancelled"
    BOOKING_DISPUTED = "booking.disputed"
    BOOKING_EXPIRED = "booking.expired"

    # Платежи
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"

    # Выплаты путешественникам
    PAYOUT_RELEASED = "payout.released"
    PAYOUT_BLOCKED = "payout.blocked"
    PAYOUT_ENABLED = "payout.enabled"

    # Профили
    KYC_UPDATED = "kyc.updated"

    # Системные оповещения
    SYSTEM_ALERT = "system.alert"


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """
    Topic-exchange RabbitMQ.
    Routing key совпадает с event_type. Обработчики регистрируются
    на пару (очередь, тип события), поэтому несколько воркеров могут
    слушать один тип через разные очереди без двойной доставки.
    """

    _instance: EventBus | None = None
    _connection: AbstractConnection | None = None
    _channel: AbstractChannel | None = None
    _exchange: AbstractExchange | None = None

    def __new__(cls) -> EventBus:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if hasattr(self, "_initialized"):
            return
        self._initialized = True
        self._connection = None
        self._channel = None
        self._exchange = None
        self._exchange_name = "sendbox.events"
        self._queues: dict[str, AbstractQueue] = {}
        self._handlers: dict[str, dict[str, list[EventHandler]]] = {}

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(
        self,
        url: str,
        exchange_name: str | None = None,
        prefetch_count: int = 10,
    ) -> None:
        if self.is_connected:
            return

        if exchange_name:
            self._exchange_name = exchange_name

        self._connection = await aio_pika.connect_robust(url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=prefetch_count)

        self._exchange = await self._channel.declare_exchange(
            self._exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )
        await log_info(f"Exchange {self._exchange_name} объявлен", type_msg=TypeMsg.DEBUG)

    async def disconnect(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._channel = None
            self._exchange = None
            self._queues = {}
            self._handlers = {}

    async def publish(self, event: DomainEvent) -> None:
        """
        Публикует событие (routing_key = event_type).

        Raises:
            RuntimeError: Нет соединения с RabbitMQ
        """
        if not self.is_connected or self._exchange is None:
            raise RuntimeError("Нет соединения с RabbitMQ")

        message = Message(
            body=event.to_json().encode(),
            content_type="application/json",
            message_id=event.event_id,
            timestamp=datetime.now(timezone.utc),
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        await self._exchange.publish(message, routing_key=event.event_type)

        await log_info(
            f"Событие опубликовано: {event.event_type}",
            type_msg=TypeMsg.DEBUG,
            extra={"event_id": event.event_id},
        )

    async def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        queue_name: str | None = None,
    ) -> None:
        """
        Подписывает обработчик на тип события.

        Args:
            event_type: Routing key (допускаются шаблоны topic-exchange)
            handler: Асинхронный обработчик
            queue_name: Очередь (по умолчанию sendbox.<event_type>)
        """
        if not self.is_connected or self._channel is None or self._exchange is None:
            raise RuntimeError("Нет соединения с RabbitMQ")

        if queue_name is None:
            queue_name = f"sendbox.{event_type.replace('.', '_')}"

        self._handlers.setdefault(queue_name, {}).setdefault(event_type, []).append(handler)

        queue = self._queues.get(queue_name)
        if queue is None:
            queue = await self._channel.declare_queue(queue_name, durable=True)
            self._queues[queue_name] = queue
            await queue.consume(self._make_consumer(queue_name))

        await queue.bind(self._exchange, routing_key=event_type)

        await log_info(
            f"Подписка: {event_type} -> {queue_name}",
            type_msg=TypeMsg.DEBUG,
        )

    def _make_consumer(self, queue_name: str) -> Callable[[aio_pika.IncomingMessage], Awaitable[None]]:
        async def consumer(message: aio_pika.IncomingMessage) -> None:
            async with message.process():
                try:
                    event = DomainEvent.from_json(message.body)
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    await log_warning(
                        f"Невалидное сообщение в очереди {queue_name}: {e}",
                        extra={"message_id": message.message_id},
                    )
                    return

                handlers = self._handlers.get(queue_name, {}).get(event.event_type, [])
                for handler in handlers:
                    try:
                        await handler(event)
                    except Exception:
                        await log_error(
                            f"Ошибка в обработчике {getattr(handler, '__name__', handler)}",
                            extra={"event_id": event.event_id, "event_type": event.event_type},
                            exc_info=True,
                        )

        return consumer

    async def health_check(self) -> bool:
        return self.is_connected


# ===== ГЛОБАЛЬНЫЙ ЭКЗЕМПЛЯР =====

_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


async def init_event_bus() -> None:
    """Подключается к RabbitMQ по настройкам."""
    from sendbox.config import settings

    await get_event_bus().connect(
        url=settings.rabbitmq.url,
        exchange_name=settings.rabbitmq.RABBITMQ_EXCHANGE,
        prefetch_count=settings.rabbitmq.RABBITMQ_PREFETCH_COUNT,
    )
    await log_info(
        f"RabbitMQ подключён: {settings.rabbitmq.RABBITMQ_HOST}:{settings.rabbitmq.RABBITMQ_PORT}",
        type_msg=TypeMsg.INFO,
    )


async def close_event_bus() -> None:
    await get_event_bus().disconnect()
    await log_info("RabbitMQ отключён", type_msg=TypeMsg.INFO)
