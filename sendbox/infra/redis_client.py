# sendbox/infra/redis_client.py
"""
Клиент Redis.
Используется как быстрый фильтр повторных вебхуков (SET NX с TTL).
"""

from __future__ import annotations

import redis.asyncio as redis

from sendbox.common.constants import TypeMsg
from sendbox.common.logger import log_error, log_info


class RedisClient:
    """Singleton над redis.asyncio с пространством имён ключей."""

    _instance: RedisClient | None = None
    _client: redis.Redis | None = None

    def __new__(cls) -> RedisClient:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if hasattr(self, "_initialized"):
            return
        self._initialized = True
        self._client = None
        self._namespace = "sendbox"

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis клиент не инициализирован: сначала вызовите connect()")
        return self._client

    def _make_key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def connect(
        self,
        url: str,
        max_connections: int = 50,
        namespace: str | None = None,
    ) -> None:
        if self._client is not None:
            return

        if namespace:
            self._namespace = namespace

        self._client = redis.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
        )
        await self._client.ping()

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ===== БАЗОВЫЕ ОПЕРАЦИИ =====

    async def set_nx(self, key: str, value: str, ttl: int | None = None) -> bool:
        """
        Атомарно записывает ключ, только если его ещё нет.

        Returns:
            True, если ключ создан этим вызовом
        """
        return bool(await self.client.set(self._make_key(key), value, ex=ttl, nx=True))

    async def delete(self, key: str) -> int:
        return await self.client.delete(self._make_key(key))

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            await log_error(f"Health check Redis не прошёл: {e}")
            return False


def get_redis() -> RedisClient:
    return RedisClient()


async def init_redis() -> None:
    """Подключается к Redis по настройкам."""
    from sendbox.config import settings

    await get_redis().connect(
        url=settings.redis.url,
        max_connections=settings.redis.REDIS_MAX_CONNECTIONS,
        namespace=settings.redis.REDIS_NAMESPACE,
    )
    await log_info(
        f"Redis подключён: {settings.redis.REDIS_HOST}:{settings.redis.REDIS_PORT}/{settings.redis.REDIS_DB}",
        type_msg=TypeMsg.INFO,
    )


async def close_redis() -> None:
    await get_redis().disconnect()
    await log_info("Redis отключён", type_msg=TypeMsg.INFO)
