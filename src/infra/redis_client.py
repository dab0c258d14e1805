# src/infra/redis_client.py
"""
Асинхронный клиент Redis для кэша последних позиций.
Типизированные операции над pydantic-моделями и обход ключей по шаблону.
"""

from __future__ import annotations

from typing import Type, TypeVar

import redis.asyncio as redis
from pydantic import BaseModel, ValidationError

from src.common.logger import log_error, log_info, log_warning

T = TypeVar("T", bound=BaseModel)


class RedisClient:
    """
    Синглтон над redis.asyncio.Redis.

    При непустом namespace все ключи получают префикс "{namespace}:".
    Пустой namespace оставляет ключи как есть.
    """

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
        self._namespace = ""

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis не подключён, сначала вызовите connect()")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def _make_key(self, key: str) -> str:
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    def _strip_key(self, key: str) -> str:
        if self._namespace and key.startswith(f"{self._namespace}:"):
            return key[len(self._namespace) + 1:]
        return key

    async def connect(
        self,
        url: str | None = None,
        max_connections: int = 50,
        namespace: str | None = None,
    ) -> None:
        """
        Подключается к Redis и проверяет соединение через PING.

        Args:
            url: URL Redis; если не передан, берётся из конфига
            max_connections: Размер пула соединений
            namespace: Префикс ключей; None — взять из конфига
        """
        if self._client is not None:
            return

        if url is None or namespace is None:
            from src.config import settings
            if url is None:
                url = settings.redis.url
                max_connections = settings.redis.REDIS_MAX_CONNECTIONS
            if namespace is None:
                namespace = settings.redis.REDIS_NAMESPACE

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

    # =========================================================================
    # БАЗОВЫЕ ОПЕРАЦИИ
    # =========================================================================

    async def get(self, key: str) -> str | None:
        return await self.client.get(self._make_key(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        """SET с необязательным TTL (секунды)."""
        return await self.client.set(self._make_key(key), value, ex=ttl)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.client.delete(*(self._make_key(k) for k in keys))

    async def exists(self, key: str) -> bool:
        return await self.client.exists(self._make_key(key)) > 0

    async def ttl(self, key: str) -> int:
        return await self.client.ttl(self._make_key(key))

    async def mget(self, keys: list[str]) -> list[str | None]:
        """Значения для списка ключей в том же порядке."""
        if not keys:
            return []
        return await self.client.mget([self._make_key(k) for k in keys])

    async def scan_keys(self, pattern: str, count: int = 500) -> list[str]:
        """
        Все ключи по шаблону через SCAN (без блокирующего KEYS).
        Возвращает ключи без namespace.
        """
        found: list[str] = []
        async for key in self.client.scan_iter(match=self._make_key(pattern), count=count):
            found.append(self._strip_key(key))
        return found

    # =========================================================================
    # ТИПИЗИРОВАННЫЕ ОПЕРАЦИИ (PYDANTIC)
    # =========================================================================

    async def get_model(self, key: str, model_class: Type[T]) -> T | None:
        """
        Читает ключ и валидирует его как model_class.
        Битое значение логируется и трактуется как отсутствующее.
        """
        data = await self.get(key)
        if data is None:
            return None
        return await self._parse_model(key, data, model_class)

    async def get_models(self, keys: list[str], model_class: Type[T]) -> list[T]:
        """MGET по ключам; отсутствующие и битые значения пропускаются."""
        values = await self.mget(keys)
        models: list[T] = []
        for key, data in zip(keys, values):
            if data is None:
                continue
            model = await self._parse_model(key, data, model_class)
            if model is not None:
                models.append(model)
        return models

    async def set_model(self, key: str, model: BaseModel, ttl: int | None = None) -> bool:
        return await self.set(key, model.model_dump_json(by_alias=True), ttl=ttl)

    async def _parse_model(self, key: str, data: str, model_class: Type[T]) -> T | None:
        try:
            return model_class.model_validate_json(data)
        except ValidationError as e:
            await log_warning(
                f"Не удалось разобрать {model_class.__name__} из Redis",
                extra={"key": key, "errors": e.error_count()},
            )
            return None

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            await log_error(f"Health check Redis не прошёл: {e}")
            return False


def get_redis() -> RedisClient:
    """Возвращает глобальный RedisClient."""
    return RedisClient()


async def init_redis() -> RedisClient:
    """Подключается к Redis по настройкам из конфига."""
    from src.config import settings

    redis_client = get_redis()
    await redis_client.connect(
        url=settings.redis.url,
        max_connections=settings.redis.REDIS_MAX_CONNECTIONS,
        namespace=settings.redis.REDIS_NAMESPACE,
    )
    await log_info(
        "Redis подключён",
        extra={
            "host": settings.redis.REDIS_HOST,
            "port": settings.redis.REDIS_PORT,
            "db": settings.redis.REDIS_DB,
        },
    )
    return redis_client


async def close_redis() -> None:
    redis_client = get_redis()
    if redis_client.is_connected:
        await redis_client.disconnect()
        await log_info("Redis отключён")
