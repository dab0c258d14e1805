# src/infra/__init__.py
"""
Инфраструктурный слой.
Работа с внешними сервисами: PostgreSQL, Redis, брокер сообщений.
"""

from src.infra.database import DatabaseManager, get_db
from src.infra.redis_client import RedisClient, get_redis
from src.infra.transport import (
    TransportClient,
    TransportError,
    TransportFatalError,
    get_transport,
)

__all__ = [
    "DatabaseManager",
    "get_db",
    "RedisClient",
    "get_redis",
    "TransportClient",
    "TransportError",
    "TransportFatalError",
    "get_transport",
]
