# src/core/tracking/cache.py
"""
Кэш последних позиций участников в Redis.

Ключ: race:{raceId}:participant:{participantId}:last, значение — JSON
ProcessedPosition, TTL — redis_ttl.POSITION_TTL.
"""

from __future__ import annotations

from src.common.constants import StoreName
from src.core.tracking.errors import StorageRejection
from src.core.tracking.models import ProcessedPosition, RaceParticipantKey
from src.infra.redis_client import RedisClient, get_redis

DEFAULT_POSITION_TTL = 3600


class PositionCache:
    """Последняя позиция каждого участника гонки."""

    def __init__(self, redis_client: RedisClient | None = None, ttl: int = DEFAULT_POSITION_TTL) -> None:
        self._redis = redis_client or get_redis()
        self._ttl = ttl

    @staticmethod
    def race_pattern(race_id: str) -> str:
        return f"race:{race_id}:participant:*:last"

    async def set_last_position(self, key: RaceParticipantKey, position: ProcessedPosition) -> None:
        try:
            await self._redis.set_model(key.cache_key, position, ttl=self._ttl)
        except Exception as e:
            raise StorageRejection("setLastPosition", StoreName.CACHE, e) from e

    async def get_last_position(self, key: RaceParticipantKey) -> ProcessedPosition | None:
        try:
            return await self._redis.get_model(key.cache_key, ProcessedPosition)
        except Exception as e:
            raise StorageRejection("getLastPosition", StoreName.CACHE, e) from e

    async def get_race_positions(self, race_id: str) -> list[ProcessedPosition]:
        """Все закэшированные позиции гонки (SCAN + MGET)."""
        try:
            keys = await self._redis.scan_keys(self.race_pattern(race_id))
            if not keys:
                return []
            return await self._redis.get_models(keys, ProcessedPosition)
        except Exception as e:
            raise StorageRejection("getRacePositions", StoreName.CACHE, e) from e

    async def delete_position(self, key: RaceParticipantKey) -> None:
        try:
            await self._redis.delete(key.cache_key)
        except Exception as e:
            raise StorageRejection("deletePosition", StoreName.CACHE, e) from e

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.client.ping())
        except Exception as e:
            raise StorageRejection("ping", StoreName.CACHE, e) from e
