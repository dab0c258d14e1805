# src/core/tracking/dual_write.py
"""
Двойная запись позиции: кэш последних позиций + история в PostgreSQL.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable

from src.common.constants import StoreName
from src.core.tracking.cache import PositionCache
from src.core.tracking.errors import StorageRejection
from src.core.tracking.models import PositionUpdate, ProcessedPosition
from src.core.tracking.repository import TrackingRepository

CACHE_OPERATION = "setLastPosition"
DATABASE_OPERATION = "saveToPostgres"


class DualWriteCoordinator:
    """
    Пишет позицию в оба хранилища параллельно и ждёт обе записи.

    Позиция считается записанной, только если удались обе.
    Компенсации нет: при сбое одной записи вторая может остаться.
    """

    def __init__(
        self,
        cache: PositionCache,
        repository: TrackingRepository,
        concurrency: int = 2,
    ) -> None:
        self._cache = cache
        self._repository = repository
        self._concurrency = max(1, concurrency)

    async def save(self, position: ProcessedPosition) -> PositionUpdate:
        """
        Raises:
            StorageRejection: с именем хранилища и операции первой неудачной записи
        """
        semaphore = asyncio.Semaphore(self._concurrency)

        async def bounded(write: Awaitable[Any]) -> Any:
            async with semaphore:
                return await write

        cache_result, db_result = await asyncio.gather(
            bounded(self._write_cache(position)),
            bounded(self._write_database(position)),
            return_exceptions=True,
        )

        for result in (cache_result, db_result):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result

        cache_error = cache_result if isinstance(cache_result, StorageRejection) else None
        db_error = db_result if isinstance(db_result, StorageRejection) else None

        if cache_error is not None:
            if db_error is not None:
                cache_error.__context__ = db_error
            raise cache_error
        if db_error is not None:
            raise db_error

        return position.to_update()

    async def _write_cache(self, position: ProcessedPosition) -> None:
        try:
            await self._cache.set_last_position(position.key, position)
        except StorageRejection as e:
            raise StorageRejection(CACHE_OPERATION, StoreName.CACHE, e.cause) from e.cause
        except Exception as e:
            raise StorageRejection(CACHE_OPERATION, StoreName.CACHE, e) from e

    async def _write_database(self, position: ProcessedPosition) -> None:
        try:
            await self._repository.save(position)
        except StorageRejection as e:
            raise StorageRejection(DATABASE_OPERATION, StoreName.DATABASE, e.cause) from e.cause
        except Exception as e:
            raise StorageRejection(DATABASE_OPERATION, StoreName.DATABASE, e) from e
