# src/core/tracking/service.py
"""
Сервис трекинга: приём позиций и запросы для дашборда.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from src.common.logger import log_error, log_info
from src.core.tracking.cache import PositionCache
from src.core.tracking.dual_write import DualWriteCoordinator
from src.core.tracking.errors import NotFoundRejection, StorageRejection
from src.core.tracking.models import PositionUpdate, ProcessedPosition, RaceParticipantKey, TrackingPosition
from src.core.tracking.pipeline import (
    Broadcast,
    Clock,
    PipelineConfig,
    PipelineDeps,
    batch_process_tracking_data,
    process_tracking_data_with_logging,
    utc_now,
)
from src.core.tracking.repository import TrackingRepository


class TrackingService:
    """
    Фасад над конвейером, кэшем и репозиторием.

    Методы чтения не бросают StorageRejection: ошибка логируется,
    возвращается пустой результат.
    """

    def __init__(
        self,
        cache: PositionCache,
        repository: TrackingRepository,
        config: PipelineConfig | None = None,
        dual_write_concurrency: int = 2,
        clock: Clock = utc_now,
    ) -> None:
        self._cache = cache
        self._repository = repository
        self._config = config or PipelineConfig()
        self._writer = DualWriteCoordinator(cache, repository, dual_write_concurrency)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        cache: PositionCache,
        repository: TrackingRepository,
    ) -> TrackingService:
        return cls(
            cache,
            repository,
            config=PipelineConfig.from_settings(settings.tracking),
            dual_write_concurrency=settings.tracking.DUAL_WRITE_CONCURRENCY,
        )

    @property
    def config(self) -> PipelineConfig:
        return self._config

    def _deps(self, broadcast: Broadcast | None) -> PipelineDeps:
        return PipelineDeps(save_position=self._writer.save, broadcast=broadcast, clock=self._clock)

    # =========================================================================
    # ПРИЁМ
    # =========================================================================

    async def process_tracking_payload(
        self,
        raw: Any,
        broadcast: Broadcast | None = None,
    ) -> PositionUpdate | None:
        """Обрабатывает одно сообщение; None — сообщение отклонено."""
        return await process_tracking_data_with_logging(raw, self._config, self._deps(broadcast))

    async def process_batch(
        self,
        raw_items: Iterable[Any],
        broadcast: Broadcast | None = None,
    ) -> list[PositionUpdate]:
        items = list(raw_items)
        updates = await batch_process_tracking_data(items, self._config, self._deps(broadcast))
        await log_info(
            "Пачка позиций обработана",
            extra={"total": len(items), "accepted": len(updates), "rejected": len(items) - len(updates)},
        )
        return updates

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def _log_storage_error(self, error: StorageRejection) -> None:
        await log_error(
            "Ошибка чтения хранилища",
            extra={"store": error.store.value, "operation": error.operation, "cause": str(error.cause)},
        )

    async def get_position_history(
        self,
        participant_id: str,
        race_id: str,
        limit: int | None = None,
    ) -> list[TrackingPosition]:
        try:
            return await self._repository.find_by_participant_and_race(participant_id, race_id, limit)
        except StorageRejection as e:
            await self._log_storage_error(e)
            return []

    async def get_race_positions(
        self,
        race_id: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[TrackingPosition]:
        try:
            return await self._repository.find_by_race(race_id, start_time, end_time, limit)
        except StorageRejection as e:
            await self._log_storage_error(e)
            return []

    async def get_latest_race_positions(self, race_id: str) -> list[TrackingPosition]:
        """Последняя позиция каждого участника по истории в БД."""
        try:
            return await self._repository.find_latest_by_race(race_id)
        except StorageRejection as e:
            await self._log_storage_error(e)
            return []

    async def get_cached_race_positions(self, race_id: str) -> list[ProcessedPosition]:
        try:
            return await self._cache.get_race_positions(race_id)
        except StorageRejection as e:
            await self._log_storage_error(e)
            return []

    async def get_cached_participant_position(
        self,
        participant_id: str,
        race_id: str,
    ) -> ProcessedPosition | None:
        try:
            return await self._cache.get_last_position(RaceParticipantKey(race_id, participant_id))
        except StorageRejection as e:
            await self._log_storage_error(e)
            return None

    async def get_participant_position(self, participant_id: str, race_id: str) -> PositionUpdate:
        """
        Текущая позиция участника: сначала кэш, затем история в БД.

        Raises:
            NotFoundRejection: позиции нет ни в кэше, ни в БД
        """
        cached = await self.get_cached_participant_position(participant_id, race_id)
        if cached is not None:
            return cached.to_update()

        try:
            stored = await self._repository.find_latest_by_participant(participant_id, race_id)
        except StorageRejection as e:
            await self._log_storage_error(e)
            stored = None

        if stored is None:
            raise NotFoundRejection(participant_id, race_id)
        return stored.to_update()

    async def count_participant_positions(self, participant_id: str, race_id: str) -> int:
        try:
            return await self._repository.count_by_participant(participant_id, race_id)
        except StorageRejection as e:
            await self._log_storage_error(e)
            return 0

    # =========================================================================
    # ОБСЛУЖИВАНИЕ
    # =========================================================================

    async def cleanup_old_positions(self, older_than_days: int = 30) -> int:
        """Удаляет историю старше older_than_days; возвращает число удалённых строк."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        try:
            deleted = await self._repository.delete_older_than(cutoff)
        except StorageRejection as e:
            await self._log_storage_error(e)
            return 0

        await log_info(
            "Старые позиции удалены",
            extra={"deleted": deleted, "cutoff": cutoff.astimezone(timezone.utc).isoformat()},
        )
        return deleted

    async def purge_race(self, race_id: str) -> int:
        """Удаляет историю гонки и её закэшированные позиции."""
        try:
            cached = await self._cache.get_race_positions(race_id)
            for position in cached:
                await self._cache.delete_position(position.key)
            deleted = await self._repository.delete_by_race(race_id)
        except StorageRejection as e:
            await self._log_storage_error(e)
            return 0

        await log_info("История гонки удалена", extra={"race_id": race_id, "deleted": deleted})
        return deleted
