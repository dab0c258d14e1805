# src/core/tracking/repository.py
"""
Репозиторий истории позиций (таблица tracking_positions).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, TypeVar

from src.common.constants import StoreName
from src.core.tracking.errors import StorageRejection
from src.core.tracking.models import ProcessedPosition, TrackingPosition
from src.infra.database import DatabaseManager

T = TypeVar("T")

_COLUMNS = """
    id, participant_id, race_id, latitude, longitude,
    client_timestamp, server_received_at, status::text AS status
"""


def _decimal(value: float) -> Decimal:
    return Decimal(str(value))


def _affected_rows(status: str) -> int:
    """'DELETE 42' -> 42."""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError, AttributeError):
        return 0


class TrackingRepository:
    """
    Запись и чтение истории позиций.
    Любая ошибка БД превращается в StorageRejection с именем операции.
    """

    def __init__(
        self,
        db: DatabaseManager,
        default_limit: int = 100,
        max_limit: int = 1000,
    ) -> None:
        self._db = db
        self._default_limit = default_limit
        self._max_limit = max_limit

    def _clamp(self, limit: int | None) -> int:
        if limit is None:
            limit = self._default_limit
        return max(1, min(limit, self._max_limit))

    async def _run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except StorageRejection:
            raise
        except Exception as e:
            raise StorageRejection(operation, StoreName.DATABASE, e) from e

    # =========================================================================
    # ЗАПИСЬ
    # =========================================================================

    async def save(self, position: ProcessedPosition) -> TrackingPosition:
        async def call() -> TrackingPosition:
            row = await self._db.fetchrow(
                f"""
                INSERT INTO tracking_positions (
                    participant_id, race_id, latitude, longitude,
                    client_timestamp, server_received_at, status
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7::participant_status)
                RETURNING {_COLUMNS}
                """,
                position.participant_id,
                position.race_id,
                _decimal(position.latitude),
                _decimal(position.longitude),
                position.client_timestamp,
                position.server_received_at,
                position.status.value,
                retry=False,
            )
            if row is None:
                raise RuntimeError("INSERT не вернул строку")
            return TrackingPosition.from_record(row)

        return await self._run("save", call)

    async def save_batch(self, positions: list[ProcessedPosition]) -> list[TrackingPosition]:
        """Вставка пачки одним запросом (атомарно)."""
        if not positions:
            return []

        async def call() -> list[TrackingPosition]:
            rows = await self._db.fetch(
                f"""
                INSERT INTO tracking_positions (
                    participant_id, race_id, latitude, longitude,
                    client_timestamp, server_received_at, status
                )
                SELECT * FROM unnest(
                    $1::varchar[], $2::varchar[], $3::numeric[], $4::numeric[],
                    $5::timestamptz[], $6::timestamptz[], $7::participant_status[]
                )
                RETURNING {_COLUMNS}
                """,
                [p.participant_id for p in positions],
                [p.race_id for p in positions],
                [_decimal(p.latitude) for p in positions],
                [_decimal(p.longitude) for p in positions],
                [p.client_timestamp for p in positions],
                [p.server_received_at for p in positions],
                [p.status.value for p in positions],
                retry=False,
            )
            return [TrackingPosition.from_record(row) for row in rows]

        return await self._run("saveBatch", call)

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def find_by_participant_and_race(
        self,
        participant_id: str,
        race_id: str,
        limit: int | None = None,
    ) -> list[TrackingPosition]:
        """История участника в гонке, от новых к старым."""
        async def call() -> list[TrackingPosition]:
            rows = await self._db.fetch(
                f"""
                SELECT {_COLUMNS}
                FROM tracking_positions
                WHERE participant_id = $1 AND race_id = $2
                ORDER BY client_timestamp DESC
                LIMIT $3
                """,
                participant_id,
                race_id,
                self._clamp(limit),
            )
            return [TrackingPosition.from_record(row) for row in rows]

        return await self._run("findByParticipantAndRace", call)

    async def find_by_race(
        self,
        race_id: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[TrackingPosition]:
        """История гонки в необязательном окне времени."""
        conditions = ["race_id = $1"]
        params: list[Any] = [race_id]

        if start_time is not None:
            params.append(start_time)
            conditions.append(f"client_timestamp >= ${len(params)}")
        if end_time is not None:
            params.append(end_time)
            conditions.append(f"client_timestamp <= ${len(params)}")
        params.append(self._clamp(limit))

        query = f"""
            SELECT {_COLUMNS}
            FROM tracking_positions
            WHERE {' AND '.join(conditions)}
            ORDER BY client_timestamp DESC
            LIMIT ${len(params)}
        """

        async def call() -> list[TrackingPosition]:
            rows = await self._db.fetch(query, *params)
            return [TrackingPosition.from_record(row) for row in rows]

        return await self._run("findByRace", call)

    async def find_latest_by_race(self, race_id: str) -> list[TrackingPosition]:
        """Одна строка на участника: последняя по порядку вставки."""
        async def call() -> list[TrackingPosition]:
            rows = await self._db.fetch(
                f"""
                SELECT DISTINCT ON (participant_id) {_COLUMNS}
                FROM tracking_positions
                WHERE race_id = $1
                ORDER BY participant_id, seq DESC
                """,
                race_id,
            )
            return [TrackingPosition.from_record(row) for row in rows]

        return await self._run("findLatestByRace", call)

    async def find_latest_by_participant(
        self,
        participant_id: str,
        race_id: str,
    ) -> TrackingPosition | None:
        async def call() -> TrackingPosition | None:
            row = await self._db.fetchrow(
                f"""
                SELECT {_COLUMNS}
                FROM tracking_positions
                WHERE participant_id = $1 AND race_id = $2
                ORDER BY client_timestamp DESC, seq DESC
                LIMIT 1
                """,
                participant_id,
                race_id,
            )
            return TrackingPosition.from_record(row) if row is not None else None

        return await self._run("findLatestByParticipant", call)

    async def count_by_participant(self, participant_id: str, race_id: str) -> int:
        async def call() -> int:
            value = await self._db.fetchval(
                """
                SELECT COUNT(*) FROM tracking_positions
                WHERE participant_id = $1 AND race_id = $2
                """,
                participant_id,
                race_id,
            )
            return int(value or 0)

        return await self._run("countByParticipant", call)

    async def exists_by_participant(self, participant_id: str, race_id: str) -> bool:
        async def call() -> bool:
            value = await self._db.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM tracking_positions
                    WHERE participant_id = $1 AND race_id = $2
                )
                """,
                participant_id,
                race_id,
            )
            return bool(value)

        return await self._run("existsByParticipant", call)

    async def count_by_race(self, race_id: str) -> int:
        async def call() -> int:
            value = await self._db.fetchval(
                "SELECT COUNT(*) FROM tracking_positions WHERE race_id = $1",
                race_id,
            )
            return int(value or 0)

        return await self._run("countByRace", call)

    # =========================================================================
    # УДАЛЕНИЕ
    # =========================================================================

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Удаляет позиции с client_timestamp раньше cutoff; возвращает число строк."""
        async def call() -> int:
            status = await self._db.execute(
                "DELETE FROM tracking_positions WHERE client_timestamp < $1",
                cutoff,
                retry=False,
            )
            return _affected_rows(status)

        return await self._run("deleteOlderThan", call)

    async def delete_by_race(self, race_id: str) -> int:
        async def call() -> int:
            status = await self._db.execute(
                "DELETE FROM tracking_positions WHERE race_id = $1",
                race_id,
                retry=False,
            )
            return _affected_rows(status)

        return await self._run("deleteByRace", call)
