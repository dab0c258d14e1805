# src/core/tracking/errors.py
"""
Отказы конвейера трекинга.

Закрытая иерархия: у каждого класса свой tag, по которому граница
(роутер, сервис) выбирает уровень логирования.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from src.common.constants import StoreName


class TrackingRejection(Exception):
    """Базовый отказ конвейера."""

    tag: str = "TrackingRejection"


class ValidationRejection(TrackingRejection):
    """Сообщение не прошло структурную проверку."""

    tag = "PayloadValidationError"

    def __init__(self, payload: Any, errors: list[str]) -> None:
        self.payload = payload
        self.errors = list(errors)
        super().__init__(f"Некорректное сообщение: {'; '.join(self.errors)}")


class TimestampRejection(TrackingRejection):
    """Строку времени не удалось превратить в момент времени."""

    tag = "TimestampParseError"

    def __init__(self, raw_timestamp: str) -> None:
        self.raw_timestamp = raw_timestamp
        super().__init__(f"Некорректное время: {raw_timestamp}")


class InvalidCoordinatesRejection(TrackingRejection):
    tag = "InvalidCoordinatesError"

    def __init__(self, latitude: float, longitude: float) -> None:
        self.latitude = latitude
        self.longitude = longitude
        super().__init__(f"Координаты вне диапазона: lat={latitude}, lng={longitude}")


class StalenessRejection(TrackingRejection):
    """Позиция старше порога свежести."""

    tag = "StaleDataError"

    def __init__(
        self,
        participant_id: str,
        race_id: str,
        data_timestamp: datetime,
        threshold_ms: int,
    ) -> None:
        self.participant_id = participant_id
        self.race_id = race_id
        self.data_timestamp = data_timestamp
        self.threshold_ms = threshold_ms
        super().__init__(
            f"Устаревшие данные участника {participant_id} (гонка {race_id}): "
            f"{data_timestamp.isoformat()}, порог {threshold_ms} мс"
        )


class StorageRejection(TrackingRejection):
    """Ошибка хранилища с названием операции и исходной причиной."""

    tag = "StorageError"

    def __init__(self, operation: str, store: StoreName | str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.store = StoreName(store)
        self.cause = cause
        super().__init__(f"Ошибка хранилища {self.store.value} в {operation}: {cause}")
        if cause is not None:
            self.__cause__ = cause


class NotFoundRejection(TrackingRejection):
    tag = "NotFoundError"

    def __init__(self, participant_id: str, race_id: str) -> None:
        self.participant_id = participant_id
        self.race_id = race_id
        super().__init__(f"Позиция участника {participant_id} в гонке {race_id} не найдена")


def format_rejection(error: TrackingRejection) -> str:
    """Читаемая строка для лога или канала ошибок оператора."""
    match error:
        case ValidationRejection(errors=errors):
            return f"Validation failed: {', '.join(errors)}"
        case TimestampRejection(raw_timestamp=raw):
            return f"Invalid timestamp: {raw}"
        case InvalidCoordinatesRejection(latitude=lat, longitude=lng):
            return f"Invalid coordinates: lat={lat}, lng={lng}"
        case StalenessRejection(participant_id=pid, data_timestamp=ts, threshold_ms=threshold):
            return f"Stale data for participant {pid}: {ts.isoformat()} (threshold {threshold}ms)"
        case StorageRejection(operation=operation, store=store):
            return f"Storage error in {operation} ({store.value}): {error.cause}"
        case NotFoundRejection(participant_id=pid, race_id=race_id):
            return f"Position not found for participant {pid} in race {race_id}"
        case _:
            return f"Unknown tracking error ({error.tag}): {error}"
