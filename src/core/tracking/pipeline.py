# src/core/tracking/pipeline.py
"""
Конвейер обработки сообщения трекера.

Этапы:
    1. структурная проверка (TrackingPayload)
    2. разбор времени в UTC
    3. повторная проверка координат
    4. проверка свежести
    5. обогащение временем получения сервером
Затем двойная запись и, только после неё, рассылка зрителям.

Ни один этап до записи не делает await.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable

from pydantic import ValidationError

from src.common.logger import log_debug, log_error, log_info, log_warning
from src.core.tracking.errors import (
    InvalidCoordinatesRejection,
    StalenessRejection,
    StorageRejection,
    TimestampRejection,
    TrackingRejection,
    ValidationRejection,
    format_rejection,
)
from src.core.tracking.models import PositionUpdate, ProcessedPosition, TrackingPayload

Clock = Callable[[], datetime]
SavePosition = Callable[[ProcessedPosition], Awaitable[PositionUpdate]]
Broadcast = Callable[[PositionUpdate], None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PipelineConfig:
    stale_data_threshold_ms: int = 30000
    batch_concurrency: int = 10

    @classmethod
    def from_settings(cls, tracking_settings: Any) -> PipelineConfig:
        return cls(
            stale_data_threshold_ms=tracking_settings.STALE_DATA_THRESHOLD_MS,
            batch_concurrency=tracking_settings.BATCH_CONCURRENCY,
        )


@dataclass
class PipelineDeps:
    """
    Зависимости конвейера.

    save_position — двойная запись, возвращает обновление для рассылки.
    broadcast — синхронная рассылка, вызывается только после записи.
    clock — источник текущего времени (UTC).
    """

    save_position: SavePosition
    broadcast: Broadcast | None = None
    clock: Clock = field(default=utc_now)


# =============================================================================
# ЭТАПЫ
# =============================================================================

def _format_validation_errors(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "payload"
        messages.append(f"{location}: {item['msg']}")
    return messages


def validate_payload(raw: Any) -> TrackingPayload:
    """Этап 1. Raises ValidationRejection со списком нарушений по полям."""
    if not isinstance(raw, dict):
        raise ValidationRejection(raw, [f"payload: Input should be an object, got {type(raw).__name__}"])
    try:
        return TrackingPayload.model_validate(raw)
    except ValidationError as e:
        raise ValidationRejection(raw, _format_validation_errors(e)) from e


def parse_timestamp(raw_timestamp: str) -> datetime:
    """Этап 2. Строка ISO-8601 → aware datetime в UTC."""
    try:
        parsed = datetime.fromisoformat(raw_timestamp)
    except (TypeError, ValueError) as e:
        raise TimestampRejection(raw_timestamp) from e
    if parsed.tzinfo is None:
        raise TimestampRejection(raw_timestamp)
    return parsed.astimezone(timezone.utc)


def validate_coordinates(latitude: float, longitude: float) -> None:
    """Этап 3."""
    if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
        raise InvalidCoordinatesRejection(latitude, longitude)


def check_staleness(
    payload: TrackingPayload,
    client_timestamp: datetime,
    threshold_ms: int,
    now: datetime,
) -> None:
    """Этап 4. Будущее время не отклоняется: проверяется только возраст."""
    if now - client_timestamp > timedelta(milliseconds=threshold_ms):
        raise StalenessRejection(
            payload.participant_id,
            payload.race_id,
            client_timestamp,
            threshold_ms,
        )


def enrich(payload: TrackingPayload, client_timestamp: datetime, now: datetime) -> ProcessedPosition:
    """Этап 5."""
    return ProcessedPosition(
        participant_id=payload.participant_id,
        race_id=payload.race_id,
        latitude=payload.latitude,
        longitude=payload.longitude,
        client_timestamp=client_timestamp,
        server_received_at=now,
        status=payload.status,
    )


def validate_and_enrich(raw: Any, config: PipelineConfig, clock: Clock = utc_now) -> ProcessedPosition:
    """Этапы 1–5 без записи."""
    payload = validate_payload(raw)
    client_timestamp = parse_timestamp(payload.timestamp)
    validate_coordinates(payload.latitude, payload.longitude)
    now = clock()
    check_staleness(payload, client_timestamp, config.stale_data_threshold_ms, now)
    return enrich(payload, client_timestamp, now)


# =============================================================================
# ЗАПУСК
# =============================================================================

async def process_tracking_data(
    raw: Any,
    config: PipelineConfig,
    deps: PipelineDeps,
) -> PositionUpdate:
    """
    Полный проход: проверки, двойная запись, рассылка.

    Raises:
        TrackingRejection: один из отказов этапов 1–4 или StorageRejection
    """
    position = validate_and_enrich(raw, config, deps.clock)
    update = await deps.save_position(position)

    if deps.broadcast is not None:
        try:
            deps.broadcast(update)
        except Exception as e:
            # Позиция уже записана, сбой рассылки её не отменяет
            await log_error(
                f"Ошибка рассылки обновления позиции: {e}",
                extra={"participant_id": update.participant_id, "race_id": update.race_id},
                exc_info=True,
            )

    return update


async def process_tracking_data_with_logging(
    raw: Any,
    config: PipelineConfig,
    deps: PipelineDeps,
) -> PositionUpdate | None:
    """
    То же, но отказы логируются и превращаются в None.
    Не пробрасывает ничего, кроме отмены задачи.
    """
    try:
        update = await process_tracking_data(raw, config, deps)
    except ValidationRejection as e:
        await log_warning("Сообщение не прошло проверку", extra={"tag": e.tag, "errors": e.errors})
        return None
    except TimestampRejection as e:
        await log_warning("Не удалось разобрать время", extra={"tag": e.tag, "raw_timestamp": e.raw_timestamp})
        return None
    except InvalidCoordinatesRejection as e:
        await log_warning(
            "Координаты вне диапазона",
            extra={"tag": e.tag, "latitude": e.latitude, "longitude": e.longitude},
        )
        return None
    except StalenessRejection as e:
        await log_info(
            "Отброшены устаревшие данные",
            extra={
                "tag": e.tag,
                "participant_id": e.participant_id,
                "race_id": e.race_id,
                "data_timestamp": e.data_timestamp.isoformat(),
            },
        )
        return None
    except StorageRejection as e:
        await log_error(
            "Ошибка записи позиции",
            extra={"tag": e.tag, "store": e.store.value, "operation": e.operation, "cause": str(e.cause)},
        )
        return None
    except TrackingRejection as e:
        await log_warning(format_rejection(e), extra={"tag": e.tag})
        return None
    except Exception as e:
        await log_error(f"Непредвиденная ошибка обработки сообщения: {e}", exc_info=True)
        return None

    await log_debug(
        "Позиция обработана",
        extra={"participant_id": update.participant_id, "race_id": update.race_id},
    )
    return update


async def batch_process_tracking_data(
    raw_items: Iterable[Any],
    config: PipelineConfig,
    deps: PipelineDeps,
) -> list[PositionUpdate]:
    """Обрабатывает пачку независимо; возвращает только успешные, порядок не гарантирован."""
    semaphore = asyncio.Semaphore(config.batch_concurrency)

    async def run(raw: Any) -> PositionUpdate | None:
        async with semaphore:
            return await process_tracking_data_with_logging(raw, config, deps)

    results = await asyncio.gather(*(run(raw) for raw in raw_items))
    return [update for update in results if update is not None]
