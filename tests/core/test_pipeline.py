# tests/core/test_pipeline.py
"""
Тесты конвейера обработки сообщений трекера.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.common.constants import ParticipantStatus, StoreName
from src.core.tracking.errors import (
    InvalidCoordinatesRejection,
    StalenessRejection,
    StorageRejection,
    TimestampRejection,
    ValidationRejection,
)
from src.core.tracking.models import ProcessedPosition
from src.core.tracking.pipeline import (
    PipelineConfig,
    PipelineDeps,
    batch_process_tracking_data,
    check_staleness,
    parse_timestamp,
    process_tracking_data,
    process_tracking_data_with_logging,
    validate_and_enrich,
    validate_coordinates,
    validate_payload,
)


def _save_returning_update() -> AsyncMock:
    async def save(position: ProcessedPosition):
        return position.to_update()

    return AsyncMock(side_effect=save)


class TestValidatePayload:
    """Этап 1: структурная проверка."""

    def test_valid_payload(self, sample_payload: dict[str, Any]) -> None:
        payload = validate_payload(sample_payload)

        assert payload.participant_id == "P1"
        assert payload.race_id == "R1"
        assert payload.status is ParticipantStatus.MOVING

    def test_extra_fields_ignored(self, sample_payload: dict[str, Any]) -> None:
        payload = validate_payload({**sample_payload, "battery": 87})
        assert not hasattr(payload, "battery")

    def test_not_an_object(self) -> None:
        with pytest.raises(ValidationRejection) as exc_info:
            validate_payload(["P1", "R1"])

        assert exc_info.value.errors == ["payload: Input should be an object, got list"]

    @pytest.mark.parametrize("field", ["participant_id", "race_id", "latitude", "longitude", "timestamp", "status"])
    def test_missing_field(self, sample_payload: dict[str, Any], field: str) -> None:
        del sample_payload[field]

        with pytest.raises(ValidationRejection) as exc_info:
            validate_payload(sample_payload)

        assert any(error.startswith(f"{field}:") for error in exc_info.value.errors)

    def test_empty_participant_id(self, sample_payload: dict[str, Any]) -> None:
        sample_payload["participant_id"] = ""
        with pytest.raises(ValidationRejection):
            validate_payload(sample_payload)

    def test_numeric_participant_id_rejected(self, sample_payload: dict[str, Any]) -> None:
        sample_payload["participant_id"] = 42
        with pytest.raises(ValidationRejection):
            validate_payload(sample_payload)

    @pytest.mark.parametrize("latitude", [90.0001, -91, "55.7", True, None])
    def test_bad_latitude(self, sample_payload: dict[str, Any], latitude: Any) -> None:
        sample_payload["latitude"] = latitude
        with pytest.raises(ValidationRejection):
            validate_payload(sample_payload)

    @pytest.mark.parametrize("longitude", [180.5, -181])
    def test_bad_longitude(self, sample_payload: dict[str, Any], longitude: float) -> None:
        sample_payload["longitude"] = longitude
        with pytest.raises(ValidationRejection):
            validate_payload(sample_payload)

    def test_boundary_coordinates_accepted(self, sample_payload: dict[str, Any]) -> None:
        sample_payload["latitude"] = -90
        sample_payload["longitude"] = 180

        payload = validate_payload(sample_payload)

        assert payload.latitude == -90
        assert payload.longitude == 180

    @pytest.mark.parametrize("timestamp", ["yesterday", "2025-07-01", "2025-07-01 08:15:30Z", "2025-07-01T08:15:30"])
    def test_bad_timestamp_format(self, sample_payload: dict[str, Any], timestamp: str) -> None:
        sample_payload["timestamp"] = timestamp
        with pytest.raises(ValidationRejection):
            validate_payload(sample_payload)

    def test_unknown_status(self, sample_payload: dict[str, Any]) -> None:
        sample_payload["status"] = "flying"
        with pytest.raises(ValidationRejection) as exc_info:
            validate_payload(sample_payload)

        assert exc_info.value.payload is sample_payload

    def test_collects_all_errors(self, sample_payload: dict[str, Any]) -> None:
        sample_payload["latitude"] = 100
        sample_payload["status"] = "flying"

        with pytest.raises(ValidationRejection) as exc_info:
            validate_payload(sample_payload)

        assert len(exc_info.value.errors) == 2


class TestParseTimestamp:
    """Этап 2: разбор времени."""

    def test_zulu(self) -> None:
        parsed = parse_timestamp("2025-07-01T08:15:30Z")
        assert parsed == datetime(2025, 7, 1, 8, 15, 30, tzinfo=timezone.utc)

    def test_offset_converted_to_utc(self) -> None:
        parsed = parse_timestamp("2025-07-01T11:15:30.250+03:00")

        assert parsed.utcoffset() == timedelta(0)
        assert parsed == datetime(2025, 7, 1, 8, 15, 30, 250000, tzinfo=timezone.utc)

    def test_impossible_date(self) -> None:
        with pytest.raises(TimestampRejection) as exc_info:
            parse_timestamp("2025-02-30T08:15:30Z")

        assert exc_info.value.raw_timestamp == "2025-02-30T08:15:30Z"

    def test_naive_rejected(self) -> None:
        with pytest.raises(TimestampRejection):
            parse_timestamp("2025-07-01T08:15:30")


class TestValidateCoordinates:
    """Этап 3."""

    def test_in_range(self) -> None:
        validate_coordinates(-7.9456, 112.6145)

    def test_out_of_range(self) -> None:
        with pytest.raises(InvalidCoordinatesRejection) as exc_info:
            validate_coordinates(91, 0)

        assert exc_info.value.latitude == 91
        assert exc_info.value.longitude == 0


class TestCheckStaleness:
    """Этап 4."""

    def test_fresh(self, sample_payload: dict[str, Any], fixed_now: datetime) -> None:
        payload = validate_payload(sample_payload)
        check_staleness(payload, fixed_now - timedelta(seconds=10), 30000, fixed_now)

    def test_exactly_at_threshold_is_fresh(self, sample_payload: dict[str, Any], fixed_now: datetime) -> None:
        payload = validate_payload(sample_payload)
        check_staleness(payload, fixed_now - timedelta(milliseconds=30000), 30000, fixed_now)

    def test_stale(self, sample_payload: dict[str, Any], fixed_now: datetime) -> None:
        payload = validate_payload(sample_payload)
        timestamp = fixed_now - timedelta(seconds=31)

        with pytest.raises(StalenessRejection) as exc_info:
            check_staleness(payload, timestamp, 30000, fixed_now)

        assert exc_info.value.participant_id == "P1"
        assert exc_info.value.race_id == "R1"
        assert exc_info.value.data_timestamp == timestamp

    def test_future_timestamp_not_rejected(self, sample_payload: dict[str, Any], fixed_now: datetime) -> None:
        payload = validate_payload(sample_payload)
        check_staleness(payload, fixed_now + timedelta(minutes=5), 30000, fixed_now)


class TestValidateAndEnrich:
    """Этапы 1–5."""

    def test_enriched_position(self, sample_payload: dict[str, Any], clock, fixed_now: datetime) -> None:
        position = validate_and_enrich(sample_payload, PipelineConfig(), clock)

        assert position.client_timestamp == datetime(2025, 7, 1, 8, 15, 30, tzinfo=timezone.utc)
        assert position.server_received_at == fixed_now
        assert position.key.cache_key == "race:R1:participant:P1:last"

    def test_stale_with_small_threshold(self, sample_payload: dict[str, Any], clock) -> None:
        with pytest.raises(StalenessRejection):
            validate_and_enrich(sample_payload, PipelineConfig(stale_data_threshold_ms=5000), clock)

    def test_clock_read_once(self, sample_payload: dict[str, Any], fixed_now: datetime) -> None:
        """Проверка свежести и server_received_at используют одно и то же «сейчас»."""
        instants = iter([fixed_now, fixed_now + timedelta(seconds=30)])
        clock = MagicMock(side_effect=lambda: next(instants))

        position = validate_and_enrich(sample_payload, PipelineConfig(stale_data_threshold_ms=15000), clock)

        assert clock.call_count == 1
        assert position.server_received_at == fixed_now


class TestProcessTrackingData:
    """Полный проход: запись, затем рассылка."""

    @pytest.mark.asyncio
    async def test_saves_then_broadcasts(self, sample_payload: dict[str, Any], clock) -> None:
        calls: list[str] = []

        async def tracking_save(position: ProcessedPosition):
            calls.append("save")
            return position.to_update()

        def broadcast(update) -> None:
            calls.append("broadcast")

        deps = PipelineDeps(save_position=tracking_save, broadcast=broadcast, clock=clock)

        update = await process_tracking_data(sample_payload, PipelineConfig(), deps)

        assert calls == ["save", "broadcast"]
        assert update.participant_id == "P1"
        assert update.to_wire()["timestamp"] == "2025-07-01T08:15:30.000Z"

    @pytest.mark.asyncio
    async def test_rejected_payload_not_saved(self, sample_payload: dict[str, Any], clock) -> None:
        save = _save_returning_update()
        broadcast = MagicMock()
        sample_payload["latitude"] = 95

        with pytest.raises(ValidationRejection):
            await process_tracking_data(
                sample_payload,
                PipelineConfig(),
                PipelineDeps(save_position=save, broadcast=broadcast, clock=clock),
            )

        save.assert_not_called()
        broadcast.assert_not_called()

    @pytest.mark.asyncio
    async def test_storage_failure_skips_broadcast(self, sample_payload: dict[str, Any], clock) -> None:
        save = AsyncMock(side_effect=StorageRejection("setLastPosition", StoreName.CACHE, ConnectionError("down")))
        broadcast = MagicMock()

        with pytest.raises(StorageRejection):
            await process_tracking_data(
                sample_payload,
                PipelineConfig(),
                PipelineDeps(save_position=save, broadcast=broadcast, clock=clock),
            )

        broadcast.assert_not_called()

    @pytest.mark.asyncio
    async def test_broadcast_failure_does_not_fail_processing(self, sample_payload: dict[str, Any], clock) -> None:
        broadcast = MagicMock(side_effect=RuntimeError("socket gone"))

        update = await process_tracking_data(
            sample_payload,
            PipelineConfig(),
            PipelineDeps(save_position=_save_returning_update(), broadcast=broadcast, clock=clock),
        )

        assert update.race_id == "R1"
        broadcast.assert_called_once()


class TestProcessWithLogging:
    """Отказы превращаются в None."""

    @pytest.mark.asyncio
    async def test_success(self, sample_payload: dict[str, Any], clock) -> None:
        deps = PipelineDeps(save_position=_save_returning_update(), clock=clock)
        update = await process_tracking_data_with_logging(sample_payload, PipelineConfig(), deps)
        assert update is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "mutation",
        [
            {"latitude": 200},
            {"timestamp": "2025-13-01T08:15:30Z"},
            {"timestamp": "2025-07-01T08:00:00Z"},
            {"status": None},
        ],
    )
    async def test_rejections_return_none(
        self,
        sample_payload: dict[str, Any],
        clock,
        mutation: dict[str, Any],
    ) -> None:
        save = _save_returning_update()
        deps = PipelineDeps(save_position=save, clock=clock)

        result = await process_tracking_data_with_logging({**sample_payload, **mutation}, PipelineConfig(), deps)

        assert result is None
        save.assert_not_called()

    @pytest.mark.asyncio
    async def test_storage_rejection_returns_none(self, sample_payload: dict[str, Any], clock) -> None:
        save = AsyncMock(side_effect=StorageRejection("saveToPostgres", StoreName.DATABASE, OSError("refused")))
        deps = PipelineDeps(save_position=save, clock=clock)

        assert await process_tracking_data_with_logging(sample_payload, PipelineConfig(), deps) is None

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_none(self, sample_payload: dict[str, Any], clock) -> None:
        save = AsyncMock(side_effect=KeyError("boom"))
        deps = PipelineDeps(save_position=save, clock=clock)

        assert await process_tracking_data_with_logging(sample_payload, PipelineConfig(), deps) is None


class TestBatchProcess:
    """Пакетная обработка."""

    @pytest.mark.asyncio
    async def test_only_successes_returned(self, sample_payload: dict[str, Any], clock) -> None:
        items = [
            sample_payload,
            {**sample_payload, "participant_id": "P2"},
            {**sample_payload, "latitude": 1000},
            "not json object",
        ]
        deps = PipelineDeps(save_position=_save_returning_update(), clock=clock)

        updates = await batch_process_tracking_data(items, PipelineConfig(batch_concurrency=2), deps)

        assert sorted(u.participant_id for u in updates) == ["P1", "P2"]

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, sample_payload: dict[str, Any], clock) -> None:
        """Одновременно пишется не больше batch_concurrency позиций."""
        active = 0
        peak = 0

        async def save(position: ProcessedPosition):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return position.to_update()

        items = [{**sample_payload, "participant_id": f"P{i}"} for i in range(30)]
        deps = PipelineDeps(save_position=AsyncMock(side_effect=save), clock=clock)

        updates = await batch_process_tracking_data(items, PipelineConfig(batch_concurrency=10), deps)

        assert len(updates) == 30
        assert peak == 10

    @pytest.mark.asyncio
    async def test_empty_batch(self, clock) -> None:
        deps = PipelineDeps(save_position=_save_returning_update(), clock=clock)
        assert await batch_process_tracking_data([], PipelineConfig(), deps) == []
