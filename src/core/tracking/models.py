# src/core/tracking/models.py
"""
Модели данных трекинга участников гонки.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from src.common.constants import ParticipantStatus


# YYYY-MM-DDTHH:MM:SS[.fff](Z|±HH:MM)
ISO_DATETIME_PATTERN = r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})$"


def to_wire_timestamp(value: datetime) -> str:
    """UTC-время в формате 2025-07-01T08:15:30.000Z."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


class RaceParticipantKey(NamedTuple):
    """Составной ключ (гонка, участник)."""
    race_id: str
    participant_id: str

    @property
    def cache_key(self) -> str:
        return f"race:{self.race_id}:participant:{self.participant_id}:last"


class TrackingPayload(BaseModel):
    """
    Сообщение трекера после структурной проверки.
    Не создаётся, если хоть одно поле отсутствует или вне домена.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    participant_id: str = Field(..., min_length=1, strict=True)
    race_id: str = Field(..., min_length=1, strict=True)
    latitude: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(..., ge=-180, le=180, allow_inf_nan=False)
    timestamp: str = Field(..., pattern=ISO_DATETIME_PATTERN, strict=True)
    status: ParticipantStatus

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def require_json_number(cls, v: Any) -> Any:
        """Только числа JSON: true и "12.5" не проходят."""
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("Input should be a number")
        return v


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class ProcessedPosition(_CamelModel):
    """
    Позиция, прошедшая все проверки, с временем получения сервером.
    В кэше хранится в JSON с camelCase-ключами.
    """

    participant_id: str
    race_id: str
    latitude: float
    longitude: float
    client_timestamp: datetime
    server_received_at: datetime
    status: ParticipantStatus

    @property
    def key(self) -> RaceParticipantKey:
        return RaceParticipantKey(self.race_id, self.participant_id)

    def to_update(self) -> PositionUpdate:
        return PositionUpdate.from_position(self)


class PositionUpdate(_CamelModel):
    """Обновление позиции для рассылки зрителям."""

    participant_id: str
    race_id: str
    latitude: float
    longitude: float
    timestamp: datetime
    status: ParticipantStatus
    server_received_at: datetime | None = None

    @classmethod
    def from_position(cls, position: ProcessedPosition | TrackingPosition) -> PositionUpdate:
        """Из принятой или сохранённой позиции: timestamp берётся из client_timestamp."""
        return cls(
            participant_id=position.participant_id,
            race_id=position.race_id,
            latitude=position.latitude,
            longitude=position.longitude,
            timestamp=position.client_timestamp,
            status=position.status,
            server_received_at=position.server_received_at,
        )

    def to_wire(self) -> dict[str, Any]:
        """Тело события position_update (serverReceivedAt в рассылку не входит)."""
        return {
            "participantId": self.participant_id,
            "raceId": self.race_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": to_wire_timestamp(self.timestamp),
            "status": self.status.value,
        }

    def to_batch_item(self) -> dict[str, Any]:
        """Элемент batch_position_update: без raceId."""
        return {
            "participantId": self.participant_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": to_wire_timestamp(self.timestamp),
            "status": self.status.value,
        }


class TrackingPosition(BaseModel):
    """Строка таблицы tracking_positions."""

    id: str
    participant_id: str
    race_id: str
    latitude: float
    longitude: float
    client_timestamp: datetime
    server_received_at: datetime
    status: ParticipantStatus

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_record(cls, record: Any) -> TrackingPosition:
        """Из asyncpg.Record: uuid и numeric приводятся к str и float."""
        data = dict(record)
        data["id"] = str(data["id"])
        data["latitude"] = float(data["latitude"])
        data["longitude"] = float(data["longitude"])
        return cls.model_validate(data)

    def to_update(self) -> PositionUpdate:
        return PositionUpdate.from_position(self)
