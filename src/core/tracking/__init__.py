# src/core/tracking/__init__.py
"""
Домен трекинга: проверка, запись и чтение позиций участников гонок.
"""

from src.core.tracking.cache import PositionCache
from src.core.tracking.dual_write import DualWriteCoordinator
from src.core.tracking.errors import (
    InvalidCoordinatesRejection,
    NotFoundRejection,
    StalenessRejection,
    StorageRejection,
    TimestampRejection,
    TrackingRejection,
    ValidationRejection,
    format_rejection,
)
from src.core.tracking.models import (
    PositionUpdate,
    ProcessedPosition,
    RaceParticipantKey,
    TrackingPayload,
    TrackingPosition,
)
from src.core.tracking.pipeline import (
    PipelineConfig,
    PipelineDeps,
    batch_process_tracking_data,
    process_tracking_data,
    process_tracking_data_with_logging,
)
from src.core.tracking.repository import TrackingRepository
from src.core.tracking.service import TrackingService

__all__ = [
    "PositionCache",
    "DualWriteCoordinator",
    "TrackingRepository",
    "TrackingService",
    "PipelineConfig",
    "PipelineDeps",
    "process_tracking_data",
    "process_tracking_data_with_logging",
    "batch_process_tracking_data",
    "TrackingPayload",
    "ProcessedPosition",
    "PositionUpdate",
    "RaceParticipantKey",
    "TrackingPosition",
    "TrackingRejection",
    "ValidationRejection",
    "TimestampRejection",
    "InvalidCoordinatesRejection",
    "StalenessRejection",
    "StorageRejection",
    "NotFoundRejection",
    "format_rejection",
]
