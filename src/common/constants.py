"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ParticipantStatus(str, Enum):
    """Статусы участника гонки."""
    MOVING = "moving"
    STOPPED = "stopped"
    FINISHED = "finished"
    DISQUALIFIED = "disqualified"


class StoreName(str, Enum):
    """Хранилища, участвующие в двойной записи."""
    CACHE = "cache"
    DATABASE = "database"


class WsEvents:
    """Имена событий протокола зрителей."""
    SUBSCRIBE_RACE = "subscribe_race"
    SUBSCRIBE_RACE_RESPONSE = "subscribe_race_response"
    UNSUBSCRIBE_RACE = "unsubscribe_race"
    UNSUBSCRIBE_RACE_RESPONSE = "unsubscribe_race_response"
    POSITION_UPDATE = "position_update"
    BATCH_POSITION_UPDATE = "batch_position_update"
    ERROR = "error"


# Шаблоны топиков трекинга
TRACKING_TOPIC_PREFIX = "tracking"
RACE_ROOM_PREFIX = "race:"
