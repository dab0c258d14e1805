# src/services/ingestion/__init__.py
"""
Приём телеметрии трекеров из брокера сообщений.
"""

from src.services.ingestion.router import (
    IngestionRouter,
    get_participant_topic,
    get_race_topic_pattern,
)

__all__ = ["IngestionRouter", "get_participant_topic", "get_race_topic_pattern"]
