# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("TRANSPORT_PASSWORD", "guest")


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "PROJECT_NAME": "race_tracking_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "LOG_LEVEL": "DEBUG",
        "ENVIRONMENT": "test",
        "TRACKING_HOST": "127.0.0.1",
        "TRACKING_PORT": 3100,
        "LOG_TO_FILE": False,
        "LOG_FILE_PATH": "logs/test.log",
        "LOG_FORMAT": "colored",
        "DB_HOST": "localhost",
        "DB_PORT": 5432,
        "DB_NAME": "tracking_test",
        "DB_USER": "postgres",
        "DB_PASSWORD": "test_password",
        "DB_MIN_POOL_SIZE": 2,
        "DB_MAX_POOL_SIZE": 5,
        "DB_COMMAND_TIMEOUT": 30,
        "REDIS_HOST": "localhost",
        "REDIS_PORT": 6379,
        "REDIS_DB": 1,
        "REDIS_PASSWORD": "",
        "REDIS_NAMESPACE": "",
        "REDIS_MAX_CONNECTIONS": 10,
        "POSITION_TTL": 600,
        "TRANSPORT_HOST": "localhost",
        "TRANSPORT_PORT": 5672,
        "TRANSPORT_USER": "guest",
        "TRANSPORT_PASSWORD": "guest",
        "TRANSPORT_VHOST": "/",
        "TRANSPORT_CLIENT_ID": "tracking-test",
        "TRANSPORT_EXCHANGE": "amq.topic",
        "TRANSPORT_TOPICS": ["tracking/+/+/position"],
        "TRANSPORT_PREFETCH_COUNT": 10,
        "TRANSPORT_CONNECT_TIMEOUT": 5,
        "TRANSPORT_RECONNECT_MAX_ATTEMPTS": 3,
        "TRANSPORT_RECONNECT_INITIAL_DELAY": 0.1,
        "TRANSPORT_RECONNECT_MAX_DELAY": 1.0,
        "STALE_DATA_THRESHOLD_MS": 30000,
        "BATCH_CONCURRENCY": 4,
        "DUAL_WRITE_CONCURRENCY": 2,
        "HISTORY_DEFAULT_LIMIT": 50,
        "HISTORY_MAX_LIMIT": 500,
        "SHUTDOWN_DRAIN_TIMEOUT": 2,
        "INGESTION_MAX_IN_FLIGHT": 8,
        "WS_PATH": "/ws/tracking",
        "WS_AUTH_MODE": "permissive",
        "WS_AUTH_TOKENS": [],
        "WS_SEND_QUEUE_SIZE": 16,
        "WS_CORS_ORIGINS": ["*"],
    }


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def mock_redis() -> MagicMock:
    """Мок клиента Redis (обёртки RedisClient)."""
    redis = MagicMock()
    redis.get_model = AsyncMock(return_value=None)
    redis.get_models = AsyncMock(return_value=[])
    redis.set_model = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.scan_keys = AsyncMock(return_value=[])
    redis.client.ping = AsyncMock(return_value=True)
    return redis


# =============================================================================
# ФИКСТУРЫ МОДЕЛЕЙ
# =============================================================================

FIXED_NOW = datetime(2025, 7, 1, 8, 15, 40, tzinfo=timezone.utc)


@pytest.fixture
def fixed_now() -> datetime:
    """Фиксированное «сейчас» для проверок свежести."""
    return FIXED_NOW


@pytest.fixture
def clock(fixed_now: datetime):
    """Часы, всегда возвращающие fixed_now."""
    return lambda: fixed_now


@pytest.fixture
def sample_payload() -> dict[str, Any]:
    """Корректное сообщение трекера (10 секунд до fixed_now)."""
    return {
        "participant_id": "P1",
        "race_id": "R1",
        "latitude": 55.7558,
        "longitude": 37.6173,
        "timestamp": "2025-07-01T08:15:30.000Z",
        "status": "moving",
    }


@pytest.fixture
def sample_position_record() -> dict[str, Any]:
    """Строка tracking_positions, как её возвращает asyncpg."""
    from decimal import Decimal
    from uuid import UUID

    return {
        "id": UUID("8f14e45f-ceea-467f-a0e6-4f1e6e6d9f10"),
        "participant_id": "P1",
        "race_id": "R1",
        "latitude": Decimal("55.7558000"),
        "longitude": Decimal("37.6173000"),
        "client_timestamp": datetime(2025, 7, 1, 8, 15, 30, tzinfo=timezone.utc),
        "server_received_at": datetime(2025, 7, 1, 8, 15, 40, tzinfo=timezone.utc),
        "status": "moving",
    }


# =============================================================================
# УТИЛИТЫ
# =============================================================================

@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config, ensure_ascii=False, indent=2))
    return config_file
