"""
Загрузчик конфигурации проекта.
Единственный источник истины — config/config.json.
Секреты и адреса сервисов переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


def _split_csv(value: str | list[str] | None) -> list[str]:
    """Разбирает список из строки 'a, b' или возвращает список как есть."""
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "race_tracking"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"


class DeploymentSettings(BaseModel):
    """Настройки развертывания сервиса трекинга."""
    TRACKING_HOST: str = "0.0.0.0"
    TRACKING_PORT: int = 3000


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760
    LOG_BACKUP_COUNT: int = 5


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "tracking"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    # Пустой namespace: ключи ровно race:{raceId}:participant:{participantId}:last
    REDIS_NAMESPACE: str = ""
    REDIS_MAX_CONNECTIONS: int = 50

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("REDIS_PASSWORD", "")
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RedisTTLSettings(BaseModel):
    """Настройки TTL кэша."""
    POSITION_TTL: int = 3600


class TransportSettings(BaseModel):
    """
    Настройки брокера сообщений (RabbitMQ с MQTT-плагином).

    Устройства публикуют по MQTT, плагин маршрутизирует топики в
    exchange amq.topic; сервис читает их по AMQP.
    """
    TRANSPORT_HOST: str = "localhost"
    TRANSPORT_PORT: int = 5672
    TRANSPORT_USER: str = "guest"
    TRANSPORT_PASSWORD: str = "guest"
    TRANSPORT_VHOST: str = "/"
    TRANSPORT_CLIENT_ID: str = "tracking-backend"
    TRANSPORT_EXCHANGE: str = "amq.topic"
    TRANSPORT_TOPICS: list[str] = Field(default_factory=lambda: ["tracking/+/+/position"])
    TRANSPORT_PREFETCH_COUNT: int = 100
    TRANSPORT_CONNECT_TIMEOUT: float = 30.0
    TRANSPORT_RECONNECT_MAX_ATTEMPTS: int = 10
    TRANSPORT_RECONNECT_INITIAL_DELAY: float = 1.0
    TRANSPORT_RECONNECT_MAX_DELAY: float = 30.0

    @field_validator("TRANSPORT_TOPICS", mode="before")
    @classmethod
    def parse_topics(cls, v: str | list[str] | None) -> list[str]:
        """Принимает список или строку через запятую."""
        return _split_csv(v)

    @field_validator("TRANSPORT_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Пароль из окружения имеет приоритет."""
        env_pass = os.getenv("TRANSPORT_PASSWORD", "")
        if env_pass:
            return env_pass
        return v

    @property
    def url(self) -> str:
        """Возвращает AMQP URL брокера."""
        vhost = self.TRANSPORT_VHOST if self.TRANSPORT_VHOST.startswith("/") else f"/{self.TRANSPORT_VHOST}"
        return (
            f"amqp://{self.TRANSPORT_USER}:{self.TRANSPORT_PASSWORD}"
            f"@{self.TRANSPORT_HOST}:{self.TRANSPORT_PORT}{vhost}"
        )


class TrackingSettings(BaseModel):
    """Настройки конвейера обработки позиций."""
    STALE_DATA_THRESHOLD_MS: int = Field(default=30000, ge=0)
    BATCH_CONCURRENCY: int = Field(default=10, ge=1)
    DUAL_WRITE_CONCURRENCY: int = Field(default=2, ge=1)
    HISTORY_DEFAULT_LIMIT: int = Field(default=100, ge=1)
    HISTORY_MAX_LIMIT: int = Field(default=1000, ge=1)
    SHUTDOWN_DRAIN_TIMEOUT: float = Field(default=10.0, ge=0)
    INGESTION_MAX_IN_FLIGHT: int = Field(default=100, ge=1)


class WebSocketSettings(BaseModel):
    """Настройки шлюза зрителей."""
    WS_PATH: str = "/ws/tracking"
    # permissive — подписка без токена разрешена (не для продакшена)
    # require_credential — без токена подписка отклоняется
    WS_AUTH_MODE: Literal["permissive", "require_credential"] = "permissive"
    WS_AUTH_TOKENS: list[str] = Field(default_factory=list)
    WS_SEND_QUEUE_SIZE: int = Field(default=256, ge=1)
    WS_CORS_ORIGINS: list[str] = Field(default_factory=lambda: ["*"])

    @field_validator("WS_AUTH_TOKENS", "WS_CORS_ORIGINS", mode="before")
    @classmethod
    def parse_list(cls, v: str | list[str] | None) -> list[str]:
        """Принимает список или строку через запятую."""
        return _split_csv(v)


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    redis_ttl: RedisTTLSettings = Field(default_factory=RedisTTLSettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)
    tracking: TrackingSettings = Field(default_factory=TrackingSettings)
    websocket: WebSocketSettings = Field(default_factory=WebSocketSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def from_config_json(cls) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты переопределяются из переменных окружения.
        """
        config_data = load_config_json()
        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: dict[str, Any]) -> "Settings":
        """Строит настройки из плоского словаря ключей config.json."""
        # Фильтруем комментарии (ключи, начинающиеся с _comment_)
        data = {k: v for k, v in config_data.items() if not k.startswith("_comment_")}

        return cls(
            system=SystemSettings(
                PROJECT_NAME=data.get("PROJECT_NAME", "race_tracking"),
                VERSION=data.get("VERSION", "1.0.0"),
                DEBUG=data.get("DEBUG", False),
                LOG_LEVEL=data.get("LOG_LEVEL", "INFO"),
                ENVIRONMENT=os.getenv("ENVIRONMENT", data.get("ENVIRONMENT", "development")),
            ),
            deployment=DeploymentSettings(
                TRACKING_HOST=os.getenv("TRACKING_HOST", data.get("TRACKING_HOST", "0.0.0.0")),
                TRACKING_PORT=int(os.getenv("TRACKING_PORT", data.get("TRACKING_PORT", 3000))),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=data.get("LOG_LEVEL", "INFO"),
                LOG_TO_FILE=data.get("LOG_TO_FILE", False),
                LOG_FILE_PATH=data.get("LOG_FILE_PATH", "logs/app.log"),
                LOG_FORMAT=os.getenv("LOG_FORMAT", data.get("LOG_FORMAT", "colored")),
                LOG_MAX_BYTES=data.get("LOG_MAX_BYTES", 10485760),
                LOG_BACKUP_COUNT=data.get("LOG_BACKUP_COUNT", 5),
            ),
            database=DatabaseSettings(
                DB_HOST=os.getenv("DB_HOST", data.get("DB_HOST", "localhost")),
                DB_PORT=int(os.getenv("DB_PORT", data.get("DB_PORT", 5432))),
                DB_NAME=os.getenv("DB_NAME", data.get("DB_NAME", "tracking")),
                DB_USER=os.getenv("DB_USER", data.get("DB_USER", "postgres")),
                DB_PASSWORD=os.getenv("DB_PASSWORD", data.get("DB_PASSWORD", "")),
                DB_MIN_POOL_SIZE=data.get("DB_MIN_POOL_SIZE", 5),
                DB_MAX_POOL_SIZE=data.get("DB_MAX_POOL_SIZE", 20),
                DB_COMMAND_TIMEOUT=data.get("DB_COMMAND_TIMEOUT", 60),
            ),
            redis=RedisSettings(
                REDIS_HOST=os.getenv("REDIS_HOST", data.get("REDIS_HOST", "localhost")),
                REDIS_PORT=int(os.getenv("REDIS_PORT", data.get("REDIS_PORT", 6379))),
                REDIS_DB=data.get("REDIS_DB", 0),
                REDIS_PASSWORD=os.getenv("REDIS_PASSWORD", data.get("REDIS_PASSWORD", "")),
                REDIS_NAMESPACE=data.get("REDIS_NAMESPACE", ""),
                REDIS_MAX_CONNECTIONS=data.get("REDIS_MAX_CONNECTIONS", 50),
            ),
            redis_ttl=RedisTTLSettings(
                POSITION_TTL=data.get("POSITION_TTL", 3600),
            ),
            transport=TransportSettings(
                TRANSPORT_HOST=os.getenv("TRANSPORT_HOST", data.get("TRANSPORT_HOST", "localhost")),
                TRANSPORT_PORT=int(os.getenv("TRANSPORT_PORT", data.get("TRANSPORT_PORT", 5672))),
                TRANSPORT_USER=os.getenv("TRANSPORT_USER", data.get("TRANSPORT_USER", "guest")),
                TRANSPORT_PASSWORD=os.getenv("TRANSPORT_PASSWORD", data.get("TRANSPORT_PASSWORD", "guest")),
                TRANSPORT_VHOST=data.get("TRANSPORT_VHOST", "/"),
                TRANSPORT_CLIENT_ID=os.getenv("TRANSPORT_CLIENT_ID", data.get("TRANSPORT_CLIENT_ID", "tracking-backend")),
                TRANSPORT_EXCHANGE=data.get("TRANSPORT_EXCHANGE", "amq.topic"),
                TRANSPORT_TOPICS=os.getenv("TRANSPORT_TOPICS", data.get("TRANSPORT_TOPICS", ["tracking/+/+/position"])),
                TRANSPORT_PREFETCH_COUNT=data.get("TRANSPORT_PREFETCH_COUNT", 100),
                TRANSPORT_CONNECT_TIMEOUT=data.get("TRANSPORT_CONNECT_TIMEOUT", 30.0),
                TRANSPORT_RECONNECT_MAX_ATTEMPTS=data.get("TRANSPORT_RECONNECT_MAX_ATTEMPTS", 10),
                TRANSPORT_RECONNECT_INITIAL_DELAY=data.get("TRANSPORT_RECONNECT_INITIAL_DELAY", 1.0),
                TRANSPORT_RECONNECT_MAX_DELAY=data.get("TRANSPORT_RECONNECT_MAX_DELAY", 30.0),
            ),
            tracking=TrackingSettings(
                STALE_DATA_THRESHOLD_MS=int(os.getenv(
                    "STALE_DATA_THRESHOLD_MS",
                    data.get("STALE_DATA_THRESHOLD_MS", 30000),
                )),
                BATCH_CONCURRENCY=data.get("BATCH_CONCURRENCY", 10),
                DUAL_WRITE_CONCURRENCY=data.get("DUAL_WRITE_CONCURRENCY", 2),
                HISTORY_DEFAULT_LIMIT=data.get("HISTORY_DEFAULT_LIMIT", 100),
                HISTORY_MAX_LIMIT=data.get("HISTORY_MAX_LIMIT", 1000),
                SHUTDOWN_DRAIN_TIMEOUT=data.get("SHUTDOWN_DRAIN_TIMEOUT", 10.0),
                INGESTION_MAX_IN_FLIGHT=data.get("INGESTION_MAX_IN_FLIGHT", 100),
            ),
            websocket=WebSocketSettings(
                WS_PATH=data.get("WS_PATH", "/ws/tracking"),
                WS_AUTH_MODE=os.getenv("WS_AUTH_MODE", data.get("WS_AUTH_MODE", "permissive")),
                WS_AUTH_TOKENS=os.getenv("WS_AUTH_TOKENS", data.get("WS_AUTH_TOKENS", [])),
                WS_SEND_QUEUE_SIZE=data.get("WS_SEND_QUEUE_SIZE", 256),
                WS_CORS_ORIGINS=os.getenv("WS_CORS_ORIGINS", data.get("WS_CORS_ORIGINS", ["*"])),
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
