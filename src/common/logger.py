"""
Модуль структурированного логирования.
Поддерживает JSON и цветной текстовый формат, ротацию файлов.
"""

from __future__ import annotations

import inspect
import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from src.common.constants import TypeMsg


DEFAULT_LOGGER_NAME = "race_tracking"

# Общие файловые хендлеры (один набор на процесс)
_FILE_HANDLER: logging.Handler | None = None
_ERROR_HANDLER: logging.Handler | None = None

_LOGGING_INITIALIZED: bool = False

_loggers: dict[str, logging.Logger] = {}


# =============================================================================
# ФОРМАТТЕРЫ
# =============================================================================

class JsonFormatter(logging.Formatter):
    """Форматтер для JSON логов (для сборщиков логов в проде)."""

    def format(self, record: logging.LogRecord) -> str:
        """Форматирует запись лога в JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            log_data["extra"] = extra_data

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """Цветной форматтер для консоли (разработка)."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    GRAY = "\033[90m"

    # Служебные ключи caller-info не выводим в хвосте сообщения
    _CALLER_KEYS = ("caller_function", "caller_module", "caller_file", "caller_line")

    def format(self, record: logging.LogRecord) -> str:
        """Форматирует запись лога с цветом."""
        color = self.COLORS.get(record.levelname, self.GRAY)
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        extra_data: dict[str, Any] = getattr(record, "extra_data", None) or {}

        caller_info = ""
        if extra_data.get("caller_function"):
            caller_info = (
                f" {self.GRAY}[{extra_data.get('caller_module')}."
                f"{extra_data.get('caller_function')}() "
                f"{extra_data.get('caller_file')}:{extra_data.get('caller_line')}]{self.RESET}"
            )

        context = {k: v for k, v in extra_data.items() if k not in self._CALLER_KEYS}
        context_info = f" {self.GRAY}{context}{self.RESET}" if context else ""

        message = (
            f"{timestamp} {color}[{record.levelname}]{self.RESET}{caller_info} "
            f"{record.getMessage()}{context_info}"
        )

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


# =============================================================================
# ЛОГГЕР
# =============================================================================

def setup_logging() -> None:
    """
    Инициализирует систему логирования.
    Идемпотентна: повторные вызовы ничего не делают.
    """
    global _LOGGING_INITIALIZED

    if _LOGGING_INITIALIZED:
        return

    _LOGGING_INITIALIZED = True

    get_logger(DEFAULT_LOGGER_NAME)

    # Сторонние библиотеки: только предупреждения
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _read_logging_settings() -> dict[str, Any]:
    """Читает настройки логирования, с откатом на значения по умолчанию."""
    defaults: dict[str, Any] = {
        "level": "DEBUG",
        "format": "colored",
        "to_file": False,
        "file_path": "logs/app.log",
        "max_bytes": 10485760,
        "backup_count": 5,
    }

    # Ленивый импорт для избежания циклических зависимостей
    try:
        from src.config import settings
        section = settings.logging
    except Exception:
        return defaults

    values = {
        "level": section.LOG_LEVEL,
        "format": section.LOG_FORMAT,
        "to_file": section.LOG_TO_FILE,
        "file_path": section.LOG_FILE_PATH,
        "max_bytes": section.LOG_MAX_BYTES,
        "backup_count": section.LOG_BACKUP_COUNT,
    }
    # Защита от MagicMock в тестах
    for key, default in defaults.items():
        if not isinstance(values[key], type(default)):
            values[key] = default
    return values


def _make_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter()
    return ColoredFormatter()


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """
    Возвращает настроенный логгер.
    Использует кэширование для избежания дублирования хендлеров.

    Args:
        name: Имя логгера

    Returns:
        Настроенный логгер
    """
    if name in _loggers:
        return _loggers[name]

    config = _read_logging_settings()

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config["level"].upper(), logging.DEBUG))

    if logger.handlers:
        _loggers[name] = logger
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(_make_formatter(config["format"]))
    logger.addHandler(console_handler)

    if config["to_file"]:
        global _FILE_HANDLER, _ERROR_HANDLER

        log_path = Path(config["file_path"])
        log_path.parent.mkdir(parents=True, exist_ok=True)

        if _FILE_HANDLER is None:
            # SERVICE_NAME различает файлы нескольких инстансов
            service_name = os.getenv("SERVICE_NAME")
            file_name = f"{log_path.stem}_{service_name}.log" if service_name else log_path.name
            _FILE_HANDLER = RotatingFileHandler(
                log_path.parent / file_name,
                maxBytes=config["max_bytes"],
                backupCount=config["backup_count"],
                encoding="utf-8",
            )
            _FILE_HANDLER.setFormatter(_make_formatter(config["format"]))

        if _ERROR_HANDLER is None:
            _ERROR_HANDLER = RotatingFileHandler(
                log_path.parent / "error.log",
                maxBytes=config["max_bytes"],
                backupCount=config["backup_count"],
                encoding="utf-8",
            )
            _ERROR_HANDLER.setLevel(logging.ERROR)
            _ERROR_HANDLER.setFormatter(_make_formatter(config["format"]))

        logger.addHandler(_FILE_HANDLER)
        logger.addHandler(_ERROR_HANDLER)

    logger.propagate = False

    _loggers[name] = logger
    return logger


# =============================================================================
# ВСПОМОГАТЕЛЬНЫЕ ФУНКЦИИ ЛОГИРОВАНИЯ
# =============================================================================

def _get_caller_info() -> dict[str, Any]:
    """
    Получает информацию о коде, вызвавшем функцию логирования.

    Стек: [0] _get_caller_info, [1] log_*, [2] вызывающий код.
    log_debug/log_warning проксируют в log_info, поэтому пропускаем
    все кадры этого модуля.
    """
    frame = inspect.currentframe()
    try:
        caller_frame = frame.f_back if frame else None
        while caller_frame is not None and caller_frame.f_globals.get("__name__") == __name__:
            caller_frame = caller_frame.f_back

        if caller_frame is None:
            return {}

        caller_module = caller_frame.f_globals.get("__name__", "unknown")
        return {
            "caller_function": caller_frame.f_code.co_name,
            "caller_module": caller_module,
            "caller_file": os.path.basename(caller_frame.f_code.co_filename),
            "caller_line": caller_frame.f_lineno,
        }
    finally:
        # Освобождаем ссылки на фреймы
        del frame


async def log_info(
    message: str,
    *,
    type_msg: TypeMsg = TypeMsg.INFO,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
    exc_info: bool = False,
) -> None:
    """
    Асинхронная функция логирования.

    Args:
        message: Сообщение для логирования
        type_msg: Уровень сообщения
        logger_name: Имя логгера
        extra: Дополнительные данные (контекст)
        exc_info: Включать ли трейсбек текущего исключения
    """
    logger = get_logger(logger_name)

    record_extra = {"extra_data": {**_get_caller_info(), **(extra or {})}}

    match type_msg:
        case TypeMsg.DEBUG:
            logger.debug(message, extra=record_extra, exc_info=exc_info)
        case TypeMsg.INFO:
            logger.info(message, extra=record_extra, exc_info=exc_info)
        case TypeMsg.WARNING:
            logger.warning(message, extra=record_extra, exc_info=exc_info)
        case TypeMsg.ERROR:
            logger.error(message, extra=record_extra, exc_info=exc_info)
        case TypeMsg.CRITICAL:
            logger.critical(message, extra=record_extra, exc_info=exc_info)
        case _:
            logger.info(message, extra=record_extra, exc_info=exc_info)


async def log_debug(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    """Логирование DEBUG уровня."""
    await log_info(message, type_msg=TypeMsg.DEBUG, logger_name=logger_name, extra=extra)


async def log_warning(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    """Логирование WARNING уровня."""
    await log_info(message, type_msg=TypeMsg.WARNING, logger_name=logger_name, extra=extra)


async def log_error(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
    exc_info: bool = False,
) -> None:
    """
    Логирование ERROR уровня.

    Args:
        message: Сообщение об ошибке
        logger_name: Имя логгера
        extra: Дополнительные данные
        exc_info: Включать ли трейсбек исключения
    """
    await log_info(
        message,
        type_msg=TypeMsg.ERROR,
        logger_name=logger_name,
        extra=extra,
        exc_info=exc_info,
    )
