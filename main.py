#!/usr/bin/env python3
# main.py
"""
Главная точка входа сервиса трекинга гонок.
Запускает сервис (брокер → БД/кэш → WebSocket), применяет схему БД
или чистит старые позиции, в зависимости от аргументов.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from src.config import settings
from src.common.logger import setup_logging, log_info, log_error
from src.common.constants import TypeMsg
from src.infra.database import init_db, close_db
from src.infra.redis_client import init_redis, close_redis


VALID_MODES = ("tracking", "migrate", "cleanup")

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        """Обработчик сигналов SIGINT и SIGTERM."""
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def run_tracking_service() -> None:
    """
    Запускает сервис трекинга.
    Инфраструктура поднимается в lifespan приложения.
    """
    import uvicorn

    await log_info(
        f"Запуск сервиса трекинга на {settings.deployment.TRACKING_HOST}:{settings.deployment.TRACKING_PORT}...",
        type_msg=TypeMsg.INFO,
    )

    config = uvicorn.Config(
        "src.services.realtime_ws.app:app",
        host=settings.deployment.TRACKING_HOST,
        port=settings.deployment.TRACKING_PORT,
        reload=settings.system.DEBUG,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info("Сервис трекинга: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def run_migrate() -> None:
    """Применяет migrations/init.sql и выходит."""
    await init_db(apply_schema=True)
    try:
        await log_info("Схема БД применена", type_msg=TypeMsg.INFO)
    finally:
        await close_db()


async def run_cleanup(older_than_days: int) -> None:
    """Удаляет позиции старше указанного числа дней."""
    from src.core.tracking.cache import PositionCache
    from src.core.tracking.repository import TrackingRepository
    from src.core.tracking.service import TrackingService

    db = await init_db(apply_schema=False)
    redis_client = await init_redis()
    try:
        service = TrackingService.from_settings(
            settings,
            PositionCache(redis_client, ttl=settings.redis_ttl.POSITION_TTL),
            TrackingRepository(db),
        )
        deleted = await service.cleanup_old_positions(older_than_days)
        await log_info(
            f"Очистка завершена: удалено {deleted} позиций старше {older_than_days} дн.",
            type_msg=TypeMsg.INFO,
        )
    finally:
        await close_redis()
        await close_db()


async def main(mode: str = "tracking", *args: str) -> None:
    """
    Главная функция запуска.

    Args:
        mode: tracking | migrate | cleanup
        args: для cleanup — число дней (по умолчанию 30)
    """
    setup_logging()
    setup_signal_handlers()

    await log_info(
        f"Race Tracking v{settings.system.VERSION} — запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    try:
        if mode == "tracking":
            task = asyncio.create_task(run_tracking_service())
        elif mode == "migrate":
            task = asyncio.create_task(run_migrate())
        elif mode == "cleanup":
            days = int(args[0]) if args else 30
            task = asyncio.create_task(run_cleanup(days))
        else:
            await log_error(f"Неизвестный режим: {mode}")
            sys.exit(1)

        _running_tasks.append(task)
        await task
    except asyncio.CancelledError:
        await log_info("Получен сигнал отмены", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
        raise
    finally:
        await log_info("Приложение остановлено", type_msg=TypeMsg.INFO)


def print_usage() -> None:
    """Выводит справку по использованию."""
    print("""
Race Tracking — приём GPS-телеметрии участников и live-рассылка зрителям

Использование:
    python main.py [mode] [args]

Режимы:
    tracking               — Сервис трекинга (по умолчанию, :3000)
    migrate                — Применить migrations/init.sql
    cleanup [days]         — Удалить позиции старше days дней (30)

Примеры:
    python main.py
    python main.py cleanup 7
    """)


if __name__ == "__main__":
    mode = "tracking"
    extra_args: list[str] = []

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in VALID_MODES:
            mode = arg
            extra_args = sys.argv[2:]
        else:
            print(f"Неизвестный режим: {arg}")
            print_usage()
            sys.exit(1)

    try:
        asyncio.run(main(mode, *extra_args))
    except KeyboardInterrupt:
        print("\nОстановлено пользователем")
