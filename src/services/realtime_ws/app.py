# src/services/realtime_ws/app.py
"""
FastAPI приложение сервиса трекинга гонок.

WebSocket endpoints:
- {WS_PATH} (по умолчанию /ws/tracking) — live-обновления позиций для зрителей

REST endpoints:
- GET /health — проверка здоровья (PostgreSQL, Redis, брокер)
- GET /stats — статистика шлюза и приёма телеметрии

При старте: БД → Redis → сервис трекинга → брокер → подписки на топики.
Остановка в обратном порядке; незавершённые записи дожидаются.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info, setup_logging
from src.core.tracking.cache import PositionCache
from src.core.tracking.repository import TrackingRepository
from src.core.tracking.service import TrackingService
from src.infra.database import close_db, get_db, init_db
from src.infra.redis_client import close_redis, get_redis, init_redis
from src.infra.transport import TransportClient, TransportFatalError, close_transport, init_transport
from src.services.ingestion.router import IngestionRouter
from src.services.realtime_ws.auth import build_auth_policy, extract_credential
from src.services.realtime_ws.connection_manager import ConnectionManager
from src.shared.models.common import HealthStatus

SERVICE_NAME = "race_tracking"


# === LIFESPAN ===

async def _watch_transport(transport: TransportClient) -> None:
    """Фатальный сбой брокера останавливает процесс, а не крутится вечно."""
    result = await transport.wait_closed()
    if isinstance(result, TransportFatalError):
        await log_info(
            f"Брокер недоступен, сервис останавливается: {result}",
            type_msg=TypeMsg.CRITICAL,
        )
        os.kill(os.getpid(), signal.SIGTERM)


async def _release_infrastructure(router: IngestionRouter | None) -> None:
    """Останавливает приём и закрывает подключения; безопасно для частично поднятой инфраструктуры."""
    # Сначала дожидаемся записей, потом закрываем хранилища
    if router is not None:
        await router.stop()
    await close_transport()
    await close_redis()
    await close_db()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Жизненный цикл приложения."""
    manager: ConnectionManager = app.state.manager

    if not app.state.with_infrastructure:
        yield
        await manager.close_all()
        return

    from src.config import settings

    setup_logging()

    router: IngestionRouter | None = None
    try:
        db = await init_db()
        redis_client = await init_redis()

        cache = PositionCache(redis_client, ttl=settings.redis_ttl.POSITION_TTL)
        repository = TrackingRepository(
            db,
            default_limit=settings.tracking.HISTORY_DEFAULT_LIMIT,
            max_limit=settings.tracking.HISTORY_MAX_LIMIT,
        )
        service = TrackingService.from_settings(settings, cache, repository)

        transport = await init_transport()

        router = IngestionRouter(
            transport,
            service,
            broadcast=manager.broadcast_position_update,
            topics=settings.transport.TRANSPORT_TOPICS,
            drain_timeout=settings.tracking.SHUTDOWN_DRAIN_TIMEOUT,
            max_in_flight=settings.tracking.INGESTION_MAX_IN_FLIGHT,
        )
        await router.start()
    except BaseException as e:
        await log_error(f"Сервис трекинга не запустился: {e}", exc_info=True)
        await _release_infrastructure(router)
        raise

    app.state.service = service
    app.state.router = router
    app.state.transport = transport
    watcher = asyncio.create_task(_watch_transport(transport))

    await log_info(
        "Сервис трекинга запущен",
        extra={"ws_path": settings.websocket.WS_PATH, "auth_mode": settings.websocket.WS_AUTH_MODE},
    )

    try:
        yield
    finally:
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher

        await _release_infrastructure(router)
        await manager.close_all()
        await log_info("Сервис трекинга остановлен")


# === APP ===

def create_app(
    manager: ConnectionManager | None = None,
    with_infrastructure: bool = True,
) -> FastAPI:
    """
    Собирает приложение.

    with_infrastructure=False — без БД, Redis и брокера (только шлюз зрителей).
    """
    from src.config import settings

    ws_settings = settings.websocket
    if manager is None:
        manager = ConnectionManager(
            auth_policy=build_auth_policy(ws_settings),
            send_queue_size=ws_settings.WS_SEND_QUEUE_SIZE,
        )

    app = FastAPI(
        title="Race Tracking Service",
        description="Приём GPS-телеметрии участников гонок и live-рассылка позиций зрителям.",
        version=settings.system.VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.manager = manager
    app.state.with_infrastructure = with_infrastructure
    app.state.router = None
    app.state.transport = None
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ws_settings.WS_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_api_route("/health", health_check, methods=["GET"], response_model=HealthStatus, tags=["Health"])
    app.add_api_route("/stats", get_stats, methods=["GET"], tags=["Stats"])
    app.add_api_websocket_route(ws_settings.WS_PATH, tracking_websocket)
    return app


# === HEALTH CHECK ===

async def _dependency_status(check: Any) -> str:
    try:
        return "healthy" if await check() else "unhealthy"
    except Exception:
        return "unavailable"


async def health_check(request: Request) -> HealthStatus:
    """Проверка здоровья сервиса и его зависимостей."""
    from src.config import settings

    db = get_db()
    redis_client = get_redis()
    transport: TransportClient | None = request.app.state.transport

    dependencies = {
        "postgres": await _dependency_status(db.health_check) if db.is_connected else "unavailable",
        "redis": await _dependency_status(redis_client.health_check) if redis_client.is_connected else "unavailable",
        "transport": await _dependency_status(transport.health_check) if transport is not None else "unavailable",
    }
    healthy = all(state == "healthy" for state in dependencies.values())

    return HealthStatus(
        service=SERVICE_NAME,
        status="healthy" if healthy else "degraded",
        version=settings.system.VERSION,
        uptime_seconds=round(time.monotonic() - request.app.state.started_at, 3),
        dependencies=dependencies,
    )


# === STATS ===

async def get_stats(request: Request) -> dict[str, Any]:
    """Статистика шлюза зрителей и приёма телеметрии."""
    router: IngestionRouter | None = request.app.state.router
    return {
        "gateway": request.app.state.manager.get_stats(),
        "ingestion": router.get_stats() if router is not None else None,
    }


# === WEBSOCKET ===

async def tracking_websocket(websocket: WebSocket) -> None:
    """
    WebSocket для зрителей.

    Кадры — JSON {"event": ..., "data": {...}}:
    - {"event": "subscribe_race", "data": {"raceId": "R1"}}
    - {"event": "unsubscribe_race", "data": {"raceId": "R1"}}

    Токен: ?token=... или заголовок Authorization: Bearer ...
    """
    manager: ConnectionManager = websocket.app.state.manager
    credential = extract_credential(websocket.query_params, websocket.headers)
    client = await manager.connect(websocket, credential)

    try:
        while True:
            text = await websocket.receive_text()
            await manager.handle_frame(client.connection_id, text)
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(client.connection_id)


app = create_app()
