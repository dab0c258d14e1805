# src/services/ingestion/router.py
"""
Маршрутизатор входящей телеметрии: брокер → конвейер трекинга.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Iterable

from src.common.constants import TRACKING_TOPIC_PREFIX
from src.common.logger import log_debug, log_error, log_info, log_warning
from src.core.tracking.pipeline import Broadcast
from src.core.tracking.service import TrackingService
from src.infra.transport import TransportClient


def get_race_topic_pattern(race_id: str) -> str:
    """tracking/{race_id}/+/position — все участники гонки."""
    return f"{TRACKING_TOPIC_PREFIX}/{race_id}/+/position"


def get_participant_topic(race_id: str, participant_id: str) -> str:
    return f"{TRACKING_TOPIC_PREFIX}/{race_id}/{participant_id}/position"


class IngestionRouter:
    """
    Подписывается на топики телеметрии и отдаёт каждое сообщение в конвейер.

    Каждое сообщение обрабатывается в отдельной задаче: слушатель брокера
    не ждёт записи в хранилища. Задач не больше max_in_flight: при занятых
    слотах обработчик ждёт, и вместе с ним ждут слушатель и подтверждения
    брокеру. При остановке незавершённые задачи дожидаются до drain_timeout
    секунд, остальные отменяются.
    """

    def __init__(
        self,
        transport: TransportClient,
        service: TrackingService,
        broadcast: Broadcast | None = None,
        topics: Iterable[str] = (),
        drain_timeout: float = 10.0,
        max_in_flight: int = 100,
        qos: int = 1,
    ) -> None:
        self._transport = transport
        self._service = service
        self._broadcast = broadcast
        self._topics = list(topics)
        self._race_topics: set[str] = set()
        self._drain_timeout = drain_timeout
        self._qos = qos

        self._tasks: set[asyncio.Task[None]] = set()
        self._max_in_flight = max_in_flight
        self._slots = asyncio.Semaphore(max_in_flight)
        self._started = False
        self._stopping = False

        self._received = 0
        self._decode_failures = 0
        self._processed = 0
        self._rejected = 0
        self._dropped_on_shutdown = 0

    @property
    def is_running(self) -> bool:
        return self._started

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self._started,
            "topics": list(self._topics),
            "race_topics": sorted(self._race_topics),
            "messages_received": self._received,
            "decode_failures": self._decode_failures,
            "processed": self._processed,
            "rejected": self._rejected,
            "in_flight": len(self._tasks),
            "max_in_flight": self._max_in_flight,
            "dropped_on_shutdown": self._dropped_on_shutdown,
        }

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ
    # =========================================================================

    async def start(self) -> None:
        """Регистрирует обработчик и подписывается на топики; ошибка подписки прерывает старт."""
        if self._started:
            return

        self._transport.on("message", self._on_message)
        self._started = True
        self._stopping = False

        for topic in self._topics:
            try:
                await self._transport.subscribe(topic, self._qos)
            except Exception as e:
                await log_error(f"Не удалось подписаться на {topic}: {e}", extra={"topic": topic})
                raise

        await log_info("Приём телеметрии запущен", extra={"topics": self._topics})

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self._stopping = True

        for topic in [*self._topics, *sorted(self._race_topics)]:
            try:
                await self._transport.unsubscribe(topic)
            except Exception as e:
                await log_warning(f"Ошибка отписки от {topic}: {e}", extra={"topic": topic})
        self._race_topics.clear()
        self._transport.off("message", self._on_message)

        await self._drain()
        await log_info("Приём телеметрии остановлен", extra=self.get_stats())

    async def _drain(self) -> None:
        pending = set(self._tasks)
        if not pending:
            return

        await log_info("Ожидание незавершённых записей", extra={"in_flight": len(pending)})
        _, still_running = await asyncio.wait(pending, timeout=self._drain_timeout)
        if not still_running:
            return

        for task in still_running:
            task.cancel()
        await asyncio.gather(*still_running, return_exceptions=True)

        self._dropped_on_shutdown += len(still_running)
        await log_warning(
            "Записи не завершились за отведённое время и отменены",
            extra={"dropped": len(still_running), "drain_timeout": self._drain_timeout},
        )

    # =========================================================================
    # ПОДПИСКИ НА ГОНКИ
    # =========================================================================

    async def subscribe_to_race(self, race_id: str) -> None:
        topic = get_race_topic_pattern(race_id)
        await self._transport.subscribe(topic, self._qos)
        self._race_topics.add(topic)
        await log_info("Подписка на гонку", extra={"race_id": race_id, "topic": topic})

    async def unsubscribe_from_race(self, race_id: str) -> None:
        topic = get_race_topic_pattern(race_id)
        self._race_topics.discard(topic)
        await self._transport.unsubscribe(topic)
        await log_info("Отписка от гонки", extra={"race_id": race_id, "topic": topic})

    # =========================================================================
    # ОБРАБОТКА
    # =========================================================================

    async def _on_message(self, topic: str, payload: bytes) -> None:
        self._received += 1

        try:
            raw = json.loads(payload.decode("utf-8"))
        except ValueError as e:
            self._decode_failures += 1
            await log_warning(
                "Сообщение не является JSON, отброшено",
                extra={"topic": topic, "error": str(e), "size": len(payload)},
            )
            return

        await self._slots.acquire()
        if self._stopping:
            self._slots.release()
            self._dropped_on_shutdown += 1
            await log_warning("Сообщение пришло во время остановки, отброшено", extra={"topic": topic})
            return

        task = asyncio.create_task(self._process(topic, raw))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        self._slots.release()

    async def _process(self, topic: str, raw: Any) -> None:
        try:
            update = await self._service.process_tracking_payload(raw, self._broadcast)
        except Exception as e:
            self._rejected += 1
            await log_error(f"Непредвиденная ошибка обработки: {e}", extra={"topic": topic}, exc_info=True)
            return

        if update is None:
            self._rejected += 1
            return

        self._processed += 1
        await log_debug(
            "Позиция принята",
            extra={"topic": topic, "participant_id": update.participant_id, "race_id": update.race_id},
        )
