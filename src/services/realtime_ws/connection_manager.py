# src/services/realtime_ws/connection_manager.py
"""
Менеджер WebSocket соединений зрителей.
Комнаты гонок, подписки и рассылка обновлений позиций.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import uuid4

from fastapi import WebSocket

from src.common.constants import RACE_ROOM_PREFIX, WsEvents
from src.common.logger import get_logger, log_debug, log_info, log_warning
from src.core.tracking.models import PositionUpdate
from src.services.realtime_ws.auth import AuthPolicy, permissive_policy

logger = get_logger()


def room_name(race_id: str) -> str:
    return f"{RACE_ROOM_PREFIX}{race_id}"


def envelope(event: str, data: Any) -> dict[str, Any]:
    return {"event": event, "data": data}


@dataclass
class SubscribedClient:
    """Состояние одного соединения зрителя."""
    connection_id: str
    websocket: WebSocket
    outbox: asyncio.Queue
    credential: str | None = None
    race_ids: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sender: asyncio.Task | None = None
    dropped: int = 0


class ConnectionManager:
    """
    Владелец состояния шлюза: connection_id → клиент и комната → connection_id.

    Состояние меняется только синхронно (без await между чтением и записью),
    поэтому изменения атомарны в пределах event loop.

    Каждое соединение имеет ограниченную очередь исходящих сообщений и
    свою задачу-отправителя. Рассылка только кладёт в очереди и не ждёт:
    медленный зритель теряет свои сообщения, но не тормозит остальных.
    """

    def __init__(
        self,
        auth_policy: AuthPolicy | None = None,
        send_queue_size: int = 256,
    ) -> None:
        self._auth_policy: AuthPolicy = auth_policy or permissive_policy()
        self._send_queue_size = send_queue_size

        self._clients: dict[str, SubscribedClient] = {}
        self._rooms: dict[str, set[str]] = {}

        # Для статистики
        self._total_connections = 0
        self._total_messages_sent = 0
        self._total_messages_dropped = 0

    # =========================================================================
    # ПОДКЛЮЧЕНИЕ
    # =========================================================================

    async def connect(
        self,
        websocket: WebSocket,
        credential: str | None = None,
        connection_id: str | None = None,
    ) -> SubscribedClient:
        """Принимает соединение и заводит для него пустое состояние."""
        await websocket.accept()

        client = SubscribedClient(
            connection_id=connection_id or uuid4().hex,
            websocket=websocket,
            outbox=asyncio.Queue(maxsize=self._send_queue_size),
            credential=credential,
        )
        self._clients[client.connection_id] = client
        self._total_connections += 1
        client.sender = asyncio.create_task(self._sender(client))

        await log_info(
            "Зритель подключился",
            extra={"connection_id": client.connection_id, "authenticated": credential is not None},
        )
        return client

    async def disconnect(self, connection_id: str) -> None:
        """Выводит соединение из всех комнат и удаляет его состояние."""
        client = self._remove(connection_id)
        if client is None:
            return

        sender = client.sender
        if sender is not None and not sender.done() and sender is not asyncio.current_task():
            sender.cancel()
            with suppress(asyncio.CancelledError):
                await sender

        await log_info(
            "Зритель отключился",
            extra={"connection_id": connection_id, "races": sorted(client.race_ids)},
        )

    def _remove(self, connection_id: str) -> SubscribedClient | None:
        client = self._clients.pop(connection_id, None)
        if client is None:
            return None

        for race_id in client.race_ids:
            self._leave_room(connection_id, race_id)
        return client

    def _leave_room(self, connection_id: str, race_id: str) -> None:
        members = self._rooms.get(race_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._rooms[race_id]

    async def close_all(self) -> None:
        """Закрывает все соединения (остановка сервиса)."""
        for connection_id in list(self._clients):
            client = self._clients.get(connection_id)
            await self.disconnect(connection_id)
            if client is not None:
                with suppress(Exception):
                    await client.websocket.close(code=1001)

    # =========================================================================
    # ПОДПИСКИ
    # =========================================================================

    @staticmethod
    def _parse_race_id(data: Any) -> str | None:
        if not isinstance(data, dict):
            return None
        race_id = data.get("raceId")
        if not isinstance(race_id, str) or not race_id.strip():
            return None
        return race_id

    async def subscribe_race(self, connection_id: str, data: Any) -> dict[str, Any]:
        """Обрабатывает subscribe_race; возвращает тело subscribe_race_response."""
        client = self._clients.get(connection_id)
        if client is None:
            return {"success": False, "message": "Not connected"}

        if not self._auth_policy(client.credential):
            await log_warning("Подписка отклонена: нет доступа", extra={"connection_id": connection_id})
            return {"success": False, "message": "Unauthorized"}

        race_id = self._parse_race_id(data)
        if race_id is None:
            return {"success": False, "message": "Invalid race ID"}

        client.race_ids.add(race_id)
        self._rooms.setdefault(race_id, set()).add(connection_id)

        if client.credential is None:
            await log_warning(
                "Подписка без токена разрешена политикой permissive",
                extra={"connection_id": connection_id, "race_id": race_id},
            )
        await log_info("Подписка на гонку", extra={"connection_id": connection_id, "room": room_name(race_id)})
        return {"success": True, "message": f"Subscribed to race {race_id}", "raceId": race_id}

    async def unsubscribe_race(self, connection_id: str, data: Any) -> dict[str, Any]:
        """Отписка идемпотентна: отписка от чужой гонки тоже успешна."""
        race_id = self._parse_race_id(data)
        if race_id is None:
            return {"success": False, "message": "Invalid race ID"}

        client = self._clients.get(connection_id)
        if client is not None:
            client.race_ids.discard(race_id)
        self._leave_room(connection_id, race_id)

        await log_info("Отписка от гонки", extra={"connection_id": connection_id, "room": room_name(race_id)})
        return {"success": True, "message": f"Unsubscribed from race {race_id}", "raceId": race_id}

    async def handle_frame(self, connection_id: str, text: str) -> None:
        """Разбирает входящий кадр {"event", "data"} и отвечает в очередь соединения."""
        try:
            message = json.loads(text)
        except ValueError:
            self.send_error(connection_id, "Invalid JSON")
            return

        if not isinstance(message, dict) or not isinstance(message.get("event"), str):
            self.send_error(connection_id, "Invalid message format")
            return

        data = message.get("data")
        match message["event"]:
            case WsEvents.SUBSCRIBE_RACE:
                response = await self.subscribe_race(connection_id, data)
                self.send_to_client(connection_id, WsEvents.SUBSCRIBE_RACE_RESPONSE, response)
            case WsEvents.UNSUBSCRIBE_RACE:
                response = await self.unsubscribe_race(connection_id, data)
                self.send_to_client(connection_id, WsEvents.UNSUBSCRIBE_RACE_RESPONSE, response)
            case unknown:
                self.send_error(connection_id, f"Unknown event: {unknown}")

    # =========================================================================
    # РАССЫЛКА
    # =========================================================================

    def _enqueue(self, client: SubscribedClient, message: dict[str, Any]) -> bool:
        try:
            client.outbox.put_nowait(message)
        except asyncio.QueueFull:
            client.dropped += 1
            self._total_messages_dropped += 1
            logger.warning(
                "Очередь зрителя переполнена, сообщение отброшено",
                extra={"extra_data": {"connection_id": client.connection_id, "event": message.get("event")}},
            )
            return False
        return True

    def _broadcast_to_room(self, race_id: str, message: dict[str, Any]) -> int:
        delivered = 0
        for connection_id in tuple(self._rooms.get(race_id, ())):
            client = self._clients.get(connection_id)
            if client is not None and self._enqueue(client, message):
                delivered += 1
        return delivered

    def broadcast_position_update(self, update: PositionUpdate) -> int:
        """Событие position_update всем зрителям гонки; не ждёт отправки."""
        return self._broadcast_to_room(
            update.race_id,
            envelope(WsEvents.POSITION_UPDATE, update.to_wire()),
        )

    def broadcast_batch_position_update(self, race_id: str, updates: Iterable[PositionUpdate]) -> int:
        positions = [update.to_batch_item() for update in updates]
        return self._broadcast_to_room(
            race_id,
            envelope(WsEvents.BATCH_POSITION_UPDATE, {"raceId": race_id, "positions": positions}),
        )

    def send_to_client(self, connection_id: str, event: str, data: Any) -> bool:
        """Сообщение одному зрителю; False — соединения нет или очередь полна."""
        client = self._clients.get(connection_id)
        if client is None:
            return False
        return self._enqueue(client, envelope(event, data))

    def send_error(self, connection_id: str, message: str, **details: Any) -> bool:
        """Канал ошибок для оператора, отдельно от обновлений позиций."""
        return self.send_to_client(connection_id, WsEvents.ERROR, {"message": message, **details})

    async def _sender(self, client: SubscribedClient) -> None:
        while True:
            message = await client.outbox.get()
            try:
                await client.websocket.send_json(message)
            except Exception as e:
                # Сбой отправки отключает только этого зрителя
                await log_warning(
                    f"Ошибка отправки зрителю, соединение закрывается: {e}",
                    extra={"connection_id": client.connection_id},
                )
                self._remove(client.connection_id)
                with suppress(Exception):
                    await client.websocket.close()
                return
            self._total_messages_sent += 1
            await log_debug(
                "Сообщение отправлено",
                extra={"connection_id": client.connection_id, "event": message.get("event")},
            )

    # =========================================================================
    # ЗАПРОСЫ
    # =========================================================================

    def get_race_subscriber_count(self, race_id: str) -> int:
        return len(self._rooms.get(race_id, ()))

    def get_active_races(self) -> list[str]:
        return sorted(self._rooms)

    def get_connected_client_count(self) -> int:
        return len(self._clients)

    def get_client_races(self, connection_id: str) -> set[str]:
        client = self._clients.get(connection_id)
        return set(client.race_ids) if client is not None else set()

    def get_stats(self) -> dict[str, Any]:
        return {
            "connected_clients": len(self._clients),
            "active_races": self.get_active_races(),
            "subscribers_by_race": {race_id: len(members) for race_id, members in self._rooms.items()},
            "total_connections_ever": self._total_connections,
            "total_messages_sent": self._total_messages_sent,
            "total_messages_dropped": self._total_messages_dropped,
        }
