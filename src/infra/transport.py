# src/infra/transport.py
"""
Клиент брокера сообщений для входящей телеметрии.

Трекеры публикуют позиции по MQTT в RabbitMQ (плагин rabbitmq_mqtt).
Плагин направляет каждый MQTT-топик в exchange amq.topic, заменяя "/" на ".".
Клиент принимает фильтры в MQTT-нотации (tracking/R1/+/position) и
сам переводит их в ключи привязки AMQP.

Одна сессия = одно соединение, один канал и одна эксклюзивная очередь.
Сообщения, опубликованные пока соединения нет, теряются: очередь
эксклюзивная и исчезает вместе с соединением.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from contextlib import suppress
from typing import Any, Awaitable, Callable

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)

from src.common.logger import log_debug, log_error, log_info, log_warning


# =============================================================================
# ОШИБКИ
# =============================================================================

class TransportError(Exception):
    """Операция с брокером невозможна: нет соединения, отказ брокера, обрыв."""


class TransportFatalError(TransportError):
    """Исчерпан лимит переподключений, сессия закрыта."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Не удалось переподключиться к брокеру за {attempts} попыток: {last_error}"
        )


# =============================================================================
# ТОПИКИ
# =============================================================================

def mqtt_to_routing_key(topic: str) -> str:
    """
    MQTT-топик или фильтр → ключ маршрутизации AMQP.

    "/" → ".", "+" → "*", "#" остаётся "#". Точка внутри уровня
    становится "/", как это делает MQTT-плагин RabbitMQ.
    """
    levels = []
    for level in topic.split("/"):
        if level == "+":
            levels.append("*")
        else:
            levels.append(level.replace(".", "/"))
    return ".".join(levels)


def routing_key_to_mqtt(routing_key: str) -> str:
    """Обратное преобразование ключа маршрутизации в MQTT-топик."""
    return "/".join(level.replace("/", ".") for level in routing_key.split("."))


def topic_matches(topic_filter: str, topic: str) -> bool:
    """Проверяет, подпадает ли топик под MQTT-фильтр с + и #."""
    filter_levels = topic_filter.split("/")
    topic_levels = topic.split("/")

    for index, level in enumerate(filter_levels):
        if level == "#":
            return True
        if index >= len(topic_levels):
            return False
        if level != "+" and level != topic_levels[index]:
            return False

    return len(filter_levels) == len(topic_levels)


def _validate_topic(topic: str, *, allow_wildcards: bool) -> None:
    if not topic or not topic.strip():
        raise ValueError("Топик не может быть пустым")
    if not allow_wildcards and ("+" in topic or "#" in topic):
        raise ValueError(f"Топик публикации не может содержать шаблоны: {topic}")


# =============================================================================
# КЛИЕНТ
# =============================================================================

EventHandler = Callable[..., Awaitable[None] | None]
ConnectFactory = Callable[..., Awaitable[AbstractConnection]]

TRANSPORT_EVENTS = ("connected", "disconnected", "message", "error", "fatal")


class TransportClient:
    """
    Сессия с брокером: connect/subscribe/unsubscribe/publish и события.

    События (обработчики могут быть sync или async):
        connected()                 — сессия установлена (в т.ч. после переподключения)
        disconnected(exc)           — соединение потеряно
        message(topic, payload)     — входящее сообщение, payload в байтах
        error(exc)                  — ошибка слушателя
        fatal(exc)                  — лимит переподключений исчерпан
    """

    def __init__(
        self,
        url: str,
        *,
        exchange_name: str = "amq.topic",
        client_id: str = "tracking-backend",
        prefetch_count: int = 100,
        connect_timeout: float = 30.0,
        reconnect_max_attempts: int = 10,
        reconnect_initial_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        connect_factory: ConnectFactory | None = None,
    ) -> None:
        self._url = url
        self._exchange_name = exchange_name
        self._client_id = client_id
        self._prefetch_count = prefetch_count
        self._connect_timeout = connect_timeout
        self._reconnect_max_attempts = reconnect_max_attempts
        self._reconnect_initial_delay = reconnect_initial_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._connect_factory: ConnectFactory = connect_factory or aio_pika.connect

        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._queue: AbstractQueue | None = None

        # topic -> qos; восстанавливаются после переподключения
        self._bindings: dict[str, int] = {}
        self._handlers: dict[str, list[EventHandler]] = {event: [] for event in TRANSPORT_EVENTS}

        self._connect_task: asyncio.Task[None] | None = None
        self._listener_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._connected_event = asyncio.Event()
        self._closed: asyncio.Future[TransportFatalError | None] | None = None
        self._closing = False
        self._fatal: TransportFatalError | None = None

    # =========================================================================
    # СОСТОЯНИЕ
    # =========================================================================

    @property
    def is_connected(self) -> bool:
        return (
            self._connection is not None
            and not self._connection.is_closed
            and self._connected_event.is_set()
        )

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def subscriptions(self) -> set[str]:
        return set(self._bindings)

    async def health_check(self) -> bool:
        return self.is_connected

    # =========================================================================
    # СОБЫТИЯ
    # =========================================================================

    def on(self, event: str, handler: EventHandler) -> None:
        if event not in self._handlers:
            raise ValueError(f"Неизвестное событие транспорта: {event}")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    async def _emit(self, event: str, *args: Any) -> None:
        """Вызывает обработчики события; упавший обработчик не мешает остальным."""
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                await log_error(
                    f"Ошибка в обработчике события транспорта '{event}': {e}",
                    extra={"event": event},
                    exc_info=True,
                )

    # =========================================================================
    # ПОДКЛЮЧЕНИЕ
    # =========================================================================

    async def connect(self) -> None:
        """
        Устанавливает сессию. Параллельные вызовы ждут одну и ту же попытку.
        """
        if self.is_connected:
            return
        if self._fatal is not None:
            raise self._fatal

        self._closing = False
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.create_task(self._establish())
        await asyncio.shield(self._connect_task)

    async def _establish(self) -> None:
        connection = await self._connect_factory(
            self._url,
            timeout=self._connect_timeout,
            client_properties={"connection_name": self._client_id},
        )
        try:
            channel = await connection.channel()
            await channel.set_qos(prefetch_count=self._prefetch_count)
            exchange = await channel.get_exchange(self._exchange_name)
            queue = await channel.declare_queue(exclusive=True, auto_delete=True)

            # Привязки восстанавливаются до запуска слушателя
            for topic in list(self._bindings):
                await queue.bind(exchange, routing_key=mqtt_to_routing_key(topic))
        except BaseException:
            with suppress(Exception):
                await connection.close()
            raise

        self._connection = connection
        self._channel = channel
        self._exchange = exchange
        self._queue = queue

        connection.close_callbacks.add(self._on_connection_closed)
        self._listener_task = asyncio.create_task(self._listen(queue))
        self._connected_event.set()

        await log_info(
            "Транспорт подключён",
            extra={
                "exchange": self._exchange_name,
                "client_id": self._client_id,
                "subscriptions": sorted(self._bindings),
            },
        )
        await self._emit("connected")

    async def wait_for_connection(self, timeout: float | None = None) -> None:
        """Ждёт активной сессии не дольше timeout, иначе TransportError."""
        if self.is_connected:
            return
        if self._fatal is not None:
            raise self._fatal

        timeout = self._connect_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Нет соединения с брокером в течение {timeout} с") from e

    async def _ensure_connected(self) -> None:
        if self.is_connected:
            return
        if self._fatal is not None:
            raise self._fatal
        if self.is_reconnecting:
            await self.wait_for_connection()
            return

        try:
            await asyncio.wait_for(self.connect(), self._connect_timeout)
        except TransportError:
            raise
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"Нет соединения с брокером в течение {self._connect_timeout} с"
            ) from e
        except Exception as e:
            raise TransportError(f"Не удалось подключиться к брокеру: {e}") from e

    def wait_closed(self) -> Awaitable[TransportFatalError | None]:
        """
        Завершается, когда сессия закрыта окончательно.
        Результат — TransportFatalError после исчерпания попыток, None после disconnect().
        """
        return asyncio.shield(self._closed_future())

    def _closed_future(self) -> asyncio.Future[TransportFatalError | None]:
        if self._closed is None:
            self._closed = asyncio.get_running_loop().create_future()
        return self._closed

    async def disconnect(self) -> None:
        """Штатное закрытие: без переподключения."""
        self._closing = True

        for task in (self._reconnect_task, self._connect_task):
            if task is not None and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError, Exception):
                    await task

        await self._close_connection()

        closed = self._closed_future()
        if not closed.done():
            closed.set_result(None)
        await log_info("Транспорт отключён")

    async def _close_connection(self) -> None:
        self._connected_event.clear()

        listener = self._listener_task
        self._listener_task = None
        if listener is not None and not listener.done() and listener is not asyncio.current_task():
            listener.cancel()
            with suppress(asyncio.CancelledError):
                await listener

        connection = self._connection
        self._connection = None
        self._channel = None
        self._exchange = None
        self._queue = None

        if connection is not None:
            connection.close_callbacks.discard(self._on_connection_closed)
            if not connection.is_closed:
                try:
                    await connection.close()
                except Exception as e:
                    await log_warning(f"Ошибка при закрытии соединения с брокером: {e}")

    # =========================================================================
    # ПЕРЕПОДКЛЮЧЕНИЕ
    # =========================================================================

    def _on_connection_closed(self, *args: Any) -> None:
        """close-callback aio_pika: (connection, exc)."""
        if self._closing or self._fatal is not None:
            return

        exc = args[1] if len(args) > 1 else None
        self._connected_event.clear()
        if self.is_reconnecting:
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(exc))

    async def _reconnect_loop(self, reason: BaseException | None) -> None:
        await log_warning(f"Соединение с брокером потеряно: {reason}")
        await self._close_connection()
        await self._emit("disconnected", reason)

        delay = self._reconnect_initial_delay
        last_error: BaseException | None = reason

        for attempt in range(1, self._reconnect_max_attempts + 1):
            await asyncio.sleep(delay)
            if self._closing:
                return

            try:
                await self.connect()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                await log_warning(
                    f"Переподключение не удалось (попытка {attempt}/{self._reconnect_max_attempts}): {e}",
                    extra={"next_delay": min(delay * 2, self._reconnect_max_delay)},
                )
                delay = min(delay * 2, self._reconnect_max_delay)
                continue

            await log_info("Соединение с брокером восстановлено", extra={"attempt": attempt})
            return

        await self._fail(TransportFatalError(self._reconnect_max_attempts, last_error))

    async def _fail(self, error: TransportFatalError) -> None:
        self._fatal = error
        self._closing = True
        await self._close_connection()

        await log_error(str(error))
        await self._emit("fatal", error)

        closed = self._closed_future()
        if not closed.done():
            closed.set_result(error)

    # =========================================================================
    # ПОДПИСКИ И ПУБЛИКАЦИЯ
    # =========================================================================

    async def subscribe(self, topic: str, qos: int = 1) -> None:
        """
        Привязывает очередь сессии к MQTT-фильтру и ждёт подтверждения брокера.
        """
        _validate_topic(topic, allow_wildcards=True)
        await self._ensure_connected()

        queue, exchange = self._queue, self._exchange
        if queue is None or exchange is None:
            raise TransportError("Соединение с брокером потеряно")

        try:
            await queue.bind(exchange, routing_key=mqtt_to_routing_key(topic))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise TransportError(f"Не удалось подписаться на {topic}: {e}") from e

        self._bindings[topic] = qos
        await log_debug("Подписка оформлена", extra={"topic": topic, "qos": qos})

    async def unsubscribe(self, topic: str) -> None:
        """
        Снимает привязку. Без соединения — только забывает топик:
        эксклюзивная очередь умерла вместе с соединением.
        """
        self._bindings.pop(topic, None)

        if not self.is_connected:
            await log_debug("Отписка без соединения", extra={"topic": topic})
            return

        queue, exchange = self._queue, self._exchange
        if queue is None or exchange is None:
            return

        try:
            await queue.unbind(exchange, routing_key=mqtt_to_routing_key(topic))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise TransportError(f"Не удалось отписаться от {topic}: {e}") from e

        await log_debug("Подписка снята", extra={"topic": topic})

    async def publish(self, topic: str, payload: bytes | str | dict | list, qos: int = 1) -> None:
        """Публикует сообщение в топик; при qos >= 1 сообщение персистентное."""
        _validate_topic(topic, allow_wildcards=False)
        await self._ensure_connected()

        if isinstance(payload, bytes):
            body = payload
        elif isinstance(payload, str):
            body = payload.encode("utf-8")
        else:
            body = json.dumps(payload, ensure_ascii=False).encode("utf-8")

        message = Message(
            body=body,
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT if qos >= 1 else DeliveryMode.NOT_PERSISTENT,
        )

        exchange = self._exchange
        if exchange is None:
            raise TransportError("Соединение с брокером потеряно")
        try:
            await exchange.publish(message, routing_key=mqtt_to_routing_key(topic))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise TransportError(f"Не удалось опубликовать в {topic}: {e}") from e

    # =========================================================================
    # ВХОДЯЩИЕ СООБЩЕНИЯ
    # =========================================================================

    def _qos_for(self, topic: str) -> int:
        return max(
            (qos for topic_filter, qos in self._bindings.items() if topic_matches(topic_filter, topic)),
            default=0,
        )

    async def _listen(self, queue: AbstractQueue) -> None:
        """Единственный потребитель очереди: события message идут в порядке брокера."""
        try:
            async with queue.iterator() as messages:
                async for message in messages:
                    await self._deliver(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._closing:
                return
            await log_error(f"Слушатель транспорта остановлен: {e}", exc_info=True)
            await self._emit("error", e)

    async def _deliver(self, message: AbstractIncomingMessage) -> None:
        topic = routing_key_to_mqtt(message.routing_key or "")
        qos = self._qos_for(topic)

        # QoS 0: подтверждаем сразу, QoS >= 1: после обработчиков
        if qos == 0:
            await message.ack()
        try:
            await self._emit("message", topic, message.body)
        finally:
            if qos > 0:
                await message.ack()


# =============================================================================
# ГЛОБАЛЬНЫЙ ЭКЗЕМПЛЯР
# =============================================================================

_transport: TransportClient | None = None


def build_transport() -> TransportClient:
    """Создаёт клиента по секции transport из конфига."""
    from src.config import settings

    cfg = settings.transport
    return TransportClient(
        cfg.url,
        exchange_name=cfg.TRANSPORT_EXCHANGE,
        client_id=cfg.TRANSPORT_CLIENT_ID,
        prefetch_count=cfg.TRANSPORT_PREFETCH_COUNT,
        connect_timeout=cfg.TRANSPORT_CONNECT_TIMEOUT,
        reconnect_max_attempts=cfg.TRANSPORT_RECONNECT_MAX_ATTEMPTS,
        reconnect_initial_delay=cfg.TRANSPORT_RECONNECT_INITIAL_DELAY,
        reconnect_max_delay=cfg.TRANSPORT_RECONNECT_MAX_DELAY,
    )


def get_transport() -> TransportClient:
    """Возвращает глобальный TransportClient."""
    global _transport
    if _transport is None:
        _transport = build_transport()
    return _transport


async def init_transport() -> TransportClient:
    from src.config import settings

    transport = get_transport()
    await transport.connect()
    await log_info(
        "Брокер подключён",
        extra={"host": settings.transport.TRANSPORT_HOST, "port": settings.transport.TRANSPORT_PORT},
    )
    return transport


async def close_transport() -> None:
    global _transport
    if _transport is not None:
        await _transport.disconnect()
        _transport = None
