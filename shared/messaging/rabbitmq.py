"""
RabbitMQ queue transport on aio_pika.

Sender: per publish call opens a confirm channel on the client's connection,
declares the durable queue and publishes every batch message on the default
exchange (routing key = queue name) with the application properties as AMQP
headers. Broker or network failures surface as PublishTransportError.

Processor: one channel for the processor lifetime, prefetch = max concurrent
calls, manual ack. aiormq dispatches each delivery in its own task, so up to
`prefetch` handlers run concurrently. Reconnection is left to
`connect_robust`; connection and channel losses are only reported to the
error handler.
"""
from __future__ import annotations

import asyncio
from types import MappingProxyType
from typing import Any, Mapping

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from loguru import logger

from shared.core.backoff import exponential_backoff
from shared.messaging.batch import DEFAULT_MAX_BATCH_SIZE_BYTES, MessageBatch
from shared.messaging.constants import TransportType
from shared.messaging.exceptions import MessagingConnectionError, PublishTransportError
from shared.messaging.ports import ErrorHandler, ErrorSource, MessageHandler, ProcessErrorArgs

MESSAGING_SYSTEM = "rabbitmq"

_TRANSPORT_ERRORS = (
    aio_pika.exceptions.AMQPError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(component="messaging", event=event, **kwargs).info("")


class RabbitMQReceivedMessage:
    def __init__(self, raw: AbstractIncomingMessage) -> None:
        self._raw = raw
        self._properties = MappingProxyType(dict(raw.headers or {}))

    @property
    def message_id(self) -> str:
        return self._raw.message_id or ""

    @property
    def body(self) -> bytes:
        return self._raw.body

    @property
    def application_properties(self) -> Mapping[str, Any]:
        return self._properties

    @property
    def delivery_count(self) -> int:
        count = self._properties.get("x-delivery-count")
        if isinstance(count, int):
            return count + 1
        return 2 if self._raw.redelivered else 1

    async def complete(self) -> None:
        await self._raw.ack()


class RabbitMQQueueSender:
    def __init__(self, client: "RabbitMQQueueClient", queue_name: str) -> None:
        self._client = client
        self._queue_name = queue_name
        self._closed = False

    async def create_batch(self) -> MessageBatch:
        if self._closed:
            raise RuntimeError("sender is closed")
        return MessageBatch(self._client.max_batch_size_bytes)

    async def send_batch(self, batch: MessageBatch) -> None:
        if self._closed:
            raise RuntimeError("sender is closed")
        channel: AbstractChannel | None = None
        try:
            connection = await self._client.connection()
            channel = await connection.channel(publisher_confirms=True)
            await channel.declare_queue(self._queue_name, durable=True)
            for message in batch:
                await channel.default_exchange.publish(
                    Message(
                        message.body,
                        headers=dict(message.application_properties),
                        message_id=message.message_id,
                        content_type=message.content_type,
                        delivery_mode=DeliveryMode.PERSISTENT,
                    ),
                    routing_key=self._queue_name,
                    timeout=self._client.publish_timeout_seconds,
                )
        except (MessagingConnectionError, *_TRANSPORT_ERRORS) as exc:
            raise PublishTransportError(f"publish to {self._queue_name!r} failed: {exc}") from exc
        finally:
            if channel is not None:
                try:
                    await channel.close()
                except Exception as exc:
                    logger.warning("channel close failed: {}", exc)

    async def close(self) -> None:
        self._closed = True


class RabbitMQQueueProcessor:
    def __init__(
        self,
        client: "RabbitMQQueueClient",
        queue_name: str,
        *,
        max_concurrent_calls: int = 1,
        shutdown_timeout_seconds: float = 30.0,
    ) -> None:
        self._client = client
        self._queue_name = queue_name
        self._max_concurrent_calls = max(1, int(max_concurrent_calls))
        self._shutdown_timeout_seconds = shutdown_timeout_seconds
        self._channel: AbstractChannel | None = None
        self._queue: AbstractQueue | None = None
        self._consumer_tag: str | None = None
        self._on_error: ErrorHandler | None = None
        self._in_flight: set[asyncio.Task[Any]] = set()
        self._error_tasks: set[asyncio.Task[None]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closing = False

    @property
    def is_processing(self) -> bool:
        return self._consumer_tag is not None

    async def start_processing(self, on_message: MessageHandler, on_error: ErrorHandler) -> None:
        if self.is_processing:
            raise RuntimeError("processor is already running")
        self._closing = False
        self._on_error = on_error
        self._loop = asyncio.get_running_loop()

        connection = await self._client.connection()
        connection.close_callbacks.add(self._on_connection_closed)
        self._channel = await connection.channel()
        self._channel.close_callbacks.add(self._on_channel_closed)
        await self._channel.set_qos(prefetch_count=self._max_concurrent_calls)
        self._queue = await self._channel.declare_queue(self._queue_name, durable=True)

        async def dispatch(raw: AbstractIncomingMessage) -> None:
            task = asyncio.current_task()
            if task is not None:
                self._in_flight.add(task)
            try:
                await on_message(RabbitMQReceivedMessage(raw))
            except Exception as exc:
                await on_error(ProcessErrorArgs(exc, ErrorSource.USER_CALLBACK, self._queue_name))
            finally:
                if task is not None:
                    self._in_flight.discard(task)

        self._consumer_tag = await self._queue.consume(dispatch, no_ack=False)
        _log("rmq_consumer_started", queue=self._queue_name, prefetch=self._max_concurrent_calls)

    def _report(self, exc: BaseException, source: ErrorSource) -> None:
        if self._closing or self._on_error is None or self._loop is None:
            return
        on_error = self._on_error

        def schedule() -> None:
            task = asyncio.create_task(on_error(ProcessErrorArgs(exc, source, self._queue_name)))
            self._error_tasks.add(task)
            task.add_done_callback(self._error_tasks.discard)

        self._loop.call_soon_threadsafe(schedule)

    def _on_connection_closed(self, _sender: Any, exc: BaseException | None = None, *args: Any) -> None:
        if exc is not None:
            self._report(exc, ErrorSource.CONNECTION)

    def _on_channel_closed(self, _sender: Any, exc: BaseException | None = None, *args: Any) -> None:
        if exc is not None:
            self._report(exc, ErrorSource.CHANNEL)

    async def close(self) -> None:
        self._closing = True
        if self._queue is not None and self._consumer_tag is not None:
            try:
                await self._queue.cancel(self._consumer_tag)
            except Exception as exc:
                logger.warning("consumer cancel failed: {}", exc)
        self._consumer_tag = None

        if self._in_flight:
            _, pending = await asyncio.wait(set(self._in_flight), timeout=self._shutdown_timeout_seconds)
            for task in pending:
                task.cancel()
            if pending:
                _log("inflight_abandoned", queue=self._queue_name, count=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

        if self._channel is not None:
            try:
                await self._channel.close()
            except Exception as exc:
                logger.warning("channel close failed: {}", exc)
            self._channel = None
        self._queue = None


class RabbitMQQueueClient:
    """One robust connection per client, opened on first use."""

    def __init__(
        self,
        url: str,
        *,
        transport_type: TransportType = TransportType.AMQP,
        max_batch_size_bytes: int = DEFAULT_MAX_BATCH_SIZE_BYTES,
        publish_timeout_seconds: float = 10.0,
        initial_backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 10.0,
        backoff_multiplier: float = 2.0,
        max_connection_attempts: int = 1,
    ) -> None:
        if TransportType(transport_type) is not TransportType.AMQP:
            raise ValueError(f"transport {transport_type!r} is not supported by the rabbitmq backend")
        self._url = url
        self.max_batch_size_bytes = int(max_batch_size_bytes)
        self.publish_timeout_seconds = publish_timeout_seconds
        self._initial_backoff_seconds = initial_backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds
        self._backoff_multiplier = backoff_multiplier
        self._max_connection_attempts = max_connection_attempts
        self._connection: AbstractRobustConnection | None = None
        self._lock = asyncio.Lock()

    @property
    def messaging_system(self) -> str:
        return MESSAGING_SYSTEM

    async def connection(self) -> AbstractRobustConnection:
        async with self._lock:
            if self._connection is not None and not self._connection.is_closed:
                return self._connection
            async for attempt, delay in exponential_backoff(
                self._initial_backoff_seconds,
                self._max_backoff_seconds,
                self._backoff_multiplier,
                self._max_connection_attempts,
            ):
                _log("rmq_connect_attempt", attempt=attempt)
                try:
                    self._connection = await aio_pika.connect_robust(self._url)
                    _log("rmq_connected")
                    return self._connection
                except _TRANSPORT_ERRORS as exc:
                    logger.warning("rmq connect failed: {}", exc)
                    if attempt >= self._max_connection_attempts:
                        raise MessagingConnectionError(f"cannot connect to broker: {exc}") from exc
                    _log("rmq_connect_retry", attempt=attempt, retry_in=delay)
            raise MessagingConnectionError("cannot connect to broker")

    def create_sender(self, queue_name: str) -> RabbitMQQueueSender:
        return RabbitMQQueueSender(self, queue_name)

    def create_processor(
        self,
        queue_name: str,
        *,
        max_concurrent_calls: int = 1,
        shutdown_timeout_seconds: float = 30.0,
    ) -> RabbitMQQueueProcessor:
        return RabbitMQQueueProcessor(
            self,
            queue_name,
            max_concurrent_calls=max_concurrent_calls,
            shutdown_timeout_seconds=shutdown_timeout_seconds,
        )

    async def close(self) -> None:
        if self._connection is not None:
            try:
                await self._connection.close()
            except Exception as exc:
                logger.warning("connection close failed: {}", exc)
            self._connection = None
