"""Azure Service Bus transport (azure-servicebus, asyncio flavour).

Speaks AMQP either over TCP 5671 or over WebSockets on 443; the WebSocket
transport is the default, as outbound AMQP ports are often blocked. Receivers
use peek-lock: `complete()` settles the message, and messages still locked
when the processor closes are abandoned so the next delivery bumps their
delivery count.
"""
from __future__ import annotations

import asyncio
import contextlib
from types import MappingProxyType
from typing import Any, Mapping

from azure.servicebus import ServiceBusMessage, ServiceBusReceivedMessage
from azure.servicebus import TransportType as ServiceBusTransportType
from azure.servicebus.aio import ServiceBusClient, ServiceBusReceiver, ServiceBusSender
from azure.servicebus.exceptions import (
    MessageSizeExceededError,
    ServiceBusConnectionError,
    ServiceBusError,
)
from loguru import logger

from shared.messaging.batch import DEFAULT_MAX_BATCH_SIZE_BYTES, MessageBatch
from shared.messaging.constants import TransportType
from shared.messaging.exceptions import MessageTooLargeError, PublishTransportError
from shared.messaging.ports import ErrorHandler, ErrorSource, MessageHandler, ProcessErrorArgs

MESSAGING_SYSTEM = "servicebus"

_TRANSPORTS = {
    TransportType.AMQP: ServiceBusTransportType.Amqp,
    TransportType.AMQP_WEBSOCKETS: ServiceBusTransportType.AmqpOverWebsocket,
}

_TRANSPORT_ERRORS = (ServiceBusError, ConnectionError, OSError, asyncio.TimeoutError)


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(component="messaging", event=event, **kwargs).info("")


def _text(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return value


class ServiceBusQueueReceivedMessage:
    def __init__(self, receiver: ServiceBusReceiver, raw: ServiceBusReceivedMessage) -> None:
        self._receiver = receiver
        self._raw = raw
        # The AMQP layer may hand back binary keys.
        self._properties = MappingProxyType(
            {str(_text(k)): v for k, v in (raw.application_properties or {}).items()}
        )
        self.settled = False

    @property
    def message_id(self) -> str:
        return str(self._raw.message_id or "")

    @property
    def body(self) -> bytes:
        body = self._raw.body
        if isinstance(body, (bytes, bytearray)):
            return bytes(body)
        if isinstance(body, str):
            return body.encode("utf-8")
        return b"".join(bytes(section) for section in body)

    @property
    def application_properties(self) -> Mapping[str, Any]:
        return self._properties

    @property
    def delivery_count(self) -> int:
        # The AMQP header counts prior failed deliveries only.
        return int(self._raw.delivery_count or 0) + 1

    async def complete(self) -> None:
        await self._receiver.complete_message(self._raw)
        self.settled = True

    async def abandon(self) -> None:
        await self._receiver.abandon_message(self._raw)
        self.settled = True


class ServiceBusQueueSender:
    def __init__(self, client: "ServiceBusQueueClient", queue_name: str) -> None:
        self._client = client
        self._queue_name = queue_name
        self._sender: ServiceBusSender | None = None
        self._closed = False

    async def create_batch(self) -> MessageBatch:
        if self._closed:
            raise RuntimeError("sender is closed")
        return MessageBatch(self._client.max_batch_size_bytes)

    async def send_batch(self, batch: MessageBatch) -> None:
        if self._closed:
            raise RuntimeError("sender is closed")
        try:
            if self._sender is None:
                self._sender = self._client.sb_client.get_queue_sender(queue_name=self._queue_name)
            sb_batch = await self._sender.create_message_batch()
            for message in batch:
                try:
                    sb_batch.add_message(
                        ServiceBusMessage(
                            message.body,
                            application_properties=dict(message.application_properties),
                            message_id=message.message_id,
                            content_type=message.content_type,
                        )
                    )
                except MessageSizeExceededError as exc:
                    raise MessageTooLargeError(
                        self._queue_name, message.size_in_bytes, sb_batch.max_size_in_bytes
                    ) from exc
            await asyncio.wait_for(
                self._sender.send_messages(sb_batch),
                timeout=self._client.publish_timeout_seconds,
            )
        except MessageTooLargeError:
            raise
        except _TRANSPORT_ERRORS as exc:
            raise PublishTransportError(f"publish to {self._queue_name!r} failed: {exc}") from exc

    async def close(self) -> None:
        self._closed = True
        if self._sender is not None:
            try:
                await self._sender.close()
            except Exception as exc:
                logger.warning("sender close failed: {}", exc)
            self._sender = None


class ServiceBusQueueProcessor:
    def __init__(
        self,
        client: "ServiceBusQueueClient",
        queue_name: str,
        *,
        max_concurrent_calls: int = 1,
        shutdown_timeout_seconds: float = 30.0,
    ) -> None:
        self._client = client
        self._queue_name = queue_name
        self._max_concurrent_calls = max(1, int(max_concurrent_calls))
        self._shutdown_timeout_seconds = shutdown_timeout_seconds
        self._semaphore = asyncio.Semaphore(self._max_concurrent_calls)
        self._receiver: ServiceBusReceiver | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._in_flight: dict[asyncio.Task[None], ServiceBusQueueReceivedMessage] = {}

    @property
    def is_processing(self) -> bool:
        return self._pump_task is not None and not self._pump_task.done()

    async def start_processing(self, on_message: MessageHandler, on_error: ErrorHandler) -> None:
        if self.is_processing:
            raise RuntimeError("processor is already running")
        self._receiver = self._client.sb_client.get_queue_receiver(
            queue_name=self._queue_name,
            prefetch_count=self._max_concurrent_calls,
        )
        self._pump_task = asyncio.create_task(self._pump(self._receiver, on_message, on_error))
        _log("sb_receiver_started", queue=self._queue_name, prefetch=self._max_concurrent_calls)

    async def _pump(self, receiver: ServiceBusReceiver, on_message: MessageHandler, on_error: ErrorHandler) -> None:
        while True:
            await self._semaphore.acquire()
            try:
                received = await receiver.receive_messages(
                    max_message_count=1,
                    max_wait_time=self._client.receive_wait_seconds,
                )
            except asyncio.CancelledError:
                self._semaphore.release()
                raise
            except _TRANSPORT_ERRORS as exc:
                self._semaphore.release()
                source = ErrorSource.CONNECTION if isinstance(exc, ServiceBusConnectionError) else ErrorSource.RECEIVE
                await on_error(ProcessErrorArgs(exc, source, self._queue_name))
                await asyncio.sleep(self._client.receive_retry_seconds)
                continue
            if not received:
                self._semaphore.release()
                continue
            message = ServiceBusQueueReceivedMessage(receiver, received[0])
            task = asyncio.create_task(self._dispatch(message, on_message, on_error))
            self._in_flight[task] = message
            task.add_done_callback(lambda t: self._in_flight.pop(t, None))

    async def _dispatch(
        self,
        message: ServiceBusQueueReceivedMessage,
        on_message: MessageHandler,
        on_error: ErrorHandler,
    ) -> None:
        try:
            await on_message(message)
        except Exception as exc:
            await on_error(ProcessErrorArgs(exc, ErrorSource.USER_CALLBACK, self._queue_name))
        finally:
            self._semaphore.release()

    async def close(self) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump_task
            self._pump_task = None

        if self._in_flight:
            unfinished = dict(self._in_flight)
            _, pending = await asyncio.wait(set(unfinished), timeout=self._shutdown_timeout_seconds)
            for task in pending:
                task.cancel()
            if pending:
                _log("inflight_abandoned", queue=self._queue_name, count=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
            for task in pending:
                message = unfinished[task]
                if message.settled:
                    continue
                try:
                    await message.abandon()
                except _TRANSPORT_ERRORS as exc:
                    logger.warning("abandon of {} failed: {}", message.message_id, exc)

        if self._receiver is not None:
            try:
                await self._receiver.close()
            except Exception as exc:
                logger.warning("receiver close failed: {}", exc)
            self._receiver = None


class ServiceBusQueueClient:
    """Wraps one `ServiceBusClient`; links are opened lazily by senders and receivers."""

    def __init__(
        self,
        connection_string: str,
        *,
        transport_type: TransportType = TransportType.AMQP_WEBSOCKETS,
        max_batch_size_bytes: int = DEFAULT_MAX_BATCH_SIZE_BYTES,
        publish_timeout_seconds: float = 10.0,
        receive_wait_seconds: float = 5.0,
        receive_retry_seconds: float = 1.0,
    ) -> None:
        transport = TransportType(transport_type)
        self.transport_type = transport
        self.max_batch_size_bytes = int(max_batch_size_bytes)
        self.publish_timeout_seconds = publish_timeout_seconds
        self.receive_wait_seconds = receive_wait_seconds
        self.receive_retry_seconds = receive_retry_seconds
        self.sb_client = ServiceBusClient.from_connection_string(
            connection_string,
            transport_type=_TRANSPORTS[transport],
        )

    @property
    def messaging_system(self) -> str:
        return MESSAGING_SYSTEM

    def create_sender(self, queue_name: str) -> ServiceBusQueueSender:
        return ServiceBusQueueSender(self, queue_name)

    def create_processor(
        self,
        queue_name: str,
        *,
        max_concurrent_calls: int = 1,
        shutdown_timeout_seconds: float = 30.0,
    ) -> ServiceBusQueueProcessor:
        return ServiceBusQueueProcessor(
            self,
            queue_name,
            max_concurrent_calls=max_concurrent_calls,
            shutdown_timeout_seconds=shutdown_timeout_seconds,
        )

    async def close(self) -> None:
        try:
            await self.sb_client.close()
        except Exception as exc:
            logger.warning("servicebus client close failed: {}", exc)
