"""In-memory queue transport for tests and local mode.

Peek-lock semantics: a delivered message stays in flight until it is
completed. In-flight messages left unsettled when a processor closes go back
to the front of the queue; the next delivery increments their delivery count.
Only for a single process; API and worker running as separate processes
cannot share it.
"""
from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from loguru import logger

from shared.messaging.batch import DEFAULT_MAX_BATCH_SIZE_BYTES, MessageBatch
from shared.messaging.exceptions import PublishTransportError
from shared.messaging.ports import ErrorHandler, ErrorSource, MessageHandler, ProcessErrorArgs

MESSAGING_SYSTEM = "inmemory"


@dataclass
class StoredMessage:
    message_id: str
    body: bytes
    properties: dict[str, str]
    content_type: str = "application/json"
    delivery_count: int = 0


@dataclass
class _InMemoryQueue:
    name: str
    ready: deque[StoredMessage] = field(default_factory=deque)
    in_flight: dict[str, StoredMessage] = field(default_factory=dict)
    completed: list[StoredMessage] = field(default_factory=list)
    available: asyncio.Condition = field(default_factory=asyncio.Condition)

    async def put(self, message: StoredMessage, *, front: bool = False) -> None:
        async with self.available:
            if front:
                self.ready.appendleft(message)
            else:
                self.ready.append(message)
            self.available.notify()

    async def get(self) -> StoredMessage:
        async with self.available:
            while not self.ready:
                await self.available.wait()
            message = self.ready.popleft()
            message.delivery_count += 1
            self.in_flight[message.message_id] = message
            return message

    def complete(self, message_id: str) -> None:
        message = self.in_flight.pop(message_id, None)
        if message is None:
            raise RuntimeError(f"message {message_id} is not locked by this receiver")
        self.completed.append(message)

    async def abandon(self, message_id: str) -> bool:
        message = self.in_flight.pop(message_id, None)
        if message is None:
            return False
        await self.put(message, front=True)
        return True


class InMemoryBroker:
    """Named queues shared by in-memory clients."""

    def __init__(self) -> None:
        self._queues: dict[str, _InMemoryQueue] = {}
        self._send_failures: deque[BaseException] = deque()

    def queue(self, name: str) -> _InMemoryQueue:
        if name not in self._queues:
            self._queues[name] = _InMemoryQueue(name)
        return self._queues[name]

    def active_message_count(self, queue_name: str) -> int:
        q = self.queue(queue_name)
        return len(q.ready) + len(q.in_flight)

    def peek(self, queue_name: str) -> list[StoredMessage]:
        return list(self.queue(queue_name).ready)

    def completed(self, queue_name: str) -> list[StoredMessage]:
        return list(self.queue(queue_name).completed)

    def fail_next_send(self, exc: BaseException) -> None:
        """Make the next publish raise PublishTransportError caused by `exc`."""
        self._send_failures.append(exc)

    async def publish(self, queue_name: str, batch: MessageBatch) -> None:
        if self._send_failures:
            cause = self._send_failures.popleft()
            raise PublishTransportError(str(cause)) from cause
        q = self.queue(queue_name)
        for message in batch:
            await q.put(
                StoredMessage(
                    message_id=message.message_id,
                    body=bytes(message.body),
                    properties=dict(message.application_properties),
                    content_type=message.content_type,
                )
            )

    async def wait_until_empty(self, queue_name: str, timeout: float = 2.0) -> None:
        async def _poll() -> None:
            while self.active_message_count(queue_name) > 0:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), timeout=timeout)


class InMemoryReceivedMessage:
    def __init__(self, queue: _InMemoryQueue, stored: StoredMessage) -> None:
        self._queue = queue
        self._stored = stored
        self._properties = MappingProxyType(dict(stored.properties))

    @property
    def message_id(self) -> str:
        return self._stored.message_id

    @property
    def body(self) -> bytes:
        return self._stored.body

    @property
    def application_properties(self) -> Mapping[str, Any]:
        return self._properties

    @property
    def delivery_count(self) -> int:
        return self._stored.delivery_count

    async def complete(self) -> None:
        self._queue.complete(self._stored.message_id)


class InMemoryQueueSender:
    def __init__(self, broker: InMemoryBroker, queue_name: str, max_batch_size_bytes: int) -> None:
        self._broker = broker
        self._queue_name = queue_name
        self._max_batch_size_bytes = max_batch_size_bytes
        self.closed = False

    async def create_batch(self) -> MessageBatch:
        if self.closed:
            raise RuntimeError("sender is closed")
        return MessageBatch(self._max_batch_size_bytes)

    async def send_batch(self, batch: MessageBatch) -> None:
        if self.closed:
            raise RuntimeError("sender is closed")
        await self._broker.publish(self._queue_name, batch)

    async def close(self) -> None:
        self.closed = True


class InMemoryQueueProcessor:
    def __init__(
        self,
        broker: InMemoryBroker,
        queue_name: str,
        *,
        max_concurrent_calls: int = 1,
        shutdown_timeout_seconds: float = 30.0,
    ) -> None:
        self._broker = broker
        self._queue_name = queue_name
        self._max_concurrent_calls = max(1, int(max_concurrent_calls))
        self._shutdown_timeout_seconds = shutdown_timeout_seconds
        self._semaphore = asyncio.Semaphore(self._max_concurrent_calls)
        self._pump_task: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[None]] = set()
        self._delivered: set[str] = set()

    @property
    def is_processing(self) -> bool:
        return self._pump_task is not None and not self._pump_task.done()

    async def start_processing(self, on_message: MessageHandler, on_error: ErrorHandler) -> None:
        if self.is_processing:
            raise RuntimeError("processor is already running")
        self._pump_task = asyncio.create_task(self._pump(on_message, on_error))

    async def _pump(self, on_message: MessageHandler, on_error: ErrorHandler) -> None:
        queue = self._broker.queue(self._queue_name)
        while True:
            await self._semaphore.acquire()
            try:
                stored = await queue.get()
            except BaseException:
                self._semaphore.release()
                raise
            self._delivered.add(stored.message_id)
            task = asyncio.create_task(self._dispatch(queue, stored, on_message, on_error))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _dispatch(
        self,
        queue: _InMemoryQueue,
        stored: StoredMessage,
        on_message: MessageHandler,
        on_error: ErrorHandler,
    ) -> None:
        try:
            await on_message(InMemoryReceivedMessage(queue, stored))
        except Exception as exc:
            await on_error(ProcessErrorArgs(exc, ErrorSource.USER_CALLBACK, self._queue_name))
        finally:
            if stored.message_id not in queue.in_flight:
                self._delivered.discard(stored.message_id)
            self._semaphore.release()

    async def close(self) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump_task
            self._pump_task = None

        if self._in_flight:
            _, pending = await asyncio.wait(set(self._in_flight), timeout=self._shutdown_timeout_seconds)
            for task in pending:
                task.cancel()
            if pending:
                logger.bind(component="messaging", event="inflight_abandoned", count=len(pending)).warning("")
                await asyncio.gather(*pending, return_exceptions=True)

        queue = self._broker.queue(self._queue_name)
        for message_id in list(self._delivered):
            await queue.abandon(message_id)
        self._delivered.clear()


class InMemoryQueueClient:
    def __init__(
        self,
        broker: InMemoryBroker,
        *,
        max_batch_size_bytes: int = DEFAULT_MAX_BATCH_SIZE_BYTES,
    ) -> None:
        self._broker = broker
        self._max_batch_size_bytes = max_batch_size_bytes
        self.closed = False

    @property
    def messaging_system(self) -> str:
        return MESSAGING_SYSTEM

    @property
    def broker(self) -> InMemoryBroker:
        return self._broker

    def create_sender(self, queue_name: str) -> InMemoryQueueSender:
        return InMemoryQueueSender(self._broker, queue_name, self._max_batch_size_bytes)

    def create_processor(
        self,
        queue_name: str,
        *,
        max_concurrent_calls: int = 1,
        shutdown_timeout_seconds: float = 30.0,
    ) -> InMemoryQueueProcessor:
        return InMemoryQueueProcessor(
            self._broker,
            queue_name,
            max_concurrent_calls=max_concurrent_calls,
            shutdown_timeout_seconds=shutdown_timeout_seconds,
        )

    async def close(self) -> None:
        self.closed = True


_default_broker: InMemoryBroker | None = None


def get_default_broker() -> InMemoryBroker:
    global _default_broker
    if _default_broker is None:
        _default_broker = InMemoryBroker()
    return _default_broker
