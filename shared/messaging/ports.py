"""Ports: queue transport contracts. Implementations live in rabbitmq.py, servicebus.py and inmemory.py."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Protocol

from shared.messaging.batch import MessageBatch
from shared.messaging.message import ReceivedMessage


class ErrorSource(str, Enum):
    CONNECTION = "CONNECTION"
    CHANNEL = "CHANNEL"
    RECEIVE = "RECEIVE"
    USER_CALLBACK = "USER_CALLBACK"
    COMPLETE = "COMPLETE"


@dataclass(frozen=True)
class ProcessErrorArgs:
    """Out-of-band transport error reported by a processor."""

    exception: BaseException
    error_source: ErrorSource
    queue_name: str


MessageHandler = Callable[[ReceivedMessage], Awaitable[object]]
ErrorHandler = Callable[[ProcessErrorArgs], Awaitable[None]]


class QueueSender(Protocol):
    """Publishes batches to one queue. Owned by a single send call."""

    async def create_batch(self) -> MessageBatch: ...

    async def send_batch(self, batch: MessageBatch) -> None:
        """Publish every message of the batch; raise PublishTransportError on broker failure."""
        ...

    async def close(self) -> None: ...


class QueueProcessor(Protocol):
    """Push-based pump that hands each delivered message to a handler."""

    @property
    def is_processing(self) -> bool: ...

    async def start_processing(self, on_message: MessageHandler, on_error: ErrorHandler) -> None: ...

    async def close(self) -> None:
        """Stop pumping and wait (bounded) for in-flight handlers."""
        ...


class QueueClient(Protocol):
    """Connection to a broker namespace."""

    @property
    def messaging_system(self) -> str: ...

    def create_sender(self, queue_name: str) -> QueueSender: ...

    def create_processor(
        self,
        queue_name: str,
        *,
        max_concurrent_calls: int = 1,
        shutdown_timeout_seconds: float = 30.0,
    ) -> QueueProcessor: ...

    async def close(self) -> None: ...


QueueClientFactory = Callable[[], QueueClient]
