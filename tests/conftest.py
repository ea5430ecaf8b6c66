from __future__ import annotations

from typing import Any

import pytest
from fastapi import FastAPI
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from api.app.config.settings import Settings as ApiSettings
from api.app.messaging.message_sender import MessageSender
from api.app.routers.contador import contador_router
from api.app.routers.health import health_router
from api.app.services.contador import Contador
from shared.messaging.batch import DEFAULT_MAX_BATCH_SIZE_BYTES, MessageBatch
from shared.messaging.inmemory import InMemoryBroker, InMemoryQueueClient

QUEUE_NAME = "fila-contagem"


class RecordingSender:
    """QueueSender that records publishes and close calls into a shared event log."""

    def __init__(
        self,
        events: list[str],
        *,
        max_batch_size_bytes: int = DEFAULT_MAX_BATCH_SIZE_BYTES,
        raise_on_send: Exception | None = None,
    ) -> None:
        self._events = events
        self._max_batch_size_bytes = max_batch_size_bytes
        self._raise_on_send = raise_on_send
        self.sent: list[Any] = []

    async def create_batch(self) -> MessageBatch:
        return MessageBatch(self._max_batch_size_bytes)

    async def send_batch(self, batch: MessageBatch) -> None:
        self._events.append("send_batch")
        if self._raise_on_send is not None:
            raise self._raise_on_send
        self.sent.extend(batch)

    async def close(self) -> None:
        self._events.append("sender_closed")


class RecordingClient:
    """QueueClient fake. Every client built by a RecordingClientFactory shares its event log."""

    messaging_system = "fake"

    def __init__(self, events: list[str], sender: RecordingSender) -> None:
        self._events = events
        self.sender = sender

    def create_sender(self, queue_name: str) -> RecordingSender:
        self._events.append(f"sender_created:{queue_name}")
        return self.sender

    def create_processor(self, queue_name: str, **kwargs: Any) -> Any:
        raise NotImplementedError

    async def close(self) -> None:
        self._events.append("client_closed")


class RecordingClientFactory:
    def __init__(
        self,
        *,
        max_batch_size_bytes: int = DEFAULT_MAX_BATCH_SIZE_BYTES,
        raise_on_send: Exception | None = None,
    ) -> None:
        self.events: list[str] = []
        self.clients: list[RecordingClient] = []
        self._max_batch_size_bytes = max_batch_size_bytes
        self._raise_on_send = raise_on_send

    def __call__(self) -> RecordingClient:
        sender = RecordingSender(
            self.events,
            max_batch_size_bytes=self._max_batch_size_bytes,
            raise_on_send=self._raise_on_send,
        )
        client = RecordingClient(self.events, sender)
        self.events.append("client_created")
        self.clients.append(client)
        return client

    @property
    def sent(self) -> list[Any]:
        return [m for c in self.clients for m in c.sender.sent]


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture()
def tracer_provider(span_exporter: InMemorySpanExporter) -> TracerProvider:
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    return provider


@pytest.fixture()
def tracer(tracer_provider: TracerProvider):
    return tracer_provider.get_tracer("tests")


@pytest.fixture()
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture()
def api_settings() -> ApiSettings:
    return ApiSettings(QUEUE_NAME=QUEUE_NAME, BROKER_BACKEND="inmemory", OTEL_SDK_DISABLED=True)


@pytest.fixture()
def test_app(broker: InMemoryBroker, api_settings: ApiSettings, tracer) -> FastAPI:
    app = FastAPI()
    app.state.settings = api_settings
    app.state.contador = Contador()
    app.state.tracer = tracer
    app.state.sender = MessageSender(lambda: InMemoryQueueClient(broker), tracer=tracer)
    app.include_router(health_router)
    app.include_router(contador_router)
    return app
