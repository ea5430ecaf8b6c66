"""Queue client factory: selects the transport from config. Only place that imports concrete clients."""
from __future__ import annotations

from api.app.config.settings import Settings
from shared.messaging.constants import TransportType
from shared.messaging.inmemory import InMemoryQueueClient, get_default_broker
from shared.messaging.ports import QueueClient, QueueClientFactory
from shared.messaging.rabbitmq import RabbitMQQueueClient
from shared.messaging.servicebus import ServiceBusQueueClient


def create_client_factory(settings: Settings) -> QueueClientFactory:
    """Return a callable that opens a fresh client; the sender calls it once per send."""
    backend = settings.broker_backend.strip().lower()

    if backend == "rabbitmq":
        def _rabbitmq() -> QueueClient:
            return RabbitMQQueueClient(
                settings.broker_connection_string,
                transport_type=settings.broker_transport_type or TransportType.AMQP,
                max_batch_size_bytes=settings.max_batch_size_bytes,
                publish_timeout_seconds=settings.publish_timeout_seconds,
                initial_backoff_seconds=settings.initial_backoff_seconds,
                max_backoff_seconds=settings.max_backoff_seconds,
                backoff_multiplier=settings.backoff_multiplier,
                max_connection_attempts=settings.max_connection_attempts,
            )

        return _rabbitmq

    if backend == "servicebus":
        def _servicebus() -> QueueClient:
            return ServiceBusQueueClient(
                settings.broker_connection_string,
                transport_type=settings.broker_transport_type or TransportType.AMQP_WEBSOCKETS,
                max_batch_size_bytes=settings.max_batch_size_bytes,
                publish_timeout_seconds=settings.publish_timeout_seconds,
            )

        return _servicebus

    if backend == "inmemory":
        broker = get_default_broker()

        def _inmemory() -> QueueClient:
            return InMemoryQueueClient(broker, max_batch_size_bytes=settings.max_batch_size_bytes)

        return _inmemory

    raise ValueError(f"Unsupported broker backend: {backend}")
