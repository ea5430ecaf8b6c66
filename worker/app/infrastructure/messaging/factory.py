"""Queue client factory: selects the broker transport from config. Only place that imports concrete transports."""
from __future__ import annotations

from shared.messaging.constants import TransportType
from shared.messaging.inmemory import InMemoryQueueClient, get_default_broker
from shared.messaging.ports import QueueClient
from shared.messaging.rabbitmq import RabbitMQQueueClient
from shared.messaging.servicebus import ServiceBusQueueClient
from worker.app.config.settings import Settings


def create_queue_client(settings: Settings) -> QueueClient:
    backend = settings.broker_backend.strip().lower()

    if backend == "rabbitmq":
        return RabbitMQQueueClient(
            settings.broker_connection_string,
            transport_type=settings.broker_transport_type or TransportType.AMQP,
            initial_backoff_seconds=settings.initial_backoff_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
            backoff_multiplier=settings.backoff_multiplier,
            max_connection_attempts=settings.max_connection_attempts,
        )
    if backend == "servicebus":
        return ServiceBusQueueClient(
            settings.broker_connection_string,
            transport_type=settings.broker_transport_type or TransportType.AMQP_WEBSOCKETS,
            receive_wait_seconds=settings.receive_wait_seconds,
        )
    if backend == "inmemory":
        return InMemoryQueueClient(get_default_broker())

    raise ValueError(f"Unsupported broker backend: {backend}")
