"""
Composition root: single place where concrete implementations are wired.

Builds settings, the message sender and the counter from config. Broker
backend selection (BROKER_BACKEND=inmemory) is driven by settings through the
client factory. No DI container library; explicit wiring only.
"""

from opentelemetry.sdk.trace import TracerProvider

from api.app.config.settings import Settings
from api.app.core import SERVICE_NAME
from api.app.infrastructure.messaging.factory import create_client_factory
from api.app.messaging.message_sender import MessageSender
from api.app.services.contador import Contador
from shared.messaging.codec import JsonMessageCodec
from shared.messaging.propagation import MessagePropertiesPropagator
from shared.observability.tracing import configure_tracing, shutdown_tracing


class AppDependencies:
    """Holds wired dependencies and their lifecycle. Built only in composition root."""

    def __init__(
        self,
        *,
        settings: Settings,
        sender: MessageSender,
        contador: Contador,
        tracer_provider: TracerProvider | None = None,
    ) -> None:
        self._settings = settings
        self._sender = sender
        self._contador = contador
        self._tracer_provider = tracer_provider

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def sender(self) -> MessageSender:
        return self._sender

    @property
    def contador(self) -> Contador:
        return self._contador

    @property
    def tracer_provider(self) -> TracerProvider | None:
        return self._tracer_provider

    def close(self) -> None:
        # Senders own no long-lived connection; only spans need flushing.
        shutdown_tracing(self._tracer_provider)
        self._tracer_provider = None


def create_app_dependencies(
    settings: Settings | None = None,
    *,
    configure_otel: bool = True,
) -> AppDependencies:
    """
    Composition root: build all app dependencies in one place.
    Caller owns lifecycle (close). The broker backend is selected from
    settings (broker_backend).
    """
    _settings = settings or Settings()
    provider = None
    if configure_otel:
        provider = configure_tracing(
            SERVICE_NAME,
            _settings.service_version,
            endpoint=_settings.otel_exporter_endpoint,
            disabled=_settings.otel_sdk_disabled,
        )
    sender = MessageSender(
        create_client_factory(_settings),
        codec=JsonMessageCodec(),
        propagator=MessagePropertiesPropagator(),
    )
    return AppDependencies(
        settings=_settings,
        sender=sender,
        contador=Contador(),
        tracer_provider=provider,
    )
