"""Worker composition root: build and lifecycle-manage concrete dependencies.

Composition may: import concrete classes, call factories, store interface types,
manage high-level lifecycle.
"""
from __future__ import annotations

from typing import Any

from loguru import logger
from opentelemetry.sdk.trace import TracerProvider

from shared.contracts import ResultadoContador
from shared.messaging.codec import JsonMessageCodec
from shared.messaging.propagation import MessagePropertiesPropagator
from shared.observability.tracing import configure_tracing, shutdown_tracing
from worker.app.application.persist_resultado import PersistResultadoHandler
from worker.app.config.settings import Settings
from worker.app.core import SERVICE_NAME
from worker.app.infrastructure.messaging.factory import create_queue_client
from worker.app.infrastructure.persistence.factory import create_resultado_repository
from worker.app.ports.resultado_repository import ResultadoRepository
from worker.app.worker import Worker


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class WorkerDependencies:
    """Holds wired worker dependencies and their lifecycle."""

    def __init__(self, *, settings: Settings, configure_otel: bool = True) -> None:
        self._settings = settings
        self._configure_otel = configure_otel
        self._repository: ResultadoRepository | None = None
        self._worker: Worker[ResultadoContador] | None = None
        self._tracer_provider: TracerProvider | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def repository(self) -> ResultadoRepository:
        if self._repository is None:
            raise RuntimeError("repository is not initialized")
        return self._repository

    @property
    def worker(self) -> Worker[ResultadoContador]:
        if self._worker is None:
            raise RuntimeError("worker is not initialized")
        return self._worker

    async def connect(self) -> None:
        if self._configure_otel:
            self._tracer_provider = configure_tracing(
                SERVICE_NAME,
                self._settings.service_version,
                endpoint=self._settings.otel_exporter_endpoint,
                disabled=self._settings.otel_sdk_disabled,
            )
        self._repository = await create_resultado_repository(self._settings)
        self._worker = Worker(
            create_queue_client(self._settings),
            self._settings.queue_name,
            PersistResultadoHandler(self._repository),
            codec=JsonMessageCodec(ResultadoContador),
            propagator=MessagePropertiesPropagator(),
            max_concurrent_calls=self._settings.max_concurrent_calls,
            shutdown_timeout_seconds=self._settings.shutdown_timeout_seconds,
        )
        _log("dependencies_ready", queue=self._settings.queue_name)

    async def close(self) -> None:
        if self._worker is not None:
            try:
                await self._worker.stop()
            except Exception as exc:
                logger.warning("worker stop failed: {}", exc)
            self._worker = None

        if self._repository is not None:
            try:
                await self._repository.close()
            except Exception as exc:
                logger.warning("repository close failed: {}", exc)
            self._repository = None

        shutdown_tracing(self._tracer_provider)
        self._tracer_provider = None


def create_worker_dependencies(settings: Settings | None = None) -> WorkerDependencies:
    return WorkerDependencies(settings=settings or Settings())
