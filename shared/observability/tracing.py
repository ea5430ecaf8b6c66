"""OpenTelemetry bootstrap shared by the API and the worker.

Sets up a TracerProvider tagged with the service name and version, exports
spans over OTLP/HTTP when an endpoint is configured, and installs the W3C
TraceContext + Baggage composite as the global text map so HTTP and queue
hops use the same header names.
"""
from __future__ import annotations

from typing import Any

from loguru import logger
from opentelemetry import trace
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

TRACER_NAME = "contagem.messaging"


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(component="observability", event=event, **kwargs).info("")


def configure_tracing(
    service_name: str,
    service_version: str,
    *,
    endpoint: str = "",
    disabled: bool = False,
) -> TracerProvider | None:
    """Install a global TracerProvider. Returns None when tracing is disabled."""
    if disabled:
        _log("otel_disabled", service=service_name)
        return None

    set_global_textmap(
        CompositePropagator([TraceContextTextMapPropagator(), W3CBaggagePropagator()])
    )
    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: service_name, SERVICE_VERSION: service_version})
    )
    if endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{endpoint.rstrip('/')}/v1/traces"))
        )
    trace.set_tracer_provider(provider)
    _log("otel_configured", service=service_name, endpoint=endpoint or None)
    return provider


def shutdown_tracing(provider: TracerProvider | None) -> None:
    if provider is None:
        return
    try:
        provider.force_flush()
        provider.shutdown()
    except Exception as exc:
        logger.warning("tracer provider shutdown failed: {}", exc)


def get_tracer(name: str = TRACER_NAME) -> trace.Tracer:
    return trace.get_tracer(name)
