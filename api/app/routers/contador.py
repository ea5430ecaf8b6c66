from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, Response
from loguru import logger
from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

from api.app.core import SERVICE_NAME
from api.app.services.publish_contagem import publish_contagem
from shared.messaging.propagation import MessagePropertiesPropagator
from shared.observability.tracing import get_tracer

contador_router = APIRouter(tags=["Contador"])

_propagator = MessagePropertiesPropagator()


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).warning("")


@contador_router.get(
    "/contador",
    summary="Increment and publish the access counter",
    description="Increments the process-local counter and publishes the snapshot to the queue with the request's trace context.",
    responses={
        200: {"description": "Counter published; returns the published payload."},
        413: {"description": "Payload does not fit a single message batch."},
        503: {"description": "Sender not available or publish failed."},
    },
)
async def get_contador(request: Request) -> Response:
    sender = getattr(request.app.state, "sender", None)
    contador = getattr(request.app.state, "contador", None)
    settings = getattr(request.app.state, "settings", None)
    if sender is None or contador is None or settings is None:
        _log("publish_rejected", reason="sender_not_ready")
        return Response(status_code=503, content="Sender not available")

    incoming = _propagator.extract(dict(request.headers)).to_otel()
    tracer = getattr(request.app.state, "tracer", None) or get_tracer()
    with tracer.start_as_current_span("GET /contador", context=incoming, kind=SpanKind.SERVER) as span:
        outcome = await publish_contagem(
            contador,
            sender,
            settings,
            context=trace.set_span_in_context(span, incoming),
        )
        if outcome.success and outcome.resultado is not None:
            span.set_attribute("http.status_code", 200)
            return Response(
                status_code=200,
                media_type="application/json",
                content=outcome.resultado.model_dump_json(),
            )

        status_code = 413 if outcome.too_large else 503
        span.set_attribute("http.status_code", status_code)
        span.set_status(Status(StatusCode.ERROR, outcome.error))
        _log("publish_failed", reason=outcome.error, status_code=status_code)
        content = "Message too large" if outcome.too_large else (outcome.error or "Publish failed")
        return Response(status_code=status_code, content=content)
