"""
Receiver: pumps one queue and runs the processing handler under the causal
context each message carries.

Per message: extract context -> decode -> process -> acknowledge. The
extracted context is attached as the task-local current context only while
the message is handled. Every outcome completes the message; malformed or
failing messages are logged, never redelivered.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from loguru import logger
from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

from shared.messaging.codec import DecodeFailure, JsonMessageCodec
from shared.messaging.constants import (
    DESTINATION_KIND_QUEUE,
    MESSAGE_BODY,
    MESSAGING_DESTINATION,
    MESSAGING_DESTINATION_KIND,
    MESSAGING_MESSAGE_ID,
    MESSAGING_OUTCOME,
    MESSAGING_SYSTEM,
    receive_span_name,
)
from shared.messaging.message import ReceivedMessage
from shared.messaging.ports import ErrorSource, ProcessErrorArgs, QueueClient
from shared.messaging.propagation import MessagePropertiesPropagator
from shared.observability.tracing import get_tracer
from worker.app.core import SERVICE_NAME
from worker.app.ports.processing_handler import ProcessingHandler

T = TypeVar("T")


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class MessageOutcome(str, Enum):
    DECODE_FAILED = "decode_failed"
    PROCESSED = "processed"
    PROCESSING_FAILED = "processing_failed"


@dataclass(frozen=True)
class HandlerResult:
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class Worker(Generic[T]):
    """Owns the client and its processor from construction until stop()."""

    def __init__(
        self,
        client: QueueClient,
        queue_name: str,
        handler: ProcessingHandler[T],
        *,
        codec: JsonMessageCodec[Any],
        propagator: MessagePropertiesPropagator | None = None,
        tracer: trace.Tracer | None = None,
        max_concurrent_calls: int = 1,
        shutdown_timeout_seconds: float = 30.0,
    ) -> None:
        self._client = client
        self._queue_name = queue_name
        self._handler = handler
        self._codec = codec
        self._propagator = propagator or MessagePropertiesPropagator()
        self._tracer = tracer or get_tracer()
        self._processor = client.create_processor(
            queue_name,
            max_concurrent_calls=max_concurrent_calls,
            shutdown_timeout_seconds=shutdown_timeout_seconds,
        )
        self._stopped = False

    @property
    def queue_name(self) -> str:
        return self._queue_name

    @property
    def is_processing(self) -> bool:
        return self._processor.is_processing

    async def start(self) -> None:
        if self._stopped:
            raise RuntimeError("worker was stopped")
        _log("message_processing_started", queue=self._queue_name)
        await self._processor.start_processing(self.handle_message, self.handle_error)

    async def stop(self) -> None:
        """Drain in-flight handlers, then release the client. Safe to call twice."""
        if self._stopped:
            return
        self._stopped = True
        try:
            await self._processor.close()
        finally:
            await self._client.close()
            _log("queue_connection_closed", queue=self._queue_name)

    async def handle_message(self, message: ReceivedMessage) -> MessageOutcome:
        causal = self._propagator.extract(message.application_properties)
        parent = causal.to_otel()
        token = otel_context.attach(parent)
        try:
            body_text = bytes(message.body).decode("utf-8", errors="replace")
            with self._tracer.start_as_current_span(
                receive_span_name(self._queue_name),
                context=parent,
                kind=SpanKind.CONSUMER,
            ) as span:
                span.set_attribute(MESSAGE_BODY, body_text)
                span.set_attribute(MESSAGING_SYSTEM, self._client.messaging_system)
                span.set_attribute(MESSAGING_DESTINATION_KIND, DESTINATION_KIND_QUEUE)
                span.set_attribute(MESSAGING_DESTINATION, self._queue_name)
                span.set_attribute(MESSAGING_MESSAGE_ID, message.message_id)
                _log(
                    "message_received",
                    queue=self._queue_name,
                    message_id=message.message_id,
                    delivery_count=message.delivery_count,
                    body=body_text,
                )

                payload = self._decode(message)
                if isinstance(payload, DecodeFailure):
                    logger.bind(
                        service_name=SERVICE_NAME,
                        event="message_decode_failed",
                        queue=self._queue_name,
                        message_id=message.message_id,
                        reason=payload.reason,
                    ).error("")
                    outcome = MessageOutcome.DECODE_FAILED
                else:
                    result = await self.invoke_handler(payload)
                    if result.succeeded:
                        outcome = MessageOutcome.PROCESSED
                    else:
                        outcome = MessageOutcome.PROCESSING_FAILED
                        span.record_exception(result.error)  # type: ignore[arg-type]

                span.set_attribute(MESSAGING_OUTCOME, outcome.value)
                if outcome is not MessageOutcome.PROCESSED:
                    span.set_status(Status(StatusCode.ERROR, outcome.value))

            await self.acknowledge(message, outcome)
            return outcome
        finally:
            otel_context.detach(token)

    def _decode(self, message: ReceivedMessage) -> Any:
        try:
            return self._codec.decode(message.body)
        except Exception as exc:
            return DecodeFailure(f"decoder raised {type(exc).__name__}: {exc}")

    async def invoke_handler(self, payload: T) -> HandlerResult:
        try:
            await self._handler.handle(payload)
        except Exception as exc:
            logger.bind(
                service_name=SERVICE_NAME,
                event="message_processing_failed",
                queue=self._queue_name,
                error_type=type(exc).__name__,
            ).opt(exception=exc).error("")
            return HandlerResult(error=exc)
        return HandlerResult()

    async def acknowledge(self, message: ReceivedMessage, outcome: MessageOutcome) -> None:
        """Complete the message whatever the outcome; settlement failures go to the error handler."""
        try:
            await message.complete()
        except Exception as exc:
            await self.handle_error(ProcessErrorArgs(exc, ErrorSource.COMPLETE, self._queue_name))
            return
        _log("message_completed", queue=self._queue_name, message_id=message.message_id, outcome=outcome.value)

    async def handle_error(self, args: ProcessErrorArgs) -> None:
        logger.bind(
            service_name=SERVICE_NAME,
            event="processor_error",
            error_source=args.error_source.value,
            queue=args.queue_name,
        ).error("[failure] {} {}", type(args.exception).__name__, args.exception)
