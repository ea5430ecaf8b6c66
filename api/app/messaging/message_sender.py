"""
Sender: publishes one payload per call to a named queue with the causal context
stamped into the message application properties.

Each call owns a fresh client and sender handle and releases both on every exit
path (sender first, then the client). Publish failures are logged and re-raised;
retry policy belongs to the caller.
"""
from __future__ import annotations

from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Span, SpanKind

from api.app.core import SERVICE_NAME
from shared.messaging.codec import JsonMessageCodec
from shared.messaging.constants import (
    DESTINATION_KIND_QUEUE,
    MESSAGE_BODY,
    MESSAGING_DESTINATION,
    MESSAGING_DESTINATION_KIND,
    MESSAGING_MESSAGE_ID,
    MESSAGING_SYSTEM,
    send_span_name,
)
from shared.messaging.exceptions import MessageTooLargeError
from shared.messaging.message import OutgoingMessage
from shared.messaging.ports import QueueClient, QueueClientFactory
from shared.messaging.propagation import CausalContext, MessagePropertiesPropagator
from shared.observability.tracing import get_tracer


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


@dataclass(frozen=True)
class SendResult:
    """Outcome of a successful send. Failures raise instead."""

    queue_name: str
    message_id: str
    body: str
    properties: dict[str, str] = field(default_factory=dict)
    context: CausalContext = field(default_factory=CausalContext.empty)


class MessageSender:
    def __init__(
        self,
        client_factory: QueueClientFactory,
        *,
        codec: JsonMessageCodec[Any] | None = None,
        propagator: MessagePropertiesPropagator | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._codec = codec or JsonMessageCodec()
        self._propagator = propagator or MessagePropertiesPropagator()
        self._tracer = tracer or get_tracer()

    async def send(self, queue_name: str, payload: Any, *, context: Context | None = None) -> SendResult:
        """Encode, stamp and publish `payload`.

        `context` is the causal parent of the send; when omitted the caller's
        task-local current context is used. Raises MessageTooLargeError when
        the message does not fit a batch and PublishTransportError (or the
        underlying error) when publishing fails.
        """
        body = self._codec.encode(payload)
        body_text = body.decode("utf-8")
        parent = context if context is not None else otel_context.get_current()

        async with AsyncExitStack() as stack:
            try:
                client = self._client_factory()
                stack.push_async_callback(self._close_client, client)
                sender = client.create_sender(queue_name)
                stack.push_async_callback(sender.close)
                batch = await sender.create_batch()
                message = OutgoingMessage(body=body)
                with self._tracer.start_as_current_span(
                    send_span_name(queue_name),
                    context=parent,
                    kind=SpanKind.PRODUCER,
                ) as span:
                    injected = self._inject(span, parent, message)
                    span.set_attribute(MESSAGING_SYSTEM, client.messaging_system)
                    span.set_attribute(MESSAGING_DESTINATION_KIND, DESTINATION_KIND_QUEUE)
                    span.set_attribute(MESSAGING_DESTINATION, queue_name)
                    span.set_attribute(MESSAGING_MESSAGE_ID, message.message_id)
                    span.set_attribute(MESSAGE_BODY, body_text)

                    if not batch.try_add_message(message):
                        raise MessageTooLargeError(queue_name, message.size_in_bytes, batch.max_size_in_bytes)
                    await sender.send_batch(batch)
            except Exception as exc:
                logger.bind(
                    service_name=SERVICE_NAME,
                    event="message_publish_failed",
                    queue=queue_name,
                    error_type=type(exc).__name__,
                ).opt(exception=exc).error("")
                raise

        _log("queue_send_completed", queue=queue_name, message_id=message.message_id, body=body_text)
        return SendResult(
            queue_name=queue_name,
            message_id=message.message_id,
            body=body_text,
            properties=dict(message.application_properties),
            context=injected,
        )

    def _inject(self, span: Span, parent: Context, message: OutgoingMessage) -> CausalContext:
        # Non-recording spans (no SDK installed) fall back to the parent's span context.
        source = trace.set_span_in_context(span, parent) if span.get_span_context().is_valid else parent
        return self._propagator.inject_otel(source, message.application_properties)

    async def _close_client(self, client: QueueClient) -> None:
        await client.close()
        _log("queue_connection_closed")
