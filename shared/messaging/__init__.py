"""Queue messaging core: context propagation, JSON codec, batches and transports."""
from __future__ import annotations

from shared.messaging.batch import DEFAULT_MAX_BATCH_SIZE_BYTES, MessageBatch
from shared.messaging.codec import DecodeFailure, JsonMessageCodec, is_decode_failure
from shared.messaging.constants import TransportType
from shared.messaging.exceptions import (
    ContextPropagationError,
    MessageTooLargeError,
    MessagingConnectionError,
    MessagingError,
    MessagingSerializationError,
    PublishTransportError,
)
from shared.messaging.message import OutgoingMessage, ReceivedMessage
from shared.messaging.ports import (
    ErrorSource,
    ProcessErrorArgs,
    QueueClient,
    QueueClientFactory,
    QueueProcessor,
    QueueSender,
)
from shared.messaging.propagation import (
    BAGGAGE_KEY,
    TRACEPARENT_KEY,
    TRACESTATE_KEY,
    CausalContext,
    MessagePropertiesPropagator,
)

__all__ = [
    "BAGGAGE_KEY",
    "CausalContext",
    "ContextPropagationError",
    "DEFAULT_MAX_BATCH_SIZE_BYTES",
    "DecodeFailure",
    "ErrorSource",
    "JsonMessageCodec",
    "MessageBatch",
    "MessagePropertiesPropagator",
    "MessageTooLargeError",
    "MessagingConnectionError",
    "MessagingError",
    "MessagingSerializationError",
    "OutgoingMessage",
    "ProcessErrorArgs",
    "PublishTransportError",
    "QueueClient",
    "QueueClientFactory",
    "QueueProcessor",
    "QueueSender",
    "ReceivedMessage",
    "TRACEPARENT_KEY",
    "TRACESTATE_KEY",
    "TransportType",
    "is_decode_failure",
]
