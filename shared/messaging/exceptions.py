"""Messaging error taxonomy shared by the sender and the worker."""
from __future__ import annotations


class MessagingError(Exception):
    """Base class for messaging failures."""


class MessageTooLargeError(MessagingError):
    """Raised when a single message does not fit the batch size budget.

    Terminal for the publish call: nothing is sent and the call is not retried.
    """

    def __init__(self, queue_name: str, message_size: int, max_size: int) -> None:
        self.queue_name = queue_name
        self.message_size = message_size
        self.max_size = max_size
        super().__init__(
            f"message of {message_size} bytes does not fit the batch for queue "
            f"{queue_name!r} (max {max_size} bytes)"
        )


class PublishTransportError(MessagingError):
    """Network or broker failure while publishing. Never retried internally."""


class MessagingSerializationError(MessagingError):
    """Raised when a payload cannot be encoded."""


class ContextPropagationError(MessagingError):
    """Per-key failure while writing or reading trace context headers.

    Only ever handed to the propagator's error sink; never raised to callers.
    """

    INJECT = "inject"
    EXTRACT = "extract"

    def __init__(self, operation: str, key: str, cause: BaseException) -> None:
        self.operation = operation
        self.key = key
        self.cause = cause
        super().__init__(f"context {operation} failed for key {key!r}: {cause}")


class MessagingConnectionError(MessagingError):
    """Raised when the broker connection cannot be established."""
