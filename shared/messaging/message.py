"""Message envelopes: what a sender builds and what a processor hands to a worker."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol


@dataclass
class OutgoingMessage:
    """Message under construction by a sender.

    `application_properties` carries the causal context; it is only written
    before the message is added to a batch.
    """

    body: bytes
    application_properties: dict[str, str] = field(default_factory=dict)
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    content_type: str = "application/json"

    @property
    def size_in_bytes(self) -> int:
        size = len(self.body)
        for key, value in self.application_properties.items():
            size += len(str(key).encode("utf-8")) + len(str(value).encode("utf-8"))
        return size


class ReceivedMessage(Protocol):
    """Transport-agnostic delivered message. Transports implement it; the worker uses it."""

    @property
    def message_id(self) -> str: ...

    @property
    def body(self) -> bytes: ...

    @property
    def application_properties(self) -> Mapping[str, Any]: ...

    @property
    def delivery_count(self) -> int: ...

    async def complete(self) -> None:
        """Tell the queue the message was handled and may be removed."""
        ...
