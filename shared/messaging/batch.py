"""Size-bounded batch of outgoing messages prepared for one publish call."""
from __future__ import annotations

from typing import Iterator

from shared.messaging.message import OutgoingMessage

# 256 KiB, the usual per-message limit of hosted queue brokers.
DEFAULT_MAX_BATCH_SIZE_BYTES = 256 * 1024


class MessageBatch:
    """Ordered accumulation of messages that never exceeds `max_size_in_bytes`.

    `try_add_message` refuses a message that does not fit instead of truncating it.
    """

    def __init__(self, max_size_in_bytes: int = DEFAULT_MAX_BATCH_SIZE_BYTES) -> None:
        if max_size_in_bytes <= 0:
            raise ValueError("max_size_in_bytes must be > 0")
        self._max_size_in_bytes = int(max_size_in_bytes)
        self._messages: list[OutgoingMessage] = []
        self._size_in_bytes = 0

    @property
    def max_size_in_bytes(self) -> int:
        return self._max_size_in_bytes

    @property
    def size_in_bytes(self) -> int:
        return self._size_in_bytes

    @property
    def count(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> tuple[OutgoingMessage, ...]:
        return tuple(self._messages)

    def try_add_message(self, message: OutgoingMessage) -> bool:
        size = message.size_in_bytes
        if self._size_in_bytes + size > self._max_size_in_bytes:
            return False
        self._messages.append(message)
        self._size_in_bytes += size
        return True

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[OutgoingMessage]:
        return iter(tuple(self._messages))
