"""Port for the application step that runs on every decoded message."""
from __future__ import annotations

from typing import Protocol, TypeVar

T_contra = TypeVar("T_contra", contravariant=True)


class ProcessingHandler(Protocol[T_contra]):
    async def handle(self, payload: T_contra) -> None:
        """Process one decoded payload. Raising marks the message as failed; it is still completed."""
        ...
