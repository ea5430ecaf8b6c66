"""Abstract interface for counter result persistence (port)."""
from __future__ import annotations

from typing import Protocol

from shared.contracts import ResultadoContador


class ResultadoRepository(Protocol):
    """Port: stores every counter snapshot received from the queue."""

    async def save(self, resultado: ResultadoContador) -> None: ...

    async def close(self) -> None:
        """Release resources (e.g. DB client). No-op allowed if nothing to close."""
        ...
