"""In-memory ResultadoRepository for tests and local mode."""
from __future__ import annotations

import asyncio

from shared.contracts import ResultadoContador


class InMemoryResultadoRepository:
    def __init__(self) -> None:
        self._items: list[ResultadoContador] = []
        self._lock = asyncio.Lock()

    @property
    def items(self) -> list[ResultadoContador]:
        return list(self._items)

    async def save(self, resultado: ResultadoContador) -> None:
        async with self._lock:
            self._items.append(resultado)

    async def close(self) -> None:
        return None
