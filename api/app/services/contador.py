"""Process-local access counter."""
from __future__ import annotations

import threading


class Contador:
    def __init__(self, start: int = 0) -> None:
        self._valor = start
        self._lock = threading.Lock()

    @property
    def valor_atual(self) -> int:
        with self._lock:
            return self._valor

    def increment(self) -> int:
        with self._lock:
            self._valor += 1
            return self._valor
