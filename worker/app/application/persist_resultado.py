from __future__ import annotations

from typing import Any

from loguru import logger

from shared.contracts import ResultadoContador
from worker.app.core import SERVICE_NAME
from worker.app.ports.resultado_repository import ResultadoRepository


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class PersistResultadoHandler:
    """Stores each received counter snapshot."""

    def __init__(self, repository: ResultadoRepository) -> None:
        self._repository = repository

    async def handle(self, payload: ResultadoContador) -> None:
        await self._repository.save(payload)
        _log(
            "resultado_saved",
            valor_atual=payload.valor_atual,
            producer=payload.producer,
        )
