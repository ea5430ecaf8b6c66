"""Repository factory: selects and assembles persistence adapters."""
from __future__ import annotations

from worker.app.config.settings import Settings
from worker.app.infrastructure.persistence.inmemory.inmemory_repository import InMemoryResultadoRepository
from worker.app.infrastructure.persistence.mongo.mongo_repository import MongoResultadoRepository
from worker.app.ports.resultado_repository import ResultadoRepository


async def create_resultado_repository(settings: Settings) -> ResultadoRepository:
    """Select repository adapter from configuration and return port type."""
    backend = settings.repository_backend.strip().lower()

    if backend == "mongo":
        return await MongoResultadoRepository.connect(settings)
    if backend == "inmemory":
        return InMemoryResultadoRepository()
    raise ValueError(f"Unsupported repository backend: {backend}")
