"""MongoDB implementation of ResultadoRepository.

`MongoResultadoRepository.connect` owns the whole bootstrap: it dials the
server with backoff, pings it, creates the history index and hands back a
repository that closes the client it opened.
"""
from __future__ import annotations

import inspect
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote_plus

from loguru import logger
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from shared.contracts import ResultadoContador
from shared.core.backoff import exponential_backoff
from worker.app.config.settings import Settings
from worker.app.core import SERVICE_NAME

RECEIVED_AT_INDEX = "idx_contagem_received_at"


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def mongo_uri(settings: Settings) -> str:
    """Credentials are percent-encoded; both or neither must be set."""
    host = f"{settings.database_host}:{settings.database_port}"
    user, password = settings.database_user, settings.database_password
    if user and password:
        return f"mongodb://{quote_plus(user)}:{quote_plus(password)}@{host}"
    return f"mongodb://{host}"


async def _close_client(client: Any) -> None:
    res = client.close()
    if inspect.isawaitable(res):
        await res


class MongoResultadoRepository:
    """Appends one document per received snapshot; history is never updated in place."""

    def __init__(self, collection: AsyncIOMotorCollection, *, client: Any | None = None) -> None:
        self._collection = collection
        self._client = client

    @classmethod
    async def connect(cls, settings: Settings) -> "MongoResultadoRepository":
        async for attempt, delay in exponential_backoff(
            settings.initial_backoff_seconds,
            settings.max_backoff_seconds,
            settings.backoff_multiplier,
            settings.max_connection_attempts,
        ):
            _log("historico_connect_attempt", attempt=attempt, host=settings.database_host)
            client = AsyncIOMotorClient(
                mongo_uri(settings),
                appname=SERVICE_NAME,
                serverSelectionTimeoutMS=settings.database_connection_timeout_ms,
            )
            try:
                await client.admin.command("ping")
                repo = cls(client[settings.database_name][settings.database_collection], client=client)
                await repo.ensure_indexes()
            except PyMongoError as exc:
                await _close_client(client)
                if attempt >= settings.max_connection_attempts:
                    raise
                logger.warning("historico store unavailable ({}), retrying in {}s", exc, delay)
                continue
            _log("historico_connected", collection=settings.database_collection)
            return repo
        raise RuntimeError("mongo connect failed")

    async def ensure_indexes(self) -> None:
        await self._collection.create_index([("received_at", DESCENDING)], name=RECEIVED_AT_INDEX)

    async def save(self, resultado: ResultadoContador) -> None:
        document: dict[str, Any] = resultado.model_dump()
        document["received_at"] = datetime.now(timezone.utc)
        await self._collection.insert_one(document)

    async def close(self) -> None:
        if self._client is not None:
            await _close_client(self._client)
