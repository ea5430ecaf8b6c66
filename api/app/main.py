from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from api.app.composition import create_app_dependencies
from api.app.core import SERVICE_NAME
from api.app.routers.contador import contador_router
from api.app.routers.health import health_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.bind(service_name=SERVICE_NAME, event="api_starting").info("")
    deps = create_app_dependencies()
    app.state.settings = deps.settings
    app.state.sender = deps.sender
    app.state.contador = deps.contador
    try:
        yield
    finally:
        logger.bind(service_name=SERVICE_NAME, event="api_stopping").info("")
        deps.close()


app = FastAPI(
    title="API Contagem",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(contador_router)
