from typing import Any

from fastapi import APIRouter, Request, Response
from loguru import logger

from api.app.core import SERVICE_NAME

health_router = APIRouter(tags=["Health"])


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


@health_router.get(
    "/health/live",
    summary="Liveness probe",
    description="Returns 200 if the API process is running.",
    responses={200: {"description": "Service is alive."}},
)
async def live() -> dict:
    return {"status": "ok"}


@health_router.get(
    "/health/ready",
    summary="Readiness probe",
    description="Returns 200 once the message sender is wired. The broker is opened per send, so it is not probed here.",
    responses={
        200: {"description": "Sender is wired."},
        503: {"description": "Sender not initialized."},
    },
)
async def ready(request: Request) -> Response:
    sender = getattr(request.app.state, "sender", None)
    if sender is None:
        _log("components_not_initialized")
        return Response(status_code=503, content="Not ready")
    return Response(status_code=200, content="OK")
