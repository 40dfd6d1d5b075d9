"""Loopback HTTP side-channel of a broker.

Pollers use it to discover the pending request and to deliver answers:

- GET  /api/feedback/current  poll (optionally with workspace / latestStartTime)
- POST /api/feedback/submit   deliver {requestId, feedback}
- GET  /api/health            liveness probe
- POST /api/shutdown          yield to a newer instance

Every response carries `Access-Control-Allow-Origin: *`; OPTIONS is
answered with a bare 200. Any unexpected exception becomes a 500 so that a
bad request can never take the broker (and its waiting tool call) down.
"""

import asyncio
import json
from typing import Any, Optional

import structlog
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from feedback_relay import __version__
from feedback_relay.broker.rendezvous import FeedbackBroker
from feedback_relay.core.errors import InvalidRequestBodyError, RelayError
from feedback_relay.protocol import FeedbackResponse

log = structlog.get_logger()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


class SubmitRequest(BaseModel):
    """Body of POST /api/feedback/submit."""

    request_id: str = Field(..., alias="requestId", min_length=1)
    feedback: dict[str, Any] = Field(default_factory=dict)


class SubmitResponse(BaseModel):
    success: bool


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(populate_by_name=True)

    status: str
    version: str
    has_current_request: bool = Field(alias="hasCurrentRequest")
    pid: int


class ShutdownResponse(BaseModel):
    success: bool = True
    message: str = "Shutting down..."


def _parse_start_time(raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(float(raw))
    except (ValueError, OverflowError):
        return None


async def parse_submit_body(request: Request) -> FeedbackResponse:
    """Validate a submit body at the boundary.

    Raises:
        InvalidRequestBodyError: For non-JSON bodies or a wrong shape
    """
    try:
        data = json.loads(await request.body())
        body = SubmitRequest.model_validate(data)
        return FeedbackResponse.from_dict(body.request_id, body.feedback)
    except (ValueError, TypeError, ValidationError) as e:
        log.info("feedback_submit_invalid_body", error=str(e))
        raise InvalidRequestBodyError() from e


def create_app(broker: FeedbackBroker) -> FastAPI:
    """Create the HTTP application bound to one broker.

    Args:
        broker: The rendezvous state this app exposes

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Feedback Relay Broker",
        description="Loopback side-channel for pending feedback requests",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.broker = broker

    @app.middleware("http")
    async def loopback_boundary(request: Request, call_next):
        if request.method == "OPTIONS":
            response = Response(status_code=200)
        else:
            try:
                response = await call_next(request)
            except Exception as e:
                log.error(
                    "http_handler_error",
                    method=request.method,
                    path=request.url.path,
                    error=str(e),
                    exc_info=True,
                )
                response = JSONResponse(status_code=500, content={"error": "Internal server error"})
        response.headers.update(CORS_HEADERS)
        return response

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})

    # ===== Feedback Endpoints =====

    @app.get("/api/feedback/current", tags=["Feedback"])
    async def current_feedback(
        workspace: Optional[str] = Query(default=None),
        latest_start_time: Optional[str] = Query(default=None, alias="latestStartTime"),
    ):
        """Return the pending request plus this broker's identity."""
        snapshot = broker.snapshot(
            workspace=workspace or None,
            latest_start_time=_parse_start_time(latest_start_time),
        )
        return snapshot.to_dict()

    @app.post("/api/feedback/submit", response_model=SubmitResponse, tags=["Feedback"])
    async def submit_feedback(request: Request):
        """Resolve the waiting tool call whose id matches."""
        response = await parse_submit_body(request)
        broker.submit(response.request_id, response)
        return SubmitResponse(success=True)

    # ===== System Endpoints =====

    @app.get("/api/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        """Check broker liveness."""
        return HealthResponse(**broker.health())

    @app.post("/api/shutdown", response_model=ShutdownResponse, tags=["System"])
    async def shutdown():
        """Yield to a newer instance after a short grace delay."""
        delay = broker.config.shutdown_grace_seconds
        asyncio.get_running_loop().call_later(delay, broker.request_shutdown)
        log.info("broker_shutdown_scheduled", delay=delay)
        return ShutdownResponse()

    return app
