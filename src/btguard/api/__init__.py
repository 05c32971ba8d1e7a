"""
btguard API.

REST interface for the device lists and outstanding pairing prompts,
plus a WebSocket stream of engine events for interactive clients.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from btguard import __version__
from btguard.api.auth import (
    APIKeyManager,
    generate_api_key,
    get_api_key,
    init_auth,
    key_manager,
)
from btguard.api.routes import deps, raise_for_result, router
from btguard.api.schemas import (
    ClassificationType,
    DecisionRequest,
    DecisionResponse,
    DecisionType,
    DeviceListResponse,
    DeviceResponse,
    ErrorResponse,
    EventListResponse,
    EventResponse,
    HealthCheck,
    PolicyChangeResponse,
    PromptListResponse,
    PromptResponse,
)
from btguard.api.websocket import (
    ConnectionManager,
    WebSocketConnection,
    WebSocketEventType,
    WebSocketMessage,
    init_websocket,
    manager,
    publish_engine_event,
    shutdown_websocket,
    websocket_endpoint,
)

if TYPE_CHECKING:
    from btguard.audit.database import AuditLog
    from btguard.core.engine import TrustEngine

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://localhost:5173"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the event stream for as long as the application is up."""
    await init_websocket()
    logger.info("btguard API ready")
    try:
        yield
    finally:
        await shutdown_websocket()
        logger.info("btguard API shut down")


def create_app(
    title: str = "btguard API",
    version: str = __version__,
    debug: bool = False,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        title: API title
        version: API version
        debug: Include exception text in 500 responses
        cors_origins: Allowed CORS origins; None for the local UI
            defaults, an empty list to disable CORS

    Returns:
        Application with the REST routes and the event stream mounted
    """
    app = FastAPI(
        title=title,
        description="Manage trusted and blocked Bluetooth devices and answer pairing prompts",
        version=version,
        debug=debug,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    origins = DEFAULT_CORS_ORIGINS if cors_origins is None else cors_origins
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["X-API-Key", "Content-Type"],
        )

    app.include_router(router)
    app.add_api_websocket_route("/api/events/stream", _event_stream)

    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                detail=str(exc) if debug else None,
            ).model_dump(),
        )

    app.add_exception_handler(Exception, unhandled_error)
    return app


async def _event_stream(
    websocket: WebSocket,
    client_id: str | None = None,
    api_key: str | None = None,
) -> None:
    await websocket_endpoint(websocket, client_id, api_key)


def configure_services(
    app: FastAPI,
    engine: "TrustEngine | None" = None,
    audit: "AuditLog | None" = None,
    api_key: str | None = None,
    auth_mode: str = "api_key",
) -> None:
    """
    Attach the engine and audit log the routes operate on.

    Also lets event stream clients see prompts opened before they
    connected.
    """
    deps.engine = engine
    deps.audit = audit
    init_auth(api_key, auth_mode)

    if engine is not None:
        manager.pending_prompts = lambda: [p.to_dict() for p in engine.pending_prompts()]
    else:
        manager.pending_prompts = None

    logger.info("API services configured (auth mode: %s)", auth_mode)


__all__ = [
    # Application
    "DEFAULT_CORS_ORIGINS",
    "configure_services",
    "create_app",
    "lifespan",
    # Authentication
    "APIKeyManager",
    "generate_api_key",
    "get_api_key",
    "init_auth",
    "key_manager",
    # Routes
    "deps",
    "raise_for_result",
    "router",
    # Schemas
    "ClassificationType",
    "DecisionRequest",
    "DecisionResponse",
    "DecisionType",
    "DeviceListResponse",
    "DeviceResponse",
    "ErrorResponse",
    "EventListResponse",
    "EventResponse",
    "HealthCheck",
    "PolicyChangeResponse",
    "PromptListResponse",
    "PromptResponse",
    # Event stream
    "ConnectionManager",
    "WebSocketConnection",
    "WebSocketEventType",
    "WebSocketMessage",
    "init_websocket",
    "manager",
    "publish_engine_event",
    "shutdown_websocket",
    "websocket_endpoint",
]
