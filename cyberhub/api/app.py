"""
FastAPI application factory for CyberHub.

Creates the app with all routers, CORS and request-id middleware, one
exception handler that maps the CyberHub error hierarchy to HTTP statuses,
and a lifespan that connects the client, ensures the schema and runs the
presence monitor.
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Tuple

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from cyberhub.api.auth import auth_router
from cyberhub.api.routes import ROUTERS
from cyberhub.api.schemas import HealthResponse
from cyberhub.client import ClientOptions, CyberHubClient
from cyberhub.config import Settings, get_settings
from cyberhub.db.engine import init_db
from cyberhub.exceptions import (
    AuthenticationError,
    ClientValidationError,
    ConflictError,
    CyberHubException,
    ForeignKeyConstraintError,
    ForbiddenError,
    InsufficientBalanceError,
    RecordNotFoundError,
    TransactionError,
    UniqueConstraintError,
)
from cyberhub.services import (
    CenterService,
    CommandService,
    ComputerService,
    EventLog,
    PresenceMonitor,
    PricingService,
    SessionService,
    UserService,
)

logger = logging.getLogger(__name__)

# First match wins, so subclasses come before their bases.
STATUS_MAP: Tuple[Tuple[type, int], ...] = (
    (RecordNotFoundError, 404),
    (InsufficientBalanceError, 402),
    (UniqueConstraintError, 409),
    (ForeignKeyConstraintError, 409),
    (ConflictError, 409),
    (ClientValidationError, 422),
    (AuthenticationError, 401),
    (ForbiddenError, 403),
    (TransactionError, 504),
)


def status_for(exc: BaseException) -> int:
    for exc_type, status_code in STATUS_MAP:
        if isinstance(exc, exc_type):
            return status_code
    return 500


def _error_type(exc: BaseException) -> str:
    # "InsufficientBalanceError" -> "insufficient_balance"
    name = exc.__class__.__name__.replace("Error", "")
    return "".join("_" + c.lower() if c.isupper() else c for c in name).lstrip("_")


def create_app(
    client: Optional[CyberHubClient] = None,
    settings: Optional[Settings] = None,
    run_presence_monitor: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        client: Client to serve from; by default one is built from settings
            with ``password_hash`` omitted globally.
        settings: Settings override (tests).
        run_presence_monitor: Start the OFFLINE sweeper with the app.

    Returns:
        Configured FastAPI instance.
    """
    settings = settings or get_settings()
    owns_client = client is None
    if client is None:
        client = CyberHubClient(
            ClientOptions(
                datasource_url=settings.database.url,
                omit={"user": {"password_hash": True}},
            )
        )

    computers = ComputerService(client, settings)
    presence = PresenceMonitor(computers)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await client.connect()
        await init_db(client.engine)
        if run_presence_monitor:
            presence.start()
        logger.info("CyberHub API started", extra={"version": settings.api.version})
        try:
            yield
        finally:
            await presence.stop()
            if owns_client:
                await client.disconnect()
            logger.info("CyberHub API stopped", extra={})

    app = FastAPI(
        title="CyberHub",
        description="Cyber center management API",
        version=settings.api.version,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.client = client
    app.state.users = UserService(client, settings)
    app.state.centers = CenterService(client)
    app.state.computers = computers
    app.state.sessions = SessionService(client, settings)
    app.state.commands = CommandService(client, settings)
    app.state.pricing = PricingService(client)
    app.state.event_log = EventLog(client)
    app.state.presence = presence

    # -- CORS --
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- Request-ID middleware --
    @app.middleware("http")
    async def add_request_id(request: Request, call_next: Any) -> Response:
        """Attach a unique request ID to every request."""
        request_id = request.headers.get("X-Request-Id", uuid.uuid4().hex[:12])
        request.state.request_id = request_id
        response: Response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    # -- Global exception handlers --
    @app.exception_handler(CyberHubException)
    async def cyberhub_exception_handler(request: Request, exc: CyberHubException) -> Response:
        """Render every CyberHubException subclass as consistent JSON."""
        request_id = getattr(request.state, "request_id", "unknown")
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(
                "Request failed",
                extra={"request_id": request_id, "error": str(exc), "path": request.url.path},
            )
        return Response(
            content=json.dumps(
                {
                    "error": _error_type(exc),
                    "message": str(exc),
                    "code": getattr(exc, "code", None),
                    "meta": getattr(exc, "meta", {}),
                    "request_id": request_id,
                },
                default=str,
            ),
            status_code=status_code,
            media_type="application/json",
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> Response:
        """Catch-all handler for unhandled exceptions."""
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error(
            "Unhandled exception",
            extra={"request_id": request_id, "error": str(exc)},
            exc_info=True,
        )
        return Response(
            content=json.dumps(
                {
                    "error": "internal_server_error",
                    "message": "An unexpected error occurred",
                    "code": None,
                    "request_id": request_id,
                }
            ),
            status_code=500,
            media_type="application/json",
        )

    # -- Routes --
    app.include_router(auth_router)
    for router in ROUTERS:
        app.include_router(router)

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        database = "ok"
        try:
            await client.query_raw("SELECT 1 AS ok")
        except CyberHubException as exc:
            logger.warning("Health check database query failed", extra={"error": str(exc)})
            database = "unavailable"
        return HealthResponse(
            status="healthy" if database == "ok" else "degraded",
            version=settings.api.version,
            database=database,
        )

    return app
