############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# main.py: FastAPI application entry point and configuration
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""FastAPI application entry point."""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.api import api_router
from backend.app.core.errors import (
    AuthorizationError,
    BackendClientError,
    BackendUnavailableError,
    NotFoundError,
    OrchestratorError,
    StateError,
    ValidationError,
)
from backend.app.core.orchestrator import Orchestrator
from backend.app.logging_config import (
    bind_request_context,
    clear_request_context,
    get_logger,
    setup_logging,
)
from backend.app.settings import get_settings

# Setup logging first
setup_logging()
logger = get_logger(__name__)

# Orchestrator errors and the HTTP status / error type they map to
ERROR_STATUS = (
    (ValidationError, 400, "validation_error"),
    (AuthorizationError, 403, "authorization_error"),
    (NotFoundError, 404, "not_found"),
    (StateError, 409, "state_error"),
    (BackendUnavailableError, 503, "backend_unavailable"),
    (BackendClientError, 502, "backend_error"),
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager."""
    settings = get_settings()
    logger.info("Starting GenRouter...", version=settings.app_version)

    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = Orchestrator.from_settings(settings)
        app.state.orchestrator = orchestrator
    await orchestrator.start()

    logger.info("GenRouter started successfully")

    yield

    # Shutdown
    logger.info("Shutting down GenRouter...")
    await orchestrator.stop()
    logger.info("GenRouter shutdown complete")


class RequestIDMiddleware:
    """Raw ASGI middleware for request ID injection.

    Unlike @app.middleware("http") which wraps in BaseHTTPMiddleware,
    this does NOT run the handler in a separate task, so client disconnects
    won't cancel in-flight DB operations and leak connections.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # Extract request ID from headers
        headers = dict(scope.get("headers", []))
        request_id = (
            headers.get(b"x-request-id", b"").decode()
            or str(uuid.uuid4())
        )

        bind_request_context(request_id=request_id)

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                response_headers = list(message.get("headers", []))
                response_headers.append(
                    (b"x-request-id", request_id.encode())
                )
                message = {**message, "headers": response_headers}
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            clear_request_context()


def _error_response(status_code: int, error_type: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": error_type}},
    )


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator; built from settings at startup if omitted
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Job queue and router for ComfyUI image/video generation backends",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(RequestIDMiddleware)

    # Exception handlers
    @app.exception_handler(OrchestratorError)
    async def orchestrator_exception_handler(request: Request, exc: OrchestratorError):
        for error_class, status_code, error_type in ERROR_STATUS:
            if isinstance(exc, error_class):
                if status_code >= 500:
                    logger.warning("request_backend_error", path=request.url.path, error=str(exc))
                return _error_response(status_code, error_type, str(exc))
        logger.exception("unhandled_orchestrator_error", error=str(exc))
        return _error_response(500, "server_error", "Internal server error")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.exception("unhandled_exception", error=str(exc))
        return _error_response(500, "server_error", "Internal server error")

    # Include routers
    app.include_router(api_router)

    return app


# Create application instance
app = create_app()


def main():
    """Run the application using uvicorn."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "backend.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
