"""
FastAPI application entry point.
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from taskpipe import __version__
from taskpipe.api.routes import health_router, tasks_router
from taskpipe.config import Settings, get_settings
from taskpipe.observability.logging import setup_logging
from taskpipe.observability.metrics import get_metrics, setup_metrics
from taskpipe.observability.tracing import instrument_fastapi, setup_tracing
from taskpipe.producer import Submitter
from taskpipe.queue import QueueChannel

logger = logging.getLogger(__name__)


async def record_request_metrics(
    request: Request,
    call_next: RequestResponseEndpoint,
) -> Response:
    """Record count and latency of every API request."""
    start_time = time.monotonic()
    response = await call_next(request)

    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    get_metrics().record_api_request(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
        duration_seconds=time.monotonic() - start_time,
    )
    return response


def create_app(
    channel: QueueChannel | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        channel: An already connected channel to use instead of opening one
            on startup. The caller keeps ownership of it.
        settings: Settings override.

    Returns:
        FastAPI: The configured application instance.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Opens the broker channel on startup unless one was injected,
        and closes it on shutdown.
        """
        # Startup
        setup_logging("api")
        setup_metrics()
        setup_tracing()

        owned_channel: QueueChannel | None = None
        if app.state.channel is None:
            owned_channel = QueueChannel(settings)
            await owned_channel.connect()
            app.state.channel = owned_channel
            app.state.submitter = Submitter(owned_channel)

        logger.info("Application started", extra={"queue": settings.queue_name})

        yield

        # Shutdown
        if owned_channel is not None:
            await owned_channel.close()
            app.state.channel = None
            app.state.submitter = None
        logger.info("Application shutdown")

    app = FastAPI(
        title="Task Pipeline API",
        description="Durable asynchronous task submission over a message broker",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.state.settings = settings
    app.state.channel = channel
    app.state.submitter = Submitter(channel) if channel is not None else None

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(BaseHTTPMiddleware, dispatch=record_request_metrics)

    # Include routers
    app.include_router(health_router)
    app.include_router(tasks_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app(settings=settings)

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
