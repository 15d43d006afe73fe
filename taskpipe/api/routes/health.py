"""
Health check routes.
"""

from fastapi import APIRouter, Request
from fastapi.responses import Response

from taskpipe import __version__
from taskpipe.errors import NotConnectedError
from taskpipe.observability.metrics import get_metrics
from taskpipe.types.api import HealthResponse
from taskpipe.types.task import utcnow

router = APIRouter(tags=["Health"])


async def _broker_state(request: Request) -> tuple[bool, int | None]:
    channel = request.app.state.channel
    if channel is None or not channel.is_connected:
        return False, None
    try:
        return True, await channel.queue_depth()
    except NotConnectedError:
        return False, None


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and the broker connection.",
)
async def health_check(request: Request) -> HealthResponse:
    """
    Perform a health check.

    Checks broker connectivity and reports the work queue depth.

    Returns:
        HealthResponse with service status.
    """
    connected, depth = await _broker_state(request)

    return HealthResponse(
        status="healthy" if connected else "degraded",
        version=__version__,
        broker="healthy" if connected else "unhealthy",
        queue_depth=depth,
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(request: Request) -> dict:
    """
    Kubernetes readiness probe endpoint.

    Returns:
        Ready status.
    """
    channel = request.app.state.channel
    return {"ready": channel is not None and channel.is_connected}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """
    Kubernetes liveness probe endpoint.

    Returns:
        Alive status.
    """
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    """
    Expose Prometheus metrics.

    Returns:
        Prometheus-formatted metrics.
    """
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
