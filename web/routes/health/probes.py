"""Liveness endpoint."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


def get_version() -> str:
    """
    Get application version from centralized source.

    Returns:
        Version string
    """
    from courier import __version__

    return __version__


@router.get("/health")
async def health_check(request: Request) -> Dict[str, Any]:
    """
    Health check endpoint for monitoring and container orchestration.

    The process is healthy while the coordinator runs; a disconnected
    transport is reported as degraded, not as a failure.

    Returns:
        Health status with connection summary
    """
    coordinator = getattr(request.app.state, "coordinator", None)
    running = coordinator is not None and coordinator.is_running

    connection = None
    queue_depth = 0
    if running:
        connection = coordinator.supervisor.current_state().value
        queue_depth = len(coordinator.queue)

    if not running:
        status = "unhealthy"
    elif connection == "ready":
        status = "healthy"
    else:
        status = "degraded"

    return {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": get_version(),
        "connection": connection,
        "queue_depth": queue_depth,
    }
