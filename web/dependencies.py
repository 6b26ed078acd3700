"""Shared dependencies for the courier web application."""

from fastapi import HTTPException, Request

from courier.services.delivery import DeliveryCoordinator


def get_coordinator(request: Request) -> DeliveryCoordinator:
    """
    Get the delivery coordinator created by the app lifespan.

    Raises:
        HTTPException: 503 if the coordinator is not running
    """
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None or not coordinator.is_running:
        raise HTTPException(status_code=503, detail="Delivery service is not running")
    return coordinator
