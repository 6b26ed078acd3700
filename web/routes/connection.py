"""Admin routes for the transport connection."""

from typing import Any, Dict

from fastapi import APIRouter, Depends
from loguru import logger

from courier.services.delivery import DeliveryCoordinator
from web.dependencies import get_coordinator

router = APIRouter(prefix="/api/connection", tags=["connection"])


@router.get("/status")
async def connection_status(
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """
    Get connection state, pairing code (with QR image) and queue depth.

    Returns:
        Status dictionary for the admin screen
    """
    return coordinator.status()


@router.post("/start")
async def start_connection(
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Start connecting; no-op if already connecting or ready."""
    await coordinator.start_connection()
    return coordinator.status()


@router.post("/stop")
async def stop_connection(
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Close the transport session. Queued messages stay queued."""
    await coordinator.stop_connection()
    return coordinator.status()


@router.post("/reset")
async def reset_connection(
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Forget the stored session and reconnect to get a new pairing code."""
    logger.warning("Transport session reset requested via API")
    await coordinator.reset_session()
    return coordinator.status()
