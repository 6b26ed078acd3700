"""FastAPI application exposing the courier delivery subsystem."""

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from courier import __version__
from courier.core.config import get_settings
from courier.services.delivery import DeliveryCoordinator
from web.exception_handlers import register_exception_handlers
from web.rate_limit import limiter
from web.routes import connection_router, documents_router, health_router, otp_router

SHUTDOWN_TIMEOUT = 15


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context manager for startup and shutdown.

    Handles:
    - Building the coordinator from settings (unless one was injected)
    - Starting the transport connection
    - Stopping it and checkpointing the queue on shutdown
    """
    logger.info("FastAPI application starting up...")
    coordinator: Optional[DeliveryCoordinator] = getattr(app.state, "coordinator", None)
    if coordinator is None:
        coordinator = DeliveryCoordinator.from_settings()
        app.state.coordinator = coordinator

    await coordinator.start()
    logger.info(f"Delivery coordinator running ({coordinator.supervisor.transport_name})")

    yield

    logger.info("FastAPI application shutting down...")
    try:
        await asyncio.wait_for(coordinator.stop(), timeout=SHUTDOWN_TIMEOUT)
        logger.info("Delivery coordinator stopped")
    except asyncio.TimeoutError:
        logger.error(f"Delivery coordinator stop timed out after {SHUTDOWN_TIMEOUT}s")
    except Exception as e:
        logger.error(f"Error stopping delivery coordinator: {e}")


def parse_cors_origins(origins_str: str) -> List[str]:
    """
    Parse CORS origins, dropping the wildcard outside development.

    Args:
        origins_str: Comma-separated list of allowed origins

    Returns:
        List of origin strings
    """
    origins = [origin.strip() for origin in origins_str.split(",") if origin.strip()]
    settings = get_settings()
    if "*" in origins and settings.env not in ("development", "testing"):
        logger.warning("Removing wildcard CORS origin outside development")
        origins = [o for o in origins if o != "*"]
    return origins


def create_app(
    coordinator: Optional[DeliveryCoordinator] = None,
    env_override: Optional[str] = None,
) -> FastAPI:
    """
    Factory function to create FastAPI application instance.

    Args:
        coordinator: Pre-built coordinator (tests inject one with a fake transport)
        env_override: Override environment name for OpenAPI docs (default: settings.env)

    Returns:
        Configured FastAPI application instance
    """
    settings = get_settings()
    env = env_override if env_override is not None else settings.env
    is_dev = env in ("development", "testing")

    app = FastAPI(
        title="Courier Delivery API",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if is_dev else None,
        redoc_url="/redoc" if is_dev else None,
        openapi_url="/openapi.json" if is_dev else None,
        description="OTP issuing/verification and document delivery over a chat transport.",
        openapi_tags=[
            {"name": "otp", "description": "Verification code issuing and checking"},
            {"name": "documents", "description": "Document (invoice) delivery"},
            {"name": "connection", "description": "Transport session administration"},
            {"name": "health", "description": "Service health"},
        ],
    )
    if coordinator is not None:
        app.state.coordinator = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=parse_cors_origins(settings.cors_allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Accept", "Content-Type", "Authorization"],
        max_age=3600,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    register_exception_handlers(app)

    app.include_router(otp_router)
    app.include_router(documents_router)
    app.include_router(connection_router)
    app.include_router(health_router)

    return app


app = create_app()
