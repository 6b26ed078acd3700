#!/usr/bin/env python3
"""
Courier - connection-resilient OTP and document delivery.

Main entry point for the application.
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from courier.core.config import get_settings
from courier.core.exceptions import ConfigurationError
from courier.core.logger import setup_structured_logging
from courier.services.connection import ConnectionState, SupervisorEvent, SupervisorEventType
from courier.services.delivery import DeliveryCoordinator


async def run_web_mode(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """
    Run the HTTP API; the app lifespan owns the coordinator.

    Args:
        host: Bind address (default: settings.api_host)
        port: Bind port (default: settings.api_port)
    """
    logger = logging.getLogger(__name__)
    logger.info("Starting courier API...")

    import uvicorn

    from web.app import app

    settings = get_settings()
    config_uvicorn = uvicorn.Config(
        app,
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.log_level.lower(),
    )
    server = uvicorn.Server(config_uvicorn)
    await server.serve()
    logger.info("Web mode shutdown complete")


async def run_pair_mode(timeout: float) -> int:
    """
    Connect once from the terminal and print pairing codes until Ready.

    Args:
        timeout: Seconds to wait for the session to become Ready

    Returns:
        Process exit code
    """
    logger = logging.getLogger(__name__)
    coordinator = DeliveryCoordinator.from_settings()

    def print_pairing_code(event: SupervisorEvent) -> None:
        if event.type is SupervisorEventType.PAIRING_CODE:
            print(f"\nPairing code: {event.pairing_code}\n", flush=True)

    coordinator.supervisor.on_event(print_pairing_code)
    try:
        await coordinator.start()
        await coordinator.supervisor.wait_for_state(ConnectionState.READY, timeout=timeout)
        logger.info("Transport paired and ready; credential stored")
        return 0
    except asyncio.TimeoutError:
        logger.error(f"Transport did not become ready within {timeout:.0f}s")
        return 1
    finally:
        await coordinator.stop()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Courier - OTP and document delivery")
    parser.add_argument(
        "--mode",
        choices=["web", "pair"],
        default="web",
        help="Run mode: web (HTTP API, default), pair (interactive device pairing)",
    )
    parser.add_argument("--host", default=None, help="Bind address for web mode")
    parser.add_argument("--port", type=int, default=None, help="Bind port for web mode")
    parser.add_argument(
        "--pair-timeout", type=float, default=300.0, help="Seconds to wait in pair mode"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: LOG_LEVEL setting)",
    )

    args = parser.parse_args()

    try:
        settings = get_settings()
    except Exception as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    setup_structured_logging(args.log_level or settings.log_level, json_format=settings.log_json)
    logger = logging.getLogger(__name__)

    try:
        if args.mode == "pair":
            sys.exit(asyncio.run(run_pair_mode(args.pair_timeout)))
        asyncio.run(run_web_mode(args.host, args.port))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Stopped by user")


if __name__ == "__main__":
    main()
