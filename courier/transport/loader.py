"""Resolve the configured transport factory."""

import importlib

from loguru import logger

from courier.core.exceptions import ConfigurationError

from .base import Transport


def load_transport(path: str) -> Transport:
    """
    Import ``module:callable`` and call it to build the transport.

    Args:
        path: Factory path, e.g. ``courier.transport.console:create_transport``

    Returns:
        Transport instance

    Raises:
        ConfigurationError: If the factory cannot be imported or returns
            something that is not a Transport
    """
    module_name, _, attr = path.partition(":")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(
            f"Cannot load transport factory '{path}': {e}", details={"transport": path}
        ) from e

    transport = factory()
    if not isinstance(transport, Transport):
        raise ConfigurationError(
            f"Transport factory '{path}' returned {type(transport).__name__}, not a Transport"
        )
    logger.info(f"Transport loaded: {transport.name}")
    return transport
