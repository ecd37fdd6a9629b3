"""Job transports and the factory selecting one from configuration."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowkeeperConfig, load_config
from ..errors import ConfigError
from .base import BaseTransport
from .inmemory import InMemoryTransport

TRANSPORT_BACKENDS = ("inmemory", "redis")


def get_transport(
    backend: Optional[str] = None, config: Optional[FlowkeeperConfig] = None
) -> BaseTransport:
    """Build the transport jobs are published to.

    ``backend`` wins over the FLOWKEEPER_TRANSPORT env variable, which wins
    over ``transport.backend`` in the loaded configuration.
    """
    config = config or load_config()
    name = (backend or os.getenv("FLOWKEEPER_TRANSPORT") or config.transport.backend).lower()
    if name not in TRANSPORT_BACKENDS:
        raise ConfigError(
            f"Unsupported transport backend: {name} (expected one of {', '.join(TRANSPORT_BACKENDS)})"
        )

    if name == "redis":
        from .redis import RedisTransport

        return RedisTransport.from_config(config.transport.redis)
    return InMemoryTransport()


__all__ = ["BaseTransport", "InMemoryTransport", "TRANSPORT_BACKENDS", "get_transport"]
