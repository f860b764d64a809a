"""Transport factory and initialization."""

from __future__ import annotations

from typing import Optional

from ..config import StepwiseConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> BaseTransport | None:
    """Factory function to get the configured transport.

    Returns None for the ``none`` backend, in which case every submission
    executes inline.
    """

    config = config or load_config()
    backend = (backend or config.transport.backend).lower()

    if backend == "none":
        return None
    if backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    elif backend == "rabbitmq":
        from .rabbitmq import RabbitMQTransport

        rabbit_conf = config.transport.rabbitmq
        return RabbitMQTransport(url=rabbit_conf.url, max_priority=rabbit_conf.max_priority)
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
