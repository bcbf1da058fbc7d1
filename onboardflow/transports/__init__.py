"""Transport factory."""

from __future__ import annotations

import os
from typing import Optional

from ..config import OnboardingConfig
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    config: OnboardingConfig, backend: Optional[str] = None
) -> BaseTransport:
    """Build the transport selected by ``backend``, ``ONBOARDFLOW_TRANSPORT`` or config."""

    backend = (
        backend or os.getenv("ONBOARDFLOW_TRANSPORT") or config.transport.backend
    ).lower()

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
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
