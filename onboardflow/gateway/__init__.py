"""External gateway factory."""

from __future__ import annotations

from ..config import OnboardingConfig
from .base import ExternalGateway
from .stub import StubGateway


def get_gateway(config: OnboardingConfig) -> ExternalGateway:
    backend = config.gateway.backend
    if backend == "stub":
        return StubGateway()
    elif backend == "http":
        from .http import HttpGateway

        return HttpGateway(config.gateway)
    else:
        raise ValueError(f"Unsupported gateway backend: {backend}")


__all__ = ["ExternalGateway", "StubGateway", "get_gateway"]
