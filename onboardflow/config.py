from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_LEASE_TTL,
    DEFAULT_LEASE_WAIT,
    DEFAULT_MANDATE_RETRY_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_MANDATE_RETRIES,
    DEFAULT_OVERLIMIT_THRESHOLD,
    DEFAULT_PAUSE_TIMEOUT,
    DEFAULT_REVIEW_TIMEOUT,
    DEFAULT_STAGE_TIMEOUT,
)
from .errors import ConfigurationError


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class ServiceEndpoint(BaseModel):
    """One external service reached by the gateway."""

    url: Optional[str] = None
    timeout: float = 10.0


class GatewayConfig(BaseModel):
    """External capability services.

    The ``stub`` backend answers every call locally and is meant for
    development and tests.
    """

    backend: Literal["http", "stub"] = "stub"
    api_key: Optional[str] = None
    callback_base_url: str = "http://localhost:3000"
    quote: ServiceEndpoint = ServiceEndpoint()
    mandate: ServiceEndpoint = ServiceEndpoint()
    sanctions: ServiceEndpoint = ServiceEndpoint()
    procurement: ServiceEndpoint = ServiceEndpoint()


class RetryConfig(BaseModel):
    """Backoff policy for gateway calls."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = 1.5
    jitter: float = 0.5
    max_delay: float = 30.0


class TimeoutConfig(BaseModel):
    """Decision deadlines in seconds."""

    stage: float = DEFAULT_STAGE_TIMEOUT
    review: float = DEFAULT_REVIEW_TIMEOUT
    mandate_retry: float = DEFAULT_MANDATE_RETRY_TIMEOUT
    pause: float = DEFAULT_PAUSE_TIMEOUT


class WorkerConfig(BaseModel):
    max_concurrency: int = 8
    sweep_interval: float = 60.0


class OnboardingConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    gateway: GatewayConfig = GatewayConfig()
    retry: RetryConfig = RetryConfig()
    timeouts: TimeoutConfig = TimeoutConfig()
    worker: WorkerConfig = WorkerConfig()
    max_mandate_retries: int = DEFAULT_MAX_MANDATE_RETRIES
    overlimit_threshold: float = DEFAULT_OVERLIMIT_THRESHOLD
    lease_ttl: float = DEFAULT_LEASE_TTL
    lease_wait: float = DEFAULT_LEASE_WAIT

    def validate_for_startup(self) -> "OnboardingConfig":
        """Fail fast on settings the process cannot run without.

        Raises:
            ConfigurationError: a required endpoint is missing.
        """
        if self.gateway.backend == "http":
            missing = [
                name
                for name in ("quote", "mandate", "sanctions", "procurement")
                if not getattr(self.gateway, name).url
            ]
            if missing:
                raise ConfigurationError(
                    f"Missing gateway endpoint(s) for http backend: {', '.join(missing)}"
                )
        if self.retry.max_attempts < 1:
            raise ConfigurationError("retry.max_attempts must be at least 1")
        if self.max_mandate_retries < 1:
            raise ConfigurationError("max_mandate_retries must be at least 1")
        return self


def load_config(path: Optional[str] = None) -> OnboardingConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to ONBOARDFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("ONBOARDFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = OnboardingConfig(**data)
    else:
        config = OnboardingConfig()

    env_db_url = os.getenv("ONBOARDFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
