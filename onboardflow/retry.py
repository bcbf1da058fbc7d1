"""Bounded retries for idempotent external calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .config import RetryConfig
from .errors import RetriesExhausted, TransientServiceError
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[str], Awaitable[T]]
AbortCheck = Callable[[], Awaitable[None]]
RetryCallback = Callable[[int, float, BaseException], Awaitable[None]]


def idempotency_key(workflow_id: str, stage: int, attempt_class: str) -> str:
    """Key shared by every attempt of one logical call."""
    return f"{workflow_id}:{stage}:{attempt_class}"


class RetryManager:
    """Run an operation, retrying only ``TransientServiceError``.

    The same idempotency key is passed to every attempt. Any other exception
    propagates on the first occurrence.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or RetryConfig()
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        return compute_backoff(
            attempt,
            base=self.config.backoff_base,
            jitter=self.config.jitter,
            max_delay=self.config.max_delay,
        )

    async def execute(
        self,
        op: Operation[T],
        idempotency_key: str,
        max_attempts: Optional[int] = None,
        backoff: Optional[Callable[[int], float]] = None,
        abort: Optional[AbortCheck] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> T:
        """Execute ``op(idempotency_key)`` with bounded retries.

        Args:
            op: Coroutine function receiving the idempotency key.
            idempotency_key: Stable key for this logical call.
            max_attempts: Total attempts, including the first.
            backoff: Delay for a given attempt number; defaults to exponential
                backoff with jitter.
            abort: Awaited before every attempt; raises to stop retrying
                (used for the kill switch).
            on_retry: Awaited with ``(attempt, delay, error)`` before sleeping.

        Raises:
            RetriesExhausted: every attempt failed with a transient error.
        """
        attempts = max_attempts or self.config.max_attempts
        delay_for = backoff or self.backoff
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            if abort is not None:
                await abort()
            try:
                return await op(idempotency_key)
            except TransientServiceError as exc:
                last_error = exc
                if attempt == attempts:
                    break
                delay = delay_for(attempt)
                logger.warning(
                    f"Attempt {attempt}/{attempts} for {idempotency_key} failed: {exc}; "
                    f"retrying in {delay:.2f}s"
                )
                if on_retry is not None:
                    await on_retry(attempt, delay, exc)
                await self._sleep(delay)

        logger.error(f"Retries exhausted for {idempotency_key} after {attempts} attempts")
        raise RetriesExhausted(idempotency_key, attempts, last_error)
