"""Redis list transport for cross-process signal delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from ..contracts import WorkflowSignal
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Signals are LPUSHed onto ``onboardflow:<topic>`` and consumed with BRPOP."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = client

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"onboardflow:{topic}"

    async def connect(self) -> None:
        if self._redis is not None:
            return
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, signal: WorkflowSignal) -> None:
        await self.connect()
        await self._redis.lpush(self.queue_name(topic), signal.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], WorkflowSignal]]:
        await self.connect()
        queue = self.queue_name(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            result = await self._redis.brpop(queue, timeout=1)
            if not result:
                continue
            _, raw = result
            try:
                signal = WorkflowSignal.from_json(raw)
            except PydanticValidationError as exc:
                logger.error(f"Dropping malformed signal on {queue}: {exc}")
                continue
            yield (queue, raw), signal

    async def ack(self, raw_signal: Tuple[str, str]) -> None:
        """BRPOP already removed the signal."""

    async def nack(self, raw_signal: Tuple[str, str], requeue: bool = True) -> None:
        if requeue and self._redis is not None:
            queue, raw = raw_signal
            await self._redis.rpush(queue, raw)
