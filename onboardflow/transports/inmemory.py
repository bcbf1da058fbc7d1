"""In-process signal queue."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import WorkflowSignal
from .base import BaseTransport

# (topic, serialized signal, signal)
RawSignal = Tuple[str, str, WorkflowSignal]


class InMemoryTransport(BaseTransport[RawSignal]):
    """Queue signals in local memory; used by tests and single-process runs."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawSignal]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def publish(self, topic: str, signal: WorkflowSignal) -> None:
        async with self._lock:
            self._queues[topic].append((topic, signal.to_json(), signal))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawSignal, WorkflowSignal]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            async with self._lock:
                raw = self._queues[topic].popleft() if self._queues[topic] else None
            if raw is not None:
                yield raw, raw[2]
                continue
            await asyncio.sleep(self._poll_interval)

    async def ack(self, raw_signal: RawSignal) -> None:
        pass

    async def nack(self, raw_signal: RawSignal, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_signal[0]].append(raw_signal)
