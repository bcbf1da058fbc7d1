"""Transport interface for workflow signals."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import WorkflowSignal

RawSignalT = TypeVar("RawSignalT")


class BaseTransport(Generic[RawSignalT], metaclass=abc.ABCMeta):
    """Abstract carrier for inbound workflow signals."""

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, signal: WorkflowSignal) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawSignalT, WorkflowSignal]]:
        """Yield ``(raw, signal)`` pairs from ``topic``.

        Args:
            topic: Queue to consume.
            lifespan: Stop after this many seconds. Runs forever when None.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_signal: RawSignalT) -> None:
        raise NotImplementedError

    async def nack(self, raw_signal: RawSignalT, requeue: bool = True) -> None:
        await self.ack(raw_signal)
