"""Long-running consumer that applies inbound signals to workflows."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Optional, Set

from .constants import SIGNAL_TOPIC
from .contracts import SignalKind, WorkflowSignal
from .engine import StageStateMachine
from .errors import (
    InvalidResponse,
    LeaseUnavailable,
    WorkflowNotFound,
)
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class WorkflowWorker:
    """Consume workflow signals and run one task per signal.

    Concurrency is bounded by ``max_concurrency``; per-workflow ordering is
    left to the workflow lease. A background loop runs the decision
    timeout sweep every ``sweep_interval`` seconds.
    """

    def __init__(
        self,
        engine: StageStateMachine,
        transport: BaseTransport,
        topic: str = SIGNAL_TOPIC,
        max_concurrency: Optional[int] = None,
        sweep_interval: Optional[float] = None,
    ) -> None:
        worker_conf = engine.config.worker
        self.engine = engine
        self._transport = transport
        self.topic = topic
        self.sweep_interval = sweep_interval or worker_conf.sweep_interval
        self._semaphore = asyncio.Semaphore(max_concurrency or worker_conf.max_concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self.processed = 0

    async def start(self, lifespan: Optional[float] = None, recover: bool = True) -> None:
        """Consume signals until ``lifespan`` elapses (forever when None)."""
        await self._transport.connect()
        if recover:
            await self.engine.gatekeeper.recover()
        sweeper = asyncio.create_task(self._sweep_loop())
        try:
            async for raw, signal in self._transport.subscribe(self.topic, lifespan=lifespan):
                await self._semaphore.acquire()
                task = asyncio.create_task(self._run(raw, signal))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await self._transport.disconnect()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.engine.gatekeeper.check_timeouts()
            except Exception:
                logger.exception("Timeout sweep failed")

    async def _run(self, raw: Any, signal: WorkflowSignal) -> None:
        try:
            await self.handle(signal)
        except LeaseUnavailable:
            logger.warning(f"Workflow {signal.workflow_id} busy; requeueing {signal.kind.value}")
            await self._transport.nack(raw, requeue=True)
        except (WorkflowNotFound, InvalidResponse, KeyError, ValueError) as exc:
            logger.error(f"Dropping {signal.kind.value} signal {signal.message_id}: {exc}")
            await self._transport.ack(raw)
        except Exception:
            logger.exception(f"Failed to handle signal {signal.message_id}")
            await self._transport.ack(raw)
        else:
            await self._transport.ack(raw)
        finally:
            self.processed += 1
            self._semaphore.release()

    async def handle(self, signal: WorkflowSignal) -> Any:
        """Apply one signal to its workflow."""
        engine = self.engine
        payload = signal.payload
        logger.info(f"Signal {signal.kind.value} for workflow {signal.workflow_id}")

        if signal.kind == SignalKind.START:
            await engine.start(
                int(payload["applicant_id"]),
                payload.get("applicant") or {},
                workflow_id=signal.workflow_id,
            )
            return await engine.drive(signal.workflow_id)
        if signal.kind == SignalKind.ADVANCE:
            return await engine.drive(signal.workflow_id)
        if signal.kind == SignalKind.DECISION:
            return await engine.gatekeeper.deliver_decision(
                signal.workflow_id,
                payload["kind"],
                payload.get("decision") or {},
                actor_id=signal.actor_id,
            )
        if signal.kind == SignalKind.QUOTE_CALLBACK:
            return await engine.gatekeeper.deliver_quote_callback(signal.workflow_id, payload)
        if signal.kind == SignalKind.TERMINATE:
            return await engine.terminate(
                signal.workflow_id, payload.get("reason", "kill_switch"), signal.actor_id
            )
        raise ValueError(f"Unhandled signal kind: {signal.kind}")
