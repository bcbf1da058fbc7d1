"""Exclusive per-workflow leases with fencing tokens."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Dict, Optional

from .contracts import WorkflowStatus, utcnow
from .errors import LeaseUnavailable
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)


class LeaseManager:
    """Hands out leases for workflow ids.

    The repository is the source of truth for ownership across processes. A
    local ``asyncio.Lock`` per workflow keeps tasks in the same process from
    polling against each other.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        ttl: float = 30.0,
        wait: float = 10.0,
        poll_interval: float = 0.05,
        owner_prefix: Optional[str] = None,
    ) -> None:
        self.repository = repository
        self.ttl = ttl
        self.wait = wait
        self.poll_interval = poll_interval
        self.owner_prefix = owner_prefix or f"worker-{uuid.uuid4().hex[:8]}"
        self._local: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lease(self, workflow_id: str) -> "WorkflowLease":
        return WorkflowLease(self, workflow_id)

    async def preempt(self, workflow_id: str) -> tuple[str, Optional[int]]:
        """Take the lease regardless of the current holder.

        Returns the owner name and the new fence, or ``None`` as the fence if
        the workflow is already terminated.
        """
        owner = f"{self.owner_prefix}:preempt:{uuid.uuid4().hex[:8]}"
        fence = await self.repository.acquire_lease(
            workflow_id, owner, self.ttl, utcnow(), force=True
        )
        logger.info(f"Lease on workflow={workflow_id} preempted by {owner} (fence={fence})")
        return owner, fence


class WorkflowLease:
    """Async context manager holding one workflow lease.

    ``fence`` is ``None`` inside the block when the workflow is terminated;
    callers must then skip all work.
    """

    def __init__(self, manager: LeaseManager, workflow_id: str) -> None:
        self.manager = manager
        self.workflow_id = workflow_id
        self.owner = f"{manager.owner_prefix}:{uuid.uuid4().hex[:8]}"
        self.fence: Optional[int] = None
        self._lock = manager._local[workflow_id]

    async def __aenter__(self) -> "WorkflowLease":
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.manager.wait)
        except asyncio.TimeoutError as exc:
            raise LeaseUnavailable(self.workflow_id) from exc

        try:
            self.fence = await self._acquire()
        except BaseException:
            self._lock.release()
            raise
        return self

    async def _acquire(self) -> Optional[int]:
        repo = self.manager.repository
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.manager.wait
        while True:
            fence = await repo.acquire_lease(
                self.workflow_id, self.owner, self.manager.ttl, utcnow()
            )
            if fence is not None:
                return fence
            instance = await repo.get_workflow(self.workflow_id)
            if instance is not None and instance.status == WorkflowStatus.TERMINATED:
                return None
            if loop.time() >= deadline:
                raise LeaseUnavailable(self.workflow_id)
            await asyncio.sleep(self.manager.poll_interval)

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if self.fence is not None:
                await self.manager.repository.release_lease(
                    self.workflow_id, self.owner, self.fence
                )
        finally:
            self._lock.release()
