"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..contracts import WorkflowStatus
from ..errors import LeaseLost, WorkflowNotFound, WorkflowTerminated
from .models import Notification, WorkflowEvent, WorkflowInstance
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowInstance] = {}
        self._events: Dict[str, List[WorkflowEvent]] = {}
        self._notifications: List[Notification] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def _require(self, workflow_id: str) -> WorkflowInstance:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            raise WorkflowNotFound(workflow_id)
        return wf

    def _append(self, event: WorkflowEvent) -> WorkflowEvent | None:
        log = self._events.setdefault(event.workflow_id, [])
        if event.dedup_key and any(e.dedup_key == event.dedup_key for e in log):
            return None
        stored = event.model_copy(update={"sequence": len(log) + 1})
        log.append(stored)
        return stored

    # ------------------------------------------------------------------
    async def create_workflow(
        self, instance: WorkflowInstance, event: WorkflowEvent
    ) -> WorkflowInstance:
        async with self._lock:
            existing = self._workflows.get(instance.id)
            if existing is not None:
                return existing.model_copy(deep=True)
            self._workflows[instance.id] = instance.model_copy(deep=True)
            self._append(event)
            return instance.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self,
        applicant_id: Optional[int] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> list[WorkflowInstance]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if (applicant_id is None or wf.applicant_id == applicant_id)
            and (status is None or wf.status == status)
        ]

    async def acquire_lease(
        self,
        workflow_id: str,
        owner: str,
        ttl: float,
        now: datetime,
        force: bool = False,
    ) -> int | None:
        async with self._lock:
            wf = self._require(workflow_id)
            if wf.status == WorkflowStatus.TERMINATED:
                return None
            held = (
                wf.lease_owner is not None
                and wf.lease_owner != owner
                and wf.lease_expires_at is not None
                and wf.lease_expires_at > now
            )
            if held and not force:
                return None
            wf.fence += 1
            wf.lease_owner = owner
            wf.lease_expires_at = now + timedelta(seconds=ttl)
            return wf.fence

    async def release_lease(self, workflow_id: str, owner: str, fence: int) -> None:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if wf is None or wf.status == WorkflowStatus.TERMINATED:
                return
            if wf.fence == fence and wf.lease_owner == owner:
                wf.lease_owner = None
                wf.lease_expires_at = None

    async def commit(
        self, instance: WorkflowInstance, fence: int, events: list[WorkflowEvent]
    ) -> list[WorkflowEvent]:
        async with self._lock:
            wf = self._require(instance.id)
            if wf.status == WorkflowStatus.TERMINATED:
                raise WorkflowTerminated(instance.id)
            if wf.fence != fence:
                raise LeaseLost(f"Workflow {instance.id}: fence {fence} != {wf.fence}")
            wf.status = instance.status
            wf.stage = instance.stage
            wf.context = instance.context.model_copy(deep=True)
            wf.pending = instance.pending.model_copy() if instance.pending else None
            wf.failure_reason = instance.failure_reason
            wf.updated_at = instance.updated_at
            if wf.status == WorkflowStatus.TERMINATED:
                wf.lease_owner = None
                wf.lease_expires_at = None
            appended = []
            for event in events:
                stored = self._append(event)
                if stored is not None:
                    appended.append(stored)
            return appended

    async def append_event(
        self, event: WorkflowEvent, fence: Optional[int] = None
    ) -> WorkflowEvent | None:
        async with self._lock:
            wf = self._require(event.workflow_id)
            if wf.status == WorkflowStatus.TERMINATED:
                raise WorkflowTerminated(event.workflow_id)
            if fence is not None and wf.fence != fence:
                raise LeaseLost(f"Workflow {event.workflow_id}: fence {fence} != {wf.fence}")
            return self._append(event)

    async def list_events(self, workflow_id: str) -> list[WorkflowEvent]:
        return list(self._events.get(workflow_id, []))

    async def add_notification(self, notification: Notification) -> Notification:
        async with self._lock:
            stored = notification.model_copy(
                update={"id": len(self._notifications) + 1}
            )
            self._notifications.append(stored)
            return stored.model_copy()

    async def list_notifications(
        self, applicant_id: int, unread_only: bool = False
    ) -> list[Notification]:
        return [
            n.model_copy()
            for n in self._notifications
            if n.applicant_id == applicant_id and not (unread_only and n.read)
        ]

    async def mark_notification_read(self, notification_id: int) -> bool:
        async with self._lock:
            for n in self._notifications:
                if n.id == notification_id:
                    n.read = True
                    return True
            return False
