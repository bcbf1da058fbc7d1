"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import WorkflowStatus
from .models import Notification, WorkflowEvent, WorkflowInstance


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Writes to a terminated workflow raise ``WorkflowTerminated``. Writes that
    carry a stale fencing token raise ``LeaseLost``.
    """

    async def create_workflow(
        self, instance: WorkflowInstance, event: WorkflowEvent
    ) -> WorkflowInstance:
        """Persist a new instance with its creation event.

        Returns the stored instance; creating an existing id is a no-op.
        """

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        """Retrieve the workflow instance by id."""

    async def list_workflows(
        self,
        applicant_id: Optional[int] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> list[WorkflowInstance]:
        """Return persisted workflows, optionally filtered."""

    async def acquire_lease(
        self,
        workflow_id: str,
        owner: str,
        ttl: float,
        now: datetime,
        force: bool = False,
    ) -> int | None:
        """Take the exclusive lease and return the new fencing token.

        Returns ``None`` when another owner holds an unexpired lease (unless
        ``force``) or when the workflow is terminated.
        """

    async def release_lease(self, workflow_id: str, owner: str, fence: int) -> None:
        """Drop the lease if ``fence`` is still current."""

    async def commit(
        self, instance: WorkflowInstance, fence: int, events: list[WorkflowEvent]
    ) -> list[WorkflowEvent]:
        """Atomically persist instance state together with its events.

        Events whose ``dedup_key`` was already recorded are skipped. Returns
        the events actually appended, with sequences assigned.
        """

    async def append_event(
        self, event: WorkflowEvent, fence: Optional[int] = None
    ) -> WorkflowEvent | None:
        """Append one event without a state change. ``None`` on duplicates."""

    async def list_events(self, workflow_id: str) -> list[WorkflowEvent]:
        """Return the event log of a workflow in append order."""

    async def add_notification(self, notification: Notification) -> Notification:
        """Persist a notification."""

    async def list_notifications(
        self, applicant_id: int, unread_only: bool = False
    ) -> list[Notification]:
        """Return notifications for an applicant, newest last."""

    async def mark_notification_read(self, notification_id: int) -> bool:
        """Flag a notification as read. ``False`` if it does not exist."""
