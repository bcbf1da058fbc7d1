"""Append-only event log for onboarding workflows."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Tuple

from .contracts import ActorType, EventType, Stage, WorkflowStatus
from .persistence import WorkflowEvent, WorkflowInstance, WorkflowRepository

logger = logging.getLogger(__name__)


def make_event(
    instance: WorkflowInstance,
    event_type: EventType,
    payload: Optional[dict[str, Any]] = None,
    actor_type: ActorType = ActorType.PLATFORM,
    actor_id: Optional[str] = None,
    dedup_key: Optional[str] = None,
) -> WorkflowEvent:
    """Build an event stamped with the instance's current stage and status."""
    return WorkflowEvent(
        workflow_id=instance.id,
        event_type=event_type,
        payload=payload or {},
        actor_type=actor_type,
        actor_id=actor_id,
        stage=instance.stage,
        status=instance.status,
        dedup_key=dedup_key,
    )


def project_state(events: Iterable[WorkflowEvent]) -> Tuple[WorkflowStatus, Stage] | None:
    """Rebuild ``(status, stage)`` from the event log.

    Every event carries the state snapshot taken after it was applied, so the
    projection is the snapshot of the last event in append order.
    """
    ordered = sorted(events, key=lambda e: e.sequence or 0)
    for event in reversed(ordered):
        if event.status is not None and event.stage is not None:
            return event.status, event.stage
    return None


class EventLog:
    """Thin read/append facade over the repository's event store."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    async def append(
        self,
        instance: WorkflowInstance,
        event_type: EventType,
        payload: Optional[dict[str, Any]] = None,
        actor_type: ActorType = ActorType.PLATFORM,
        actor_id: Optional[str] = None,
        dedup_key: Optional[str] = None,
        fence: Optional[int] = None,
    ) -> WorkflowEvent | None:
        """Record an event that does not change workflow state.

        Returns ``None`` when an event with the same ``dedup_key`` exists.
        """
        event = make_event(instance, event_type, payload, actor_type, actor_id, dedup_key)
        stored = await self._repository.append_event(event, fence=fence)
        if stored is None:
            logger.debug(
                f"Duplicate event {event_type.value} ({dedup_key}) ignored for workflow={instance.id}"
            )
        return stored

    async def history(self, workflow_id: str) -> list[WorkflowEvent]:
        return await self._repository.list_events(workflow_id)

    async def has(self, workflow_id: str, event_type: EventType) -> bool:
        return any(e.event_type == event_type for e in await self.history(workflow_id))
