"""Suspension and resumption of workflows waiting on external decisions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, List, Literal, Optional

from .contracts import (
    ActorType,
    Decision,
    DecisionKind,
    EventType,
    Quote,
    WorkflowStatus,
    utcnow,
)
from .errors import (
    ConfigurationError,
    HumanTimeoutError,
    LeaseLost,
    LeaseUnavailable,
    WorkflowNotFound,
    WorkflowTerminated,
)
from .events import make_event
from .persistence import PendingDecision, WorkflowEvent, WorkflowInstance

if TYPE_CHECKING:
    from .engine import StageStateMachine

logger = logging.getLogger(__name__)


class DeliveryResult(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    DISCARDED = "discarded"
    REJECTED = "rejected"


def _fixed(event_type: EventType) -> Callable[[Dict[str, Any]], EventType]:
    return lambda payload: event_type


def _approval(approved: EventType) -> Callable[[Dict[str, Any]], EventType]:
    return lambda payload: approved if payload.get("approved") else EventType.HUMAN_OVERRIDE


def _quote_approval_event(payload: Dict[str, Any]) -> EventType:
    action = payload.get("action", "approve")
    if action == "adjust":
        return EventType.QUOTE_ADJUSTED
    if action == "request_update":
        return EventType.QUOTE_NEEDS_UPDATE
    if action == "approve":
        return EventType.QUOTE_APPROVED
    return EventType.HUMAN_OVERRIDE


@dataclass(frozen=True)
class DecisionPolicy:
    """How a decision kind is recorded and how its deadline is handled.

    ``accepts`` lists the kinds a pending request of this kind takes. A request
    that ``collects_many`` stays open until its stage handler is satisfied and
    takes one answer per delivered kind. ``override`` is the decision recorded
    when a paused request is resolved with ``continue``; kinds without one
    cannot be continued.
    """

    event_for: Callable[[Dict[str, Any]], EventType]
    on_timeout: Literal["escalate", "resume"] = "escalate"
    accepts: FrozenSet[DecisionKind] = field(default_factory=frozenset)
    collects_many: bool = False
    override: Optional[Dict[str, Any]] = None


DECISION_POLICIES: Dict[DecisionKind, DecisionPolicy] = {
    DecisionKind.DOCUMENT_UPLOAD: DecisionPolicy(_fixed(EventType.DOCUMENTS_RECEIVED)),
    DecisionKind.SANCTIONS_ADJUDICATION: DecisionPolicy(
        _fixed(EventType.HUMAN_OVERRIDE), override={"cleared": True}
    ),
    DecisionKind.RISK_REVIEW: DecisionPolicy(
        _fixed(EventType.RISK_MANAGER_REVIEW), override={"action": "approve"}
    ),
    DecisionKind.FINANCIAL_STATEMENTS: DecisionPolicy(
        _fixed(EventType.FINANCIAL_STATEMENTS_CONFIRMED), override={"confirmed": True}
    ),
    DecisionKind.QUOTE_CALLBACK: DecisionPolicy(_fixed(EventType.AGENT_CALLBACK)),
    DecisionKind.QUOTE_APPROVAL: DecisionPolicy(
        _quote_approval_event, override={"action": "approve"}
    ),
    DecisionKind.MANDATE_COLLECTION: DecisionPolicy(
        _fixed(EventType.DOCUMENTS_RECEIVED), on_timeout="resume"
    ),
    DecisionKind.PROCUREMENT_REVIEW: DecisionPolicy(
        _fixed(EventType.PROCUREMENT_DECISION), override={"approved": True}
    ),
    DecisionKind.CONTRACT_REVIEW: DecisionPolicy(
        _fixed(EventType.CONTRACT_DRAFT_REVIEWED), override={"action": "approve"}
    ),
    DecisionKind.CONTRACT_SIGNATURE: DecisionPolicy(
        _fixed(EventType.CONTRACT_SIGNED), override={"signed": True}
    ),
    DecisionKind.ABSA_FORM: DecisionPolicy(
        _fixed(EventType.ABSA_FORM_COMPLETED), override={"completed": True}
    ),
    DecisionKind.TWO_FACTOR_APPROVAL: DecisionPolicy(
        _fixed(EventType.HUMAN_OVERRIDE),
        accepts=frozenset(
            {DecisionKind.RISK_MANAGER_APPROVAL, DecisionKind.ACCOUNT_MANAGER_APPROVAL}
        ),
        collects_many=True,
    ),
    DecisionKind.RISK_MANAGER_APPROVAL: DecisionPolicy(
        _approval(EventType.TWO_FACTOR_APPROVAL_RISK_MANAGER)
    ),
    DecisionKind.ACCOUNT_MANAGER_APPROVAL: DecisionPolicy(
        _approval(EventType.TWO_FACTOR_APPROVAL_ACCOUNT_MANAGER)
    ),
    # answers a paused request of any other kind
    DecisionKind.TIMEOUT_RESOLUTION: DecisionPolicy(_fixed(EventType.HUMAN_OVERRIDE)),
}

_missing_policies = set(DecisionKind) - set(DECISION_POLICIES)
if _missing_policies:  # pragma: no cover - import-time guard
    raise ConfigurationError(
        f"No decision policy for kinds: {sorted(k.value for k in _missing_policies)}"
    )


def accepts(pending_kind: DecisionKind, delivered: DecisionKind) -> bool:
    policy = DECISION_POLICIES[pending_kind]
    return delivered in (policy.accepts or {pending_kind})


class HumanGatekeeper:
    """Parks workflows on pending decisions and wakes them on delivery."""

    def __init__(self, engine: "StageStateMachine") -> None:
        self.engine = engine

    @property
    def repository(self):
        return self.engine.repository

    # ------------------------------------------------------------------
    async def request_decision(
        self,
        instance: WorkflowInstance,
        fence: int,
        kind: DecisionKind,
        deadline: Optional[datetime],
        event_type: EventType,
        payload: Optional[Dict[str, Any]] = None,
    ) -> List[WorkflowEvent]:
        """Persist a pending request and mark the instance ``awaiting_human``.

        Returns the appended events; reopening a ``collects_many`` request
        appends none.
        """
        pending = instance.pending
        if (
            pending is not None
            and pending.kind == kind
            and pending.stage == instance.stage
            and instance.status == WorkflowStatus.AWAITING_HUMAN
            and DECISION_POLICIES[kind].collects_many
        ):
            pending.answered = False
            instance.updated_at = utcnow()
            await self.repository.commit(instance, fence, [])
            logger.info(f"Workflow {instance.id} still waiting on {kind.value}")
            return []

        instance.status = WorkflowStatus.AWAITING_HUMAN
        instance.pending = PendingDecision(kind=kind, stage=instance.stage, deadline=deadline)
        instance.updated_at = utcnow()
        event = make_event(instance, event_type, payload)
        stored = await self.repository.commit(instance, fence, [event])
        logger.info(
            f"Workflow {instance.id} awaiting {kind.value} at stage {instance.stage.label}"
        )
        return stored

    # ------------------------------------------------------------------
    @staticmethod
    def _dedup_key(kind: DecisionKind, pending: PendingDecision) -> str:
        if kind != DecisionKind.TIMEOUT_RESOLUTION and DECISION_POLICIES[pending.kind].collects_many:
            return f"decision:{kind.value}"
        return f"decision:{kind.value}:{pending.stage.value}:{pending.requested_at.isoformat()}"

    async def deliver_decision(
        self,
        workflow_id: str,
        kind: DecisionKind | str,
        payload: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        actor_type: ActorType = ActorType.USER,
        dedup_key: Optional[str] = None,
    ) -> DeliveryResult:
        """Record a decision and resume the workflow that asked for it.

        A duplicate delivery still resumes a workflow whose recorded answer
        was never acted on.
        """
        decision = Decision(
            kind=DecisionKind(kind),
            payload=payload or {},
            actor_type=actor_type,
            actor_id=actor_id,
            dedup_key=dedup_key,
        )
        result = await self._record(workflow_id, decision)
        if result in (DeliveryResult.ACCEPTED, DeliveryResult.DUPLICATE):
            instance = await self.repository.get_workflow(workflow_id)
            if instance is not None and self.needs_resume(instance):
                await self.engine.resume(workflow_id, decision)
        return result

    @staticmethod
    def needs_resume(instance: WorkflowInstance) -> bool:
        """True when a recorded answer is waiting for its stage to run."""
        return (
            instance.status == WorkflowStatus.AWAITING_HUMAN
            and instance.pending is not None
            and instance.pending.answered
        )

    async def _record(self, workflow_id: str, decision: Decision) -> DeliveryResult:
        engine = self.engine
        kind = decision.kind
        async with engine.leases.lease(workflow_id) as lease:
            if lease.fence is None:
                logger.info(f"Discarding {kind.value} for terminated workflow {workflow_id}")
                return DeliveryResult.DISCARDED
            instance = await self.repository.get_workflow(workflow_id)
            if instance is None:
                raise WorkflowNotFound(workflow_id)
            if instance.status.is_terminal:
                logger.info(
                    f"Discarding {kind.value} for {instance.status.value} workflow {workflow_id}"
                )
                return DeliveryResult.DISCARDED

            history = await self.repository.list_events(workflow_id)
            pending = instance.pending
            resolving = (
                kind == DecisionKind.TIMEOUT_RESOLUTION
                and instance.status == WorkflowStatus.PAUSED
                and pending is not None
            )
            if not resolving and (pending is None or not accepts(pending.kind, kind)):
                prefix = f"decision:{kind.value}"
                seen = any(
                    e.dedup_key
                    and (e.dedup_key == decision.dedup_key or e.dedup_key.startswith(prefix))
                    for e in history
                )
                if seen:
                    return DeliveryResult.DUPLICATE
                logger.warning(
                    f"Workflow {workflow_id} is not waiting for {kind.value} "
                    f"(pending={pending.kind.value if pending else None})"
                )
                return DeliveryResult.REJECTED
            if pending.answered and not DECISION_POLICIES[pending.kind].collects_many:
                return DeliveryResult.DUPLICATE

            key = decision.dedup_key or self._dedup_key(kind, pending)
            if any(e.dedup_key == key for e in history):
                return DeliveryResult.DUPLICATE

            if resolving:
                event = self._resolve_pause(instance, decision, key)
                if event is None:
                    return DeliveryResult.REJECTED
            else:
                instance.context.decisions[kind.value] = {
                    **decision.payload,
                    "actorId": decision.actor_id,
                }
                pending.answered = True
                if instance.status == WorkflowStatus.PAUSED:
                    logger.info(f"Workflow {workflow_id} unpaused by {kind.value}")
                    instance.status = WorkflowStatus.AWAITING_HUMAN
                    pending.escalated = False
                instance.updated_at = utcnow()
                event = make_event(
                    instance,
                    DECISION_POLICIES[kind].event_for(decision.payload),
                    {"kind": kind.value, **decision.payload},
                    decision.actor_type,
                    decision.actor_id,
                    key,
                )
            stored = await self.repository.commit(instance, lease.fence, [event])
            for appended in stored:
                engine.dispatcher.emit_for(appended, instance)

        await engine.dispatcher.flush()
        logger.info(f"Recorded {kind.value} for workflow {workflow_id}")
        return DeliveryResult.ACCEPTED

    def _resolve_pause(
        self, instance: WorkflowInstance, decision: Decision, key: str
    ) -> Optional[WorkflowEvent]:
        """Apply a ``timeout_resolution`` to a paused request.

        ``cancel`` fails the workflow. ``continue`` records the paused kind's
        override decision. A supplied ``decision`` is recorded as the answer
        to the paused request. ``retry`` reopens the request with a fresh
        deadline. Returns ``None`` when the resolution cannot be applied.
        """
        pending = instance.pending
        action = decision.payload.get("action", "retry")
        supplied = decision.payload.get("decision")
        now = utcnow()
        if action == "cancel":
            instance.status = WorkflowStatus.FAILED
            instance.failure_reason = "cancelled_after_timeout"
            instance.pending = None
        elif action == "continue" or isinstance(supplied, dict):
            answer = (
                supplied if isinstance(supplied, dict) else DECISION_POLICIES[pending.kind].override
            )
            if answer is None:
                logger.warning(
                    f"Workflow {instance.id}: paused {pending.kind.value} cannot be continued"
                )
                return None
            instance.context.decisions[pending.kind.value] = {
                **answer,
                "actorId": decision.actor_id,
                "humanOverride": True,
            }
            pending.answered = True
            pending.escalated = False
            instance.status = WorkflowStatus.AWAITING_HUMAN
        elif action == "retry":
            instance.status = WorkflowStatus.AWAITING_HUMAN
            instance.pending = PendingDecision(
                kind=pending.kind,
                stage=pending.stage,
                requested_at=now,
                deadline=now + timedelta(seconds=self.engine.config.timeouts.review),
            )
        else:
            logger.warning(f"Workflow {instance.id}: unknown timeout resolution {action!r}")
            return None

        instance.updated_at = now
        logger.info(f"Workflow {instance.id}: paused {pending.kind.value} resolved with {action}")
        return make_event(
            instance,
            EventType.HUMAN_OVERRIDE,
            {
                "kind": DecisionKind.TIMEOUT_RESOLUTION.value,
                "action": action,
                "resolves": pending.kind.value,
            },
            decision.actor_type,
            decision.actor_id,
            key,
        )

    async def deliver_quote_callback(
        self, workflow_id: str, payload: Dict[str, Any]
    ) -> DeliveryResult:
        """Deliver an asynchronous quote.

        Raises:
            InvalidResponse: ``quoteId`` or ``amount`` is missing.
        """
        quote = Quote.from_payload(payload)
        return await self.deliver_decision(
            workflow_id,
            DecisionKind.QUOTE_CALLBACK,
            quote.model_dump(by_alias=True),
            actor_type=ActorType.AGENT,
            actor_id="quote-service",
            dedup_key=f"quote_callback:{quote.quote_id}",
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _check_deadline(instance: WorkflowInstance, now: datetime) -> None:
        pending = instance.pending
        if (
            instance.status in (WorkflowStatus.AWAITING_HUMAN, WorkflowStatus.PAUSED)
            and pending is not None
            and not pending.answered
            and pending.deadline is not None
            and pending.deadline <= now
        ):
            raise HumanTimeoutError(instance.id, pending.kind.value)

    async def check_timeouts(self, now: Optional[datetime] = None) -> List[str]:
        """Apply the timeout policy to every expired pending request.

        Also resumes workflows whose answer was recorded but never acted on.
        A workflow that is terminated or busy elsewhere is skipped and picked
        up by a later sweep. Returns the ids of the workflows handled.
        """
        now = now or utcnow()
        handled: List[str] = []
        waiting = await self.repository.list_workflows(status=WorkflowStatus.AWAITING_HUMAN)
        waiting += await self.repository.list_workflows(status=WorkflowStatus.PAUSED)
        for instance in waiting:
            try:
                if self.needs_resume(instance):
                    logger.info(f"Resuming workflow {instance.id} with an unhandled answer")
                    await self.engine.resume(instance.id)
                    handled.append(instance.id)
                    continue
                try:
                    self._check_deadline(instance, now)
                except HumanTimeoutError as exc:
                    logger.warning(str(exc))
                    if await self._expire(instance.id, now):
                        handled.append(instance.id)
            except (LeaseLost, LeaseUnavailable, WorkflowTerminated) as exc:
                logger.info(f"Skipping workflow {instance.id} in timeout sweep: {exc}")
        return handled

    async def _expire(self, workflow_id: str, now: datetime) -> bool:
        """Apply the timeout policy to one expired request.

        A first expiry either resumes the stage (``resume`` policy) or pauses
        the workflow and escalates to management. A paused request that
        expires again fails the workflow.
        """
        engine = self.engine
        resume = False
        async with engine.leases.lease(workflow_id) as lease:
            if lease.fence is None:
                return False
            instance = await self.repository.get_workflow(workflow_id)
            try:
                self._check_deadline(instance, now)
            except HumanTimeoutError:
                pass
            else:
                return False

            pending = instance.pending
            policy = DECISION_POLICIES[pending.kind]
            timeout_payload = {"kind": pending.kind.value, "deadline": pending.deadline.isoformat()}
            dedup = f"timeout:{pending.kind.value}:{pending.requested_at.isoformat()}"
            instance.updated_at = now
            if pending.escalated:
                instance.status = WorkflowStatus.FAILED
                instance.failure_reason = "timeout"
                instance.pending = None
                events = [
                    make_event(
                        instance,
                        EventType.TIMEOUT,
                        {**timeout_payload, "action": "fail"},
                        dedup_key=f"{dedup}:paused",
                    )
                ]
            elif policy.on_timeout == "resume":
                instance.context.decisions[pending.kind.value] = {"timeout": True}
                pending.answered = True
                events = [
                    make_event(
                        instance,
                        EventType.TIMEOUT,
                        {**timeout_payload, "action": "resume"},
                        dedup_key=dedup,
                    )
                ]
                resume = True
            else:
                resume_by = now + timedelta(seconds=engine.config.timeouts.pause)
                instance.status = WorkflowStatus.PAUSED
                pending.escalated = True
                pending.deadline = resume_by
                events = [
                    make_event(
                        instance,
                        EventType.TIMEOUT,
                        {**timeout_payload, "action": "pause", "resumeBy": resume_by.isoformat()},
                        dedup_key=dedup,
                    ),
                    engine.escalation_event(
                        instance,
                        "human_timeout",
                        f"No {pending.kind.value} decision before the deadline; workflow paused",
                        dedup_key=f"escalation:{dedup}",
                    ),
                ]
            stored = await self.repository.commit(instance, lease.fence, events)
            for appended in stored:
                engine.dispatcher.emit_for(appended, instance)

        await engine.dispatcher.flush()
        if resume:
            await engine.resume(workflow_id)
        return True

    # ------------------------------------------------------------------
    async def recover(self) -> List[str]:
        """Resume workflows whose decision was recorded but never acted on.

        Also picks up ``running`` and ``pending`` instances left behind by a
        crashed process.
        """
        resumed: List[str] = []
        for instance in await self.repository.list_workflows():
            stalled = instance.status in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING)
            if stalled or self.needs_resume(instance):
                logger.info(f"Recovering workflow {instance.id} ({instance.status.value})")
                await self.engine.drive(instance.id)
                resumed.append(instance.id)
        return resumed
