"""Stage state machine driving onboarding workflows."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .checks import DefaultChecks, OnboardingChecks
from .config import OnboardingConfig
from .contracts import (
    LOOP_EVENTS,
    ActorType,
    Decision,
    EventType,
    Stage,
    WorkflowStatus,
    utcnow,
)
from .errors import (
    InvariantViolation,
    KillSwitchSignal,
    LeaseLost,
    PermanentServiceError,
    RetriesExhausted,
    ValidationError,
    WorkflowNotFound,
    WorkflowTerminated,
)
from .events import EventLog, make_event
from .gatekeeper import HumanGatekeeper
from .gateway import ExternalGateway, get_gateway
from .lease import LeaseManager
from .notifications import NotificationDispatcher
from .persistence import (
    WorkflowContext,
    WorkflowEvent,
    WorkflowInstance,
    WorkflowRepository,
    get_repository,
)
from .retry import RetryManager, idempotency_key
from .stages import (
    STAGE_HANDLERS,
    Advance,
    Await,
    Complete,
    Fail,
    StageContext,
    StageOutcome,
    Terminate,
)

logger = logging.getLogger(__name__)

# upper bound on steps per drive() call; a workflow never needs more
MAX_STEPS = 200


class StageStateMachine:
    """Advances workflow instances one stage at a time.

    Every transition commits the new state together with exactly one event
    under the workflow lease. Suspension for a decision goes through the
    :class:`HumanGatekeeper` and releases the lease.
    """

    def __init__(
        self,
        config: OnboardingConfig,
        repository: WorkflowRepository,
        gateway: ExternalGateway,
        checks: Optional[OnboardingChecks] = None,
        retry: Optional[RetryManager] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        leases: Optional[LeaseManager] = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.gateway = gateway
        self.checks = checks or DefaultChecks()
        self.retry = retry or RetryManager(config.retry)
        self.dispatcher = dispatcher or NotificationDispatcher(repository)
        self.leases = leases or LeaseManager(
            repository, ttl=config.lease_ttl, wait=config.lease_wait
        )
        self.events = EventLog(repository)
        self.gatekeeper = HumanGatekeeper(self)

    # ------------------------------------------------------------------
    # Entry points

    async def start(
        self,
        applicant_id: int,
        applicant: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> WorkflowInstance:
        """Create a workflow at stage 1. Repeating a ``workflow_id`` is a no-op."""
        workflow_id = workflow_id or f"wf-{uuid.uuid4().hex[:12]}"
        existing = await self.repository.get_workflow(workflow_id)
        if existing is not None:
            logger.info(f"Workflow {workflow_id} already exists; ignoring start")
            return existing

        instance = WorkflowInstance(
            id=workflow_id,
            applicant_id=applicant_id,
            context=WorkflowContext(applicant=applicant or {}),
        )
        event = make_event(
            instance,
            EventType.WORKFLOW_STARTED,
            {"applicantId": applicant_id},
            dedup_key="workflow_started",
        )
        stored = await self.repository.create_workflow(instance, event)
        self.dispatcher.emit_for(event, stored)
        await self.dispatcher.flush()
        logger.info(f"Started workflow {workflow_id} for applicant {applicant_id}")
        return stored

    async def advance(self, workflow_id: str) -> Optional[WorkflowInstance]:
        """Run the current stage once.

        Returns the instance after the step, the unchanged instance when it
        is suspended or finished, or ``None`` when the step was discarded
        because the workflow was terminated or the lease was lost.
        """
        async with self.leases.lease(workflow_id) as lease:
            if lease.fence is None:
                logger.info(f"Workflow {workflow_id} is terminated; not advancing")
                return None
            instance = await self.repository.get_workflow(workflow_id)
            if instance is None:
                raise WorkflowNotFound(workflow_id)
            if not self._runnable(instance):
                return instance
            return await self._step(instance, lease.fence)

    async def drive(self, workflow_id: str) -> Optional[WorkflowInstance]:
        """Advance until the workflow suspends or reaches a terminal status."""
        instance: Optional[WorkflowInstance] = None
        for _ in range(MAX_STEPS):
            instance = await self.advance(workflow_id)
            if instance is None or not self._runnable(instance):
                return instance
        raise InvariantViolation(f"Workflow {workflow_id} did not settle after {MAX_STEPS} steps")

    async def resume(
        self, workflow_id: str, decision: Optional[Decision] = None
    ) -> Optional[WorkflowInstance]:
        """Continue a workflow after the gatekeeper recorded a decision."""
        if decision is not None:
            logger.info(f"Resuming workflow {workflow_id} after {decision.kind.value}")
        return await self.drive(workflow_id)

    async def signal(
        self,
        workflow_id: str,
        kill_switch: bool = True,
        reason: str = "kill_switch",
        actor_id: Optional[str] = None,
    ) -> Optional[WorkflowInstance]:
        """Deliver a control signal. Only the kill switch is defined."""
        if not kill_switch:
            return await self.repository.get_workflow(workflow_id)
        return await self.terminate(workflow_id, reason, actor_id)

    async def terminate(
        self, workflow_id: str, reason: str, actor_id: Optional[str] = None
    ) -> WorkflowInstance:
        """Kill switch: move the workflow to ``terminated`` immediately.

        The lease is taken preemptively so in-flight work is fenced out.
        Completed and failed workflows are returned unchanged.
        """
        instance = await self.repository.get_workflow(workflow_id)
        if instance is None:
            raise WorkflowNotFound(workflow_id)
        if instance.status.is_terminal:
            logger.info(
                f"Kill switch for {instance.status.value} workflow {workflow_id} ignored"
            )
            return instance

        owner, fence = await self.leases.preempt(workflow_id)
        if fence is None:
            return await self.repository.get_workflow(workflow_id)
        instance = await self.repository.get_workflow(workflow_id)
        if instance.status.is_terminal:
            # finished while the lease was being taken
            await self.repository.release_lease(workflow_id, owner, fence)
            logger.info(
                f"Kill switch for {instance.status.value} workflow {workflow_id} ignored"
            )
            return instance
        previous = instance.status
        return await self._terminate(
            instance,
            fence,
            reason,
            {"source": "kill_switch", "previousStatus": previous.value},
            actor_id,
        )

    # ------------------------------------------------------------------
    # Escalation

    def escalation_event(
        self,
        instance: WorkflowInstance,
        escalation_type: str,
        reason: str,
        severity: str = "high",
        dedup_key: Optional[str] = None,
    ) -> WorkflowEvent:
        return make_event(
            instance,
            EventType.MANAGEMENT_ESCALATION,
            {
                "escalationType": escalation_type,
                "reason": reason,
                "severity": severity,
                "stage": instance.stage.label,
            },
            dedup_key=dedup_key,
        )

    async def escalate(
        self,
        instance: WorkflowInstance,
        escalation_type: str,
        reason: str,
        severity: str = "high",
        fence: Optional[int] = None,
    ) -> Optional[WorkflowEvent]:
        """Record a management escalation and queue its actionable notification."""
        event = await self.repository.append_event(
            self.escalation_event(instance, escalation_type, reason, severity), fence=fence
        )
        if event is not None:
            self.dispatcher.emit_for(event, instance)
        logger.warning(f"Escalated workflow {instance.id}: [{escalation_type}] {reason}")
        return event

    # ------------------------------------------------------------------
    # Internals

    @staticmethod
    def _runnable(instance: WorkflowInstance) -> bool:
        if instance.status in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING):
            return True
        return (
            instance.status == WorkflowStatus.AWAITING_HUMAN
            and instance.pending is not None
            and instance.pending.answered
        )

    async def _guard(self, workflow_id: str, fence: int, where: str) -> None:
        current = await self.repository.get_workflow(workflow_id)
        if current is None or current.status == WorkflowStatus.TERMINATED:
            raise KillSwitchSignal(workflow_id, where)
        if current.fence != fence:
            raise LeaseLost(f"Workflow {workflow_id}: fence {fence} superseded by {current.fence}")

    def _caller(
        self, instance: WorkflowInstance, fence: int
    ) -> Callable[[str, Callable[[str], Awaitable[Any]]], Awaitable[Any]]:
        async def call(attempt_class: str, op: Callable[[str], Awaitable[Any]]) -> Any:
            key = idempotency_key(instance.id, int(instance.stage), attempt_class)

            async def on_retry(attempt: int, delay: float, error: BaseException) -> None:
                await self.events.append(
                    instance,
                    EventType.RETRY_SCHEDULED,
                    {
                        "idempotencyKey": key,
                        "attempt": attempt,
                        "delay": round(delay, 3),
                        "error": str(error),
                    },
                    dedup_key=f"retry:{key}:{attempt}",
                    fence=fence,
                )

            result = await self.retry.execute(
                op,
                key,
                abort=lambda: self._guard(instance.id, fence, f"before {attempt_class}"),
                on_retry=on_retry,
            )
            await self._guard(instance.id, fence, f"after {attempt_class}")
            return result

        return call

    async def _step(self, instance: WorkflowInstance, fence: int) -> Optional[WorkflowInstance]:
        working = instance.model_copy(deep=True)
        stage = instance.stage
        ctx = StageContext(
            instance=working,
            config=self.config,
            gateway=self.gateway,
            checks=self.checks,
            history=await self.repository.list_events(instance.id),
            call=self._caller(working, fence),
            now=utcnow(),
        )
        handler = STAGE_HANDLERS[stage]
        try:
            outcome = await handler(ctx)
        except (KillSwitchSignal, WorkflowTerminated, LeaseLost) as exc:
            logger.info(f"Discarding {stage.label} work for workflow {instance.id}: {exc}")
            return None
        except RetriesExhausted as exc:
            working = instance
            outcome = Fail(
                EventType.ERROR,
                self._error_payload(stage, exc),
                reason="retries_exhausted",
                escalate=True,
            )
        except (ValidationError, PermanentServiceError) as exc:
            working = instance
            logger.warning(f"Stage {stage.label} failed for workflow {instance.id}: {exc}")
            outcome = Fail(EventType.ERROR, self._error_payload(stage, exc), reason="stage_failed")
        except Exception as exc:
            working = instance
            logger.exception(f"Unexpected error in {stage.label} for workflow {instance.id}")
            outcome = Fail(EventType.ERROR, self._error_payload(stage, exc), reason="unexpected_error")

        try:
            return await self._apply(working, fence, outcome)
        except (WorkflowTerminated, LeaseLost) as exc:
            logger.info(f"Discarding {stage.label} outcome for workflow {instance.id}: {exc}")
            return None

    @staticmethod
    def _error_payload(stage: Stage, exc: BaseException) -> Dict[str, Any]:
        return {"errorType": type(exc).__name__, "message": str(exc), "stage": stage.label}

    def _check_transition(self, before: Stage, after: Stage, event: EventType) -> None:
        if after == before:
            return
        if event in LOOP_EVENTS:
            return
        if after != before.next():
            raise InvariantViolation(
                f"{event.value} cannot move from {before.label} to {after.label}"
            )

    async def _apply(
        self, instance: WorkflowInstance, fence: int, outcome: StageOutcome
    ) -> WorkflowInstance:
        now = utcnow()
        before = instance.stage
        instance.updated_at = now

        if isinstance(outcome, Await):
            deadline = now + timedelta(seconds=outcome.timeout) if outcome.timeout else None
            stored = await self.gatekeeper.request_decision(
                instance, fence, outcome.kind, deadline, outcome.event, outcome.payload
            )
            self._emit(stored, instance)
            await self.dispatcher.flush()
            return instance

        if isinstance(outcome, Terminate):
            return await self._terminate(
                instance, fence, outcome.reason, {"source": "policy", **outcome.payload}
            )

        instance.pending = None
        if isinstance(outcome, Advance):
            instance.stage = outcome.to or before.next()
            instance.status = WorkflowStatus.RUNNING
        elif isinstance(outcome, Complete):
            instance.status = WorkflowStatus.COMPLETED
        elif isinstance(outcome, Fail):
            instance.status = WorkflowStatus.FAILED
            instance.failure_reason = outcome.reason
        else:  # pragma: no cover - closed union
            raise InvariantViolation(f"Unknown stage outcome {outcome!r}")

        self._check_transition(before, instance.stage, outcome.event)
        event = make_event(instance, outcome.event, outcome.payload)
        stored = await self.repository.commit(instance, fence, [event])
        self._emit(stored, instance)
        logger.info(
            f"Workflow {instance.id}: {outcome.event.value} "
            f"({before.label} -> {instance.stage.label}, {instance.status.value})"
        )

        if isinstance(outcome, Fail) and outcome.escalate:
            await self.escalate(
                instance,
                outcome.reason,
                outcome.payload.get("message") or f"Workflow failed: {outcome.reason}",
                severity="critical",
                fence=fence,
            )
        await self.dispatcher.flush()
        return instance

    async def _terminate(
        self,
        instance: WorkflowInstance,
        fence: int,
        reason: str,
        payload: Dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> WorkflowInstance:
        instance.status = WorkflowStatus.TERMINATED
        instance.failure_reason = reason
        instance.pending = None
        instance.updated_at = utcnow()
        event = make_event(
            instance,
            EventType.KILL_SWITCH_EXECUTED,
            {"reason": reason, "escalated": True, **payload},
            ActorType.USER if actor_id else ActorType.PLATFORM,
            actor_id,
        )
        stored = await self.repository.commit(instance, fence, [event])
        self._emit(stored, instance)
        # no events may follow termination; the escalation is notification-only
        self.dispatcher.emit_for(
            self.escalation_event(instance, "kill_switch", reason, severity="critical"), instance
        )
        await self.dispatcher.flush()
        logger.warning(f"Workflow {instance.id} terminated: {reason}")
        return instance

    def _emit(self, events: List[WorkflowEvent], instance: WorkflowInstance) -> None:
        for event in events:
            self.dispatcher.emit_for(event, instance)


def create_engine(
    config: OnboardingConfig,
    repository: Optional[WorkflowRepository] = None,
    gateway: Optional[ExternalGateway] = None,
    checks: Optional[OnboardingChecks] = None,
    retry: Optional[RetryManager] = None,
) -> StageStateMachine:
    """Wire a state machine from configuration, overriding any part."""
    return StageStateMachine(
        config,
        repository or get_repository(config),
        gateway or get_gateway(config),
        checks=checks,
        retry=retry,
    )
