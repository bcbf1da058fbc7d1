import pytest

from onboardflow.contracts import (
    DecisionKind,
    EventType,
    MandateResult,
    NotificationType,
    Stage,
    WorkflowStatus,
)
from onboardflow.engine import create_engine
from onboardflow.errors import TransientServiceError, WorkflowNotFound
from onboardflow.gatekeeper import DeliveryResult
from onboardflow.gateway import StubGateway
from onboardflow.retry import RetryManager


class KillingGateway(StubGateway):
    """Fires the kill switch while a quote request is in flight."""

    engine = None

    async def quote(self, workflow_id, applicant, idempotency_key):
        result = await super().quote(workflow_id, applicant, idempotency_key)
        await self.engine.terminate(workflow_id, "fraud_suspected", actor_id="ops")
        return result


@pytest.mark.asyncio
async def test_kill_switch_during_mandate_wait(engine, gateway, run_to_quote):
    gateway.script("mandate", MandateResult(verified=False, reason="unsigned"))
    await run_to_quote("wf-c")
    await engine.gatekeeper.deliver_decision(
        "wf-c", DecisionKind.QUOTE_APPROVAL, {"action": "approve"}
    )
    instance = await engine.repository.get_workflow("wf-c")
    assert instance.status == WorkflowStatus.AWAITING_HUMAN
    assert instance.pending.kind == DecisionKind.MANDATE_COLLECTION

    terminated = await engine.terminate("wf-c", "operator_request", actor_id="ops")
    assert terminated.status == WorkflowStatus.TERMINATED
    assert terminated.stage == Stage.MANDATE_VERIFICATION
    before = await engine.events.history("wf-c")
    assert before[-1].event_type == EventType.KILL_SWITCH_EXECUTED
    assert before[-1].payload["previousStatus"] == "awaiting_human"
    assert before[-1].actor_id == "ops"

    result = await engine.gatekeeper.deliver_decision(
        "wf-c", DecisionKind.MANDATE_COLLECTION, {"documents": ["mandate"]}
    )
    assert result == DeliveryResult.DISCARDED
    assert await engine.drive("wf-c") is None
    assert await engine.gatekeeper.check_timeouts() == []

    after = await engine.events.history("wf-c")
    assert after == before
    assert len(gateway.calls_for("mandate")) == 1
    instance = await engine.repository.get_workflow("wf-c")
    assert instance.status == WorkflowStatus.TERMINATED
    assert instance.stage == Stage.MANDATE_VERIFICATION


@pytest.mark.asyncio
async def test_kill_switch_notifies_and_escalates(engine, applicant):
    await engine.start(42, applicant, "wf-k")
    await engine.signal("wf-k", kill_switch=True, reason="fraud_suspected")

    notifications = await engine.dispatcher.list_notifications(42)
    types = [n.type for n in notifications]
    assert NotificationType.TERMINATED in types
    escalation = [n for n in notifications if n.title == "Management Escalation"]
    assert escalation and escalation[0].actionable
    assert escalation[0].type == NotificationType.ERROR

    events = await engine.events.history("wf-k")
    assert [e.event_type for e in events] == [
        EventType.WORKFLOW_STARTED,
        EventType.KILL_SWITCH_EXECUTED,
    ]


@pytest.mark.asyncio
async def test_kill_switch_in_flight_discards_stage_result(config, repository, applicant):
    gateway = KillingGateway()
    engine = create_engine(
        config, repository=repository, gateway=gateway, retry=RetryManager(config.retry)
    )
    gateway.engine = engine

    await engine.start(42, applicant, "wf-f")
    assert await engine.drive("wf-f") is None

    instance = await repository.get_workflow("wf-f")
    assert instance.status == WorkflowStatus.TERMINATED
    assert instance.stage == Stage.QUOTE_GENERATION
    assert instance.context.quote is None

    events = await engine.events.history("wf-f")
    assert events[-1].event_type == EventType.KILL_SWITCH_EXECUTED
    assert EventType.QUOTE_GENERATED not in [e.event_type for e in events]


@pytest.mark.asyncio
async def test_terminal_workflows_ignore_kill_switch(engine, gateway, applicant):
    gateway.script("quote", *[TransientServiceError("quote", "down")] * 3)
    await engine.start(42, applicant, "wf-x")
    await engine.drive("wf-x")
    before = await engine.events.history("wf-x")

    instance = await engine.terminate("wf-x", "too_late")
    assert instance.status == WorkflowStatus.FAILED
    assert await engine.events.history("wf-x") == before

    await engine.start(42, applicant, "wf-y")
    await engine.terminate("wf-y", "first")
    again = await engine.terminate("wf-y", "second")
    assert again.failure_reason == "first"
    kills = [
        e for e in await engine.events.history("wf-y")
        if e.event_type == EventType.KILL_SWITCH_EXECUTED
    ]
    assert len(kills) == 1


@pytest.mark.asyncio
async def test_kill_switch_loses_race_with_failure(engine, gateway, applicant, monkeypatch):
    gateway.script("quote", *[TransientServiceError("quote", "down")] * 3)
    await engine.start(42, applicant, "wf-r")
    preempt = engine.leases.preempt

    async def fail_then_preempt(workflow_id):
        # the workflow fails between the kill switch's status check and its lease grab
        await engine.drive(workflow_id)
        return await preempt(workflow_id)

    monkeypatch.setattr(engine.leases, "preempt", fail_then_preempt)
    instance = await engine.terminate("wf-r", "too_late", actor_id="ops")

    assert instance.status == WorkflowStatus.FAILED
    assert instance.failure_reason == "retries_exhausted"
    stored = await engine.repository.get_workflow("wf-r")
    assert stored.status == WorkflowStatus.FAILED
    assert stored.failure_reason == "retries_exhausted"
    types = [e.event_type for e in await engine.events.history("wf-r")]
    assert EventType.KILL_SWITCH_EXECUTED not in types
    async with engine.leases.lease("wf-r") as lease:
        assert lease.fence is not None


@pytest.mark.asyncio
async def test_kill_switch_unknown_workflow(engine):
    with pytest.raises(WorkflowNotFound):
        await engine.terminate("missing", "whatever")


@pytest.mark.asyncio
async def test_signal_without_kill_switch_is_noop(engine, applicant):
    await engine.start(42, applicant, "wf-n")
    instance = await engine.signal("wf-n", kill_switch=False)
    assert instance.status == WorkflowStatus.PENDING
