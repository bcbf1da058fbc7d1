from unittest.mock import AsyncMock

import pytest

from onboardflow.contracts import DecisionKind, SignalKind, Stage, WorkflowSignal, WorkflowStatus
from onboardflow.dispatch import SignalDispatcher
from onboardflow.errors import LeaseUnavailable
from onboardflow.transports.inmemory import InMemoryTransport
from onboardflow.worker import WorkflowWorker


@pytest.mark.asyncio
async def test_worker_applies_signals_in_order(engine, applicant):
    transport = InMemoryTransport(poll_interval=0.01)
    dispatcher = SignalDispatcher(transport)
    workflow_id = await dispatcher.start(42, applicant, "wf-w")
    await dispatcher.decision(workflow_id, DecisionKind.QUOTE_APPROVAL, {"action": "approve"}, "u1")
    await dispatcher.advance("missing-workflow")

    worker = WorkflowWorker(engine, transport, max_concurrency=1, sweep_interval=60)
    await worker.start(lifespan=1.0, recover=False)

    assert worker.processed == 3
    assert transport.pending("onboarding") == 0
    instance = await engine.repository.get_workflow("wf-w")
    assert instance.stage == Stage.CONTRACT_REVIEW_AND_SIGNING
    assert instance.status == WorkflowStatus.AWAITING_HUMAN


@pytest.mark.asyncio
async def test_worker_terminate_signal(engine, applicant):
    transport = InMemoryTransport(poll_interval=0.01)
    dispatcher = SignalDispatcher(transport)
    await engine.start(42, applicant, "wf-t")
    await dispatcher.terminate("wf-t", "fraud_suspected", actor_id="ops")

    worker = WorkflowWorker(engine, transport, max_concurrency=2, sweep_interval=60)
    await worker.start(lifespan=0.5)

    instance = await engine.repository.get_workflow("wf-t")
    assert instance.status == WorkflowStatus.TERMINATED
    assert instance.failure_reason == "fraud_suspected"


@pytest.mark.asyncio
async def test_busy_workflow_is_requeued(engine):
    transport = InMemoryTransport()
    worker = WorkflowWorker(engine, transport, sweep_interval=60)
    worker.handle = AsyncMock(side_effect=LeaseUnavailable("wf-1"))
    signal = WorkflowSignal(workflow_id="wf-1", kind=SignalKind.ADVANCE)

    await worker._semaphore.acquire()
    await worker._run(("onboarding", signal.to_json(), signal), signal)

    assert transport.pending("onboarding") == 1
    assert worker.processed == 1
