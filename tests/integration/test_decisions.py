"""Suspension, decision delivery and timeout handling."""

from datetime import timedelta

import pytest

from onboardflow.contracts import (
    DecisionKind,
    EventType,
    MandateResult,
    NotificationType,
    SanctionsResult,
    Stage,
    WorkflowStatus,
    utcnow,
)
from onboardflow.errors import InvalidResponse, LeaseUnavailable
from onboardflow.gatekeeper import DeliveryResult


def _types(events):
    return [e.event_type for e in events]


@pytest.mark.asyncio
async def test_quote_callback_is_idempotent(engine, gateway, applicant):
    gateway.script("quote", None)
    await engine.start(42, applicant, "wf-q")
    instance = await engine.drive("wf-q")
    assert instance.pending.kind == DecisionKind.QUOTE_CALLBACK
    assert instance.context.quote_requested

    quote = {"quoteId": "Q-77", "amount": 1250.0}
    first = await engine.gatekeeper.deliver_quote_callback("wf-q", quote)
    second = await engine.gatekeeper.deliver_quote_callback("wf-q", quote)
    assert (first, second) == (DeliveryResult.ACCEPTED, DeliveryResult.DUPLICATE)

    instance = await engine.repository.get_workflow("wf-q")
    assert instance.pending.kind == DecisionKind.QUOTE_APPROVAL
    assert instance.context.quote["quoteId"] == "Q-77"

    types = _types(await engine.events.history("wf-q"))
    assert types.count(EventType.AGENT_CALLBACK) == 1
    assert types.count(EventType.QUOTE_GENERATED) == 1


@pytest.mark.asyncio
async def test_malformed_quote_callback_is_refused(engine, gateway, applicant):
    gateway.script("quote", None)
    await engine.start(42, applicant, "wf-q")
    await engine.drive("wf-q")

    with pytest.raises(InvalidResponse):
        await engine.gatekeeper.deliver_quote_callback("wf-q", {"amount": 10})
    instance = await engine.repository.get_workflow("wf-q")
    assert instance.pending.kind == DecisionKind.QUOTE_CALLBACK
    assert not instance.pending.answered


@pytest.mark.asyncio
async def test_overlimit_quote_raises_warning(engine, gateway, applicant):
    gateway.quote_amount = engine.config.overlimit_threshold + 1
    await engine.start(42, applicant, "wf-o")
    await engine.drive("wf-o")

    events = await engine.events.history("wf-o")
    assert events[-1].event_type == EventType.QUOTE_GENERATED
    assert events[-1].payload["isOverlimit"] is True
    notifications = await engine.dispatcher.list_notifications(42)
    assert notifications[-1].type == NotificationType.WARNING
    assert notifications[-1].title.startswith("OVERLIMIT")


@pytest.mark.asyncio
async def test_quote_adjust_then_approve(engine, run_to_quote):
    await run_to_quote("wf-1")
    gk = engine.gatekeeper
    await gk.deliver_decision("wf-1", DecisionKind.QUOTE_APPROVAL, {"action": "adjust", "amount": 900.0})

    instance = await engine.repository.get_workflow("wf-1")
    assert instance.stage == Stage.QUOTE_GENERATION
    assert instance.pending.kind == DecisionKind.QUOTE_APPROVAL
    assert not instance.pending.answered
    assert instance.context.quote["amount"] == 900.0

    await gk.deliver_decision("wf-1", DecisionKind.QUOTE_APPROVAL, {"action": "approve"})
    events = await engine.events.history("wf-1")
    sent = [e for e in events if e.event_type == EventType.QUOTE_SENT]
    assert sent[0].payload["amount"] == 900.0
    assert EventType.QUOTE_ADJUSTED in _types(events)


@pytest.mark.asyncio
async def test_quote_request_update_regenerates(engine, gateway, run_to_quote):
    await run_to_quote("wf-1")
    await engine.gatekeeper.deliver_decision(
        "wf-1", DecisionKind.QUOTE_APPROVAL, {"action": "request_update"}
    )
    instance = await engine.repository.get_workflow("wf-1")
    assert instance.context.quote["quoteId"] == "Q-2"
    assert instance.context.quote_revision == 1
    assert [c[2] for c in gateway.calls_for("quote")] == ["wf-1:6:quote-r0", "wf-1:6:quote-r1"]


@pytest.mark.asyncio
async def test_quote_rejection_terminates(engine, run_to_quote):
    await run_to_quote("wf-1")
    await engine.gatekeeper.deliver_decision(
        "wf-1", DecisionKind.QUOTE_APPROVAL, {"action": "reject"}
    )
    instance = await engine.repository.get_workflow("wf-1")
    assert instance.status == WorkflowStatus.TERMINATED
    assert instance.failure_reason == "quote_rejected"


@pytest.mark.asyncio
async def test_contract_review_can_send_quote_back(engine, gateway, run_to_contract):
    await run_to_contract("wf-1")
    await engine.gatekeeper.deliver_decision(
        "wf-1",
        DecisionKind.CONTRACT_REVIEW,
        {"action": "request_quote_update", "reason": "pricing changed"},
    )
    instance = await engine.repository.get_workflow("wf-1")
    assert instance.stage == Stage.QUOTE_GENERATION
    assert instance.pending.kind == DecisionKind.QUOTE_APPROVAL

    events = await engine.events.history("wf-1")
    update = [e for e in events if e.event_type == EventType.QUOTE_NEEDS_UPDATE][-1]
    assert update.stage == Stage.QUOTE_GENERATION
    assert len(gateway.calls_for("quote")) == 2


@pytest.mark.asyncio
async def test_outstanding_documents_suspend_collection(engine, applicant):
    applicant["documents"] = ["id_document"]
    await engine.start(42, applicant, "wf-v")
    instance = await engine.drive("wf-v")
    assert instance.stage == Stage.DOCUMENT_COLLECTION
    assert instance.pending.kind == DecisionKind.DOCUMENT_UPLOAD

    await engine.gatekeeper.deliver_decision(
        "wf-v",
        DecisionKind.DOCUMENT_UPLOAD,
        {"documents": ["proof_of_address", "bank_statement"]},
    )
    instance = await engine.repository.get_workflow("wf-v")
    assert instance.stage == Stage.QUOTE_GENERATION


@pytest.mark.asyncio
async def test_rejected_document_fails_validation(engine, applicant):
    applicant["documents"] = ["id_document"]
    await engine.start(42, applicant, "wf-v")
    await engine.drive("wf-v")
    await engine.gatekeeper.deliver_decision(
        "wf-v",
        DecisionKind.DOCUMENT_UPLOAD,
        {"documents": ["proof_of_address", "bank_statement"], "rejected": ["bank_statement"]},
    )

    instance = await engine.repository.get_workflow("wf-v")
    assert instance.status == WorkflowStatus.FAILED
    assert instance.stage == Stage.VALIDATION
    assert instance.failure_reason == "stage_failed"
    events = await engine.events.history("wf-v")
    assert events[-1].event_type == EventType.ERROR
    assert events[-1].payload["errorType"] == "ValidationError"


@pytest.mark.asyncio
async def test_flagged_sanctions_wait_for_adjudication(engine, gateway, applicant):
    gateway.script("sanctions", SanctionsResult(status="flagged", matches=["OFAC-123"]))
    await engine.start(42, applicant, "wf-s")
    instance = await engine.drive("wf-s")
    assert instance.stage == Stage.SANCTIONS_CHECK
    assert instance.pending.kind == DecisionKind.SANCTIONS_ADJUDICATION

    result = await engine.gatekeeper.deliver_decision(
        "wf-s", DecisionKind.SANCTIONS_ADJUDICATION, {"cleared": True}, actor_id="compliance"
    )
    assert result == DeliveryResult.ACCEPTED
    instance = await engine.repository.get_workflow("wf-s")
    assert instance.stage == Stage.QUOTE_GENERATION
    types = _types(await engine.events.history("wf-s"))
    assert types.count(EventType.SANCTION_CLEARED) == 1
    assert EventType.HUMAN_OVERRIDE in types


@pytest.mark.asyncio
async def test_blocked_sanctions_terminate(engine, gateway, applicant):
    gateway.script("sanctions", SanctionsResult(status="blocked", matches=["UN-9"]))
    await engine.start(42, applicant, "wf-s")
    instance = await engine.drive("wf-s")
    assert instance.status == WorkflowStatus.TERMINATED
    assert instance.failure_reason == "sanctions_blocked"
    events = await engine.events.history("wf-s")
    assert events[-1].event_type == EventType.KILL_SWITCH_EXECUTED


@pytest.mark.asyncio
async def test_red_risk_requires_financial_statements(engine, applicant):
    applicant["risk_score"] = 0.9
    await engine.start(42, applicant, "wf-r")
    await engine.drive("wf-r")
    gk = engine.gatekeeper

    await gk.deliver_decision("wf-r", DecisionKind.RISK_REVIEW, {"action": "approve"})
    instance = await engine.repository.get_workflow("wf-r")
    assert instance.pending.kind == DecisionKind.FINANCIAL_STATEMENTS

    await gk.deliver_decision("wf-r", DecisionKind.FINANCIAL_STATEMENTS, {"confirmed": True})
    instance = await engine.repository.get_workflow("wf-r")
    assert instance.stage == Stage.QUOTE_GENERATION


@pytest.mark.asyncio
async def test_decision_for_other_kind_is_rejected(engine, run_to_quote):
    await run_to_quote("wf-1")
    result = await engine.gatekeeper.deliver_decision(
        "wf-1", DecisionKind.CONTRACT_SIGNATURE, {"signed": True}
    )
    assert result == DeliveryResult.REJECTED
    instance = await engine.repository.get_workflow("wf-1")
    assert instance.pending.kind == DecisionKind.QUOTE_APPROVAL


@pytest.mark.asyncio
async def test_mandate_retries_until_collection_expires(engine, gateway, run_to_quote):
    unverified = MandateResult(verified=False, reason="signature missing")
    gateway.script("mandate", unverified, unverified, unverified)
    await run_to_quote("wf-m")
    gk = engine.gatekeeper
    await gk.deliver_decision("wf-m", DecisionKind.QUOTE_APPROVAL, {"action": "approve"})

    instance = await engine.repository.get_workflow("wf-m")
    assert instance.pending.kind == DecisionKind.MANDATE_COLLECTION
    assert instance.context.mandate_attempts == 1

    await gk.deliver_decision("wf-m", DecisionKind.MANDATE_COLLECTION, {"documents": ["mandate"]})
    await gk.deliver_decision("wf-m", DecisionKind.MANDATE_COLLECTION, {"documents": ["mandate"]})

    instance = await engine.repository.get_workflow("wf-m")
    assert instance.status == WorkflowStatus.FAILED
    assert instance.failure_reason == "mandate_collection_expired"
    assert instance.stage == Stage.MANDATE_VERIFICATION

    events = await engine.events.history("wf-m")
    types = _types(events)
    assert types.count(EventType.MANDATE_RETRY) == 2
    assert types[-2:] == [EventType.MANDATE_COLLECTION_EXPIRED, EventType.MANAGEMENT_ESCALATION]
    assert [c[2] for c in gateway.calls_for("mandate")] == [
        "wf-m:7:mandate-1",
        "wf-m:7:mandate-2",
        "wf-m:7:mandate-3",
    ]


@pytest.mark.asyncio
async def test_expired_review_pauses_and_escalates_once(engine, applicant):
    applicant["risk_score"] = 0.6
    await engine.start(42, applicant, "wf-t")
    await engine.drive("wf-t")
    later = utcnow() + timedelta(seconds=engine.config.timeouts.review + 60)

    assert await engine.gatekeeper.check_timeouts(later) == ["wf-t"]
    assert await engine.gatekeeper.check_timeouts(later) == []

    instance = await engine.repository.get_workflow("wf-t")
    assert instance.status == WorkflowStatus.PAUSED
    assert instance.pending.kind == DecisionKind.RISK_REVIEW
    assert instance.pending.escalated
    assert instance.pending.deadline > later + timedelta(seconds=engine.config.timeouts.pause - 60)

    events = await engine.events.history("wf-t")
    assert _types(events)[-2:] == [EventType.TIMEOUT, EventType.MANAGEMENT_ESCALATION]
    assert events[-2].payload["action"] == "pause"
    assert events[-2].status == WorkflowStatus.PAUSED
    notifications = await engine.dispatcher.list_notifications(42)
    paused = [n for n in notifications if n.type == NotificationType.PAUSED]
    assert len(paused) == 1
    assert paused[0].actionable
    assert NotificationType.WARNING in {n.type for n in notifications}

    result = await engine.gatekeeper.deliver_decision(
        "wf-t", DecisionKind.RISK_REVIEW, {"action": "approve"}
    )
    assert result == DeliveryResult.ACCEPTED
    instance = await engine.repository.get_workflow("wf-t")
    assert instance.status == WorkflowStatus.AWAITING_HUMAN
    assert instance.stage == Stage.QUOTE_GENERATION
    assert instance.pending.kind == DecisionKind.QUOTE_APPROVAL


@pytest.mark.asyncio
async def test_expired_mandate_collection_retries_verification(engine, gateway, run_to_quote):
    gateway.script("mandate", MandateResult(verified=False, reason="not yet signed"))
    await run_to_quote("wf-m")
    await engine.gatekeeper.deliver_decision(
        "wf-m", DecisionKind.QUOTE_APPROVAL, {"action": "approve"}
    )
    later = utcnow() + timedelta(seconds=engine.config.timeouts.mandate_retry + 60)

    assert await engine.gatekeeper.check_timeouts(later) == ["wf-m"]
    instance = await engine.repository.get_workflow("wf-m")
    assert instance.stage == Stage.CONTRACT_REVIEW_AND_SIGNING
    assert instance.context.mandate_attempts == 2
    assert EventType.TIMEOUT in _types(await engine.events.history("wf-m"))


@pytest.mark.asyncio
async def test_recover_drives_stalled_workflows(engine, applicant):
    await engine.start(42, applicant, "wf-1")
    await engine.start(43, applicant, "wf-2")

    assert sorted(await engine.gatekeeper.recover()) == ["wf-1", "wf-2"]
    for workflow_id in ("wf-1", "wf-2"):
        instance = await engine.repository.get_workflow(workflow_id)
        assert instance.pending.kind == DecisionKind.QUOTE_APPROVAL
    assert await engine.gatekeeper.recover() == []


async def _pause_risk_review(engine, applicant, workflow_id):
    applicant["risk_score"] = 0.6
    await engine.start(42, applicant, workflow_id)
    await engine.drive(workflow_id)
    later = utcnow() + timedelta(seconds=engine.config.timeouts.review + 60)
    assert await engine.gatekeeper.check_timeouts(later) == [workflow_id]
    return later


@pytest.mark.asyncio
async def test_paused_workflow_times_out(engine, applicant):
    later = await _pause_risk_review(engine, applicant, "wf-p")
    resume_by = later + timedelta(seconds=engine.config.timeouts.pause)

    assert await engine.gatekeeper.check_timeouts(resume_by - timedelta(seconds=60)) == []
    assert await engine.gatekeeper.check_timeouts(resume_by + timedelta(seconds=60)) == ["wf-p"]
    assert await engine.gatekeeper.check_timeouts(resume_by + timedelta(seconds=120)) == []

    instance = await engine.repository.get_workflow("wf-p")
    assert instance.status == WorkflowStatus.FAILED
    assert instance.failure_reason == "timeout"
    assert instance.pending is None
    events = await engine.events.history("wf-p")
    assert events[-1].event_type == EventType.TIMEOUT
    assert events[-1].payload["action"] == "fail"

    failed = [
        n for n in await engine.dispatcher.list_notifications(42)
        if n.type == NotificationType.FAILED
    ]
    assert len(failed) == 1
    assert failed[0].actionable

    late = await engine.gatekeeper.deliver_decision(
        "wf-p", DecisionKind.RISK_REVIEW, {"action": "approve"}
    )
    assert late == DeliveryResult.DISCARDED


@pytest.mark.asyncio
async def test_cancel_paused_workflow(engine, applicant):
    await _pause_risk_review(engine, applicant, "wf-p")
    result = await engine.gatekeeper.deliver_decision(
        "wf-p", DecisionKind.TIMEOUT_RESOLUTION, {"action": "cancel"}, actor_id="mgr"
    )

    assert result == DeliveryResult.ACCEPTED
    instance = await engine.repository.get_workflow("wf-p")
    assert instance.status == WorkflowStatus.FAILED
    assert instance.failure_reason == "cancelled_after_timeout"
    last = (await engine.events.history("wf-p"))[-1]
    assert last.event_type == EventType.HUMAN_OVERRIDE
    assert last.payload == {"kind": "timeout_resolution", "action": "cancel", "resolves": "risk_review"}
    assert last.actor_id == "mgr"
    failed = [
        n for n in await engine.dispatcher.list_notifications(42)
        if n.type == NotificationType.FAILED
    ]
    assert len(failed) == 1


@pytest.mark.asyncio
async def test_continue_paused_workflow(engine, applicant):
    await _pause_risk_review(engine, applicant, "wf-p")
    result = await engine.gatekeeper.deliver_decision(
        "wf-p", DecisionKind.TIMEOUT_RESOLUTION, {"action": "continue"}, actor_id="mgr"
    )

    assert result == DeliveryResult.ACCEPTED
    instance = await engine.repository.get_workflow("wf-p")
    assert instance.status == WorkflowStatus.AWAITING_HUMAN
    assert instance.stage == Stage.QUOTE_GENERATION
    assert instance.pending.kind == DecisionKind.QUOTE_APPROVAL
    review = instance.context.decisions["risk_review"]
    assert review["action"] == "approve"
    assert review["humanOverride"] is True

    again = await engine.gatekeeper.deliver_decision(
        "wf-p", DecisionKind.TIMEOUT_RESOLUTION, {"action": "continue"}, actor_id="mgr"
    )
    assert again == DeliveryResult.DUPLICATE


@pytest.mark.asyncio
async def test_paused_workflow_takes_supplied_decision(engine, applicant):
    await _pause_risk_review(engine, applicant, "wf-p")
    await engine.gatekeeper.deliver_decision(
        "wf-p",
        DecisionKind.TIMEOUT_RESOLUTION,
        {"action": "retry", "decision": {"action": "reject"}},
    )

    instance = await engine.repository.get_workflow("wf-p")
    assert instance.status == WorkflowStatus.TERMINATED
    assert instance.failure_reason == "risk_rejected"


@pytest.mark.asyncio
async def test_retry_reopens_paused_request(engine, applicant):
    await _pause_risk_review(engine, applicant, "wf-p")
    before = (await engine.repository.get_workflow("wf-p")).pending

    await engine.gatekeeper.deliver_decision(
        "wf-p", DecisionKind.TIMEOUT_RESOLUTION, {"action": "retry"}
    )
    instance = await engine.repository.get_workflow("wf-p")
    assert instance.status == WorkflowStatus.AWAITING_HUMAN
    assert instance.pending.kind == DecisionKind.RISK_REVIEW
    assert not instance.pending.escalated
    assert instance.pending.requested_at > before.requested_at
    assert await engine.gatekeeper.check_timeouts(utcnow()) == []

    result = await engine.gatekeeper.deliver_decision(
        "wf-p", DecisionKind.RISK_REVIEW, {"action": "approve"}
    )
    assert result == DeliveryResult.ACCEPTED
    instance = await engine.repository.get_workflow("wf-p")
    assert instance.stage == Stage.QUOTE_GENERATION


@pytest.mark.asyncio
async def test_timeout_resolution_needs_paused_workflow(engine, applicant):
    applicant["risk_score"] = 0.6
    await engine.start(42, applicant, "wf-p")
    await engine.drive("wf-p")
    result = await engine.gatekeeper.deliver_decision(
        "wf-p", DecisionKind.TIMEOUT_RESOLUTION, {"action": "cancel"}
    )
    assert result == DeliveryResult.REJECTED
    instance = await engine.repository.get_workflow("wf-p")
    assert instance.status == WorkflowStatus.AWAITING_HUMAN


@pytest.mark.asyncio
async def test_quote_callback_cannot_be_continued(engine, gateway, applicant):
    gateway.script("quote", None)
    await engine.start(42, applicant, "wf-q")
    await engine.drive("wf-q")
    later = utcnow() + timedelta(seconds=engine.config.timeouts.stage + 60)
    assert await engine.gatekeeper.check_timeouts(later) == ["wf-q"]

    result = await engine.gatekeeper.deliver_decision(
        "wf-q", DecisionKind.TIMEOUT_RESOLUTION, {"action": "continue"}
    )
    assert result == DeliveryResult.REJECTED
    instance = await engine.repository.get_workflow("wf-q")
    assert instance.status == WorkflowStatus.PAUSED
    assert instance.pending.kind == DecisionKind.QUOTE_CALLBACK


@pytest.mark.asyncio
async def test_redelivery_resumes_after_failed_resume(engine, run_to_quote, monkeypatch):
    await run_to_quote("wf-1")
    resume = engine.resume
    failures = []

    async def busy_once(workflow_id, decision=None):
        if not failures:
            failures.append(workflow_id)
            raise LeaseUnavailable(workflow_id)
        return await resume(workflow_id, decision)

    monkeypatch.setattr(engine, "resume", busy_once)
    gk = engine.gatekeeper
    with pytest.raises(LeaseUnavailable):
        await gk.deliver_decision("wf-1", DecisionKind.QUOTE_APPROVAL, {"action": "approve"})
    instance = await engine.repository.get_workflow("wf-1")
    assert instance.stage == Stage.QUOTE_GENERATION
    assert instance.pending.answered

    again = await gk.deliver_decision("wf-1", DecisionKind.QUOTE_APPROVAL, {"action": "approve"})
    assert again == DeliveryResult.DUPLICATE
    instance = await engine.repository.get_workflow("wf-1")
    assert instance.stage == Stage.CONTRACT_REVIEW_AND_SIGNING
    assert instance.pending.kind == DecisionKind.CONTRACT_REVIEW
    types = _types(await engine.events.history("wf-1"))
    assert types.count(EventType.QUOTE_APPROVED) == 1


@pytest.mark.asyncio
async def test_sweep_resumes_answered_workflow(engine, run_to_quote, monkeypatch):
    await run_to_quote("wf-1")
    resume = engine.resume
    failures = []

    async def busy_once(workflow_id, decision=None):
        if not failures:
            failures.append(workflow_id)
            raise LeaseUnavailable(workflow_id)
        return await resume(workflow_id, decision)

    monkeypatch.setattr(engine, "resume", busy_once)
    with pytest.raises(LeaseUnavailable):
        await engine.gatekeeper.deliver_decision(
            "wf-1", DecisionKind.QUOTE_APPROVAL, {"action": "approve"}
        )

    assert await engine.gatekeeper.check_timeouts(utcnow()) == ["wf-1"]
    instance = await engine.repository.get_workflow("wf-1")
    assert instance.stage == Stage.CONTRACT_REVIEW_AND_SIGNING
    assert await engine.gatekeeper.check_timeouts(utcnow()) == []


@pytest.mark.asyncio
async def test_sweep_skips_workflow_terminated_mid_timeout(
    engine, repository, applicant, monkeypatch
):
    applicant["risk_score"] = 0.6
    for workflow_id in ("wf-1", "wf-2"):
        await engine.start(42, applicant, workflow_id)
        await engine.drive(workflow_id)
    commit = repository.commit

    async def terminated_first(instance, fence, events):
        if instance.id == "wf-1" and any(e.event_type == EventType.TIMEOUT for e in events):
            await engine.terminate("wf-1", "operator_request", actor_id="ops")
        return await commit(instance, fence, events)

    monkeypatch.setattr(repository, "commit", terminated_first)
    later = utcnow() + timedelta(seconds=engine.config.timeouts.review + 60)

    assert await engine.gatekeeper.check_timeouts(later) == ["wf-2"]
    first = await engine.repository.get_workflow("wf-1")
    assert first.status == WorkflowStatus.TERMINATED
    second = await engine.repository.get_workflow("wf-2")
    assert second.status == WorkflowStatus.PAUSED
    types = _types(await engine.events.history("wf-1"))
    assert EventType.TIMEOUT not in types
    assert types[-1] == EventType.KILL_SWITCH_EXECUTED
