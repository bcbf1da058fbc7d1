import pytest

from onboardflow.contracts import DecisionKind, Stage, WorkflowStatus


@pytest.fixture
def run_to_quote(engine, applicant):
    """Start a workflow and drive it to the quote approval request."""

    async def run(workflow_id="wf-1", record=None):
        await engine.start(42, record or applicant, workflow_id)
        instance = await engine.drive(workflow_id)
        assert instance.stage == Stage.QUOTE_GENERATION
        assert instance.pending.kind == DecisionKind.QUOTE_APPROVAL
        return instance

    return run


@pytest.fixture
def run_to_contract(engine, run_to_quote):
    """Drive a workflow past quote approval up to the contract review request."""

    async def run(workflow_id="wf-1"):
        await run_to_quote(workflow_id)
        await engine.gatekeeper.deliver_decision(
            workflow_id, DecisionKind.QUOTE_APPROVAL, {"action": "approve"}, actor_id="u1"
        )
        instance = await engine.repository.get_workflow(workflow_id)
        assert instance.status == WorkflowStatus.AWAITING_HUMAN
        assert instance.stage == Stage.CONTRACT_REVIEW_AND_SIGNING
        assert instance.pending.kind == DecisionKind.CONTRACT_REVIEW
        return instance

    return run


@pytest.fixture
def run_to_two_factor(engine, run_to_contract):
    """Drive a workflow through contract signing up to the two-factor request."""

    async def run(workflow_id="wf-1"):
        await run_to_contract(workflow_id)
        gk = engine.gatekeeper
        await gk.deliver_decision(workflow_id, DecisionKind.CONTRACT_REVIEW, {"action": "approve"})
        await gk.deliver_decision(workflow_id, DecisionKind.CONTRACT_SIGNATURE, {"signed": True})
        await gk.deliver_decision(workflow_id, DecisionKind.ABSA_FORM, {"completed": True})
        instance = await engine.repository.get_workflow(workflow_id)
        assert instance.stage == Stage.TWO_FACTOR_APPROVAL
        assert instance.pending.kind == DecisionKind.TWO_FACTOR_APPROVAL
        return instance

    return run
