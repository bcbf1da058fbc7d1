"""Stage handlers for the onboarding state machine.

Each handler receives a :class:`StageContext` and returns one outcome. A
handler may change ``ctx.context`` (a working copy); the engine persists it
together with the outcome's event, or throws it away if the step fails.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .checks import OnboardingChecks
from .config import OnboardingConfig
from .contracts import DecisionKind, EventType, Quote, Stage
from .errors import ConfigurationError
from .gateway import ExternalGateway
from .persistence import WorkflowContext, WorkflowEvent, WorkflowInstance


# ----------------------------------------------------------------------
# Outcomes


@dataclass
class Advance:
    """Move to the next stage, or to ``to`` for loop events."""

    event: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    to: Optional[Stage] = None


@dataclass
class Await:
    """Suspend until a decision of ``kind`` arrives or ``timeout`` seconds pass."""

    kind: DecisionKind
    event: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None


@dataclass
class Complete:
    event: EventType
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Fail:
    event: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    reason: str = "failed"
    escalate: bool = False


@dataclass
class Terminate:
    """Policy kill switch raised by a stage (e.g. a sanctions block)."""

    reason: str
    payload: Dict[str, Any] = field(default_factory=dict)


StageOutcome = Union[Advance, Await, Complete, Fail, Terminate]


@dataclass
class StageContext:
    instance: WorkflowInstance
    config: OnboardingConfig
    gateway: ExternalGateway
    checks: OnboardingChecks
    history: List[WorkflowEvent]
    call: Callable[[str, Callable[[str], Awaitable[Any]]], Awaitable[Any]]
    now: datetime

    @property
    def context(self) -> WorkflowContext:
        return self.instance.context

    @property
    def workflow_id(self) -> str:
        return self.instance.id

    @property
    def applicant(self) -> Dict[str, Any]:
        return self.instance.context.applicant

    def answered(self, kind: DecisionKind) -> Optional[Dict[str, Any]]:
        """Payload of the answered pending request of ``kind``, if any."""
        pending = self.instance.pending
        if pending is None or not pending.answered or pending.kind != kind:
            return None
        return self.context.decision(kind) or {}

    def has_event(self, event_type: EventType) -> bool:
        return any(e.event_type == event_type for e in self.history)


HandlerFn = Callable[[StageContext], Awaitable[StageOutcome]]


def _awaiting(kind: DecisionKind, timeout: float, **extra: Any) -> Await:
    return Await(kind, EventType.STAGE_CHANGE, {"awaiting": kind.value, **extra}, timeout)


# ----------------------------------------------------------------------
# Handlers


async def determine_business_type(ctx: StageContext) -> StageOutcome:
    business_type = ctx.checks.determine_business_type(ctx.applicant)
    ctx.context.business_type = business_type
    ctx.context.required_documents = ctx.checks.required_documents(business_type)
    # documents submitted with the application count as received
    for doc in ctx.applicant.get("documents", []):
        if doc not in ctx.context.documents_received:
            ctx.context.documents_received.append(doc)
    return Advance(
        EventType.BUSINESS_TYPE_DETERMINED,
        {"businessType": business_type, "requiredDocuments": ctx.context.required_documents},
    )


async def collect_documents(ctx: StageContext) -> StageOutcome:
    upload = ctx.answered(DecisionKind.DOCUMENT_UPLOAD)
    if upload is not None:
        for doc in upload.get("documents", []):
            if doc not in ctx.context.documents_received:
                ctx.context.documents_received.append(doc)

    outstanding = [
        doc for doc in ctx.context.required_documents if doc not in ctx.context.documents_received
    ]
    if outstanding:
        return Await(
            DecisionKind.DOCUMENT_UPLOAD,
            EventType.DOCUMENTS_REQUESTED,
            {"documents": outstanding},
            ctx.config.timeouts.stage,
        )
    return Advance(EventType.STAGE_CHANGE, {"documents": ctx.context.documents_received})


async def validate_documents(ctx: StageContext) -> StageOutcome:
    ctx.checks.validate(ctx.context)
    return Advance(EventType.VALIDATION_COMPLETED, {"documents": ctx.context.documents_received})


async def check_sanctions(ctx: StageContext) -> StageOutcome:
    adjudication = ctx.answered(DecisionKind.SANCTIONS_ADJUDICATION)
    if adjudication is not None:
        if adjudication.get("cleared"):
            return Advance(
                EventType.SANCTION_CLEARED,
                {"clearedBy": adjudication.get("actorId"), "notes": adjudication.get("notes")},
            )
        return Terminate("sanctions_blocked", {"adjudicated": True})

    result = await ctx.call(
        "sanctions",
        lambda key: ctx.gateway.screen_sanctions(ctx.workflow_id, ctx.applicant, key),
    )
    ctx.context.sanctions = result.model_dump()
    payload = {"status": result.status, "matches": result.matches}
    if result.status == "clear":
        return Advance(EventType.SANCTIONS_COMPLETED, payload)
    if result.status == "flagged":
        return Await(
            DecisionKind.SANCTIONS_ADJUDICATION,
            EventType.SANCTIONS_COMPLETED,
            payload,
            ctx.config.timeouts.review,
        )
    return Terminate("sanctions_blocked", payload)


async def analyze_risk(ctx: StageContext) -> StageOutcome:
    financials = ctx.answered(DecisionKind.FINANCIAL_STATEMENTS)
    if financials is not None:
        if financials.get("confirmed", True):
            return Advance(
                EventType.STAGE_CHANGE,
                {"riskLevel": ctx.context.risk_level, "financialsConfirmed": True},
            )
        return Terminate("financial_statements_rejected")

    review = ctx.answered(DecisionKind.RISK_REVIEW)
    if review is not None:
        action = review.get("action") or ("approve" if review.get("approved") else "reject")
        if action == "request_info":
            return _awaiting(
                DecisionKind.RISK_REVIEW, ctx.config.timeouts.review, notes=review.get("notes")
            )
        if action != "approve":
            return Terminate("risk_rejected", {"riskLevel": ctx.context.risk_level})
        if ctx.context.risk_level == "red":
            return Await(
                DecisionKind.FINANCIAL_STATEMENTS,
                EventType.DOCUMENTS_REQUESTED,
                {"documents": ["financial_statements"]},
                ctx.config.timeouts.stage,
            )
        return Advance(
            EventType.STAGE_CHANGE, {"riskLevel": ctx.context.risk_level, "approved": True}
        )

    level, score = ctx.checks.analyze_risk(ctx.context)
    ctx.context.risk_level = level
    ctx.context.risk_score = score
    payload = {"riskLevel": level, "riskScore": score}
    if level == "green":
        return Advance(EventType.RISK_ANALYSIS_COMPLETED, payload)
    return Await(
        DecisionKind.RISK_REVIEW,
        EventType.RISK_ANALYSIS_COMPLETED,
        {**payload, "reviewRequired": True},
        ctx.config.timeouts.review,
    )


def _quote_payload(ctx: StageContext) -> Dict[str, Any]:
    quote = ctx.context.quote or {}
    return {
        "quoteId": quote.get("quoteId"),
        "amount": quote.get("amount"),
        "terms": quote.get("terms"),
        "revision": ctx.context.quote_revision,
        "isOverlimit": (quote.get("amount") or 0) > ctx.config.overlimit_threshold,
    }


async def generate_quote(ctx: StageContext) -> StageOutcome:
    approval = ctx.answered(DecisionKind.QUOTE_APPROVAL)
    if approval is not None:
        action = approval.get("action", "approve")
        if action == "approve":
            return Advance(EventType.QUOTE_SENT, _quote_payload(ctx))
        if action == "adjust":
            quote = dict(ctx.context.quote or {})
            if approval.get("amount") is not None:
                quote["amount"] = approval["amount"]
            if approval.get("terms"):
                quote["terms"] = approval["terms"]
            ctx.context.quote = quote
            return Await(
                DecisionKind.QUOTE_APPROVAL,
                EventType.STAGE_CHANGE,
                {"awaiting": DecisionKind.QUOTE_APPROVAL.value, "adjusted": True, **_quote_payload(ctx)},
                ctx.config.timeouts.review,
            )
        if action == "request_update":
            ctx.context.quote = None
            ctx.context.quote_revision += 1
        else:
            return Terminate("quote_rejected", _quote_payload(ctx))

    callback = ctx.answered(DecisionKind.QUOTE_CALLBACK)
    if callback is not None:
        ctx.context.quote = Quote.from_payload(callback).model_dump(by_alias=True)
        ctx.context.quote_requested = False

    if ctx.context.quote is None:
        revision = ctx.context.quote_revision
        quote = await ctx.call(
            f"quote-r{revision}",
            lambda key: ctx.gateway.quote(ctx.workflow_id, ctx.applicant, key),
        )
        if quote is None:
            ctx.context.quote_requested = True
            return Await(
                DecisionKind.QUOTE_CALLBACK,
                EventType.AGENT_DISPATCH,
                {"service": "quote", "revision": revision},
                ctx.config.timeouts.stage,
            )
        ctx.context.quote = quote.model_dump(by_alias=True)

    return Await(
        DecisionKind.QUOTE_APPROVAL,
        EventType.QUOTE_GENERATED,
        _quote_payload(ctx),
        ctx.config.timeouts.review,
    )


async def verify_mandate(ctx: StageContext) -> StageOutcome:
    if ctx.context.mandate_type is None:
        mandate_type, volume = ctx.checks.determine_mandate(ctx.applicant)
        ctx.context.mandate_type = mandate_type
        ctx.context.mandate_volume = volume
        return Advance(
            EventType.MANDATE_DETERMINED,
            {
                "businessType": ctx.context.business_type,
                "mandateType": mandate_type,
                "mandateVolume": volume,
                "requiredDocuments": ctx.context.required_documents,
            },
            to=Stage.MANDATE_VERIFICATION,
        )

    delivered = ctx.answered(DecisionKind.MANDATE_COLLECTION)
    if delivered is not None:
        for doc in delivered.get("documents", []):
            if doc not in ctx.context.documents_received:
                ctx.context.documents_received.append(doc)

    attempt = ctx.context.mandate_attempts + 1
    result = await ctx.call(
        f"mandate-{attempt}",
        lambda key: ctx.gateway.verify_mandate(
            ctx.workflow_id, ctx.applicant, ctx.context.documents_received, key
        ),
    )
    ctx.context.mandate_attempts = attempt
    ctx.context.mandate = result.model_dump()
    max_retries = ctx.config.max_mandate_retries

    if result.verified:
        return Advance(
            EventType.MANDATE_VERIFIED,
            {"attempts": attempt, "mandateType": result.mandate_type},
        )
    payload = {"retryCount": attempt, "maxRetries": max_retries, "reason": result.reason}
    if attempt >= max_retries:
        return Fail(
            EventType.MANDATE_COLLECTION_EXPIRED,
            payload,
            reason="mandate_collection_expired",
            escalate=True,
        )
    return Await(
        DecisionKind.MANDATE_COLLECTION,
        EventType.MANDATE_RETRY,
        payload,
        ctx.config.timeouts.mandate_retry,
    )


async def check_procurement(ctx: StageContext) -> StageOutcome:
    review = ctx.answered(DecisionKind.PROCUREMENT_REVIEW)
    if review is not None:
        if review.get("approved"):
            return Advance(EventType.STAGE_CHANGE, {"procurement": "approved"})
        return Terminate("procurement_declined", {"flags": (ctx.context.procurement or {}).get("flags", [])})

    result = await ctx.call(
        "procurement",
        lambda key: ctx.gateway.check_procurement(ctx.workflow_id, ctx.applicant, key),
    )
    ctx.context.procurement = result.model_dump()
    payload = {"cleared": result.cleared, "riskScore": result.risk_score, "flags": result.flags}
    if result.cleared:
        return Advance(EventType.PROCUREMENT_CHECK_COMPLETED, payload)
    return Await(
        DecisionKind.PROCUREMENT_REVIEW,
        EventType.PROCUREMENT_CHECK_COMPLETED,
        payload,
        ctx.config.timeouts.review,
    )


async def review_contract(ctx: StageContext) -> StageOutcome:
    timeouts = ctx.config.timeouts
    review = ctx.answered(DecisionKind.CONTRACT_REVIEW)
    if review is not None:
        action = review.get("action", "approve")
        if action == "request_quote_update":
            ctx.context.quote = None
            ctx.context.quote_revision += 1
            return Advance(
                EventType.QUOTE_NEEDS_UPDATE,
                {"reason": review.get("reason"), "revision": ctx.context.quote_revision},
                to=Stage.QUOTE_GENERATION,
            )
        if action != "approve":
            return Terminate("contract_rejected", {"reason": review.get("reason")})
        return _awaiting(DecisionKind.CONTRACT_SIGNATURE, timeouts.stage)

    if ctx.answered(DecisionKind.CONTRACT_SIGNATURE) is not None:
        return _awaiting(DecisionKind.ABSA_FORM, timeouts.stage)

    if ctx.answered(DecisionKind.ABSA_FORM) is not None:
        return Advance(EventType.STAGE_CHANGE, {"contract": "completed"})

    return _awaiting(DecisionKind.CONTRACT_REVIEW, timeouts.review)


async def two_factor_approval(ctx: StageContext) -> StageOutcome:
    for kind in (DecisionKind.RISK_MANAGER_APPROVAL, DecisionKind.ACCOUNT_MANAGER_APPROVAL):
        decision = ctx.context.decision(kind)
        if decision is not None and not decision.get("approved", False):
            return Terminate("two_factor_rejected", {"rejectedBy": kind.value})

    if ctx.has_event(EventType.TWO_FACTOR_APPROVAL_RISK_MANAGER) and ctx.has_event(
        EventType.TWO_FACTOR_APPROVAL_ACCOUNT_MANAGER
    ):
        return Advance(EventType.FINAL_APPROVAL, {"approvals": 2})
    return _awaiting(DecisionKind.TWO_FACTOR_APPROVAL, ctx.config.timeouts.review)


async def final_approval(ctx: StageContext) -> StageOutcome:
    return Complete(
        EventType.WORKFLOW_COMPLETED,
        {"applicantId": ctx.instance.applicant_id, "quoteId": (ctx.context.quote or {}).get("quoteId")},
    )


STAGE_HANDLERS: Dict[Stage, HandlerFn] = {
    Stage.BUSINESS_TYPE_DETERMINATION: determine_business_type,
    Stage.DOCUMENT_COLLECTION: collect_documents,
    Stage.VALIDATION: validate_documents,
    Stage.SANCTIONS_CHECK: check_sanctions,
    Stage.RISK_ANALYSIS: analyze_risk,
    Stage.QUOTE_GENERATION: generate_quote,
    Stage.MANDATE_VERIFICATION: verify_mandate,
    Stage.PROCUREMENT_CHECK: check_procurement,
    Stage.CONTRACT_REVIEW_AND_SIGNING: review_contract,
    Stage.TWO_FACTOR_APPROVAL: two_factor_approval,
    Stage.FINAL_APPROVAL: final_approval,
}

_missing_stages = set(Stage) - set(STAGE_HANDLERS)
if _missing_stages:  # pragma: no cover - import-time guard
    raise ConfigurationError(
        f"No handler for stages: {sorted(s.label for s in _missing_stages)}"
    )
