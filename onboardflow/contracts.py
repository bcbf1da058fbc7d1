"""Core contracts for the onboarding workflow system.

Stages, event kinds, decision kinds and statuses are closed enumerations.
Anything that maps them to behaviour (stage handlers, notification rules,
decision policies) is checked for exhaustiveness at import time.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt
from pydantic import ValidationError as PydanticValidationError

from .errors import InvalidResponse


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_HUMAN = "awaiting_human"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in (
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.TERMINATED,
        )


class Stage(IntEnum):
    """Onboarding stages in nominal order."""

    BUSINESS_TYPE_DETERMINATION = 1
    DOCUMENT_COLLECTION = 2
    VALIDATION = 3
    SANCTIONS_CHECK = 4
    RISK_ANALYSIS = 5
    QUOTE_GENERATION = 6
    MANDATE_VERIFICATION = 7
    PROCUREMENT_CHECK = 8
    CONTRACT_REVIEW_AND_SIGNING = 9
    TWO_FACTOR_APPROVAL = 10
    FINAL_APPROVAL = 11

    @property
    def label(self) -> str:
        return self.name.lower()

    def next(self) -> "Stage":
        if self is Stage.FINAL_APPROVAL:
            raise ValueError("final_approval has no successor stage")
        return Stage(self.value + 1)


class EventType(str, Enum):
    """Every kind of event a workflow can record."""

    STAGE_CHANGE = "stage_change"
    AGENT_DISPATCH = "agent_dispatch"
    AGENT_CALLBACK = "agent_callback"
    HUMAN_OVERRIDE = "human_override"
    TIMEOUT = "timeout"
    ERROR = "error"
    WORKFLOW_STARTED = "workflow_started"
    RETRY_SCHEDULED = "retry_scheduled"
    BUSINESS_TYPE_DETERMINED = "business_type_determined"
    DOCUMENTS_REQUESTED = "documents_requested"
    DOCUMENTS_RECEIVED = "documents_received"
    VALIDATION_COMPLETED = "validation_completed"
    SANCTIONS_COMPLETED = "sanctions_completed"
    SANCTION_CLEARED = "sanction_cleared"
    RISK_ANALYSIS_COMPLETED = "risk_analysis_completed"
    RISK_MANAGER_REVIEW = "risk_manager_review"
    FINANCIAL_STATEMENTS_CONFIRMED = "financial_statements_confirmed"
    QUOTE_GENERATED = "quote_generated"
    QUOTE_APPROVED = "quote_approved"
    QUOTE_SENT = "quote_sent"
    QUOTE_ADJUSTED = "quote_adjusted"
    QUOTE_NEEDS_UPDATE = "quote_needs_update"
    MANDATE_DETERMINED = "mandate_determined"
    MANDATE_VERIFIED = "mandate_verified"
    MANDATE_RETRY = "mandate_retry"
    MANDATE_COLLECTION_EXPIRED = "mandate_collection_expired"
    PROCUREMENT_CHECK_COMPLETED = "procurement_check_completed"
    PROCUREMENT_DECISION = "procurement_decision"
    CONTRACT_DRAFT_REVIEWED = "contract_draft_reviewed"
    CONTRACT_SIGNED = "contract_signed"
    ABSA_FORM_COMPLETED = "absa_form_completed"
    TWO_FACTOR_APPROVAL_RISK_MANAGER = "two_factor_approval_risk_manager"
    TWO_FACTOR_APPROVAL_ACCOUNT_MANAGER = "two_factor_approval_account_manager"
    FINAL_APPROVAL = "final_approval"
    WORKFLOW_COMPLETED = "workflow_completed"
    KILL_SWITCH_EXECUTED = "kill_switch_executed"
    MANAGEMENT_ESCALATION = "management_escalation"


# Only these transitions may move ``stage`` backwards or keep it in a loop.
LOOP_EVENTS = frozenset({EventType.QUOTE_NEEDS_UPDATE, EventType.MANDATE_RETRY})


class ActorType(str, Enum):
    USER = "user"
    AGENT = "agent"
    PLATFORM = "platform"


class NotificationType(str, Enum):
    AWAITING = "awaiting"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    PAUSED = "paused"
    ERROR = "error"
    WARNING = "warning"
    SUCCESS = "success"
    INFO = "info"
    TERMINATED = "terminated"


class DecisionKind(str, Enum):
    """External decisions a workflow can suspend for."""

    DOCUMENT_UPLOAD = "document_upload"
    SANCTIONS_ADJUDICATION = "sanctions_adjudication"
    RISK_REVIEW = "risk_review"
    FINANCIAL_STATEMENTS = "financial_statements"
    QUOTE_CALLBACK = "quote_callback"
    QUOTE_APPROVAL = "quote_approval"
    MANDATE_COLLECTION = "mandate_collection"
    PROCUREMENT_REVIEW = "procurement_review"
    CONTRACT_REVIEW = "contract_review"
    CONTRACT_SIGNATURE = "contract_signature"
    ABSA_FORM = "absa_form"
    TWO_FACTOR_APPROVAL = "two_factor_approval"
    RISK_MANAGER_APPROVAL = "risk_manager_approval"
    ACCOUNT_MANAGER_APPROVAL = "account_manager_approval"
    TIMEOUT_RESOLUTION = "timeout_resolution"


# ----------------------------------------------------------------------
# External gateway results


class Quote(BaseModel):
    """Quote returned by the quote service or its callback."""

    model_config = ConfigDict(populate_by_name=True)

    quote_id: str = Field(alias="quoteId", min_length=1)
    amount: Union[StrictInt, StrictFloat]
    terms: str = "Standard 30-day payment terms"

    @classmethod
    def from_payload(cls, payload: Any, service: str = "quote") -> "Quote":
        """Validate a raw quote payload.

        Raises:
            InvalidResponse: ``quoteId`` or ``amount`` is missing or malformed.
        """
        if not isinstance(payload, dict):
            raise InvalidResponse(service, "quote payload must be an object", payload)
        data = dict(payload)
        if data.get("terms") is None:
            data.pop("terms", None)
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            raise InvalidResponse(service, f"Invalid response: {exc}", payload) from exc


class MandateResult(BaseModel):
    verified: bool
    mandate_type: Optional[str] = None
    reason: Optional[str] = None


class SanctionsResult(BaseModel):
    status: Literal["clear", "flagged", "blocked"]
    matches: List[str] = Field(default_factory=list)


class ProcurementResult(BaseModel):
    cleared: bool
    risk_score: Optional[float] = None
    flags: List[str] = Field(default_factory=list)


class Decision(BaseModel):
    """A human or third-party decision delivered to a suspended workflow."""

    kind: DecisionKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    actor_type: ActorType = ActorType.USER
    actor_id: Optional[str] = None
    dedup_key: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)


class SignalKind(str, Enum):
    START = "start"
    ADVANCE = "advance"
    DECISION = "decision"
    QUOTE_CALLBACK = "quote_callback"
    TERMINATE = "terminate"


class WorkflowSignal(BaseModel):
    """Envelope for inbound triggers, callbacks and kill-switch commands."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    kind: SignalKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    actor_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize signal to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowSignal":
        """Deserialize signal from JSON."""
        return cls.model_validate_json(data)
