"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import (
    ActorType,
    DecisionKind,
    EventType,
    NotificationType,
    Stage,
    WorkflowStatus,
    utcnow,
)


class WorkflowContext(BaseModel):
    """Stage data accumulated while a workflow advances."""

    applicant: Dict[str, Any] = Field(default_factory=dict)
    business_type: Optional[str] = None
    required_documents: List[str] = Field(default_factory=list)
    documents_received: List[str] = Field(default_factory=list)
    sanctions: Optional[Dict[str, Any]] = None
    risk_level: Optional[str] = None
    risk_score: Optional[float] = None
    quote: Optional[Dict[str, Any]] = None
    quote_requested: bool = False
    quote_revision: int = 0
    mandate_type: Optional[str] = None
    mandate_volume: Optional[float] = None
    mandate_attempts: int = 0
    mandate: Optional[Dict[str, Any]] = None
    procurement: Optional[Dict[str, Any]] = None
    # latest recorded payload per decision kind
    decisions: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    def decision(self, kind: DecisionKind) -> Optional[Dict[str, Any]]:
        return self.decisions.get(kind.value)


class PendingDecision(BaseModel):
    """The single outstanding decision request of a suspended workflow."""

    kind: DecisionKind
    stage: Stage
    requested_at: datetime = Field(default_factory=utcnow)
    deadline: Optional[datetime] = None
    answered: bool = False
    escalated: bool = False


class WorkflowInstance(BaseModel):
    """Persisted workflow instance data."""

    id: str
    applicant_id: int
    status: WorkflowStatus = WorkflowStatus.PENDING
    stage: Stage = Stage.BUSINESS_TYPE_DETERMINATION
    context: WorkflowContext = Field(default_factory=WorkflowContext)
    pending: Optional[PendingDecision] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    fence: int = 0


class WorkflowEvent(BaseModel):
    """Append-only record of something that happened to a workflow."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    sequence: Optional[int] = None
    event_type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    actor_type: ActorType = ActorType.PLATFORM
    actor_id: Optional[str] = None
    stage: Optional[Stage] = None
    status: Optional[WorkflowStatus] = None
    dedup_key: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    """User-facing notice derived from workflow events."""

    id: Optional[int] = None
    workflow_id: str
    applicant_id: int
    type: NotificationType
    title: str
    message: str
    actionable: bool = False
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)
