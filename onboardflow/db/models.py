from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from ..contracts import utcnow


class WorkflowRow(SQLModel, table=True):
    """One applicant onboarding attempt."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True)
    applicant_id: int = Field(index=True)
    status: str = Field(default="pending", index=True)
    stage: int = 1
    context: dict = Field(default_factory=dict, sa_column=Column(JSON))
    pending: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    failure_reason: Optional[str] = None
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True))
    )
    updated_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True))
    )
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    fence: int = 0


class WorkflowEventRow(SQLModel, table=True):
    """Append-only workflow event."""

    __tablename__ = "workflow_events"
    __table_args__ = (
        UniqueConstraint("workflow_id", "sequence"),
        UniqueConstraint("workflow_id", "dedup_key"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(unique=True)
    workflow_id: str = Field(foreign_key="workflows.id", index=True)
    sequence: int
    event_type: str
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    actor_type: str = "platform"
    actor_id: Optional[str] = None
    stage: Optional[int] = None
    status: Optional[str] = None
    dedup_key: Optional[str] = None
    timestamp: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True))
    )


class NotificationRow(SQLModel, table=True):
    """User-facing notification; only ``read`` is ever updated."""

    __tablename__ = "notifications"

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(foreign_key="workflows.id")
    applicant_id: int = Field(index=True)
    type: str
    title: str
    message: str
    actionable: bool = False
    read: bool = False
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True))
    )
