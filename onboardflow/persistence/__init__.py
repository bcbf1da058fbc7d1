"""Persistence layer for onboarding workflows."""

from __future__ import annotations

from typing import Optional

from ..config import OnboardingConfig
from .inmemory import InMemoryWorkflowRepository
from .models import (
    Notification,
    PendingDecision,
    WorkflowContext,
    WorkflowEvent,
    WorkflowInstance,
)
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository


def get_repository(
    config: Optional[OnboardingConfig] = None, database_url: Optional[str] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The backend is selected from ``database_url`` (or ``config.database_url``):

    * nothing configured: in-memory repository
    * ``sqlite://path``: stdlib SQLite repository
    * ``sqlite+aiosqlite://`` or ``postgresql+asyncpg://``: SQLModel repository
    """

    database_url = database_url or (config.database_url if config else None)

    if not database_url:
        return InMemoryWorkflowRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteWorkflowRepository(path)
    if database_url.startswith("sqlite+aiosqlite://") or database_url.startswith(
        "postgresql+asyncpg://"
    ):
        from ..db import WorkflowDB

        return WorkflowDB(database_url)
    if database_url.startswith("postgres://") or database_url.startswith("postgresql://"):
        from ..db import WorkflowDB

        return WorkflowDB("postgresql+asyncpg://" + database_url.split("://", 1)[1])
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "Notification",
    "PendingDecision",
    "WorkflowContext",
    "WorkflowEvent",
    "WorkflowInstance",
    "WorkflowRepository",
    "InMemoryWorkflowRepository",
    "SQLiteWorkflowRepository",
    "get_repository",
]
