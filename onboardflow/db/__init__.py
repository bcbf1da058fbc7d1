from .models import NotificationRow, WorkflowEventRow, WorkflowRow
from .workflow_db import WorkflowDB

__all__ = [
    "WorkflowRow",
    "WorkflowEventRow",
    "NotificationRow",
    "WorkflowDB",
]
