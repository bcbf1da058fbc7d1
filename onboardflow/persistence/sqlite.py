"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from ..contracts import WorkflowStatus
from ..errors import LeaseLost, WorkflowNotFound, WorkflowTerminated
from .models import (
    Notification,
    PendingDecision,
    WorkflowContext,
    WorkflowEvent,
    WorkflowInstance,
)
from .repository import WorkflowRepository

_WORKFLOW_COLUMNS = (
    "id, applicant_id, status, stage, context, pending, failure_reason, "
    "created_at, updated_at, lease_owner, lease_expires_at, fence"
)
_EVENT_COLUMNS = (
    "event_id, workflow_id, sequence, event_type, payload, actor_type, actor_id, "
    "stage, status, dedup_key, timestamp"
)


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                applicant_id INTEGER NOT NULL,
                status TEXT NOT NULL,
                stage INTEGER NOT NULL,
                context TEXT NOT NULL,
                pending TEXT,
                failure_reason TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                lease_owner TEXT,
                lease_expires_at TEXT,
                fence INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL UNIQUE,
                workflow_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                payload TEXT NOT NULL,
                actor_type TEXT NOT NULL,
                actor_id TEXT,
                stage INTEGER,
                status TEXT,
                dedup_key TEXT,
                timestamp TEXT NOT NULL,
                UNIQUE (workflow_id, sequence),
                UNIQUE (workflow_id, dedup_key)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id TEXT NOT NULL,
                applicant_id INTEGER NOT NULL,
                type TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                actionable INTEGER NOT NULL DEFAULT 0,
                read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, fn, *args: Any) -> Any:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                result = fn(cur, *args)
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")
            return result

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _row_to_instance(row: sqlite3.Row) -> WorkflowInstance:
        return WorkflowInstance(
            id=row["id"],
            applicant_id=row["applicant_id"],
            status=row["status"],
            stage=row["stage"],
            context=WorkflowContext.model_validate_json(row["context"]),
            pending=(
                PendingDecision.model_validate_json(row["pending"])
                if row["pending"]
                else None
            ),
            failure_reason=row["failure_reason"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            lease_owner=row["lease_owner"],
            lease_expires_at=_dt(row["lease_expires_at"]),
            fence=row["fence"],
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> WorkflowEvent:
        return WorkflowEvent(
            event_id=row["event_id"],
            workflow_id=row["workflow_id"],
            sequence=row["sequence"],
            event_type=row["event_type"],
            payload=json.loads(row["payload"]),
            actor_type=row["actor_type"],
            actor_id=row["actor_id"],
            stage=row["stage"],
            status=row["status"],
            dedup_key=row["dedup_key"],
            timestamp=_dt(row["timestamp"]),
        )

    @staticmethod
    def _row_to_notification(row: sqlite3.Row) -> Notification:
        return Notification(
            id=row["id"],
            workflow_id=row["workflow_id"],
            applicant_id=row["applicant_id"],
            type=row["type"],
            title=row["title"],
            message=row["message"],
            actionable=bool(row["actionable"]),
            read=bool(row["read"]),
            created_at=_dt(row["created_at"]),
        )

    def _locked_row(self, cur: sqlite3.Cursor, workflow_id: str) -> sqlite3.Row:
        cur.execute(f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = ?", (workflow_id,))
        row = cur.fetchone()
        if row is None:
            raise WorkflowNotFound(workflow_id)
        return row

    def _insert_event(self, cur: sqlite3.Cursor, event: WorkflowEvent) -> WorkflowEvent | None:
        if event.dedup_key:
            cur.execute(
                "SELECT 1 FROM workflow_events WHERE workflow_id = ? AND dedup_key = ?",
                (event.workflow_id, event.dedup_key),
            )
            if cur.fetchone():
                return None
        cur.execute(
            "SELECT COALESCE(MAX(sequence), 0) FROM workflow_events WHERE workflow_id = ?",
            (event.workflow_id,),
        )
        sequence = cur.fetchone()[0] + 1
        stored = event.model_copy(update={"sequence": sequence})
        cur.execute(
            f"INSERT INTO workflow_events ({_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                stored.event_id,
                stored.workflow_id,
                sequence,
                stored.event_type.value,
                json.dumps(stored.payload, default=str),
                stored.actor_type.value,
                stored.actor_id,
                int(stored.stage) if stored.stage is not None else None,
                stored.status.value if stored.status is not None else None,
                stored.dedup_key,
                stored.timestamp.isoformat(),
            ),
        )
        return stored

    def _check_writable(self, row: sqlite3.Row, fence: Optional[int]) -> None:
        if row["status"] == WorkflowStatus.TERMINATED.value:
            raise WorkflowTerminated(row["id"])
        if fence is not None and row["fence"] != fence:
            raise LeaseLost(f"Workflow {row['id']}: fence {fence} != {row['fence']}")

    # ------------------------------------------------------------------
    # Transaction bodies
    def _create(
        self, cur: sqlite3.Cursor, instance: WorkflowInstance, event: WorkflowEvent
    ) -> WorkflowInstance:
        cur.execute(f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = ?", (instance.id,))
        row = cur.fetchone()
        if row is not None:
            return self._row_to_instance(row)
        cur.execute(
            f"INSERT INTO workflows ({_WORKFLOW_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                instance.id,
                instance.applicant_id,
                instance.status.value,
                int(instance.stage),
                instance.context.model_dump_json(),
                instance.pending.model_dump_json() if instance.pending else None,
                instance.failure_reason,
                instance.created_at.isoformat(),
                instance.updated_at.isoformat(),
                None,
                None,
                0,
            ),
        )
        self._insert_event(cur, event)
        return instance

    def _acquire(
        self,
        cur: sqlite3.Cursor,
        workflow_id: str,
        owner: str,
        ttl: float,
        now: datetime,
        force: bool,
    ) -> int | None:
        row = self._locked_row(cur, workflow_id)
        if row["status"] == WorkflowStatus.TERMINATED.value:
            return None
        expires = _dt(row["lease_expires_at"])
        held = (
            row["lease_owner"] is not None
            and row["lease_owner"] != owner
            and expires is not None
            and expires > now
        )
        if held and not force:
            return None
        fence = row["fence"] + 1
        cur.execute(
            "UPDATE workflows SET lease_owner = ?, lease_expires_at = ?, fence = ? WHERE id = ?",
            (owner, (now + timedelta(seconds=ttl)).isoformat(), fence, workflow_id),
        )
        return fence

    def _commit(
        self,
        cur: sqlite3.Cursor,
        instance: WorkflowInstance,
        fence: int,
        events: list[WorkflowEvent],
    ) -> list[WorkflowEvent]:
        row = self._locked_row(cur, instance.id)
        self._check_writable(row, fence)
        terminated = instance.status == WorkflowStatus.TERMINATED
        cur.execute(
            """
            UPDATE workflows
            SET status = ?, stage = ?, context = ?, pending = ?, failure_reason = ?,
                updated_at = ?, lease_owner = ?, lease_expires_at = ?
            WHERE id = ?
            """,
            (
                instance.status.value,
                int(instance.stage),
                instance.context.model_dump_json(),
                instance.pending.model_dump_json() if instance.pending else None,
                instance.failure_reason,
                instance.updated_at.isoformat(),
                None if terminated else row["lease_owner"],
                None if terminated else row["lease_expires_at"],
                instance.id,
            ),
        )
        appended = []
        for event in events:
            stored = self._insert_event(cur, event)
            if stored is not None:
                appended.append(stored)
        return appended

    def _append_one(
        self, cur: sqlite3.Cursor, event: WorkflowEvent, fence: Optional[int]
    ) -> WorkflowEvent | None:
        row = self._locked_row(cur, event.workflow_id)
        self._check_writable(row, fence)
        return self._insert_event(cur, event)

    def _release(self, cur: sqlite3.Cursor, workflow_id: str, owner: str, fence: int) -> None:
        cur.execute(
            """
            UPDATE workflows SET lease_owner = NULL, lease_expires_at = NULL
            WHERE id = ? AND lease_owner = ? AND fence = ? AND status != ?
            """,
            (workflow_id, owner, fence, WorkflowStatus.TERMINATED.value),
        )

    def _add_notification(self, cur: sqlite3.Cursor, n: Notification) -> Notification:
        cur.execute(
            """
            INSERT INTO notifications
                (workflow_id, applicant_id, type, title, message, actionable, read, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                n.workflow_id,
                n.applicant_id,
                n.type.value,
                n.title,
                n.message,
                int(n.actionable),
                int(n.read),
                n.created_at.isoformat(),
            ),
        )
        return n.model_copy(update={"id": cur.lastrowid})

    def _mark_read(self, cur: sqlite3.Cursor, notification_id: int) -> bool:
        cur.execute("UPDATE notifications SET read = 1 WHERE id = ?", (notification_id,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Repository API
    async def create_workflow(
        self, instance: WorkflowInstance, event: WorkflowEvent
    ) -> WorkflowInstance:
        return await asyncio.to_thread(self._transaction, self._create, instance, event)

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = ?",
            workflow_id,
        )
        return self._row_to_instance(rows[0]) if rows else None

    async def list_workflows(
        self,
        applicant_id: Optional[int] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> list[WorkflowInstance]:
        query = f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE 1 = 1"
        params: list[Any] = []
        if applicant_id is not None:
            query += " AND applicant_id = ?"
            params.append(applicant_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY created_at", *params)
        return [self._row_to_instance(r) for r in rows]

    async def acquire_lease(
        self,
        workflow_id: str,
        owner: str,
        ttl: float,
        now: datetime,
        force: bool = False,
    ) -> int | None:
        return await asyncio.to_thread(
            self._transaction, self._acquire, workflow_id, owner, ttl, now, force
        )

    async def release_lease(self, workflow_id: str, owner: str, fence: int) -> None:
        await asyncio.to_thread(self._transaction, self._release, workflow_id, owner, fence)

    async def commit(
        self, instance: WorkflowInstance, fence: int, events: list[WorkflowEvent]
    ) -> list[WorkflowEvent]:
        return await asyncio.to_thread(self._transaction, self._commit, instance, fence, events)

    async def append_event(
        self, event: WorkflowEvent, fence: Optional[int] = None
    ) -> WorkflowEvent | None:
        return await asyncio.to_thread(self._transaction, self._append_one, event, fence)

    async def list_events(self, workflow_id: str) -> list[WorkflowEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_EVENT_COLUMNS} FROM workflow_events WHERE workflow_id = ? ORDER BY sequence",
            workflow_id,
        )
        return [self._row_to_event(r) for r in rows]

    async def add_notification(self, notification: Notification) -> Notification:
        return await asyncio.to_thread(self._transaction, self._add_notification, notification)

    async def list_notifications(
        self, applicant_id: int, unread_only: bool = False
    ) -> list[Notification]:
        query = "SELECT * FROM notifications WHERE applicant_id = ?"
        if unread_only:
            query += " AND read = 0"
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY id", applicant_id)
        return [self._row_to_notification(r) for r in rows]

    async def mark_notification_read(self, notification_id: int) -> bool:
        return await asyncio.to_thread(self._transaction, self._mark_read, notification_id)
