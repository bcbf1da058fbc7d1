"""SQLModel/SQLAlchemy async implementation of the workflow repository."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..contracts import WorkflowStatus
from ..errors import LeaseLost, WorkflowNotFound, WorkflowTerminated
from ..persistence.models import (
    Notification,
    PendingDecision,
    WorkflowContext,
    WorkflowEvent,
    WorkflowInstance,
)
from ..persistence.repository import WorkflowRepository
from .models import NotificationRow, WorkflowEventRow, WorkflowRow


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WorkflowDB(WorkflowRepository):
    """Async database backend for ``sqlite+aiosqlite`` and ``postgresql+asyncpg`` URLs."""

    def __init__(self, database_url: str) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )
        self._initialized = False

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialized:
            await self.init_db()
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _to_instance(row: WorkflowRow) -> WorkflowInstance:
        return WorkflowInstance(
            id=row.id,
            applicant_id=row.applicant_id,
            status=row.status,
            stage=row.stage,
            context=WorkflowContext.model_validate(row.context or {}),
            pending=PendingDecision.model_validate(row.pending) if row.pending else None,
            failure_reason=row.failure_reason,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            lease_owner=row.lease_owner,
            lease_expires_at=_aware(row.lease_expires_at),
            fence=row.fence,
        )

    @staticmethod
    def _to_event(row: WorkflowEventRow) -> WorkflowEvent:
        return WorkflowEvent(
            event_id=row.event_id,
            workflow_id=row.workflow_id,
            sequence=row.sequence,
            event_type=row.event_type,
            payload=row.payload or {},
            actor_type=row.actor_type,
            actor_id=row.actor_id,
            stage=row.stage,
            status=row.status,
            dedup_key=row.dedup_key,
            timestamp=_aware(row.timestamp),
        )

    @staticmethod
    def _to_notification(row: NotificationRow) -> Notification:
        return Notification(
            id=row.id,
            workflow_id=row.workflow_id,
            applicant_id=row.applicant_id,
            type=row.type,
            title=row.title,
            message=row.message,
            actionable=row.actionable,
            read=row.read,
            created_at=_aware(row.created_at),
        )

    # ------------------------------------------------------------------
    # Helpers running inside an open transaction
    async def _locked(self, session: AsyncSession, workflow_id: str) -> WorkflowRow:
        row = await session.get(WorkflowRow, workflow_id, with_for_update=True)
        if row is None:
            raise WorkflowNotFound(workflow_id)
        return row

    @staticmethod
    def _check_writable(row: WorkflowRow, fence: Optional[int]) -> None:
        if row.status == WorkflowStatus.TERMINATED.value:
            raise WorkflowTerminated(row.id)
        if fence is not None and row.fence != fence:
            raise LeaseLost(f"Workflow {row.id}: fence {fence} != {row.fence}")

    async def _insert_event(
        self, session: AsyncSession, event: WorkflowEvent
    ) -> WorkflowEvent | None:
        if event.dedup_key:
            existing = await session.exec(
                select(WorkflowEventRow.id).where(
                    WorkflowEventRow.workflow_id == event.workflow_id,
                    WorkflowEventRow.dedup_key == event.dedup_key,
                )
            )
            if existing.first() is not None:
                return None
        current = await session.exec(
            select(func.max(WorkflowEventRow.sequence)).where(
                WorkflowEventRow.workflow_id == event.workflow_id
            )
        )
        sequence = (current.first() or 0) + 1
        stored = event.model_copy(update={"sequence": sequence})
        session.add(
            WorkflowEventRow(
                event_id=stored.event_id,
                workflow_id=stored.workflow_id,
                sequence=sequence,
                event_type=stored.event_type.value,
                payload=stored.model_dump(mode="json")["payload"],
                actor_type=stored.actor_type.value,
                actor_id=stored.actor_id,
                stage=int(stored.stage) if stored.stage is not None else None,
                status=stored.status.value if stored.status is not None else None,
                dedup_key=stored.dedup_key,
                timestamp=stored.timestamp,
            )
        )
        await session.flush()
        return stored

    # ------------------------------------------------------------------
    # Repository API
    async def create_workflow(
        self, instance: WorkflowInstance, event: WorkflowEvent
    ) -> WorkflowInstance:
        async with self.session() as session:
            async with session.begin():
                existing = await session.get(WorkflowRow, instance.id)
                if existing is not None:
                    return self._to_instance(existing)
                data = instance.model_dump(mode="json")
                session.add(
                    WorkflowRow(
                        id=instance.id,
                        applicant_id=instance.applicant_id,
                        status=instance.status.value,
                        stage=int(instance.stage),
                        context=data["context"],
                        pending=data["pending"],
                        failure_reason=instance.failure_reason,
                        created_at=instance.created_at,
                        updated_at=instance.updated_at,
                    )
                )
                await session.flush()
                await self._insert_event(session, event)
        return instance

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        async with self.session() as session:
            row = await session.get(WorkflowRow, workflow_id)
            return self._to_instance(row) if row else None

    async def list_workflows(
        self,
        applicant_id: Optional[int] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> list[WorkflowInstance]:
        query = select(WorkflowRow)
        if applicant_id is not None:
            query = query.where(WorkflowRow.applicant_id == applicant_id)
        if status is not None:
            query = query.where(WorkflowRow.status == status.value)
        async with self.session() as session:
            rows = await session.exec(query.order_by(WorkflowRow.created_at))
            return [self._to_instance(r) for r in rows.all()]

    async def acquire_lease(
        self,
        workflow_id: str,
        owner: str,
        ttl: float,
        now: datetime,
        force: bool = False,
    ) -> int | None:
        async with self.session() as session:
            async with session.begin():
                row = await self._locked(session, workflow_id)
                if row.status == WorkflowStatus.TERMINATED.value:
                    return None
                expires = _aware(row.lease_expires_at)
                held = (
                    row.lease_owner is not None
                    and row.lease_owner != owner
                    and expires is not None
                    and expires > now
                )
                if held and not force:
                    return None
                row.fence += 1
                row.lease_owner = owner
                row.lease_expires_at = now + timedelta(seconds=ttl)
                return row.fence

    async def release_lease(self, workflow_id: str, owner: str, fence: int) -> None:
        async with self.session() as session:
            async with session.begin():
                row = await session.get(WorkflowRow, workflow_id, with_for_update=True)
                if (
                    row is not None
                    and row.status != WorkflowStatus.TERMINATED.value
                    and row.fence == fence
                    and row.lease_owner == owner
                ):
                    row.lease_owner = None
                    row.lease_expires_at = None

    async def commit(
        self, instance: WorkflowInstance, fence: int, events: list[WorkflowEvent]
    ) -> list[WorkflowEvent]:
        data = instance.model_dump(mode="json")
        async with self.session() as session:
            async with session.begin():
                row = await self._locked(session, instance.id)
                self._check_writable(row, fence)
                row.status = instance.status.value
                row.stage = int(instance.stage)
                row.context = data["context"]
                row.pending = data["pending"]
                row.failure_reason = instance.failure_reason
                row.updated_at = instance.updated_at
                if instance.status == WorkflowStatus.TERMINATED:
                    row.lease_owner = None
                    row.lease_expires_at = None
                appended = []
                for event in events:
                    stored = await self._insert_event(session, event)
                    if stored is not None:
                        appended.append(stored)
                return appended

    async def append_event(
        self, event: WorkflowEvent, fence: Optional[int] = None
    ) -> WorkflowEvent | None:
        async with self.session() as session:
            async with session.begin():
                row = await self._locked(session, event.workflow_id)
                self._check_writable(row, fence)
                return await self._insert_event(session, event)

    async def list_events(self, workflow_id: str) -> list[WorkflowEvent]:
        async with self.session() as session:
            rows = await session.exec(
                select(WorkflowEventRow)
                .where(WorkflowEventRow.workflow_id == workflow_id)
                .order_by(WorkflowEventRow.sequence)
            )
            return [self._to_event(r) for r in rows.all()]

    async def add_notification(self, notification: Notification) -> Notification:
        row = NotificationRow(
            workflow_id=notification.workflow_id,
            applicant_id=notification.applicant_id,
            type=notification.type.value,
            title=notification.title,
            message=notification.message,
            actionable=notification.actionable,
            read=notification.read,
            created_at=notification.created_at,
        )
        async with self.session() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
        return self._to_notification(row)

    async def list_notifications(
        self, applicant_id: int, unread_only: bool = False
    ) -> list[Notification]:
        query = select(NotificationRow).where(NotificationRow.applicant_id == applicant_id)
        if unread_only:
            query = query.where(NotificationRow.read == False)  # noqa: E712
        async with self.session() as session:
            rows = await session.exec(query.order_by(NotificationRow.id))
            return [self._to_notification(r) for r in rows.all()]

    async def mark_notification_read(self, notification_id: int) -> bool:
        async with self.session() as session:
            row = await session.get(NotificationRow, notification_id)
            if row is None:
                return False
            row.read = True
            await session.commit()
            return True
