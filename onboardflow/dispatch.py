"""Publish inbound workflow signals onto a transport."""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from .constants import SIGNAL_TOPIC
from .contracts import DecisionKind, SignalKind, WorkflowSignal
from .transports import BaseTransport


class SignalDispatcher:
    """Builds :class:`WorkflowSignal` envelopes and publishes them."""

    def __init__(self, transport: BaseTransport, topic: str = SIGNAL_TOPIC) -> None:
        self._transport = transport
        self.topic = topic

    async def _publish(
        self,
        workflow_id: str,
        kind: SignalKind,
        payload: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> WorkflowSignal:
        signal = WorkflowSignal(
            workflow_id=workflow_id, kind=kind, payload=payload or {}, actor_id=actor_id
        )
        await self._transport.publish(self.topic, signal)
        return signal

    async def start(
        self,
        applicant_id: int,
        applicant: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> str:
        """Publish a trigger and return the workflow id it will create."""
        workflow_id = workflow_id or f"wf-{uuid.uuid4().hex[:12]}"
        await self._publish(
            workflow_id,
            SignalKind.START,
            {"applicant_id": applicant_id, "applicant": applicant or {}},
        )
        return workflow_id

    async def advance(self, workflow_id: str) -> WorkflowSignal:
        return await self._publish(workflow_id, SignalKind.ADVANCE)

    async def decision(
        self,
        workflow_id: str,
        kind: DecisionKind,
        payload: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> WorkflowSignal:
        return await self._publish(
            workflow_id,
            SignalKind.DECISION,
            {"kind": DecisionKind(kind).value, "decision": payload or {}},
            actor_id,
        )

    async def quote_callback(self, workflow_id: str, quote: Dict[str, Any]) -> WorkflowSignal:
        return await self._publish(workflow_id, SignalKind.QUOTE_CALLBACK, quote)

    async def terminate(
        self, workflow_id: str, reason: str, actor_id: Optional[str] = None
    ) -> WorkflowSignal:
        return await self._publish(
            workflow_id, SignalKind.TERMINATE, {"reason": reason}, actor_id
        )
