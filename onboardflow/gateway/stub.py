"""Local gateway that answers from scripted results."""

from __future__ import annotations

import itertools
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional, Tuple, Union

from ..contracts import MandateResult, ProcurementResult, Quote, SanctionsResult
from .base import ExternalGateway

Scripted = Union[Any, BaseException]


class StubGateway(ExternalGateway):
    """Return queued results per service, falling back to happy-path defaults.

    Queue a result (or an exception instance to raise) with ``script``. Every
    call is recorded in ``calls`` as ``(service, workflow_id, idempotency_key)``.
    """

    def __init__(self, quote_amount: float = 250_000_00) -> None:
        self._scripts: Dict[str, Deque[Scripted]] = defaultdict(deque)
        self._quote_ids = itertools.count(1)
        self.quote_amount = quote_amount
        self.calls: List[Tuple[str, str, str]] = []

    def script(self, service: str, *results: Scripted) -> "StubGateway":
        self._scripts[service].extend(results)
        return self

    def calls_for(self, service: str) -> List[Tuple[str, str, str]]:
        return [call for call in self.calls if call[0] == service]

    def _next(self, service: str, workflow_id: str, idempotency_key: str, default: Any) -> Any:
        self.calls.append((service, workflow_id, idempotency_key))
        queue = self._scripts[service]
        result = queue.popleft() if queue else default
        if isinstance(result, BaseException):
            raise result
        return result

    async def quote(
        self, workflow_id: str, applicant: Dict[str, Any], idempotency_key: str
    ) -> Optional[Quote]:
        default = Quote(quote_id=f"Q-{next(self._quote_ids)}", amount=self.quote_amount)
        result = self._next("quote", workflow_id, idempotency_key, default)
        if isinstance(result, dict):
            return Quote.from_payload(result)
        return result

    async def verify_mandate(
        self,
        workflow_id: str,
        applicant: Dict[str, Any],
        documents: List[str],
        idempotency_key: str,
    ) -> MandateResult:
        default = MandateResult(verified=True, mandate_type="debit_order")
        return self._next("mandate", workflow_id, idempotency_key, default)

    async def screen_sanctions(
        self, workflow_id: str, applicant: Dict[str, Any], idempotency_key: str
    ) -> SanctionsResult:
        return self._next(
            "sanctions", workflow_id, idempotency_key, SanctionsResult(status="clear")
        )

    async def check_procurement(
        self, workflow_id: str, applicant: Dict[str, Any], idempotency_key: str
    ) -> ProcurementResult:
        default = ProcurementResult(cleared=True, risk_score=0.1)
        return self._next("procurement", workflow_id, idempotency_key, default)
