"""External capability services used by stage handlers."""

from __future__ import annotations

import abc
from typing import Any, Dict, List, Optional

from ..contracts import MandateResult, ProcurementResult, Quote, SanctionsResult


class ExternalGateway(abc.ABC):
    """Abstract access to the quote, mandate, sanctions and procurement services.

    Every call takes an ``idempotency_key`` that the service can use to
    deduplicate retried requests. Implementations raise
    ``TransientServiceError`` for retryable failures,
    ``PermanentServiceError`` for rejected requests and ``InvalidResponse``
    for malformed bodies.
    """

    async def aclose(self) -> None:
        pass

    @abc.abstractmethod
    async def quote(
        self, workflow_id: str, applicant: Dict[str, Any], idempotency_key: str
    ) -> Optional[Quote]:
        """Request a quote.

        Returns ``None`` when the service accepted the request and will
        deliver the quote later through the quote callback.
        """

    @abc.abstractmethod
    async def verify_mandate(
        self,
        workflow_id: str,
        applicant: Dict[str, Any],
        documents: List[str],
        idempotency_key: str,
    ) -> MandateResult:
        ...

    @abc.abstractmethod
    async def screen_sanctions(
        self, workflow_id: str, applicant: Dict[str, Any], idempotency_key: str
    ) -> SanctionsResult:
        ...

    @abc.abstractmethod
    async def check_procurement(
        self, workflow_id: str, applicant: Dict[str, Any], idempotency_key: str
    ) -> ProcurementResult:
        ...
