"""httpx implementation of the external gateway."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..config import GatewayConfig, ServiceEndpoint
from ..contracts import MandateResult, ProcurementResult, Quote, SanctionsResult
from ..errors import InvalidResponse, PermanentServiceError, TransientServiceError
from .base import ExternalGateway

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)


class HttpGateway(ExternalGateway):
    """POST JSON to each configured service endpoint."""

    def __init__(
        self, config: GatewayConfig, client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, idempotency_key: str) -> Dict[str, str]:
        headers = {"Idempotency-Key": idempotency_key}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    async def _post(
        self,
        service: str,
        endpoint: ServiceEndpoint,
        body: Dict[str, Any],
        idempotency_key: str,
    ) -> httpx.Response:
        if not endpoint.url:
            raise PermanentServiceError(service, "no endpoint configured")
        try:
            response = await self._client.post(
                endpoint.url,
                json=body,
                headers=self._headers(idempotency_key),
                timeout=endpoint.timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransientServiceError(service, f"timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientServiceError(service, f"transport error: {exc}") from exc

        status = response.status_code
        if status >= 500 or status == 429:
            raise TransientServiceError(service, f"HTTP {status}")
        if status >= 400:
            raise PermanentServiceError(service, f"HTTP {status}: {response.text}", status)
        logger.debug(f"{service} responded {status} for key={idempotency_key}")
        return response

    @staticmethod
    def _json(service: str, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise InvalidResponse(service, f"body is not JSON: {response.text!r}") from exc

    def _parse(self, service: str, response: httpx.Response, model: Type[ResultT]) -> ResultT:
        data = self._json(service, response)
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            raise InvalidResponse(service, f"Invalid response: {exc}", data) from exc

    async def quote(
        self, workflow_id: str, applicant: Dict[str, Any], idempotency_key: str
    ) -> Optional[Quote]:
        body = {
            "workflowId": workflow_id,
            **applicant,
            "callbackUrl": f"{self._config.callback_base_url}/api/quotes/callback",
        }
        response = await self._post("quote", self._config.quote, body, idempotency_key)
        if response.status_code == 202:
            logger.info(f"Quote for workflow={workflow_id} will arrive by callback")
            return None
        return Quote.from_payload(self._json("quote", response))

    async def verify_mandate(
        self,
        workflow_id: str,
        applicant: Dict[str, Any],
        documents: List[str],
        idempotency_key: str,
    ) -> MandateResult:
        body = {"workflowId": workflow_id, "applicant": applicant, "documents": documents}
        response = await self._post("mandate", self._config.mandate, body, idempotency_key)
        return self._parse("mandate", response, MandateResult)

    async def screen_sanctions(
        self, workflow_id: str, applicant: Dict[str, Any], idempotency_key: str
    ) -> SanctionsResult:
        body = {"workflowId": workflow_id, "applicant": applicant}
        response = await self._post("sanctions", self._config.sanctions, body, idempotency_key)
        return self._parse("sanctions", response, SanctionsResult)

    async def check_procurement(
        self, workflow_id: str, applicant: Dict[str, Any], idempotency_key: str
    ) -> ProcurementResult:
        body = {"workflowId": workflow_id, "applicant": applicant}
        response = await self._post(
            "procurement", self._config.procurement, body, idempotency_key
        )
        return self._parse("procurement", response, ProcurementResult)
