"""Local business rules used by the stage handlers."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Tuple

from .errors import ValidationError
from .persistence import WorkflowContext

BASE_DOCUMENTS = ["id_document", "proof_of_address", "bank_statement"]

DOCUMENT_REQUIREMENTS: Dict[str, List[str]] = {
    "company": BASE_DOCUMENTS + ["company_registration", "directors_resolution"],
    "close_corporation": BASE_DOCUMENTS + ["cc_registration"],
    "partnership": BASE_DOCUMENTS + ["partnership_agreement"],
    "trust": BASE_DOCUMENTS + ["trust_deed", "letter_of_authority"],
    "sole_proprietor": BASE_DOCUMENTS,
}

MANDATE_TYPES = ("debit_order", "eft", "card")
DEFAULT_MANDATE_TYPE = "debit_order"

# risk score thresholds (0..1) for the green/amber/red bands
AMBER_THRESHOLD = 0.5
RED_THRESHOLD = 0.8


class OnboardingChecks(Protocol):
    def determine_business_type(self, applicant: Dict[str, Any]) -> str:
        ...

    def required_documents(self, business_type: str) -> List[str]:
        ...

    def determine_mandate(self, applicant: Dict[str, Any]) -> Tuple[str, Optional[float]]:
        ...

    def validate(self, context: WorkflowContext) -> None:
        ...

    def analyze_risk(self, context: WorkflowContext) -> Tuple[str, float]:
        ...


class DefaultChecks:
    """Rule-based checks driven by the applicant record."""

    def determine_business_type(self, applicant: Dict[str, Any]) -> str:
        declared = applicant.get("business_type")
        if declared:
            if declared not in DOCUMENT_REQUIREMENTS:
                raise ValidationError(f"Unknown business type: {declared}")
            return declared
        if applicant.get("registration_number"):
            return "company"
        return "sole_proprietor"

    def required_documents(self, business_type: str) -> List[str]:
        return list(DOCUMENT_REQUIREMENTS[business_type])

    def determine_mandate(self, applicant: Dict[str, Any]) -> Tuple[str, Optional[float]]:
        """Mandate type and monthly volume declared on the application."""
        mandate_type = applicant.get("mandate_type") or DEFAULT_MANDATE_TYPE
        if mandate_type not in MANDATE_TYPES:
            raise ValidationError(f"Unknown mandate type: {mandate_type}")
        volume = applicant.get("mandate_volume")
        return mandate_type, float(volume) if volume is not None else None

    def validate(self, context: WorkflowContext) -> None:
        """Raise ``ValidationError`` if the collected documents are unusable."""
        missing = [
            doc for doc in context.required_documents if doc not in context.documents_received
        ]
        if missing:
            raise ValidationError(f"Missing documents: {', '.join(missing)}")
        upload = context.decisions.get("document_upload") or {}
        rejected = upload.get("rejected") or []
        if rejected:
            raise ValidationError(f"Documents failed validation: {', '.join(rejected)}")

    def analyze_risk(self, context: WorkflowContext) -> Tuple[str, float]:
        score = float(context.applicant.get("risk_score", 0.2))
        if score >= RED_THRESHOLD:
            return "red", score
        if score >= AMBER_THRESHOLD:
            return "amber", score
        return "green", score
