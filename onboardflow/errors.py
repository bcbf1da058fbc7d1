"""Error taxonomy for the onboarding orchestrator."""

from __future__ import annotations

from typing import Any, Optional


class OnboardingError(Exception):
    """Base class for every error raised by onboardflow."""


class ConfigurationError(OnboardingError):
    """Missing or invalid configuration. Fatal at startup, never per-workflow."""


class TransientServiceError(OnboardingError):
    """Network failure or timeout from an external service. Retryable."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class PermanentServiceError(OnboardingError):
    """External service rejected the request. Not retryable."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code


class ValidationError(OnboardingError):
    """Malformed input or response. Fails the current stage without retry."""


class InvalidResponse(ValidationError):
    """External response is missing required fields."""

    def __init__(self, service: str, message: str, payload: Any = None) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.payload = payload


class RetriesExhausted(OnboardingError):
    """Bounded retry budget consumed for one idempotency key."""

    def __init__(self, idempotency_key: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"Retries exhausted for {idempotency_key} after {attempts} attempts: {last_error}"
        )
        self.idempotency_key = idempotency_key
        self.attempts = attempts
        self.last_error = last_error


class HumanTimeoutError(OnboardingError):
    """Deadline of a pending human decision elapsed."""

    def __init__(self, workflow_id: str, kind: str) -> None:
        super().__init__(f"Decision {kind} for workflow {workflow_id} timed out")
        self.workflow_id = workflow_id
        self.kind = kind


class KillSwitchSignal(OnboardingError):
    """Priority interrupt: the workflow was terminated while work was in flight."""

    def __init__(self, workflow_id: str, where: str = "") -> None:
        suffix = f" - stopping {where}" if where else ""
        super().__init__(f"Workflow {workflow_id} terminated{suffix}")
        self.workflow_id = workflow_id
        self.where = where


class WorkflowNotFound(OnboardingError):
    """No workflow instance with the given id."""


class WorkflowTerminated(OnboardingError):
    """Write attempted against a terminated workflow."""


class LeaseUnavailable(OnboardingError):
    """Another worker holds the workflow lease."""


class LeaseLost(OnboardingError):
    """The caller's fencing token is stale; another holder took over."""


class InvariantViolation(OnboardingError):
    """A transition would break a workflow invariant."""
