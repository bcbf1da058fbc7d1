"""Best-effort user-facing notifications derived from workflow events.

Notifications go through an in-process outbox. ``notify`` only enqueues;
``flush`` writes to the repository and swallows (and logs) any failure, so a
broken notification store can never block or roll back a workflow
transition.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple, Union

from .contracts import EventType, NotificationType, WorkflowStatus
from .errors import ConfigurationError
from .persistence import Notification, WorkflowEvent, WorkflowInstance, WorkflowRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationRule:
    type: NotificationType
    title: str
    message: str
    actionable: bool = False

    def render(self, event: WorkflowEvent) -> Tuple[NotificationType, str, str, bool]:
        message = self.message.format_map(_Payload(event.payload))
        return self.type, self.title, message, self.actionable


class _Payload(dict):
    def __missing__(self, key: str) -> str:
        return "?"


RuleFn = Callable[[WorkflowEvent], Optional[NotificationRule]]


def _error_rule(event: WorkflowEvent) -> NotificationRule:
    if event.payload.get("errorType") == "RetriesExhausted":
        return NotificationRule(
            NotificationType.FAILED,
            "Workflow Failed",
            "Retries exhausted during {stage}: {message}",
            actionable=True,
        )
    return NotificationRule(
        NotificationType.ERROR,
        "Stage Failed",
        "{errorType} during {stage}: {message}",
        actionable=True,
    )


def _awaiting_rule(title: str, message: str) -> RuleFn:
    def rule(event: WorkflowEvent) -> Optional[NotificationRule]:
        if event.status != WorkflowStatus.AWAITING_HUMAN:
            return None
        return NotificationRule(NotificationType.AWAITING, title, message, actionable=True)

    return rule


def _quote_rule(event: WorkflowEvent) -> NotificationRule:
    if event.payload.get("isOverlimit"):
        return NotificationRule(
            NotificationType.WARNING,
            "OVERLIMIT: Quote Requires Special Approval",
            "Quote {quoteId} for {amount} exceeds the overlimit threshold.",
            actionable=True,
        )
    return NotificationRule(
        NotificationType.AWAITING,
        "Quote Ready for Approval",
        "Quote {quoteId} for {amount} ready for review. You can adjust, request updates, or approve.",
        actionable=True,
    )


def _mandate_retry_rule(event: WorkflowEvent) -> NotificationRule:
    remaining = event.payload.get("maxRetries", 0) - event.payload.get("retryCount", 0)
    return NotificationRule(
        NotificationType.WARNING if remaining <= 2 else NotificationType.INFO,
        "Mandate Reminder {retryCount}/{maxRetries}",
        "Mandate documents still outstanding after {retryCount} attempts.",
    )


def _escalation_rule(event: WorkflowEvent) -> NotificationRule:
    critical = event.payload.get("severity") == "critical"
    return NotificationRule(
        NotificationType.ERROR if critical else NotificationType.WARNING,
        "Management Escalation",
        "ESCALATION [{escalationType}]: {reason}",
        actionable=True,
    )


def _timeout_rule(event: WorkflowEvent) -> NotificationRule:
    if event.status == WorkflowStatus.PAUSED:
        return NotificationRule(
            NotificationType.PAUSED,
            "Workflow Paused",
            "No {kind} decision before the deadline. Resolve by {resumeBy}.",
            actionable=True,
        )
    if event.status == WorkflowStatus.FAILED:
        return NotificationRule(
            NotificationType.FAILED,
            "Workflow Timed Out",
            "Paused workflow was not resolved before {deadline}.",
            actionable=True,
        )
    return NotificationRule(
        NotificationType.TIMEOUT, "Decision Timed Out", "No {kind} decision before the deadline."
    )


def _override_rule(event: WorkflowEvent) -> Optional[NotificationRule]:
    if event.status != WorkflowStatus.FAILED:
        return None
    return NotificationRule(
        NotificationType.FAILED,
        "Workflow Cancelled",
        "Cancelled after the {resolves} decision timed out.",
        actionable=True,
    )


NOTIFICATION_RULES: Dict[EventType, Union[NotificationRule, RuleFn, None]] = {
    EventType.STAGE_CHANGE: _awaiting_rule("Action Required", "Waiting for {awaiting}."),
    EventType.AGENT_DISPATCH: None,
    EventType.AGENT_CALLBACK: None,
    EventType.HUMAN_OVERRIDE: _override_rule,
    EventType.TIMEOUT: _timeout_rule,
    EventType.ERROR: _error_rule,
    EventType.WORKFLOW_STARTED: NotificationRule(
        NotificationType.INFO, "Onboarding Started", "Onboarding started for applicant {applicantId}."
    ),
    EventType.RETRY_SCHEDULED: None,
    EventType.BUSINESS_TYPE_DETERMINED: None,
    EventType.DOCUMENTS_REQUESTED: NotificationRule(
        NotificationType.AWAITING,
        "Documents Requested",
        "Waiting for documents: {documents}.",
    ),
    EventType.DOCUMENTS_RECEIVED: None,
    EventType.VALIDATION_COMPLETED: None,
    EventType.SANCTIONS_COMPLETED: _awaiting_rule(
        "Sanctions Review Required", "Sanctions screening flagged matches: {matches}."
    ),
    EventType.SANCTION_CLEARED: NotificationRule(
        NotificationType.SUCCESS, "Sanctions Cleared", "Sanctions matches were cleared on review."
    ),
    EventType.RISK_ANALYSIS_COMPLETED: _awaiting_rule(
        "Risk Review Required", "Risk level {riskLevel} requires risk manager review."
    ),
    EventType.RISK_MANAGER_REVIEW: None,
    EventType.FINANCIAL_STATEMENTS_CONFIRMED: None,
    EventType.QUOTE_GENERATED: _quote_rule,
    EventType.QUOTE_APPROVED: None,
    EventType.QUOTE_SENT: NotificationRule(
        NotificationType.INFO, "Quote Sent", "Quote {quoteId} approved and sent to the applicant."
    ),
    EventType.QUOTE_ADJUSTED: None,
    EventType.QUOTE_NEEDS_UPDATE: NotificationRule(
        NotificationType.INFO, "Quote Update Requested", "A new quote will be generated."
    ),
    EventType.MANDATE_DETERMINED: None,
    EventType.MANDATE_VERIFIED: NotificationRule(
        NotificationType.SUCCESS, "Mandate Verified", "Mandate verified after {attempts} attempt(s)."
    ),
    EventType.MANDATE_RETRY: _mandate_retry_rule,
    EventType.MANDATE_COLLECTION_EXPIRED: NotificationRule(
        NotificationType.FAILED,
        "Mandate Collection Expired",
        "Mandate collection exhausted after {retryCount} attempts.",
        actionable=True,
    ),
    EventType.PROCUREMENT_CHECK_COMPLETED: _awaiting_rule(
        "Procurement Review Required", "Procurement check raised flags: {flags}."
    ),
    EventType.PROCUREMENT_DECISION: None,
    EventType.CONTRACT_DRAFT_REVIEWED: None,
    EventType.CONTRACT_SIGNED: None,
    EventType.ABSA_FORM_COMPLETED: None,
    EventType.TWO_FACTOR_APPROVAL_RISK_MANAGER: NotificationRule(
        NotificationType.INFO, "Risk Manager Approved", "Risk manager approval recorded."
    ),
    EventType.TWO_FACTOR_APPROVAL_ACCOUNT_MANAGER: NotificationRule(
        NotificationType.INFO, "Account Manager Approved", "Account manager approval recorded."
    ),
    EventType.FINAL_APPROVAL: None,
    EventType.WORKFLOW_COMPLETED: NotificationRule(
        NotificationType.COMPLETED, "Onboarding Complete", "All approvals received."
    ),
    EventType.KILL_SWITCH_EXECUTED: NotificationRule(
        NotificationType.TERMINATED, "Workflow Terminated", "Workflow terminated: {reason}."
    ),
    EventType.MANAGEMENT_ESCALATION: _escalation_rule,
}

_missing_rules = set(EventType) - set(NOTIFICATION_RULES)
if _missing_rules:  # pragma: no cover - import-time guard
    raise ConfigurationError(
        f"No notification rule for event types: {sorted(e.value for e in _missing_rules)}"
    )


def rule_for(event: WorkflowEvent) -> Optional[NotificationRule]:
    rule = NOTIFICATION_RULES[event.event_type]
    if rule is None or isinstance(rule, NotificationRule):
        return rule
    return rule(event)


class NotificationDispatcher:
    """Fire-and-forget notification outbox."""

    def __init__(self, repository: WorkflowRepository, max_attempts: int = 3) -> None:
        self._repository = repository
        self._max_attempts = max_attempts
        self._outbox: Deque[Tuple[Notification, int]] = deque()

    @property
    def pending(self) -> int:
        return len(self._outbox)

    def notify(
        self,
        instance: WorkflowInstance,
        type: NotificationType,
        title: str,
        message: str,
        actionable: bool = False,
    ) -> None:
        """Queue a notification for ``instance``'s applicant."""
        self._outbox.append(
            (
                Notification(
                    workflow_id=instance.id,
                    applicant_id=instance.applicant_id,
                    type=type,
                    title=title,
                    message=message,
                    actionable=actionable,
                ),
                0,
            )
        )

    def emit_for(self, event: WorkflowEvent, instance: WorkflowInstance) -> None:
        """Queue the notification ``event`` maps to, if any."""
        try:
            rule = rule_for(event)
            if rule is None:
                return
            type_, title, message, actionable = rule.render(event)
            self.notify(instance, type_, title.format_map(_Payload(event.payload)), message, actionable)
        except Exception:
            logger.exception(
                f"Failed to derive notification for {event.event_type.value} workflow={instance.id}"
            )

    async def flush(self) -> int:
        """Write queued notifications. Never raises; returns the number written."""
        written = 0
        retry: list[Tuple[Notification, int]] = []
        while self._outbox:
            notification, attempts = self._outbox.popleft()
            try:
                await self._repository.add_notification(notification)
                written += 1
            except Exception:
                attempts += 1
                if attempts < self._max_attempts:
                    retry.append((notification, attempts))
                    logger.warning(
                        f"Failed to write notification for workflow={notification.workflow_id} "
                        f"(attempt {attempts}); will retry on next flush"
                    )
                else:
                    logger.exception(
                        f"Dropping notification for workflow={notification.workflow_id} "
                        f"after {attempts} attempts"
                    )
        self._outbox.extend(retry)
        return written

    async def list_notifications(
        self, applicant_id: int, unread_only: bool = False
    ) -> list[Notification]:
        return await self._repository.list_notifications(applicant_id, unread_only)

    async def mark_read(self, notification_id: int) -> bool:
        return await self._repository.mark_notification_read(notification_id)
