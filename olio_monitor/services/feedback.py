"""
Feedback reconciliation.

Turns an answer to a clarification request or an authority notice into the
report's next state. Shares the workflow engine's session, clock and audit
writer so the answer and the status change commit together.
"""
from dataclasses import dataclass
from typing import Any, List, Optional

import structlog

from olio_monitor.models.audit import ActionLog, ActionLogType
from olio_monitor.models.domain import AuthorityNotice, ClarificationRequest, Report, ReportStateChange
from olio_monitor.models.enums import (
    AuthorityNoticeState,
    AuthorityType,
    ClarificationOutcome,
    ClarificationState,
    ReportStatus,
    Severity,
)
from olio_monitor.services.errors import (
    AlreadyAnswered,
    InvalidState,
    MissingField,
    NotFound,
    ValidationError,
)
from olio_monitor.services.side_entities import AuthorityNoticeMetadata
from olio_monitor.services.state_machine import ReportWorkflow

log = structlog.get_logger(__name__)


@dataclass
class FeedbackResult:
    report: Report
    answered: Any
    state_change: Optional[ReportStateChange]
    authority_notice: Optional[AuthorityNotice] = None
    action_log: Optional[ActionLog] = None


def _required_text(text: Optional[str]) -> str:
    text = (text or "").strip()
    if not text:
        raise ValidationError("Feedback text cannot be empty", field="feedback_text")
    return text


class FeedbackReconciler:
    """Records feedback and moves the report accordingly, in one commit."""

    def __init__(self, workflow: ReportWorkflow):
        self.workflow = workflow
        self.db = workflow.db
        self.clock = workflow.clock
        self.audit = workflow.audit

    def record_clarification_feedback(
        self,
        clarification_id: int,
        feedback_text: str,
        outcome: ClarificationOutcome,
        actor_id: str,
        authority_name: Optional[str] = None,
        protocol: Optional[str] = None,
        authority_type: AuthorityType = AuthorityType.OTHER,
        severity: Severity = Severity.MEDIUM,
        violations: Optional[List[str]] = None
    ) -> FeedbackResult:
        """
        Record the answer to a clarification request.

        Invariants:
        - a clarification is answered once
        - the report must still be waiting for clarifications
        - CLOSED closes the report with the feedback as closure reason
        - ESCALATED_TO_AUTHORITY notifies the named authority
        """
        feedback_text = _required_text(feedback_text)
        outcome = ClarificationOutcome(outcome)

        with self.workflow.unit_of_work():
            clarification = (
                self.db.query(ClarificationRequest)
                .filter(ClarificationRequest.id == clarification_id)
                .first()
            )
            if clarification is None:
                raise NotFound(
                    f"Clarification request {clarification_id} not found",
                    entity="ClarificationRequest",
                    id=clarification_id,
                )
            if clarification.is_answered:
                raise AlreadyAnswered(
                    f"Clarification request {clarification.id} already has feedback",
                    clarification_id=clarification.id,
                    answered_at=clarification.feedback_at.isoformat() if clarification.feedback_at else None,
                )

            report = self.workflow.load_report(clarification.report_id)
            if report.status != ReportStatus.CLARIFICATION_REQUESTED:
                raise InvalidState(
                    f"Report {report.id} is {report.status.value}, not waiting for clarifications",
                    report_id=report.id,
                    current_status=report.status.value,
                    required_status=[ReportStatus.CLARIFICATION_REQUESTED.value],
                )

            escalating = outcome == ClarificationOutcome.ESCALATED_TO_AUTHORITY
            if escalating and not (authority_name or "").strip():
                raise MissingField(
                    "authority_name is required to escalate to an authority",
                    field="authority_name",
                )

            now = self.clock()
            clarification.feedback = feedback_text
            clarification.feedback_at = now
            clarification.outcome = outcome
            clarification.state = ClarificationState.ANSWERED

            self.audit.append(
                report,
                type=ActionLogType.CLARIFICATION_FEEDBACK,
                message=f"Clarification feedback received: {feedback_text}",
                actor_id=actor_id,
                meta={
                    "clarification_id": clarification.id,
                    "outcome": outcome,
                    "from_status": report.status,
                    "to_status": report.status,
                },
            )

            notice = None
            if escalating:
                metadata = AuthorityNoticeMetadata(
                    authority_type=authority_type,
                    authority_name=authority_name,
                    subject=f"Clarification outcome for report #{report.id}: {report.title}",
                    violations=violations or [],
                    severity=severity,
                    protocol=protocol,
                )
                notice = self.workflow.factory.authority_notice(
                    report, metadata, actor_id, text=feedback_text
                )
                self.db.flush()
                message = f"Report notified to {notice.authority} after clarifications"
                if notice.protocol:
                    message += f" (protocol {notice.protocol})"
                state_change, entry = self.workflow.apply_transition(
                    report, ReportStatus.REPORTED_TO_AUTHORITY, message, actor_id,
                    metadata=metadata,
                    log_type=ActionLogType.AUTHORITY_NOTIFIED_AFTER_CLARIFICATION,
                    message=message,
                    extra_meta={
                        "clarification_id": clarification.id,
                        "authority_notice_id": notice.id,
                        "authority": notice.authority,
                        "protocol": notice.protocol,
                    },
                )
            else:
                self.workflow.factory.close(report, feedback_text)
                state_change, entry = self.workflow.apply_transition(
                    report, ReportStatus.CLOSED, feedback_text, actor_id,
                    log_type=ActionLogType.CLOSED_AFTER_CLARIFICATION,
                    message=f"Report closed after clarifications. {feedback_text}",
                    extra_meta={"clarification_id": clarification.id},
                )

        log.info(
            "clarification_feedback_recorded",
            clarification_id=clarification.id,
            report_id=report.id,
            outcome=outcome.value,
            actor_id=actor_id,
        )
        return FeedbackResult(report, clarification, state_change, notice, entry)

    def record_authority_feedback(
        self,
        notice_id: int,
        feedback_text: str,
        actor_id: str,
        close_case: bool = True
    ) -> FeedbackResult:
        """Record the authority's answer; by default this closes the case."""
        feedback_text = _required_text(feedback_text)

        with self.workflow.unit_of_work():
            notice = self.db.query(AuthorityNotice).filter(AuthorityNotice.id == notice_id).first()
            if notice is None:
                raise NotFound(
                    f"Authority notice {notice_id} not found",
                    entity="AuthorityNotice",
                    id=notice_id,
                )
            if not notice.is_pending:
                raise AlreadyAnswered(
                    f"Authority notice {notice.id} already has feedback",
                    authority_notice_id=notice.id,
                )

            report = self.workflow.load_report(notice.report_id)
            if report.status != ReportStatus.REPORTED_TO_AUTHORITY:
                raise InvalidState(
                    f"Report {report.id} is {report.status.value}, not waiting for the authority",
                    report_id=report.id,
                    current_status=report.status.value,
                    required_status=[ReportStatus.REPORTED_TO_AUTHORITY.value],
                )

            notice.feedback = feedback_text
            notice.feedback_at = self.clock()
            notice.state = AuthorityNoticeState.ANSWERED
            report.updated_at = notice.feedback_at

            entry = self.audit.append(
                report,
                type=ActionLogType.AUTHORITY_FEEDBACK,
                message=f"Feedback from {notice.authority}: {feedback_text}",
                actor_id=actor_id,
                meta={
                    "authority_notice_id": notice.id,
                    "authority": notice.authority,
                    "close_case": close_case,
                    "from_status": report.status,
                    "to_status": report.status,
                },
            )

            state_change = None
            if close_case:
                self.workflow.factory.close(report, feedback_text)
                state_change, entry = self.workflow.apply_transition(
                    report, ReportStatus.CLOSED, feedback_text, actor_id,
                    log_type=ActionLogType.CLOSED_AFTER_AUTHORITY_FEEDBACK,
                    message=f"Report closed after feedback from {notice.authority}",
                    extra_meta={"authority_notice_id": notice.id},
                )

        log.info(
            "authority_feedback_recorded",
            authority_notice_id=notice.id,
            report_id=report.id,
            closed=close_case,
            actor_id=actor_id,
        )
        return FeedbackResult(report, notice, state_change, None, entry)
