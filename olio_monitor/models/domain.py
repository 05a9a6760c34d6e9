"""Domain models - the report aggregate and the side-entities its transitions spawn."""
from datetime import datetime
from typing import List, Optional
from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, Enum as SQLEnum, JSON
from sqlalchemy.orm import relationship
from olio_monitor.database import Base
from olio_monitor.models.enums import (
    ReportStatus,
    InspectionState,
    InspectionType,
    ClarificationState,
    ClarificationOutcome,
    RecipientCategory,
    AuthorityNoticeState,
    AuthorityType,
    Severity
)


class Report(Base):
    """
    A compliance case: Draft/In progress → verification → clarifications/authority → Closed → Archived.

    Invariants enforced here:
    - Status is always one of the seven allowed states
    - Status only moves through the workflow engine (services layer)
    - version is bumped on every flush so stale writers are rejected
    """
    __tablename__ = "reports"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    status = Column(SQLEnum(ReportStatus), nullable=False, default=ReportStatus.IN_PROGRESS, index=True)
    created_by_id = Column(String, nullable=False)

    # Set when the case is closed
    closure_reason = Column(Text, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships (no delete cascade: reports are never hard-deleted)
    state_changes = relationship(
        "ReportStateChange", back_populates="report",
        order_by="ReportStateChange.id"
    )
    inspections = relationship(
        "Inspection", back_populates="report",
        order_by="Inspection.id"
    )
    clarifications = relationship(
        "ClarificationRequest", back_populates="report",
        order_by="ClarificationRequest.id"
    )
    authority_notices = relationship(
        "AuthorityNotice", back_populates="report",
        order_by="AuthorityNotice.id"
    )
    action_logs = relationship("ActionLog", back_populates="report", order_by="ActionLog.id")
    attachments = relationship("Attachment", back_populates="report", order_by="Attachment.id")

    @property
    def pending_authority_notice(self) -> Optional["AuthorityNotice"]:
        """The notice still waiting for the authority's reply, if any."""
        for notice in self.authority_notices:
            if notice.is_pending:
                return notice
        return None

    @property
    def awaiting_authority_feedback(self) -> bool:
        return self.pending_authority_notice is not None

    @property
    def completed_inspections(self) -> List["Inspection"]:
        """Inspections with recorded minutes, most recent first."""
        completed = [i for i in self.inspections if i.is_completed]
        return sorted(completed, key=lambda i: (i.date, i.id), reverse=True)


class ReportStateChange(Base):
    """
    One row per validated status change.

    Invariants:
    - Append-only
    - from_status → to_status is a legal edge at the time it was written
    """
    __tablename__ = "report_state_changes"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    report_id = Column(Integer, ForeignKey("reports.id"), nullable=False, index=True)
    from_status = Column(SQLEnum(ReportStatus), nullable=False)
    to_status = Column(SQLEnum(ReportStatus), nullable=False)
    motive = Column(Text, nullable=False)
    note = Column(Text, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    actor_id = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    report = relationship("Report", back_populates="state_changes")
    attachments = relationship("Attachment", back_populates="state_change")


class Inspection(Base):
    """
    A site visit or documentary check tied to one report.

    Invariants:
    - Completed means minutes_text is non-empty
    - Minutes are written once
    """
    __tablename__ = "inspections"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    report_id = Column(Integer, ForeignKey("reports.id"), nullable=False, index=True)
    inspection_type = Column(SQLEnum(InspectionType), nullable=False, default=InspectionType.SITE_VISIT)
    date = Column(DateTime, nullable=False)
    inspector_id = Column(String, nullable=True)
    location = Column(String, nullable=True)
    minutes_text = Column(Text, nullable=True)  # the "verbale"
    outcome = Column(Text, nullable=True)
    state = Column(SQLEnum(InspectionState), nullable=False, default=InspectionState.PLANNED)
    created_by_id = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    report = relationship("Report", back_populates="inspections")
    attachments = relationship("Attachment", back_populates="inspection")

    @property
    def is_completed(self) -> bool:
        return bool(self.minutes_text and self.minutes_text.strip())


class ClarificationRequest(Base):
    """
    A question sent to the subject of a report, waiting for a reply.

    Invariants:
    - feedback, feedback_at and outcome are written once, together
    """
    __tablename__ = "clarification_requests"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    report_id = Column(Integer, ForeignKey("reports.id"), nullable=False, index=True)
    recipient_category = Column(SQLEnum(RecipientCategory), nullable=False, default=RecipientCategory.OTHER)
    recipient_email = Column(String, nullable=True)
    subject = Column(String, nullable=False)
    questions = Column(JSON, nullable=False, default=list)
    question = Column(Text, nullable=False)
    state = Column(SQLEnum(ClarificationState), nullable=False, default=ClarificationState.SENT)
    requested_by_id = Column(String, nullable=False)
    requested_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    due_at = Column(DateTime, nullable=True)

    feedback = Column(Text, nullable=True)
    feedback_at = Column(DateTime, nullable=True)
    outcome = Column(SQLEnum(ClarificationOutcome), nullable=True)

    report = relationship("Report", back_populates="clarifications")
    attachments = relationship("Attachment", back_populates="clarification")

    @property
    def is_answered(self) -> bool:
        return self.feedback_at is not None or bool(self.feedback)


class AuthorityNotice(Base):
    """
    A formal notification to an external regulator.

    Invariants:
    - At most one pending (feedback-less) notice per report
    - Feedback is written once
    """
    __tablename__ = "authority_notices"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    report_id = Column(Integer, ForeignKey("reports.id"), nullable=False, index=True)
    authority_type = Column(SQLEnum(AuthorityType), nullable=False, default=AuthorityType.OTHER)
    authority = Column(String, nullable=False)
    authority_email = Column(String, nullable=True)
    subject = Column(String, nullable=True)
    violations = Column(JSON, nullable=False, default=list)
    severity = Column(SQLEnum(Severity), nullable=False, default=Severity.MEDIUM)
    protocol = Column(String, nullable=True)
    text = Column(Text, nullable=True)
    state = Column(SQLEnum(AuthorityNoticeState), nullable=False, default=AuthorityNoticeState.PREPARED)
    sent_by_id = Column(String, nullable=False)
    sent_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    feedback = Column(Text, nullable=True)
    feedback_at = Column(DateTime, nullable=True)

    report = relationship("Report", back_populates="authority_notices")
    attachments = relationship("Attachment", back_populates="authority_notice")

    @property
    def is_pending(self) -> bool:
        return self.feedback_at is None and not self.feedback


class Attachment(Base):
    """
    Evidence registered against a report. Owned by at most one side-entity,
    and optionally linked to the state change it was submitted with.
    """
    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    report_id = Column(Integer, ForeignKey("reports.id"), nullable=False, index=True)
    filename = Column(String, nullable=False)
    url = Column(String, nullable=False)
    uploaded_by_id = Column(String, nullable=False)
    uploaded_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # At most one owner
    inspection_id = Column(Integer, ForeignKey("inspections.id"), nullable=True)
    clarification_id = Column(Integer, ForeignKey("clarification_requests.id"), nullable=True)
    authority_notice_id = Column(Integer, ForeignKey("authority_notices.id"), nullable=True)

    state_change_id = Column(Integer, ForeignKey("report_state_changes.id"), nullable=True)

    report = relationship("Report", back_populates="attachments")
    inspection = relationship("Inspection", back_populates="attachments")
    clarification = relationship("ClarificationRequest", back_populates="attachments")
    authority_notice = relationship("AuthorityNotice", back_populates="attachments")
    state_change = relationship("ReportStateChange", back_populates="attachments")
