"""
Action log model - the report's audit trail.

Rows are appended by the AuditLogWriter and never edited or deleted.
The dashboard shows them as the report timeline.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, JSON
from sqlalchemy.orm import relationship
from olio_monitor.database import Base


class ActionLog(Base):
    """
    Immutable record of one significant operation on a report.

    Invariants:
    - Once written, never edited or deleted
    - meta carries from_status/to_status for every state-changing operation
    """
    __tablename__ = "action_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    report_id = Column(Integer, ForeignKey("reports.id"), nullable=False, index=True)
    type = Column(String, nullable=False, index=True)  # e.g., "CLOSED_AFTER_INSPECTION"
    message = Column(Text, nullable=False)
    actor_id = Column(String, nullable=False)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    report = relationship("Report", back_populates="action_logs")


class ActionLogType:
    """Type tags written to ActionLog.type."""
    REPORT_CREATED = "REPORT_CREATED"

    # Generic and per-edge status changes
    STATUS_CHANGED = "STATUS_CHANGED"
    WORK_STARTED = "WORK_STARTED"
    ARCHIVED = "ARCHIVED"
    VERIFICATION_STARTED = "VERIFICATION_STARTED"
    RETURNED_TO_WORK = "RETURNED_TO_WORK"
    CLOSED_AFTER_INSPECTION = "CLOSED_AFTER_INSPECTION"
    CLOSED_AFTER_CLARIFICATION = "CLOSED_AFTER_CLARIFICATION"
    CLOSED_AFTER_AUTHORITY_FEEDBACK = "CLOSED_AFTER_AUTHORITY_FEEDBACK"

    # Side-entity lifecycle
    INSPECTION_PLANNED = "INSPECTION_PLANNED"
    INSPECTION_MINUTES_RECORDED = "INSPECTION_MINUTES_RECORDED"
    CLARIFICATION_REQUESTED = "CLARIFICATION_REQUESTED"
    CLARIFICATION_FEEDBACK = "CLARIFICATION_FEEDBACK"
    AUTHORITY_NOTIFIED = "AUTHORITY_NOTIFIED"
    AUTHORITY_NOTIFIED_AFTER_INSPECTION = "AUTHORITY_NOTIFIED_AFTER_INSPECTION"
    AUTHORITY_NOTIFIED_AFTER_CLARIFICATION = "AUTHORITY_NOTIFIED_AFTER_CLARIFICATION"
    AUTHORITY_FEEDBACK = "AUTHORITY_FEEDBACK"
