"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from olio_monitor.models.enums import (
    AuthorityNoticeState,
    AuthorityType,
    ClarificationOutcome,
    ClarificationState,
    InspectionState,
    InspectionType,
    RecipientCategory,
    ReportStatus,
    Severity,
)


# Report schemas
class ReportCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = ""
    status: ReportStatus = ReportStatus.IN_PROGRESS


class ReportResponse(BaseModel):
    id: int
    title: str
    description: str
    status: ReportStatus
    created_by_id: str
    closure_reason: Optional[str]
    closed_at: Optional[datetime]
    awaiting_authority_feedback: bool
    version: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class StateChangeResponse(BaseModel):
    id: int
    report_id: int
    from_status: ReportStatus
    to_status: ReportStatus
    motive: str
    note: Optional[str]
    meta: Optional[Dict[str, Any]]
    actor_id: str
    created_at: datetime

    class Config:
        from_attributes = True


class ActionLogResponse(BaseModel):
    id: int
    report_id: int
    type: str
    message: str
    actor_id: str
    meta: Optional[Dict[str, Any]]
    created_at: datetime

    class Config:
        from_attributes = True


# Transition schemas
class TransitionRequest(BaseModel):
    target_status: ReportStatus
    motive: str
    note: Optional[str] = None
    attachment_ids: List[int] = []
    metadata: Optional[Dict[str, Any]] = None
    expected_status: Optional[ReportStatus] = None


class TransitionResponse(BaseModel):
    report: ReportResponse
    state_change: Optional[StateChangeResponse]
    created_entity: Optional[Dict[str, Any]] = None


class AvailableTransition(BaseModel):
    status: ReportStatus
    description: str


# Inspection schemas
class InspectionCreate(BaseModel):
    inspection_type: InspectionType = InspectionType.SITE_VISIT
    date: datetime
    location: Optional[str] = None
    inspector_id: Optional[str] = None
    minutes_text: Optional[str] = None
    outcome: Optional[str] = None
    note: Optional[str] = None


class InspectionMinutes(BaseModel):
    minutes_text: str
    outcome: Optional[str] = None


class InspectionResponse(BaseModel):
    id: int
    report_id: int
    inspection_type: InspectionType
    date: datetime
    inspector_id: Optional[str]
    location: Optional[str]
    minutes_text: Optional[str]
    outcome: Optional[str]
    state: InspectionState
    created_by_id: str
    created_at: datetime

    class Config:
        from_attributes = True


# Clarification schemas
class ClarificationCreate(BaseModel):
    """Either structured `questions` or a single free-text `question`."""
    recipient_category: RecipientCategory = RecipientCategory.OTHER
    recipient_email: Optional[str] = None
    subject: Optional[str] = None
    questions: List[str] = []
    question: Optional[str] = None
    due_date: Optional[datetime] = None
    note: Optional[str] = None


class ClarificationFeedback(BaseModel):
    feedback_text: str
    outcome: ClarificationOutcome
    authority_name: Optional[str] = None
    authority_type: AuthorityType = AuthorityType.OTHER
    protocol: Optional[str] = None
    severity: Severity = Severity.MEDIUM
    violations: List[str] = []


class ClarificationResponse(BaseModel):
    id: int
    report_id: int
    recipient_category: RecipientCategory
    recipient_email: Optional[str]
    subject: str
    questions: List[str]
    question: str
    state: ClarificationState
    requested_by_id: str
    requested_at: datetime
    due_at: Optional[datetime]
    feedback: Optional[str]
    feedback_at: Optional[datetime]
    outcome: Optional[ClarificationOutcome]

    class Config:
        from_attributes = True


# Authority notice schemas
class AuthorityNoticeCreate(BaseModel):
    authority_type: AuthorityType = AuthorityType.OTHER
    authority_name: Optional[str] = None
    authority_email: Optional[str] = None
    subject: str = Field(..., min_length=1)
    violations: List[str] = []
    severity: Severity = Severity.MEDIUM
    protocol: Optional[str] = None
    note: Optional[str] = None


class AuthorityFeedback(BaseModel):
    feedback_text: str
    close_case: bool = True


class AuthorityNoticeResponse(BaseModel):
    id: int
    report_id: int
    authority_type: AuthorityType
    authority: str
    authority_email: Optional[str]
    subject: Optional[str]
    violations: List[str]
    severity: Severity
    protocol: Optional[str]
    text: Optional[str]
    state: AuthorityNoticeState
    sent_by_id: str
    sent_at: datetime
    feedback: Optional[str]
    feedback_at: Optional[datetime]

    class Config:
        from_attributes = True


# Inspection-driven shortcuts
class CloseFromInspection(BaseModel):
    note: str
    inspection_id: Optional[int] = None


class InspectionToAuthority(BaseModel):
    authority_name: Optional[str] = None
    authority_type: AuthorityType = AuthorityType.OTHER
    protocol: Optional[str] = None
    severity: Severity = Severity.MEDIUM
    violations: List[str] = []
    note: Optional[str] = None
    inspection_id: Optional[int] = None


class FeedbackResponse(BaseModel):
    report: ReportResponse
    state_change: Optional[StateChangeResponse]
    authority_notice: Optional[AuthorityNoticeResponse] = None


# Attachment schemas
class AttachmentCreate(BaseModel):
    report_id: int
    filename: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    inspection_id: Optional[int] = None
    clarification_id: Optional[int] = None
    authority_notice_id: Optional[int] = None


class AttachmentResponse(BaseModel):
    id: int
    report_id: int
    filename: str
    url: str
    uploaded_by_id: str
    uploaded_at: datetime
    inspection_id: Optional[int]
    clarification_id: Optional[int]
    authority_notice_id: Optional[int]
    state_change_id: Optional[int]

    class Config:
        from_attributes = True


class TransitionOverview(BaseModel):
    """Current status, legal next steps and the full history of a report."""
    report: ReportResponse
    current_status: ReportStatus
    available_transitions: List[AvailableTransition]
    awaiting_authority_feedback: bool
    state_changes: List[StateChangeResponse]
    inspections: List[InspectionResponse]
    clarifications: List[ClarificationResponse]
    authority_notices: List[AuthorityNoticeResponse]

    class Config:
        from_attributes = True


# Error response
class ErrorResponse(BaseModel):
    """Body of a refused operation. Extra keys carry what the caller needs to fix it."""
    code: str
    message: str
