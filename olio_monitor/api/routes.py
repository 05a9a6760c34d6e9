"""API routes for the report lifecycle."""
from contextlib import contextmanager
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from olio_monitor.database import get_db
from olio_monitor.models.audit import ActionLog
from olio_monitor.models.domain import AuthorityNotice, ClarificationRequest, Report
from olio_monitor.models.enums import ReportStatus
from olio_monitor.services.errors import (
    MissingField,
    NotFound,
    ValidationError,
    WorkflowError,
)
from olio_monitor.services.feedback import FeedbackReconciler
from olio_monitor.services.side_entities import (
    AuthorityNoticeMetadata,
    InspectionMetadata,
)
from olio_monitor.services.state_machine import ReportWorkflow, entity_kind
from olio_monitor.api.schemas import (
    ActionLogResponse,
    AttachmentCreate,
    AttachmentResponse,
    AuthorityFeedback,
    AuthorityNoticeCreate,
    AuthorityNoticeResponse,
    ClarificationCreate,
    ClarificationFeedback,
    ClarificationResponse,
    CloseFromInspection,
    ErrorResponse,
    FeedbackResponse,
    InspectionCreate,
    InspectionMinutes,
    InspectionResponse,
    InspectionToAuthority,
    ReportCreate,
    ReportResponse,
    StateChangeResponse,
    TransitionOverview,
    TransitionRequest,
    TransitionResponse,
)

log = structlog.get_logger(__name__)

router = APIRouter()

_HTTP_STATUS = {
    NotFound: status.HTTP_404_NOT_FOUND,
    ValidationError: 422,
    MissingField: 422,
}

_REFUSALS = {
    404: {"model": ErrorResponse, "description": "Report or related record not found"},
    409: {"model": ErrorResponse, "description": "Refused - illegal transition or wrong state"},
    422: {"model": ErrorResponse, "description": "Refused - invalid or missing data"},
}

_ENTITY_SCHEMAS = {
    "inspection": InspectionResponse,
    "clarification": ClarificationResponse,
    "authority_notice": AuthorityNoticeResponse,
}


def get_actor_id(x_actor_id: str = Header(..., min_length=1)) -> str:
    """Who is acting. Authentication happens upstream; we trust the header."""
    return x_actor_id


@contextmanager
def refusals():
    """Translate workflow errors into HTTP responses."""
    try:
        yield
    except WorkflowError as e:
        raise HTTPException(
            status_code=_HTTP_STATUS.get(type(e), status.HTTP_409_CONFLICT),
            detail=e.to_dict(),
        )
    except SQLAlchemyError:
        log.exception("request_failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "unexpected_failure", "message": "The operation could not be completed"},
        )


def _get_report(db: Session, report_id: int) -> Report:
    report = db.query(Report).filter(Report.id == report_id).first()
    if not report:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Report not found", "entity": "Report", "id": report_id},
        )
    return report


def _entity_payload(entity) -> Optional[dict]:
    kind = entity_kind(entity)
    if kind is None:
        return None
    schema = _ENTITY_SCHEMAS[kind]
    return {"kind": kind, **schema.model_validate(entity).model_dump(mode="json")}


def _transition_response(result) -> TransitionResponse:
    return TransitionResponse(
        report=ReportResponse.model_validate(result.report),
        state_change=StateChangeResponse.model_validate(result.state_change) if result.state_change else None,
        created_entity=_entity_payload(result.created_entity),
    )


def _feedback_response(result) -> FeedbackResponse:
    return FeedbackResponse(
        report=ReportResponse.model_validate(result.report),
        state_change=StateChangeResponse.model_validate(result.state_change) if result.state_change else None,
        authority_notice=(
            AuthorityNoticeResponse.model_validate(result.authority_notice)
            if result.authority_notice else None
        ),
    )


# Report endpoints
@router.post("/reports", response_model=ReportResponse, status_code=status.HTTP_201_CREATED, responses=_REFUSALS)
def create_report(data: ReportCreate, db: Session = Depends(get_db), actor_id: str = Depends(get_actor_id)):
    """Open a new report, IN_PROGRESS unless created as DRAFT."""
    with refusals():
        return ReportWorkflow(db).create_report(data.title, data.description, actor_id, status=data.status)


@router.get("/reports", response_model=List[ReportResponse])
def list_reports(
    status_filter: Optional[ReportStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db)
):
    """List reports, newest first."""
    query = db.query(Report)
    if status_filter is not None:
        query = query.filter(Report.status == status_filter)
    return query.order_by(Report.created_at.desc(), Report.id.desc()).offset((page - 1) * limit).limit(limit).all()


@router.get("/reports/{report_id}", response_model=ReportResponse)
def get_report(report_id: int, db: Session = Depends(get_db)):
    return _get_report(db, report_id)


@router.get("/reports/{report_id}/actions", response_model=List[ActionLogResponse])
def list_actions(report_id: int, db: Session = Depends(get_db)):
    """The report's timeline, oldest first."""
    _get_report(db, report_id)
    return (
        db.query(ActionLog)
        .filter(ActionLog.report_id == report_id)
        .order_by(ActionLog.created_at, ActionLog.id)
        .all()
    )


# Transition endpoints
@router.post("/reports/{report_id}/transition", response_model=TransitionResponse, responses=_REFUSALS)
def transition_report(
    report_id: int,
    data: TransitionRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id)
):
    """
    Move a report to another status.

    WILL REFUSE if:
    - the edge is not in the workflow (409, with the legal set)
    - the motive is blank or the metadata is malformed (422)
    - the report changed since `expected_status` was read (409)
    """
    with refusals():
        result = ReportWorkflow(db).transition(
            report_id,
            data.target_status,
            data.motive,
            actor_id,
            note=data.note,
            attachment_ids=data.attachment_ids,
            metadata=data.metadata,
            expected_status=data.expected_status,
        )
        return _transition_response(result)


@router.get("/reports/{report_id}/transition", response_model=TransitionOverview, responses=_REFUSALS)
def transition_overview(report_id: int, db: Session = Depends(get_db)):
    """Current status, where it can go next, and how it got here."""
    with refusals():
        overview = ReportWorkflow(db).transition_overview(report_id)
        return TransitionOverview.model_validate(overview, from_attributes=True)


# Inspection endpoints
@router.post(
    "/reports/{report_id}/inspections",
    response_model=TransitionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_REFUSALS,
)
def create_inspection(
    report_id: int,
    data: InspectionCreate,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id)
):
    """Plan an inspection (or record a completed one when minutes are given)."""
    metadata = InspectionMetadata(
        inspection_type=data.inspection_type,
        date=data.date,
        location=data.location,
        inspector_id=data.inspector_id,
    )
    with refusals():
        result = ReportWorkflow(db).create_inspection(
            report_id, actor_id, metadata,
            minutes_text=data.minutes_text,
            outcome=data.outcome,
            note=data.note,
        )
        return _transition_response(result)


@router.get("/reports/{report_id}/inspections", response_model=List[InspectionResponse])
def list_inspections(report_id: int, db: Session = Depends(get_db)):
    return _get_report(db, report_id).inspections


@router.post("/inspections/{inspection_id}/minutes", response_model=InspectionResponse, responses=_REFUSALS)
def record_minutes(
    inspection_id: int,
    data: InspectionMinutes,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id)
):
    """Record the minutes of a planned inspection. Minutes are written once."""
    with refusals():
        return ReportWorkflow(db).record_inspection_minutes(
            inspection_id, data.minutes_text, actor_id, outcome=data.outcome
        )


@router.post(
    "/reports/{report_id}/close-from-inspection",
    response_model=TransitionResponse,
    responses=_REFUSALS,
)
def close_from_inspection(
    report_id: int,
    data: CloseFromInspection,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id)
):
    """
    Close a report after verification.

    WILL REFUSE if:
    - the report is not UNDER_VERIFICATION
    - no inspection has minutes recorded
    """
    with refusals():
        result = ReportWorkflow(db).close_from_inspection(
            report_id, actor_id, data.note, inspection_id=data.inspection_id
        )
        return _transition_response(result)


@router.post(
    "/reports/{report_id}/inspection-to-authority",
    response_model=TransitionResponse,
    responses=_REFUSALS,
)
def inspection_to_authority(
    report_id: int,
    data: InspectionToAuthority,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id)
):
    """Escalate to an authority on the findings of a completed inspection."""
    with refusals():
        result = ReportWorkflow(db).escalate_from_inspection(
            report_id,
            actor_id,
            data.authority_name,
            note=data.note,
            protocol=data.protocol,
            inspection_id=data.inspection_id,
            authority_type=data.authority_type,
            severity=data.severity,
            violations=data.violations,
        )
        return _transition_response(result)


# Clarification endpoints
@router.post(
    "/reports/{report_id}/clarifications",
    response_model=TransitionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_REFUSALS,
)
def request_clarification(
    report_id: int,
    data: ClarificationCreate,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id)
):
    """Ask the reported party for clarifications."""
    with refusals():
        workflow = ReportWorkflow(db)
        if data.questions or data.subject:
            metadata = {
                "recipient_category": data.recipient_category,
                "recipient_email": data.recipient_email,
                "subject": data.subject or f"Clarification on report #{report_id}",
                "questions": data.questions or ([data.question] if data.question else []),
                "due_date": data.due_date,
            }
        else:
            metadata = data.question or ""
        result = workflow.request_clarification(report_id, actor_id, metadata, note=data.note)
        return _transition_response(result)


@router.get("/reports/{report_id}/clarifications", response_model=List[ClarificationResponse])
def list_clarifications(report_id: int, db: Session = Depends(get_db)):
    return _get_report(db, report_id).clarifications


@router.get("/clarifications/{clarification_id}", response_model=ClarificationResponse)
def get_clarification(clarification_id: int, db: Session = Depends(get_db)):
    clarification = db.query(ClarificationRequest).filter(ClarificationRequest.id == clarification_id).first()
    if not clarification:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Clarification not found"})
    return clarification


@router.post("/clarifications/{clarification_id}/feedback", response_model=FeedbackResponse, responses=_REFUSALS)
def clarification_feedback(
    clarification_id: int,
    data: ClarificationFeedback,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id)
):
    """
    Record the answer to a clarification request.

    CLOSED closes the report; ESCALATED_TO_AUTHORITY notifies `authority_name`.
    """
    with refusals():
        result = FeedbackReconciler(ReportWorkflow(db)).record_clarification_feedback(
            clarification_id,
            data.feedback_text,
            data.outcome,
            actor_id,
            authority_name=data.authority_name,
            protocol=data.protocol,
            authority_type=data.authority_type,
            severity=data.severity,
            violations=data.violations,
        )
        return _feedback_response(result)


# Authority notice endpoints
@router.post(
    "/reports/{report_id}/authority-notices",
    response_model=TransitionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_REFUSALS,
)
def notify_authority(
    report_id: int,
    data: AuthorityNoticeCreate,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id)
):
    """
    Notify an authority.

    WILL REFUSE if:
    - the report is DRAFT or ARCHIVED, or cannot move to REPORTED_TO_AUTHORITY (409)
    - authority_name is missing (422)
    - a previous notice is still waiting for feedback (409)
    """
    metadata = AuthorityNoticeMetadata(
        authority_type=data.authority_type,
        authority_name=data.authority_name,
        authority_email=data.authority_email,
        subject=data.subject,
        violations=data.violations,
        severity=data.severity,
        protocol=data.protocol,
    )
    with refusals():
        result = ReportWorkflow(db).notify_authority(report_id, actor_id, metadata, note=data.note)
        return _transition_response(result)


@router.get("/reports/{report_id}/authority-notices", response_model=List[AuthorityNoticeResponse])
def list_authority_notices(report_id: int, db: Session = Depends(get_db)):
    return _get_report(db, report_id).authority_notices


@router.get("/authority-notices/{notice_id}", response_model=AuthorityNoticeResponse)
def get_authority_notice(notice_id: int, db: Session = Depends(get_db)):
    notice = db.query(AuthorityNotice).filter(AuthorityNotice.id == notice_id).first()
    if not notice:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Authority notice not found"})
    return notice


@router.post("/authority-notices/{notice_id}/feedback", response_model=FeedbackResponse, responses=_REFUSALS)
def authority_feedback(
    notice_id: int,
    data: AuthorityFeedback,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id)
):
    """Record the authority's answer; closes the case unless close_case is false."""
    with refusals():
        result = FeedbackReconciler(ReportWorkflow(db)).record_authority_feedback(
            notice_id, data.feedback_text, actor_id, close_case=data.close_case
        )
        return _feedback_response(result)


# Attachment endpoints
@router.post("/attachments", response_model=AttachmentResponse, status_code=status.HTTP_201_CREATED, responses=_REFUSALS)
def register_attachment(
    data: AttachmentCreate,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id)
):
    """Register an uploaded file. Storage itself happens elsewhere."""
    with refusals():
        return ReportWorkflow(db).register_attachment(
            data.report_id,
            data.filename,
            data.url,
            actor_id,
            inspection_id=data.inspection_id,
            clarification_id=data.clarification_id,
            authority_notice_id=data.authority_notice_id,
        )


@router.get("/reports/{report_id}/attachments", response_model=List[AttachmentResponse])
def list_attachments(report_id: int, db: Session = Depends(get_db)):
    return _get_report(db, report_id).attachments
