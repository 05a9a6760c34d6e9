"""
Side-entity factory.

A transition may carry typed metadata declaring what it spawns. The metadata
is a closed tagged union on `type`:

    inspection        -> Inspection (PLANNED)
    clarification     -> ClarificationRequest (SENT)
    authority_notice  -> AuthorityNotice (PREPARED)
    close             -> no entity; stamps closure reason and timestamp

Entities are added to the session but never committed here: the workflow
engine owns the transaction.
"""
from datetime import date, datetime, timezone
from typing import Annotated, Any, Callable, ClassVar, List, Literal, Optional, Union

import structlog
from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from olio_monitor.models.domain import AuthorityNotice, ClarificationRequest, Inspection, Report
from olio_monitor.models.enums import (
    AuthorityNoticeState,
    AuthorityType,
    ClarificationState,
    InspectionState,
    InspectionType,
    RecipientCategory,
    ReportStatus,
    Severity,
)
from olio_monitor.services.errors import ConflictingPendingNotice, MissingField, ValidationError

log = structlog.get_logger(__name__)

CLOSURE_MOTIVE_MIN_LENGTH = 20


def _to_naive_utc(value: Any) -> Any:
    """Accept ISO strings, dates and aware datetimes; store naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime.combine(value, datetime.min.time())
    if isinstance(value, datetime) and value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _strip_or_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class InspectionMetadata(BaseModel):
    type: Literal["inspection"] = "inspection"
    inspection_type: InspectionType = InspectionType.SITE_VISIT
    date: datetime
    location: Optional[str] = None
    inspector_id: Optional[str] = None

    target_status: ClassVar[ReportStatus] = ReportStatus.UNDER_VERIFICATION

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, value: Any) -> Any:
        return _to_naive_utc(value)


class ClarificationMetadata(BaseModel):
    type: Literal["clarification"] = "clarification"
    recipient_category: RecipientCategory
    subject: str = Field(..., min_length=1)
    questions: List[str] = Field(..., min_length=1)
    due_date: Optional[datetime] = None
    recipient_email: Optional[str] = None

    target_status: ClassVar[ReportStatus] = ReportStatus.CLARIFICATION_REQUESTED

    @field_validator("due_date", mode="before")
    @classmethod
    def parse_due_date(cls, value: Any) -> Any:
        return _to_naive_utc(value)

    @field_validator("questions")
    @classmethod
    def questions_not_blank(cls, questions: List[str]) -> List[str]:
        cleaned = [q.strip() for q in questions if q and q.strip()]
        if not cleaned:
            raise ValueError("at least one non-empty question is required")
        return cleaned


class AuthorityNoticeMetadata(BaseModel):
    type: Literal["authority_notice"] = "authority_notice"
    authority_type: AuthorityType = AuthorityType.OTHER
    # Checked by the factory so its absence surfaces as MissingField
    authority_name: Optional[str] = None
    authority_email: Optional[str] = None
    subject: str = Field(..., min_length=1)
    violations: List[str] = Field(default_factory=list)
    severity: Severity = Severity.MEDIUM
    protocol: Optional[str] = None

    target_status: ClassVar[ReportStatus] = ReportStatus.REPORTED_TO_AUTHORITY


class CloseMetadata(BaseModel):
    type: Literal["close"] = "close"
    closure_motive: str

    target_status: ClassVar[ReportStatus] = ReportStatus.CLOSED

    @field_validator("closure_motive")
    @classmethod
    def motive_long_enough(cls, motive: str) -> str:
        motive = motive.strip()
        if len(motive) < CLOSURE_MOTIVE_MIN_LENGTH:
            raise ValueError(
                f"closure motive must be at least {CLOSURE_MOTIVE_MIN_LENGTH} characters"
            )
        return motive


TransitionMetadata = Annotated[
    Union[InspectionMetadata, ClarificationMetadata, AuthorityNoticeMetadata, CloseMetadata],
    Field(discriminator="type"),
]

METADATA_TYPES = ("inspection", "clarification", "authority_notice", "close")

_metadata_adapter = TypeAdapter(TransitionMetadata)


def field_errors(exc: PydanticValidationError) -> List[dict]:
    """Flatten pydantic errors into JSON-safe dicts."""
    return [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]


def parse_metadata(raw: Any) -> Optional[BaseModel]:
    """
    Turn a raw metadata payload into one of the typed variants.

    Returns None for no metadata or an unrecognised `type` (the transition is
    then a pure status change). Raises ValidationError for a recognised type
    with malformed fields.
    """
    if raw is None:
        return None
    if isinstance(raw, (InspectionMetadata, ClarificationMetadata, AuthorityNoticeMetadata, CloseMetadata)):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError("Transition metadata must be an object", metadata_type=None)
    if raw.get("type") not in METADATA_TYPES:
        if raw:
            log.debug("transition_metadata_ignored", metadata_type=raw.get("type"))
        return None
    try:
        return _metadata_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {raw['type']} metadata",
            metadata_type=raw["type"],
            errors=field_errors(e),
        )


class SideEntityFactory:
    """Builds the auxiliary record a transition declares in its metadata."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    def ensure_fits(self, metadata: Optional[BaseModel], target: ReportStatus) -> None:
        """Each metadata kind belongs to exactly one target status."""
        if metadata is None:
            return
        if metadata.target_status != target:
            raise ValidationError(
                f"{metadata.type} metadata cannot accompany a transition to {target.value}",
                metadata_type=metadata.type,
                expected_status=metadata.target_status.value,
                to_status=target.value,
            )

    def build(self, report: Report, metadata: Optional[BaseModel], actor_id: str):
        """Create the side-entity for `metadata`. Returns None when nothing is created."""
        if metadata is None:
            return None
        if isinstance(metadata, InspectionMetadata):
            return self.inspection(report, metadata, actor_id)
        if isinstance(metadata, ClarificationMetadata):
            return self.clarification(report, metadata, actor_id)
        if isinstance(metadata, AuthorityNoticeMetadata):
            return self.authority_notice(report, metadata, actor_id)
        if isinstance(metadata, CloseMetadata):
            self.close(report, metadata.closure_motive)
            return None
        raise TypeError(f"Unhandled metadata variant: {type(metadata).__name__}")

    def inspection(
        self,
        report: Report,
        metadata: InspectionMetadata,
        actor_id: str,
        minutes_text: Optional[str] = None,
        outcome: Optional[str] = None
    ) -> Inspection:
        minutes_text = _strip_or_none(minutes_text)
        inspection = Inspection(
            report=report,
            inspection_type=metadata.inspection_type,
            date=metadata.date,
            inspector_id=metadata.inspector_id or actor_id,
            location=metadata.location,
            minutes_text=minutes_text,
            outcome=outcome,
            state=InspectionState.COMPLETED if minutes_text else InspectionState.PLANNED,
            created_by_id=actor_id,
            created_at=self.clock(),
        )
        self.db.add(inspection)
        return inspection

    def clarification(
        self,
        report: Report,
        metadata: ClarificationMetadata,
        actor_id: str
    ) -> ClarificationRequest:
        clarification = ClarificationRequest(
            report=report,
            recipient_category=metadata.recipient_category,
            recipient_email=metadata.recipient_email,
            subject=metadata.subject,
            questions=list(metadata.questions),
            question="\n".join(metadata.questions),
            state=ClarificationState.SENT,
            requested_by_id=actor_id,
            requested_at=self.clock(),
            due_at=metadata.due_date,
        )
        self.db.add(clarification)
        return clarification

    def authority_notice(
        self,
        report: Report,
        metadata: AuthorityNoticeMetadata,
        actor_id: str,
        text: Optional[str] = None
    ) -> AuthorityNotice:
        """
        Invariants:
        - authority name is mandatory
        - no second notice while one is still waiting for feedback
        """
        authority = _strip_or_none(metadata.authority_name)
        if authority is None:
            raise MissingField(
                "authority_name is required to notify an authority",
                field="authority_name",
            )

        pending = report.pending_authority_notice
        if pending is not None:
            raise ConflictingPendingNotice(
                f"Report {report.id} already has a pending notice to {pending.authority}; "
                "record its feedback before sending another",
                report_id=report.id,
                pending_notice_id=pending.id,
            )

        notice = AuthorityNotice(
            report=report,
            authority_type=metadata.authority_type,
            authority=authority,
            authority_email=metadata.authority_email,
            subject=metadata.subject,
            violations=list(metadata.violations),
            severity=metadata.severity,
            protocol=_strip_or_none(metadata.protocol),
            text=text or f"Notice sent to {authority}",
            state=AuthorityNoticeState.PREPARED,
            sent_by_id=actor_id,
            sent_at=self.clock(),
        )
        self.db.add(notice)
        return notice

    def close(self, report: Report, closure_reason: str) -> None:
        report.closure_reason = closure_reason
        report.closed_at = self.clock()
