"""
Report workflow engine.

This is the core enforcement mechanism - every report status change MUST go
through here. Each public operation is one unit of work: it validates,
builds the side-entity, moves the status, writes the state-change record and
the action log, and commits once. Any failure rolls everything back.
"""
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from olio_monitor.models.audit import ActionLog, ActionLogType
from olio_monitor.models.domain import (
    Attachment,
    AuthorityNotice,
    ClarificationRequest,
    Inspection,
    Report,
    ReportStateChange,
)
from olio_monitor.models.enums import (
    AuthorityType,
    InspectionState,
    RecipientCategory,
    ReportStatus,
    Severity,
)
from olio_monitor.services.audit import AuditLogWriter, _jsonable
from olio_monitor.services.errors import (
    ConcurrentModification,
    InvalidState,
    NotFound,
    ValidationError,
    WorkflowError,
)
from olio_monitor.services.side_entities import (
    AuthorityNoticeMetadata,
    ClarificationMetadata,
    InspectionMetadata,
    SideEntityFactory,
    field_errors,
    parse_metadata,
)
from olio_monitor.services.transitions import (
    action_type_for,
    describe_transition,
    ensure_legal,
    sorted_transitions,
)

log = structlog.get_logger(__name__)

INITIAL_STATUSES = (ReportStatus.IN_PROGRESS, ReportStatus.DRAFT)
CLARIFICATION_ALLOWED_FROM = (ReportStatus.IN_PROGRESS, ReportStatus.CLARIFICATION_REQUESTED)
INSPECTION_ALLOWED_FROM = (ReportStatus.IN_PROGRESS, ReportStatus.UNDER_VERIFICATION)
NOTIFY_FORBIDDEN_FROM = (ReportStatus.DRAFT, ReportStatus.ARCHIVED)

_ENTITY_KINDS = {
    Inspection: "inspection",
    ClarificationRequest: "clarification",
    AuthorityNotice: "authority_notice",
}


@dataclass
class TransitionResult:
    """What a workflow operation produced. state_change is None when the status did not move."""
    report: Report
    state_change: Optional[ReportStateChange]
    created_entity: Optional[Any] = None
    action_log: Optional[ActionLog] = None


def entity_kind(entity: Any) -> Optional[str]:
    if entity is None:
        return None
    return _ENTITY_KINDS.get(type(entity))


def _clean(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = text.strip()
    return text or None


class ReportWorkflow:
    """Enforces the report lifecycle: legal transitions, side-entities and audit."""

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = datetime.utcnow,
        audit: Optional[AuditLogWriter] = None
    ):
        self.db = db
        self.clock = clock
        self.audit = audit or AuditLogWriter(db, clock)
        self.factory = SideEntityFactory(db, clock)

    # ------------------------------------------------------------------
    # Transaction and loading helpers
    # ------------------------------------------------------------------

    @contextmanager
    def unit_of_work(self):
        """Commit once on success; roll back everything on any failure."""
        try:
            yield
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            log.warning("report_write_conflict", error=str(e))
            raise ConcurrentModification(
                "The report was modified by another request; reload it and retry"
            ) from e
        except WorkflowError as e:
            self.db.rollback()
            log.warning("transition_refused", code=e.code, reason=e.message, **_jsonable(e.details))
            raise
        except SQLAlchemyError:
            self.db.rollback()
            log.exception("workflow_persistence_failed")
            raise
        except Exception:
            self.db.rollback()
            raise

    def load_report(self, report_id: int, lock: bool = True) -> Report:
        """Load a report, row-locked where the backend supports it."""
        query = self.db.query(Report).filter(Report.id == report_id)
        if lock:
            query = query.with_for_update()
        report = query.first()
        if report is None:
            raise NotFound(f"Report {report_id} not found", entity="Report", id=report_id)
        return report

    def _require_status(
        self,
        report: Report,
        allowed: Iterable[ReportStatus],
        operation: str
    ) -> None:
        allowed = list(allowed)
        if report.status not in allowed:
            raise InvalidState(
                f"Cannot {operation} while the report is {report.status.value}. "
                f"Required: {' or '.join(s.value for s in allowed)}",
                report_id=report.id,
                current_status=report.status.value,
                required_status=[s.value for s in allowed],
            )

    def _parse_as(self, raw: Any, model: Type[BaseModel]) -> BaseModel:
        if isinstance(raw, model):
            return raw
        try:
            return model.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid {model.model_fields['type'].default} metadata",
                errors=field_errors(e),
            )

    def _referenced_inspection(self, report: Report, inspection_id: Optional[int]) -> Inspection:
        """The explicit completed inspection, or the most recent completed one."""
        completed = report.completed_inspections
        if not completed:
            raise InvalidState(
                "At least one inspection with recorded minutes is required",
                report_id=report.id,
                current_status=report.status.value,
                total_inspections=len(report.inspections),
                completed_inspections=0,
            )
        if inspection_id is None:
            return completed[0]
        for inspection in completed:
            if inspection.id == inspection_id:
                return inspection
        raise InvalidState(
            f"Inspection {inspection_id} is not a completed inspection of report {report.id}",
            report_id=report.id,
            inspection_id=inspection_id,
        )

    def _load_attachments(self, report: Report, attachment_ids: Optional[List[int]]) -> List[Attachment]:
        if not attachment_ids:
            return []
        ids = list(dict.fromkeys(attachment_ids))
        attachments = self.db.query(Attachment).filter(Attachment.id.in_(ids)).all()
        found = {a.id for a in attachments}
        missing = [i for i in ids if i not in found]
        if missing:
            raise NotFound(
                f"Attachments not found: {', '.join(str(i) for i in missing)}",
                entity="Attachment",
                ids=missing,
            )
        foreign = [a.id for a in attachments if a.report_id != report.id]
        if foreign:
            raise ValidationError(
                f"Attachments {', '.join(str(i) for i in foreign)} belong to another report",
                field="attachment_ids",
                attachment_ids=foreign,
            )
        return attachments

    # ------------------------------------------------------------------
    # Writes (caller owns the transaction)
    # ------------------------------------------------------------------

    def apply_transition(
        self,
        report: Report,
        target: ReportStatus,
        motive: str,
        actor_id: str,
        note: Optional[str] = None,
        metadata: Any = None,
        log_type: Optional[str] = None,
        message: Optional[str] = None,
        extra_meta: Optional[Dict[str, Any]] = None
    ) -> Tuple[ReportStateChange, ActionLog]:
        """
        Move the report to `target` and record it.

        Checks the edge against the adjacency map but does not commit: callers
        run inside unit_of_work().
        """
        from_status = report.status
        ensure_legal(from_status, target)
        now = self.clock()

        if isinstance(metadata, BaseModel):
            metadata = metadata.model_dump(mode="json")

        state_change = ReportStateChange(
            report=report,
            from_status=from_status,
            to_status=target,
            motive=motive,
            note=note,
            meta=_jsonable(metadata) if metadata else None,
            actor_id=actor_id,
            created_at=now,
        )
        self.db.add(state_change)

        report.status = target
        report.updated_at = now
        if target == ReportStatus.CLOSED:
            report.closed_at = now
            if not report.closure_reason:
                report.closure_reason = motive

        meta = {"from_status": from_status, "to_status": target, "motive": motive}
        if note:
            meta["note"] = note
        meta.update(extra_meta or {})
        entry = self.audit.append(
            report,
            type=log_type or action_type_for(from_status, target),
            message=message or note or describe_transition(from_status, target),
            actor_id=actor_id,
            meta=meta,
        )
        log.info(
            "report_transitioned",
            report_id=report.id,
            from_status=from_status.value,
            to_status=target.value,
            actor_id=actor_id,
        )
        return state_change, entry

    def _move(
        self,
        report: Report,
        target: ReportStatus,
        motive: str,
        actor_id: str,
        log_type: str,
        message: str,
        note: Optional[str] = None,
        metadata: Any = None,
        extra_meta: Optional[Dict[str, Any]] = None
    ) -> Tuple[Optional[ReportStateChange], ActionLog]:
        """apply_transition, or just an action log entry when the report is already in `target`."""
        if report.status != target:
            return self.apply_transition(
                report, target, motive, actor_id,
                note=note, metadata=metadata, log_type=log_type,
                message=message, extra_meta=extra_meta,
            )
        report.updated_at = self.clock()
        meta = {"from_status": report.status, "to_status": report.status}
        if note:
            meta["note"] = note
        meta.update(extra_meta or {})
        entry = self.audit.append(report, type=log_type, message=message, actor_id=actor_id, meta=meta)
        return None, entry

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def create_report(
        self,
        title: str,
        description: str,
        actor_id: str,
        status: ReportStatus = ReportStatus.IN_PROGRESS
    ) -> Report:
        """Open a new case. Only IN_PROGRESS and DRAFT are valid starting states."""
        status = ReportStatus(status)
        with self.unit_of_work():
            if status not in INITIAL_STATUSES:
                raise ValidationError(
                    f"A report cannot be created in state {status.value}",
                    field="status",
                    allowed=[s.value for s in INITIAL_STATUSES],
                )
            title = _clean(title)
            if title is None:
                raise ValidationError("A title is required", field="title")

            now = self.clock()
            report = Report(
                title=title,
                description=(description or "").strip(),
                status=status,
                created_by_id=actor_id,
                created_at=now,
                updated_at=now,
            )
            self.db.add(report)
            self.db.flush()
            self.audit.append(
                report,
                type=ActionLogType.REPORT_CREATED,
                message="New report created" if status == ReportStatus.DRAFT
                else "New report created and put in progress",
                actor_id=actor_id,
                meta={"initial_status": status},
            )
        log.info("report_created", report_id=report.id, status=status.value, actor_id=actor_id)
        return report

    def transition(
        self,
        report_id: int,
        target_status: ReportStatus,
        motive: str,
        actor_id: str,
        note: Optional[str] = None,
        attachment_ids: Optional[List[int]] = None,
        metadata: Any = None,
        expected_status: Optional[ReportStatus] = None
    ) -> TransitionResult:
        """
        Apply a validated status change, with at most one side-entity.

        Refusal order: NotFound, ConcurrentModification (expected_status),
        InvalidTransition, ValidationError (motive / metadata / attachments),
        then the factory's own refusals.
        """
        try:
            target = ReportStatus(target_status)
        except ValueError:
            raise ValidationError(f"Unknown status: {target_status}", field="target_status")

        with self.unit_of_work():
            report = self.load_report(report_id)
            current = report.status

            if expected_status is not None and ReportStatus(expected_status) != current:
                raise ConcurrentModification(
                    f"Report {report.id} is now {current.value}, not {ReportStatus(expected_status).value}",
                    report_id=report.id,
                    expected_status=ReportStatus(expected_status).value,
                    current_status=current.value,
                )

            ensure_legal(current, target)

            motive = _clean(motive)
            if motive is None:
                raise ValidationError("A motive is required for every transition", field="motive")
            note = _clean(note)

            parsed = parse_metadata(metadata)
            self.factory.ensure_fits(parsed, target)
            attachments = self._load_attachments(report, attachment_ids)

            created = self.factory.build(report, parsed, actor_id)
            extra_meta: Dict[str, Any] = {}
            if created is not None:
                self.db.flush()
                kind = entity_kind(created)
                extra_meta = {"created_entity": kind, f"{kind}_id": created.id}
            if attachments:
                extra_meta["attachment_ids"] = [a.id for a in attachments]

            message = note or describe_transition(current, target)
            if created is not None:
                message = f"{message} ({entity_kind(created).replace('_', ' ')} #{created.id} created)"

            state_change, entry = self.apply_transition(
                report, target, motive, actor_id,
                note=note,
                metadata=parsed if parsed is not None else metadata,
                message=message,
                extra_meta=extra_meta,
            )
            for attachment in attachments:
                attachment.state_change = state_change

        return TransitionResult(report, state_change, created, entry)

    def request_clarification(
        self,
        report_id: int,
        actor_id: str,
        metadata: Any,
        note: Optional[str] = None
    ) -> TransitionResult:
        """Send a clarification request; the report lands in CLARIFICATION_REQUESTED."""
        with self.unit_of_work():
            report = self.load_report(report_id)
            self._require_status(report, CLARIFICATION_ALLOWED_FROM, "request clarifications")
            if isinstance(metadata, str):
                # Free-text request: one question to an unspecified recipient
                question = _clean(metadata)
                if question is None:
                    raise ValidationError("Clarification text cannot be empty", field="question")
                metadata = {
                    "recipient_category": RecipientCategory.OTHER,
                    "subject": f"Clarification on report #{report.id}",
                    "questions": [question],
                }
            parsed = self._parse_as(metadata, ClarificationMetadata)

            clarification = self.factory.clarification(report, parsed, actor_id)
            self.db.flush()

            due = f" by {parsed.due_date.date().isoformat()}" if parsed.due_date else ""
            state_change, entry = self._move(
                report, ReportStatus.CLARIFICATION_REQUESTED,
                motive=f"Clarification requested: {parsed.subject}",
                actor_id=actor_id,
                log_type=ActionLogType.CLARIFICATION_REQUESTED,
                message=f"Clarifications requested{due}",
                note=_clean(note),
                metadata=parsed,
                extra_meta={
                    "clarification_id": clarification.id,
                    "recipient_category": parsed.recipient_category,
                    "questions": parsed.questions,
                    "due_at": parsed.due_date,
                },
            )
        return TransitionResult(report, state_change, clarification, entry)

    def create_inspection(
        self,
        report_id: int,
        actor_id: str,
        metadata: Any,
        minutes_text: Optional[str] = None,
        outcome: Optional[str] = None,
        note: Optional[str] = None
    ) -> TransitionResult:
        """Plan (or record) an inspection; the report lands in UNDER_VERIFICATION."""
        with self.unit_of_work():
            report = self.load_report(report_id)
            self._require_status(report, INSPECTION_ALLOWED_FROM, "create an inspection")
            parsed = self._parse_as(metadata, InspectionMetadata)

            inspection = self.factory.inspection(
                report, parsed, actor_id, minutes_text=minutes_text, outcome=_clean(outcome)
            )
            self.db.flush()

            if inspection.is_completed:
                log_type = ActionLogType.INSPECTION_MINUTES_RECORDED
                message = f"Inspection completed at {parsed.location or 'unspecified location'}"
                if inspection.outcome:
                    message += f" - outcome: {inspection.outcome}"
            else:
                log_type = ActionLogType.INSPECTION_PLANNED
                message = f"Inspection planned for {parsed.date.date().isoformat()}"
                if parsed.location:
                    message += f" at {parsed.location}"

            state_change, entry = self._move(
                report, ReportStatus.UNDER_VERIFICATION,
                motive=message,
                actor_id=actor_id,
                log_type=log_type,
                message=message,
                note=_clean(note),
                metadata=parsed,
                extra_meta={
                    "inspection_id": inspection.id,
                    "inspector_id": inspection.inspector_id,
                    "location": inspection.location,
                    "outcome": inspection.outcome,
                    "has_minutes": inspection.is_completed,
                },
            )
        return TransitionResult(report, state_change, inspection, entry)

    def record_inspection_minutes(
        self,
        inspection_id: int,
        minutes_text: str,
        actor_id: str,
        outcome: Optional[str] = None
    ) -> Inspection:
        """
        Record the minutes ("verbale") of a planned inspection.

        Invariants:
        - minutes are written once
        - only while the report is UNDER_VERIFICATION
        """
        with self.unit_of_work():
            inspection = self.db.query(Inspection).filter(Inspection.id == inspection_id).first()
            if inspection is None:
                raise NotFound(f"Inspection {inspection_id} not found", entity="Inspection", id=inspection_id)

            report = self.load_report(inspection.report_id)
            self._require_status(report, [ReportStatus.UNDER_VERIFICATION], "record inspection minutes")
            if inspection.is_completed:
                raise InvalidState(
                    f"Inspection {inspection.id} already has minutes",
                    inspection_id=inspection.id,
                )
            minutes_text = _clean(minutes_text)
            if minutes_text is None:
                raise ValidationError("Minutes text cannot be empty", field="minutes_text")

            inspection.minutes_text = minutes_text
            inspection.outcome = _clean(outcome) or inspection.outcome
            inspection.state = InspectionState.COMPLETED
            report.updated_at = self.clock()

            message = f"Inspection minutes recorded for {inspection.location or 'unspecified location'}"
            if inspection.outcome:
                message += f" - outcome: {inspection.outcome}"
            self.audit.append(
                report,
                type=ActionLogType.INSPECTION_MINUTES_RECORDED,
                message=message,
                actor_id=actor_id,
                meta={
                    "inspection_id": inspection.id,
                    "from_status": report.status,
                    "to_status": report.status,
                    "outcome": inspection.outcome,
                },
            )
        log.info("inspection_minutes_recorded", inspection_id=inspection.id, report_id=report.id)
        return inspection

    def notify_authority(
        self,
        report_id: int,
        actor_id: str,
        metadata: Any,
        note: Optional[str] = None
    ) -> TransitionResult:
        """Send a notice to an authority; the report lands in REPORTED_TO_AUTHORITY."""
        with self.unit_of_work():
            report = self.load_report(report_id)
            if report.status in NOTIFY_FORBIDDEN_FROM:
                raise InvalidState(
                    f"Cannot notify an authority while the report is {report.status.value}",
                    report_id=report.id,
                    current_status=report.status.value,
                    forbidden_status=[s.value for s in NOTIFY_FORBIDDEN_FROM],
                )
            if report.status != ReportStatus.REPORTED_TO_AUTHORITY:
                ensure_legal(report.status, ReportStatus.REPORTED_TO_AUTHORITY)
            parsed = self._parse_as(metadata, AuthorityNoticeMetadata)
            note = _clean(note)

            notice = self.factory.authority_notice(report, parsed, actor_id, text=note)
            self.db.flush()

            message = f"Report notified to {notice.authority}"
            if notice.protocol:
                message += f" (protocol {notice.protocol})"
            if note:
                message += f". {note}"

            state_change, entry = self._move(
                report, ReportStatus.REPORTED_TO_AUTHORITY,
                motive=message,
                actor_id=actor_id,
                log_type=ActionLogType.AUTHORITY_NOTIFIED,
                message=message,
                note=note,
                metadata=parsed,
                extra_meta={
                    "authority_notice_id": notice.id,
                    "authority": notice.authority,
                    "protocol": notice.protocol,
                    "severity": notice.severity,
                },
            )
        return TransitionResult(report, state_change, notice, entry)

    def close_from_inspection(
        self,
        report_id: int,
        actor_id: str,
        note: str,
        inspection_id: Optional[int] = None
    ) -> TransitionResult:
        """Close a case on the strength of a completed inspection."""
        with self.unit_of_work():
            report = self.load_report(report_id)
            self._require_status(report, [ReportStatus.UNDER_VERIFICATION], "close from inspection")
            inspection = self._referenced_inspection(report, inspection_id)
            note = _clean(note)
            if note is None:
                raise ValidationError("A note is required to close a report", field="note")

            self.factory.close(report, note)
            state_change, entry = self.apply_transition(
                report, ReportStatus.CLOSED, note, actor_id,
                note=note,
                log_type=ActionLogType.CLOSED_AFTER_INSPECTION,
                message=f"Report closed after inspection #{inspection.id}. {note}",
                extra_meta={
                    "referenced_inspection_id": inspection.id,
                    "inspection_date": inspection.date,
                    "inspection_location": inspection.location,
                    "inspection_outcome": inspection.outcome,
                    "total_inspections": len(report.inspections),
                    "completed_inspections": len(report.completed_inspections),
                },
            )
        return TransitionResult(report, state_change, None, entry)

    def escalate_from_inspection(
        self,
        report_id: int,
        actor_id: str,
        authority_name: Optional[str],
        note: Optional[str] = None,
        protocol: Optional[str] = None,
        inspection_id: Optional[int] = None,
        authority_type: AuthorityType = AuthorityType.OTHER,
        severity: Severity = Severity.MEDIUM,
        violations: Optional[List[str]] = None
    ) -> TransitionResult:
        """Escalate to an authority on the strength of a completed inspection."""
        with self.unit_of_work():
            report = self.load_report(report_id)
            self._require_status(report, [ReportStatus.UNDER_VERIFICATION], "escalate from inspection")
            inspection = self._referenced_inspection(report, inspection_id)
            note = _clean(note)

            metadata = AuthorityNoticeMetadata(
                authority_type=authority_type,
                authority_name=authority_name,
                subject=f"Inspection findings for report #{report.id}: {report.title}",
                violations=violations or [],
                severity=severity,
                protocol=protocol,
            )
            notice = self.factory.authority_notice(report, metadata, actor_id, text=note)
            self.db.flush()

            message = f"Report notified to {notice.authority} after inspection #{inspection.id}"
            if note:
                message += f". {note}"
            state_change, entry = self.apply_transition(
                report, ReportStatus.REPORTED_TO_AUTHORITY, message, actor_id,
                note=note,
                metadata=metadata,
                log_type=ActionLogType.AUTHORITY_NOTIFIED_AFTER_INSPECTION,
                message=message,
                extra_meta={
                    "referenced_inspection_id": inspection.id,
                    "inspection_outcome": inspection.outcome,
                    "authority_notice_id": notice.id,
                    "authority": notice.authority,
                    "protocol": notice.protocol,
                },
            )
        return TransitionResult(report, state_change, notice, entry)

    def register_attachment(
        self,
        report_id: int,
        filename: str,
        url: str,
        actor_id: str,
        inspection_id: Optional[int] = None,
        clarification_id: Optional[int] = None,
        authority_notice_id: Optional[int] = None
    ) -> Attachment:
        """
        Register an uploaded file against a report.

        Invariants:
        - at most one owner (inspection, clarification or notice)
        - the owner belongs to the same report
        """
        owners = {
            "inspection_id": (Inspection, inspection_id),
            "clarification_id": (ClarificationRequest, clarification_id),
            "authority_notice_id": (AuthorityNotice, authority_notice_id),
        }
        given = {name: pair for name, pair in owners.items() if pair[1] is not None}

        with self.unit_of_work():
            report = self.load_report(report_id, lock=False)
            if len(given) > 1:
                raise ValidationError(
                    "An attachment can belong to at most one owner",
                    owners=sorted(given),
                )
            filename, url = _clean(filename), _clean(url)
            if filename is None or url is None:
                raise ValidationError(
                    "filename and url are required",
                    field="filename" if filename is None else "url",
                )

            attachment = Attachment(
                report=report,
                filename=filename,
                url=url,
                uploaded_by_id=actor_id,
                uploaded_at=self.clock(),
            )
            for name, (model, owner_id) in given.items():
                owner = self.db.query(model).filter(model.id == owner_id).first()
                if owner is None or owner.report_id != report.id:
                    raise NotFound(
                        f"{model.__name__} {owner_id} not found on report {report.id}",
                        entity=model.__name__,
                        id=owner_id,
                    )
                setattr(attachment, name, owner_id)
            self.db.add(attachment)

        log.info("attachment_registered", attachment_id=attachment.id, report_id=report_id)
        return attachment

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def transition_overview(self, report_id: int) -> Dict[str, Any]:
        """Current status, legal next states and the report's history."""
        report = self.load_report(report_id, lock=False)
        return {
            "report": report,
            "current_status": report.status,
            "available_transitions": [
                {"status": status, "description": describe_transition(report.status, status)}
                for status in sorted_transitions(report.status)
            ],
            "awaiting_authority_feedback": report.awaiting_authority_feedback,
            "state_changes": list(report.state_changes),
            "inspections": list(report.inspections),
            "clarifications": list(report.clarifications),
            "authority_notices": list(report.authority_notices),
        }
