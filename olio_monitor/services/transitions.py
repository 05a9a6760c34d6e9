"""
Transition rules for the report lifecycle.

Pure functions over ReportStatus - no database access. Every place that
validates a status change uses ALLOWED_TRANSITIONS.
"""
from typing import Dict, FrozenSet, List, Tuple

from olio_monitor.models.audit import ActionLogType
from olio_monitor.models.enums import ReportStatus
from olio_monitor.services.errors import InvalidTransition

S = ReportStatus

ALLOWED_TRANSITIONS: Dict[ReportStatus, FrozenSet[ReportStatus]] = {
    S.DRAFT: frozenset({S.IN_PROGRESS, S.ARCHIVED}),
    S.IN_PROGRESS: frozenset({S.UNDER_VERIFICATION, S.CLARIFICATION_REQUESTED, S.ARCHIVED}),
    S.UNDER_VERIFICATION: frozenset({
        S.REPORTED_TO_AUTHORITY, S.CLOSED, S.CLARIFICATION_REQUESTED, S.IN_PROGRESS
    }),
    S.CLARIFICATION_REQUESTED: frozenset({
        S.UNDER_VERIFICATION, S.REPORTED_TO_AUTHORITY, S.CLOSED, S.IN_PROGRESS
    }),
    S.REPORTED_TO_AUTHORITY: frozenset({S.CLOSED, S.UNDER_VERIFICATION}),
    S.CLOSED: frozenset({S.ARCHIVED}),
    S.ARCHIVED: frozenset(),  # terminal
}

# Workflow order, used to sort the legal set for display
_ORDER: List[ReportStatus] = list(ReportStatus)

_DESCRIPTIONS: Dict[Tuple[ReportStatus, ReportStatus], str] = {
    (S.DRAFT, S.IN_PROGRESS): "Draft completed, investigation started",
    (S.DRAFT, S.ARCHIVED): "Draft archived without further action",
    (S.IN_PROGRESS, S.UNDER_VERIFICATION): "Inspection requested for on-site verification",
    (S.IN_PROGRESS, S.CLARIFICATION_REQUESTED): "Clarifications requested before proceeding",
    (S.IN_PROGRESS, S.ARCHIVED): "Report archived without further action",
    (S.UNDER_VERIFICATION, S.REPORTED_TO_AUTHORITY): "Verification calls for the authority to intervene",
    (S.UNDER_VERIFICATION, S.CLOSED): "Verification completed, case closed",
    (S.UNDER_VERIFICATION, S.CLARIFICATION_REQUESTED): "Verification raised questions for the subject",
    (S.UNDER_VERIFICATION, S.IN_PROGRESS): "Verification suspended, back to investigation",
    (S.CLARIFICATION_REQUESTED, S.UNDER_VERIFICATION): "Clarifications call for an inspection",
    (S.CLARIFICATION_REQUESTED, S.REPORTED_TO_AUTHORITY): "Clarifications call for the authority to intervene",
    (S.CLARIFICATION_REQUESTED, S.CLOSED): "Clarifications received, case closed",
    (S.CLARIFICATION_REQUESTED, S.IN_PROGRESS): "Clarifications received, back to investigation",
    (S.REPORTED_TO_AUTHORITY, S.CLOSED): "Authority feedback received, case closed",
    (S.REPORTED_TO_AUTHORITY, S.UNDER_VERIFICATION): "Authority asked for further verification",
    (S.CLOSED, S.ARCHIVED): "Closed case archived permanently",
}

_ACTION_TYPES: Dict[Tuple[ReportStatus, ReportStatus], str] = {
    (S.DRAFT, S.IN_PROGRESS): ActionLogType.WORK_STARTED,
    (S.DRAFT, S.ARCHIVED): ActionLogType.ARCHIVED,
    (S.IN_PROGRESS, S.UNDER_VERIFICATION): ActionLogType.VERIFICATION_STARTED,
    (S.IN_PROGRESS, S.CLARIFICATION_REQUESTED): ActionLogType.CLARIFICATION_REQUESTED,
    (S.IN_PROGRESS, S.ARCHIVED): ActionLogType.ARCHIVED,
    (S.UNDER_VERIFICATION, S.REPORTED_TO_AUTHORITY): ActionLogType.AUTHORITY_NOTIFIED_AFTER_INSPECTION,
    (S.UNDER_VERIFICATION, S.CLOSED): ActionLogType.CLOSED_AFTER_INSPECTION,
    (S.UNDER_VERIFICATION, S.CLARIFICATION_REQUESTED): ActionLogType.CLARIFICATION_REQUESTED,
    (S.UNDER_VERIFICATION, S.IN_PROGRESS): ActionLogType.RETURNED_TO_WORK,
    (S.CLARIFICATION_REQUESTED, S.UNDER_VERIFICATION): ActionLogType.VERIFICATION_STARTED,
    (S.CLARIFICATION_REQUESTED, S.REPORTED_TO_AUTHORITY): ActionLogType.AUTHORITY_NOTIFIED_AFTER_CLARIFICATION,
    (S.CLARIFICATION_REQUESTED, S.CLOSED): ActionLogType.CLOSED_AFTER_CLARIFICATION,
    (S.CLARIFICATION_REQUESTED, S.IN_PROGRESS): ActionLogType.RETURNED_TO_WORK,
    (S.REPORTED_TO_AUTHORITY, S.CLOSED): ActionLogType.CLOSED_AFTER_AUTHORITY_FEEDBACK,
    (S.REPORTED_TO_AUTHORITY, S.UNDER_VERIFICATION): ActionLogType.VERIFICATION_STARTED,
    (S.CLOSED, S.ARCHIVED): ActionLogType.ARCHIVED,
}


def available_transitions(current: ReportStatus) -> FrozenSet[ReportStatus]:
    """States reachable from `current` in one step. Empty for ARCHIVED."""
    return ALLOWED_TRANSITIONS.get(ReportStatus(current), frozenset())


def sorted_transitions(current: ReportStatus) -> List[ReportStatus]:
    return sorted(available_transitions(current), key=_ORDER.index)


def is_legal(current: ReportStatus, target: ReportStatus) -> bool:
    return ReportStatus(target) in available_transitions(current)


def ensure_legal(current: ReportStatus, target: ReportStatus) -> None:
    """Raise InvalidTransition unless current → target is an allowed edge."""
    if is_legal(current, target):
        return
    current, target = ReportStatus(current), ReportStatus(target)
    legal = [s.value for s in sorted_transitions(current)]
    if not legal:
        message = f"{current.value} is a terminal state; no transition to {target.value} is possible"
    else:
        message = (
            f"Cannot move from {current.value} to {target.value}. "
            f"Allowed: {', '.join(legal)}"
        )
    raise InvalidTransition(
        message,
        from_status=current.value,
        to_status=target.value,
        available_transitions=legal,
    )


def describe_transition(current: ReportStatus, target: ReportStatus) -> str:
    current, target = ReportStatus(current), ReportStatus(target)
    return _DESCRIPTIONS.get(
        (current, target), f"Transition from {current.value} to {target.value}"
    )


def action_type_for(current: ReportStatus, target: ReportStatus) -> str:
    return _ACTION_TYPES.get(
        (ReportStatus(current), ReportStatus(target)), ActionLogType.STATUS_CHANGED
    )
