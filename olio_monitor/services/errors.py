"""
Errors raised by the report workflow.

All of them are refusals scoped to a single operation: the aggregate is left
untouched and the caller can correct the request and retry.
"""
from typing import Any


class WorkflowError(Exception):
    """Base class. `details` carries what the caller needs to correct the request."""

    code = "workflow_error"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.details}


class NotFound(WorkflowError):
    code = "not_found"


class InvalidTransition(WorkflowError):
    """Raised with the attempted edge and the legal set from the current state."""
    code = "invalid_transition"


class ValidationError(WorkflowError):
    code = "validation_error"


class MissingField(WorkflowError):
    """A field that is only required in some situations was not supplied."""
    code = "missing_field"


class AlreadyAnswered(WorkflowError):
    code = "already_answered"


class InvalidState(WorkflowError):
    """The report is not in the state the operation requires."""
    code = "invalid_state"


class ConflictingPendingNotice(WorkflowError):
    code = "conflicting_pending_notice"


class ConcurrentModification(WorkflowError):
    code = "concurrent_modification"
