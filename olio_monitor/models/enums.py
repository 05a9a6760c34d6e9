"""Enums for the report workflow - the valid values for states, outcomes and categories."""
from enum import Enum


class ReportStatus(str, Enum):
    """The seven states a Report can be in. No other states are allowed."""
    DRAFT = "DRAFT"
    IN_PROGRESS = "IN_PROGRESS"
    UNDER_VERIFICATION = "UNDER_VERIFICATION"
    CLARIFICATION_REQUESTED = "CLARIFICATION_REQUESTED"
    REPORTED_TO_AUTHORITY = "REPORTED_TO_AUTHORITY"
    CLOSED = "CLOSED"
    ARCHIVED = "ARCHIVED"


class InspectionState(str, Enum):
    PLANNED = "PLANNED"
    COMPLETED = "COMPLETED"


class InspectionType(str, Enum):
    """Kinds of verification visit."""
    DOCUMENTARY = "DOCUMENTARY"
    SITE_VISIT = "SITE_VISIT"
    SAMPLING = "SAMPLING"
    LABEL_CHECK = "LABEL_CHECK"
    FULL_AUDIT = "FULL_AUDIT"


class ClarificationState(str, Enum):
    SENT = "SENT"
    ANSWERED = "ANSWERED"


class ClarificationOutcome(str, Enum):
    """How a clarification reply resolves the parent report."""
    CLOSED = "CLOSED"
    ESCALATED_TO_AUTHORITY = "ESCALATED_TO_AUTHORITY"


class RecipientCategory(str, Enum):
    """Who a clarification request is addressed to."""
    PRODUCER = "PRODUCER"
    DISTRIBUTOR = "DISTRIBUTOR"
    RETAILER = "RETAILER"
    IMPORTER = "IMPORTER"
    CERTIFICATION_BODY = "CERTIFICATION_BODY"
    OTHER = "OTHER"


class AuthorityNoticeState(str, Enum):
    PREPARED = "PREPARED"
    ANSWERED = "ANSWERED"


class AuthorityType(str, Enum):
    """Regulators a notice can be sent to."""
    ICQRF = "ICQRF"
    ASL = "ASL"
    GUARDIA_DI_FINANZA = "GUARDIA_DI_FINANZA"
    CARABINIERI_NAS = "CARABINIERI_NAS"
    MUNICIPALITY = "MUNICIPALITY"
    REGION = "REGION"
    OTHER = "OTHER"


class Severity(str, Enum):
    INFORMATIONAL = "INFORMATIONAL"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
