"""Append-only writer for the report action log."""
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.orm import Session

from olio_monitor.models.audit import ActionLog
from olio_monitor.models.domain import Report

log = structlog.get_logger(__name__)


def _jsonable(value: Any) -> Any:
    """Make enum and datetime values storable in a JSON column."""
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class AuditLogWriter:
    """
    Adds ActionLog rows to the caller's session.

    Never commits: the entry lands in the same transaction as the change it
    describes.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    def append(
        self,
        report: Report,
        type: str,
        message: str,
        actor_id: str,
        meta: Optional[Dict[str, Any]] = None
    ) -> ActionLog:
        entry = ActionLog(
            report=report,
            type=type,
            message=message,
            actor_id=actor_id,
            meta=_jsonable(meta or {}),
            created_at=self.clock(),
        )
        self.db.add(entry)
        log.debug("action_logged", report_id=report.id, type=type, actor_id=actor_id)
        return entry
