"""
Audit sink: append-only before/after records for every mutating command.

Rows are written inside the caller's transaction. A failure here is fatal to
that transaction because the audit trail is a compliance requirement.
"""
import enum
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quoteflow.core.errors import DependencyFailure
from quoteflow.core.logging import audit_logger, get_logger
from quoteflow.db.models import AuditLog

logger = get_logger(__name__)


def to_json(value: Any) -> Any:
    """Make enums and datetimes JSON friendly for audit/event payloads."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json(v) for v in value]
    return value


def snapshot(obj, *fields: str) -> dict:
    """Pick ``fields`` off an ORM object as a JSON-ready dict."""
    return {field: to_json(getattr(obj, field)) for field in fields}


class AuditSink:
    """Writes AuditLog rows through the active session."""

    def __init__(self, session: Session):
        self.session = session

    def record(
        self,
        action: str,
        entity: str,
        entity_id: Optional[int],
        actor_id: Optional[int],
        old_data: Optional[dict] = None,
        new_data: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> AuditLog:
        entry = AuditLog(
            user_id=actor_id,
            action=action,
            entity_type=entity,
            entity_id=entity_id,
            old_data=to_json(old_data or {}),
            new_data=to_json(new_data or {}),
            details=to_json(metadata or {}),
        )
        try:
            self.session.add(entry)
            self.session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Audit write failed for {action} on {entity}:{entity_id}: {e}")
            raise DependencyFailure(
                "Audit sink unavailable",
                {"action": action, "entity": entity, "entity_id": entity_id},
            ) from e

        audit_logger.log(
            action,
            user_id=actor_id,
            entity_type=entity,
            entity_id=entity_id,
            old_data=old_data,
            new_data=new_data,
            details=metadata,
        )
        return entry
