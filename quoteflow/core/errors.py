"""
Workflow error taxonomy.

Every error carries a machine readable ``kind`` and a ``context`` dict with
enough structure (entity ids, current/requested state, missing prerequisites)
for a caller to render an actionable message. HTTP mapping lives in
``quoteflow.main``.
"""
from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all errors raised by the workflow core."""

    kind = "workflow_error"
    http_status = 400

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "context": self.context}


class NotFound(WorkflowError):
    kind = "not_found"
    http_status = 404

    def __init__(self, entity: str, entity_id: Any, context: Optional[Dict[str, Any]] = None):
        ctx = {"entity": entity, "entity_id": entity_id}
        ctx.update(context or {})
        super().__init__(f"{entity} {entity_id} not found", ctx)
        self.entity = entity
        self.entity_id = entity_id


class Forbidden(WorkflowError):
    kind = "forbidden"
    http_status = 403


class InvalidTransition(WorkflowError):
    kind = "invalid_transition"
    http_status = 409

    def __init__(
        self,
        entity: str,
        entity_id: Any,
        current: Any,
        requested: Any,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = {
            "entity": entity,
            "entity_id": entity_id,
            "current": _state(current),
            "requested": _state(requested),
        }
        ctx.update(context or {})
        super().__init__(
            f"Cannot move {entity} {entity_id} from {_state(current)} to {_state(requested)}",
            ctx,
        )
        self.current = current
        self.requested = requested


class ValidationError(WorkflowError):
    kind = "validation_error"
    http_status = 422

    @classmethod
    def from_pydantic(cls, exc, message: str = "Invalid input") -> "ValidationError":
        errors = [
            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
            for err in exc.errors()
        ]
        return cls(message, {"errors": errors})


class ConflictError(WorkflowError):
    kind = "conflict"
    http_status = 409


class DependencyFailure(WorkflowError):
    """An external collaborator (notifier, e-mail queue, audit sink) failed."""

    kind = "dependency_failure"
    http_status = 503


def _state(value: Any) -> Any:
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, dict):
        return {k: _state(v) for k, v in value.items()}
    return value
