"""
Structured JSON logging.

Automation actions re-enter the workflow engine, so a single request can log
from several nested rule firings. ``automation_scope`` binds the firing rule,
its trigger and the nesting depth to every record emitted inside it; the
formatter nests them under ``"automation"``.
"""
import contextvars
import json
import logging
import re
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from quoteflow.core.config import settings

_REDACTED = "***REDACTED***"

_SENSITIVE_PATTERNS = re.compile(
    r'(password|secret|token|authorization)'
    r'[\"\']?\s*[:=]\s*[\"\']?[^\s,;\"\'}{]+',
    re.IGNORECASE,
)

_SENSITIVE_KEYS = frozenset({
    "password", "smtp_password", "secret", "secret_key",
    "token", "access_token", "authorization",
})

# ``extra`` attributes copied to the top level of the JSON payload
_RECORD_FIELDS = (
    "user_id", "action", "entity_type", "entity_id",
    "trigger", "rule_id", "depth", "changed",
)

_automation_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "automation_context", default={},
)


def _scrub_value(obj):
    if isinstance(obj, dict):
        return {
            k: _REDACTED if str(k).lower() in _SENSITIVE_KEYS else _scrub_value(v)
            for k, v in obj.items()
        }
    if isinstance(obj, (list, tuple)):
        return [_scrub_value(i) for i in obj]
    return obj


def _scrub_message(message: str) -> str:
    return _SENSITIVE_PATTERNS.sub(rf'\1={_REDACTED}', message)


@contextmanager
def automation_scope(**fields):
    """Bind rule context (rule_id, trigger, depth) to records logged in the block."""
    token = _automation_context.set({**_automation_context.get(), **fields})
    try:
        yield
    finally:
        _automation_context.reset(token)


def current_automation_context() -> Dict[str, Any]:
    return dict(_automation_context.get())


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with secrets scrubbed."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": _scrub_message(record.getMessage()),
        }

        for name in _RECORD_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        bound = _automation_context.get()
        if bound:
            log_entry["automation"] = bound

        if record.exc_info:
            log_entry["exception"] = _scrub_message(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


def setup_logging():
    """Configure application logging."""
    root_logger = logging.getLogger()

    # Prevent duplicate handlers on repeated calls
    if root_logger.handlers:
        return

    root_logger.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(console_handler)

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "rq.worker", "rq_scheduler.scheduler"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


def changed_fields(old: Optional[dict], new: Optional[dict]) -> Dict[str, Tuple[Any, Any]]:
    """Fields whose value differs between two audit snapshots, as (old, new)."""
    old, new = old or {}, new or {}
    return {
        key: (old.get(key), new.get(key))
        for key in sorted(set(old) | set(new))
        if old.get(key) != new.get(key)
    }


class AuditLogger:
    """Mirrors audit rows to the ``audit`` logger as one readable line each."""

    def __init__(self):
        self.logger = get_logger("audit")

    def log(
        self,
        action: str,
        user_id: Optional[int] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        old_data: Optional[dict] = None,
        new_data: Optional[dict] = None,
        details: Optional[dict] = None,
    ):
        message = f"AUDIT {action}"
        if entity_type:
            message += f" on {entity_type}:{entity_id}"

        changed = changed_fields(old_data, new_data) if old_data else {}
        if changed:
            message += " (" + ", ".join(
                f"{key}: {_REDACTED} -> {_REDACTED}" if key.lower() in _SENSITIVE_KEYS else f"{key}: {old} -> {new}"
                for key, (old, new) in changed.items()
            ) + ")"
        if details:
            message += f" - {json.dumps(_scrub_value(details), default=str)}"

        self.logger.info(message, extra={
            "user_id": user_id,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "changed": sorted(changed) or None,
        })


audit_logger = AuditLogger()
