"""
Audit Log API routes.
"""
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session
from sqlalchemy import desc, func

from quoteflow.db.session import get_db
from quoteflow.db.models import AuditLog, AutomationLog, AutomationOutcome, LogLevel, User
from quoteflow.core.logging import changed_fields
from quoteflow.core.rbac import RequirePermission

router = APIRouter(prefix="/api/audit", tags=["Audit"])


# ============= SCHEMAS =============

class AuditLogResponse(BaseModel):
    id: int
    timestamp: datetime
    user_id: Optional[int]
    action: str
    entity_type: Optional[str]
    entity_id: Optional[int]
    old_data: Optional[dict]
    new_data: Optional[dict]
    details: Optional[dict]

    model_config = ConfigDict(from_attributes=True)


class HistoryEntry(BaseModel):
    id: int
    timestamp: datetime
    user_id: Optional[int]
    action: str
    changes: Dict[str, List[Any]]


class AutomationHealth(BaseModel):
    succeeded: int
    failed: int
    halted: int


class AuditSummary(BaseModel):
    total_events: int
    events_today: int
    top_actions: List[dict]
    automation_last_7_days: AutomationHealth


# ============= ROUTES =============

@router.get("/logs", response_model=List[AuditLogResponse])
async def list_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action type"),
    entity_type: Optional[str] = Query(None, description="Filter by entity type"),
    entity_id: Optional[int] = Query(None, description="Filter by entity id"),
    user_id: Optional[int] = Query(None, description="Filter by user"),
    start_date: Optional[datetime] = Query(None, description="Start date filter"),
    end_date: Optional[datetime] = Query(None, description="End date filter"),
    limit: int = Query(100, le=500),
    offset: int = Query(0),
    actor: User = Depends(RequirePermission("audit", "read")),
    db: Session = Depends(get_db)
):
    """List audit entries, newest first."""
    query = db.query(AuditLog)

    if action:
        query = query.filter(AuditLog.action == action)

    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)

    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)

    if user_id:
        query = query.filter(AuditLog.user_id == user_id)

    if start_date:
        query = query.filter(AuditLog.timestamp >= start_date)

    if end_date:
        query = query.filter(AuditLog.timestamp <= end_date)

    return query.order_by(desc(AuditLog.timestamp), desc(AuditLog.id)).offset(offset).limit(limit).all()


@router.get("/entities/{entity_type}/{entity_id}/history", response_model=List[HistoryEntry])
async def get_entity_history(
    entity_type: str,
    entity_id: int,
    actor: User = Depends(RequirePermission("audit", "read")),
    db: Session = Depends(get_db)
):
    """Oldest-first change timeline for one entity, with per-field (old, new) pairs."""
    entries = db.query(AuditLog).filter(
        AuditLog.entity_type == entity_type,
        AuditLog.entity_id == entity_id,
    ).order_by(AuditLog.timestamp, AuditLog.id).all()

    return [
        HistoryEntry(
            id=entry.id,
            timestamp=entry.timestamp,
            user_id=entry.user_id,
            action=entry.action,
            changes={k: list(v) for k, v in changed_fields(entry.old_data, entry.new_data).items()},
        )
        for entry in entries
    ]


@router.get("/summary", response_model=AuditSummary)
async def get_audit_summary(
    actor: User = Depends(RequirePermission("audit", "read")),
    db: Session = Depends(get_db)
):
    """Audit activity plus automation outcomes over the last week."""
    now = datetime.utcnow()
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    week_ago = now - timedelta(days=7)

    total = db.query(AuditLog).count()
    today_count = db.query(AuditLog).filter(AuditLog.timestamp >= today_start).count()

    action_counts = db.query(
        AuditLog.action,
        func.count(AuditLog.id).label('count')
    ).filter(
        AuditLog.timestamp >= week_ago
    ).group_by(AuditLog.action).order_by(desc('count'), AuditLog.action).limit(10).all()

    outcomes = dict(
        db.query(AutomationLog.level, func.count(AutomationLog.id)).filter(
            AutomationLog.created_at >= week_ago,
            AutomationLog.outcome == AutomationOutcome.FAILURE,
        ).group_by(AutomationLog.level).all()
    )
    succeeded = db.query(AutomationLog).filter(
        AutomationLog.created_at >= week_ago,
        AutomationLog.outcome == AutomationOutcome.SUCCESS,
    ).count()

    return AuditSummary(
        total_events=total,
        events_today=today_count,
        top_actions=[{"action": a, "count": c} for a, c in action_counts],
        automation_last_7_days=AutomationHealth(
            succeeded=succeeded,
            failed=sum(count for level, count in outcomes.items() if level != LogLevel.CRITICAL),
            halted=outcomes.get(LogLevel.CRITICAL, 0),
        ),
    )
