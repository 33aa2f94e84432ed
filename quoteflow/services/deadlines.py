"""
Deadline tracking for inquiries, inquiry items and quotes.

Each tracked entity has at most one Deadline row. ``check_deadlines`` runs on
a schedule and walks every open deadline through three reminder stages
(warning, escalation, overdue), publishing DEADLINE_APPROACHING at most once
per stage.
"""
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List, Optional, Tuple

from quoteflow.core.config import settings
from quoteflow.core.logging import get_logger
from quoteflow.db.models import (
    AutomationTrigger, Deadline, DeadlineEntity, DeadlineStatus,
    Inquiry, InquiryItem, Quote,
)
from quoteflow.db.repository import EntityRepository

if TYPE_CHECKING:
    from quoteflow.services.workflow import WorkflowEngine

logger = get_logger(__name__)

STAGE_NONE = 0
STAGE_WARNING = 1
STAGE_ESCALATION = 2
STAGE_OVERDUE = 3


def create_deadline(
    repo: EntityRepository,
    entity_type: DeadlineEntity,
    entity_id: int,
    due_date: datetime,
    warning_days: Optional[int] = None,
    escalation_days: Optional[int] = None,
) -> Deadline:
    """Create or reset the deadline of an entity. Caller owns the transaction."""
    warning_days = settings.DEADLINE_WARNING_DAYS if warning_days is None else warning_days
    escalation_days = settings.DEADLINE_ESCALATION_DAYS if escalation_days is None else escalation_days

    values = {
        "due_date": due_date,
        "warning_date": due_date - timedelta(days=warning_days),
        "escalation_date": due_date - timedelta(days=escalation_days),
        "status": DeadlineStatus.ACTIVE,
        "reminders_sent": STAGE_NONE,
    }
    existing = repo.find_one(
        Deadline, Deadline.entity_type == entity_type, Deadline.entity_id == entity_id
    )
    if existing:
        return repo.update(existing, **values)
    return repo.create(Deadline, entity_type=entity_type, entity_id=entity_id, **values)


def complete_deadline(repo: EntityRepository, entity_type: DeadlineEntity, entity_id: int) -> Optional[Deadline]:
    deadline = repo.find_one(
        Deadline, Deadline.entity_type == entity_type, Deadline.entity_id == entity_id
    )
    if deadline is None or deadline.status == DeadlineStatus.COMPLETED:
        return deadline
    return repo.update(deadline, status=DeadlineStatus.COMPLETED)


def stage_for(deadline: Deadline, now: datetime) -> int:
    if now >= deadline.due_date:
        return STAGE_OVERDUE
    if deadline.escalation_date and now >= deadline.escalation_date:
        return STAGE_ESCALATION
    if deadline.warning_date and now >= deadline.warning_date:
        return STAGE_WARNING
    return STAGE_NONE


def _owner(repo: EntityRepository, deadline: Deadline) -> Tuple[Optional[int], Optional[int]]:
    """(inquiry_id, responsible user id) for the tracked entity."""
    if deadline.entity_type == DeadlineEntity.INQUIRY:
        inquiry = repo.get(Inquiry, deadline.entity_id)
        return (inquiry.id, inquiry.created_by_id) if inquiry else (None, None)
    if deadline.entity_type == DeadlineEntity.INQUIRY_ITEM:
        item = repo.get(InquiryItem, deadline.entity_id)
        if item is None:
            return None, None
        return item.inquiry_id, item.assigned_to_id or item.inquiry.created_by_id
    quote = repo.get(Quote, deadline.entity_id)
    return (quote.inquiry_id, quote.created_by_id) if quote else (None, None)


def check_deadlines(workflow: "WorkflowEngine", now: Optional[datetime] = None) -> int:
    """
    Advance reminder stages of open deadlines. Returns how many reminders
    were published.
    """
    now = now or datetime.utcnow()
    repo = workflow.repo
    published = 0

    open_deadlines = repo.find(
        Deadline,
        Deadline.status.in_([DeadlineStatus.ACTIVE, DeadlineStatus.OVERDUE]),
        Deadline.reminders_sent < STAGE_OVERDUE,
        order_by=(Deadline.due_date, Deadline.id),
    )
    reminders: List[Tuple[int, int]] = []
    for deadline in open_deadlines:
        stage = stage_for(deadline, now)
        if stage > deadline.reminders_sent:
            reminders.append((deadline.id, stage))

    for deadline_id, stage in reminders:
        with repo.transaction():
            deadline = repo.get(Deadline, deadline_id, for_update=True)
            if deadline is None or deadline.reminders_sent >= stage:
                continue
            values = {"reminders_sent": stage}
            if stage == STAGE_OVERDUE:
                values["status"] = DeadlineStatus.OVERDUE
            repo.update(deadline, **values)

            inquiry_id, owner_id = _owner(repo, deadline)
            days_remaining = round((deadline.due_date - now).total_seconds() / 86400, 2)
            payload = {
                "deadline_id": deadline.id,
                "entity_type": deadline.entity_type.value,
                "entity_id": deadline.entity_id,
                "inquiry_id": inquiry_id,
                "days_remaining": days_remaining,
                "is_overdue": stage == STAGE_OVERDUE,
                "is_escalation": stage == STAGE_ESCALATION,
            }

        if owner_id is not None:
            title = "Deadline overdue" if stage == STAGE_OVERDUE else "Deadline approaching"
            workflow.notifier.notify(
                owner_id,
                "DEADLINE",
                title,
                f"{payload['entity_type']} {payload['entity_id']} is due "
                f"{deadline.due_date:%Y-%m-%d %H:%M} ({days_remaining} day(s) remaining)",
                payload,
            )
        workflow.publish(AutomationTrigger.DEADLINE_APPROACHING, payload)
        published += 1

    if published:
        logger.info(f"Deadline check published {published} reminder(s)")
    return published
