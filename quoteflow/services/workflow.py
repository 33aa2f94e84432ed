"""
Order-lifecycle workflow engine.

Coupled state machines Inquiry -> InquiryItem -> CostCalculation -> Approval
-> Quote -> ProductionOrder. Every public operation follows the same shape:

    authorize -> load (locked) -> validate -> mutate + one audit row
    (single transaction) -> on commit: notifications, e-mails, then
    workflow events to the automation engine

Notification and e-mail delivery is best-effort and never rolls back a
committed change. Automation actions call back into these same operations,
passing their ``EventContext`` so re-entry stays bounded.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from quoteflow.core.config import settings
from quoteflow.core.errors import (
    ConflictError, Forbidden, InvalidTransition, NotFound, ValidationError,
)
from quoteflow.core.logging import get_logger
from quoteflow.core.rbac import PermissionPolicy, get_policy
from quoteflow.db.models import (
    Approval, ApprovalStatus, AutomationTrigger, CostCalculation, Customer,
    DeadlineEntity, Inquiry, InquiryItem, InquiryStatus, ItemStatus, Priority,
    ProductionOrder, ProductionStatus, Quote, QuoteStatus, User, UserRole,
)
from quoteflow.db.repository import EntityRepository
from quoteflow.services import assignment
from quoteflow.services.audit import AuditSink, snapshot
from quoteflow.services.automation.engine import AutomationEngine, EventContext, WorkflowEvent
from quoteflow.services.automation.schema import INQUIRY_STATUS_OWNERS
from quoteflow.services.deadlines import complete_deadline, create_deadline
from quoteflow.services.notifier import Notifier

logger = get_logger(__name__)


# ============= STATE TABLES =============

INQUIRY_TRANSITIONS = {
    InquiryStatus.DRAFT: {InquiryStatus.SUBMITTED, InquiryStatus.CANCELLED},
    InquiryStatus.SUBMITTED: {InquiryStatus.ASSIGNED, InquiryStatus.CANCELLED},
    InquiryStatus.ASSIGNED: {InquiryStatus.QUOTED, InquiryStatus.CANCELLED},
    InquiryStatus.QUOTED: {InquiryStatus.APPROVED, InquiryStatus.CANCELLED},
    InquiryStatus.APPROVED: {InquiryStatus.CLOSED, InquiryStatus.CANCELLED},
    InquiryStatus.CLOSED: set(),
    InquiryStatus.CANCELLED: set(),
}

PRODUCTION_SUCCESSORS = {
    ProductionStatus.PENDING: ProductionStatus.IN_PRODUCTION,
    ProductionStatus.IN_PRODUCTION: ProductionStatus.COMPLETED,
    ProductionStatus.COMPLETED: ProductionStatus.SHIPPED,
    ProductionStatus.SHIPPED: ProductionStatus.DELIVERED,
}

QUOTE_OUTCOMES = frozenset({QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.EXPIRED})
APPROVAL_DECISIONS = frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED})
UNASSIGNABLE_ITEM_STATUSES = frozenset({ItemStatus.ASSIGNED, ItemStatus.COSTED})

INQUIRY_FIELDS = ("status", "assigned_to_id", "total_value", "priority")
ITEM_FIELDS = ("status", "assigned_to_id")
COST_FIELDS = ("material_cost", "labor_cost", "overhead_cost", "total_cost", "requires_approval", "notes")


# ============= INPUT MODELS =============

def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class InquiryItemInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    quantity: float = Field(1, gt=0)
    unit: Optional[str] = Field(None, max_length=50)
    requested_delivery: Optional[datetime] = None

    @field_validator("requested_delivery")
    @classmethod
    def normalize_delivery(cls, v):
        return _naive_utc(v)


class InquiryInput(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    customer_id: int
    priority: Priority = Priority.MEDIUM
    deadline: Optional[datetime] = None
    items: List[InquiryItemInput] = Field(default_factory=list)

    @field_validator("deadline")
    @classmethod
    def normalize_deadline(cls, v):
        return _naive_utc(v)


class CostInput(BaseModel):
    material_cost: float = Field(0.0, ge=0)
    labor_cost: float = Field(0.0, ge=0)
    overhead_cost: float = Field(0.0, ge=0)
    notes: Optional[str] = None

    @property
    def total(self) -> float:
        return round(self.material_cost + self.labor_cost + self.overhead_cost, 2)


def _parse(model, data):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e) from e


def _coerce(enum_cls, value, field_name: str):
    try:
        return value if isinstance(value, enum_cls) else enum_cls(value)
    except ValueError:
        raise ValidationError(
            f"Invalid {field_name} '{value}'",
            {"field": field_name, "allowed": [e.value for e in enum_cls]},
        )


# ============= OUTBOX =============

@dataclass
class _Outbox:
    """Side effects collected inside a transaction, released after commit."""

    notifications: List[tuple] = field(default_factory=list)
    emails: List[tuple] = field(default_factory=list)
    events: List[WorkflowEvent] = field(default_factory=list)

    def notify(self, user_ids: Union[int, Iterable[int]], type: str, title: str, message: str,
               payload: Optional[dict] = None) -> None:
        if isinstance(user_ids, int):
            user_ids = [user_ids]
        user_ids = [u for u in user_ids if u is not None]
        if user_ids:
            self.notifications.append((user_ids, type, title, message, payload))

    def email(self, template: str, recipients: Sequence[Optional[str]], variables: dict) -> None:
        self.emails.append((template, list(recipients), variables))

    def event(self, trigger: AutomationTrigger, payload: dict, actor_id: Optional[int]) -> None:
        self.events.append(WorkflowEvent(trigger=trigger, payload=payload, actor_id=actor_id))


def _inquiry_event(inquiry: Inquiry, old_status: InquiryStatus) -> dict:
    return {
        "inquiry_id": inquiry.id,
        "customer_id": inquiry.customer_id,
        "created_by_id": inquiry.created_by_id,
        "assigned_to_id": inquiry.assigned_to_id,
        "title": inquiry.title,
        "priority": inquiry.priority.value,
        "old_status": old_status.value,
        "new_status": inquiry.status.value,
    }


class WorkflowEngine:
    """Public command surface of the order lifecycle."""

    def __init__(
        self,
        session: Session,
        policy: Optional[PermissionPolicy] = None,
        notifier: Optional[Notifier] = None,
        automation: bool = True,
    ):
        self.session = session
        self.repo = EntityRepository(session)
        self.audit = AuditSink(session)
        self.policy = policy or get_policy()
        self.notifier = notifier or Notifier(self.repo)
        self.automation = AutomationEngine(self) if automation else None

    # ============= PLUMBING =============

    def publish(self, trigger: AutomationTrigger, payload: dict, actor_id: Optional[int] = None,
                context: Optional[EventContext] = None) -> None:
        """Hand a committed change to the automation engine."""
        outbox = _Outbox()
        outbox.event(trigger, payload, actor_id)
        self._dispatch(outbox, context)

    def _dispatch(self, outbox: _Outbox, context: Optional[EventContext]) -> None:
        for user_ids, type, title, message, payload in outbox.notifications:
            self.notifier.notify_many(user_ids, type, title, message, payload)
        for template, recipients, variables in outbox.emails:
            self.notifier.send_email(template, recipients, variables)

        if self.automation is None or not outbox.events:
            return
        context = context or EventContext()
        for event in outbox.events:
            try:
                self.automation.handle(event, context)
            except Exception:
                logger.exception(f"Automation failed for {event.trigger.value}",
                                 extra={"trigger": event.trigger.value})

    def _manager_ids(self) -> List[int]:
        return [
            u.id for u in self.repo.find(
                User, User.role == UserRole.MANAGER, User.is_active.is_(True), order_by=(User.id,)
            )
        ]

    def _manager_emails(self) -> List[str]:
        return [
            u.email for u in self.repo.find(
                User, User.role == UserRole.MANAGER, User.is_active.is_(True), order_by=(User.id,)
            )
        ]

    @staticmethod
    def _check_inquiry_transition(inquiry: Inquiry, requested: InquiryStatus, context: Optional[dict] = None):
        if requested not in INQUIRY_TRANSITIONS[inquiry.status]:
            raise InvalidTransition("inquiry", inquiry.id, inquiry.status, requested, context)

    # ============= CUSTOMERS & INQUIRIES =============

    def create_customer(self, name: str, email: Optional[str], actor: User) -> Customer:
        self.policy.authorize(actor, "customers", "create")
        name = (name or "").strip()
        if not name:
            raise ValidationError("Customer name is required", {"field": "name"})

        with self.repo.transaction():
            if self.repo.find_one(Customer, Customer.name == name):
                raise ConflictError(f"Customer '{name}' already exists", {"field": "name", "value": name})
            customer = self.repo.create(Customer, name=name, email=email)
            self.audit.record("customer_created", "customer", customer.id, actor.id,
                              new_data={"name": name, "email": email})
        return customer

    def create_inquiry(self, data, actor: User, context: Optional[EventContext] = None) -> Inquiry:
        self.policy.authorize(actor, "inquiries", "create")
        data = _parse(InquiryInput, data)

        outbox = _Outbox()
        with self.repo.transaction():
            self.repo.get_or_404(Customer, data.customer_id)
            inquiry = self.repo.create(
                Inquiry,
                title=data.title,
                description=data.description,
                customer_id=data.customer_id,
                created_by_id=actor.id,
                status=InquiryStatus.DRAFT,
                priority=data.priority,
                deadline=data.deadline,
            )
            for item_data in data.items:
                item = self.repo.create(InquiryItem, inquiry_id=inquiry.id, **item_data.model_dump())
                if item.requested_delivery:
                    create_deadline(self.repo, DeadlineEntity.INQUIRY_ITEM, item.id, item.requested_delivery)
            if data.deadline:
                create_deadline(self.repo, DeadlineEntity.INQUIRY, inquiry.id, data.deadline)

            self.audit.record(
                "inquiry_created", "inquiry", inquiry.id, actor.id,
                new_data=snapshot(inquiry, "title", "customer_id", "status", "priority", "deadline"),
                metadata={"item_count": len(data.items)},
            )
            outbox.event(AutomationTrigger.INQUIRY_CREATED, {
                "inquiry_id": inquiry.id,
                "customer_id": inquiry.customer_id,
                "created_by_id": inquiry.created_by_id,
                "title": inquiry.title,
                "priority": inquiry.priority.value,
                "status": inquiry.status.value,
                "item_count": len(data.items),
            }, actor.id)

        self._dispatch(outbox, context)
        return inquiry

    def add_item(self, inquiry_id: int, data, actor: User) -> InquiryItem:
        """Add a line to a DRAFT inquiry."""
        self.policy.authorize(actor, "inquiries", "update")
        data = _parse(InquiryItemInput, data)

        with self.repo.transaction():
            inquiry = self.repo.get_or_404(Inquiry, inquiry_id, for_update=True)
            if inquiry.status != InquiryStatus.DRAFT:
                raise InvalidTransition(
                    "inquiry", inquiry.id, inquiry.status, InquiryStatus.DRAFT,
                    {"reason": "items can only be added while the inquiry is a draft"},
                )
            item = self.repo.create(InquiryItem, inquiry_id=inquiry.id, **data.model_dump())
            if item.requested_delivery:
                create_deadline(self.repo, DeadlineEntity.INQUIRY_ITEM, item.id, item.requested_delivery)
            self.audit.record("inquiry_item_added", "inquiry_item", item.id, actor.id,
                              new_data=snapshot(item, "inquiry_id", "name", "quantity", "unit", "status"))
        return item

    def submit_inquiry(self, inquiry_id: int, actor: User, context: Optional[EventContext] = None) -> Inquiry:
        outbox = _Outbox()
        with self.repo.transaction():
            inquiry = self.repo.get_or_404(Inquiry, inquiry_id, for_update=True)
            if inquiry.created_by_id != actor.id or not actor.is_active:
                self.policy.authorize(actor, "inquiries", "submit")
            self._check_inquiry_transition(inquiry, InquiryStatus.SUBMITTED)
            if not inquiry.items:
                raise ValidationError("Inquiry has no items", {"inquiry_id": inquiry.id, "item_count": 0})

            old = snapshot(inquiry, *INQUIRY_FIELDS)
            self.repo.update(inquiry, status=InquiryStatus.SUBMITTED)
            self.audit.record("inquiry_submitted", "inquiry", inquiry.id, actor.id,
                              old_data=old, new_data=snapshot(inquiry, *INQUIRY_FIELDS))
            outbox.event(AutomationTrigger.INQUIRY_STATUS_CHANGED,
                         _inquiry_event(inquiry, InquiryStatus.DRAFT), actor.id)

        self._dispatch(outbox, context)
        return inquiry

    def cancel_inquiry(self, inquiry_id: int, actor: User, reason: Optional[str] = None,
                       context: Optional[EventContext] = None) -> Inquiry:
        self.policy.authorize(actor, "inquiries", "cancel")

        outbox = _Outbox()
        with self.repo.transaction():
            inquiry = self.repo.get_or_404(Inquiry, inquiry_id, for_update=True)
            self._check_inquiry_transition(inquiry, InquiryStatus.CANCELLED)

            old_status = inquiry.status
            old = snapshot(inquiry, *INQUIRY_FIELDS)
            self.repo.update(inquiry, status=InquiryStatus.CANCELLED)
            complete_deadline(self.repo, DeadlineEntity.INQUIRY, inquiry.id)
            for item in inquiry.items:
                complete_deadline(self.repo, DeadlineEntity.INQUIRY_ITEM, item.id)

            self.audit.record("inquiry_cancelled", "inquiry", inquiry.id, actor.id,
                              old_data=old, new_data=snapshot(inquiry, *INQUIRY_FIELDS),
                              metadata={"reason": reason})
            assignees = sorted({i.assigned_to_id for i in inquiry.items if i.assigned_to_id})
            outbox.notify(
                [inquiry.created_by_id, *assignees],
                "INQUIRY_CANCELLED",
                "Inquiry cancelled",
                f"Inquiry '{inquiry.title}' has been cancelled.",
                {"inquiry_id": inquiry.id, "reason": reason},
            )
            outbox.event(AutomationTrigger.INQUIRY_STATUS_CHANGED, _inquiry_event(inquiry, old_status), actor.id)

        self._dispatch(outbox, context)
        return inquiry

    def change_inquiry_status(self, inquiry_id: int, new_status, actor: User,
                              context: Optional[EventContext] = None) -> Inquiry:
        """
        Generic inquiry transition used by automation and the admin surface.

        Statuses that carry side effects of their own (ASSIGNED, QUOTED,
        APPROVED) can only be reached through their dedicated operation.
        """
        new_status = _coerce(InquiryStatus, new_status, "status")
        if new_status == InquiryStatus.SUBMITTED:
            return self.submit_inquiry(inquiry_id, actor, context=context)
        if new_status == InquiryStatus.CANCELLED:
            return self.cancel_inquiry(inquiry_id, actor, context=context)

        self.policy.authorize(actor, "inquiries", "update")
        outbox = _Outbox()
        with self.repo.transaction():
            inquiry = self.repo.get_or_404(Inquiry, inquiry_id, for_update=True)
            self._check_inquiry_transition(inquiry, new_status)
            if new_status in INQUIRY_STATUS_OWNERS:
                raise InvalidTransition(
                    "inquiry", inquiry.id, inquiry.status, new_status,
                    {"reason": f"status is set by {INQUIRY_STATUS_OWNERS[new_status]}"},
                )

            old_status = inquiry.status
            old = snapshot(inquiry, *INQUIRY_FIELDS)
            self.repo.update(inquiry, status=new_status)
            self.audit.record("inquiry_status_changed", "inquiry", inquiry.id, actor.id,
                              old_data=old, new_data=snapshot(inquiry, *INQUIRY_FIELDS))
            outbox.event(AutomationTrigger.INQUIRY_STATUS_CHANGED, _inquiry_event(inquiry, old_status), actor.id)

        self._dispatch(outbox, context)
        return inquiry

    # ============= ASSIGNMENT =============

    def _load_items(self, item_ids: Sequence[int]) -> List[InquiryItem]:
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            raise ValidationError("No items given", {"item_ids": []})
        items = self.repo.get_many(InquiryItem, ids, for_update=True)
        missing = sorted(set(ids) - {item.id for item in items})
        if missing:
            raise NotFound("inquiry_items", missing, {"missing_item_ids": missing})
        return items

    def assign_items(self, item_ids: Sequence[int], assignee_id: int, actor: User,
                     context: Optional[EventContext] = None) -> List[InquiryItem]:
        """
        Assign a batch of items to one VP/VPP user. All-or-nothing: one
        ineligible item fails the whole batch and nothing is written.
        """
        self.policy.authorize(actor, "inquiry-items", "assign")

        outbox = _Outbox()
        with self.repo.transaction():
            assignee = self.repo.get(User, assignee_id)
            if assignee is None:
                raise NotFound("users", assignee_id)
            if not assignment.is_eligible_assignee(assignee):
                raise Forbidden(
                    f"User {assignee.id} cannot receive item assignments",
                    {"assignee_id": assignee.id, "role": assignee.role.value,
                     "is_active": assignee.is_active},
                )

            items = self._load_items(item_ids)
            invalid = assignment.invalid_items(items)
            if invalid:
                by_id = {item.id: item for item in items}
                raise InvalidTransition(
                    "inquiry_items", invalid,
                    {i: by_id[i].status for i in invalid},
                    ItemStatus.ASSIGNED,
                    {
                        "invalid_item_ids": invalid,
                        "inquiry_statuses": {i: by_id[i].inquiry.status.value for i in invalid},
                    },
                )

            ids = [item.id for item in items]
            old = {item.id: snapshot(item, *ITEM_FIELDS) for item in items}
            self.repo.update_many(
                InquiryItem,
                [InquiryItem.id.in_(ids)],
                {"assigned_to_id": assignee.id, "status": ItemStatus.ASSIGNED},
            )

            groups: Dict[int, List[int]] = {}
            for item in items:
                groups.setdefault(item.inquiry_id, []).append(item.id)

            promoted = []
            for inquiry_id in sorted(groups):
                inquiry = self.repo.get(Inquiry, inquiry_id, for_update=True)
                if inquiry.status == InquiryStatus.SUBMITTED:
                    self.repo.update(inquiry, status=InquiryStatus.ASSIGNED)
                    promoted.append(inquiry)

            self.audit.record(
                "items_assigned", "inquiry_item", ids[0] if len(ids) == 1 else None, actor.id,
                old_data=old,
                new_data={i: {"status": ItemStatus.ASSIGNED, "assigned_to_id": assignee.id} for i in ids},
                metadata={
                    "item_ids": ids,
                    "assignee_id": assignee.id,
                    "inquiry_ids": sorted(groups),
                    "promoted_inquiry_ids": [i.id for i in promoted],
                },
            )

            for inquiry_id in sorted(groups):
                inquiry = self.repo.get(Inquiry, inquiry_id)
                group = groups[inquiry_id]
                outbox.notify(
                    assignee.id,
                    "ASSIGNMENT",
                    "New items assigned",
                    f"{len(group)} item(s) from inquiry '{inquiry.title}' have been assigned to you.",
                    {"inquiry_id": inquiry_id, "item_ids": group, "item_count": len(group)},
                )
                outbox.email("assignment", [assignee.email], {
                    "user_name": assignee.display_name,
                    "item_count": len(group),
                    "inquiry_title": inquiry.title,
                    "customer_name": inquiry.customer.name,
                })
                outbox.event(AutomationTrigger.ITEM_ASSIGNED, {
                    "inquiry_id": inquiry_id,
                    "created_by_id": inquiry.created_by_id,
                    "assigned_to_id": assignee.id,
                    "item_ids": group,
                    "item_count": len(group),
                    "priority": inquiry.priority.value,
                }, actor.id)
            for inquiry in promoted:
                outbox.event(AutomationTrigger.INQUIRY_STATUS_CHANGED,
                             _inquiry_event(inquiry, InquiryStatus.SUBMITTED), actor.id)

            workloads = assignment.snapshot(self.session)
            if assignment.is_overloaded(assignee.id, workloads):
                mine = next(w for w in workloads if w.user_id == assignee.id)
                logger.warning(f"Assignee {assignee.id} overloaded with {mine.pending_items} pending item(s)",
                               extra={"user_id": assignee.id})
                outbox.event(AutomationTrigger.WORKLOAD_THRESHOLD, {
                    "user_id": assignee.id,
                    "assigned_to_id": assignee.id,
                    "role": assignee.role.value,
                    "pending_items": mine.pending_items,
                    "average_pending": round(assignment.average_pending(workloads), 2),
                }, actor.id)

        self._dispatch(outbox, context)
        return items

    def unassign_items(self, item_ids: Sequence[int], actor: User,
                       context: Optional[EventContext] = None) -> List[InquiryItem]:
        self.policy.authorize(actor, "inquiry-items", "unassign")

        outbox = _Outbox()
        with self.repo.transaction():
            items = self._load_items(item_ids)
            invalid = sorted(
                item.id for item in items
                if item.status not in UNASSIGNABLE_ITEM_STATUSES
                or item.inquiry.status not in assignment.ASSIGNABLE_INQUIRY_STATUSES
            )
            if invalid:
                by_id = {item.id: item for item in items}
                raise InvalidTransition(
                    "inquiry_items", invalid,
                    {i: by_id[i].status for i in invalid},
                    ItemStatus.PENDING,
                    {"invalid_item_ids": invalid},
                )

            ids = [item.id for item in items]
            old = {item.id: snapshot(item, *ITEM_FIELDS) for item in items}
            previous: Dict[int, int] = {}
            for item in items:
                previous[item.assigned_to_id] = previous.get(item.assigned_to_id, 0) + 1

            self.repo.update_many(
                InquiryItem,
                [InquiryItem.id.in_(ids)],
                {"assigned_to_id": None, "status": ItemStatus.PENDING},
            )
            self.audit.record(
                "items_unassigned", "inquiry_item", ids[0] if len(ids) == 1 else None, actor.id,
                old_data=old,
                new_data={i: {"status": ItemStatus.PENDING, "assigned_to_id": None} for i in ids},
                metadata={"item_ids": ids},
            )
            for user_id, count in sorted(previous.items()):
                outbox.notify(user_id, "UNASSIGNMENT", "Items unassigned",
                              f"{count} item(s) have been taken off your list.", {"item_ids": ids})

        self._dispatch(outbox, context)
        return items

    # ============= COSTING & APPROVAL =============

    def record_cost_calculation(self, item_id: int, cost_input, actor: User,
                                context: Optional[EventContext] = None) -> CostCalculation:
        self.policy.authorize(actor, "cost-calculations", "write")
        cost_input = _parse(CostInput, cost_input)

        outbox = _Outbox()
        with self.repo.transaction():
            item = self.repo.get_or_404(InquiryItem, item_id, for_update=True)
            if actor.role == UserRole.VP and item.assigned_to_id != actor.id:
                raise Forbidden(
                    f"Item {item.id} is not assigned to user {actor.id}",
                    {"item_id": item.id, "assigned_to_id": item.assigned_to_id, "actor_id": actor.id},
                )
            if item.status not in (ItemStatus.ASSIGNED, ItemStatus.COSTED) \
                    or item.inquiry.status != InquiryStatus.ASSIGNED:
                raise InvalidTransition(
                    "inquiry_item", item.id, item.status, ItemStatus.COSTED,
                    {"inquiry_status": item.inquiry.status.value},
                )

            total = cost_input.total
            threshold = settings.APPROVAL_THRESHOLD
            requires_approval = total > threshold
            values = {
                "calculated_by_id": actor.id,
                "material_cost": cost_input.material_cost,
                "labor_cost": cost_input.labor_cost,
                "overhead_cost": cost_input.overhead_cost,
                "total_cost": total,
                "notes": cost_input.notes,
                "requires_approval": requires_approval,
            }

            calc = item.cost_calculation
            old = snapshot(calc, *COST_FIELDS) if calc else {}
            if calc is None:
                calc = self.repo.create(CostCalculation, item_id=item.id, **values)
            else:
                self.repo.update(calc, **values)
                # A revision supersedes any decision still outstanding on the old figures
                for stale in calc.approvals:
                    if stale.status == ApprovalStatus.PENDING:
                        self.repo.update(stale, status=ApprovalStatus.REJECTED,
                                         comments="Superseded by a revised calculation",
                                         decided_at=datetime.utcnow())
            self.repo.update(item, status=ItemStatus.COSTED)

            approval = None
            if requires_approval:
                approval = self.repo.create(
                    Approval,
                    cost_calculation_id=calc.id,
                    status=ApprovalStatus.PENDING,
                    amount=total,
                    threshold=threshold,
                )

            self.audit.record(
                "cost_calculated", "cost_calculation", calc.id, actor.id,
                old_data=old, new_data=snapshot(calc, *COST_FIELDS),
                metadata={"item_id": item.id, "approval_id": approval.id if approval else None},
            )

            inquiry = item.inquiry
            base = {
                "cost_calculation_id": calc.id,
                "item_id": item.id,
                "inquiry_id": inquiry.id,
                "calculated_by_id": actor.id,
                "assigned_to_id": item.assigned_to_id,
                "created_by_id": inquiry.created_by_id,
                "total_cost": total,
            }
            outbox.event(AutomationTrigger.COST_CALCULATED,
                         {**base, "requires_approval": requires_approval}, actor.id)
            if approval is not None:
                self._queue_approval_request(outbox, approval, item, base, actor)

        self._dispatch(outbox, context)
        return calc

    def _queue_approval_request(self, outbox: _Outbox, approval: Approval, item: InquiryItem,
                                base: dict, actor: User) -> None:
        managers = self._manager_ids()
        outbox.notify(
            managers,
            "APPROVAL_REQUIRED",
            "Cost calculation needs approval",
            f"'{item.name}' totals {approval.amount:.2f}, above the approval threshold "
            f"of {approval.threshold:.2f}.",
            {"approval_id": approval.id, "item_id": item.id, "inquiry_id": item.inquiry_id},
        )
        outbox.email("approval_required", self._manager_emails(), {
            "item_name": item.name,
            "inquiry_title": item.inquiry.title,
            "total_cost": approval.amount,
            "threshold": approval.threshold,
        })
        outbox.event(AutomationTrigger.APPROVAL_REQUIRED,
                     {**base, "approval_id": approval.id, "threshold": approval.threshold}, actor.id)

    def request_cost_approval(self, cost_calculation_id: int, actor: User, comments: Optional[str] = None,
                              context: Optional[EventContext] = None) -> Approval:
        """Put a calculation up for sign-off; reuses an approval that is still pending."""
        self.policy.authorize(actor, "approvals", "create")

        outbox = _Outbox()
        with self.repo.transaction():
            calc = self.repo.get_or_404(CostCalculation, cost_calculation_id, for_update=True)
            item = calc.item
            if item.status != ItemStatus.COSTED:
                raise InvalidTransition(
                    "inquiry_item", item.id, item.status, ItemStatus.COSTED,
                    {"reason": "only costed items can be sent for approval"},
                )
            latest = calc.latest_approval
            if latest is not None and latest.status == ApprovalStatus.PENDING:
                return latest

            approval = self.repo.create(
                Approval,
                cost_calculation_id=calc.id,
                status=ApprovalStatus.PENDING,
                amount=calc.total_cost,
                threshold=settings.APPROVAL_THRESHOLD,
                comments=comments,
            )
            self.repo.update(calc, requires_approval=True)
            self.audit.record(
                "approval_requested", "approval", approval.id, actor.id,
                new_data=snapshot(approval, "status", "amount", "threshold", "comments"),
                metadata={"cost_calculation_id": calc.id, "item_id": item.id},
            )
            base = {
                "cost_calculation_id": calc.id,
                "item_id": item.id,
                "inquiry_id": item.inquiry_id,
                "calculated_by_id": calc.calculated_by_id,
                "assigned_to_id": item.assigned_to_id,
                "created_by_id": item.inquiry.created_by_id,
                "total_cost": calc.total_cost,
            }
            self._queue_approval_request(outbox, approval, item, base, actor)

        self._dispatch(outbox, context)
        return approval

    def approve_cost(self, approval_id: int, decision, actor: User, comments: Optional[str] = None,
                     context: Optional[EventContext] = None) -> Approval:
        self.policy.authorize(actor, "approvals", "approve")
        decision = _coerce(ApprovalStatus, decision, "decision")
        if decision not in APPROVAL_DECISIONS:
            raise ValidationError("Decision must be APPROVED or REJECTED",
                                  {"field": "decision", "allowed": sorted(d.value for d in APPROVAL_DECISIONS)})

        outbox = _Outbox()
        with self.repo.transaction():
            approval = self.repo.get_or_404(Approval, approval_id, for_update=True)
            if approval.status != ApprovalStatus.PENDING:
                raise InvalidTransition("approval", approval.id, approval.status, decision)

            calc = approval.cost_calculation
            item = calc.item
            if item.status != ItemStatus.COSTED:
                raise InvalidTransition(
                    "inquiry_item", item.id, item.status,
                    ItemStatus.ASSIGNED if decision == ApprovalStatus.REJECTED else ItemStatus.COSTED,
                    {"approval_id": approval.id},
                )

            old = snapshot(approval, "status", "approver_id", "comments")
            self.repo.update(approval, status=decision, approver_id=actor.id,
                             comments=comments, decided_at=datetime.utcnow())
            if decision == ApprovalStatus.REJECTED:
                # Back to rework with the same specialist
                self.repo.update(item, status=ItemStatus.ASSIGNED)

            self.audit.record(
                "cost_approved" if decision == ApprovalStatus.APPROVED else "cost_rejected",
                "approval", approval.id, actor.id,
                old_data=old,
                new_data=snapshot(approval, "status", "approver_id", "comments"),
                metadata={"cost_calculation_id": calc.id, "item_id": item.id,
                          "item_status": item.status.value},
            )

            calculator = self.repo.get(User, calc.calculated_by_id)
            status_word = decision.value.lower()
            outbox.notify(
                calc.calculated_by_id,
                "APPROVAL_STATUS",
                f"Cost calculation {status_word}",
                f"Your cost calculation for '{item.name}' has been {status_word} by {actor.display_name}.",
                {"approval_id": approval.id, "item_id": item.id, "status": decision.value},
            )
            if calculator is not None:
                outbox.email("approval_status", [calculator.email], {
                    "user_name": calculator.display_name,
                    "item_name": item.name,
                    "status": status_word,
                    "manager_name": actor.display_name,
                    "comments": comments or "",
                })

        self._dispatch(outbox, context)
        return approval

    # ============= QUOTES =============

    def _next_quote_number(self, today: datetime) -> str:
        prefix = f"QT-{today:%Y%m%d}-"
        issued = self.repo.find(Quote, Quote.quote_number.like(f"{prefix}%"))
        start = len(issued) + 1
        for n in range(start, start + settings.QUOTE_NUMBER_ATTEMPTS):
            candidate = f"{prefix}{n:03d}"
            if self.repo.find_one(Quote, Quote.quote_number == candidate) is None:
                return candidate
        raise ConflictError("Could not allocate a quote number",
                            {"prefix": prefix, "attempts": settings.QUOTE_NUMBER_ATTEMPTS})

    def _next_order_number(self, today: datetime) -> str:
        for _ in range(settings.QUOTE_NUMBER_ATTEMPTS):
            candidate = f"PO-{today:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"
            if self.repo.find_one(ProductionOrder, ProductionOrder.order_number == candidate) is None:
                return candidate
        raise ConflictError("Could not allocate a production order number")

    @staticmethod
    def quote_readiness(items: Iterable[InquiryItem]) -> Dict[str, List[int]]:
        """Items blocking quote generation, split by reason, sorted by id."""
        missing_cost, missing_approval = [], []
        for item in items:
            calc = item.cost_calculation
            if item.status != ItemStatus.COSTED or calc is None:
                missing_cost.append(item.id)
                continue
            if calc.requires_approval:
                latest = calc.latest_approval
                if latest is None or latest.status != ApprovalStatus.APPROVED:
                    missing_approval.append(item.id)
        return {"missing_cost_items": sorted(missing_cost), "missing_approval_items": sorted(missing_approval)}

    def generate_quote(self, inquiry_id: int, validity_days: Optional[int], actor: User,
                       context: Optional[EventContext] = None) -> Quote:
        self.policy.authorize(actor, "quotes", "create")
        validity_days = settings.DEFAULT_QUOTE_VALIDITY_DAYS if validity_days is None else validity_days
        if validity_days <= 0:
            raise ValidationError("validity_days must be positive", {"field": "validity_days",
                                                                       "value": validity_days})

        outbox = _Outbox()
        with self.repo.transaction():
            inquiry = self.repo.get_or_404(Inquiry, inquiry_id, for_update=True)
            self._check_inquiry_transition(inquiry, InquiryStatus.QUOTED)

            items = self.repo.get_many(InquiryItem, [i.id for i in inquiry.items], for_update=True)
            readiness = self.quote_readiness(items)
            if readiness["missing_cost_items"] or readiness["missing_approval_items"]:
                raise ValidationError(
                    "Inquiry is not ready for quoting",
                    {"inquiry_id": inquiry.id, **readiness},
                )

            now = datetime.utcnow()
            total = round(sum(item.cost_calculation.total_cost for item in items), 2)
            quote = self.repo.create(
                Quote,
                inquiry_id=inquiry.id,
                quote_number=self._next_quote_number(now),
                total=total,
                status=QuoteStatus.DRAFT,
                valid_until=now + timedelta(days=validity_days),
                created_by_id=actor.id,
            )
            ids = [item.id for item in items]
            self.repo.update_many(InquiryItem, [InquiryItem.id.in_(ids)], {"status": ItemStatus.QUOTED})
            old = snapshot(inquiry, *INQUIRY_FIELDS)
            self.repo.update(inquiry, status=InquiryStatus.QUOTED, total_value=total)

            create_deadline(self.repo, DeadlineEntity.QUOTE, quote.id, quote.valid_until)
            complete_deadline(self.repo, DeadlineEntity.INQUIRY, inquiry.id)
            for item_id in ids:
                complete_deadline(self.repo, DeadlineEntity.INQUIRY_ITEM, item_id)

            self.audit.record(
                "quote_generated", "quote", quote.id, actor.id,
                old_data={"inquiry": old},
                new_data=snapshot(quote, "quote_number", "total", "status", "valid_until"),
                metadata={"inquiry_id": inquiry.id, "item_ids": ids},
            )
            outbox.notify(
                inquiry.created_by_id,
                "QUOTE_CREATED",
                "Quote generated",
                f"Quote {quote.quote_number} for '{inquiry.title}' totals {total:.2f}.",
                {"quote_id": quote.id, "inquiry_id": inquiry.id},
            )
            outbox.event(AutomationTrigger.QUOTE_CREATED, {
                "quote_id": quote.id,
                "inquiry_id": inquiry.id,
                "customer_id": inquiry.customer_id,
                "created_by_id": actor.id,
                "quote_number": quote.quote_number,
                "total": total,
            }, actor.id)
            outbox.event(AutomationTrigger.INQUIRY_STATUS_CHANGED,
                         _inquiry_event(inquiry, InquiryStatus.ASSIGNED), actor.id)

        logger.info(f"Generated quote {quote.quote_number} for inquiry {inquiry_id}",
                    extra={"entity_type": "quote", "entity_id": quote.id})
        self._dispatch(outbox, context)
        return quote

    def send_quote(self, quote_id: int, actor: User, context: Optional[EventContext] = None) -> Quote:
        self.policy.authorize(actor, "quotes", "send")

        outbox = _Outbox()
        with self.repo.transaction():
            quote = self.repo.get_or_404(Quote, quote_id, for_update=True)
            if quote.status != QuoteStatus.DRAFT:
                raise InvalidTransition("quote", quote.id, quote.status, QuoteStatus.SENT)
            if quote.valid_until < datetime.utcnow():
                raise ValidationError("Quote validity has passed",
                                      {"quote_id": quote.id, "valid_until": quote.valid_until.isoformat()})

            old = snapshot(quote, "status", "sent_at")
            self.repo.update(quote, status=QuoteStatus.SENT, sent_at=datetime.utcnow())
            self.audit.record("quote_sent", "quote", quote.id, actor.id,
                              old_data=old, new_data=snapshot(quote, "status", "sent_at"))

            inquiry = quote.inquiry
            outbox.email("quote_sent", [inquiry.customer.email], {
                "customer_name": inquiry.customer.name,
                "inquiry_title": inquiry.title,
                "quote_number": quote.quote_number,
                "total": quote.total,
                "valid_until": f"{quote.valid_until:%Y-%m-%d}",
            })
            outbox.notify(
                inquiry.created_by_id,
                "QUOTE_SENT",
                "Quote sent",
                f"Quote {quote.quote_number} has been sent to {inquiry.customer.name}.",
                {"quote_id": quote.id, "inquiry_id": inquiry.id},
            )

        self._dispatch(outbox, context)
        return quote

    def record_quote_outcome(self, quote_id: int, outcome, actor: User,
                             context: Optional[EventContext] = None) -> Quote:
        self.policy.authorize(actor, "quotes", "outcome")
        outcome = _coerce(QuoteStatus, outcome, "outcome")
        if outcome not in QUOTE_OUTCOMES:
            raise ValidationError("Outcome must be ACCEPTED, REJECTED or EXPIRED",
                                  {"field": "outcome", "allowed": sorted(o.value for o in QUOTE_OUTCOMES)})

        outbox = _Outbox()
        with self.repo.transaction():
            quote = self.repo.get_or_404(Quote, quote_id, for_update=True)
            if quote.status != QuoteStatus.SENT:
                raise InvalidTransition("quote", quote.id, quote.status, outcome)

            inquiry = self.repo.get(Inquiry, quote.inquiry_id, for_update=True)
            if outcome == QuoteStatus.ACCEPTED:
                self._check_inquiry_transition(inquiry, InquiryStatus.APPROVED, {"quote_id": quote.id})

            old = snapshot(quote, "status")
            self.repo.update(quote, status=outcome)
            complete_deadline(self.repo, DeadlineEntity.QUOTE, quote.id)

            order = None
            if outcome == QuoteStatus.ACCEPTED:
                order = self.repo.create(
                    ProductionOrder,
                    quote_id=quote.id,
                    inquiry_id=inquiry.id,
                    order_number=self._next_order_number(datetime.utcnow()),
                    status=ProductionStatus.PENDING,
                    total=quote.total,
                )
                self.repo.update(inquiry, status=InquiryStatus.APPROVED)

            self.audit.record(
                f"quote_{outcome.value.lower()}", "quote", quote.id, actor.id,
                old_data=old, new_data=snapshot(quote, "status"),
                metadata={"production_order_id": order.id if order else None},
            )

            if order is not None:
                outbox.notify(
                    inquiry.created_by_id,
                    "QUOTE_ACCEPTED",
                    "Quote accepted",
                    f"Quote {quote.quote_number} for '{inquiry.title}' was accepted; "
                    f"production order {order.order_number} created.",
                    {"quote_id": quote.id, "production_order_id": order.id},
                )
                outbox.event(AutomationTrigger.PRODUCTION_ORDER_CREATED, {
                    "production_order_id": order.id,
                    "quote_id": quote.id,
                    "inquiry_id": inquiry.id,
                    "customer_id": inquiry.customer_id,
                    "created_by_id": inquiry.created_by_id,
                    "order_number": order.order_number,
                    "total": order.total,
                }, actor.id)
                outbox.event(AutomationTrigger.INQUIRY_STATUS_CHANGED,
                             _inquiry_event(inquiry, InquiryStatus.QUOTED), actor.id)

        self._dispatch(outbox, context)
        return quote

    # ============= PRODUCTION =============

    def advance_production_order(self, order_id: int, next_status, actor: User,
                                 context: Optional[EventContext] = None) -> ProductionOrder:
        self.policy.authorize(actor, "production-orders", "update")
        next_status = _coerce(ProductionStatus, next_status, "status")

        outbox = _Outbox()
        with self.repo.transaction():
            order = self.repo.get_or_404(ProductionOrder, order_id, for_update=True)
            successor = PRODUCTION_SUCCESSORS.get(order.status)
            if next_status != successor:
                raise InvalidTransition(
                    "production_order", order.id, order.status, next_status,
                    {"allowed": successor.value if successor else None},
                )

            old = snapshot(order, "status", "start_date", "completed_date")
            values: Dict[str, Any] = {"status": next_status}
            now = datetime.utcnow()
            if next_status == ProductionStatus.IN_PRODUCTION:
                values["start_date"] = now
            elif next_status == ProductionStatus.COMPLETED:
                values["completed_date"] = now
            self.repo.update(order, **values)

            inquiry = self.repo.get(Inquiry, order.inquiry_id, for_update=True)
            closed_from = None
            if next_status == ProductionStatus.DELIVERED \
                    and InquiryStatus.CLOSED in INQUIRY_TRANSITIONS[inquiry.status]:
                closed_from = inquiry.status
                self.repo.update(inquiry, status=InquiryStatus.CLOSED)

            self.audit.record(
                "production_order_advanced", "production_order", order.id, actor.id,
                old_data=old, new_data=snapshot(order, "status", "start_date", "completed_date"),
                metadata={"inquiry_closed": closed_from is not None},
            )

            status_word = next_status.value.replace("_", " ").lower()
            message = f"Production order {order.order_number} is now {status_word}."
            data = {"production_order_id": order.id, "status": next_status.value}
            outbox.notify(inquiry.created_by_id, "PRODUCTION_STATUS", "Production order update", message, data)
            if next_status in (ProductionStatus.COMPLETED, ProductionStatus.DELIVERED):
                outbox.notify(self._manager_ids(), "PRODUCTION_STATUS", "Production order update", message, data)
            if next_status in (ProductionStatus.SHIPPED, ProductionStatus.DELIVERED):
                outbox.email("production_status", [inquiry.customer.email], {
                    "order_number": order.order_number,
                    "customer_name": inquiry.customer.name,
                    "status": status_word,
                })
            if closed_from is not None:
                outbox.event(AutomationTrigger.INQUIRY_STATUS_CHANGED,
                             _inquiry_event(inquiry, closed_from), actor.id)

        self._dispatch(outbox, context)
        return order
