"""
Automation rule engine.

Runs synchronously after the triggering transaction has committed. Matching
rules are evaluated in (priority desc, id asc) order; each firing rule writes
exactly one AutomationLog row, and a failing rule never affects the others or
the already committed trigger.

Actions re-enter the public WorkflowEngine operations, so automation gets no
shortcut around authorization or the state tables. Re-entry is bounded by an
``EventContext`` shared across one evaluation pass.
"""
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from quoteflow.core.config import settings
from quoteflow.core.errors import DependencyFailure, ValidationError
from quoteflow.core.logging import automation_scope, get_logger
from quoteflow.db.models import (
    AutomationLog, AutomationOutcome, AutomationRule, AutomationTrigger,
    InquiryItem, InquiryStatus, LogLevel, ProductionStatus, QuoteStatus,
    User, UserRole,
)
from quoteflow.services import assignment
from quoteflow.services.audit import to_json
from quoteflow.services.automation.schema import (
    TRIGGER_SUBJECTS, Action, AssignUserAction, ChangeStatusAction, Condition,
    CreateApprovalAction, SendNotificationAction,
)
from quoteflow.services.notifier import render

if TYPE_CHECKING:
    from quoteflow.services.workflow import WorkflowEngine

logger = get_logger(__name__)

_conditions_adapter = TypeAdapter(List[Condition])
_actions_adapter = TypeAdapter(List[Action])


@dataclass
class WorkflowEvent:
    """Committed state change handed to the rule engine."""

    trigger: AutomationTrigger
    payload: Dict[str, Any]
    actor_id: Optional[int] = None

    @property
    def entity_type(self) -> str:
        return TRIGGER_SUBJECTS[self.trigger][0]

    @property
    def entity_id(self) -> Optional[int]:
        return self.payload.get(TRIGGER_SUBJECTS[self.trigger][1])

    @property
    def key(self) -> Tuple[str, str, Optional[int]]:
        return (self.trigger.value, self.entity_type, self.entity_id)


@dataclass
class EventContext:
    """
    State of one evaluation pass, threaded through re-entrant actions.

    ``fired`` counts (trigger, entity_type, entity_id) keys across the whole
    pass; child contexts share it and the set of halted keys. A halted key
    stops automation for that event only.
    """

    depth: int = 0
    fired: Counter = field(default_factory=Counter)
    halted: Set[Tuple[str, str, Optional[int]]] = field(default_factory=set)

    def is_halted(self, key) -> bool:
        return key in self.halted

    def halt(self, key) -> None:
        self.halted.add(key)

    def child(self) -> "EventContext":
        return EventContext(depth=self.depth + 1, fired=self.fired, halted=self.halted)


@dataclass
class _LoadedRule:
    id: int
    name: str
    created_by_id: int
    conditions: List[Condition]
    actions: list


class AutomationEngine:
    """Evaluates stored rules for workflow events."""

    def __init__(self, workflow: "WorkflowEngine", max_depth: Optional[int] = None):
        self.workflow = workflow
        self.repo = workflow.repo
        self.max_depth = settings.AUTOMATION_MAX_DEPTH if max_depth is None else max_depth

    # ============= EVALUATION =============

    def handle(self, event: WorkflowEvent, context: Optional[EventContext] = None) -> None:
        context = context or EventContext()
        if context.is_halted(event.key):
            logger.debug(f"Automation halted; dropping {event.trigger.value} for {event.entity_type}:{event.entity_id}",
                         extra={"trigger": event.trigger.value, "depth": context.depth})
            return

        context.fired[event.key] += 1
        if context.fired[event.key] > self.max_depth:
            self._halt(event, context)
            return

        for rule in self._matching_rules(event.trigger):
            if context.is_halted(event.key):
                break
            if rule is None:
                continue
            if not all(condition.evaluate(event.payload) for condition in rule.conditions):
                continue
            self._fire(rule, event, context)

    def _matching_rules(self, trigger: AutomationTrigger) -> List[Optional[_LoadedRule]]:
        rows = self.repo.find(
            AutomationRule,
            AutomationRule.trigger == trigger,
            AutomationRule.is_active.is_(True),
            AutomationRule.deleted_at.is_(None),
            order_by=(AutomationRule.priority.desc(), AutomationRule.id.asc()),
        )
        loaded = []
        for row in rows:
            try:
                loaded.append(_LoadedRule(
                    id=row.id,
                    name=row.name,
                    created_by_id=row.created_by_id,
                    conditions=_conditions_adapter.validate_python(row.conditions or []),
                    actions=_actions_adapter.validate_python(row.actions or []),
                ))
            except PydanticValidationError as e:
                logger.error(f"Skipping malformed automation rule {row.id}: {e.error_count()} error(s)",
                             extra={"rule_id": row.id, "trigger": trigger.value})
                loaded.append(None)
        return loaded

    def _fire(self, rule: _LoadedRule, event: WorkflowEvent, context: EventContext) -> None:
        executed: List[str] = []
        outcome = AutomationOutcome.SUCCESS
        try:
            actor = self.repo.get(User, rule.created_by_id)
            if actor is None:
                raise ValidationError(f"Rule owner {rule.created_by_id} no longer exists",
                                      {"rule_id": rule.id})
            with automation_scope(rule_id=rule.id, trigger=event.trigger.value, depth=context.depth):
                for index, action in enumerate(rule.actions):
                    try:
                        executed.append(self._execute(action, actor, event, context.child()))
                    except Exception as e:
                        raise _ActionFailed(index, action.type, e) from e
            message = f"Executed {len(executed)} action(s)"
        except Exception as e:
            outcome = AutomationOutcome.FAILURE
            message = str(e)
            logger.warning(f"Automation rule {rule.id} ({rule.name}) failed: {message}",
                           extra={"rule_id": rule.id, "trigger": event.trigger.value})

        self._write_log(
            rule_id=rule.id,
            event=event,
            outcome=outcome,
            level=LogLevel.INFO,
            message=message,
            executed_actions=executed,
        )

    def _halt(self, event: WorkflowEvent, context: EventContext) -> None:
        context.halt(event.key)
        message = (
            f"Automation halted: {event.trigger.value} for {event.entity_type} {event.entity_id} "
            f"exceeded {self.max_depth} firing(s) in one pass (nesting depth {context.depth})"
        )
        logger.critical(message, extra={
            "trigger": event.trigger.value,
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "depth": context.depth,
        })
        self._write_log(
            rule_id=None,
            event=event,
            outcome=AutomationOutcome.FAILURE,
            level=LogLevel.CRITICAL,
            message=message,
            executed_actions=[],
        )

    def _write_log(self, rule_id, event, outcome, level, message, executed_actions) -> None:
        try:
            with self.repo.transaction():
                self.repo.create(
                    AutomationLog,
                    rule_id=rule_id,
                    trigger=event.trigger,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    outcome=outcome,
                    level=level,
                    message=message,
                    executed_actions=executed_actions,
                    payload=to_json(event.payload),
                )
        except Exception:
            logger.exception(f"Could not write automation log for rule {rule_id}",
                             extra={"rule_id": rule_id, "trigger": event.trigger.value})

    # ============= ACTIONS =============

    def _execute(self, action, actor: User, event: WorkflowEvent, context: EventContext) -> str:
        if isinstance(action, ChangeStatusAction):
            return self._change_status(action, actor, event, context)
        if isinstance(action, AssignUserAction):
            return self._assign_user(action, actor, event, context)
        if isinstance(action, SendNotificationAction):
            return self._send_notification(action, event)
        if isinstance(action, CreateApprovalAction):
            return self._create_approval(action, actor, event, context)
        raise ValidationError(f"Unsupported action type {action.type}")

    @staticmethod
    def _required_id(event: WorkflowEvent, field_name: str) -> int:
        value = event.payload.get(field_name)
        if value is None:
            raise ValidationError(f"Event {event.trigger.value} carries no {field_name}",
                                  {"field": field_name})
        return value

    def _change_status(self, action: ChangeStatusAction, actor, event, context) -> str:
        entity, status = action.params.entity, action.params.status
        wf = self.workflow

        if entity == "inquiry":
            target = self._required_id(event, "inquiry_id")
            wf.change_inquiry_status(target, InquiryStatus(status), actor, context=context)
        elif entity == "item":
            target = self._required_id(event, "item_id")
            wf.unassign_items([target], actor, context=context)
        elif entity == "quote":
            target = self._required_id(event, "quote_id")
            if status == QuoteStatus.SENT.value:
                wf.send_quote(target, actor, context=context)
            else:
                wf.record_quote_outcome(target, QuoteStatus(status), actor, context=context)
        else:
            target = self._required_id(event, "production_order_id")
            wf.advance_production_order(target, ProductionStatus(status), actor, context=context)
        return f"change_status {entity} {target} -> {status}"

    def _assign_user(self, action: AssignUserAction, actor, event, context) -> str:
        payload = event.payload
        if payload.get("item_ids"):
            item_ids = list(payload["item_ids"])
        elif payload.get("item_id") is not None:
            item_ids = [payload["item_id"]]
        else:
            inquiry_id = self._required_id(event, "inquiry_id")
            item_ids = [
                item.id for item in self.repo.find(
                    InquiryItem,
                    InquiryItem.inquiry_id == inquiry_id,
                    InquiryItem.status.in_(list(assignment.ASSIGNABLE_ITEM_STATUSES)),
                    order_by=(InquiryItem.id,),
                )
            ]
        if not item_ids:
            raise ValidationError("No assignable items for this event", {"payload": payload})

        if action.params.balance_workload:
            best = assignment.recommend(assignment.snapshot(self.repo.session))
            if best is None:
                raise ValidationError("No eligible VP/VPP user to balance onto")
            assignee_id = best.user_id
        else:
            assignee_id = action.params.user_id

        self.workflow.assign_items(item_ids, assignee_id, actor, context=context)
        return f"assign_user {len(item_ids)} item(s) -> user {assignee_id}"

    def _recipients(self, recipient, event: WorkflowEvent) -> List[int]:
        if isinstance(recipient, int):
            return [recipient]
        if recipient == "managers":
            return [
                u.id for u in self.repo.find(
                    User, User.role == UserRole.MANAGER, User.is_active.is_(True),
                    order_by=(User.id,),
                )
            ]
        if recipient == "actor":
            return [event.actor_id] if event.actor_id is not None else []
        field_name = "assigned_to_id" if recipient == "assignee" else "created_by_id"
        value = event.payload.get(field_name)
        return [value] if value is not None else []

    def _send_notification(self, action: SendNotificationAction, event: WorkflowEvent) -> str:
        params = action.params
        recipients = self._recipients(params.recipient, event)
        if not recipients:
            raise ValidationError(f"No recipients resolved for '{params.recipient}'",
                                  {"recipient": params.recipient})

        variables = {k: v for k, v in to_json(event.payload).items()}
        sent = self.workflow.notifier.notify_many(
            recipients,
            params.notification_type,
            render(params.title, variables),
            render(params.message, variables),
            {"trigger": event.trigger.value, **variables},
        )
        if sent == 0:
            raise DependencyFailure("Notification delivery failed", {"recipients": recipients})
        return f"send_notification to {sent} user(s)"

    def _create_approval(self, action: CreateApprovalAction, actor, event, context) -> str:
        calculation_id = self._required_id(event, "cost_calculation_id")
        approval = self.workflow.request_cost_approval(
            calculation_id, actor, comments=action.params.comments, context=context,
        )
        return f"create_approval {approval.id} for cost calculation {calculation_id}"


class _ActionFailed(Exception):
    def __init__(self, index: int, action_type: str, error: Exception):
        detail = error.message if hasattr(error, "message") else str(error)
        super().__init__(f"Action {index} ({action_type}) failed: {detail}")
