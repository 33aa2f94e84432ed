"""
Automation rule schema.

Conditions and actions are closed, typed variants rather than free-form
JSON. A rule is validated against the payload shape of its trigger when it is
created, updated or activated, so evaluation never meets an unknown field or
an action whose target id the event cannot supply.
"""
import enum
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing_extensions import Annotated

from quoteflow.db.models import (
    AutomationTrigger, InquiryStatus, ItemStatus, ProductionStatus, QuoteStatus,
)


class FieldKind(str, enum.Enum):
    ID = "id"
    NUMBER = "number"
    STRING = "string"
    BOOL = "bool"
    LIST = "list"


ID, NUMBER, STRING, BOOL, LIST = (
    FieldKind.ID, FieldKind.NUMBER, FieldKind.STRING, FieldKind.BOOL, FieldKind.LIST,
)

TRIGGER_PAYLOADS: Dict[AutomationTrigger, Dict[str, FieldKind]] = {
    AutomationTrigger.INQUIRY_CREATED: {
        "inquiry_id": ID, "customer_id": ID, "created_by_id": ID,
        "title": STRING, "priority": STRING, "status": STRING, "item_count": NUMBER,
    },
    AutomationTrigger.INQUIRY_STATUS_CHANGED: {
        "inquiry_id": ID, "customer_id": ID, "created_by_id": ID, "assigned_to_id": ID,
        "title": STRING, "priority": STRING, "old_status": STRING, "new_status": STRING,
    },
    AutomationTrigger.ITEM_ASSIGNED: {
        "inquiry_id": ID, "created_by_id": ID, "assigned_to_id": ID,
        "item_ids": LIST, "item_count": NUMBER, "priority": STRING,
    },
    AutomationTrigger.COST_CALCULATED: {
        "cost_calculation_id": ID, "item_id": ID, "inquiry_id": ID,
        "calculated_by_id": ID, "assigned_to_id": ID, "created_by_id": ID,
        "total_cost": NUMBER, "requires_approval": BOOL,
    },
    AutomationTrigger.APPROVAL_REQUIRED: {
        "approval_id": ID, "cost_calculation_id": ID, "item_id": ID, "inquiry_id": ID,
        "calculated_by_id": ID, "assigned_to_id": ID, "created_by_id": ID,
        "total_cost": NUMBER, "threshold": NUMBER,
    },
    AutomationTrigger.QUOTE_CREATED: {
        "quote_id": ID, "inquiry_id": ID, "customer_id": ID, "created_by_id": ID,
        "quote_number": STRING, "total": NUMBER,
    },
    AutomationTrigger.DEADLINE_APPROACHING: {
        "deadline_id": ID, "entity_type": STRING, "entity_id": ID, "inquiry_id": ID,
        "days_remaining": NUMBER, "is_overdue": BOOL, "is_escalation": BOOL,
    },
    AutomationTrigger.WORKLOAD_THRESHOLD: {
        "user_id": ID, "assigned_to_id": ID, "role": STRING,
        "pending_items": NUMBER, "average_pending": NUMBER,
    },
    AutomationTrigger.PRODUCTION_ORDER_CREATED: {
        "production_order_id": ID, "quote_id": ID, "inquiry_id": ID,
        "customer_id": ID, "created_by_id": ID, "order_number": STRING, "total": NUMBER,
    },
}

# (entity_type, payload id field) identifying the subject of each event
TRIGGER_SUBJECTS: Dict[AutomationTrigger, tuple] = {
    AutomationTrigger.INQUIRY_CREATED: ("inquiry", "inquiry_id"),
    AutomationTrigger.INQUIRY_STATUS_CHANGED: ("inquiry", "inquiry_id"),
    AutomationTrigger.ITEM_ASSIGNED: ("inquiry", "inquiry_id"),
    AutomationTrigger.COST_CALCULATED: ("cost_calculation", "cost_calculation_id"),
    AutomationTrigger.APPROVAL_REQUIRED: ("cost_calculation", "cost_calculation_id"),
    AutomationTrigger.QUOTE_CREATED: ("quote", "quote_id"),
    AutomationTrigger.DEADLINE_APPROACHING: ("deadline", "deadline_id"),
    AutomationTrigger.WORKLOAD_THRESHOLD: ("user", "user_id"),
    AutomationTrigger.PRODUCTION_ORDER_CREATED: ("production_order", "production_order_id"),
}


def resolve_path(payload: Dict[str, Any], path: str) -> Any:
    current: Any = payload
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


# ============= CONDITIONS =============

class ConditionOperator(str, enum.Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _greater(field_value, value) -> bool:
    left = _as_number(field_value)
    return left is not None and left > float(value)


def _less(field_value, value) -> bool:
    left = _as_number(field_value)
    return left is not None and left < float(value)


def _contains(field_value, value) -> bool:
    if isinstance(field_value, (list, tuple, set)):
        return value in field_value
    if isinstance(field_value, str):
        return str(value) in field_value
    return False


OPERATORS: Dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: lambda field_value, value: field_value == value,
    ConditionOperator.NOT_EQUALS: lambda field_value, value: field_value != value,
    ConditionOperator.IN: lambda field_value, value: field_value in value,
    ConditionOperator.NOT_IN: lambda field_value, value: field_value not in value,
    ConditionOperator.GREATER_THAN: _greater,
    ConditionOperator.LESS_THAN: _less,
    ConditionOperator.CONTAINS: _contains,
}

_NUMERIC_OPERATORS = {ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN}
_SET_OPERATORS = {ConditionOperator.IN, ConditionOperator.NOT_IN}


class Condition(BaseModel):
    field: str = Field(..., min_length=1)
    operator: ConditionOperator
    value: Any = None

    @model_validator(mode="after")
    def check_value_shape(self):
        if self.operator in _SET_OPERATORS and not isinstance(self.value, list):
            raise ValueError(f"operator '{self.operator.value}' needs a list value")
        if self.operator in _NUMERIC_OPERATORS and _as_number(self.value) is None:
            raise ValueError(f"operator '{self.operator.value}' needs a numeric value")
        return self

    def evaluate(self, payload: Dict[str, Any]) -> bool:
        return OPERATORS[self.operator](resolve_path(payload, self.field), self.value)

    def check_against(self, fields: Dict[str, FieldKind]) -> None:
        root = self.field.split(".")[0]
        kind = fields.get(root)
        if kind is None:
            raise ValueError(f"unknown field '{self.field}'")
        if self.operator in _NUMERIC_OPERATORS and kind not in (NUMBER, ID):
            raise ValueError(f"field '{self.field}' is not numeric")
        if self.operator == ConditionOperator.CONTAINS and kind not in (STRING, LIST):
            raise ValueError(f"field '{self.field}' does not support 'contains'")


# ============= ACTIONS =============

# Inquiry statuses only reachable through their dedicated workflow operation
INQUIRY_STATUS_OWNERS = {
    InquiryStatus.ASSIGNED: "assign_items",
    InquiryStatus.QUOTED: "generate_quote",
    InquiryStatus.APPROVED: "record_quote_outcome",
}

CHANGE_STATUS_TARGETS: Dict[str, tuple] = {
    # entity -> (payload id field, statuses an action may request)
    "inquiry": ("inquiry_id", {
        s.value for s in InquiryStatus if s != InquiryStatus.DRAFT and s not in INQUIRY_STATUS_OWNERS
    }),
    "item": ("item_id", {ItemStatus.PENDING.value}),
    "quote": ("quote_id", {s.value for s in QuoteStatus} - {QuoteStatus.DRAFT.value}),
    "production_order": ("production_order_id", {s.value for s in ProductionStatus} - {ProductionStatus.PENDING.value}),
}

RECIPIENT_FIELDS = {
    "assignee": "assigned_to_id",
    "creator": "created_by_id",
    "managers": None,
    "actor": None,
}


class ChangeStatusParams(BaseModel):
    entity: Literal["inquiry", "item", "quote", "production_order"]
    status: str

    @model_validator(mode="after")
    def check_status(self):
        allowed = CHANGE_STATUS_TARGETS[self.entity][1]
        if self.status not in allowed:
            raise ValueError(f"status '{self.status}' is not valid for {self.entity}")
        return self


class ChangeStatusAction(BaseModel):
    type: Literal["change_status"]
    params: ChangeStatusParams

    def check_against(self, fields: Dict[str, FieldKind]) -> None:
        id_field = CHANGE_STATUS_TARGETS[self.params.entity][0]
        if id_field not in fields:
            raise ValueError(f"change_status on {self.params.entity} needs '{id_field}' in the event")


class AssignUserParams(BaseModel):
    user_id: Optional[int] = None
    balance_workload: bool = False

    @model_validator(mode="after")
    def check_target(self):
        if (self.user_id is None) == (not self.balance_workload):
            raise ValueError("set exactly one of user_id or balance_workload")
        return self


class AssignUserAction(BaseModel):
    type: Literal["assign_user"]
    params: AssignUserParams

    def check_against(self, fields: Dict[str, FieldKind]) -> None:
        if not ({"item_ids", "item_id", "inquiry_id"} & set(fields)):
            raise ValueError("assign_user needs item_ids, item_id or inquiry_id in the event")


class SendNotificationParams(BaseModel):
    recipient: Union[int, Literal["assignee", "creator", "managers", "actor"]]
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    notification_type: str = "AUTOMATION"


class SendNotificationAction(BaseModel):
    type: Literal["send_notification"]
    params: SendNotificationParams

    def check_against(self, fields: Dict[str, FieldKind]) -> None:
        recipient = self.params.recipient
        if isinstance(recipient, str):
            field = RECIPIENT_FIELDS[recipient]
            if field and field not in fields:
                raise ValueError(f"recipient '{recipient}' needs '{field}' in the event")


class CreateApprovalParams(BaseModel):
    comments: Optional[str] = None


class CreateApprovalAction(BaseModel):
    type: Literal["create_approval"]
    params: CreateApprovalParams = Field(default_factory=CreateApprovalParams)

    def check_against(self, fields: Dict[str, FieldKind]) -> None:
        if "cost_calculation_id" not in fields:
            raise ValueError("create_approval needs 'cost_calculation_id' in the event")


Action = Annotated[
    Union[ChangeStatusAction, AssignUserAction, SendNotificationAction, CreateApprovalAction],
    Field(discriminator="type"),
]


# ============= RULE =============

class RuleDefinition(BaseModel):
    """External rule representation, validated against the trigger payload."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    trigger: AutomationTrigger
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(..., min_length=1)
    priority: int = 0
    is_active: bool = Field(True, alias="isActive")

    @field_validator("trigger", mode="before")
    @classmethod
    def normalize_trigger(cls, v):
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_against_trigger(self):
        fields = TRIGGER_PAYLOADS[self.trigger]
        for index, condition in enumerate(self.conditions):
            try:
                condition.check_against(fields)
            except ValueError as e:
                raise ValueError(f"conditions[{index}]: {e}") from e
        for index, action in enumerate(self.actions):
            try:
                action.check_against(fields)
            except ValueError as e:
                raise ValueError(f"actions[{index}]: {e}") from e
        return self

    def stored_conditions(self) -> list:
        return [c.model_dump(mode="json") for c in self.conditions]

    def stored_actions(self) -> list:
        return [a.model_dump(mode="json") for a in self.actions]
