"""
Automation rule management API routes.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from pydantic import BaseModel, ConfigDict

from quoteflow.api.deps import get_rule_service
from quoteflow.core.rbac import get_current_actor
from quoteflow.db.models import AutomationOutcome, AutomationTrigger, LogLevel, User
from quoteflow.services.automation.rules import RuleService, rule_to_dict

router = APIRouter(prefix="/api/automation", tags=["Automation"])


# ============= SCHEMAS =============

class ActivationRequest(BaseModel):
    is_active: bool


class AutomationLogResponse(BaseModel):
    id: int
    rule_id: Optional[int]
    trigger: AutomationTrigger
    entity_type: Optional[str]
    entity_id: Optional[int]
    outcome: AutomationOutcome
    level: LogLevel
    message: str
    executed_actions: Optional[list]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============= ROUTES =============

@router.get("/rules")
async def list_rules(
    trigger: Optional[AutomationTrigger] = Query(None),
    active_only: bool = Query(False),
    actor: User = Depends(get_current_actor),
    rules: RuleService = Depends(get_rule_service),
) -> List[Dict[str, Any]]:
    """Rules in evaluation order (priority desc, then creation order)."""
    return [rule_to_dict(r) for r in rules.list_rules(actor, trigger=trigger, active_only=active_only)]


@router.post("/rules", status_code=status.HTTP_201_CREATED)
async def create_rule(
    data: Dict[str, Any] = Body(...),
    actor: User = Depends(get_current_actor),
    rules: RuleService = Depends(get_rule_service),
) -> Dict[str, Any]:
    """Create a rule; conditions and actions are checked against the trigger payload."""
    return rule_to_dict(rules.create_rule(data, actor))


@router.patch("/rules/{rule_id}")
async def update_rule(
    rule_id: int,
    changes: Dict[str, Any] = Body(...),
    actor: User = Depends(get_current_actor),
    rules: RuleService = Depends(get_rule_service),
) -> Dict[str, Any]:
    return rule_to_dict(rules.update_rule(rule_id, changes, actor))


@router.post("/rules/{rule_id}/activation")
async def set_rule_active(
    rule_id: int,
    data: ActivationRequest,
    actor: User = Depends(get_current_actor),
    rules: RuleService = Depends(get_rule_service),
) -> Dict[str, Any]:
    return rule_to_dict(rules.set_active(rule_id, data.is_active, actor))


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    rule_id: int,
    actor: User = Depends(get_current_actor),
    rules: RuleService = Depends(get_rule_service),
):
    rules.delete_rule(rule_id, actor)


@router.get("/logs", response_model=List[AutomationLogResponse])
async def list_logs(
    rule_id: Optional[int] = Query(None),
    limit: int = Query(100, le=500),
    actor: User = Depends(get_current_actor),
    rules: RuleService = Depends(get_rule_service),
):
    return rules.list_logs(actor, rule_id=rule_id, limit=limit)
