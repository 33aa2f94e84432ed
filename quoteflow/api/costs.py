"""
Cost calculation and approval API routes.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from quoteflow.api.deps import get_workflow
from quoteflow.api.schemas import ApprovalResponse, CostCalculationResponse
from quoteflow.core.rbac import RequirePermission, get_current_actor
from quoteflow.db.models import Approval, ApprovalStatus, User
from quoteflow.db.session import get_db
from quoteflow.services.workflow import CostInput, WorkflowEngine

router = APIRouter(prefix="/api", tags=["Costs & Approvals"])


# ============= SCHEMAS =============

class ApprovalRequest(BaseModel):
    comments: Optional[str] = None


class DecisionRequest(BaseModel):
    decision: ApprovalStatus
    comments: Optional[str] = None


# ============= ROUTES =============

@router.put("/items/{item_id}/cost-calculation", response_model=CostCalculationResponse)
async def record_cost_calculation(
    item_id: int,
    data: CostInput,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    """Create or revise the cost calculation of an assigned item."""
    return workflow.record_cost_calculation(item_id, data, actor)


@router.post("/cost-calculations/{calculation_id}/approval", response_model=ApprovalResponse)
async def request_cost_approval(
    calculation_id: int,
    data: ApprovalRequest,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    return workflow.request_cost_approval(calculation_id, actor, comments=data.comments)


@router.get("/approvals", response_model=List[ApprovalResponse])
async def list_approvals(
    status_filter: Optional[ApprovalStatus] = Query(ApprovalStatus.PENDING, alias="status"),
    actor: User = Depends(RequirePermission("approvals", "read")),
    db: Session = Depends(get_db),
):
    """Approvals by status, oldest first (pending by default)."""
    query = db.query(Approval)
    if status_filter:
        query = query.filter(Approval.status == status_filter)
    return query.order_by(Approval.id).all()


@router.post("/approvals/{approval_id}/decision", response_model=ApprovalResponse)
async def decide_approval(
    approval_id: int,
    data: DecisionRequest,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    """Approve or reject a pending cost approval."""
    return workflow.approve_cost(approval_id, data.decision, actor, comments=data.comments)
