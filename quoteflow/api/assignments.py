"""
Item assignment and workload API routes.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from quoteflow.api.deps import get_workflow
from quoteflow.api.schemas import ItemResponse
from quoteflow.core.rbac import RequirePermission, get_current_actor
from quoteflow.db.models import User
from quoteflow.db.session import get_db
from quoteflow.services import assignment
from quoteflow.services.workflow import WorkflowEngine

router = APIRouter(prefix="/api/assignments", tags=["Assignments"])


# ============= SCHEMAS =============

class AssignRequest(BaseModel):
    item_ids: List[int] = Field(..., min_length=1)
    assignee_id: int


class UnassignRequest(BaseModel):
    item_ids: List[int] = Field(..., min_length=1)


class WorkloadEntry(BaseModel):
    user_id: int
    name: str
    role: str
    pending_items: int
    completed_items: int
    overloaded: bool


class WorkloadResponse(BaseModel):
    average_pending: float
    recommended_user_id: Optional[int]
    assignees: List[WorkloadEntry]


# ============= ROUTES =============

@router.post("", response_model=List[ItemResponse])
async def assign_items(
    data: AssignRequest,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    """Assign a batch of items to one VP/VPP user (all or nothing)."""
    return workflow.assign_items(data.item_ids, data.assignee_id, actor)


@router.post("/unassign", response_model=List[ItemResponse])
async def unassign_items(
    data: UnassignRequest,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    return workflow.unassign_items(data.item_ids, actor)


@router.get("/workload", response_model=WorkloadResponse)
async def get_workload(
    actor: User = Depends(RequirePermission("workload", "read")),
    db: Session = Depends(get_db),
):
    """Ranked workload of eligible assignees with overload flags."""
    workloads = assignment.snapshot(db)
    ranked = assignment.rank(workloads)
    best = assignment.recommend(workloads)
    return WorkloadResponse(
        average_pending=round(assignment.average_pending(workloads), 2),
        recommended_user_id=best.user_id if best else None,
        assignees=[
            WorkloadEntry(**w.to_dict(), overloaded=assignment.is_overloaded(w.user_id, workloads))
            for w in ranked
        ],
    )
