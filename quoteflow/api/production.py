"""
Production order API routes.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from quoteflow.api.deps import get_workflow
from quoteflow.api.schemas import ProductionOrderResponse
from quoteflow.core.errors import NotFound
from quoteflow.core.rbac import RequirePermission, get_current_actor
from quoteflow.db.models import ProductionOrder, ProductionStatus, User
from quoteflow.db.session import get_db
from quoteflow.services.workflow import WorkflowEngine

router = APIRouter(prefix="/api/production-orders", tags=["Production"])


class AdvanceRequest(BaseModel):
    status: ProductionStatus


@router.get("", response_model=List[ProductionOrderResponse])
async def list_production_orders(
    status_filter: Optional[ProductionStatus] = Query(None, alias="status"),
    actor: User = Depends(RequirePermission("production-orders", "read")),
    db: Session = Depends(get_db),
):
    query = db.query(ProductionOrder)
    if status_filter:
        query = query.filter(ProductionOrder.status == status_filter)
    return query.order_by(ProductionOrder.id.desc()).all()


@router.get("/{order_id}", response_model=ProductionOrderResponse)
async def get_production_order(
    order_id: int,
    actor: User = Depends(RequirePermission("production-orders", "read")),
    db: Session = Depends(get_db),
):
    order = db.get(ProductionOrder, order_id)
    if order is None:
        raise NotFound("production_order", order_id)
    return order


@router.post("/{order_id}/advance", response_model=ProductionOrderResponse)
async def advance_production_order(
    order_id: int,
    data: AdvanceRequest,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    """Move the order to its next production stage (no skipping)."""
    return workflow.advance_production_order(order_id, data.status, actor)
