"""
Inquiries API routes.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from quoteflow.api.deps import get_workflow
from quoteflow.api.schemas import InquiryResponse, ItemResponse
from quoteflow.core.errors import NotFound
from quoteflow.core.rbac import RequirePermission, get_current_actor
from quoteflow.db.models import Inquiry, InquiryStatus, User
from quoteflow.db.session import get_db
from quoteflow.services.workflow import InquiryInput, InquiryItemInput, WorkflowEngine

router = APIRouter(prefix="/api/inquiries", tags=["Inquiries"])


# ============= SCHEMAS =============

class CancelRequest(BaseModel):
    reason: Optional[str] = None


class StatusChangeRequest(BaseModel):
    status: InquiryStatus


# ============= ROUTES =============

@router.get("", response_model=List[InquiryResponse])
async def list_inquiries(
    status_filter: Optional[InquiryStatus] = Query(None, alias="status", description="Filter by status"),
    customer_id: Optional[int] = Query(None, description="Filter by customer"),
    limit: int = Query(100, le=500),
    offset: int = Query(0),
    actor: User = Depends(RequirePermission("inquiries", "read")),
    db: Session = Depends(get_db),
):
    """List inquiries, newest first."""
    query = db.query(Inquiry)
    if status_filter:
        query = query.filter(Inquiry.status == status_filter)
    if customer_id:
        query = query.filter(Inquiry.customer_id == customer_id)
    return query.order_by(Inquiry.id.desc()).offset(offset).limit(limit).all()


@router.get("/{inquiry_id}", response_model=InquiryResponse)
async def get_inquiry(
    inquiry_id: int,
    actor: User = Depends(RequirePermission("inquiries", "read")),
    db: Session = Depends(get_db),
):
    inquiry = db.get(Inquiry, inquiry_id)
    if inquiry is None:
        raise NotFound("inquiry", inquiry_id)
    return inquiry


@router.post("", response_model=InquiryResponse, status_code=status.HTTP_201_CREATED)
async def create_inquiry(
    data: InquiryInput,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    """Create a DRAFT inquiry with its items."""
    return workflow.create_inquiry(data, actor)


@router.post("/{inquiry_id}/items", response_model=ItemResponse, status_code=status.HTTP_201_CREATED)
async def add_item(
    inquiry_id: int,
    data: InquiryItemInput,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    return workflow.add_item(inquiry_id, data, actor)


@router.post("/{inquiry_id}/submit", response_model=InquiryResponse)
async def submit_inquiry(
    inquiry_id: int,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    """Move a DRAFT inquiry with at least one item to SUBMITTED."""
    return workflow.submit_inquiry(inquiry_id, actor)


@router.post("/{inquiry_id}/cancel", response_model=InquiryResponse)
async def cancel_inquiry(
    inquiry_id: int,
    data: CancelRequest,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    return workflow.cancel_inquiry(inquiry_id, actor, reason=data.reason)


@router.post("/{inquiry_id}/status", response_model=InquiryResponse)
async def change_inquiry_status(
    inquiry_id: int,
    data: StatusChangeRequest,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    return workflow.change_inquiry_status(inquiry_id, data.status, actor)
