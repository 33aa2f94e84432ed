"""
Quotes API routes.
"""
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from quoteflow.api.deps import get_workflow
from quoteflow.api.schemas import QuoteResponse
from quoteflow.core.errors import NotFound
from quoteflow.core.rbac import RequirePermission, get_current_actor
from quoteflow.db.models import Inquiry, Quote, QuoteStatus, User
from quoteflow.db.session import get_db
from quoteflow.services.workflow import WorkflowEngine

router = APIRouter(prefix="/api", tags=["Quotes"])


# ============= SCHEMAS =============

class GenerateQuoteRequest(BaseModel):
    validity_days: Optional[int] = Field(None, gt=0)


class OutcomeRequest(BaseModel):
    outcome: QuoteStatus


# ============= ROUTES =============

@router.get("/inquiries/{inquiry_id}/quote-readiness")
async def quote_readiness(
    inquiry_id: int,
    actor: User = Depends(RequirePermission("quotes", "read")),
    db: Session = Depends(get_db),
):
    """Items still blocking quote generation for an inquiry."""
    inquiry = db.get(Inquiry, inquiry_id)
    if inquiry is None:
        raise NotFound("inquiry", inquiry_id)
    readiness = WorkflowEngine.quote_readiness(inquiry.items)
    return {
        "inquiry_id": inquiry.id,
        "ready": not (readiness["missing_cost_items"] or readiness["missing_approval_items"]),
        **readiness,
    }


@router.post("/inquiries/{inquiry_id}/quote", response_model=QuoteResponse, status_code=status.HTTP_201_CREATED)
async def generate_quote(
    inquiry_id: int,
    data: GenerateQuoteRequest,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    """Generate a DRAFT quote from a fully costed and approved inquiry."""
    return QuoteResponse.from_quote(workflow.generate_quote(inquiry_id, data.validity_days, actor))


@router.get("/quotes/{quote_id}", response_model=QuoteResponse)
async def get_quote(
    quote_id: int,
    actor: User = Depends(RequirePermission("quotes", "read")),
    db: Session = Depends(get_db),
):
    quote = db.get(Quote, quote_id)
    if quote is None:
        raise NotFound("quote", quote_id)
    return QuoteResponse.from_quote(quote)


@router.post("/quotes/{quote_id}/send", response_model=QuoteResponse)
async def send_quote(
    quote_id: int,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    return QuoteResponse.from_quote(workflow.send_quote(quote_id, actor))


@router.post("/quotes/{quote_id}/outcome", response_model=QuoteResponse)
async def record_quote_outcome(
    quote_id: int,
    data: OutcomeRequest,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    """Record the customer's answer; ACCEPTED opens a production order."""
    return QuoteResponse.from_quote(workflow.record_quote_outcome(quote_id, data.outcome, actor))
