"""
Customers API routes.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from quoteflow.api.deps import get_workflow
from quoteflow.core.rbac import RequirePermission, get_current_actor
from quoteflow.db.models import Customer, User
from quoteflow.db.session import get_db
from quoteflow.services.workflow import WorkflowEngine

router = APIRouter(prefix="/api/customers", tags=["Customers"])


# ============= SCHEMAS =============

class CustomerCreate(BaseModel):
    name: str
    email: Optional[str] = None


class CustomerResponse(BaseModel):
    id: int
    name: str
    email: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# ============= ROUTES =============

@router.get("", response_model=List[CustomerResponse])
async def list_customers(
    actor: User = Depends(RequirePermission("customers", "read")),
    db: Session = Depends(get_db),
):
    """List customers by name."""
    return db.query(Customer).order_by(Customer.name).all()


@router.post("", response_model=CustomerResponse, status_code=status.HTTP_201_CREATED)
async def create_customer(
    data: CustomerCreate,
    actor: User = Depends(get_current_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
):
    """Create a customer; names are unique."""
    return workflow.create_customer(data.name, data.email, actor)
