"""
Response schemas shared by the API routers.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from quoteflow.db.models import (
    ApprovalStatus, InquiryStatus, ItemStatus, Priority, ProductionStatus, QuoteStatus,
)


class ItemResponse(BaseModel):
    id: int
    inquiry_id: int
    name: str
    description: Optional[str] = None
    quantity: float
    unit: Optional[str] = None
    assigned_to_id: Optional[int] = None
    status: ItemStatus
    requested_delivery: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class InquiryResponse(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    customer_id: int
    created_by_id: int
    assigned_to_id: Optional[int] = None
    status: InquiryStatus
    priority: Priority
    total_value: Optional[float] = None
    deadline: Optional[datetime] = None
    created_at: Optional[datetime] = None
    items: List[ItemResponse] = []

    model_config = ConfigDict(from_attributes=True)


class CostCalculationResponse(BaseModel):
    id: int
    item_id: int
    calculated_by_id: int
    material_cost: float
    labor_cost: float
    overhead_cost: float
    total_cost: float
    notes: Optional[str] = None
    requires_approval: bool

    model_config = ConfigDict(from_attributes=True)


class ApprovalResponse(BaseModel):
    id: int
    cost_calculation_id: int
    approver_id: Optional[int] = None
    status: ApprovalStatus
    amount: float
    threshold: float
    comments: Optional[str] = None
    decided_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class QuoteResponse(BaseModel):
    id: int
    inquiry_id: int
    quote_number: str
    total: float
    status: QuoteStatus
    valid_until: datetime
    created_by_id: int
    sent_at: Optional[datetime] = None
    production_order_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_quote(cls, quote) -> "QuoteResponse":
        response = cls.model_validate(quote)
        if quote.production_order is not None:
            response.production_order_id = quote.production_order.id
        return response


class ProductionOrderResponse(BaseModel):
    id: int
    quote_id: int
    inquiry_id: int
    order_number: str
    status: ProductionStatus
    total: float
    start_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
