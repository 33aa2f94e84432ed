"""
SQLAlchemy ORM models for QuoteFlow.
Inquiries own their items; items own at most one cost calculation.
Quotes and production orders reference their inquiry without owning it.
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Float,
    ForeignKey, Enum, JSON, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from quoteflow.db.session import Base


# ============= ENUMS =============

class UserRole(str, enum.Enum):
    SUPERUSER = "SUPERUSER"
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    SALES = "SALES"
    VPP = "VPP"
    VP = "VP"
    TECH = "TECH"


class InquiryStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    ASSIGNED = "ASSIGNED"
    QUOTED = "QUOTED"
    APPROVED = "APPROVED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class Priority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class ItemStatus(str, enum.Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    COSTED = "COSTED"
    QUOTED = "QUOTED"


class ApprovalStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class QuoteStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class ProductionStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PRODUCTION = "IN_PRODUCTION"
    COMPLETED = "COMPLETED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"


class AutomationTrigger(str, enum.Enum):
    INQUIRY_CREATED = "INQUIRY_CREATED"
    INQUIRY_STATUS_CHANGED = "INQUIRY_STATUS_CHANGED"
    ITEM_ASSIGNED = "ITEM_ASSIGNED"
    COST_CALCULATED = "COST_CALCULATED"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    QUOTE_CREATED = "QUOTE_CREATED"
    DEADLINE_APPROACHING = "DEADLINE_APPROACHING"
    WORKLOAD_THRESHOLD = "WORKLOAD_THRESHOLD"
    PRODUCTION_ORDER_CREATED = "PRODUCTION_ORDER_CREATED"


class AutomationOutcome(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class LogLevel(str, enum.Enum):
    INFO = "INFO"
    CRITICAL = "CRITICAL"


class DeadlineEntity(str, enum.Enum):
    INQUIRY = "INQUIRY"
    INQUIRY_ITEM = "INQUIRY_ITEM"
    QUOTE = "QUOTE"


class DeadlineStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    COMPLETED = "COMPLETED"


# Store enum values (not Python member names) in the database
def enum_values(enum_cls):
    return [e.value for e in enum_cls]


def _enum_type(enum_cls, name):
    return Enum(enum_cls, name=name, values_callable=enum_values)


UserRoleType = _enum_type(UserRole, 'userrole')
InquiryStatusType = _enum_type(InquiryStatus, 'inquirystatus')
PriorityType = _enum_type(Priority, 'priority')
ItemStatusType = _enum_type(ItemStatus, 'itemstatus')
ApprovalStatusType = _enum_type(ApprovalStatus, 'approvalstatus')
QuoteStatusType = _enum_type(QuoteStatus, 'quotestatus')
ProductionStatusType = _enum_type(ProductionStatus, 'productionstatus')
AutomationTriggerType = _enum_type(AutomationTrigger, 'automationtrigger')
AutomationOutcomeType = _enum_type(AutomationOutcome, 'automationoutcome')
LogLevelType = _enum_type(LogLevel, 'loglevel')
DeadlineEntityType = _enum_type(DeadlineEntity, 'deadlineentity')
DeadlineStatusType = _enum_type(DeadlineStatus, 'deadlinestatus')


# ============= USERS & CUSTOMERS =============

class User(Base):
    """User accounts. Credentials live with the identity provider."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255))
    role = Column(UserRoleType, nullable=False, default=UserRole.SALES)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    notifications = relationship("Notification", back_populates="user")

    @property
    def display_name(self) -> str:
        return self.full_name or self.email


class Customer(Base):
    """Business partner that submits inquiries."""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False)
    email = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    inquiries = relationship("Inquiry", back_populates="customer")


# ============= INQUIRIES =============

class Inquiry(Base):
    """Customer request containing one or more items to be quoted."""
    __tablename__ = "inquiries"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    assigned_to_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(InquiryStatusType, nullable=False, default=InquiryStatus.DRAFT, index=True)
    priority = Column(PriorityType, nullable=False, default=Priority.MEDIUM)
    total_value = Column(Float, default=0.0)
    deadline = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    customer = relationship("Customer", back_populates="inquiries")
    created_by = relationship("User", foreign_keys=[created_by_id])
    assigned_to = relationship("User", foreign_keys=[assigned_to_id])
    items = relationship(
        "InquiryItem",
        back_populates="inquiry",
        cascade="all, delete-orphan",
        order_by="InquiryItem.id",
    )
    quotes = relationship("Quote", back_populates="inquiry", order_by="Quote.id")


class InquiryItem(Base):
    """Single line of an inquiry that needs a cost calculation."""
    __tablename__ = "inquiry_items"

    id = Column(Integer, primary_key=True, index=True)
    inquiry_id = Column(Integer, ForeignKey("inquiries.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    quantity = Column(Float, nullable=False, default=1)
    unit = Column(String(50))
    assigned_to_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    status = Column(ItemStatusType, nullable=False, default=ItemStatus.PENDING, index=True)
    requested_delivery = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    inquiry = relationship("Inquiry", back_populates="items")
    assigned_to = relationship("User", foreign_keys=[assigned_to_id])
    cost_calculation = relationship(
        "CostCalculation",
        back_populates="item",
        uselist=False,
        cascade="all, delete-orphan",
    )


# ============= COSTING & APPROVALS =============

class CostCalculation(Base):
    """Specialist cost breakdown for one inquiry item."""
    __tablename__ = "cost_calculations"

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("inquiry_items.id", ondelete="CASCADE"), unique=True, nullable=False)
    calculated_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    material_cost = Column(Float, nullable=False, default=0.0)
    labor_cost = Column(Float, nullable=False, default=0.0)
    overhead_cost = Column(Float, nullable=False, default=0.0)
    total_cost = Column(Float, nullable=False, default=0.0)
    notes = Column(Text)
    requires_approval = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    item = relationship("InquiryItem", back_populates="cost_calculation")
    calculated_by = relationship("User", foreign_keys=[calculated_by_id])
    approvals = relationship(
        "Approval",
        back_populates="cost_calculation",
        cascade="all, delete-orphan",
        order_by="Approval.id",
    )

    @property
    def latest_approval(self):
        return self.approvals[-1] if self.approvals else None


class Approval(Base):
    """Managerial sign-off on a cost calculation above the threshold."""
    __tablename__ = "approvals"

    id = Column(Integer, primary_key=True, index=True)
    cost_calculation_id = Column(
        Integer, ForeignKey("cost_calculations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    approver_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(ApprovalStatusType, nullable=False, default=ApprovalStatus.PENDING, index=True)
    amount = Column(Float, nullable=False)
    threshold = Column(Float, nullable=False)
    comments = Column(Text)
    decided_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    cost_calculation = relationship("CostCalculation", back_populates="approvals")
    approver = relationship("User", foreign_keys=[approver_id])


# ============= QUOTES & PRODUCTION =============

class Quote(Base):
    """Priced offer generated from a fully costed inquiry."""
    __tablename__ = "quotes"

    id = Column(Integer, primary_key=True, index=True)
    inquiry_id = Column(Integer, ForeignKey("inquiries.id"), nullable=False, index=True)
    quote_number = Column(String(50), unique=True, nullable=False, index=True)
    total = Column(Float, nullable=False, default=0.0)
    status = Column(QuoteStatusType, nullable=False, default=QuoteStatus.DRAFT, index=True)
    valid_until = Column(DateTime, nullable=False)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    sent_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    inquiry = relationship("Inquiry", back_populates="quotes")
    created_by = relationship("User", foreign_keys=[created_by_id])
    production_order = relationship("ProductionOrder", back_populates="quote", uselist=False)


class ProductionOrder(Base):
    """Order created from an accepted quote."""
    __tablename__ = "production_orders"

    id = Column(Integer, primary_key=True, index=True)
    quote_id = Column(Integer, ForeignKey("quotes.id"), unique=True, nullable=False)
    inquiry_id = Column(Integer, ForeignKey("inquiries.id"), nullable=False, index=True)
    order_number = Column(String(50), unique=True, nullable=False, index=True)
    status = Column(ProductionStatusType, nullable=False, default=ProductionStatus.PENDING, index=True)
    total = Column(Float, nullable=False, default=0.0)
    start_date = Column(DateTime)
    completed_date = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    quote = relationship("Quote", back_populates="production_order")
    inquiry = relationship("Inquiry")


# ============= AUTOMATION =============

class AutomationRule(Base):
    """Stored trigger + conditions + actions definition. Deleted rules are archived, never removed."""
    __tablename__ = "automation_rules"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    trigger = Column(AutomationTriggerType, nullable=False, index=True)
    conditions = Column(JSON, nullable=False, default=list)
    actions = Column(JSON, nullable=False, default=list)
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    created_by = relationship("User", foreign_keys=[created_by_id])
    logs = relationship("AutomationLog", back_populates="rule")

    __table_args__ = (
        Index('ix_automation_rules_trigger_active', 'trigger', 'is_active'),
    )


class AutomationLog(Base):
    """Append-only record of one rule firing (or an engine-level halt)."""
    __tablename__ = "automation_logs"

    id = Column(Integer, primary_key=True, index=True)
    rule_id = Column(Integer, ForeignKey("automation_rules.id"), nullable=True, index=True)
    trigger = Column(AutomationTriggerType, nullable=False)
    entity_type = Column(String(50))
    entity_id = Column(Integer)
    outcome = Column(AutomationOutcomeType, nullable=False)
    level = Column(LogLevelType, nullable=False, default=LogLevel.INFO)
    message = Column(Text, nullable=False)
    executed_actions = Column(JSON, default=list)
    payload = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    rule = relationship("AutomationRule", back_populates="logs")


# ============= NOTIFICATIONS, AUDIT, DEADLINES =============

class Notification(Base):
    """In-app notification for a single user."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="notifications")


class AuditLog(Base):
    """Compliance-grade audit log with before/after snapshots."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(100), index=True)
    entity_id = Column(Integer)
    old_data = Column(JSON)
    new_data = Column(JSON)
    details = Column(JSON)

    user = relationship("User")

    __table_args__ = (
        Index('ix_audit_logs_entity', 'entity_type', 'entity_id'),
    )


class Deadline(Base):
    """Due date tracked for an inquiry, an inquiry item or a quote."""
    __tablename__ = "deadlines"

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(DeadlineEntityType, nullable=False)
    entity_id = Column(Integer, nullable=False)
    due_date = Column(DateTime, nullable=False)
    warning_date = Column(DateTime)
    escalation_date = Column(DateTime)
    status = Column(DeadlineStatusType, nullable=False, default=DeadlineStatus.ACTIVE, index=True)
    reminders_sent = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('entity_type', 'entity_id', name='uq_deadline_entity'),
    )
