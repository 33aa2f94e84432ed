"""
Test configuration: in-memory SQLite, fresh schema per test, user factories.
"""
import os

# Settings are read at import time
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789")
os.environ.setdefault("EMAIL_DELIVERY_ENABLED", "false")

import pytest

from quoteflow.db.session import Base, SessionLocal, engine
from quoteflow.db import models  # noqa: F401
from quoteflow.db.models import Customer, Inquiry, InquiryItem, InquiryStatus, User, UserRole
from quoteflow.db.repository import EntityRepository
from quoteflow.services.notifier import Notifier
from quoteflow.services.workflow import WorkflowEngine


class RecordingEmailSender:
    """Collects (recipients, subject, body) instead of queueing e-mail."""

    def __init__(self):
        self.sent = []

    def __call__(self, recipients, subject, body):
        self.sent.append((list(recipients), subject, body))


# ============= FIXTURES =============

@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def emails():
    return RecordingEmailSender()


@pytest.fixture
def workflow(db_session, emails):
    notifier = Notifier(EntityRepository(db_session), email_sender=emails)
    return WorkflowEngine(db_session, notifier=notifier)


@pytest.fixture
def make_user(db_session):
    counter = {"n": 0}

    def _make(role: UserRole, name: str = None, is_active: bool = True) -> User:
        counter["n"] += 1
        user = User(
            email=f"{role.value.lower()}{counter['n']}@quoteflow.test",
            full_name=name or f"{role.value.title()} {counter['n']}",
            role=role,
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN, "Ada Admin")


@pytest.fixture
def sales(make_user):
    return make_user(UserRole.SALES, "Sam Sales")


@pytest.fixture
def manager(make_user):
    return make_user(UserRole.MANAGER, "Mia Manager")


@pytest.fixture
def vpp(make_user):
    return make_user(UserRole.VPP, "Paul Planner")


@pytest.fixture
def vp(make_user):
    return make_user(UserRole.VP, "Vera Specialist")


@pytest.fixture
def customer(db_session):
    customer = Customer(name="Acme Industries", email="buyer@acme.test")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture
def make_inquiry(db_session, customer):
    """Build an inquiry directly in the given status with ``item_count`` PENDING items."""

    def _make(created_by: User, item_count: int = 2, status: InquiryStatus = InquiryStatus.SUBMITTED,
              title: str = "Pump housings") -> Inquiry:
        inquiry = Inquiry(
            title=title,
            customer_id=customer.id,
            created_by_id=created_by.id,
            status=status,
        )
        db_session.add(inquiry)
        db_session.flush()
        for n in range(item_count):
            db_session.add(InquiryItem(inquiry_id=inquiry.id, name=f"Item {n + 1}", quantity=10))
        db_session.commit()
        return inquiry

    return _make
