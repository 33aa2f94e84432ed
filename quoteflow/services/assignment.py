"""
Assignment balancer for VP/VPP specialists.

Advisory only: it ranks assignees by pending work and flags overload, but the
assignment target is always chosen by the caller. It also validates bulk
assignment batches and reports exactly which items are not assignable.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from quoteflow.core.config import settings
from quoteflow.core.rbac import ASSIGNABLE_ROLES
from quoteflow.db.models import InquiryItem, InquiryStatus, ItemStatus, User

ASSIGNABLE_ITEM_STATUSES = frozenset({ItemStatus.PENDING, ItemStatus.ASSIGNED})
ASSIGNABLE_INQUIRY_STATUSES = frozenset({InquiryStatus.SUBMITTED, InquiryStatus.ASSIGNED})
TERMINAL_ITEM_STATUSES = frozenset({ItemStatus.QUOTED})

PENDING_WORK_STATUSES = (ItemStatus.ASSIGNED,)
COMPLETED_WORK_STATUSES = (ItemStatus.COSTED, ItemStatus.QUOTED)


@dataclass(frozen=True)
class Workload:
    user_id: int
    name: str
    role: str
    pending_items: int = 0
    completed_items: int = 0

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "role": self.role,
            "pending_items": self.pending_items,
            "completed_items": self.completed_items,
        }


def is_eligible_assignee(user: Optional[User]) -> bool:
    return user is not None and bool(user.is_active) and user.role in ASSIGNABLE_ROLES


def snapshot(db: Session) -> List[Workload]:
    """Live workload of every active VP/VPP user."""
    users = db.execute(
        select(User).where(User.is_active.is_(True), User.role.in_(list(ASSIGNABLE_ROLES)))
    ).scalars().all()
    if not users:
        return []

    counts = db.execute(
        select(InquiryItem.assigned_to_id, InquiryItem.status, func.count(InquiryItem.id))
        .where(InquiryItem.assigned_to_id.in_([u.id for u in users]))
        .group_by(InquiryItem.assigned_to_id, InquiryItem.status)
    ).all()

    pending: Dict[int, int] = {}
    completed: Dict[int, int] = {}
    for user_id, status, count in counts:
        if status in PENDING_WORK_STATUSES:
            pending[user_id] = pending.get(user_id, 0) + count
        elif status in COMPLETED_WORK_STATUSES:
            completed[user_id] = completed.get(user_id, 0) + count

    return [
        Workload(
            user_id=u.id,
            name=u.display_name,
            role=u.role.value,
            pending_items=pending.get(u.id, 0),
            completed_items=completed.get(u.id, 0),
        )
        for u in users
    ]


def rank(workloads: Iterable[Workload]) -> List[Workload]:
    """Least loaded first; ties broken by name, then id, for determinism."""
    return sorted(workloads, key=lambda w: (w.pending_items, w.name, w.user_id))


def recommend(workloads: Iterable[Workload]) -> Optional[Workload]:
    ranked = rank(workloads)
    return ranked[0] if ranked else None


def average_pending(workloads: Sequence[Workload]) -> float:
    if not workloads:
        return 0.0
    return sum(w.pending_items for w in workloads) / len(workloads)


def is_overloaded(user_id: int, workloads: Sequence[Workload], factor: Optional[float] = None) -> bool:
    """Warning signal only; never used to block an assignment."""
    factor = settings.OVERLOAD_FACTOR if factor is None else factor
    workloads = list(workloads)
    target = next((w for w in workloads if w.user_id == user_id), None)
    if target is None:
        return False
    avg = average_pending(workloads)
    if avg <= 0:
        return False
    return target.pending_items > factor * avg


def invalid_items(items: Iterable[InquiryItem]) -> List[int]:
    """
    Ids of items that cannot be (re)assigned: item already past costing or
    terminal, or parent inquiry not in an assignable status.
    """
    bad = []
    for item in items:
        if item.status not in ASSIGNABLE_ITEM_STATUSES or item.status in TERMINAL_ITEM_STATUSES:
            bad.append(item.id)
        elif item.inquiry.status not in ASSIGNABLE_INQUIRY_STATUSES:
            bad.append(item.id)
    return sorted(bad)
