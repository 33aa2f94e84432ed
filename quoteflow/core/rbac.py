"""
Role-Based Access Control: the permission table and request actor resolution.

The grant table is built once at import time and never mutated; callers
receive the ``PermissionPolicy`` by injection (``get_policy``) so tests can
swap in a different table.
"""
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping, Tuple, Union

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from quoteflow.core.errors import Forbidden
from quoteflow.core.security import decode_token, security
from quoteflow.db.models import User, UserRole
from quoteflow.db.session import get_db

WILDCARD = "*"


@dataclass(frozen=True)
class Grant:
    resource: str
    action: str


def _grants(*pairs: Tuple[str, str]) -> Tuple[Grant, ...]:
    return tuple(Grant(resource, action) for resource, action in pairs)


DEFAULT_GRANTS: Mapping[UserRole, Tuple[Grant, ...]] = MappingProxyType({
    UserRole.SUPERUSER: _grants(("*", "*")),
    UserRole.ADMIN: _grants(
        ("users", "*"),
        ("customers", "*"),
        ("inquiries", "*"),
        ("inquiry-items", "*"),
        ("cost-calculations", "*"),
        ("approvals", "*"),
        ("quotes", "*"),
        ("production-orders", "*"),
        ("automation", "read"),
        ("automation", "write"),
        ("audit", "read"),
        ("reports", "read"),
        ("workload", "read"),
    ),
    UserRole.MANAGER: _grants(
        ("inquiries", "read"),
        ("quotes", "read"),
        ("quotes", "send"),
        ("production-orders", "read"),
        ("production-orders", "update"),
        ("approvals", "*"),
        ("cost-calculations", "approve"),
        ("reports", "read"),
        ("workload", "read"),
    ),
    UserRole.SALES: _grants(
        ("customers", "*"),
        ("inquiries", "*"),
        ("quotes", "*"),
        ("reports", "read"),
    ),
    UserRole.VPP: _grants(
        ("inquiries", "read"),
        ("inquiry-items", "read"),
        ("inquiry-items", "assign"),
        ("inquiry-items", "unassign"),
        ("users", "read"),
        ("customers", "read"),
        ("workload", "read"),
    ),
    UserRole.VP: _grants(
        ("inquiry-items", "read"),
        ("cost-calculations", "*"),
    ),
    UserRole.TECH: _grants(
        ("inquiry-items", "read"),
    ),
})

# Subject roles that may receive cost-calculation assignments
ASSIGNABLE_ROLES = frozenset({UserRole.VP, UserRole.VPP})


def _role(role: Union[str, UserRole]) -> UserRole:
    return role if isinstance(role, UserRole) else UserRole(role)


class PermissionPolicy:
    """Pure (role, resource, action) -> allow/deny lookup."""

    def __init__(self, grants: Mapping[UserRole, Iterable[Grant]] = DEFAULT_GRANTS):
        self._grants = MappingProxyType({
            _role(role): frozenset(items) for role, items in grants.items()
        })

    def grants_for(self, role) -> frozenset:
        return self._grants.get(_role(role), frozenset())

    def has_permission(self, role, resource: str, action: str) -> bool:
        """Exact match first, then wildcard resource, wildcard action, full wildcard."""
        grants = self.grants_for(role)
        candidates = (
            Grant(resource, action),
            Grant(WILDCARD, action),
            Grant(resource, WILDCARD),
            Grant(WILDCARD, WILDCARD),
        )
        return any(candidate in grants for candidate in candidates)

    def authorize(self, actor: User, resource: str, action: str) -> None:
        if not actor.is_active:
            raise Forbidden(
                f"User {actor.id} is inactive",
                {"actor_id": actor.id},
            )
        if not self.has_permission(actor.role, resource, action):
            raise Forbidden(
                f"Role {_role(actor.role).value} may not {action} {resource}",
                {"actor_id": actor.id, "role": _role(actor.role).value,
                 "resource": resource, "action": action},
            )

    # Named shorthands over the same table

    def can_assign_items(self, role) -> bool:
        return self.has_permission(role, "inquiry-items", "assign")

    def can_calculate_costs(self, role) -> bool:
        return self.has_permission(role, "cost-calculations", "write")

    def can_approve(self, role) -> bool:
        return self.has_permission(role, "approvals", "approve")

    def can_create_quotes(self, role) -> bool:
        return self.has_permission(role, "quotes", "create")

    @staticmethod
    def is_assignable_role(role) -> bool:
        """Subject predicate: may this user *receive* item assignments?"""
        return _role(role) in ASSIGNABLE_ROLES


DEFAULT_POLICY = PermissionPolicy()


def get_policy() -> PermissionPolicy:
    return DEFAULT_POLICY


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the bearer token to an active user row."""
    payload = decode_token(credentials.credentials)

    user_id_raw = payload.get("sub") or payload.get("user_id")
    if user_id_raw is None:
        raise Forbidden("Invalid token: missing user identifier (sub)")

    user = db.get(User, int(user_id_raw))
    if user is None or not user.is_active:
        raise Forbidden("Unknown or inactive user", {"user_id": int(user_id_raw)})
    return user


class RequirePermission:
    """Dependency for checking a (resource, action) grant."""

    def __init__(self, resource: str, action: str):
        self.resource = resource
        self.action = action

    async def __call__(
        self,
        actor: User = Depends(get_current_actor),
        policy: PermissionPolicy = Depends(get_policy),
    ) -> User:
        policy.authorize(actor, self.resource, self.action)
        return actor
