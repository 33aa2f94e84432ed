"""
Shared route dependencies.
"""
from fastapi import Depends
from sqlalchemy.orm import Session

from quoteflow.core.rbac import PermissionPolicy, get_policy
from quoteflow.db.session import get_db
from quoteflow.services.automation.rules import RuleService
from quoteflow.services.workflow import WorkflowEngine


def get_workflow(
    db: Session = Depends(get_db),
    policy: PermissionPolicy = Depends(get_policy),
) -> WorkflowEngine:
    return WorkflowEngine(db, policy=policy)


def get_rule_service(
    db: Session = Depends(get_db),
    policy: PermissionPolicy = Depends(get_policy),
) -> RuleService:
    return RuleService(db, policy=policy)
