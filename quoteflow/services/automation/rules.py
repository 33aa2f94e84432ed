"""
Automation rule management: create, update, (de)activate, archive, list.

Deleting a rule archives it; its AutomationLog history keeps pointing at it.

Every write re-validates the full rule against its trigger's payload schema,
so a stored active rule is always structurally sound.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from quoteflow.core.errors import NotFound, ValidationError
from quoteflow.core.logging import get_logger
from quoteflow.core.rbac import PermissionPolicy, get_policy
from quoteflow.db.models import AutomationLog, AutomationRule, AutomationTrigger, User
from quoteflow.db.repository import EntityRepository
from quoteflow.services.audit import AuditSink, snapshot
from quoteflow.services.automation.schema import RuleDefinition

logger = get_logger(__name__)

RULE_FIELDS = ("name", "description", "trigger", "conditions", "actions", "priority", "is_active")


def parse_rule(data) -> RuleDefinition:
    if isinstance(data, RuleDefinition):
        return data
    try:
        return RuleDefinition.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e, "Invalid automation rule") from e


def rule_to_dict(rule: AutomationRule) -> dict:
    """External representation of a stored rule."""
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "trigger": rule.trigger.value,
        "conditions": rule.conditions or [],
        "actions": rule.actions or [],
        "priority": rule.priority,
        "isActive": rule.is_active,
        "created_by_id": rule.created_by_id,
        "created_at": rule.created_at.isoformat() if rule.created_at else None,
    }


class RuleService:
    def __init__(self, session: Session, policy: Optional[PermissionPolicy] = None):
        self.repo = EntityRepository(session)
        self.audit = AuditSink(session)
        self.policy = policy or get_policy()

    def _get_live(self, rule_id: int) -> AutomationRule:
        rule = self.repo.get(AutomationRule, rule_id, for_update=True)
        if rule is None or rule.deleted_at is not None:
            raise NotFound(AutomationRule.__tablename__, rule_id)
        return rule

    def create_rule(self, data, actor: User) -> AutomationRule:
        self.policy.authorize(actor, "automation", "write")
        definition = parse_rule(data)

        with self.repo.transaction():
            rule = self.repo.create(
                AutomationRule,
                name=definition.name,
                description=definition.description,
                trigger=definition.trigger,
                conditions=definition.stored_conditions(),
                actions=definition.stored_actions(),
                priority=definition.priority,
                is_active=definition.is_active,
                created_by_id=actor.id,
            )
            self.audit.record("automation_rule_created", "automation_rule", rule.id, actor.id,
                              new_data=snapshot(rule, *RULE_FIELDS))
        logger.info(f"Automation rule {rule.id} created for {definition.trigger.value}",
                    extra={"rule_id": rule.id, "trigger": definition.trigger.value})
        return rule

    def update_rule(self, rule_id: int, changes: dict, actor: User) -> AutomationRule:
        """Apply a partial update; the merged rule must validate as a whole."""
        self.policy.authorize(actor, "automation", "write")

        with self.repo.transaction():
            rule = self._get_live(rule_id)
            merged = rule_to_dict(rule)
            merged.update({k: v for k, v in changes.items() if k != "id"})
            if "is_active" in changes:
                merged["isActive"] = changes["is_active"]
            definition = parse_rule(merged)

            old = snapshot(rule, *RULE_FIELDS)
            self.repo.update(
                rule,
                name=definition.name,
                description=definition.description,
                trigger=definition.trigger,
                conditions=definition.stored_conditions(),
                actions=definition.stored_actions(),
                priority=definition.priority,
                is_active=definition.is_active,
            )
            self.audit.record("automation_rule_updated", "automation_rule", rule.id, actor.id,
                              old_data=old, new_data=snapshot(rule, *RULE_FIELDS))
        return rule

    def set_active(self, rule_id: int, is_active: bool, actor: User) -> AutomationRule:
        self.policy.authorize(actor, "automation", "write")

        with self.repo.transaction():
            rule = self._get_live(rule_id)
            if is_active:
                # Trigger schemas may have moved on since the rule was stored
                parse_rule({**rule_to_dict(rule), "isActive": True})
            old = snapshot(rule, "is_active")
            self.repo.update(rule, is_active=is_active)
            self.audit.record(
                "automation_rule_activated" if is_active else "automation_rule_deactivated",
                "automation_rule", rule.id, actor.id,
                old_data=old, new_data=snapshot(rule, "is_active"),
            )
        return rule

    def delete_rule(self, rule_id: int, actor: User) -> None:
        self.policy.authorize(actor, "automation", "delete")

        with self.repo.transaction():
            rule = self._get_live(rule_id)
            old = snapshot(rule, *RULE_FIELDS)
            self.repo.update(rule, is_active=False, deleted_at=datetime.utcnow())
            self.audit.record("automation_rule_deleted", "automation_rule", rule_id, actor.id,
                              old_data=old, new_data=snapshot(rule, "is_active", "deleted_at"))
        logger.info(f"Automation rule {rule_id} archived", extra={"rule_id": rule_id})

    def list_rules(self, actor: User, trigger: Optional[AutomationTrigger] = None,
                   active_only: bool = False) -> List[AutomationRule]:
        self.policy.authorize(actor, "automation", "read")
        criteria = [AutomationRule.deleted_at.is_(None)]
        if trigger is not None:
            criteria.append(AutomationRule.trigger == trigger)
        if active_only:
            criteria.append(AutomationRule.is_active.is_(True))
        return self.repo.find(
            AutomationRule, *criteria,
            order_by=(AutomationRule.priority.desc(), AutomationRule.id.asc()),
        )

    def list_logs(self, actor: User, rule_id: Optional[int] = None, limit: int = 100) -> List[AutomationLog]:
        self.policy.authorize(actor, "automation", "read")
        criteria = [AutomationLog.rule_id == rule_id] if rule_id is not None else []
        logs = self.repo.find(
            AutomationLog, *criteria,
            order_by=(AutomationLog.created_at.desc(), AutomationLog.id.desc()),
        )
        return logs[:limit]
