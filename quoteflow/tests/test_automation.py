"""
Automation engine tests: rule validation, ordering, isolation and the
re-entry guard.
"""
import pytest

from quoteflow.core.errors import Forbidden, NotFound, ValidationError
from quoteflow.db.models import (
    Approval, ApprovalStatus, AuditLog, AutomationLog, AutomationOutcome, AutomationRule,
    AutomationTrigger, Inquiry, InquiryItem, InquiryStatus, LogLevel, Notification, UserRole,
)
from quoteflow.services.automation.engine import EventContext, WorkflowEvent
from quoteflow.services.automation.rules import RuleService, parse_rule
from quoteflow.services.automation.schema import Condition


@pytest.fixture
def rules(db_session):
    return RuleService(db_session)


def _notify_rule(name, trigger="INQUIRY_CREATED", priority=0, recipient="creator", conditions=None, **extra):
    return {
        "name": name,
        "trigger": trigger,
        "priority": priority,
        "conditions": conditions or [],
        "actions": [{
            "type": "send_notification",
            "params": {"recipient": recipient, "title": name, "message": "Inquiry {inquiry_id}: {title}"},
        }],
        **extra,
    }


def _logs(db):
    return db.query(AutomationLog).order_by(AutomationLog.id).all()


class TestConditions:

    def test_operators(self):
        payload = {"total_cost": 12000, "priority": "HIGH", "item_ids": [3, 4], "title": "Pump housings",
                   "meta": {"region": "EU"}}
        cases = [
            ({"field": "priority", "operator": "equals", "value": "HIGH"}, True),
            ({"field": "priority", "operator": "not_equals", "value": "HIGH"}, False),
            ({"field": "priority", "operator": "in", "value": ["HIGH", "URGENT"]}, True),
            ({"field": "priority", "operator": "not_in", "value": ["LOW"]}, True),
            ({"field": "total_cost", "operator": "greater_than", "value": 10000}, True),
            ({"field": "total_cost", "operator": "less_than", "value": 10000}, False),
            ({"field": "item_ids", "operator": "contains", "value": 4}, True),
            ({"field": "title", "operator": "contains", "value": "Pump"}, True),
            ({"field": "meta.region", "operator": "equals", "value": "EU"}, True),
            ({"field": "missing", "operator": "greater_than", "value": 1}, False),
        ]
        for data, expected in cases:
            assert Condition.model_validate(data).evaluate(payload) is expected, data

    def test_operator_value_shapes(self):
        with pytest.raises(ValueError):
            Condition.model_validate({"field": "priority", "operator": "in", "value": "HIGH"})
        with pytest.raises(ValueError):
            Condition.model_validate({"field": "total_cost", "operator": "greater_than", "value": "lots"})


class TestRuleValidation:

    def test_trigger_is_case_insensitive(self):
        definition = parse_rule(_notify_rule("lower", trigger="inquiry_created", isActive=False))
        assert definition.trigger.value == "INQUIRY_CREATED"
        assert definition.is_active is False

    def test_unknown_condition_field(self):
        with pytest.raises(ValidationError) as exc:
            parse_rule(_notify_rule("bad", conditions=[{"field": "total_cost", "operator": "equals", "value": 1}]))
        assert "unknown field 'total_cost'" in exc.value.context["errors"][0]["msg"]
        assert exc.value.message == "Invalid automation rule"

    def test_numeric_operator_on_text_field(self):
        with pytest.raises(ValidationError):
            parse_rule(_notify_rule("bad", conditions=[{"field": "title", "operator": "greater_than", "value": 3}]))

    def test_action_needs_target_in_event(self):
        with pytest.raises(ValidationError) as exc:
            parse_rule({
                "name": "approve early",
                "trigger": "INQUIRY_CREATED",
                "actions": [{"type": "create_approval", "params": {}}],
            })
        assert "actions[0]" in exc.value.context["errors"][0]["msg"]

    def test_recipient_field_must_exist(self):
        with pytest.raises(ValidationError):
            parse_rule(_notify_rule("who", trigger="DEADLINE_APPROACHING", recipient="creator"))

    def test_assign_user_target_is_exclusive(self):
        with pytest.raises(ValidationError):
            parse_rule({
                "name": "both",
                "trigger": "INQUIRY_CREATED",
                "actions": [{"type": "assign_user", "params": {"user_id": 3, "balance_workload": True}}],
            })

    def test_change_status_value_checked_per_entity(self):
        with pytest.raises(ValidationError):
            parse_rule({
                "name": "rewind",
                "trigger": "PRODUCTION_ORDER_CREATED",
                "actions": [{"type": "change_status",
                             "params": {"entity": "production_order", "status": "PENDING"}}],
            })

    @pytest.mark.parametrize("status", ["ASSIGNED", "QUOTED", "APPROVED"])
    def test_inquiry_status_owned_by_an_operation_is_rejected(self, status):
        with pytest.raises(ValidationError):
            parse_rule({
                "name": "shortcut",
                "trigger": "COST_CALCULATED",
                "actions": [{"type": "change_status", "params": {"entity": "inquiry", "status": status}}],
            })

    def test_inquiry_close_is_accepted(self):
        rule = parse_rule({
            "name": "close",
            "trigger": "COST_CALCULATED",
            "actions": [{"type": "change_status", "params": {"entity": "inquiry", "status": "CLOSED"}}],
        })
        assert rule.actions[0].params.status == "CLOSED"

    def test_needs_at_least_one_action(self):
        with pytest.raises(ValidationError):
            parse_rule({"name": "idle", "trigger": "INQUIRY_CREATED", "actions": []})


class TestRuleService:

    def test_create_requires_automation_grant(self, rules, sales):
        with pytest.raises(Forbidden):
            rules.create_rule(_notify_rule("nope"), sales)

    def test_crud(self, rules, db_session, make_user, admin):
        owner = make_user(UserRole.SUPERUSER)
        rule = rules.create_rule(_notify_rule("greet", priority=2), admin)
        assert rule.conditions == []
        assert rule.actions[0]["params"]["recipient"] == "creator"

        rules.update_rule(rule.id, {"priority": 7}, admin)
        assert db_session.get(AutomationRule, rule.id).priority == 7

        with pytest.raises(ValidationError):
            rules.update_rule(rule.id, {"conditions": [{"field": "nope", "operator": "equals", "value": 1}]}, admin)
        assert db_session.get(AutomationRule, rule.id).conditions == []

        rules.set_active(rule.id, False, admin)
        assert rules.list_rules(admin, active_only=True) == []

        rules.delete_rule(rule.id, owner)
        assert rules.list_rules(admin) == []
        with pytest.raises(NotFound):
            rules.set_active(rule.id, True, admin)

        actions = [a.action for a in db_session.query(AuditLog).order_by(AuditLog.id)]
        assert actions == [
            "automation_rule_created",
            "automation_rule_updated",
            "automation_rule_deactivated",
            "automation_rule_deleted",
        ]

    def test_only_superuser_deletes(self, rules, db_session, admin):
        rule = rules.create_rule(_notify_rule("greet"), admin)
        with pytest.raises(Forbidden):
            rules.delete_rule(rule.id, admin)
        assert db_session.get(AutomationRule, rule.id).deleted_at is None

    def test_delete_archives_rule_and_keeps_logs(self, rules, workflow, db_session, make_user,
                                                 admin, sales, customer):
        rule = rules.create_rule(_notify_rule("greet"), admin)
        workflow.create_inquiry({"title": "Valves", "customer_id": customer.id}, sales)
        assert _logs(db_session)[0].rule_id == rule.id

        rules.delete_rule(rule.id, make_user(UserRole.SUPERUSER))

        archived = db_session.get(AutomationRule, rule.id)
        assert archived.deleted_at is not None
        assert archived.is_active is False
        logs = _logs(db_session)
        assert len(logs) == 1
        assert logs[0].rule_id == rule.id

        workflow.create_inquiry({"title": "Pumps", "customer_id": customer.id}, sales)
        assert len(_logs(db_session)) == 1


class TestEvaluation:

    def test_rules_run_in_priority_order(self, rules, workflow, db_session, admin, sales, customer):
        rules.create_rule(_notify_rule("low", priority=5), admin)
        rules.create_rule(_notify_rule("high", priority=10), admin)

        inquiry = workflow.create_inquiry({"title": "Valves", "customer_id": customer.id}, sales)

        notes = db_session.query(Notification).filter_by(user_id=sales.id, type="AUTOMATION") \
            .order_by(Notification.id).all()
        assert [n.title for n in notes] == ["high", "low"]
        assert notes[0].message == f"Inquiry {inquiry.id}: Valves"
        assert [log.outcome for log in _logs(db_session)] == [AutomationOutcome.SUCCESS] * 2

    def test_inactive_and_unmatched_rules_do_not_fire(self, rules, workflow, db_session, admin, sales, customer):
        rules.create_rule(_notify_rule("off", isActive=False), admin)
        rules.create_rule(_notify_rule(
            "urgent only", conditions=[{"field": "priority", "operator": "equals", "value": "URGENT"}],
        ), admin)

        workflow.create_inquiry({"title": "Valves", "customer_id": customer.id}, sales)
        assert _logs(db_session) == []

    def test_failing_rule_is_isolated(self, rules, workflow, db_session, admin, sales, customer):
        broken = rules.create_rule({
            "name": "close immediately",
            "trigger": "INQUIRY_CREATED",
            "priority": 10,
            "actions": [{"type": "change_status", "params": {"entity": "inquiry", "status": "CLOSED"}}],
        }, admin)
        working = rules.create_rule(_notify_rule("greet", priority=5), admin)

        inquiry = workflow.create_inquiry({"title": "Valves", "customer_id": customer.id}, sales)

        assert db_session.get(Inquiry, inquiry.id).status == InquiryStatus.DRAFT
        logs = {log.rule_id: log for log in _logs(db_session)}
        assert logs[broken.id].outcome == AutomationOutcome.FAILURE
        assert logs[broken.id].message.startswith("Action 0 (change_status) failed")
        assert logs[working.id].outcome == AutomationOutcome.SUCCESS
        assert db_session.query(Notification).filter_by(type="AUTOMATION").count() == 1

    def test_unresolved_recipients_fail_the_rule(self, rules, workflow, db_session, admin, sales, customer):
        rules.create_rule(_notify_rule("tell managers", recipient="managers"), admin)
        workflow.create_inquiry({"title": "Valves", "customer_id": customer.id}, sales)

        log = _logs(db_session)[0]
        assert log.outcome == AutomationOutcome.FAILURE
        assert "No recipients" in log.message

    def test_create_approval_action(self, rules, workflow, db_session, make_inquiry, admin, sales, vp, vpp):
        rules.create_rule({
            "name": "second look",
            "trigger": "COST_CALCULATED",
            "conditions": [{"field": "total_cost", "operator": "greater_than", "value": 5000}],
            "actions": [{"type": "create_approval", "params": {"comments": "Automatic review"}}],
        }, admin)
        inquiry = make_inquiry(sales, item_count=1)
        item_id = inquiry.items[0].id
        workflow.assign_items([item_id], vp.id, vpp)
        workflow.record_cost_calculation(item_id, {"material_cost": 6000}, vp)

        approval = db_session.query(Approval).one()
        assert approval.status == ApprovalStatus.PENDING
        assert approval.comments == "Automatic review"
        with pytest.raises(ValidationError) as exc:
            workflow.generate_quote(inquiry.id, 30, sales)
        assert exc.value.context["missing_approval_items"] == [item_id]

    def test_balance_workload_assigns_least_loaded(self, rules, workflow, db_session, make_inquiry,
                                                   make_user, admin, sales, vpp):
        busy = make_user(UserRole.VP, "Busy Bee")
        idle = make_user(UserRole.VP, "Idle Ida")
        first = make_inquiry(sales, item_count=2, title="Backlog")
        workflow.assign_items([i.id for i in first.items], busy.id, vpp)

        rules.create_rule({
            "name": "auto assign",
            "trigger": "INQUIRY_STATUS_CHANGED",
            "conditions": [{"field": "new_status", "operator": "equals", "value": "SUBMITTED"}],
            "actions": [{"type": "assign_user", "params": {"balance_workload": True}}],
        }, admin)
        draft = make_inquiry(sales, item_count=1, status=InquiryStatus.DRAFT, title="Fresh")
        workflow.submit_inquiry(draft.id, sales)

        item = db_session.query(InquiryItem).filter_by(inquiry_id=draft.id).one()
        assert item.assigned_to_id == idle.id
        assert db_session.get(Inquiry, draft.id).status == InquiryStatus.ASSIGNED


class TestRecursionGuard:

    def test_self_retriggering_rule_is_halted(self, rules, workflow, db_session, make_inquiry,
                                              admin, sales, vp, vpp):
        rules.create_rule({
            "name": "ping-pong",
            "trigger": "ITEM_ASSIGNED",
            "actions": [{"type": "assign_user", "params": {"user_id": vp.id}}],
        }, admin)
        inquiry = make_inquiry(sales, item_count=1)

        workflow.assign_items([inquiry.items[0].id], vp.id, vpp)

        logs = _logs(db_session)
        critical = [log for log in logs if log.level == LogLevel.CRITICAL]
        assert len(critical) == 1
        assert critical[0].rule_id is None
        assert critical[0].outcome == AutomationOutcome.FAILURE
        assert critical[0].entity_type == "inquiry"
        assert critical[0].entity_id == inquiry.id
        assert "nesting depth 3" in critical[0].message
        fired = [log for log in logs if log.rule_id is not None]
        assert len(fired) == 3
        assert all(log.outcome == AutomationOutcome.SUCCESS for log in fired)

    def test_halt_is_scoped_to_the_runaway_event(self, rules, workflow, db_session, make_inquiry,
                                                 admin, sales, vp, vpp):
        looping = make_inquiry(sales, item_count=1, title="Looping")
        quiet = make_inquiry(sales, item_count=1, title="Quiet")
        rules.create_rule({
            "name": "reassign forever",
            "trigger": "ITEM_ASSIGNED",
            "priority": 10,
            "conditions": [{"field": "inquiry_id", "operator": "equals", "value": looping.id}],
            "actions": [{"type": "assign_user", "params": {"user_id": vp.id}}],
        }, admin)
        rules.create_rule(_notify_rule(
            "quiet assigned", trigger="ITEM_ASSIGNED",
            conditions=[{"field": "inquiry_id", "operator": "equals", "value": quiet.id}],
        ), admin)

        workflow.assign_items([looping.items[0].id, quiet.items[0].id], vp.id, vpp)

        critical = [log for log in _logs(db_session) if log.level == LogLevel.CRITICAL]
        assert [(log.entity_type, log.entity_id) for log in critical] == [("inquiry", looping.id)]
        notes = db_session.query(Notification).filter_by(user_id=sales.id, type="AUTOMATION").all()
        assert [n.title for n in notes] == ["quiet assigned"]

    def test_halted_key_drops_only_that_event(self, workflow, db_session):
        context = EventContext()
        stopped = WorkflowEvent(trigger=AutomationTrigger.INQUIRY_CREATED, payload={"inquiry_id": 1})
        other = WorkflowEvent(trigger=AutomationTrigger.INQUIRY_CREATED, payload={"inquiry_id": 2})
        context.halt(stopped.key)

        workflow.automation.handle(stopped, context)
        workflow.automation.handle(other, context)

        assert context.fired == {other.key: 1}
        assert _logs(db_session) == []

    def test_child_contexts_share_counters(self):
        root = EventContext()
        child = root.child().child()
        child.fired[("X", "inquiry", 1)] += 1
        child.halt(("X", "inquiry", 1))
        assert child.depth == 2
        assert root.fired[("X", "inquiry", 1)] == 1
        assert root.is_halted(("X", "inquiry", 1))
        assert not root.is_halted(("X", "inquiry", 2))
