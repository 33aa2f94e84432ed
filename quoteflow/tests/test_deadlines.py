"""
Deadline tracking tests.
"""
from datetime import datetime, timedelta

from quoteflow.db.models import (
    AutomationLog, AutomationOutcome, Deadline, DeadlineEntity, DeadlineStatus, Notification,
)
from quoteflow.db.repository import EntityRepository
from quoteflow.services import deadlines
from quoteflow.services.automation.rules import RuleService


DUE = datetime(2031, 6, 15, 12, 0)


def _inquiry_with_deadline(workflow, sales, customer, due=DUE):
    return workflow.create_inquiry({
        "title": "Turbine seals",
        "customer_id": customer.id,
        "deadline": due.isoformat(),
        "items": [{"name": "Seal A", "quantity": 12, "requested_delivery": (due - timedelta(days=5)).isoformat()}],
    }, sales)


class TestStages:

    def test_stage_boundaries(self):
        deadline = Deadline(
            due_date=DUE,
            warning_date=DUE - timedelta(days=3),
            escalation_date=DUE - timedelta(days=1),
        )
        assert deadlines.stage_for(deadline, DUE - timedelta(days=4)) == deadlines.STAGE_NONE
        assert deadlines.stage_for(deadline, DUE - timedelta(days=3)) == deadlines.STAGE_WARNING
        assert deadlines.stage_for(deadline, DUE - timedelta(hours=12)) == deadlines.STAGE_ESCALATION
        assert deadlines.stage_for(deadline, DUE) == deadlines.STAGE_OVERDUE

    def test_create_deadline_resets_existing(self, db_session):
        repo = EntityRepository(db_session)
        with repo.transaction():
            first = deadlines.create_deadline(repo, DeadlineEntity.QUOTE, 1, DUE)
            repo.update(first, reminders_sent=2, status=DeadlineStatus.OVERDUE)
        with repo.transaction():
            again = deadlines.create_deadline(repo, DeadlineEntity.QUOTE, 1, DUE + timedelta(days=10),
                                              warning_days=5)

        assert again.id == first.id
        assert again.reminders_sent == 0
        assert again.status == DeadlineStatus.ACTIVE
        assert again.warning_date == DUE + timedelta(days=5)
        assert db_session.query(Deadline).count() == 1


class TestCheckDeadlines:

    def test_inquiry_and_item_deadlines_are_tracked(self, workflow, db_session, sales, customer):
        inquiry = _inquiry_with_deadline(workflow, sales, customer)
        tracked = {(d.entity_type, d.entity_id) for d in db_session.query(Deadline)}
        assert tracked == {
            (DeadlineEntity.INQUIRY, inquiry.id),
            (DeadlineEntity.INQUIRY_ITEM, inquiry.items[0].id),
        }

    def test_each_stage_is_reported_once(self, workflow, db_session, sales, customer):
        inquiry = _inquiry_with_deadline(workflow, sales, customer, due=DUE)
        item_deadline = db_session.query(Deadline).filter_by(entity_type=DeadlineEntity.INQUIRY_ITEM).one()
        deadlines.complete_deadline(workflow.repo, DeadlineEntity.INQUIRY_ITEM, item_deadline.entity_id)
        db_session.commit()

        assert deadlines.check_deadlines(workflow, now=DUE - timedelta(days=10)) == 0
        assert deadlines.check_deadlines(workflow, now=DUE - timedelta(days=2)) == 1
        assert deadlines.check_deadlines(workflow, now=DUE - timedelta(days=2)) == 0
        assert deadlines.check_deadlines(workflow, now=DUE + timedelta(hours=1)) == 1
        assert deadlines.check_deadlines(workflow, now=DUE + timedelta(days=3)) == 0

        deadline = db_session.query(Deadline).filter_by(entity_type=DeadlineEntity.INQUIRY).one()
        assert deadline.status == DeadlineStatus.OVERDUE
        assert deadline.reminders_sent == deadlines.STAGE_OVERDUE

        notes = db_session.query(Notification).filter_by(user_id=sales.id, type="DEADLINE") \
            .order_by(Notification.id).all()
        assert [n.title for n in notes] == ["Deadline approaching", "Deadline overdue"]
        assert notes[1].data["is_overdue"] is True
        assert notes[1].data["inquiry_id"] == inquiry.id

    def test_completed_deadlines_are_skipped(self, workflow, db_session, sales, customer):
        inquiry = _inquiry_with_deadline(workflow, sales, customer)
        workflow.cancel_inquiry(inquiry.id, sales)

        assert deadlines.check_deadlines(workflow, now=DUE + timedelta(days=1)) == 0
        assert {d.status for d in db_session.query(Deadline)} == {DeadlineStatus.COMPLETED}

    def test_reminder_reaches_automation(self, workflow, db_session, admin, sales, manager, customer):
        RuleService(db_session).create_rule({
            "name": "escalate overdue",
            "trigger": "DEADLINE_APPROACHING",
            "conditions": [{"field": "is_overdue", "operator": "equals", "value": True}],
            "actions": [{
                "type": "send_notification",
                "params": {"recipient": "managers", "title": "Overdue",
                           "message": "{entity_type} {entity_id} is overdue"},
            }],
        }, admin)
        inquiry = _inquiry_with_deadline(workflow, sales, customer)

        deadlines.check_deadlines(workflow, now=DUE + timedelta(days=10))

        logs = db_session.query(AutomationLog).all()
        assert [log.outcome for log in logs] == [AutomationOutcome.SUCCESS] * 2
        assert {log.entity_type for log in logs} == {"deadline"}
        notes = db_session.query(Notification).filter_by(user_id=manager.id, type="AUTOMATION").all()
        assert {n.message for n in notes} == {
            f"INQUIRY {inquiry.id} is overdue",
            f"INQUIRY_ITEM {inquiry.items[0].id} is overdue",
        }
