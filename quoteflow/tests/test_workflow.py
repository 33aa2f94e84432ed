"""
Workflow engine tests: the inquiry -> quote -> production order lifecycle.
"""
from datetime import datetime, timedelta

import pytest

from quoteflow.core.errors import Forbidden, InvalidTransition, NotFound, ValidationError
from quoteflow.db.models import (
    Approval, ApprovalStatus, AuditLog, Deadline, DeadlineEntity, DeadlineStatus,
    Inquiry, InquiryItem, InquiryStatus, ItemStatus, Notification, ProductionOrder,
    ProductionStatus, Quote, QuoteStatus, UserRole,
)

LOW_COST = {"material_cost": 1000, "labor_cost": 500, "overhead_cost": 250}       # 1750
OTHER_LOW_COST = {"material_cost": 2000, "labor_cost": 300, "overhead_cost": 200}  # 2500
HIGH_COST = {"material_cost": 8000, "labor_cost": 3000, "overhead_cost": 0}        # 11000


def _notifications(db, user, type=None):
    query = db.query(Notification).filter(Notification.user_id == user.id)
    if type:
        query = query.filter(Notification.type == type)
    return query.order_by(Notification.id).all()


def _costed(workflow, inquiry, vp, vpp, *costs):
    item_ids = [item.id for item in inquiry.items]
    workflow.assign_items(item_ids, vp.id, vpp)
    for item_id, cost in zip(item_ids, costs):
        workflow.record_cost_calculation(item_id, cost, vp)
    return item_ids


def _production_order(db, inquiry, created_by, status=ProductionStatus.PENDING):
    quote = Quote(
        inquiry_id=inquiry.id,
        quote_number=f"QT-TEST-{inquiry.id:03d}",
        total=100.0,
        status=QuoteStatus.ACCEPTED,
        valid_until=datetime.utcnow() + timedelta(days=30),
        created_by_id=created_by.id,
    )
    db.add(quote)
    db.flush()
    order = ProductionOrder(
        quote_id=quote.id, inquiry_id=inquiry.id, order_number=f"PO-TEST-{inquiry.id:03d}",
        status=status, total=100.0,
    )
    db.add(order)
    db.commit()
    return order


class TestInquiryLifecycle:

    def test_create_inquiry_with_items(self, workflow, db_session, sales, customer):
        inquiry = workflow.create_inquiry({
            "title": "Gear blanks",
            "customer_id": customer.id,
            "priority": "HIGH",
            "items": [{"name": "Blank 40mm", "quantity": 50}, {"name": "Blank 60mm", "quantity": 20}],
        }, sales)

        assert inquiry.status == InquiryStatus.DRAFT
        assert inquiry.created_by_id == sales.id
        assert [i.name for i in inquiry.items] == ["Blank 40mm", "Blank 60mm"]
        assert all(i.status == ItemStatus.PENDING for i in inquiry.items)
        assert db_session.query(AuditLog).filter_by(action="inquiry_created").count() == 1

    def test_create_inquiry_unknown_customer(self, workflow, sales):
        with pytest.raises(NotFound):
            workflow.create_inquiry({"title": "Nothing", "customer_id": 999}, sales)

    def test_create_inquiry_rejects_bad_input(self, workflow, sales, customer):
        with pytest.raises(ValidationError) as exc:
            workflow.create_inquiry({"title": "", "customer_id": customer.id}, sales)
        assert exc.value.context["errors"][0]["loc"] == ["title"]

    def test_submit_requires_items(self, workflow, sales, customer):
        inquiry = workflow.create_inquiry({"title": "Empty", "customer_id": customer.id}, sales)
        with pytest.raises(ValidationError):
            workflow.submit_inquiry(inquiry.id, sales)

        workflow.add_item(inquiry.id, {"name": "Bracket", "quantity": 4}, sales)
        submitted = workflow.submit_inquiry(inquiry.id, sales)
        assert submitted.status == InquiryStatus.SUBMITTED

    def test_items_only_added_to_drafts(self, workflow, make_inquiry, sales):
        inquiry = make_inquiry(sales)
        with pytest.raises(InvalidTransition):
            workflow.add_item(inquiry.id, {"name": "Late item"}, sales)

    def test_submit_by_unrelated_user_without_grant(self, workflow, make_inquiry, sales, vpp):
        inquiry = make_inquiry(sales, status=InquiryStatus.DRAFT)
        with pytest.raises(Forbidden):
            workflow.submit_inquiry(inquiry.id, vpp)

    def test_cancel_notifies_creator_and_assignees(self, workflow, db_session, make_inquiry, sales, vp, vpp):
        inquiry = make_inquiry(sales)
        workflow.assign_items([i.id for i in inquiry.items], vp.id, vpp)

        cancelled = workflow.cancel_inquiry(inquiry.id, sales, reason="Customer withdrew")
        assert cancelled.status == InquiryStatus.CANCELLED
        assert len(_notifications(db_session, sales, "INQUIRY_CANCELLED")) == 1
        assert len(_notifications(db_session, vp, "INQUIRY_CANCELLED")) == 1

        with pytest.raises(InvalidTransition):
            workflow.cancel_inquiry(inquiry.id, sales)

    def test_status_owned_by_dedicated_operation(self, workflow, make_inquiry, sales, admin):
        inquiry = make_inquiry(sales, status=InquiryStatus.ASSIGNED)
        with pytest.raises(InvalidTransition) as exc:
            workflow.change_inquiry_status(inquiry.id, "QUOTED", admin)
        assert "generate_quote" in exc.value.context["reason"]

    def test_change_status_rejects_unknown_value(self, workflow, make_inquiry, sales, admin):
        inquiry = make_inquiry(sales)
        with pytest.raises(ValidationError):
            workflow.change_inquiry_status(inquiry.id, "ARCHIVED", admin)


class TestAssignment:

    def test_assign_promotes_inquiry_and_notifies_once(self, workflow, db_session, emails, make_inquiry,
                                                       sales, vp, vpp):
        inquiry = make_inquiry(sales, item_count=3)
        items = workflow.assign_items([i.id for i in inquiry.items], vp.id, vpp)

        assert {i.status for i in items} == {ItemStatus.ASSIGNED}
        assert {i.assigned_to_id for i in items} == {vp.id}
        assert db_session.get(Inquiry, inquiry.id).status == InquiryStatus.ASSIGNED

        notes = _notifications(db_session, vp, "ASSIGNMENT")
        assert len(notes) == 1
        assert notes[0].data["item_count"] == 3
        assert len(emails.sent) == 1
        assert emails.sent[0][0] == [vp.email]
        assert db_session.query(AuditLog).filter_by(action="items_assigned").count() == 1

    def test_bulk_assignment_is_all_or_nothing(self, workflow, db_session, make_inquiry, sales, vp, vpp):
        good = make_inquiry(sales, item_count=2)
        draft = make_inquiry(sales, item_count=1, status=InquiryStatus.DRAFT)
        good_ids = [i.id for i in good.items]
        bad_id = draft.items[0].id

        with pytest.raises(InvalidTransition) as exc:
            workflow.assign_items(good_ids + [bad_id], vp.id, vpp)
        assert exc.value.context["invalid_item_ids"] == [bad_id]
        assert exc.value.context["inquiry_statuses"] == {bad_id: "DRAFT"}

        for item in db_session.query(InquiryItem).filter(InquiryItem.id.in_(good_ids)):
            assert item.status == ItemStatus.PENDING
            assert item.assigned_to_id is None
        assert db_session.get(Inquiry, good.id).status == InquiryStatus.SUBMITTED
        assert db_session.query(Notification).count() == 0
        assert db_session.query(AuditLog).count() == 0

    def test_missing_items_are_reported(self, workflow, make_inquiry, sales, vp, vpp):
        inquiry = make_inquiry(sales, item_count=1)
        with pytest.raises(NotFound) as exc:
            workflow.assign_items([inquiry.items[0].id, 4040], vp.id, vpp)
        assert exc.value.context["missing_item_ids"] == [4040]

    def test_assignee_must_be_active_specialist(self, workflow, make_inquiry, make_user, sales, vpp):
        inquiry = make_inquiry(sales, item_count=1)
        ids = [inquiry.items[0].id]
        with pytest.raises(Forbidden):
            workflow.assign_items(ids, sales.id, vpp)
        with pytest.raises(Forbidden):
            workflow.assign_items(ids, make_user(UserRole.VP, is_active=False).id, vpp)

    def test_actor_needs_assign_grant(self, workflow, make_inquiry, sales, vp):
        inquiry = make_inquiry(sales, item_count=1)
        with pytest.raises(Forbidden):
            workflow.assign_items([inquiry.items[0].id], vp.id, vp)

    def test_reassign_and_unassign(self, workflow, db_session, make_inquiry, make_user, sales, vp, vpp):
        other = make_user(UserRole.VP, "Otto Other")
        inquiry = make_inquiry(sales, item_count=2)
        ids = [i.id for i in inquiry.items]
        workflow.assign_items(ids, vp.id, vpp)
        workflow.assign_items(ids[:1], other.id, vpp)
        assert db_session.get(InquiryItem, ids[0]).assigned_to_id == other.id

        workflow.unassign_items(ids, vpp)
        for item_id in ids:
            item = db_session.get(InquiryItem, item_id)
            assert (item.status, item.assigned_to_id) == (ItemStatus.PENDING, None)
        assert len(_notifications(db_session, vp, "UNASSIGNMENT")) == 1
        assert len(_notifications(db_session, other, "UNASSIGNMENT")) == 1


class TestCosting:

    def test_below_threshold_needs_no_approval(self, workflow, db_session, make_inquiry, sales, vp, vpp):
        inquiry = make_inquiry(sales, item_count=1)
        _costed(workflow, inquiry, vp, vpp, LOW_COST)

        item = db_session.get(InquiryItem, inquiry.items[0].id)
        assert item.status == ItemStatus.COSTED
        assert item.cost_calculation.total_cost == 1750
        assert item.cost_calculation.requires_approval is False
        assert db_session.query(Approval).count() == 0

    def test_above_threshold_creates_pending_approval(self, workflow, db_session, make_inquiry,
                                                      sales, vp, vpp, manager, emails):
        inquiry = make_inquiry(sales, item_count=1)
        _costed(workflow, inquiry, vp, vpp, HIGH_COST)

        approval = db_session.query(Approval).one()
        assert approval.status == ApprovalStatus.PENDING
        assert approval.amount == 11000
        assert approval.threshold == 10000
        assert len(_notifications(db_session, manager, "APPROVAL_REQUIRED")) == 1
        assert any(recipients == [manager.email] for recipients, _, _ in emails.sent)

    def test_vp_may_only_cost_own_items(self, workflow, make_inquiry, make_user, sales, vp, vpp):
        other = make_user(UserRole.VP, "Otto Other")
        inquiry = make_inquiry(sales, item_count=1)
        workflow.assign_items([inquiry.items[0].id], vp.id, vpp)
        with pytest.raises(Forbidden):
            workflow.record_cost_calculation(inquiry.items[0].id, LOW_COST, other)

    def test_unassigned_item_cannot_be_costed(self, workflow, make_inquiry, sales, admin):
        inquiry = make_inquiry(sales, item_count=1)
        with pytest.raises(InvalidTransition):
            workflow.record_cost_calculation(inquiry.items[0].id, LOW_COST, admin)

    def test_negative_costs_rejected(self, workflow, make_inquiry, sales, vp, vpp):
        inquiry = make_inquiry(sales, item_count=1)
        workflow.assign_items([inquiry.items[0].id], vp.id, vpp)
        with pytest.raises(ValidationError):
            workflow.record_cost_calculation(inquiry.items[0].id, {"material_cost": -5}, vp)

    def test_revision_supersedes_pending_approval(self, workflow, db_session, make_inquiry, sales, vp, vpp):
        inquiry = make_inquiry(sales, item_count=1)
        item_id = _costed(workflow, inquiry, vp, vpp, HIGH_COST)[0]
        workflow.record_cost_calculation(item_id, {**HIGH_COST, "labor_cost": 4000}, vp)

        approvals = db_session.query(Approval).order_by(Approval.id).all()
        assert [a.status for a in approvals] == [ApprovalStatus.REJECTED, ApprovalStatus.PENDING]
        assert approvals[0].comments.startswith("Superseded")
        assert approvals[1].amount == 12000

    def test_rejection_returns_item_to_same_specialist(self, workflow, db_session, emails, make_inquiry,
                                                       sales, vp, vpp, manager):
        inquiry = make_inquiry(sales, item_count=1)
        item_id = _costed(workflow, inquiry, vp, vpp, HIGH_COST)[0]
        approval = db_session.query(Approval).one()

        workflow.approve_cost(approval.id, "REJECTED", manager, comments="Labour is too high")

        item = db_session.get(InquiryItem, item_id)
        assert item.status == ItemStatus.ASSIGNED
        assert item.assigned_to_id == vp.id
        assert db_session.get(Approval, approval.id).approver_id == manager.id
        assert _notifications(db_session, vp, "APPROVAL_STATUS")[0].data["status"] == "REJECTED"
        assert emails.sent[-1][0] == [vp.email]

        with pytest.raises(InvalidTransition):
            workflow.approve_cost(approval.id, "APPROVED", manager)

    def test_decision_must_be_final_status(self, workflow, db_session, make_inquiry, sales, vp, vpp, manager):
        inquiry = make_inquiry(sales, item_count=1)
        _costed(workflow, inquiry, vp, vpp, HIGH_COST)
        approval = db_session.query(Approval).one()
        with pytest.raises(ValidationError):
            workflow.approve_cost(approval.id, "PENDING", manager)

    def test_specialist_cannot_approve(self, workflow, db_session, make_inquiry, sales, vp, vpp):
        inquiry = make_inquiry(sales, item_count=1)
        _costed(workflow, inquiry, vp, vpp, HIGH_COST)
        approval = db_session.query(Approval).one()
        with pytest.raises(Forbidden):
            workflow.approve_cost(approval.id, "APPROVED", vp)

    def test_request_approval_reuses_pending(self, workflow, db_session, make_inquiry, sales, vp, vpp, manager):
        inquiry = make_inquiry(sales, item_count=1)
        item_id = _costed(workflow, inquiry, vp, vpp, LOW_COST)[0]
        calc_id = db_session.get(InquiryItem, item_id).cost_calculation.id

        first = workflow.request_cost_approval(calc_id, manager, comments="Key account")
        second = workflow.request_cost_approval(calc_id, manager)
        assert first.id == second.id
        assert db_session.query(Approval).count() == 1


class TestQuotes:

    def test_happy_path_to_closed_inquiry(self, workflow, db_session, emails, make_inquiry,
                                          sales, vp, vpp, manager, customer):
        inquiry = make_inquiry(sales, item_count=2)
        item_ids = _costed(workflow, inquiry, vp, vpp, LOW_COST, OTHER_LOW_COST)
        assert db_session.query(Approval).count() == 0

        quote = workflow.generate_quote(inquiry.id, 30, sales)
        assert quote.status == QuoteStatus.DRAFT
        assert quote.total == 4250
        assert quote.quote_number == f"QT-{datetime.utcnow():%Y%m%d}-001"
        assert db_session.get(Inquiry, inquiry.id).status == InquiryStatus.QUOTED
        assert db_session.get(Inquiry, inquiry.id).total_value == 4250
        assert {db_session.get(InquiryItem, i).status for i in item_ids} == {ItemStatus.QUOTED}
        deadline = db_session.query(Deadline).filter_by(entity_type=DeadlineEntity.QUOTE).one()
        assert deadline.entity_id == quote.id
        assert deadline.due_date == quote.valid_until

        quote = workflow.send_quote(quote.id, manager)
        assert quote.status == QuoteStatus.SENT
        assert quote.sent_at is not None
        assert emails.sent[-1][0] == [customer.email]
        assert quote.quote_number in emails.sent[-1][1]

        quote = workflow.record_quote_outcome(quote.id, "ACCEPTED", sales)
        assert quote.status == QuoteStatus.ACCEPTED
        order = db_session.query(ProductionOrder).one()
        assert order.status == ProductionStatus.PENDING
        assert order.total == 4250
        assert order.order_number.startswith(f"PO-{datetime.utcnow():%Y%m%d}-")
        assert db_session.get(Inquiry, inquiry.id).status == InquiryStatus.APPROVED
        assert deadline.status == DeadlineStatus.COMPLETED
        assert len(_notifications(db_session, sales, "QUOTE_ACCEPTED")) == 1

        for status in ("IN_PRODUCTION", "COMPLETED", "SHIPPED", "DELIVERED"):
            order = workflow.advance_production_order(order.id, status, manager)
        assert order.start_date is not None
        assert order.completed_date is not None
        assert db_session.get(Inquiry, inquiry.id).status == InquiryStatus.CLOSED
        assert len(_notifications(db_session, manager, "PRODUCTION_STATUS")) == 2

    def test_unapproved_item_blocks_quote(self, workflow, db_session, make_inquiry, sales, vp, vpp, manager):
        inquiry = make_inquiry(sales, item_count=2)
        big, small = _costed(workflow, inquiry, vp, vpp, HIGH_COST, LOW_COST)

        for _ in range(2):
            with pytest.raises(ValidationError) as exc:
                workflow.generate_quote(inquiry.id, 30, sales)
            assert exc.value.context["missing_approval_items"] == [big]
            assert exc.value.context["missing_cost_items"] == []
            assert db_session.query(Quote).count() == 0
            assert db_session.get(Inquiry, inquiry.id).status == InquiryStatus.ASSIGNED

        approval = db_session.query(Approval).one()
        workflow.approve_cost(approval.id, "APPROVED", manager)
        quote = workflow.generate_quote(inquiry.id, 30, sales)
        assert quote.total == 12750

    def test_uncosted_item_blocks_quote(self, workflow, make_inquiry, sales, vp, vpp):
        inquiry = make_inquiry(sales, item_count=2)
        ids = [i.id for i in inquiry.items]
        workflow.assign_items(ids, vp.id, vpp)
        workflow.record_cost_calculation(ids[0], LOW_COST, vp)

        with pytest.raises(ValidationError) as exc:
            workflow.generate_quote(inquiry.id, None, sales)
        assert exc.value.context["missing_cost_items"] == [ids[1]]

    def test_quote_only_from_assigned_inquiry(self, workflow, make_inquiry, sales, vp, vpp):
        inquiry = make_inquiry(sales, item_count=1)
        _costed(workflow, inquiry, vp, vpp, LOW_COST)
        workflow.generate_quote(inquiry.id, 30, sales)
        with pytest.raises(InvalidTransition):
            workflow.generate_quote(inquiry.id, 30, sales)

    def test_quote_numbers_are_sequential_per_day(self, workflow, make_inquiry, sales, vp, vpp):
        numbers = []
        for title in ("First", "Second"):
            inquiry = make_inquiry(sales, item_count=1, title=title)
            _costed(workflow, inquiry, vp, vpp, LOW_COST)
            numbers.append(workflow.generate_quote(inquiry.id, 30, sales).quote_number)
        assert [n[-3:] for n in numbers] == ["001", "002"]

    def test_invalid_validity(self, workflow, make_inquiry, sales):
        inquiry = make_inquiry(sales, item_count=1)
        with pytest.raises(ValidationError):
            workflow.generate_quote(inquiry.id, 0, sales)

    def test_expired_quote_cannot_be_sent(self, workflow, db_session, make_inquiry, sales, vp, vpp):
        inquiry = make_inquiry(sales, item_count=1)
        _costed(workflow, inquiry, vp, vpp, LOW_COST)
        quote = workflow.generate_quote(inquiry.id, 30, sales)
        quote.valid_until = datetime.utcnow() - timedelta(days=1)
        db_session.commit()

        with pytest.raises(ValidationError):
            workflow.send_quote(quote.id, sales)
        assert db_session.get(Quote, quote.id).status == QuoteStatus.DRAFT

    def test_outcome_requires_sent_quote(self, workflow, make_inquiry, sales, vp, vpp):
        inquiry = make_inquiry(sales, item_count=1)
        _costed(workflow, inquiry, vp, vpp, LOW_COST)
        quote = workflow.generate_quote(inquiry.id, 30, sales)
        with pytest.raises(InvalidTransition):
            workflow.record_quote_outcome(quote.id, "ACCEPTED", sales)

    def test_rejected_quote_creates_no_order(self, workflow, db_session, make_inquiry, sales, vp, vpp):
        inquiry = make_inquiry(sales, item_count=1)
        _costed(workflow, inquiry, vp, vpp, LOW_COST)
        quote = workflow.generate_quote(inquiry.id, 30, sales)
        workflow.send_quote(quote.id, sales)

        quote = workflow.record_quote_outcome(quote.id, "REJECTED", sales)
        assert quote.status == QuoteStatus.REJECTED
        assert db_session.query(ProductionOrder).count() == 0
        assert db_session.get(Inquiry, inquiry.id).status == InquiryStatus.QUOTED
        assert db_session.query(AuditLog).filter_by(action="quote_rejected").count() == 1


class TestProduction:

    def test_cannot_skip_production_steps(self, workflow, db_session, make_inquiry, sales, manager):
        inquiry = make_inquiry(sales, item_count=1, status=InquiryStatus.APPROVED)
        order = _production_order(db_session, inquiry, sales)

        with pytest.raises(InvalidTransition) as exc:
            workflow.advance_production_order(order.id, "COMPLETED", manager)
        assert exc.value.context["allowed"] == "IN_PRODUCTION"
        assert db_session.get(ProductionOrder, order.id).status == ProductionStatus.PENDING

    def test_delivered_is_final(self, workflow, db_session, make_inquiry, sales, manager):
        inquiry = make_inquiry(sales, item_count=1, status=InquiryStatus.CLOSED)
        order = _production_order(db_session, inquiry, sales, status=ProductionStatus.DELIVERED)

        with pytest.raises(InvalidTransition) as exc:
            workflow.advance_production_order(order.id, "SHIPPED", manager)
        assert exc.value.context["allowed"] is None

    def test_sales_cannot_advance(self, workflow, db_session, make_inquiry, sales):
        inquiry = make_inquiry(sales, item_count=1, status=InquiryStatus.APPROVED)
        order = _production_order(db_session, inquiry, sales)
        with pytest.raises(Forbidden):
            workflow.advance_production_order(order.id, "IN_PRODUCTION", sales)
