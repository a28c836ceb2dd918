"""
Tests for workflow instantiation: frozen approval paths, level creation,
due dates and the auto-approval short-circuit
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from approval_engine.approval_requests import LevelStatus, RequestStatus
from approval_engine.approvers import ApproverSpec
from approval_engine.ledger import DecisionType
from approval_engine.notifications import NotificationReason
from approval_engine.predicates import EqualsPredicate
from approval_engine.templates import EscalationRules, LevelSpec

from conftest import make_template


class TestMaterialize:

    def test_levels_created_in_pending(self, engine, expense_template, submit, clock):
        request_id = submit(500)
        request = engine.get_request(request_id)

        assert request.status == RequestStatus.PENDING
        assert request.current_level == 1
        assert request.total_levels == 2
        assert request.template_id == expense_template.id
        assert request.template_version == 1

        levels = engine.get_levels(request_id)
        assert [l.level_number for l in levels] == [1, 2]
        assert all(l.status == LevelStatus.PENDING for l in levels)
        assert levels[0].due_date == clock() + timedelta(hours=24)
        assert levels[0].received_at == clock()
        assert levels[1].received_at is None

    def test_deadline_from_template_or_settings(self, engine, submit, clock):
        engine.create_template(make_template(default_sla_hours=48))
        request = engine.get_request(submit(500))
        assert request.deadline == clock() + timedelta(hours=48)
        assert request.sla_hours == 48

    def test_default_sla_used_for_levels_without_one(self, engine, submit, clock, settings):
        engine.create_template(make_template(levels=[
            LevelSpec(1, "Finance", ApproverSpec.role("finance_officer")),
        ]))
        request_id = submit(500)
        level = engine.get_levels(request_id)[0]
        assert level.due_date == clock() + timedelta(hours=settings.default_sla_hours)

    def test_single_created_history_entry(self, engine, expense_template, submit):
        request_id = submit(500)
        history = engine.get_history(request_id)
        assert [e.decision_type for e in history] == [DecisionType.CREATED]
        assert history[0].actor_id == "teacher"
        assert history[0].decision_data["template_id"] == expense_template.id

    def test_first_level_approvers_notified(self, engine, expense_template, submit):
        request_id = submit(500)
        notifications = engine.outbox.for_request(request_id)
        assert {n.recipient_id for n in notifications} == {"fiona", "frank"}
        assert all(n.reason == NotificationReason.PENDING for n in notifications)
        assert all(n.level_number == 1 for n in notifications)

    def test_rules_frozen_onto_request(self, engine, expense_template, submit):
        request = engine.get_request(submit(500))
        assert request.max_escalation_level == 2
        assert request.frozen_escalation_rules().escalation_sla_hours == 12
        assert request.frozen_delegation_rules().enabled

    def test_max_escalation_level_defaults_from_settings(self, engine, submit, settings):
        template = make_template()
        template.escalation_rules.max_escalation_level = None
        engine.create_template(template)
        assert engine.get_request(submit(500)).max_escalation_level == settings.default_max_escalation_level


class TestFrozenSnapshot:

    def test_template_edit_does_not_change_existing_path(self, engine, expense_template, submit):
        request_id = submit(500)
        snapshot = engine.get_request(request_id).approval_path

        engine.update_template(expense_template.id, "admin", levels=[
            LevelSpec(1, "Bursar", ApproverSpec.user("bursar"), sla_hours=2),
        ])

        request = engine.get_request(request_id)
        assert request.approval_path == snapshot
        assert request.total_levels == 2
        assert [l.level_name for l in engine.get_levels(request_id)] == ["Finance", "Principal"]

        later = engine.get_request(submit(500))
        assert later.total_levels == 1
        assert later.template_version == 2

    def test_escalation_rules_frozen_too(self, engine, expense_template, submit):
        request_id = submit(500)
        engine.update_template(expense_template.id, "admin", escalation_rules=EscalationRules())
        assert engine.get_request(request_id).frozen_escalation_rules().targets[0] == ApproverSpec.role("deputy_principal")


class TestAutoApproval:

    def test_auto_approved_with_zero_levels(self, engine, submit, settings):
        engine.create_template(make_template(auto_approval_enabled=True, auto_approval_max_amount=Decimal("1000")))
        request_id = submit(500)
        request = engine.get_request(request_id)

        assert request.status == RequestStatus.APPROVED
        assert request.total_levels == 0
        assert request.current_level == 0
        assert request.final_approver_id == settings.system_actor_id
        assert engine.get_levels(request_id) == []
        assert [e.decision_type for e in engine.get_history(request_id)] == [
            DecisionType.CREATED, DecisionType.AUTO_APPROVED
        ]

    def test_amount_above_threshold_goes_through_levels(self, engine, submit):
        engine.create_template(make_template(auto_approval_enabled=True, auto_approval_max_amount=Decimal("100")))
        request_id = submit(500)
        assert engine.get_request(request_id).status == RequestStatus.PENDING
        assert len(engine.get_levels(request_id)) == 2

    def test_threshold_requires_an_amount(self, engine, submit):
        engine.create_template(make_template(
            condition=None, auto_approval_enabled=True, auto_approval_max_amount=Decimal("100")
        ))
        assert engine.get_request(submit(None)).status == RequestStatus.PENDING

    def test_predicate_controls_auto_approval(self, engine, submit):
        engine.create_template(make_template(
            auto_approval_enabled=True,
            auto_approval_predicate=EqualsPredicate("context.item", "chalk"),
        ))
        assert engine.get_request(submit(5, context_payload={"item": "chalk"})).status == RequestStatus.APPROVED
        assert engine.get_request(submit(5, context_payload={"item": "laptop"})).status == RequestStatus.PENDING

    def test_disabled_flag_wins(self, engine, submit):
        engine.create_template(make_template(auto_approval_enabled=False, auto_approval_max_amount=Decimal("1000")))
        assert engine.get_request(submit(5)).status == RequestStatus.PENDING

    def test_requester_notified(self, engine, submit):
        engine.create_template(make_template(auto_approval_enabled=True, auto_approval_max_amount=Decimal("1000")))
        request_id = submit(500)
        [notification] = engine.outbox.for_request(request_id)
        assert notification.recipient_id == "teacher"
        assert notification.reason == NotificationReason.APPROVED
