"""
Tests for the workflow template store: validation, conflicts, versioning
and candidate selection
"""

import pytest
from datetime import datetime, timezone, timedelta

from approval_engine.approvers import ApproverSpec
from approval_engine.errors import Conflict, NotFound, ValidationError
from approval_engine.predicates import amount_between
from approval_engine.templates import (
    TemplateStore, WorkflowTemplate, LevelSpec, EscalationRules, DelegationRules
)

from conftest import TENANT, make_template


@pytest.fixture
def store(storage, clock):
    return TemplateStore(storage, clock)


class TestCreateTemplate:

    def test_create_assigns_id_and_version(self, store):
        template_id = store.create_template(make_template())
        stored = store.get_template(template_id)
        assert stored.version == 1
        assert stored.name == "Expense approval"
        assert [level.name for level in stored.levels] == ["Finance", "Principal"]
        assert stored.condition == amount_between(0, 10000)

    def test_levels_are_sorted(self, store):
        template = make_template(levels=[
            LevelSpec(2, "Principal", ApproverSpec.role("principal")),
            LevelSpec(1, "Finance", ApproverSpec.role("finance_officer")),
        ])
        store.create_template(template)
        assert [l.level_number for l in store.get_template(template.id).levels] == [1, 2]

    def test_rules_survive_storage(self, store):
        template = make_template(
            delegation_rules=DelegationRules(enabled=True, max_hours=8, allowed_delegate_roles=["principal"])
        )
        store.create_template(template)
        stored = store.get_template(template.id)
        assert stored.delegation_rules.max_hours == 8
        assert stored.escalation_rules.targets[1] == ApproverSpec.group("board")

    @pytest.mark.parametrize("levels", [
        [],
        [LevelSpec(1, "A", ApproverSpec.role("x")), LevelSpec(1, "B", ApproverSpec.role("y"))],
        [LevelSpec(1, "A", ApproverSpec.role("x")), LevelSpec(3, "C", ApproverSpec.role("y"))],
        [LevelSpec(2, "B", ApproverSpec.role("x"))],
    ])
    def test_invalid_level_numbering(self, store, levels):
        template = make_template()
        template.levels = levels
        with pytest.raises(ValidationError):
            store.create_template(template)

    def test_non_positive_sla_rejected(self, store):
        with pytest.raises(ValidationError):
            store.create_template(make_template(default_sla_hours=0))

    def test_inverted_validity_window_rejected(self, store):
        start = datetime(2026, 6, 1, tzinfo=timezone.utc)
        with pytest.raises(ValidationError):
            store.create_template(make_template(effective_from=start, effective_until=start - timedelta(days=1)))


class TestConflicts:

    def test_duplicate_active_priority(self, store):
        store.create_template(make_template(name="A", priority_order=10))
        with pytest.raises(Conflict):
            store.create_template(make_template(name="B", priority_order=10))

    def test_duplicate_priority_allowed_when_inactive(self, store):
        store.create_template(make_template(name="A", priority_order=10))
        store.create_template(make_template(name="B", priority_order=10, is_active=False))

    def test_activation_surfaces_priority_conflict(self, store):
        store.create_template(make_template(name="A", priority_order=10))
        inactive = make_template(name="B", priority_order=10, is_active=False)
        store.create_template(inactive)
        with pytest.raises(Conflict):
            store.activate_template(inactive.id, "admin")
        assert not store.get_template(inactive.id).is_active

    def test_second_active_default(self, store):
        store.create_template(make_template(name="A", priority_order=1, is_default=True))
        with pytest.raises(Conflict):
            store.create_template(make_template(name="B", priority_order=2, is_default=True))

    def test_duplicate_name(self, store):
        store.create_template(make_template(name="A", priority_order=1))
        with pytest.raises(Conflict):
            store.create_template(make_template(name="A", priority_order=2, is_active=False))

    def test_same_priority_in_other_request_type(self, store):
        store.create_template(make_template(name="A", priority_order=1))
        store.create_template(make_template(name="A", priority_order=1, request_type="recruitment"))


class TestUpdateTemplate:

    def test_update_bumps_version(self, store):
        template_id = store.create_template(make_template())
        updated = store.update_template(template_id, "admin", description="Revised", default_sla_hours=48)
        assert updated.version == 2
        assert store.get_template(template_id).default_sla_hours == 48

    def test_unknown_field_rejected(self, store):
        template_id = store.create_template(make_template())
        with pytest.raises(ValidationError):
            store.update_template(template_id, "admin", tenant_id="other")

    def test_missing_template(self, store):
        with pytest.raises(NotFound):
            store.update_template("nope", "admin", description="x")

    def test_invalid_update_leaves_template_unchanged(self, store):
        template_id = store.create_template(make_template())
        with pytest.raises(ValidationError):
            store.update_template(template_id, "admin", levels=[])
        assert store.get_template(template_id).version == 1
        assert len(store.get_template(template_id).levels) == 2


class TestCandidates:

    def test_ordered_by_priority_and_filtered(self, store, clock):
        store.create_template(make_template(name="Late", priority_order=50))
        store.create_template(make_template(name="Early", priority_order=5))
        store.create_template(make_template(name="Off", priority_order=7, is_active=False))
        store.create_template(make_template(name="Other tenant", priority_order=1, tenant_id="school-2"))
        names = [t.name for t in store.candidates(TENANT, "expense", None, clock())]
        assert names == ["Early", "Late"]

    def test_category_specific_templates(self, store, clock):
        store.create_template(make_template(name="Travel", priority_order=1, request_category="travel"))
        store.create_template(make_template(name="Any", priority_order=2))
        assert [t.name for t in store.candidates(TENANT, "expense", "travel", clock())] == ["Travel", "Any"]
        assert [t.name for t in store.candidates(TENANT, "expense", "books", clock())] == ["Any"]

    def test_validity_window(self, store, clock):
        store.create_template(make_template(name="Future", effective_from=clock() + timedelta(days=1)))
        assert store.candidates(TENANT, "expense", None, clock()) == []
        assert len(store.candidates(TENANT, "expense", None, clock() + timedelta(days=2))) == 1

    def test_default_template(self, store, clock):
        store.create_template(make_template(name="A", priority_order=1))
        store.create_template(make_template(name="Fallback", priority_order=2, is_default=True))
        assert store.default_template(TENANT, "expense", clock()).name == "Fallback"
        assert store.default_template(TENANT, "recruitment", clock()) is None

    def test_list_templates(self, store):
        store.create_template(make_template(name="A", priority_order=1))
        store.create_template(make_template(name="B", priority_order=2, is_active=False))
        assert len(store.list_templates(TENANT)) == 2
        assert [t.name for t in store.list_templates(TENANT, active_only=True)] == ["A"]


class TestEscalationRules:

    def test_last_target_repeats(self):
        rules = EscalationRules(targets=[ApproverSpec.role("a"), ApproverSpec.role("b")])
        assert rules.target_for(1) == ApproverSpec.role("a")
        assert rules.target_for(2) == ApproverSpec.role("b")
        assert rules.target_for(5) == ApproverSpec.role("b")

    def test_no_targets(self):
        assert EscalationRules().target_for(1) is None
