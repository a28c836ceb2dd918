"""
Tests for the ApprovalEngine facade: submission validation, queries and
backend wiring
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from approval_engine.approval_requests import Priority, RequestStatus, SLAStatus
from approval_engine.config import ApprovalEngineConfig
from approval_engine.engine import ApprovalEngine
from approval_engine.errors import NoApplicableTemplate, NotFound, ValidationError
from approval_engine.storage import SQLiteStorage

from conftest import TENANT, make_template


class TestSubmitRequest:

    def test_returns_request_id(self, engine, expense_template, submit):
        request_id = submit(500, title="Microscopes", priority="high", department="science")
        request = engine.get_request(request_id)
        assert request.id == request_id
        assert request.amount == Decimal("500")
        assert request.currency == "KES"
        assert request.title == "Microscopes"
        assert request.priority == Priority.HIGH
        assert request.department == "science"

    @pytest.mark.parametrize("field", ["tenant_id", "request_type", "requester_id"])
    def test_missing_required_field(self, engine, expense_template, field):
        args = dict(tenant_id=TENANT, request_type="expense", request_category=None,
                    amount=500, context_payload={}, requester_id="teacher")
        args[field] = ""
        with pytest.raises(ValidationError) as exc_info:
            engine.submit_request(**args)
        assert exc_info.value.details[0]["field"] == field

    def test_negative_amount(self, engine, expense_template, submit):
        with pytest.raises(ValidationError):
            submit(-1)

    def test_non_numeric_amount(self, engine, expense_template, submit):
        with pytest.raises(ValidationError):
            submit("lots")

    def test_oversized_payload(self, engine, expense_template, submit, settings):
        with pytest.raises(ValidationError) as exc_info:
            submit(500, context_payload={"notes": "x" * settings.max_payload_bytes})
        assert exc_info.value.details[0]["field"] == "context_payload"

    def test_payload_is_copied(self, engine, expense_template, submit):
        payload = {"items": ["microscope"]}
        request_id = submit(500, context_payload=payload)
        payload["items"].append("telescope")
        assert engine.get_request(request_id).context_payload == {"items": ["microscope"]}

    def test_no_applicable_template(self, engine, expense_template, submit):
        with pytest.raises(NoApplicableTemplate):
            submit(50000)

    def test_nothing_persisted_on_failure(self, engine, expense_template, submit):
        with pytest.raises(NoApplicableTemplate):
            submit(50000)
        assert engine.list_requests(TENANT) == []

    def test_naive_deadline_is_taken_as_utc(self, engine, expense_template, submit):
        request_id = submit(500, deadline=datetime(2026, 3, 1))
        assert engine.get_request(request_id).deadline == datetime(2026, 3, 1, tzinfo=timezone.utc)

        report = engine.run_sweep()
        assert report.failures == []
        assert report.sla_updates == 1
        assert engine.get_request(request_id).sla_status == SLAStatus.OVERDUE

    def test_aware_deadline_is_converted_to_utc(self, engine, expense_template, submit):
        nairobi = timezone(timedelta(hours=3))
        request_id = submit(500, deadline=datetime(2026, 3, 10, 12, 0, tzinfo=nairobi))
        deadline = engine.get_request(request_id).deadline
        assert deadline == datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)
        assert deadline.utcoffset() == timedelta(0)


class TestQueries:

    def test_list_requests_filters(self, engine, expense_template, submit):
        first = submit(500)
        second = submit(600)
        engine.cancel_request(second, "admin", "Duplicate")

        assert [r.id for r in engine.list_requests(TENANT)] == [first, second]
        assert [r.id for r in engine.list_requests(TENANT, RequestStatus.CANCELLED)] == [second]
        assert engine.list_requests("school-2") == []

    def test_pending_tasks(self, engine, expense_template, submit):
        first = submit(500)
        second = submit(600)
        engine.record_decision(first, 1, "fiona", "approve")

        assert [t.request_id for t in engine.pending_tasks(TENANT, "frank")] == [second]
        assert [t.request_id for t in engine.pending_tasks(TENANT, "paula")] == [first]
        assert engine.pending_tasks(TENANT, "teacher") == []

    def test_pending_tasks_follow_delegation(self, engine, expense_template, submit):
        request_id = submit(500)
        engine.record_decision(request_id, 1, "fiona", "delegate", delegate_to="deputy")
        assert [t.request_id for t in engine.pending_tasks(TENANT, "deputy")] == [request_id]
        assert engine.pending_tasks(TENANT, "frank") == []

    def test_unknown_ids(self, engine):
        with pytest.raises(NotFound):
            engine.get_request("missing")
        with pytest.raises(NotFound):
            engine.get_levels("missing")
        with pytest.raises(NotFound):
            engine.get_history("missing")
        with pytest.raises(NotFound):
            engine.get_template("missing")

    def test_verify_ledger(self, engine, expense_template, submit):
        request_id = submit(500)
        engine.record_decision(request_id, 1, "fiona", "approve")
        result = engine.verify_ledger(request_id)
        assert result["valid"]
        assert result["total_entries"] == 2

    def test_template_operations(self, engine):
        template_id = engine.create_template(make_template())
        engine.deactivate_template(template_id, "admin")
        assert engine.list_templates(TENANT, active_only=True) == []
        engine.activate_template(template_id, "admin")
        assert engine.get_template(template_id).version == 3
        assert len(engine.list_templates(TENANT, "expense")) == 1


class TestInvariants:

    def test_levels_and_escalation_stay_in_bounds(self, engine, expense_template, submit, clock):
        request_id = submit(500)

        def check():
            request = engine.get_request(request_id)
            assert request.current_level <= request.total_levels
            assert request.escalation_level <= request.max_escalation_level

        check()
        clock.advance(hours=25)
        engine.run_sweep()
        check()
        for hours in (13, 13, 13):
            clock.advance(hours=hours)
            engine.run_sweep()
            check()
        engine.record_decision(request_id, 1, "boris", "approve")
        check()
        engine.record_decision(request_id, 2, "paula", "approve")
        check()
        assert engine.get_request(request_id).status == RequestStatus.APPROVED


class TestSQLiteBackend:

    def test_full_flow_on_sqlite(self, tmp_path, directory, settings, clock):
        storage = SQLiteStorage(tmp_path / "approvals.db")
        engine = ApprovalEngine(storage=storage, directory=directory, settings=settings, clock=clock)
        try:
            engine.create_template(make_template())
            request_id = engine.submit_request(TENANT, "expense", None, 500, {"item": "desk"}, "teacher")
            engine.record_decision(request_id, 1, "fiona", "approve")
            engine.record_decision(request_id, 2, "paula", "reject", rationale="No budget")

            assert engine.get_request(request_id).status == RequestStatus.REJECTED
            assert len(engine.get_history(request_id)) == 3
            assert engine.verify_ledger(request_id)["valid"]
        finally:
            engine.close()

    def test_from_database_url(self, tmp_path, directory):
        settings = ApprovalEngineConfig(_env_file=None, database_url=f"sqlite:///{tmp_path / 'a.db'}")
        engine = ApprovalEngine(settings=settings, directory=directory)
        try:
            assert isinstance(engine.storage, SQLiteStorage)
        finally:
            engine.close()
