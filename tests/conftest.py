"""
Shared fixtures: a controllable clock, a tenant directory and a wired engine
"""

import pytest
from datetime import datetime, timezone, timedelta

from approval_engine.approvers import ApproverSpec, InMemoryDirectory
from approval_engine.config import ApprovalEngineConfig
from approval_engine.engine import ApprovalEngine
from approval_engine.predicates import amount_between
from approval_engine.storage import InMemoryStorage
from approval_engine.templates import LevelSpec, WorkflowTemplate, EscalationRules


TENANT = "school-1"


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def settings():
    return ApprovalEngineConfig(_env_file=None)


@pytest.fixture
def directory():
    directory = InMemoryDirectory()
    directory.add_user(TENANT, "fiona", roles=["finance_officer"])
    directory.add_user(TENANT, "frank", roles=["finance_officer"])
    directory.add_user(TENANT, "paula", roles=["principal"])
    directory.add_user(TENANT, "boris", roles=["board_member"], groups=["board"])
    directory.add_user(TENANT, "bella", roles=["board_member"], groups=["board"])
    directory.add_user(TENANT, "deputy", roles=["deputy_principal"])
    directory.add_user(TENANT, "teacher", roles=["teacher"])
    directory.add_user("school-2", "outsider", roles=["finance_officer"])
    return directory


@pytest.fixture
def engine(storage, directory, settings, clock):
    return ApprovalEngine(storage=storage, directory=directory, settings=settings, clock=clock)


def make_template(name="Expense approval", levels=None, **overrides) -> WorkflowTemplate:
    """Two-level Finance -> Principal expense template with 24h SLAs"""
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    fields = dict(
        id="",
        created_at=now,
        updated_at=now,
        tenant_id=TENANT,
        name=name,
        request_type="expense",
        levels=levels or [
            LevelSpec(1, "Finance", ApproverSpec.role("finance_officer"), sla_hours=24),
            LevelSpec(2, "Principal", ApproverSpec.role("principal"), sla_hours=24),
        ],
        condition=amount_between(0, 10000),
        escalation_rules=EscalationRules(
            targets=[ApproverSpec.role("deputy_principal"), ApproverSpec.group("board")],
            escalation_sla_hours=12,
            max_escalation_level=2,
        ),
        created_by="admin",
    )
    fields.update(overrides)
    return WorkflowTemplate(**fields)


@pytest.fixture
def expense_template(engine):
    template = make_template()
    engine.create_template(template)
    return template


@pytest.fixture
def submit(engine):
    """Submit an expense request for ``teacher``"""
    def _submit(amount=500, **kwargs):
        kwargs.setdefault("context_payload", {"item": "lab equipment"})
        return engine.submit_request(
            tenant_id=kwargs.pop("tenant_id", TENANT),
            request_type=kwargs.pop("request_type", "expense"),
            request_category=kwargs.pop("request_category", None),
            amount=amount,
            requester_id=kwargs.pop("requester_id", "teacher"),
            **kwargs
        )
    return _submit
