"""
Approval Request Module

Records for approval requests and their per-level actions, plus the
repository that persists them. Every update is a compare-and-set on the
record's ``version`` (and, for levels, its ``status``), so two writers racing
on the same row cannot both succeed.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .approvers import ApproverSpec
from .storage import StorageInterface, StorageRecord
from .templates import DelegationRules, EscalationRules, LevelSpec


class RequestStatus(Enum):
    """Overall status of an approval request"""
    PENDING = "pending"
    IN_REVIEW = "in_review"
    ESCALATED = "escalated"
    DELEGATED = "delegated"
    INTERVENTION_REQUIRED = "intervention_required"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    RequestStatus.APPROVED,
    RequestStatus.REJECTED,
    RequestStatus.CANCELLED,
    RequestStatus.EXPIRED,
    RequestStatus.WITHDRAWN,
})

ACTIVE_STATUSES = frozenset(set(RequestStatus) - TERMINAL_STATUSES)


class LevelStatus(Enum):
    """Status of one level action"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELEGATED = "delegated"
    SKIPPED = "skipped"
    ESCALATED = "escalated"

    @property
    def is_open(self) -> bool:
        """Still awaiting a decision"""
        return self in (LevelStatus.PENDING, LevelStatus.DELEGATED, LevelStatus.ESCALATED)


class SLAStatus(Enum):
    ON_TIME = "on_time"
    AT_RISK = "at_risk"
    OVERDUE = "overdue"


class Priority(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"


class Severity(Enum):
    """Impact and urgency classifier"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class ApprovalRequest(StorageRecord):
    """One unit of work needing sign-off"""
    tenant_id: str
    request_type: str
    requester_id: str
    context_payload: Dict[str, Any]
    request_category: Optional[str] = None
    reference_id: Optional[str] = None
    title: str = ""
    description: Optional[str] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None
    department: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    current_level: int = 0
    total_levels: int = 0
    template_id: Optional[str] = None
    template_version: Optional[int] = None
    approval_path: List[Dict[str, Any]] = field(default_factory=list)
    escalation_rules: Dict[str, Any] = field(default_factory=dict)
    delegation_rules: Dict[str, Any] = field(default_factory=dict)
    deadline: Optional[datetime] = None
    sla_hours: Optional[int] = None
    sla_status: SLAStatus = SLAStatus.ON_TIME
    escalation_level: int = 0
    max_escalation_level: int = 3
    escalated_to: Optional[Dict[str, str]] = None
    escalated_at: Optional[datetime] = None
    priority: Priority = Priority.NORMAL
    impact_level: Severity = Severity.MEDIUM
    urgency_level: Severity = Severity.MEDIUM
    requires_audit: bool = False
    final_approver_id: Optional[str] = None
    final_decision_at: Optional[datetime] = None
    final_rejection_reason: Optional[str] = None
    final_comments: Optional[str] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def frozen_levels(self) -> List[LevelSpec]:
        return [LevelSpec.from_dict(level) for level in self.approval_path]

    def frozen_level(self, level_number: int) -> Optional[LevelSpec]:
        for level in self.frozen_levels():
            if level.level_number == level_number:
                return level
        return None

    def frozen_escalation_rules(self) -> EscalationRules:
        return EscalationRules.from_dict(self.escalation_rules)

    def frozen_delegation_rules(self) -> DelegationRules:
        return DelegationRules.from_dict(self.delegation_rules)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'tenant_id': self.tenant_id,
            'request_type': self.request_type,
            'requester_id': self.requester_id,
            'context_payload': self.context_payload,
            'request_category': self.request_category,
            'reference_id': self.reference_id,
            'title': self.title,
            'description': self.description,
            'related_entity_type': self.related_entity_type,
            'related_entity_id': self.related_entity_id,
            'department': self.department,
            'amount': str(self.amount) if self.amount is not None else None,
            'currency': self.currency,
            'status': self.status.value,
            'current_level': self.current_level,
            'total_levels': self.total_levels,
            'template_id': self.template_id,
            'template_version': self.template_version,
            'approval_path': self.approval_path,
            'escalation_rules': self.escalation_rules,
            'delegation_rules': self.delegation_rules,
            'deadline': _dt(self.deadline),
            'sla_hours': self.sla_hours,
            'sla_status': self.sla_status.value,
            'escalation_level': self.escalation_level,
            'max_escalation_level': self.max_escalation_level,
            'escalated_to': self.escalated_to,
            'escalated_at': _dt(self.escalated_at),
            'priority': self.priority.value,
            'impact_level': self.impact_level.value,
            'urgency_level': self.urgency_level.value,
            'requires_audit': self.requires_audit,
            'final_approver_id': self.final_approver_id,
            'final_decision_at': _dt(self.final_decision_at),
            'final_rejection_reason': self.final_rejection_reason,
            'final_comments': self.final_comments,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalRequest':
        data = dict(data)
        for key in ('created_at', 'updated_at'):
            data[key] = datetime.fromisoformat(data[key])
        for key in ('deadline', 'escalated_at', 'final_decision_at'):
            data[key] = _parse_dt(data.get(key))
        if data.get('amount') is not None:
            data['amount'] = Decimal(data['amount'])
        data['status'] = RequestStatus(data['status'])
        data['sla_status'] = SLAStatus(data['sla_status'])
        data['priority'] = Priority(data['priority'])
        data['impact_level'] = Severity(data['impact_level'])
        data['urgency_level'] = Severity(data['urgency_level'])
        return cls(**data)


@dataclass
class LevelAction(StorageRecord):
    """The decision record for one (request, level) pair"""
    tenant_id: str
    request_id: str
    level_number: int
    level_name: str
    required_approver: ApproverSpec
    assigned_approver: ApproverSpec
    status: LevelStatus = LevelStatus.PENDING
    received_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    action_taken_by: Optional[str] = None
    action_taken_at: Optional[datetime] = None
    rationale: Optional[str] = None
    delegated_by: Optional[str] = None
    delegated_to: Optional[str] = None
    delegated_at: Optional[datetime] = None
    delegation_reason: Optional[str] = None
    delegation_expiry: Optional[datetime] = None
    pre_delegation_status: Optional[LevelStatus] = None
    escalation_count: int = 0
    response_time_hours: Optional[float] = None
    rule_exception_id: Optional[str] = None
    version: int = 1

    @staticmethod
    def key(request_id: str, level_number: int) -> str:
        return f"{request_id}:{level_number}"

    def delegation_active(self, at: datetime) -> bool:
        return (
            self.status == LevelStatus.DELEGATED
            and self.delegation_expiry is not None
            and at <= self.delegation_expiry
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'tenant_id': self.tenant_id,
            'request_id': self.request_id,
            'level_number': self.level_number,
            'level_name': self.level_name,
            'required_approver': self.required_approver.to_dict(),
            'assigned_approver': self.assigned_approver.to_dict(),
            'status': self.status.value,
            'received_at': _dt(self.received_at),
            'due_date': _dt(self.due_date),
            'action_taken_by': self.action_taken_by,
            'action_taken_at': _dt(self.action_taken_at),
            'rationale': self.rationale,
            'delegated_by': self.delegated_by,
            'delegated_to': self.delegated_to,
            'delegated_at': _dt(self.delegated_at),
            'delegation_reason': self.delegation_reason,
            'delegation_expiry': _dt(self.delegation_expiry),
            'pre_delegation_status': (
                self.pre_delegation_status.value if self.pre_delegation_status else None
            ),
            'escalation_count': self.escalation_count,
            'response_time_hours': self.response_time_hours,
            'rule_exception_id': self.rule_exception_id,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LevelAction':
        data = dict(data)
        for key in ('created_at', 'updated_at'):
            data[key] = datetime.fromisoformat(data[key])
        for key in ('received_at', 'due_date', 'action_taken_at', 'delegated_at', 'delegation_expiry'):
            data[key] = _parse_dt(data.get(key))
        data['required_approver'] = ApproverSpec.from_dict(data['required_approver'])
        data['assigned_approver'] = ApproverSpec.from_dict(data['assigned_approver'])
        data['status'] = LevelStatus(data['status'])
        if data.get('pre_delegation_status'):
            data['pre_delegation_status'] = LevelStatus(data['pre_delegation_status'])
        return cls(**data)


class ApprovalRepository:
    """Persistence for requests and level actions"""

    REQUESTS = "approval_requests"
    LEVELS = "approval_level_actions"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    # Requests

    def insert_request(self, request: ApprovalRequest) -> bool:
        return self.storage.insert(self.REQUESTS, request.id, request.to_dict())

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        data = self.storage.load(self.REQUESTS, request_id)
        if not data:
            return None
        return ApprovalRequest.from_dict(data)

    def update_request(self, request: ApprovalRequest) -> bool:
        """Persist ``request`` if nobody else changed it since it was read"""
        expected = {'version': request.version}
        request.version += 1
        if self.storage.compare_and_set(self.REQUESTS, request.id, expected, request.to_dict()):
            return True
        request.version -= 1
        return False

    def find_requests(self, tenant_id: Optional[str] = None,
                      status: Optional[RequestStatus] = None) -> List[ApprovalRequest]:
        filters: Dict[str, Any] = {}
        if tenant_id:
            filters['tenant_id'] = tenant_id
        if status:
            filters['status'] = status.value
        requests = [ApprovalRequest.from_dict(row) for row in self.storage.find(self.REQUESTS, filters)]
        return sorted(requests, key=lambda r: r.created_at)

    def active_requests(self) -> List[ApprovalRequest]:
        return [r for r in self.find_requests() if not r.is_terminal]

    # Levels

    def insert_level(self, level: LevelAction) -> bool:
        return self.storage.insert(self.LEVELS, level.id, level.to_dict())

    def get_level(self, request_id: str, level_number: int) -> Optional[LevelAction]:
        data = self.storage.load(self.LEVELS, LevelAction.key(request_id, level_number))
        if not data:
            return None
        return LevelAction.from_dict(data)

    def update_level(self, level: LevelAction, expected_status: LevelStatus) -> bool:
        """Guarded level transition: succeeds only from ``expected_status`` at the read version"""
        expected = {'status': expected_status.value, 'version': level.version}
        level.version += 1
        if self.storage.compare_and_set(self.LEVELS, level.id, expected, level.to_dict()):
            return True
        level.version -= 1
        return False

    def levels_for(self, request_id: str) -> List[LevelAction]:
        rows = self.storage.find(self.LEVELS, {'request_id': request_id})
        return sorted((LevelAction.from_dict(row) for row in rows), key=lambda l: l.level_number)
