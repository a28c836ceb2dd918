"""
Rule Exception Module

Audited escape hatches from normal routing. A ``rule_bypass`` lets a request
continue past a rejection at the covered level; an ``emergency_override``
approves a request outright. Both stay on record with a mandatory post-hoc
audit flag so the bypass is never erased.
"""

from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import logging

from .errors import NotFound, ValidationError
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("approval_engine.overrides")


class ExceptionType(Enum):
    RULE_BYPASS = "rule_bypass"
    EMERGENCY_OVERRIDE = "emergency_override"


@dataclass
class RuleException(StorageRecord):
    """Record of an authorized deviation from the frozen approval path"""
    tenant_id: str
    request_id: str
    exception_type: ExceptionType
    reason: str
    authorized_by: str
    original_rule: Dict[str, Any] = field(default_factory=dict)
    override_rule: Dict[str, Any] = field(default_factory=dict)
    applies_to_level: Optional[int] = None  # None covers every level
    valid_until: Optional[datetime] = None
    audit_required: bool = True
    audit_completed: bool = False
    audited_by: Optional[str] = None
    audited_at: Optional[datetime] = None
    audit_findings: Optional[str] = None

    def covers(self, level_number: int, at: datetime) -> bool:
        if self.valid_until and at > self.valid_until:
            return False
        return self.applies_to_level is None or self.applies_to_level == level_number

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['exception_type'] = self.exception_type.value
        for key in ('valid_until', 'audited_at'):
            value = getattr(self, key)
            result[key] = value.isoformat() if value else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RuleException':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['exception_type'] = ExceptionType(data['exception_type'])
        for key in ('valid_until', 'audited_at'):
            data[key] = datetime.fromisoformat(data[key]) if data.get(key) else None
        return cls(**data)


class RuleExceptionRegistry:
    """Storage and lookup for rule exceptions"""

    TABLE = "approval_rule_exceptions"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def record(self, exception: RuleException) -> RuleException:
        if not exception.reason or not exception.reason.strip():
            raise ValidationError("A rule exception requires a reason", field="reason")
        if not exception.authorized_by:
            raise ValidationError("A rule exception requires an authorizer", field="authorized_by")
        self.storage.save(self.TABLE, exception.id, exception.to_dict())
        logger.info(
            "Recorded %s exception %s for request %s by %s",
            exception.exception_type.value, exception.id,
            exception.request_id, exception.authorized_by
        )
        return exception

    def get(self, exception_id: str) -> Optional[RuleException]:
        data = self.storage.load(self.TABLE, exception_id)
        if not data:
            return None
        return RuleException.from_dict(data)

    def for_request(self, request_id: str) -> List[RuleException]:
        rows = self.storage.find(self.TABLE, {'request_id': request_id})
        return sorted((RuleException.from_dict(row) for row in rows), key=lambda e: e.created_at)

    def active_bypass(self, request_id: str, level_number: int,
                      at: datetime) -> Optional[RuleException]:
        """The rule_bypass exception covering ``level_number`` at ``at``, if any"""
        for exception in self.for_request(request_id):
            if (exception.exception_type == ExceptionType.RULE_BYPASS
                    and exception.covers(level_number, at)):
                return exception
        return None

    def complete_audit(self, exception_id: str, auditor_id: str,
                       findings: str, at: datetime) -> RuleException:
        exception = self.get(exception_id)
        if not exception:
            raise NotFound("Rule exception not found", "rule_exception", exception_id)
        if not findings or not findings.strip():
            raise ValidationError("Audit findings are required", field="findings")

        exception.audit_completed = True
        exception.audited_by = auditor_id
        exception.audited_at = at
        exception.audit_findings = findings
        exception.updated_at = at
        self.storage.save(self.TABLE, exception.id, exception.to_dict())

        logger.info("Audit of rule exception %s completed by %s", exception_id, auditor_id)
        return exception

    def pending_audits(self, tenant_id: str) -> List[RuleException]:
        rows = self.storage.find(self.TABLE, {
            'tenant_id': tenant_id,
            'audit_required': True,
            'audit_completed': False,
        })
        return sorted((RuleException.from_dict(row) for row in rows), key=lambda e: e.created_at)
