"""
Workflow Template Module

Tenant-scoped approval templates: matching rules, ordered approval levels,
escalation and delegation rules, and auto-approval settings. Templates may be
edited at any time; requests never read them after instantiation.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Any
import logging
import uuid

from .approvers import ApproverSpec
from .errors import Conflict, NotFound, ValidationError
from .predicates import Predicate, predicate_from_dict, predicate_to_dict
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("approval_engine.templates")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class LevelSpec:
    """One level of an approval path"""
    level_number: int
    name: str
    approver: ApproverSpec
    sla_hours: Optional[int] = None
    can_skip: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'level_number': self.level_number,
            'name': self.name,
            'approver': self.approver.to_dict(),
            'sla_hours': self.sla_hours,
            'can_skip': self.can_skip,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LevelSpec':
        return cls(
            level_number=data['level_number'],
            name=data['name'],
            approver=ApproverSpec.from_dict(data['approver']),
            sla_hours=data.get('sla_hours'),
            can_skip=data.get('can_skip', False),
        )


@dataclass
class EscalationRules:
    """
    Escalation targets by escalation level: the first escalation goes to
    ``targets[0]``, the second to ``targets[1]`` and so on; the last target
    repeats once the list is exhausted.
    """
    targets: List[ApproverSpec] = field(default_factory=list)
    escalation_sla_hours: Optional[int] = None
    max_escalation_level: Optional[int] = None

    def target_for(self, escalation_level: int) -> Optional[ApproverSpec]:
        if not self.targets:
            return None
        index = min(escalation_level, len(self.targets)) - 1
        return self.targets[max(index, 0)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'targets': [t.to_dict() for t in self.targets],
            'escalation_sla_hours': self.escalation_sla_hours,
            'max_escalation_level': self.max_escalation_level,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'EscalationRules':
        data = data or {}
        return cls(
            targets=[ApproverSpec.from_dict(t) for t in data.get('targets', [])],
            escalation_sla_hours=data.get('escalation_sla_hours'),
            max_escalation_level=data.get('max_escalation_level'),
        )


@dataclass
class DelegationRules:
    """Who may receive delegated authority, and for how long"""
    enabled: bool = True
    max_hours: Optional[int] = None
    allowed_delegate_roles: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'max_hours': self.max_hours,
            'allowed_delegate_roles': list(self.allowed_delegate_roles),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'DelegationRules':
        data = data or {}
        return cls(
            enabled=data.get('enabled', True),
            max_hours=data.get('max_hours'),
            allowed_delegate_roles=list(data.get('allowed_delegate_roles', [])),
        )


@dataclass
class WorkflowTemplate(StorageRecord):
    """Approval workflow template"""
    tenant_id: str
    name: str
    request_type: str
    levels: List[LevelSpec]
    request_category: Optional[str] = None
    description: str = ""
    condition: Optional[Predicate] = None
    escalation_rules: EscalationRules = field(default_factory=EscalationRules)
    delegation_rules: DelegationRules = field(default_factory=DelegationRules)
    default_sla_hours: Optional[int] = None
    auto_approval_enabled: bool = False
    auto_approval_predicate: Optional[Predicate] = None
    auto_approval_max_amount: Optional[Decimal] = None
    priority_order: int = 100  # Lower number = higher priority
    is_active: bool = True
    is_default: bool = False
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    version: int = 1
    created_by: str = ""

    def is_effective(self, at: datetime) -> bool:
        if self.effective_from and at < self.effective_from:
            return False
        if self.effective_until and at > self.effective_until:
            return False
        return True

    def matches_type(self, request_type: str, request_category: Optional[str]) -> bool:
        if self.request_type != request_type:
            return False
        return self.request_category is None or self.request_category == request_category

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'tenant_id': self.tenant_id,
            'name': self.name,
            'request_type': self.request_type,
            'request_category': self.request_category,
            'description': self.description,
            'levels': [level.to_dict() for level in self.levels],
            'condition': predicate_to_dict(self.condition) if self.condition else None,
            'escalation_rules': self.escalation_rules.to_dict(),
            'delegation_rules': self.delegation_rules.to_dict(),
            'default_sla_hours': self.default_sla_hours,
            'auto_approval_enabled': self.auto_approval_enabled,
            'auto_approval_predicate': (
                predicate_to_dict(self.auto_approval_predicate)
                if self.auto_approval_predicate else None
            ),
            'auto_approval_max_amount': (
                str(self.auto_approval_max_amount)
                if self.auto_approval_max_amount is not None else None
            ),
            'priority_order': self.priority_order,
            'is_active': self.is_active,
            'is_default': self.is_default,
            'effective_from': self.effective_from.isoformat() if self.effective_from else None,
            'effective_until': self.effective_until.isoformat() if self.effective_until else None,
            'version': self.version,
            'created_by': self.created_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowTemplate':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['levels'] = [LevelSpec.from_dict(level) for level in data['levels']]
        data['condition'] = predicate_from_dict(data['condition']) if data.get('condition') else None
        data['escalation_rules'] = EscalationRules.from_dict(data.get('escalation_rules'))
        data['delegation_rules'] = DelegationRules.from_dict(data.get('delegation_rules'))
        if data.get('auto_approval_predicate'):
            data['auto_approval_predicate'] = predicate_from_dict(data['auto_approval_predicate'])
        if data.get('auto_approval_max_amount') is not None:
            data['auto_approval_max_amount'] = Decimal(data['auto_approval_max_amount'])
        data['effective_from'] = _parse_dt(data.get('effective_from'))
        data['effective_until'] = _parse_dt(data.get('effective_until'))
        return cls(**data)


# Fields update_template may change
UPDATABLE_FIELDS = {
    'name', 'description', 'request_category', 'levels', 'condition',
    'escalation_rules', 'delegation_rules', 'default_sla_hours',
    'auto_approval_enabled', 'auto_approval_predicate', 'auto_approval_max_amount',
    'priority_order', 'is_active', 'is_default', 'effective_from', 'effective_until',
}


class TemplateStore:
    """Create, edit and query workflow templates"""

    TABLE = "approval_workflow_templates"

    def __init__(self, storage: StorageInterface,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.clock = clock or _utcnow

    def create_template(self, template: WorkflowTemplate) -> str:
        """Validate and store a new template, returning its id"""
        if not template.id:
            template.id = str(uuid.uuid4())

        now = self.clock()
        template.created_at = now
        template.updated_at = now
        template.version = 1

        self._validate(template)
        with self.storage.atomic():
            self._check_conflicts(template)
            if not self.storage.insert(self.TABLE, template.id, template.to_dict()):
                raise Conflict(f"Template {template.id} already exists")

        logger.info(
            "Created template %s (%s) for tenant %s",
            template.id, template.name, template.tenant_id
        )
        return template.id

    def get_template(self, template_id: str) -> Optional[WorkflowTemplate]:
        data = self.storage.load(self.TABLE, template_id)
        if not data:
            return None
        return WorkflowTemplate.from_dict(data)

    def update_template(self, template_id: str, updated_by: str, **changes) -> WorkflowTemplate:
        """
        Apply changes to a template and bump its version.

        In-flight requests keep the approval path they froze at instantiation.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        with self.storage.atomic():
            template = self.get_template(template_id)
            if not template:
                raise NotFound("Template not found", "workflow_template", template_id)

            for key, value in changes.items():
                setattr(template, key, value)
            template.version += 1
            template.updated_at = self.clock()

            self._validate(template)
            self._check_conflicts(template)
            self.storage.save(self.TABLE, template.id, template.to_dict())

        logger.info(
            "Updated template %s to version %d by %s (%s)",
            template.id, template.version, updated_by, ', '.join(sorted(changes))
        )
        return template

    def activate_template(self, template_id: str, updated_by: str) -> WorkflowTemplate:
        return self.update_template(template_id, updated_by, is_active=True)

    def deactivate_template(self, template_id: str, updated_by: str) -> WorkflowTemplate:
        return self.update_template(template_id, updated_by, is_active=False)

    def list_templates(self, tenant_id: str, request_type: Optional[str] = None,
                       active_only: bool = False) -> List[WorkflowTemplate]:
        filters: Dict[str, Any] = {'tenant_id': tenant_id}
        if request_type:
            filters['request_type'] = request_type
        if active_only:
            filters['is_active'] = True
        templates = [WorkflowTemplate.from_dict(row) for row in self.storage.find(self.TABLE, filters)]
        return sorted(templates, key=lambda t: (t.request_type, t.priority_order, t.name))

    def candidates(self, tenant_id: str, request_type: str,
                   request_category: Optional[str], at: datetime) -> List[WorkflowTemplate]:
        """Active, effective templates for the type/category, ascending priority"""
        return [
            t for t in self.list_templates(tenant_id, request_type, active_only=True)
            if t.matches_type(request_type, request_category) and t.is_effective(at)
        ]

    def default_template(self, tenant_id: str, request_type: str,
                         at: datetime) -> Optional[WorkflowTemplate]:
        defaults = [
            t for t in self.list_templates(tenant_id, request_type, active_only=True)
            if t.is_default and t.is_effective(at)
        ]
        return defaults[0] if defaults else None

    # Private helper methods

    def _validate(self, template: WorkflowTemplate) -> None:
        if not template.tenant_id:
            raise ValidationError("Template must belong to a tenant", field="tenant_id")
        if not template.name:
            raise ValidationError("Template name is required", field="name")
        if not template.request_type:
            raise ValidationError("Template request type is required", field="request_type")
        if not template.levels:
            raise ValidationError("Workflow must have at least one level", field="levels")

        level_numbers = [level.level_number for level in template.levels]
        if len(set(level_numbers)) != len(level_numbers):
            raise ValidationError("Level numbers must be unique", field="levels")
        if sorted(level_numbers) != list(range(1, len(level_numbers) + 1)):
            raise ValidationError("Level numbers must be consecutive starting at 1", field="levels")
        template.levels.sort(key=lambda level: level.level_number)

        for level in template.levels:
            if level.sla_hours is not None and level.sla_hours <= 0:
                raise ValidationError(f"Level {level.level_number} SLA must be positive", field="levels")
        if template.default_sla_hours is not None and template.default_sla_hours <= 0:
            raise ValidationError("Default SLA must be positive", field="default_sla_hours")

        rules = template.escalation_rules
        if rules.max_escalation_level is not None and rules.max_escalation_level < 0:
            raise ValidationError("Maximum escalation level cannot be negative", field="escalation_rules")
        if rules.escalation_sla_hours is not None and rules.escalation_sla_hours <= 0:
            raise ValidationError("Escalation SLA must be positive", field="escalation_rules")

        if template.delegation_rules.max_hours is not None and template.delegation_rules.max_hours <= 0:
            raise ValidationError("Delegation duration must be positive", field="delegation_rules")

        if template.auto_approval_max_amount is not None and template.auto_approval_max_amount < 0:
            raise ValidationError("Auto-approval amount cannot be negative", field="auto_approval_max_amount")

        if (template.effective_from and template.effective_until
                and template.effective_until < template.effective_from):
            raise ValidationError("Validity window ends before it starts", field="effective_until")

    def _check_conflicts(self, template: WorkflowTemplate) -> None:
        siblings = [
            t for t in self.list_templates(template.tenant_id, template.request_type)
            if t.id != template.id
        ]
        for other in siblings:
            if other.name == template.name:
                raise Conflict(f"Template name '{template.name}' already used for {template.request_type}")
            if not (template.is_active and other.is_active):
                continue
            if other.priority_order == template.priority_order:
                raise Conflict(
                    f"Priority {template.priority_order} already used by active template "
                    f"'{other.name}' for {template.request_type}"
                )
            if template.is_default and other.is_default:
                raise Conflict(f"Active default template already exists for {template.request_type}")
