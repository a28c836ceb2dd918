"""
Approval Engine Module

The inbound interface used by domain collaborators. ``ApprovalEngine`` wires
the template store, resolver, instantiator, state machine and sweeper over a
single storage backend, and publishes outbound events once the transaction
that produced them has committed.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import json
import logging
import uuid

from pydantic import ValidationError as PydanticValidationError

from .approval_requests import (
    ApprovalRepository, ApprovalRequest, LevelAction, RequestStatus
)
from .approvers import ApproverDirectory, InMemoryDirectory
from .config import ApprovalEngineConfig, get_config
from .errors import NotFound, ValidationError
from .events import EngineEvent, EventDispatcher, EventPayload
from .instantiator import WorkflowInstantiator
from .ledger import DecisionHistoryEntry, DecisionLedger
from .logging_config import log_action, setup_logging
from .notifications import NotificationOutbox
from .overrides import RuleException, RuleExceptionRegistry
from .resolver import WorkflowResolver
from .schemas import GrantExceptionModel, SubmitRequestModel
from .state_machine import ApprovalStateMachine
from .storage import StorageInterface, create_storage
from .sweeper import EscalationSweeper, SweepReport, SweepScheduler
from .templates import TemplateStore, WorkflowTemplate


logger = logging.getLogger("approval_engine.engine")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validation_error(error: PydanticValidationError) -> ValidationError:
    details = [
        {'field': '.'.join(str(part) for part in err['loc']), 'issue': err['msg']}
        for err in error.errors()
    ]
    return ValidationError("Request validation failed", details)


class ApprovalEngine:
    """Approval workflow engine with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 directory: Optional[ApproverDirectory] = None,
                 settings: Optional[ApprovalEngineConfig] = None,
                 dispatcher: Optional[EventDispatcher] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings or get_config()
        self.storage = storage or create_storage(self.settings.database_url)
        self.directory = directory or InMemoryDirectory()
        self.dispatcher = dispatcher or EventDispatcher()
        self.clock = clock or _utcnow

        self.templates = TemplateStore(self.storage, self.clock)
        self.resolver = WorkflowResolver(self.templates, self.clock)
        self.repository = ApprovalRepository(self.storage)
        self.ledger = DecisionLedger(self.storage)
        self.outbox = NotificationOutbox(self.storage)
        self.exceptions = RuleExceptionRegistry(self.storage)

        self.instantiator = WorkflowInstantiator(
            self.storage, self.repository, self.ledger, self.outbox,
            self.directory, self.settings, self.clock
        )
        self.state_machine = ApprovalStateMachine(
            self.storage, self.repository, self.ledger, self.outbox,
            self.exceptions, self.directory, self.settings, self.clock
        )
        self.sweeper = EscalationSweeper(
            self.storage, self.repository, self.state_machine,
            self.dispatcher, self.settings, self.clock
        )
        self._scheduler: Optional[SweepScheduler] = None

    @classmethod
    def from_config(cls, settings: Optional[ApprovalEngineConfig] = None,
                    directory: Optional[ApproverDirectory] = None) -> 'ApprovalEngine':
        """Build an engine from settings, configuring logging as they describe"""
        settings = settings or get_config()
        setup_logging(settings.log_level, log_format=settings.log_format, log_file=settings.log_file)
        return cls(settings=settings, directory=directory)

    # Templates

    def create_template(self, template: WorkflowTemplate) -> str:
        return self.templates.create_template(template)

    def update_template(self, template_id: str, updated_by: str, **changes) -> WorkflowTemplate:
        return self.templates.update_template(template_id, updated_by, **changes)

    def activate_template(self, template_id: str, updated_by: str) -> WorkflowTemplate:
        return self.templates.activate_template(template_id, updated_by)

    def deactivate_template(self, template_id: str, updated_by: str) -> WorkflowTemplate:
        return self.templates.deactivate_template(template_id, updated_by)

    def get_template(self, template_id: str) -> WorkflowTemplate:
        template = self.templates.get_template(template_id)
        if template is None:
            raise NotFound("Template not found", "workflow_template", template_id)
        return template

    def list_templates(self, tenant_id: str, request_type: Optional[str] = None,
                       active_only: bool = False) -> List[WorkflowTemplate]:
        return self.templates.list_templates(tenant_id, request_type, active_only)

    # Requests

    def submit_request(self, tenant_id: str, request_type: str,
                       request_category: Optional[str], amount: Optional[Any],
                       context_payload: Optional[Dict[str, Any]], requester_id: str,
                       **attributes) -> str:
        """
        Submit a new request for approval.

        Args:
            tenant_id: Owning tenant
            request_type: Request type used for template matching
            request_category: Optional category used for template matching
            amount: Optional monetary amount
            context_payload: Business context, copied at submission
            requester_id: Identity submitting the request
            **attributes: title, description, reference_id, currency,
                related_entity_type, related_entity_id, department, priority,
                impact_level, urgency_level, deadline

        Returns:
            The new request id

        Raises:
            ValidationError: missing or malformed fields, or oversized payload
            NoApplicableTemplate: no template matches and no default exists
        """
        try:
            submission = SubmitRequestModel(
                tenant_id=tenant_id,
                request_type=request_type,
                request_category=request_category,
                amount=amount,
                context_payload=context_payload if context_payload is not None else {},
                requester_id=requester_id,
                **attributes
            )
        except PydanticValidationError as e:
            raise _validation_error(e)

        try:
            encoded = json.dumps(submission.context_payload, default=str)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Context payload is not serializable: {e}", field="context_payload")
        if len(encoded.encode('utf-8')) > self.settings.max_payload_bytes:
            raise ValidationError(
                f"Context payload exceeds {self.settings.max_payload_bytes} bytes",
                field="context_payload"
            )
        payload = json.loads(encoded)

        template = self.resolver.resolve(
            submission.tenant_id, submission.request_type, submission.request_category,
            submission.amount, payload
        )

        now = self.clock()
        request = ApprovalRequest(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=submission.tenant_id,
            request_type=submission.request_type,
            requester_id=submission.requester_id,
            context_payload=payload,
            request_category=submission.request_category,
            reference_id=submission.reference_id,
            title=submission.title,
            description=submission.description,
            related_entity_type=submission.related_entity_type,
            related_entity_id=submission.related_entity_id,
            department=submission.department,
            amount=Decimal(submission.amount) if submission.amount is not None else None,
            currency=submission.currency,
            priority=submission.priority,
            impact_level=submission.impact_level,
            urgency_level=submission.urgency_level,
            deadline=submission.deadline,
        )

        events: List[EventPayload] = []
        self.instantiator.instantiate(request, template, events)
        self.dispatcher.publish_all(events)

        log_action(
            logger, "INFO", f"Submitted {request.request_type} request {request.id}",
            user_id=request.requester_id, action="submit_request", resource=request.id,
            tenant_id=request.tenant_id,
            extra={'template_id': template.id, 'status': request.status.value}
        )
        return request.id

    def record_decision(self, request_id: str, level_number: int, actor_id: str,
                        decision: Any, rationale: Optional[str] = None,
                        delegate_to: Optional[str] = None) -> RequestStatus:
        """Record an approve/reject/delegate/skip decision; returns the request status"""
        events: List[EventPayload] = []
        status = self.state_machine.record_decision(
            request_id, level_number, actor_id, decision, events,
            rationale=rationale, delegate_to=delegate_to
        )
        self.dispatcher.publish_all(events)
        return status

    def cancel_request(self, request_id: str, actor_id: str, rationale: str) -> RequestStatus:
        events: List[EventPayload] = []
        status = self.state_machine.cancel_request(request_id, actor_id, rationale, events)
        self.dispatcher.publish_all(events)
        return status

    def withdraw_request(self, request_id: str, requester_id: str,
                         rationale: Optional[str] = None) -> RequestStatus:
        events: List[EventPayload] = []
        status = self.state_machine.withdraw_request(request_id, requester_id, rationale, events)
        self.dispatcher.publish_all(events)
        return status

    def get_request(self, request_id: str) -> ApprovalRequest:
        request = self.repository.get_request(request_id)
        if request is None:
            raise NotFound(f"Approval request {request_id} not found", "approval_request", request_id)
        return request

    def get_levels(self, request_id: str) -> List[LevelAction]:
        self.get_request(request_id)
        return self.repository.levels_for(request_id)

    def get_history(self, request_id: str) -> List[DecisionHistoryEntry]:
        self.get_request(request_id)
        return self.ledger.history(request_id)

    def list_requests(self, tenant_id: str,
                      status: Optional[RequestStatus] = None) -> List[ApprovalRequest]:
        return self.repository.find_requests(tenant_id, status)

    def pending_tasks(self, tenant_id: str, actor_id: str) -> List[LevelAction]:
        """Active levels ``actor_id`` may decide right now, earliest due first"""
        now = self.clock()
        tasks = []
        for request in self.repository.find_requests(tenant_id):
            if request.is_terminal or request.current_level < 1:
                continue
            level = self.repository.get_level(request.id, request.current_level)
            if level is None or not level.status.is_open:
                continue
            if actor_id in self.state_machine.authorized_actors(request, level, now):
                tasks.append(level)
        return sorted(tasks, key=lambda level: level.due_date or now)

    # Rule exceptions

    def grant_rule_exception(self, request_id: str, authorized_by: str, reason: str,
                             applies_to_level: Optional[int] = None,
                             valid_until: Optional[datetime] = None,
                             original_rule: Optional[Dict[str, Any]] = None,
                             override_rule: Optional[Dict[str, Any]] = None) -> RuleException:
        try:
            grant = GrantExceptionModel(
                reason=reason, authorized_by=authorized_by,
                applies_to_level=applies_to_level, valid_until=valid_until,
                original_rule=original_rule or {}, override_rule=override_rule or {},
            )
        except PydanticValidationError as e:
            raise _validation_error(e)

        events: List[EventPayload] = []
        exception = self.state_machine.grant_rule_exception(
            request_id, grant.authorized_by, grant.reason, events,
            applies_to_level=grant.applies_to_level, valid_until=grant.valid_until,
            original_rule=grant.original_rule or None, override_rule=grant.override_rule or None,
        )
        self.dispatcher.publish_all(events)
        return exception

    def apply_emergency_override(self, request_id: str, authorized_by: str, reason: str,
                                 original_rule: Optional[Dict[str, Any]] = None,
                                 override_rule: Optional[Dict[str, Any]] = None) -> RuleException:
        try:
            grant = GrantExceptionModel(
                reason=reason, authorized_by=authorized_by,
                original_rule=original_rule or {}, override_rule=override_rule or {},
            )
        except PydanticValidationError as e:
            raise _validation_error(e)

        events: List[EventPayload] = []
        exception = self.state_machine.apply_emergency_override(
            request_id, grant.authorized_by, grant.reason, events,
            original_rule=grant.original_rule or None, override_rule=grant.override_rule or None,
        )
        self.dispatcher.publish_all(events)
        return exception

    def complete_exception_audit(self, exception_id: str, auditor_id: str,
                                 findings: str) -> RuleException:
        with self.storage.atomic():
            return self.exceptions.complete_audit(exception_id, auditor_id, findings, self.clock())

    def pending_exception_audits(self, tenant_id: str) -> List[RuleException]:
        return self.exceptions.pending_audits(tenant_id)

    # Ledger

    def verify_ledger(self, request_id: str) -> Dict[str, Any]:
        self.get_request(request_id)
        return self.ledger.verify_integrity(request_id)

    # Outbound events

    def on_decision_completed(self, callback: Callable[[EventPayload], None]) -> None:
        """Register a callback receiving (request_id, final_status, final_approver_id, decision_history)"""
        self.dispatcher.subscribe(EngineEvent.DECISION_COMPLETED, callback)

    def on_notification_requested(self, callback: Callable[[EventPayload], None]) -> None:
        self.dispatcher.subscribe(EngineEvent.NOTIFICATION_REQUESTED, callback)

    # Sweeper

    def run_sweep(self) -> SweepReport:
        return self.sweeper.sweep()

    def start_sweeper(self, interval_seconds: Optional[float] = None) -> None:
        if self._scheduler is None:
            self._scheduler = SweepScheduler(
                self.sweeper, interval_seconds or self.settings.sweep_interval_seconds
            )
        self._scheduler.start()

    def stop_sweeper(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()
            self._scheduler = None

    def close(self) -> None:
        self.stop_sweeper()
        self.storage.close()
