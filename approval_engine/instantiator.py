"""
Workflow Instantiator Module

Freezes a resolved template into a request: the approval path, escalation
rules and delegation rules are copied onto the request, one level action is
created per level, and the ``created`` history entry is written, all in one
transaction. Auto-approval is decided here, once, before any level exists.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
import logging

from .approval_requests import (
    ApprovalRepository, ApprovalRequest, LevelAction, LevelStatus, RequestStatus
)
from .approvers import ApproverDirectory, resolve_approvers
from .config import ApprovalEngineConfig
from .errors import Conflict
from .events import EngineEvent, EventPayload
from .ledger import DecisionLedger, DecisionType
from .notifications import NotificationOutbox, NotificationReason
from .predicates import evaluate
from .resolver import request_attributes
from .storage import StorageInterface
from .templates import WorkflowTemplate


logger = logging.getLogger("approval_engine.instantiator")


class WorkflowInstantiator:

    def __init__(self, storage: StorageInterface, repository: ApprovalRepository,
                 ledger: DecisionLedger, outbox: NotificationOutbox,
                 directory: ApproverDirectory, settings: ApprovalEngineConfig,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.repository = repository
        self.ledger = ledger
        self.outbox = outbox
        self.directory = directory
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def auto_approves(self, template: WorkflowTemplate, request: ApprovalRequest) -> bool:
        """Whether the template's auto-approval rule covers ``request``"""
        if not template.auto_approval_enabled:
            return False
        if template.auto_approval_predicate is not None:
            attributes = request_attributes(
                request.request_type, request.request_category,
                request.amount, request.context_payload
            )
            if not evaluate(template.auto_approval_predicate, attributes):
                return False
        if template.auto_approval_max_amount is not None:
            if request.amount is None or request.amount > template.auto_approval_max_amount:
                return False
        return True

    def instantiate(self, request: ApprovalRequest, template: WorkflowTemplate,
                    events: List[EventPayload]) -> ApprovalRequest:
        """
        Bind ``request`` to ``template`` and persist it with its level actions.

        Args:
            request: Unsaved request carrying the submitted attributes
            template: Template chosen by the resolver
            events: Collector for events to publish once the caller commits

        Raises:
            Conflict: the request id or a level key already exists
        """
        now = self.clock()
        sla_hours = template.default_sla_hours or self.settings.default_sla_hours

        request.created_at = now
        request.updated_at = now
        request.template_id = template.id
        request.template_version = template.version
        request.sla_hours = sla_hours
        request.deadline = request.deadline or now + timedelta(hours=sla_hours)
        request.escalation_rules = template.escalation_rules.to_dict()
        request.delegation_rules = template.delegation_rules.to_dict()
        request.max_escalation_level = (
            template.escalation_rules.max_escalation_level
            if template.escalation_rules.max_escalation_level is not None
            else self.settings.default_max_escalation_level
        )
        request.currency = request.currency or self.settings.default_currency

        with self.storage.atomic():
            if self.auto_approves(template, request):
                self._auto_approve(request, now, events)
            else:
                self._materialize(request, template, now, events)

        return request

    # Private helper methods

    def _auto_approve(self, request: ApprovalRequest, now: datetime,
                      events: List[EventPayload]) -> None:
        request.approval_path = []
        request.total_levels = 0
        request.current_level = 0
        request.status = RequestStatus.APPROVED
        request.final_approver_id = self.settings.system_actor_id
        request.final_decision_at = now

        if not self.repository.insert_request(request):
            raise Conflict(f"Approval request {request.id} already exists")

        self.ledger.append(
            request.tenant_id, request.id, DecisionType.CREATED, request.requester_id, now,
            new_status=RequestStatus.PENDING.value,
            decision_data={'template_id': request.template_id,
                           'template_version': request.template_version},
            total_chain_length=0,
        )
        self.ledger.append(
            request.tenant_id, request.id, DecisionType.AUTO_APPROVED,
            self.settings.system_actor_id, now,
            previous_status=RequestStatus.PENDING.value,
            new_status=RequestStatus.APPROVED.value,
            rationale="Auto-approval rule satisfied at submission",
            total_chain_length=0,
        )
        self.outbox.request(
            request.tenant_id, request.id, [request.requester_id],
            NotificationReason.APPROVED, now, events=events
        )
        events.append(EventPayload(
            event_type=EngineEvent.DECISION_COMPLETED,
            tenant_id=request.tenant_id,
            request_id=request.id,
            data={
                'final_status': request.status.value,
                'final_approver_id': request.final_approver_id,
                'decision_history': [e.to_dict() for e in self.ledger.history(request.id)],
            },
            timestamp=now,
        ))
        logger.info("Request %s auto-approved by template %s", request.id, request.template_id)

    def _materialize(self, request: ApprovalRequest, template: WorkflowTemplate,
                     now: datetime, events: List[EventPayload]) -> None:
        request.approval_path = [level.to_dict() for level in template.levels]
        request.total_levels = len(template.levels)
        request.current_level = 1
        request.status = RequestStatus.PENDING

        if not self.repository.insert_request(request):
            raise Conflict(f"Approval request {request.id} already exists")

        for spec in request.frozen_levels():
            hours = spec.sla_hours or request.sla_hours
            level = LevelAction(
                id=LevelAction.key(request.id, spec.level_number),
                created_at=now,
                updated_at=now,
                tenant_id=request.tenant_id,
                request_id=request.id,
                level_number=spec.level_number,
                level_name=spec.name,
                required_approver=spec.approver,
                assigned_approver=spec.approver,
                status=LevelStatus.PENDING,
                received_at=now if spec.level_number == 1 else None,
                due_date=now + timedelta(hours=hours),
            )
            if not self.repository.insert_level(level):
                raise Conflict(f"Level {spec.level_number} already exists for request {request.id}")

        self.ledger.append(
            request.tenant_id, request.id, DecisionType.CREATED, request.requester_id, now,
            new_status=request.status.value,
            decision_data={
                'template_id': template.id,
                'template_version': template.version,
                'total_levels': request.total_levels,
            },
            total_chain_length=request.total_levels,
        )

        first = request.frozen_level(1)
        self.outbox.request(
            request.tenant_id, request.id,
            resolve_approvers(first.approver, request.tenant_id, self.directory),
            NotificationReason.PENDING, now, level_number=1, events=events
        )
        logger.info(
            "Request %s instantiated from template %s v%d with %d levels",
            request.id, template.id, template.version, request.total_levels
        )
