"""
Approval State Machine Module

Owns every level and request transition. User decisions and sweeper actions
go through the same guarded primitives: a level changes only through a
compare-and-set on its status and version, a request only through a
compare-and-set on its version, and each transition appends its ledger entry
inside the same transaction.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Any
from enum import Enum
import logging
import uuid

from .approval_requests import (
    ApprovalRepository, ApprovalRequest, LevelAction, LevelStatus,
    RequestStatus, SLAStatus
)
from .approvers import ApproverDirectory, resolve_approvers
from .config import ApprovalEngineConfig
from .errors import Conflict, Forbidden, NotFound, TransitionDenied, ValidationError
from .events import EngineEvent, EventPayload
from .ledger import DecisionLedger, DecisionType
from .logging_config import log_action
from .notifications import NotificationOutbox, NotificationReason
from .overrides import ExceptionType, RuleException, RuleExceptionRegistry
from .storage import StorageInterface


logger = logging.getLogger("approval_engine.state_machine")


class Decision(Enum):
    APPROVE = "approve"
    REJECT = "reject"
    DELEGATE = "delegate"
    SKIP = "skip"


def compute_sla_status(deadline: Optional[datetime], now: datetime,
                       at_risk_window_hours: int) -> SLAStatus:
    """overdue past the deadline, at_risk inside the window, else on_time"""
    if deadline is None:
        return SLAStatus.ON_TIME
    if deadline < now:
        return SLAStatus.OVERDUE
    if deadline - now <= timedelta(hours=at_risk_window_hours):
        return SLAStatus.AT_RISK
    return SLAStatus.ON_TIME


class ApprovalStateMachine:
    """
    Request and level transitions.

    Every public method runs in its own ``storage.atomic()`` block (nested
    blocks join the caller's transaction) and appends the events it produces
    to the caller's ``events`` list; publishing is the caller's job once the
    outermost transaction has committed.
    """

    def __init__(self, storage: StorageInterface, repository: ApprovalRepository,
                 ledger: DecisionLedger, outbox: NotificationOutbox,
                 exceptions: RuleExceptionRegistry, directory: ApproverDirectory,
                 settings: ApprovalEngineConfig,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.repository = repository
        self.ledger = ledger
        self.outbox = outbox
        self.exceptions = exceptions
        self.directory = directory
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # Authorization

    def authorized_actors(self, request: ApprovalRequest, level: LevelAction,
                          at: datetime) -> Set[str]:
        """
        Identities allowed to decide ``level`` at ``at``.

        An active delegation transfers authority to the delegate alone; once
        it has expired the level's assigned approvers regain it.
        """
        if level.delegation_active(at):
            return {level.delegated_to}
        return resolve_approvers(level.assigned_approver, request.tenant_id, self.directory)

    # User decisions

    def record_decision(self, request_id: str, level_number: int, actor_id: str,
                        decision: Any, events: List[EventPayload],
                        rationale: Optional[str] = None,
                        delegate_to: Optional[str] = None) -> RequestStatus:
        """
        Apply an approver's decision to one level.

        Returns:
            The request status after the transition

        Raises:
            ValidationError: unknown decision or missing delegate/rationale
            NotFound: request or level does not exist
            Conflict: the level is no longer open, or a concurrent writer won
            TransitionDenied: request terminal, level out of order, or the
                frozen rules forbid the transition
            Forbidden: actor does not satisfy the level's approver spec
        """
        try:
            decision = Decision(decision.value if isinstance(decision, Enum) else decision)
        except ValueError:
            raise ValidationError(f"Unknown decision: {decision!r}", field="decision")

        with self.storage.atomic():
            now = self.clock()
            request = self._load_request(request_id)
            level = self.repository.get_level(request_id, level_number)
            if level is None:
                raise NotFound(
                    f"Level {level_number} not found for request {request_id}",
                    "level_action", LevelAction.key(request_id, level_number)
                )
            if not level.status.is_open:
                raise Conflict(f"Level {level_number} has already been decided ({level.status.value})")
            if request.is_terminal:
                raise TransitionDenied(f"Request {request_id} is already {request.status.value}")
            if level_number != request.current_level:
                raise TransitionDenied(
                    f"Level {level_number} is not the active level (current level is {request.current_level})"
                )
            if actor_id not in self.authorized_actors(request, level, now):
                raise Forbidden(
                    f"{actor_id} does not satisfy {level.assigned_approver} for level {level_number}",
                    actor_id=actor_id
                )

            if decision == Decision.APPROVE:
                self._approve(request, level, actor_id, rationale, now, events)
            elif decision == Decision.REJECT:
                self._reject(request, level, actor_id, rationale, now, events)
            elif decision == Decision.DELEGATE:
                self._delegate(request, level, actor_id, delegate_to, rationale, now, events)
            else:
                self._skip(request, level, actor_id, rationale, now, events)

            events.append(self._event(EngineEvent.LEVEL_DECIDED, request, now, {
                'level_number': level_number,
                'decision': decision.value,
                'actor_id': actor_id,
                'level_status': level.status.value,
                'request_status': request.status.value,
            }))
            if request.is_terminal:
                events.append(self._completion_event(request, now))

        log_action(
            logger, "INFO",
            f"Decision {decision.value} on level {level_number} of request {request_id}",
            user_id=actor_id, action=decision.value, resource=request_id,
            tenant_id=request.tenant_id,
            extra={'request_status': request.status.value}
        )
        return request.status

    def cancel_request(self, request_id: str, actor_id: str, rationale: Optional[str],
                       events: List[EventPayload]) -> RequestStatus:
        if not rationale or not rationale.strip():
            raise ValidationError("Cancelling a request requires a rationale", field="rationale")
        return self._close(request_id, actor_id, RequestStatus.CANCELLED,
                           DecisionType.CANCELLED, rationale, events)

    def withdraw_request(self, request_id: str, actor_id: str, rationale: Optional[str],
                         events: List[EventPayload]) -> RequestStatus:
        with self.storage.atomic():
            request = self._load_request(request_id)
            if request.requester_id != actor_id:
                raise Forbidden("Only the requester may withdraw a request", actor_id=actor_id)
            return self._close(request_id, actor_id, RequestStatus.WITHDRAWN,
                               DecisionType.WITHDRAWN, rationale, events)

    # Rule exceptions

    def grant_rule_exception(self, request_id: str, authorized_by: str, reason: str,
                             events: List[EventPayload],
                             applies_to_level: Optional[int] = None,
                             valid_until: Optional[datetime] = None,
                             original_rule: Optional[Dict[str, Any]] = None,
                             override_rule: Optional[Dict[str, Any]] = None) -> RuleException:
        """Authorize continuation past a rejection at ``applies_to_level`` (or any level)"""
        with self.storage.atomic():
            now = self.clock()
            request = self._load_request(request_id)
            if request.is_terminal:
                raise TransitionDenied(f"Request {request_id} is already {request.status.value}")
            if applies_to_level is not None and not 1 <= applies_to_level <= request.total_levels:
                raise ValidationError(
                    f"Request has no level {applies_to_level}", field="applies_to_level"
                )

            exception = self.exceptions.record(RuleException(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                tenant_id=request.tenant_id,
                request_id=request.id,
                exception_type=ExceptionType.RULE_BYPASS,
                reason=reason,
                authorized_by=authorized_by,
                original_rule=original_rule or {'on_reject': 'reject_request'},
                override_rule=override_rule or {'on_reject': 'advance'},
                applies_to_level=applies_to_level,
                valid_until=valid_until,
            ))

            request.requires_audit = True
            request.updated_at = now
            self._save_request(request)
            self.ledger.append(
                request.tenant_id, request.id, DecisionType.RULE_EXCEPTION_GRANTED,
                authorized_by, now,
                decision_level=applies_to_level,
                previous_status=request.status.value,
                new_status=request.status.value,
                rationale=reason,
                decision_data={'rule_exception_id': exception.id,
                               'exception_type': exception.exception_type.value},
                total_chain_length=request.total_levels,
            )
        return exception

    def apply_emergency_override(self, request_id: str, authorized_by: str, reason: str,
                                 events: List[EventPayload],
                                 original_rule: Optional[Dict[str, Any]] = None,
                                 override_rule: Optional[Dict[str, Any]] = None) -> RuleException:
        """Approve a request immediately; its remaining open levels are skipped"""
        with self.storage.atomic():
            now = self.clock()
            request = self._load_request(request_id)
            if request.is_terminal:
                raise TransitionDenied(f"Request {request_id} is already {request.status.value}")

            exception = self.exceptions.record(RuleException(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                tenant_id=request.tenant_id,
                request_id=request.id,
                exception_type=ExceptionType.EMERGENCY_OVERRIDE,
                reason=reason,
                authorized_by=authorized_by,
                original_rule=original_rule or {'approval_path': request.approval_path},
                override_rule=override_rule or {'approval_path': []},
            ))

            skipped = []
            for level in self.repository.levels_for(request.id):
                if not level.status.is_open:
                    continue
                expected = level.status
                level.status = LevelStatus.SKIPPED
                level.action_taken_by = authorized_by
                level.action_taken_at = now
                level.rationale = reason
                level.rule_exception_id = exception.id
                self._transition_level(level, expected, now)
                skipped.append(level.level_number)

            previous = request.status
            request.status = RequestStatus.APPROVED
            request.requires_audit = True
            request.final_approver_id = authorized_by
            request.final_decision_at = now
            request.final_comments = reason
            request.updated_at = now
            self._save_request(request)

            self.ledger.append(
                request.tenant_id, request.id, DecisionType.EMERGENCY_OVERRIDE, authorized_by, now,
                decision_level=request.current_level,
                previous_status=previous.value,
                new_status=request.status.value,
                rationale=reason,
                decision_data={'rule_exception_id': exception.id, 'skipped_levels': skipped},
                total_chain_length=request.total_levels,
            )
            self.outbox.request(
                request.tenant_id, request.id, [request.requester_id],
                NotificationReason.APPROVED, now, events=events
            )
            events.append(self._completion_event(request, now))

        logger.warning(
            "Emergency override %s approved request %s (authorized by %s)",
            exception.id, request_id, authorized_by
        )
        return exception

    # Sweeper transitions

    def update_sla_status(self, request: ApprovalRequest, status: SLAStatus,
                          events: List[EventPayload]) -> None:
        """Store a recomputed SLA status; becoming at_risk reminds the active approvers"""
        with self.storage.atomic():
            now = self.clock()
            previous = request.sla_status
            request.sla_status = status
            request.updated_at = now
            self._save_request(request)
            self.ledger.append(
                request.tenant_id, request.id, DecisionType.SLA_STATUS_CHANGED,
                self.settings.system_actor_id, now,
                decision_level=request.current_level or None,
                previous_status=request.status.value,
                new_status=request.status.value,
                decision_data={'previous_sla_status': previous.value, 'sla_status': status.value},
                total_chain_length=request.total_levels,
            )
            if status == SLAStatus.AT_RISK:
                level = self.repository.get_level(request.id, request.current_level)
                if level is not None and level.status.is_open:
                    self.outbox.request(
                        request.tenant_id, request.id,
                        self.authorized_actors(request, level, now),
                        NotificationReason.REMINDER, now,
                        level_number=level.level_number, events=events
                    )

    def escalate(self, request: ApprovalRequest, level: LevelAction,
                 events: List[EventPayload]) -> bool:
        """
        Escalate an overdue open level to the next escalation target.

        When the next escalation would exceed the request's maximum, or there
        is no target to escalate to, the request is flagged
        ``intervention_required`` instead (once).

        Returns:
            True if the level was escalated, False if intervention was flagged
            or was already flagged
        """
        with self.storage.atomic():
            now = self.clock()
            rules = request.frozen_escalation_rules()
            next_level = request.escalation_level + 1
            target = rules.target_for(next_level)

            if next_level > request.max_escalation_level or target is None:
                if request.status != RequestStatus.INTERVENTION_REQUIRED:
                    self._flag_intervention(request, level, now)
                return False

            previous_approver = level.assigned_approver
            expected = level.status
            level.status = LevelStatus.ESCALATED
            level.assigned_approver = target
            level.escalation_count += 1
            level.due_date = now + timedelta(
                hours=rules.escalation_sla_hours or self.settings.default_escalation_sla_hours
            )
            level.delegated_to = None
            level.delegation_expiry = None
            level.pre_delegation_status = None
            self._transition_level(level, expected, now)

            previous = request.status
            request.escalation_level = next_level
            request.escalated_to = target.to_dict()
            request.escalated_at = now
            request.status = RequestStatus.ESCALATED
            request.updated_at = now
            self._save_request(request)

            self.ledger.append(
                request.tenant_id, request.id, DecisionType.ESCALATED,
                self.settings.system_actor_id, now,
                decision_level=level.level_number,
                previous_status=previous.value,
                new_status=request.status.value,
                rationale="Level due date passed without a decision",
                decision_data={
                    'escalation_level': next_level,
                    'previous_approver': previous_approver.to_dict(),
                    'escalated_to': target.to_dict(),
                    'due_date': level.due_date,
                    'level_status': {'from': expected.value, 'to': level.status.value},
                },
                total_chain_length=request.total_levels,
            )
            self.outbox.request(
                request.tenant_id, request.id,
                resolve_approvers(target, request.tenant_id, self.directory),
                NotificationReason.ESCALATED, now,
                level_number=level.level_number, events=events
            )
            events.append(self._event(EngineEvent.ESCALATED, request, now, {
                'level_number': level.level_number,
                'escalation_level': next_level,
                'escalated_to': target.to_dict(),
            }))

        logger.info(
            "Escalated level %d of request %s to %s (escalation level %d)",
            level.level_number, request.id, target, next_level
        )
        return True

    def expire_delegation(self, request: ApprovalRequest, level: LevelAction,
                          events: List[EventPayload]) -> None:
        """Return authority of a lapsed delegation to the original approvers"""
        with self.storage.atomic():
            now = self.clock()
            delegate = level.delegated_to
            restored = level.pre_delegation_status or LevelStatus.PENDING
            level.status = restored
            level.delegation_expiry = None
            level.pre_delegation_status = None
            self._transition_level(level, LevelStatus.DELEGATED, now)

            previous = request.status
            request.status = self._open_request_status(request, level)
            request.updated_at = now
            self._save_request(request)

            self.ledger.append(
                request.tenant_id, request.id, DecisionType.DELEGATION_EXPIRED,
                self.settings.system_actor_id, now,
                decision_level=level.level_number,
                previous_status=previous.value,
                new_status=request.status.value,
                rationale="Delegation expired without a decision",
                decision_data={'delegate': delegate, 'level_status': restored.value},
                total_chain_length=request.total_levels,
            )
            self.outbox.request(
                request.tenant_id, request.id,
                resolve_approvers(level.assigned_approver, request.tenant_id, self.directory),
                NotificationReason.PENDING, now,
                level_number=level.level_number, events=events
            )

        logger.info(
            "Delegation of level %d of request %s to %s expired; authority returned to %s",
            level.level_number, request.id, delegate, level.assigned_approver
        )

    def expire_request(self, request: ApprovalRequest, events: List[EventPayload]) -> None:
        with self.storage.atomic():
            now = self.clock()
            previous = request.status
            request.status = RequestStatus.EXPIRED
            request.final_decision_at = now
            request.updated_at = now
            self._save_request(request)
            self.ledger.append(
                request.tenant_id, request.id, DecisionType.EXPIRED,
                self.settings.system_actor_id, now,
                decision_level=request.current_level or None,
                previous_status=previous.value,
                new_status=request.status.value,
                rationale="Request deadline passed",
                total_chain_length=request.total_levels,
            )
            events.append(self._completion_event(request, now))
        logger.info("Request %s expired", request.id)

    # Private helper methods

    def _load_request(self, request_id: str) -> ApprovalRequest:
        request = self.repository.get_request(request_id)
        if request is None:
            raise NotFound(f"Approval request {request_id} not found", "approval_request", request_id)
        return request

    def _transition_level(self, level: LevelAction, expected: LevelStatus, now: datetime) -> None:
        level.updated_at = now
        if not self.repository.update_level(level, expected):
            raise Conflict(
                f"Level {level.level_number} of request {level.request_id} was changed concurrently"
            )

    def _save_request(self, request: ApprovalRequest) -> None:
        if not self.repository.update_request(request):
            raise Conflict(f"Approval request {request.id} was changed concurrently")

    def _open_request_status(self, request: ApprovalRequest, level: LevelAction) -> RequestStatus:
        if level.status == LevelStatus.ESCALATED:
            return RequestStatus.ESCALATED
        if request.current_level <= 1:
            return RequestStatus.PENDING
        return RequestStatus.IN_REVIEW

    def _decide_level(self, level: LevelAction, status: LevelStatus, actor_id: str,
                      rationale: Optional[str], now: datetime) -> LevelStatus:
        expected = level.status
        level.status = status
        level.action_taken_by = actor_id
        level.action_taken_at = now
        level.rationale = rationale
        if level.received_at:
            level.response_time_hours = round((now - level.received_at).total_seconds() / 3600, 2)
        self._transition_level(level, expected, now)
        return expected

    def _approve(self, request, level, actor_id, rationale, now, events) -> None:
        expected = self._decide_level(level, LevelStatus.APPROVED, actor_id, rationale, now)
        previous = request.status
        self._advance(request, level, actor_id, rationale, now, events)
        self._append(request, DecisionType.APPROVED, actor_id, now, level, previous,
                     rationale, {'level_status': {'from': expected.value, 'to': level.status.value}})

    def _reject(self, request, level, actor_id, rationale, now, events) -> None:
        bypass = self.exceptions.active_bypass(request.id, level.level_number, now)
        if bypass:
            level.rule_exception_id = bypass.id
        expected = self._decide_level(level, LevelStatus.REJECTED, actor_id, rationale, now)
        previous = request.status
        data: Dict[str, Any] = {'level_status': {'from': expected.value, 'to': level.status.value}}

        if bypass:
            data['rule_exception_id'] = bypass.id
            data['continued'] = True
            self._advance(request, level, actor_id, rationale, now, events)
            logger.warning(
                "Rejection of level %d on request %s bypassed by rule exception %s",
                level.level_number, request.id, bypass.id
            )
        else:
            request.status = RequestStatus.REJECTED
            request.final_approver_id = None
            request.final_decision_at = now
            request.final_rejection_reason = rationale
            request.updated_at = now
            self._save_request(request)
            self.outbox.request(
                request.tenant_id, request.id, [request.requester_id],
                NotificationReason.REJECTED, now, level_number=level.level_number, events=events
            )

        self._append(request, DecisionType.REJECTED, actor_id, now, level, previous, rationale, data)

    def _delegate(self, request, level, actor_id, delegate_to, rationale, now, events) -> None:
        if not delegate_to:
            raise ValidationError("Delegation requires a delegate", field="delegate_to")
        if delegate_to == actor_id:
            raise ValidationError("An approver cannot delegate to themselves", field="delegate_to")
        if level.delegation_active(now):
            raise TransitionDenied(f"Level {level.level_number} is already delegated to {level.delegated_to}")

        rules = request.frozen_delegation_rules()
        if not rules.enabled:
            raise TransitionDenied("Delegation is not permitted for this request")
        if not self.directory.is_known_user(request.tenant_id, delegate_to):
            raise ValidationError(f"Unknown delegate: {delegate_to}", field="delegate_to")
        if rules.allowed_delegate_roles:
            roles = self.directory.roles_of(request.tenant_id, delegate_to)
            if not roles.intersection(rules.allowed_delegate_roles):
                raise Forbidden(
                    f"{delegate_to} does not hold a role allowed to receive delegation",
                    actor_id=delegate_to
                )

        expected = level.status
        # A lapsed delegation not yet reverted by the sweeper restores from its saved status
        level.pre_delegation_status = (
            level.pre_delegation_status if expected == LevelStatus.DELEGATED else expected
        ) or LevelStatus.PENDING
        level.status = LevelStatus.DELEGATED
        level.delegated_by = actor_id
        level.delegated_to = delegate_to
        level.delegated_at = now
        level.delegation_reason = rationale
        level.delegation_expiry = now + timedelta(
            hours=rules.max_hours or self.settings.default_delegation_hours
        )
        self._transition_level(level, expected, now)

        previous = request.status
        request.status = RequestStatus.DELEGATED
        request.updated_at = now
        self._save_request(request)

        self.outbox.request(
            request.tenant_id, request.id, [delegate_to],
            NotificationReason.PENDING, now, level_number=level.level_number, events=events
        )
        self._append(request, DecisionType.DELEGATED, actor_id, now, level, previous, rationale, {
            'delegated_to': delegate_to,
            'delegation_expiry': level.delegation_expiry,
            'level_status': {'from': expected.value, 'to': level.status.value},
        })

    def _skip(self, request, level, actor_id, rationale, now, events) -> None:
        if not rationale or not rationale.strip():
            raise ValidationError("Skipping a level requires a rationale", field="rationale")
        spec = request.frozen_level(level.level_number)
        if spec is None or not spec.can_skip:
            raise TransitionDenied(f"Level {level.level_number} cannot be skipped")

        expected = self._decide_level(level, LevelStatus.SKIPPED, actor_id, rationale, now)
        previous = request.status
        self._advance(request, level, actor_id, rationale, now, events)
        self._append(request, DecisionType.SKIPPED, actor_id, now, level, previous,
                     rationale, {'level_status': {'from': expected.value, 'to': level.status.value}})

    def _advance(self, request: ApprovalRequest, level: LevelAction, actor_id: str,
                 rationale: Optional[str], now: datetime, events: List[EventPayload]) -> None:
        """Move past a closed level: approve the request or open the next level"""
        if level.level_number >= request.total_levels:
            request.status = RequestStatus.APPROVED
            request.final_approver_id = actor_id
            request.final_decision_at = now
            request.final_comments = rationale
            request.updated_at = now
            self._save_request(request)
            self.outbox.request(
                request.tenant_id, request.id, [request.requester_id],
                NotificationReason.APPROVED, now, events=events
            )
            return

        request.current_level = level.level_number + 1
        request.status = RequestStatus.IN_REVIEW
        # Each level starts with a fresh escalation budget
        request.escalation_level = 0
        request.escalated_to = None
        request.updated_at = now
        self._save_request(request)

        following = self.repository.get_level(request.id, request.current_level)
        if following is None:
            raise NotFound(
                f"Level {request.current_level} not found for request {request.id}",
                "level_action", LevelAction.key(request.id, request.current_level)
            )
        spec = request.frozen_level(following.level_number)
        following.received_at = now
        following.due_date = now + timedelta(hours=(spec.sla_hours if spec else None) or request.sla_hours
                                             or self.settings.default_sla_hours)
        self._transition_level(following, LevelStatus.PENDING, now)
        self.outbox.request(
            request.tenant_id, request.id,
            resolve_approvers(following.assigned_approver, request.tenant_id, self.directory),
            NotificationReason.PENDING, now, level_number=following.level_number, events=events
        )

    def _append(self, request: ApprovalRequest, decision_type: DecisionType, actor_id: str,
                now: datetime, level: LevelAction, previous: RequestStatus,
                rationale: Optional[str], data: Dict[str, Any]) -> None:
        self.ledger.append(
            request.tenant_id, request.id, decision_type, actor_id, now,
            decision_level=level.level_number,
            previous_status=previous.value,
            new_status=request.status.value,
            rationale=rationale,
            decision_data=data,
            total_chain_length=request.total_levels,
        )

    def _flag_intervention(self, request: ApprovalRequest, level: LevelAction, now: datetime) -> None:
        previous = request.status
        request.status = RequestStatus.INTERVENTION_REQUIRED
        request.updated_at = now
        self._save_request(request)
        self.ledger.append(
            request.tenant_id, request.id, DecisionType.INTERVENTION_REQUIRED,
            self.settings.system_actor_id, now,
            decision_level=level.level_number,
            previous_status=previous.value,
            new_status=request.status.value,
            rationale="Escalation limit reached; human intervention required",
            decision_data={
                'escalation_level': request.escalation_level,
                'max_escalation_level': request.max_escalation_level,
            },
            total_chain_length=request.total_levels,
        )
        logger.warning(
            "Request %s needs intervention: level %d overdue at escalation level %d of %d",
            request.id, level.level_number, request.escalation_level, request.max_escalation_level
        )

    def _close(self, request_id: str, actor_id: str, status: RequestStatus,
               decision_type: DecisionType, rationale: Optional[str],
               events: List[EventPayload]) -> RequestStatus:
        with self.storage.atomic():
            now = self.clock()
            request = self._load_request(request_id)
            if request.is_terminal:
                raise TransitionDenied(f"Request {request_id} is already {request.status.value}")

            previous = request.status
            request.status = status
            request.final_decision_at = now
            request.final_comments = rationale
            request.updated_at = now
            self._save_request(request)
            self.ledger.append(
                request.tenant_id, request.id, decision_type, actor_id, now,
                decision_level=request.current_level or None,
                previous_status=previous.value,
                new_status=status.value,
                rationale=rationale,
                total_chain_length=request.total_levels,
            )
            events.append(self._completion_event(request, now))

        logger.info("Request %s %s by %s", request_id, status.value, actor_id)
        return status

    def _event(self, event_type: EngineEvent, request: ApprovalRequest,
               now: datetime, data: Dict[str, Any]) -> EventPayload:
        return EventPayload(
            event_type=event_type,
            tenant_id=request.tenant_id,
            request_id=request.id,
            data=data,
            timestamp=now,
        )

    def _completion_event(self, request: ApprovalRequest, now: datetime) -> EventPayload:
        return self._event(EngineEvent.DECISION_COMPLETED, request, now, {
            'final_status': request.status.value,
            'final_approver_id': request.final_approver_id,
            'decision_history': [e.to_dict() for e in self.ledger.history(request.id)],
        })
