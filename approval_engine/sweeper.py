"""
Escalation & SLA Sweeper Module

A recurring pass over every active request that:

- expires requests overdue beyond ``auto_expire_overdue_hours`` (when enabled)
- recomputes SLA status, writing only when it changed
- returns lapsed delegations to the original approvers
- escalates overdue open levels, or flags the request for intervention once
  the escalation limit is reached

Each request is processed in its own transaction through the state machine's
guarded transitions. A failure on one request is logged and recorded in the
report; the pass continues with the next request. Re-running a pass on
unchanged data writes nothing.
"""

from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Any
import logging
import threading

from .approval_requests import ApprovalRepository, RequestStatus, LevelStatus
from .config import ApprovalEngineConfig
from .events import EventDispatcher, EventPayload
from .state_machine import ApprovalStateMachine, compute_sla_status
from .storage import StorageInterface


logger = logging.getLogger("approval_engine.sweeper")


@dataclass
class SweepReport:
    """Outcome of one sweep pass"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    requests_scanned: int = 0
    sla_updates: int = 0
    escalations: int = 0
    interventions: int = 0
    delegations_reverted: int = 0
    expired: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return (self.sla_updates + self.escalations + self.interventions
                + self.delegations_reverted + self.expired)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'requests_scanned': self.requests_scanned,
            'sla_updates': self.sla_updates,
            'escalations': self.escalations,
            'interventions': self.interventions,
            'delegations_reverted': self.delegations_reverted,
            'expired': self.expired,
            'failures': list(self.failures),
        }


class EscalationSweeper:

    def __init__(self, storage: StorageInterface, repository: ApprovalRepository,
                 machine: ApprovalStateMachine, dispatcher: EventDispatcher,
                 settings: ApprovalEngineConfig,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.repository = repository
        self.machine = machine
        self.dispatcher = dispatcher
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def sweep(self) -> SweepReport:
        """Run one pass over all active requests"""
        report = SweepReport(started_at=self.clock())

        for request in self.repository.active_requests():
            report.requests_scanned += 1
            events: List[EventPayload] = []
            try:
                self._sweep_request(request.id, report, events)
            except Exception as e:
                logger.exception("Sweep failed for request %s", request.id)
                report.failures.append({
                    'request_id': request.id,
                    'tenant_id': request.tenant_id,
                    'error': str(e),
                    'error_type': type(e).__name__,
                })
                continue
            self.dispatcher.publish_all(events)

        report.finished_at = self.clock()
        logger.info(
            "Sweep finished: %d scanned, %d SLA updates, %d escalations, %d interventions, "
            "%d delegations reverted, %d expired, %d failures",
            report.requests_scanned, report.sla_updates, report.escalations,
            report.interventions, report.delegations_reverted, report.expired,
            len(report.failures)
        )
        return report

    def _sweep_request(self, request_id: str, report: SweepReport,
                       events: List[EventPayload]) -> None:
        # Counters are applied only after the transaction commits
        counts = {'sla': 0, 'escalated': 0, 'intervention': 0, 'reverted': 0, 'expired': 0}

        with self.storage.atomic():
            now = self.clock()
            request = self.repository.get_request(request_id)
            if request is None or request.is_terminal:
                return

            expire_after = self.settings.auto_expire_overdue_hours
            if (expire_after > 0 and request.deadline is not None
                    and now - request.deadline > timedelta(hours=expire_after)):
                self.machine.expire_request(request, events)
                counts['expired'] += 1
            else:
                status = compute_sla_status(request.deadline, now, self.settings.at_risk_window_hours)
                if status != request.sla_status:
                    self.machine.update_sla_status(request, status, events)
                    counts['sla'] += 1

                level = self.repository.get_level(request.id, request.current_level)
                if level is not None:
                    if (level.status == LevelStatus.DELEGATED and level.delegation_expiry is not None
                            and level.delegation_expiry < now):
                        self.machine.expire_delegation(request, level, events)
                        counts['reverted'] += 1
                    elif (level.status.is_open and level.due_date is not None
                          and level.due_date < now
                          and request.status != RequestStatus.INTERVENTION_REQUIRED):
                        if self.machine.escalate(request, level, events):
                            counts['escalated'] += 1
                        else:
                            counts['intervention'] += 1

        report.sla_updates += counts['sla']
        report.escalations += counts['escalated']
        report.interventions += counts['intervention']
        report.delegations_reverted += counts['reverted']
        report.expired += counts['expired']


class SweepScheduler:
    """Runs ``sweeper.sweep()`` on a daemon thread every ``interval_seconds``"""

    def __init__(self, sweeper: EscalationSweeper, interval_seconds: float):
        self.sweeper = sweeper
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[SweepReport] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="approval-sweeper", daemon=True)
        self._thread.start()
        logger.info("Sweep scheduler started (every %ss)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Sweep scheduler stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.last_report = self.sweeper.sweep()
            except Exception:
                logger.exception("Sweep pass failed")
            self._stop.wait(self.interval_seconds)
