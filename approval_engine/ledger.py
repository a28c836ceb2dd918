"""
Decision Ledger Module

Append-only, hash-chained history of every approval transition. Each request
has its own chain: an entry stores the SHA-256 of its predecessor so any
edit or deletion of a stored row is detectable. Entries are never updated.
"""

import hashlib
import json
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class DecisionType(Enum):
    """Kinds of ledger entries"""
    CREATED = "created"
    AUTO_APPROVED = "auto_approved"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELEGATED = "delegated"
    DELEGATION_EXPIRED = "delegation_expired"
    SKIPPED = "skipped"
    ESCALATED = "escalated"
    INTERVENTION_REQUIRED = "intervention_required"
    SLA_STATUS_CHANGED = "sla_status_changed"
    CANCELLED = "cancelled"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"
    RULE_EXCEPTION_GRANTED = "rule_exception_granted"
    EMERGENCY_OVERRIDE = "emergency_override"


def _serialize(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass
class DecisionHistoryEntry(StorageRecord):
    """Immutable ledger row for one transition"""
    tenant_id: str
    request_id: str
    sequence: int
    decision_type: DecisionType
    actor_id: str
    decision_level: Optional[int] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    rationale: Optional[str] = None
    decision_data: Dict[str, Any] = field(default_factory=dict)
    chain_position: Optional[int] = None
    total_chain_length: Optional[int] = None
    previous_hash: str = ""
    current_hash: str = ""

    def __post_init__(self):
        self.decision_data = _serialize(self.decision_data or {})

    @property
    def chain_completion_percentage(self) -> Optional[Decimal]:
        if not self.total_chain_length or self.chain_position is None:
            return None
        pct = Decimal(self.chain_position) * 100 / Decimal(self.total_chain_length)
        return pct.quantize(Decimal("0.01"))

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'tenant_id': self.tenant_id,
            'request_id': self.request_id,
            'sequence': self.sequence,
            'decision_type': self.decision_type.value,
            'actor_id': self.actor_id,
            'decision_level': self.decision_level,
            'previous_status': self.previous_status,
            'new_status': self.new_status,
            'rationale': self.rationale,
            'decision_data': self.decision_data,
            'previous_hash': self.previous_hash,
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['decision_type'] = self.decision_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DecisionHistoryEntry':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['decision_type'] = DecisionType(data['decision_type'])
        return cls(**data)


class DecisionLedger:
    """
    Append-only decision history.

    ``append`` must be called inside the same ``storage.atomic()`` block as
    the state change it records; a failed write aborts the whole transition.
    """

    TABLE = "approval_decision_history"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def append(
        self,
        tenant_id: str,
        request_id: str,
        decision_type: DecisionType,
        actor_id: str,
        at: datetime,
        decision_level: Optional[int] = None,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        rationale: Optional[str] = None,
        decision_data: Optional[Dict[str, Any]] = None,
        total_chain_length: Optional[int] = None
    ) -> DecisionHistoryEntry:
        """
        Append one entry to the request's chain.

        Args:
            tenant_id: Owning tenant
            request_id: Approval request the entry belongs to
            decision_type: What happened
            actor_id: Who did it (the system actor for sweeper transitions)
            at: Timestamp of the transition
            decision_level: Level number the transition applied to
            previous_status: Request status before the transition
            new_status: Request status after the transition
            rationale: Free-text reason supplied by the actor
            decision_data: Extra structured context
            total_chain_length: Number of levels in the frozen approval path

        Returns:
            The stored entry
        """
        history = self.history(request_id)
        previous = history[-1] if history else None

        entry = DecisionHistoryEntry(
            id=str(uuid.uuid4()),
            created_at=at,
            updated_at=at,
            tenant_id=tenant_id,
            request_id=request_id,
            sequence=(previous.sequence + 1) if previous else 1,
            decision_type=decision_type,
            actor_id=actor_id,
            decision_level=decision_level,
            previous_status=previous_status,
            new_status=new_status,
            rationale=rationale,
            decision_data=decision_data or {},
            chain_position=decision_level,
            total_chain_length=total_chain_length,
            previous_hash=previous.current_hash if previous else "",
        )
        entry.current_hash = entry.calculate_hash()

        if not self.storage.insert(self.TABLE, entry.id, entry.to_dict()):
            raise RuntimeError(f"Ledger entry {entry.id} already exists")

        return entry

    def history(self, request_id: str) -> List[DecisionHistoryEntry]:
        """All entries for a request in append order"""
        rows = self.storage.find(self.TABLE, {'request_id': request_id})
        entries = [DecisionHistoryEntry.from_dict(row) for row in rows]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def count(self, request_id: str, decision_type: Optional[DecisionType] = None) -> int:
        entries = self.history(request_id)
        if decision_type:
            entries = [e for e in entries if e.decision_type == decision_type]
        return len(entries)

    def verify_integrity(self, request_id: str) -> Dict[str, Any]:
        """
        Verify the hash chain of one request

        Returns:
            Dictionary with ``valid``, ``total_entries``, ``hash_errors`` and
            ``chain_breaks``
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        entries = self.history(request_id)
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash,
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash,
                })
            previous_hash = entry.current_hash

        # A gap in sequence numbers means a row was removed
        for position, entry in enumerate(entries):
            if entry.sequence != position + 1:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_sequence': position + 1,
                    'actual_sequence': entry.sequence,
                })
                break

        return result
