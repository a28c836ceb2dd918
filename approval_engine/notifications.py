"""
Notification Intent Module

The engine never delivers notifications. It records that one was requested,
in the ``approval_notifications`` collection with ``delivery_status``
``pending``, and publishes a ``notification_requested`` event for an external
delivery subsystem to consume.
"""

from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Any
from enum import Enum
import uuid

from .events import EngineEvent, EventPayload
from .storage import StorageInterface, StorageRecord


class NotificationReason(Enum):
    """Why a recipient is being notified"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    REMINDER = "reminder"


class DeliveryStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class NotificationRequest(StorageRecord):
    """One notification intent for one recipient"""
    tenant_id: str
    request_id: str
    recipient_id: str
    reason: NotificationReason
    level_number: Optional[int] = None
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['reason'] = self.reason.value
        result['delivery_status'] = self.delivery_status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationRequest':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['reason'] = NotificationReason(data['reason'])
        data['delivery_status'] = DeliveryStatus(data['delivery_status'])
        return cls(**data)


class NotificationOutbox:
    """Durable record of notification intents"""

    TABLE = "approval_notifications"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def request(self, tenant_id: str, request_id: str, recipients: Iterable[str],
                reason: NotificationReason, at: datetime,
                level_number: Optional[int] = None,
                metadata: Optional[Dict[str, Any]] = None,
                events: Optional[List[EventPayload]] = None) -> List[NotificationRequest]:
        """
        Record one intent per distinct recipient, in sorted recipient order.

        When ``events`` is given, a ``notification_requested`` payload is
        appended for each intent so the caller can publish after commit.
        """
        created = []
        for recipient_id in sorted(set(recipients)):
            notification = NotificationRequest(
                id=str(uuid.uuid4()),
                created_at=at,
                updated_at=at,
                tenant_id=tenant_id,
                request_id=request_id,
                recipient_id=recipient_id,
                reason=reason,
                level_number=level_number,
                metadata=dict(metadata or {}),
            )
            self.storage.insert(self.TABLE, notification.id, notification.to_dict())
            if events is not None:
                events.append(EventPayload(
                    event_type=EngineEvent.NOTIFICATION_REQUESTED,
                    tenant_id=tenant_id,
                    request_id=request_id,
                    data={
                        'notification_id': notification.id,
                        'recipient_id': recipient_id,
                        'reason': reason.value,
                        'level_number': level_number,
                    },
                    timestamp=at,
                ))
            created.append(notification)
        return created

    def for_request(self, request_id: str) -> List[NotificationRequest]:
        rows = self.storage.find(self.TABLE, {'request_id': request_id})
        return sorted((NotificationRequest.from_dict(row) for row in rows), key=lambda n: n.created_at)

    def pending_delivery(self, tenant_id: Optional[str] = None) -> List[NotificationRequest]:
        filters: Dict[str, Any] = {'delivery_status': DeliveryStatus.PENDING.value}
        if tenant_id:
            filters['tenant_id'] = tenant_id
        rows = self.storage.find(self.TABLE, filters)
        return sorted((NotificationRequest.from_dict(row) for row in rows), key=lambda n: n.created_at)

    def mark_delivery(self, notification_id: str, status: DeliveryStatus, at: datetime) -> bool:
        """Delivery subsystems report back through here"""
        data = self.storage.load(self.TABLE, notification_id)
        if not data:
            return False
        notification = NotificationRequest.from_dict(data)
        notification.delivery_status = status
        notification.updated_at = at
        self.storage.save(self.TABLE, notification.id, notification.to_dict())
        return True
