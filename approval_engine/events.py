"""
Event System Module

Publish/subscribe dispatcher for the engine's outbound events. Handlers are
isolated: an exception in one is logged and never reaches the operation that
published the event. The engine publishes only after the transaction that
produced an event has committed.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class EngineEvent(Enum):
    """Outbound events emitted by the approval engine"""
    DECISION_COMPLETED = "approval.decision_completed"
    NOTIFICATION_REQUESTED = "approval.notification_requested"
    LEVEL_DECIDED = "approval.level_decided"
    ESCALATED = "approval.escalated"


@dataclass
class EventPayload:
    """Payload for engine events"""
    event_type: EngineEvent
    tenant_id: str
    request_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type.value,
            'tenant_id': self.tenant_id,
            'request_id': self.request_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        return cls(
            event_type=EngineEvent(data['event_type']),
            tenant_id=data['tenant_id'],
            request_id=data['request_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher"""

    def __init__(self):
        self._handlers: Dict[EngineEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("approval_engine.events")

    def subscribe(self, event_type: EngineEvent, handler: Callable) -> None:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug("Subscribed handler %s to %s", _handler_name(handler), event_type.value)

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to every event type"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: EngineEvent, handler: Callable) -> None:
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(
                    "Handler %s was not subscribed to %s", _handler_name(handler), event_type.value
                )

    def unsubscribe_all(self, handler: Callable) -> None:
        with self._lock:
            try:
                self._global_handlers.remove(handler)
            except ValueError:
                self.logger.warning("Global handler %s was not subscribed", _handler_name(handler))

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug("Publishing %s for request %s", event.event_type.value, event.request_id)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                self.logger.exception(
                    "Error in event handler %s for %s", _handler_name(handler), event.event_type.value
                )

    def publish_all(self, events: List[EventPayload]) -> None:
        for event in events:
            self.publish(event)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[EngineEvent] = None) -> int:
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)
