"""
Tests for the notification intent outbox
"""

import pytest
from datetime import datetime, timezone

from approval_engine.events import EngineEvent
from approval_engine.notifications import (
    NotificationOutbox, NotificationReason, DeliveryStatus
)


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def outbox(storage):
    return NotificationOutbox(storage)


class TestNotificationOutbox:

    def test_one_intent_per_distinct_recipient(self, outbox):
        created = outbox.request("school-1", "req-1", ["b", "a", "b"], NotificationReason.PENDING, NOW,
                                 level_number=1)
        assert [n.recipient_id for n in created] == ["a", "b"]
        assert all(n.delivery_status == DeliveryStatus.PENDING for n in created)
        assert len(outbox.for_request("req-1")) == 2

    def test_events_collected(self, outbox):
        events = []
        outbox.request("school-1", "req-1", ["a"], NotificationReason.REMINDER, NOW, events=events)
        [event] = events
        assert event.event_type == EngineEvent.NOTIFICATION_REQUESTED
        assert event.data["reason"] == "reminder"
        assert event.data["recipient_id"] == "a"

    def test_no_recipients(self, outbox):
        assert outbox.request("school-1", "req-1", [], NotificationReason.ESCALATED, NOW) == []

    def test_delivery_status_updates(self, outbox):
        [notification] = outbox.request("school-1", "req-1", ["a"], NotificationReason.APPROVED, NOW)
        assert outbox.pending_delivery("school-1") == [notification]

        assert outbox.mark_delivery(notification.id, DeliveryStatus.SENT, NOW)
        assert outbox.pending_delivery() == []
        assert outbox.for_request("req-1")[0].delivery_status == DeliveryStatus.SENT
        assert not outbox.mark_delivery("missing", DeliveryStatus.SENT, NOW)
