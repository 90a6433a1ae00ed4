"""Tests for per-user calendar sync and the event cache."""

import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from followthrough.calendar_sync import CalendarSyncService
from followthrough.config import DetectionConfig
from followthrough.event_detector import EventChange, MeetingEventDetector
from followthrough.events import EventBus
from followthrough.models import EventStatus


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def sync(client):
    sync = CalendarSyncService(lookahead_hours=24, freshness_minutes=60)
    sync.register_user("me", client)
    return sync


class TestSync:
    def test_sync_window_includes_cancelled(self, sync, client, make_event, now):
        client.fetch_events.return_value = [make_event()]
        events = sync.sync_user_calendar("me", now)

        assert len(events) == 1
        client.fetch_events.assert_called_once_with(
            now - timedelta(hours=1), now + timedelta(hours=24), include_cancelled=True,
        )
        status = sync.get_sync_status("me")
        assert status.status == "active"
        assert status.events_synced == 1
        assert status.last_sync_at == now

    def test_unknown_user(self, sync):
        with pytest.raises(KeyError):
            sync.sync_user_calendar("nobody")

    def test_failure_keeps_previous_cache(self, sync, client, make_event, now):
        client.fetch_events.return_value = [make_event()]
        sync.sync_user_calendar("me", now)
        client.fetch_events.side_effect = RuntimeError("quota")

        events = sync.sync_user_calendar("me", now + timedelta(minutes=5))
        assert [e.event_id for e in events] == ["evt-1"]
        assert sync.get_sync_status("me").status == "error"
        assert sync.get_sync_status("me").error == "quota"

    def test_paused_sync_uses_cache(self, sync, client, now):
        sync.pause_sync("me")
        assert sync.sync_user_calendar("me", now) == []
        client.fetch_events.assert_not_called()
        sync.resume_sync("me")
        assert sync.get_sync_status("me").status == "active"

    def test_ensure_synced_respects_freshness(self, sync, client, make_event, now):
        client.fetch_events.return_value = [make_event()]
        assert sync.is_calendar_synced("me", now) is False
        sync.ensure_calendar_synced("me", now)
        sync.ensure_calendar_synced("me", now + timedelta(minutes=30))
        assert sync.is_calendar_synced("me", now + timedelta(minutes=30)) is True
        assert client.fetch_events.call_count == 1
        sync.ensure_calendar_synced("me", now + timedelta(minutes=61))
        assert client.fetch_events.call_count == 2

    def test_find_event(self, sync, client, make_event, now):
        client.fetch_events.return_value = [make_event()]
        sync.sync_user_calendar("me", now)
        assert sync.find_event("me", "evt-1").title == "Roadmap Review"
        assert sync.find_event("me", "nope") is None


class TestQueries:
    @pytest.fixture
    def synced(self, sync, client, make_event, now):
        client.fetch_events.return_value = [
            make_event("soon", starts_in=timedelta(minutes=8)),
            make_event("now", starts_in=timedelta(minutes=-20), duration=timedelta(hours=1)),
            make_event("just-ended", starts_in=timedelta(minutes=-35), duration=timedelta(minutes=30)),
            make_event("later", starts_in=timedelta(hours=3)),
            make_event("gone", starts_in=timedelta(minutes=5), status=EventStatus.CANCELLED),
            make_event("holiday", starts_in=timedelta(minutes=-60), duration=timedelta(days=1), is_all_day=True),
        ]
        sync.sync_user_calendar("me", now)
        return sync

    def test_events_around(self, synced, now):
        ids = [e.event_id for e in synced.get_events_around("me", 10, now)]
        assert ids == ["soon", "now", "just-ended"]

    def test_events_happening_soon(self, synced, now):
        ids = [e.event_id for e in synced.get_events_happening_soon("me", hours=4, now=now)]
        assert ids == ["soon", "later"]

    def test_next_upcoming_event(self, synced, now):
        assert synced.get_next_upcoming_event("me", now).event_id == "soon"


class TestCancelledWithoutTimes:
    def test_rebuilt_from_cache(self, sync, client, make_event, now):
        client.fetch_events.return_value = [make_event()]
        client.cancelled_ids = []
        sync.sync_user_calendar("me", now)

        client.fetch_events.return_value = []
        client.cancelled_ids = ["evt-1", "never-seen"]
        events = sync.sync_user_calendar("me", now + timedelta(minutes=5))

        assert [(e.event_id, e.status) for e in events] == [("evt-1", EventStatus.CANCELLED)]
        assert sync.find_event("me", "evt-1").is_cancelled

    def test_deletion_reaches_detector(self, sync, client, make_event, now):
        detector = MeetingEventDetector(DetectionConfig(), EventBus(), MagicMock())
        client.fetch_events.return_value = [make_event()]
        client.cancelled_ids = []
        detector.process_event_changes("me", sync.sync_user_calendar("me", now), now)

        client.fetch_events.return_value = []
        client.cancelled_ids = ["evt-1"]
        later = now + timedelta(minutes=5)
        changes = detector.process_event_changes("me", sync.sync_user_calendar("me", later), later)

        assert changes == {"evt-1": EventChange.DELETED}
        detector.triggers.cancel_scheduled_brief.assert_called_once_with("evt-1")
