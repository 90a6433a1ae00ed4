"""Tests for change detection and meeting lifecycle detection."""

import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from followthrough import events as topics
from followthrough.config import DetectionConfig
from followthrough.event_detector import EventChange, MeetingEventDetector, MeetingPhase
from followthrough.events import EventBus
from followthrough.models import EventStatus


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def triggers():
    triggers = MagicMock()
    triggers.has_scheduled_brief.return_value = False
    return triggers


@pytest.fixture
def detector(bus, triggers):
    return MeetingEventDetector(DetectionConfig(), bus, triggers)


def _topics(bus):
    return [e["topic"] for e in reversed(bus.recent())]


class TestChangeDetection:
    def test_first_sighting_is_created(self, detector, triggers, bus, make_event, now):
        event = make_event(updated=now)
        changes = detector.process_event_changes("me", [event], now)
        assert changes == {"evt-1": EventChange.CREATED}
        triggers.schedule_pre_meeting_brief.assert_called_once_with("me", event, now)
        assert topics.EVENT_CREATED in _topics(bus)

    def test_same_version_is_debounced(self, detector, triggers, make_event, now):
        event = make_event(updated=now)
        detector.process_event_changes("me", [event], now)
        changes = detector.process_event_changes("me", [event], now + timedelta(seconds=5))
        assert changes == {"evt-1": EventChange.UNCHANGED}
        assert triggers.schedule_pre_meeting_brief.call_count == 1

    def test_newer_version_is_updated(self, detector, triggers, bus, make_event, now):
        detector.process_event_changes("me", [make_event(updated=now)], now)
        moved = make_event(updated=now + timedelta(minutes=1), starts_in=timedelta(hours=3))
        changes = detector.process_event_changes("me", [moved], now + timedelta(minutes=1))
        assert changes == {"evt-1": EventChange.UPDATED}
        assert triggers.schedule_pre_meeting_brief.call_count == 2
        assert topics.EVENT_UPDATED in _topics(bus)

    def test_no_brief_inside_lead_window(self, detector, triggers, make_event, now):
        detector.process_event_changes("me", [make_event(starts_in=timedelta(minutes=20))], now)
        triggers.schedule_pre_meeting_brief.assert_not_called()

    def test_update_into_lead_window_cancels_brief(self, detector, triggers, make_event, now):
        detector.process_event_changes("me", [make_event(updated=now)], now)
        moved = make_event(updated=now + timedelta(minutes=1), starts_in=timedelta(minutes=15))
        detector.process_event_changes("me", [moved], now + timedelta(minutes=1))
        triggers.cancel_scheduled_brief.assert_called_with("evt-1")

    def test_all_day_events_get_no_brief(self, detector, triggers, make_event, now):
        event = make_event(starts_in=timedelta(days=1), duration=timedelta(days=1), is_all_day=True)
        detector.process_event_changes("me", [event], now)
        triggers.schedule_pre_meeting_brief.assert_not_called()

    def test_cancelled_known_event_is_deleted(self, detector, triggers, bus, make_event, now):
        detector.process_event_changes("me", [make_event(updated=now)], now)
        cancelled = make_event(updated=now + timedelta(minutes=1), status=EventStatus.CANCELLED)
        changes = detector.process_event_changes("me", [cancelled], now + timedelta(minutes=1))
        assert changes == {"evt-1": EventChange.DELETED}
        triggers.cancel_scheduled_brief.assert_called_with("evt-1")
        assert topics.EVENT_DELETED in _topics(bus)
        assert detector.get_processing_stats()["processed_events"] == 0

    def test_cancelled_unknown_event_is_ignored(self, detector, triggers, make_event, now):
        cancelled = make_event(status=EventStatus.CANCELLED)
        assert detector.process_event_changes("me", [cancelled], now) == {"evt-1": EventChange.UNCHANGED}
        triggers.cancel_scheduled_brief.assert_not_called()

    def test_users_are_tracked_separately(self, detector, make_event, now):
        event = make_event(updated=now)
        detector.process_event_changes("me", [event], now)
        changes = detector.process_event_changes("colleague", [event], now)
        assert changes == {"evt-1": EventChange.CREATED}


class TestLifecycle:
    def test_starting_requests_last_minute_brief(self, detector, triggers, bus, make_event, now):
        event = make_event(starts_in=timedelta(minutes=4))
        result = detector.check_meeting_timings("me", [event], now)
        assert result == {"evt-1": MeetingPhase.STARTING}
        triggers.request_brief.assert_called_once_with("me", event, last_minute=True)
        assert topics.MEETING_STARTING in _topics(bus)

    def test_no_last_minute_brief_when_one_is_scheduled(self, detector, triggers, make_event, now):
        triggers.has_scheduled_brief.return_value = True
        detector.check_meeting_timings("me", [make_event(starts_in=timedelta(minutes=4))], now)
        triggers.request_brief.assert_not_called()

    def test_full_lifecycle_fires_each_transition_once(self, detector, triggers, make_event, now):
        event = make_event(starts_in=timedelta(minutes=4), duration=timedelta(minutes=30))

        assert detector.check_meeting_timings("me", [event], now) == {"evt-1": MeetingPhase.STARTING}
        assert detector.check_meeting_timings("me", [event], now + timedelta(minutes=1)) == {}
        assert detector.check_meeting_timings("me", [event], now + timedelta(minutes=5)) == {
            "evt-1": MeetingPhase.ACTIVE
        }
        assert detector.check_meeting_timings("me", [event], now + timedelta(minutes=20)) == {}
        assert detector.check_meeting_timings("me", [event], now + timedelta(minutes=35)) == {
            "evt-1": MeetingPhase.ENDED
        }
        assert detector.check_meeting_timings("me", [event], now + timedelta(minutes=36)) == {}

        triggers.handle_meeting_started.assert_called_once_with("me", event)
        triggers.handle_meeting_ended.assert_called_once_with("me", event)
        assert detector.get_meeting_state("me", "evt-1") == MeetingPhase.ENDED

    def test_first_seen_mid_meeting_is_active(self, detector, triggers, make_event, now):
        event = make_event(starts_in=timedelta(minutes=-10))
        assert detector.check_meeting_timings("me", [event], now) == {"evt-1": MeetingPhase.ACTIVE}
        triggers.request_brief.assert_not_called()

    def test_already_finished_meeting_is_ignored(self, detector, triggers, make_event, now):
        event = make_event(starts_in=timedelta(hours=-2))
        assert detector.check_meeting_timings("me", [event], now) == {}
        triggers.handle_meeting_ended.assert_not_called()

    def test_poll_gap_still_detects_end(self, detector, triggers, make_event, now):
        event = make_event(starts_in=timedelta(minutes=-5), duration=timedelta(minutes=15))
        detector.check_meeting_timings("me", [event], now)
        result = detector.check_meeting_timings("me", [event], now + timedelta(hours=1))
        assert result == {"evt-1": MeetingPhase.ENDED}

    def test_processing_stats(self, detector, make_event, now):
        detector.process_event_changes("me", [make_event(starts_in=timedelta(minutes=-5))], now)
        stats = detector.get_processing_stats()
        assert stats == {"processed_events": 1, "tracked_meetings": 1, "active_meetings": 1}


class TestPeriodicCheck:
    def test_checks_every_registered_user(self, bus, triggers, make_event, now):
        sync = MagicMock()
        sync.registered_users.return_value = ["me"]
        sync.get_events_around.return_value = [make_event(starts_in=timedelta(minutes=3))]
        detector = MeetingEventDetector(DetectionConfig(), bus, triggers, sync)

        detector.perform_periodic_check(now)
        sync.get_events_around.assert_called_once_with("me", 10, now)
        assert detector.get_meeting_state("me", "evt-1") == MeetingPhase.STARTING

    def test_sync_failure_does_not_raise(self, bus, triggers, now):
        sync = MagicMock()
        sync.registered_users.return_value = ["me"]
        sync.get_events_around.side_effect = RuntimeError("offline")
        detector = MeetingEventDetector(DetectionConfig(), bus, triggers, sync)
        detector.perform_periodic_check(now)

    def test_forgets_meetings_a_day_after_they_end(self, bus, triggers, make_event, now):
        sync = MagicMock()
        sync.registered_users.return_value = ["me"]
        sync.get_events_around.return_value = []
        detector = MeetingEventDetector(DetectionConfig(), bus, triggers, sync)
        detector.process_event_changes("me", [make_event(starts_in=timedelta(minutes=-5))], now)

        detector.perform_periodic_check(now + timedelta(days=2))
        assert detector.get_meeting_state("me", "evt-1") is None
        assert detector.get_processing_stats()["processed_events"] == 0
