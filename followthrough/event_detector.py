"""
Meeting event detection: what changed, and where is each meeting now.

Change detection (debounced)
    Each (user, event) pair remembers the event's own `updated` stamp from
    the last time it was processed. A notification storm that re-delivers
    the same event version is therefore a no-op:

        never seen             -> created  (schedule brief)
        updated stamp is newer -> updated  (reschedule brief)
        status cancelled       -> deleted  (cancel brief, forget it)
        otherwise              -> unchanged

Lifecycle detection
    Each tracked meeting moves forward through

        scheduled -> starting -> active -> ended

    starting: within starting_window_minutes of the start. If no brief is
              scheduled for it, a last-minute brief is requested.
    active:   start time reached (also when first seen mid-meeting)
    ended:    end time reached after the meeting was starting/active

    Every transition fires once. Meetings that already ended before they
    were ever tracked are ignored.
"""

import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from followthrough import events as topics
from followthrough.config import DetectionConfig
from followthrough.events import EventBus
from followthrough.models import CalendarEvent, utcnow

logger = logging.getLogger(__name__)

FORGET_AFTER = timedelta(days=1)


class MeetingPhase(str, Enum):
    SCHEDULED = "scheduled"
    STARTING = "starting"
    ACTIVE = "active"
    ENDED = "ended"


class EventChange(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


class MeetingEventDetector:
    """
    Usage:
        detector = MeetingEventDetector(config.detection, bus, triggers, sync)
        changes = detector.process_event_changes("me", events)
        detector.perform_periodic_check()   # every poll_interval_seconds
    """

    def __init__(self, config: DetectionConfig, bus: EventBus, triggers, sync=None):
        self.config = config
        self.bus = bus
        self.triggers = triggers
        self.sync = sync
        self._processed: Dict[str, datetime] = {}
        self._phases: Dict[str, MeetingPhase] = {}
        self._end_times: Dict[str, datetime] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _key(user_id: str, event_id: str) -> str:
        return f"{user_id}-{event_id}"

    # ── Change detection ───────────────────────────────────────

    def process_event_changes(
        self, user_id: str, events: List[CalendarEvent], now: Optional[datetime] = None
    ) -> Dict[str, EventChange]:
        now = now or utcnow()
        changes = {}

        with self._lock:
            for event in events:
                changes[event.event_id] = self._classify_and_handle(user_id, event, now)
            live = [e for e in events if not e.is_cancelled]
            self.check_meeting_timings(user_id, live, now)

        counts = {c.value: sum(1 for v in changes.values() if v == c) for c in EventChange}
        logger.info(
            "Processed %d events for %s: %d created, %d updated, %d deleted",
            len(events), user_id, counts["created"], counts["updated"], counts["deleted"],
        )
        return changes

    def _classify_and_handle(self, user_id: str, event: CalendarEvent, now: datetime) -> EventChange:
        key = self._key(user_id, event.event_id)
        stamp = event.updated or now

        if event.is_cancelled:
            if key not in self._processed and key not in self._phases:
                return EventChange.UNCHANGED
            self._handle_deleted(user_id, event, key)
            return EventChange.DELETED

        last = self._processed.get(key)
        if last is None:
            self._processed[key] = stamp
            self._handle_created_or_updated(user_id, event, now, topics.EVENT_CREATED)
            return EventChange.CREATED

        if event.updated is not None and event.updated > last:
            self._processed[key] = stamp
            self._handle_created_or_updated(user_id, event, now, topics.EVENT_UPDATED)
            return EventChange.UPDATED

        return EventChange.UNCHANGED

    def _handle_created_or_updated(
        self, user_id: str, event: CalendarEvent, now: datetime, topic: str
    ) -> None:
        minutes_to_start = (event.start_time - now).total_seconds() / 60
        if not event.is_all_day and minutes_to_start > self.config.brief_lead_minutes:
            self.triggers.schedule_pre_meeting_brief(user_id, event, now)
        elif topic == topics.EVENT_UPDATED:
            # Moved inside the lead window: a stale brief job must not fire
            self.triggers.cancel_scheduled_brief(event.event_id)

        self.bus.emit(topic, {"user_id": user_id, "event_id": event.event_id, "event": event})

    def _handle_deleted(self, user_id: str, event: CalendarEvent, key: str) -> None:
        self.triggers.cancel_scheduled_brief(event.event_id)
        self._processed.pop(key, None)
        self._phases.pop(key, None)
        self._end_times.pop(key, None)
        logger.info("Meeting '%s' was cancelled", event.title)
        self.bus.emit(topics.EVENT_DELETED, {"user_id": user_id, "event_id": event.event_id, "event": event})

    # ── Lifecycle detection ────────────────────────────────────

    def check_meeting_timings(
        self, user_id: str, events: List[CalendarEvent], now: Optional[datetime] = None
    ) -> Dict[str, MeetingPhase]:
        """
        Advance each meeting's phase based on the clock.

        Returns:
            The phase of every meeting that changed phase in this call
        """
        now = now or utcnow()
        transitions = {}

        with self._lock:
            for event in events:
                if event.is_cancelled or event.is_all_day:
                    continue
                new_phase = self._advance(user_id, event, now)
                if new_phase is not None:
                    transitions[event.event_id] = new_phase
        return transitions

    def _advance(self, user_id: str, event: CalendarEvent, now: datetime) -> Optional[MeetingPhase]:
        key = self._key(user_id, event.event_id)
        phase = self._phases.get(key, MeetingPhase.SCHEDULED)
        self._end_times[key] = event.end_time
        start_window = timedelta(minutes=self.config.starting_window_minutes)
        changed = None

        if phase == MeetingPhase.SCHEDULED and now < event.start_time <= now + start_window:
            phase = changed = MeetingPhase.STARTING
            if not self.triggers.has_scheduled_brief(event.event_id):
                self.triggers.request_brief(user_id, event, last_minute=True)
            self.bus.emit(topics.MEETING_STARTING, {
                "user_id": user_id, "event_id": event.event_id, "event": event,
            })

        if phase in (MeetingPhase.SCHEDULED, MeetingPhase.STARTING) and event.start_time <= now < event.end_time:
            phase = changed = MeetingPhase.ACTIVE
            self.triggers.handle_meeting_started(user_id, event)

        if phase in (MeetingPhase.STARTING, MeetingPhase.ACTIVE) and now >= event.end_time:
            phase = changed = MeetingPhase.ENDED
            self.triggers.handle_meeting_ended(user_id, event)

        if changed is not None:
            self._phases[key] = phase
            logger.debug("Meeting '%s' is now %s", event.title, phase.value)
        return changed

    def perform_periodic_check(self, now: Optional[datetime] = None) -> None:
        """Scheduler entry point: check every registered user's meetings."""
        now = now or utcnow()
        if self.sync is None:
            return

        for user_id in self.sync.registered_users():
            try:
                events = self.sync.get_events_around(user_id, self.config.lookaround_minutes, now)
                self.check_meeting_timings(user_id, events, now)
            except Exception as e:
                logger.error("Periodic meeting check failed for %s: %s", user_id, e)
        self._forget_old(now)

    def _forget_old(self, now: datetime) -> None:
        with self._lock:
            expired = [k for k, end in self._end_times.items() if now - end > FORGET_AFTER]
            for key in expired:
                self._phases.pop(key, None)
                self._end_times.pop(key, None)
                self._processed.pop(key, None)
        if expired:
            logger.debug("Forgot %d finished meetings", len(expired))

    # ── Introspection ──────────────────────────────────────────

    def get_meeting_state(self, user_id: str, event_id: str) -> Optional[MeetingPhase]:
        return self._phases.get(self._key(user_id, event_id))

    def get_processing_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "processed_events": len(self._processed),
                "tracked_meetings": len(self._phases),
                "active_meetings": sum(1 for p in self._phases.values() if p == MeetingPhase.ACTIVE),
            }
