"""
Per-user calendar sync and the event cache the detector reads from.

A sync pulls a window of events (one hour back, lookahead_hours ahead,
including cancelled ones) and replaces the user's cached copy. Webhook
pings and the daily cron job trigger syncs; the 60-second detection poll
only reads the cache, refreshing it when it is older than the freshness
window.

Sync status per user:
    active  last sync succeeded
    paused  user paused syncing; cache is kept but never refreshed
    error   last sync failed; the previous cache is kept
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel

from followthrough.models import CalendarEvent, EventStatus, utcnow

logger = logging.getLogger(__name__)


class SyncStatus(BaseModel):
    user_id: str
    status: str = "active"  # active, paused, error
    last_sync_at: Optional[datetime] = None
    events_synced: int = 0
    error: Optional[str] = None


class CalendarSyncService:
    """
    Usage:
        sync = CalendarSyncService()
        sync.register_user("me", calendar_client)
        events = sync.sync_user_calendar("me")
        soon = sync.get_events_happening_soon("me", hours=2)
    """

    def __init__(self, lookahead_hours: int = 24, freshness_minutes: int = 60):
        self.lookahead = timedelta(hours=lookahead_hours)
        self.freshness = timedelta(minutes=freshness_minutes)
        self._clients: Dict[str, object] = {}
        self._status: Dict[str, SyncStatus] = {}
        self._events: Dict[str, List[CalendarEvent]] = {}
        self._lock = threading.Lock()

    def register_user(self, user_id: str, calendar_client) -> None:
        self._clients[user_id] = calendar_client
        self._status.setdefault(user_id, SyncStatus(user_id=user_id))

    def registered_users(self) -> List[str]:
        return list(self._clients.keys())

    def sync_user_calendar(self, user_id: str, now: Optional[datetime] = None) -> List[CalendarEvent]:
        """
        Fetch the user's events and refresh the cache.

        Returns:
            The freshly synced events, or the previous cache if the sync
            failed or is paused
        """
        now = now or utcnow()
        client = self._clients.get(user_id)
        if client is None:
            raise KeyError(f"No calendar registered for user '{user_id}'")

        status = self._status[user_id]
        if status.status == "paused":
            logger.info("Sync paused for %s, using cached events", user_id)
            return self.get_cached_events(user_id)

        try:
            events = client.fetch_events(now - timedelta(hours=1), now + self.lookahead, include_cancelled=True)
        except Exception as e:
            logger.error("Calendar sync failed for %s: %s", user_id, e)
            status.status = "error"
            status.error = str(e)
            return self.get_cached_events(user_id)

        with self._lock:
            events = events + self._cancelled_from_cache(user_id, client.cancelled_ids, events)
            self._events[user_id] = events
        status.status = "active"
        status.error = None
        status.last_sync_at = now
        status.events_synced = len(events)
        logger.info("Synced %d events for %s", len(events), user_id)
        return events

    def _cancelled_from_cache(
        self, user_id: str, cancelled_ids: List[str], events: List[CalendarEvent]
    ) -> List[CalendarEvent]:
        """
        Cancelled instances without start/end cannot be parsed. Rebuild them
        from the cached copy so the deletion still reaches the detector.
        """
        seen = {e.event_id for e in events}
        cached = {e.event_id: e for e in self._events.get(user_id, [])}
        rebuilt = []
        for event_id in cancelled_ids:
            if event_id in cached and event_id not in seen:
                rebuilt.append(cached[event_id].model_copy(update={"status": EventStatus.CANCELLED}))
        return rebuilt

    def get_sync_status(self, user_id: str) -> Optional[SyncStatus]:
        return self._status.get(user_id)

    def pause_sync(self, user_id: str) -> None:
        if user_id in self._status:
            self._status[user_id].status = "paused"

    def resume_sync(self, user_id: str) -> None:
        if user_id in self._status and self._status[user_id].status == "paused":
            self._status[user_id].status = "active"

    def is_calendar_synced(self, user_id: str, now: Optional[datetime] = None) -> bool:
        status = self._status.get(user_id)
        if status is None or status.last_sync_at is None or status.status != "active":
            return False
        return (now or utcnow()) - status.last_sync_at <= self.freshness

    def ensure_calendar_synced(self, user_id: str, now: Optional[datetime] = None) -> List[CalendarEvent]:
        if not self.is_calendar_synced(user_id, now):
            return self.sync_user_calendar(user_id, now)
        return self.get_cached_events(user_id)

    def get_cached_events(self, user_id: str) -> List[CalendarEvent]:
        with self._lock:
            return list(self._events.get(user_id, []))

    def find_event(self, user_id: str, event_id: str) -> Optional[CalendarEvent]:
        for event in self.get_cached_events(user_id):
            if event.event_id == event_id:
                return event
        return None

    def get_events_happening_soon(
        self, user_id: str, hours: int = 2, now: Optional[datetime] = None
    ) -> List[CalendarEvent]:
        now = now or utcnow()
        horizon = now + timedelta(hours=hours)
        return [
            e for e in self.ensure_calendar_synced(user_id, now)
            if not e.is_cancelled and now <= e.start_time <= horizon
        ]

    def get_next_upcoming_event(self, user_id: str, now: Optional[datetime] = None) -> Optional[CalendarEvent]:
        now = now or utcnow()
        upcoming = [
            e for e in self.ensure_calendar_synced(user_id, now)
            if not e.is_cancelled and not e.is_all_day and e.start_time > now
        ]
        return min(upcoming, key=lambda e: e.start_time, default=None)

    def get_events_around(
        self, user_id: str, minutes: int, now: Optional[datetime] = None
    ) -> List[CalendarEvent]:
        """Events starting soon or ended recently, within `minutes` of now."""
        now = now or utcnow()
        window = timedelta(minutes=minutes)
        return [
            e for e in self.ensure_calendar_synced(user_id, now)
            if not e.is_cancelled and not e.is_all_day
            and (now - window <= e.start_time <= now + window
                 or now - window <= e.end_time <= now + window
                 or e.start_time <= now <= e.end_time)
        ]
