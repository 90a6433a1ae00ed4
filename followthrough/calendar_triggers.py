"""
Calendar triggers: webhook intake, brief scheduling, lifecycle events.

Google Calendar push notifications carry no event data, only "something
changed on this calendar". A notification therefore:

    1. is matched to a registered channel (unknown channel, wrong resource
       id or wrong token -> ignored)
    2. skips the initial "sync" handshake Google sends when a channel opens
    3. re-syncs that user's calendar
    4. hands the events to the detector, which works out what changed

Briefs are scheduled brief_lead_minutes before the meeting as one-shot
scheduler jobs. When that moment has already passed the brief is requested
immediately. Requesting a brief emits BRIEF_REQUESTED; the workflow engine
is the subscriber that actually runs it.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel

from followthrough import events as topics
from followthrough.config import DetectionConfig
from followthrough.events import EventBus
from followthrough.models import CalendarEvent, utcnow

logger = logging.getLogger(__name__)


class WebhookRegistration(BaseModel):
    channel_id: str
    user_id: str
    calendar_id: str = "primary"
    resource_id: Optional[str] = None
    token: str = ""
    expiration: Optional[str] = None
    created_at: datetime


class ScheduledBrief(BaseModel):
    event_id: str
    user_id: str
    title: str
    run_at: datetime
    job_id: str


class CalendarTriggerService:
    """
    Usage:
        triggers = CalendarTriggerService(config.detection, bus, scheduler, sync)
        triggers.set_detector(detector)
        triggers.register_webhook("me", address="https://example.com/webhooks/google-calendar",
                                  calendar_client=client)
    """

    def __init__(
        self,
        config: DetectionConfig,
        bus: EventBus,
        scheduler,
        sync,
        webhook_token: str = "",
    ):
        self.config = config
        self.bus = bus
        self.scheduler = scheduler
        self.sync = sync
        self.webhook_token = webhook_token
        self.detector = None
        self._webhooks: Dict[str, WebhookRegistration] = {}
        self._scheduled_briefs: Dict[str, ScheduledBrief] = {}

    def set_detector(self, detector) -> None:
        self.detector = detector

    # ── Webhooks ───────────────────────────────────────────────

    def register_webhook(
        self,
        user_id: str,
        calendar_id: str = "primary",
        address: Optional[str] = None,
        calendar_client=None,
    ) -> WebhookRegistration:
        """
        Register a notification channel for a user's calendar. With an
        address and a client, the channel is also opened on Google's side.
        """
        channel_id = f"followthrough-{uuid.uuid4()}"
        registration = WebhookRegistration(
            channel_id=channel_id,
            user_id=user_id,
            calendar_id=calendar_id,
            token=self.webhook_token,
            created_at=utcnow(),
        )

        if address and calendar_client is not None:
            channel = calendar_client.watch_events(channel_id, address, self.webhook_token, calendar_id)
            registration.resource_id = channel.get("resourceId")
            registration.expiration = channel.get("expiration")

        self._webhooks[channel_id] = registration
        logger.info("Registered webhook channel %s for %s/%s", channel_id, user_id, calendar_id)
        return registration

    def unregister_webhook(self, channel_id: str, calendar_client=None) -> bool:
        """Forget a channel and, if it was opened on Google's side, stop it."""
        registration = self._webhooks.pop(channel_id, None)
        if registration is None:
            return False
        if registration.resource_id and calendar_client is not None:
            calendar_client.stop_channel(channel_id, registration.resource_id)
        logger.info("Unregistered webhook channel %s", channel_id)
        return True

    def get_webhooks(self) -> List[WebhookRegistration]:
        return list(self._webhooks.values())

    def handle_google_notification(
        self,
        channel_id: str,
        resource_id: Optional[str],
        resource_state: str,
        token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Process one push notification.

        Returns:
            True if the calendar was re-synced and changes were processed
        """
        registration = self._webhooks.get(channel_id)
        if registration is None:
            logger.warning("Notification for unknown channel %s ignored", channel_id)
            return False
        if registration.resource_id and resource_id != registration.resource_id:
            logger.warning("Notification resource mismatch on channel %s ignored", channel_id)
            return False
        if registration.token and token != registration.token:
            logger.warning("Notification with bad token on channel %s ignored", channel_id)
            return False
        if resource_state == "sync":
            logger.info("Channel %s handshake received", channel_id)
            return False

        events = self.sync.sync_user_calendar(registration.user_id, now)
        if self.detector is not None:
            self.detector.process_event_changes(registration.user_id, events, now)
        return True

    # ── Brief scheduling ───────────────────────────────────────

    def schedule_pre_meeting_brief(
        self, user_id: str, event: CalendarEvent, now: Optional[datetime] = None
    ) -> Optional[ScheduledBrief]:
        """
        Schedule the brief for brief_lead_minutes before the meeting, or
        request it right away if that time has passed.

        Returns:
            The scheduled entry, or None when the brief was requested now
        """
        now = now or utcnow()
        run_at = event.start_time - timedelta(minutes=self.config.brief_lead_minutes)
        self.cancel_scheduled_brief(event.event_id)

        if run_at <= now:
            self.request_brief(user_id, event)
            return None

        job_id = f"brief-{event.event_id}"
        self.scheduler.add_date_job(
            self._fire_scheduled_brief,
            run_at=run_at,
            job_id=job_id,
            args=[user_id, event],
            name=f"Brief: {event.title}",
        )
        scheduled = ScheduledBrief(
            event_id=event.event_id, user_id=user_id, title=event.title, run_at=run_at, job_id=job_id,
        )
        self._scheduled_briefs[event.event_id] = scheduled
        logger.info("Brief for '%s' scheduled at %s", event.title, run_at.isoformat())
        return scheduled

    def _fire_scheduled_brief(self, user_id: str, event: CalendarEvent) -> None:
        self._scheduled_briefs.pop(event.event_id, None)
        self.request_brief(user_id, event)

    def request_brief(self, user_id: str, event: CalendarEvent, last_minute: bool = False) -> None:
        logger.info("Requesting %sbrief for '%s'", "last-minute " if last_minute else "", event.title)
        self.bus.emit(topics.BRIEF_REQUESTED, {
            "user_id": user_id,
            "event_id": event.event_id,
            "event": event,
            "last_minute": last_minute,
        })

    def cancel_scheduled_brief(self, event_id: str) -> bool:
        scheduled = self._scheduled_briefs.pop(event_id, None)
        if scheduled is None:
            return False
        self.scheduler.cancel_job(scheduled.job_id)
        logger.info("Cancelled scheduled brief for '%s'", scheduled.title)
        return True

    def has_scheduled_brief(self, event_id: str) -> bool:
        return event_id in self._scheduled_briefs

    def get_scheduled_briefs(self, user_id: Optional[str] = None) -> List[ScheduledBrief]:
        briefs = [b for b in self._scheduled_briefs.values() if user_id is None or b.user_id == user_id]
        return sorted(briefs, key=lambda b: b.run_at)

    # ── Lifecycle events ───────────────────────────────────────

    def handle_meeting_started(self, user_id: str, event: CalendarEvent) -> None:
        self.cancel_scheduled_brief(event.event_id)
        logger.info("Meeting started: '%s'", event.title)
        self.bus.emit(topics.MEETING_STARTED, {"user_id": user_id, "event_id": event.event_id, "event": event})

    def handle_meeting_ended(self, user_id: str, event: CalendarEvent) -> None:
        logger.info("Meeting ended: '%s'", event.title)
        self.bus.emit(topics.MEETING_ENDED, {"user_id": user_id, "event_id": event.event_id, "event": event})

    def handle_transcript_available(
        self, user_id: str, event_id: str, transcript: str, event: Optional[CalendarEvent] = None
    ) -> None:
        """External push of a finished transcript (e.g. from an integration)."""
        event = event or self.sync.find_event(user_id, event_id)
        self.bus.emit(topics.TRANSCRIPT_AVAILABLE, {
            "user_id": user_id,
            "event_id": event_id,
            "event": event,
            "transcript": transcript,
        })
