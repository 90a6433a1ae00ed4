"""
Google Calendar API client.

Covers everything the workflows need from Calendar:
- fetching events in a window (with cancelled events, so deletions can be
  detected)
- single-event lookup
- patching an event (brief delivery writes into the description)
- creating tentative follow-up meetings
- push-notification channels (events.watch / channels.stop) that feed the
  webhook endpoint
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from followthrough.config import GoogleConfig
from followthrough.google_auth import get_credentials
from followthrough.models import CalendarEvent

logger = logging.getLogger(__name__)


class GoogleCalendarClient:
    """
    Usage:
        client = GoogleCalendarClient(config.google)
        client.authenticate()
        events = client.fetch_events(start, end)
    """

    def __init__(self, config: GoogleConfig, service=None):
        self.config = config
        self._service = service
        # Ids of cancelled instances from the last fetch that came without times
        self.cancelled_ids: List[str] = []

    def authenticate(self, interactive: bool = True) -> None:
        creds = get_credentials(self.config, interactive=interactive)
        self._service = build("calendar", "v3", credentials=creds)
        logger.info("Google Calendar API service initialized")

    @property
    def service(self):
        if not self._service:
            raise RuntimeError("Not authenticated. Call authenticate() first.")
        return self._service

    def fetch_events(
        self,
        time_min: datetime,
        time_max: datetime,
        include_cancelled: bool = False,
    ) -> List[CalendarEvent]:
        """
        Fetch events from all configured calendars within a time range.

        Args:
            time_min: Start of time range (inclusive)
            time_max: End of time range (exclusive)
            include_cancelled: keep cancelled events (deletion detection)
        """
        all_events = []
        self.cancelled_ids = []
        for calendar_id in self.config.calendar_ids:
            try:
                events = self._fetch_from_calendar(calendar_id, time_min, time_max, include_cancelled)
                all_events.extend(events)
                logger.info("Fetched %d events from calendar '%s'", len(events), calendar_id)
            except HttpError as e:
                logger.error("Error fetching from calendar '%s': %s", calendar_id, e)
                continue
        return all_events

    def _fetch_from_calendar(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        include_cancelled: bool,
    ) -> List[CalendarEvent]:
        """Paginated events.list with recurring events expanded."""
        events = []
        page_token = None

        while True:
            result = (
                self.service.events()
                .list(
                    calendarId=calendar_id,
                    timeMin=time_min.astimezone(timezone.utc).isoformat(),
                    timeMax=time_max.astimezone(timezone.utc).isoformat(),
                    singleEvents=True,
                    orderBy="startTime",
                    showDeleted=include_cancelled,
                    maxResults=250,
                    pageToken=page_token,
                )
                .execute()
            )

            for raw_event in result.get("items", []):
                if raw_event.get("status") == "cancelled" and not include_cancelled:
                    continue
                # Cancelled instances can arrive without start/end
                if "start" not in raw_event or "end" not in raw_event:
                    if raw_event.get("status") == "cancelled" and raw_event.get("id"):
                        self.cancelled_ids.append(raw_event["id"])
                    continue
                try:
                    events.append(CalendarEvent.from_google_api(raw_event, calendar_id))
                except Exception as e:
                    logger.warning(
                        "Failed to parse event '%s': %s", raw_event.get("summary", "Unknown"), e
                    )

            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return events

    def get_event(self, event_id: str, calendar_id: str = "primary") -> Optional[CalendarEvent]:
        try:
            raw = self.service.events().get(calendarId=calendar_id, eventId=event_id).execute()
            return CalendarEvent.from_google_api(raw, calendar_id)
        except HttpError as e:
            logger.error("Could not fetch event %s: %s", event_id, e)
            return None

    def patch_event(
        self, event_id: str, fields: Dict[str, Any], calendar_id: str = "primary"
    ) -> Dict[str, Any]:
        """Partial update. Raises HttpError so delivery can record the failure."""
        return (
            self.service.events()
            .patch(calendarId=calendar_id, eventId=event_id, body=fields)
            .execute()
        )

    def create_event(
        self, body: Dict[str, Any], calendar_id: str = "primary", send_updates: str = "none"
    ) -> Dict[str, Any]:
        return (
            self.service.events()
            .insert(calendarId=calendar_id, body=body, sendUpdates=send_updates)
            .execute()
        )

    def watch_events(
        self, channel_id: str, address: str, token: str = "", calendar_id: str = "primary"
    ) -> Dict[str, Any]:
        """
        Open a push-notification channel. Google will POST to `address`
        whenever events on the calendar change.

        Returns:
            The channel resource (id, resourceId, expiration)
        """
        body = {"id": channel_id, "type": "web_hook", "address": address}
        if token:
            body["token"] = token
        channel = self.service.events().watch(calendarId=calendar_id, body=body).execute()
        logger.info("Watching calendar '%s' via channel %s", calendar_id, channel_id)
        return channel

    def stop_channel(self, channel_id: str, resource_id: str) -> None:
        self.service.channels().stop(body={"id": channel_id, "resourceId": resource_id}).execute()
        logger.info("Stopped channel %s", channel_id)
