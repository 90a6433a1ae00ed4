"""
Multi-channel delivery of meeting briefs.

Channels:
    email      HTML email via SMTP (EmailSender)
    slack      plain-text message to a Slack incoming webhook
    calendar   brief summary appended to the Google Calendar event description
    dashboard  kept in memory for the web app's /briefs page

Each requested channel yields one BriefDeliveryResult. A failing channel is
recorded as "failed" and never stops the other channels.

Scheduled delivery picks a time N hours before the meeting and, when
business_hours_only is set, moves it into working hours (local timezone):
weekend -> Monday 09:00, before 09:00 -> 09:00 same day, 17:00 or later ->
next day 09:00 (which may itself land on a weekend and move again). If the
adjusted time would be at or after the meeting start, the unadjusted time
is used instead; a brief after the meeting is useless.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytz
import requests

from followthrough.config import DeliveryConfig, SlackConfig
from followthrough.models import (
    BriefDeliveryResult,
    CalendarEvent,
    DeliveryMethod,
    MeetingBrief,
    ScheduledDelivery,
    utcnow,
)

logger = logging.getLogger(__name__)

BRIEF_MARKER = "--- FollowThrough brief ---"


class BriefDeliveryService:
    """
    Usage:
        delivery = BriefDeliveryService(config.delivery, email_sender=sender, slack_config=config.slack)
        results = delivery.deliver_brief(brief, event, methods=["email", "slack"])
    """

    def __init__(
        self,
        config: DeliveryConfig,
        email_sender=None,
        slack_config: Optional[SlackConfig] = None,
        calendar_client=None,
        timezone: str = "America/New_York",
        scheduler=None,
    ):
        self.config = config
        self.email_sender = email_sender
        self.slack_config = slack_config or SlackConfig()
        self.calendar_client = calendar_client
        self.timezone = pytz.timezone(timezone)
        self.scheduler = scheduler
        self._dashboard: Dict[str, MeetingBrief] = {}
        self._scheduled: Dict[str, ScheduledDelivery] = {}

    # ── Immediate delivery ─────────────────────────────────────

    def deliver_brief(
        self,
        brief: MeetingBrief,
        event: CalendarEvent,
        methods: Optional[List[str]] = None,
        recipients: Optional[List[str]] = None,
    ) -> List[BriefDeliveryResult]:
        methods = methods or self.config.default_methods
        results = []

        for method in methods:
            try:
                result = self._deliver_one(method, brief, event, recipients or [])
            except Exception as e:
                logger.error("Delivery via %s failed for '%s': %s", method, event.title, e)
                result = BriefDeliveryResult(method=method, status="failed", error=str(e))
            results.append(result)

        delivered = [r.method for r in results if r.status == "delivered"]
        logger.info(
            "Brief for '%s' delivered via %s", event.title, ", ".join(delivered) or "no channel",
        )
        return results

    def _deliver_one(
        self, method: str, brief: MeetingBrief, event: CalendarEvent, recipients: List[str]
    ) -> BriefDeliveryResult:
        try:
            channel = DeliveryMethod(method)
        except ValueError:
            return BriefDeliveryResult(
                method=method, status="failed", error=f"Unsupported delivery method: {method}"
            )

        if channel == DeliveryMethod.EMAIL:
            return self._deliver_email(brief, event, recipients)
        if channel == DeliveryMethod.SLACK:
            return self._deliver_slack(brief, event)
        if channel == DeliveryMethod.CALENDAR:
            return self._deliver_calendar(brief, event)
        return self._deliver_dashboard(brief)

    def _deliver_email(self, brief, event, recipients) -> BriefDeliveryResult:
        if self.email_sender is None:
            return BriefDeliveryResult(method="email", status="failed", error="Email not configured")

        to = recipients or [self.email_sender.config.recipient]
        if not self.email_sender.send_brief(brief, event, to):
            return BriefDeliveryResult(method="email", status="failed", recipients=to, error="SMTP send failed")
        return BriefDeliveryResult(method="email", recipients=to, delivered_at=utcnow())

    def _deliver_slack(self, brief, event) -> BriefDeliveryResult:
        if not self.slack_config.enabled or not self.slack_config.webhook_url:
            return BriefDeliveryResult(method="slack", status="failed", error="Slack not configured")

        text = f"*{event.title}* at {event.start_time.strftime('%I:%M %p %Z')}\n{brief.to_plain_text()}"
        response = requests.post(
            self.slack_config.webhook_url,
            json={"text": text},
            timeout=self.slack_config.timeout_seconds,
        )
        response.raise_for_status()
        return BriefDeliveryResult(method="slack", recipients=["slack"], delivered_at=utcnow())

    def _deliver_calendar(self, brief, event) -> BriefDeliveryResult:
        if self.calendar_client is None:
            return BriefDeliveryResult(method="calendar", status="failed", error="Calendar not configured")

        # Replace a previous brief rather than stacking them
        description = (event.description or "").split(BRIEF_MARKER)[0].rstrip()
        new_description = f"{description}\n\n{BRIEF_MARKER}\n{brief.to_plain_text()}".strip()
        self.calendar_client.patch_event(
            event.event_id, {"description": new_description}, calendar_id=event.calendar_id
        )
        return BriefDeliveryResult(method="calendar", recipients=event.attendees, delivered_at=utcnow())

    def _deliver_dashboard(self, brief) -> BriefDeliveryResult:
        self._dashboard[brief.meeting_id] = brief
        return BriefDeliveryResult(method="dashboard", recipients=["dashboard"], delivered_at=utcnow())

    def get_dashboard_briefs(self) -> List[MeetingBrief]:
        return sorted(self._dashboard.values(), key=lambda b: b.generated_at, reverse=True)

    # ── Scheduled delivery ─────────────────────────────────────

    def schedule_brief_delivery(
        self,
        brief: MeetingBrief,
        event: CalendarEvent,
        methods: Optional[List[str]] = None,
        hours_before: Optional[int] = None,
        business_hours_only: Optional[bool] = None,
        custom_time: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> ScheduledDelivery:
        """
        Plan delivery ahead of the meeting and, if a scheduler is attached,
        queue the job.
        """
        now = now or utcnow()
        hours_before = self.config.hours_before_meeting if hours_before is None else hours_before
        if business_hours_only is None:
            business_hours_only = self.config.business_hours_only

        delivery_time = custom_time or (event.start_time - timedelta(hours=hours_before))
        if delivery_time < now:
            delivery_time = now

        adjusted = False
        if business_hours_only:
            candidate = self.adjust_to_business_hours(delivery_time)
            if candidate < event.start_time:
                adjusted = candidate != delivery_time
                delivery_time = candidate

        scheduled = ScheduledDelivery(
            brief_id=brief.brief_id,
            meeting_id=event.event_id,
            scheduled_for=delivery_time,
            methods=methods or self.config.default_methods,
            business_hours_adjusted=adjusted,
        )
        self._scheduled[brief.brief_id] = scheduled

        if self.scheduler is not None:
            self.scheduler.add_date_job(
                self._run_scheduled,
                run_at=delivery_time,
                job_id=f"deliver-{brief.brief_id}",
                args=[brief, event, scheduled.methods],
                name=f"Deliver brief: {event.title}",
            )
        return scheduled

    def _run_scheduled(self, brief: MeetingBrief, event: CalendarEvent, methods: List[str]):
        self._scheduled.pop(brief.brief_id, None)
        return self.deliver_brief(brief, event, methods)

    def get_scheduled_deliveries(self) -> List[ScheduledDelivery]:
        return sorted(self._scheduled.values(), key=lambda s: s.scheduled_for)

    def adjust_to_business_hours(self, when: datetime) -> datetime:
        """Move `when` into the next business-hours slot (local time)."""
        start_hour = self.config.business_day_start_hour
        end_hour = self.config.business_day_end_hour
        local = when.astimezone(self.timezone)

        while True:
            if local.weekday() >= 5:
                days_to_monday = 7 - local.weekday()
                local = self._at_hour(local + timedelta(days=days_to_monday), start_hour)
            elif local.hour < start_hour:
                local = self._at_hour(local, start_hour)
            elif local.hour >= end_hour:
                local = self._at_hour(local + timedelta(days=1), start_hour)
            else:
                break

        return local.astimezone(when.tzinfo)

    def _at_hour(self, local: datetime, hour: int) -> datetime:
        naive = local.replace(tzinfo=None, hour=hour, minute=0, second=0, microsecond=0)
        return self.timezone.localize(naive)
