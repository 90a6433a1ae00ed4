"""Tests for multi-channel brief delivery and scheduling."""

import pytest
import requests
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from followthrough.brief_delivery import BRIEF_MARKER, BriefDeliveryService
from followthrough.config import DeliveryConfig, SlackConfig
from followthrough.models import MeetingBrief


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def brief():
    return MeetingBrief(brief_id="brief-1", meeting_id="evt-1", title="Roadmap Review", summary="Decide Q3.")


@pytest.fixture
def sender():
    sender = MagicMock()
    sender.config.recipient = "me@example.com"
    sender.send_brief.return_value = True
    return sender


@pytest.fixture
def delivery(sender):
    return BriefDeliveryService(
        DeliveryConfig(),
        email_sender=sender,
        slack_config=SlackConfig(enabled=True, webhook_url="https://hooks.slack.com/x"),
        calendar_client=MagicMock(),
    )


class TestDeliver:
    def test_email_defaults_to_configured_recipient(self, delivery, sender, brief, make_event):
        event = make_event()
        [result] = delivery.deliver_brief(brief, event, ["email"])
        assert result.status == "delivered"
        assert result.recipients == ["me@example.com"]
        sender.send_brief.assert_called_once_with(brief, event, ["me@example.com"])

    def test_email_failure_recorded(self, delivery, sender, brief, make_event):
        sender.send_brief.return_value = False
        [result] = delivery.deliver_brief(brief, make_event(), ["email"], recipients=["x@example.com"])
        assert result.status == "failed"
        assert result.error == "SMTP send failed"

    @patch("followthrough.brief_delivery.requests.post")
    def test_slack(self, mock_post, delivery, brief, make_event):
        [result] = delivery.deliver_brief(brief, make_event(), ["slack"])
        assert result.status == "delivered"
        url = mock_post.call_args.args[0]
        assert url == "https://hooks.slack.com/x"
        assert mock_post.call_args.kwargs["json"]["text"].startswith("*Roadmap Review*")
        assert mock_post.call_args.kwargs["timeout"] == 10

    @patch("followthrough.brief_delivery.requests.post")
    def test_failing_channel_does_not_stop_others(self, mock_post, delivery, brief, make_event):
        mock_post.side_effect = requests.ConnectionError("slack down")
        results = delivery.deliver_brief(brief, make_event(), ["slack", "dashboard"])
        assert [(r.method, r.status) for r in results] == [("slack", "failed"), ("dashboard", "delivered")]
        assert "slack down" in results[0].error
        assert delivery.get_dashboard_briefs() == [brief]

    def test_calendar_replaces_previous_brief(self, delivery, brief, make_event):
        event = make_event(description=f"Agenda\n\n{BRIEF_MARKER}\nold brief")
        delivery.deliver_brief(brief, event, ["calendar"])
        body = delivery.calendar_client.patch_event.call_args.args[1]
        assert body["description"].startswith("Agenda\n\n" + BRIEF_MARKER)
        assert "old brief" not in body["description"]
        assert body["description"].count(BRIEF_MARKER) == 1

    def test_unknown_and_unconfigured_channels(self, brief, make_event):
        delivery = BriefDeliveryService(DeliveryConfig())
        results = delivery.deliver_brief(brief, make_event(), ["pigeon", "email", "slack", "calendar"])
        assert [r.error for r in results] == [
            "Unsupported delivery method: pigeon",
            "Email not configured",
            "Slack not configured",
            "Calendar not configured",
        ]

    def test_default_methods(self, delivery, brief, make_event):
        results = delivery.deliver_brief(brief, make_event())
        assert [r.method for r in results] == ["email", "dashboard"]


class TestBusinessHours:
    # March 2026: New York is on EDT (UTC-4) from March 8
    def test_within_hours_unchanged(self, delivery):
        when = utc(2026, 3, 10, 15, 0)  # Tue 11:00 local
        assert delivery.adjust_to_business_hours(when) == when

    def test_early_morning_moves_to_nine(self, delivery):
        assert delivery.adjust_to_business_hours(utc(2026, 3, 10, 11, 0)) == utc(2026, 3, 10, 13, 0)

    def test_weekend_moves_to_monday(self, delivery):
        assert delivery.adjust_to_business_hours(utc(2026, 3, 14, 15, 0)) == utc(2026, 3, 16, 13, 0)

    def test_friday_evening_skips_weekend(self, delivery):
        assert delivery.adjust_to_business_hours(utc(2026, 3, 13, 22, 0)) == utc(2026, 3, 16, 13, 0)


class TestScheduledDelivery:
    def test_past_delivery_time_becomes_now(self, delivery, brief, make_event, now):
        scheduled = delivery.schedule_brief_delivery(brief, make_event(), now=now)
        assert scheduled.scheduled_for == now
        assert scheduled.business_hours_adjusted is False
        assert scheduled.methods == ["email", "dashboard"]

    def test_adjusted_into_business_hours(self, delivery, brief, make_event, now):
        event = make_event(starts_in=timedelta(days=6))  # Mon 10:00 local
        scheduled = delivery.schedule_brief_delivery(brief, event, now=now)
        assert scheduled.scheduled_for == utc(2026, 3, 16, 13, 0)
        assert scheduled.business_hours_adjusted is True

    def test_adjustment_never_lands_after_meeting(self, delivery, brief, make_event, now):
        event = make_event(starts_in=timedelta(days=7, hours=-2))  # Tue 08:00 local
        scheduled = delivery.schedule_brief_delivery(brief, event, hours_before=1, now=now)
        assert scheduled.scheduled_for == event.start_time - timedelta(hours=1)
        assert scheduled.business_hours_adjusted is False

    def test_queues_job_and_runs_it(self, sender, brief, make_event, now):
        scheduler = MagicMock()
        delivery = BriefDeliveryService(DeliveryConfig(business_hours_only=False), email_sender=sender,
                                        scheduler=scheduler)
        event = make_event(starts_in=timedelta(days=2))
        scheduled = delivery.schedule_brief_delivery(brief, event, methods=["dashboard"], now=now)

        assert scheduler.add_date_job.call_args.kwargs["job_id"] == "deliver-brief-1"
        assert delivery.get_scheduled_deliveries() == [scheduled]

        job = scheduler.add_date_job.call_args.args[0]
        results = job(*scheduler.add_date_job.call_args.kwargs["args"])
        assert results[0].method == "dashboard"
        assert delivery.get_scheduled_deliveries() == []
