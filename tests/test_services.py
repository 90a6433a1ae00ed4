"""Tests for component wiring and the background jobs it exposes."""

import pytest
from unittest.mock import MagicMock, patch

from followthrough.config import AppConfig, GoogleConfig, SessionConfig
from followthrough.services import Services, build_services, connect_google


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        google=GoogleConfig(webhook_address="https://example.com/webhooks/google-calendar"),
        sessions=SessionConfig(
            store_path=str(tmp_path / "sessions.json"),
            notes_path=str(tmp_path / "notes.json"),
            tasks_path=str(tmp_path / "tasks.json"),
        ),
    )


@pytest.fixture
def calendar(make_event):
    calendar = MagicMock()
    calendar.fetch_events.return_value = [make_event()]
    calendar.watch_events.return_value = {"resourceId": "res-1"}
    return calendar


class TestJobs:
    def test_sync_all_feeds_detector(self, config, calendar):
        services = Services(config, {"calendar": calendar})
        assert services.sync_all() == 1
        assert services.detector.get_processing_stats()["processed_events"] == 1

    def test_sync_all_without_calendar(self, config):
        assert Services(config).sync_all() == 0

    def test_schedule_jobs(self, config):
        services = Services(config)
        services.schedule_jobs()
        ids = {job["id"] for job in services.scheduler.get_jobs()}
        assert ids == {"detection-poll", "recording-poll", "daily-sync", "nightly-archive"}

    def test_archive_sessions(self, config):
        assert Services(config).archive_sessions() == 0


class TestWebhooks:
    def test_register_and_stop(self, config, calendar):
        services = Services(config, {"calendar": calendar})
        services.register_webhooks()

        [registration] = services.triggers.get_webhooks()
        assert registration.resource_id == "res-1"

        services.stop_webhooks()
        calendar.stop_channel.assert_called_once_with(registration.channel_id, "res-1")
        assert services.triggers.get_webhooks() == []

    def test_no_address_no_channels(self, config, calendar):
        config.google.webhook_address = ""
        services = Services(config, {"calendar": calendar})
        services.register_webhooks()
        calendar.watch_events.assert_not_called()

    def test_watch_failure_is_logged(self, config, calendar):
        calendar.watch_events.side_effect = RuntimeError("forbidden")
        services = Services(config, {"calendar": calendar})
        services.register_webhooks()
        assert services.triggers.get_webhooks() == []


class TestConnectGoogle:
    def test_disabled(self, config):
        config.google.enabled = False
        assert connect_google(config) == {}

    @patch("followthrough.services.GmailDraftClient")
    @patch("followthrough.services.MeetRecordingClient")
    @patch("followthrough.services.GoogleCalendarClient")
    def test_authenticates_every_client(self, mock_calendar, mock_recording, mock_gmail, config):
        clients = connect_google(config, interactive=False)
        assert set(clients) == {"calendar", "recording", "gmail"}
        mock_calendar.return_value.authenticate.assert_called_once_with(interactive=False)

    @patch("followthrough.services.GmailDraftClient")
    @patch("followthrough.services.MeetRecordingClient")
    @patch("followthrough.services.GoogleCalendarClient")
    def test_missing_credentials(self, mock_calendar, mock_recording, mock_gmail, config):
        mock_calendar.return_value.authenticate.side_effect = FileNotFoundError("credentials.json")
        assert connect_google(config) == {}

    def test_build_services_without_google(self, config):
        services = build_services(config)
        assert services.calendar_client is None
        assert services.sync.registered_users() == []
