"""
Wiring: build every FollowThrough component from an AppConfig.

The CLI and the web app share one Services object so a webhook received by
Flask and a poll run by the scheduler see the same stores, bus and
in-memory trigger state.
"""

import logging
from typing import Dict, Optional

from followthrough import events as topics
from followthrough.analysis_trigger import MeetingAnalysisTriggerService
from followthrough.brief_delivery import BriefDeliveryService
from followthrough.brief_generator import MeetingBriefGenerator
from followthrough.calendar_client import GoogleCalendarClient
from followthrough.calendar_sync import CalendarSyncService
from followthrough.calendar_triggers import CalendarTriggerService
from followthrough.config import AppConfig
from followthrough.context_agent import PreMeetingContextAgent
from followthrough.email_sender import EmailSender
from followthrough.event_detector import MeetingEventDetector
from followthrough.events import EventBus
from followthrough.follow_up import FollowUpPlanner
from followthrough.gmail_client import GmailDraftClient
from followthrough.llm import LLMClient
from followthrough.meeting_notes import MeetingNotesStore
from followthrough.post_meeting import PostMeetingOrchestrator
from followthrough.recording_client import MeetRecordingClient
from followthrough.router import FollowUpRouter
from followthrough.scheduler import WorkflowScheduler
from followthrough.session_store import SessionStore
from followthrough.task_store import TaskStore
from followthrough.transcript_analyzer import TranscriptAnalyzer
from followthrough.workflow import CalendarWorkflowEngine

logger = logging.getLogger(__name__)


class Services:
    """Every long-lived component, built once per process."""

    def __init__(self, config: AppConfig, google: Optional[Dict[str, object]] = None):
        google = google or {}
        self.config = config
        self.calendar_client = google.get("calendar")
        self.recording_client = google.get("recording")
        self.gmail_client = google.get("gmail")

        self.bus = EventBus()
        self.scheduler = WorkflowScheduler(config.scheduler)
        self.store = SessionStore(
            config.sessions.store_path,
            stale_after_minutes=config.sessions.stale_after_minutes,
            max_retries=config.sessions.max_retries,
        )
        self.notes_store = MeetingNotesStore(config.sessions.notes_path)
        self.task_store = TaskStore(config.sessions.tasks_path)

        self.llm = LLMClient(config.anthropic)
        self.context_agent = PreMeetingContextAgent(
            self.llm if config.anthropic.api_key else None, self.store, self.notes_store,
        )
        self.brief_generator = MeetingBriefGenerator(self.llm)
        self.delivery = BriefDeliveryService(
            config.delivery,
            email_sender=EmailSender(config.email) if config.email.sender else None,
            slack_config=config.slack,
            calendar_client=self.calendar_client,
            timezone=config.timezone,
            scheduler=self.scheduler,
        )
        self.analyzer = TranscriptAnalyzer(self.llm)
        self.orchestrator = PostMeetingOrchestrator(
            FollowUpPlanner(),
            FollowUpRouter(),
            gmail_client=self.gmail_client,
            calendar_client=self.calendar_client,
            task_store=self.task_store,
        )

        self.sync = CalendarSyncService(lookahead_hours=config.google.lookahead_hours)
        self.triggers = CalendarTriggerService(
            config.detection, self.bus, self.scheduler, self.sync, webhook_token=config.server.webhook_token,
        )
        self.detector = MeetingEventDetector(config.detection, self.bus, self.triggers, self.sync)
        self.triggers.set_detector(self.detector)
        self.analysis = MeetingAnalysisTriggerService(config.polling, self.bus, self.recording_client)

        self.engine = CalendarWorkflowEngine(
            self.store,
            self.bus,
            self.context_agent,
            self.brief_generator,
            self.delivery,
            self.analyzer,
            self.orchestrator,
            notes_store=self.notes_store,
            defaults=config.workflow,
        )
        self.engine.attach(self.analysis)
        self.bus.subscribe(topics.TRANSCRIPT_AVAILABLE, self.analysis.handle_transcript_available)

        if self.calendar_client is not None:
            self.sync.register_user(config.user_id, self.calendar_client)

    # ── Jobs ───────────────────────────────────────────────────

    def sync_all(self) -> int:
        """Full sync of every registered calendar, fed through the detector."""
        total = 0
        for user_id in self.sync.registered_users():
            events = self.sync.sync_user_calendar(user_id)
            self.detector.process_event_changes(user_id, events)
            total += len(events)
        return total

    def archive_sessions(self) -> int:
        return self.store.archive_completed_sessions(self.config.sessions.archive_after_days)

    def schedule_jobs(self) -> None:
        cfg = self.config
        self.scheduler.add_interval_job(
            self.detector.perform_periodic_check, cfg.detection.poll_interval_seconds,
            "detection-poll", "Meeting start/end detection",
        )
        self.scheduler.add_interval_job(
            self.analysis.perform_recording_checks, cfg.polling.recording_check_interval_minutes * 60,
            "recording-poll", "Recording availability checks",
        )
        self.scheduler.add_daily_job(
            self.sync_all, cfg.scheduler.sync_hour, cfg.scheduler.sync_minute,
            "daily-sync", "Daily calendar sync",
        )
        self.scheduler.add_daily_job(
            self.archive_sessions, cfg.scheduler.archive_hour, 0,
            "nightly-archive", "Archive finished sessions",
        )

    def register_webhooks(self) -> None:
        address = self.config.google.webhook_address
        if not address or self.calendar_client is None:
            logger.info("No webhook address configured; relying on polling and daily sync")
            return
        for calendar_id in self.config.google.calendar_ids:
            try:
                self.triggers.register_webhook(self.config.user_id, calendar_id, address, self.calendar_client)
            except Exception as e:
                logger.error(f"Could not open a push channel for {calendar_id}: {e}")

    def stop_webhooks(self) -> None:
        for registration in self.triggers.get_webhooks():
            try:
                self.triggers.unregister_webhook(registration.channel_id, self.calendar_client)
            except Exception as e:
                logger.warning(f"Could not stop push channel {registration.channel_id}: {e}")


def connect_google(config: AppConfig, interactive: bool = True) -> Dict[str, object]:
    """
    Authenticate the Google clients.

    Returns:
        {"calendar": ..., "recording": ..., "gmail": ...}, or {} when Google
        is disabled or authentication failed
    """
    if not config.google.enabled:
        return {}

    clients = {
        "calendar": GoogleCalendarClient(config.google),
        "recording": MeetRecordingClient(config.google),
        "gmail": GmailDraftClient(config.google),
    }
    try:
        for client in clients.values():
            client.authenticate(interactive=interactive)
    except (FileNotFoundError, PermissionError) as e:
        logger.error(f"Google authentication failed: {e}")
        return {}
    return clients


def build_services(config: AppConfig, google: bool = False, interactive: bool = True) -> Services:
    """Build the component graph, optionally with authenticated Google clients."""
    clients = connect_google(config, interactive=interactive) if google else {}
    return Services(config, clients)
