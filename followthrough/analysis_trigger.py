"""
Recording-availability polling and post-meeting analysis triggering.

Meet needs a few minutes (sometimes much longer) after a meeting ends to
put the recording and transcript into Drive. When a meeting ends:

    1. initiate_trigger() checks Drive once. Transcript there -> trigger now.
    2. Otherwise a RecordingCheck is queued, due every
       recording_check_interval_minutes (5).
    3. perform_recording_checks() (scheduler, same interval) runs due
       checks. Found -> trigger. After max_recording_checks (12, i.e. one
       hour) -> give up and emit meeting.analysis.timeout.

A transcript is what analysis needs; the recording is attached when found
but is not waited for.

Triggering hands the AnalysisTrigger to the analysis runner (the workflow
engine's post-meeting phase). There is at most one live trigger per
calendar event: a second meeting-ended signal for the same event returns
the existing trigger id.
"""

import logging
import math
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field

from followthrough import events as topics
from followthrough.config import PollingConfig
from followthrough.events import EventBus
from followthrough.models import CalendarEvent, MeetingAnalysisResult, MeetingRecording, utcnow
from followthrough.recording_client import RecordingAvailability

logger = logging.getLogger(__name__)

LIVE_STATUSES = ("pending", "triggered")
FINISHED_HISTORY = 200


class RecordingCheck(BaseModel):
    trigger_id: str
    event_id: str
    check_count: int = 0
    max_checks: int = 12
    last_checked: Optional[datetime] = None
    next_check_at: datetime
    recording_found: bool = False
    transcript_found: bool = False


class AnalysisTrigger(BaseModel):
    trigger_id: str
    event_id: str
    user_id: str
    calendar_event: CalendarEvent
    trigger_type: str = "meeting_ended"  # meeting_ended, manual, transcript_available
    status: str = "pending"  # pending, triggered, completed, failed, timed_out, replaced, cancelled
    created_at: datetime
    triggered_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    transcript: Optional[str] = None
    recording: Optional[MeetingRecording] = None
    error: Optional[str] = None


class MeetingAnalysisTriggerService:
    """
    Usage:
        service = MeetingAnalysisTriggerService(config.polling, bus, recording_client)
        service.set_analysis_runner(engine.run_post_meeting_for_trigger)
        trigger_id = service.initiate_trigger(event.event_id, "me", event)
    """

    def __init__(self, config: PollingConfig, bus: EventBus, recording_client=None, history_size: int = FINISHED_HISTORY):
        self.config = config
        self.bus = bus
        self.recording_client = recording_client
        self.analysis_runner: Optional[Callable[[AnalysisTrigger], None]] = None
        self._triggers: Dict[str, AnalysisTrigger] = {}
        self._checks: Dict[str, RecordingCheck] = {}
        self._active_by_event: Dict[str, str] = {}
        self.history_size = history_size
        self._lock = threading.RLock()

    def set_analysis_runner(self, runner: Callable[[AnalysisTrigger], None]) -> None:
        self.analysis_runner = runner

    @property
    def check_interval(self) -> timedelta:
        return timedelta(minutes=self.config.recording_check_interval_minutes)

    # ── Entry points ───────────────────────────────────────────

    def initiate_trigger(
        self,
        event_id: str,
        user_id: str,
        calendar_event: CalendarEvent,
        trigger_type: str = "meeting_ended",
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> str:
        now = now or utcnow()
        with self._lock:
            existing = self._active_by_event.get(event_id)
            if existing is not None:
                logger.info("Analysis already pending for '%s' (%s)", calendar_event.title, existing)
                return existing

            trigger = self._new_trigger(event_id, user_id, calendar_event, trigger_type, metadata, now)

        availability = self._check_availability(calendar_event)
        if availability.transcript_found:
            trigger.transcript = availability.transcript
            trigger.recording = availability.recording
            self._trigger_analysis(trigger, now)
        else:
            self._queue_check(trigger, availability, now)
        return trigger.trigger_id

    def manually_trigger_analysis(
        self,
        event_id: str,
        user_id: str,
        calendar_event: CalendarEvent,
        force_without_recording: bool = False,
        test_transcript: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Trigger analysis on demand.

        - test_transcript given: analyse it right away (no Drive lookup)
        - transcript already in Drive: analyse it
        - force_without_recording: analyse now with no transcript
        - otherwise: fall back to polling like a normal meeting end
        """
        now = now or utcnow()
        with self._lock:
            previous = self._active_by_event.pop(event_id, None)
            if previous:
                self._checks.pop(previous, None)
                self._triggers[previous].status = "replaced"
            trigger = self._new_trigger(event_id, user_id, calendar_event, "manual", {}, now)

        if test_transcript:
            trigger.transcript = test_transcript
            trigger.metadata["test_transcript"] = True
            self._trigger_analysis(trigger, now)
            return trigger.trigger_id

        availability = self._check_availability(calendar_event)
        if availability.transcript_found or force_without_recording:
            trigger.transcript = availability.transcript
            trigger.recording = availability.recording
            trigger.metadata["forced"] = not availability.transcript_found
            self._trigger_analysis(trigger, now)
        else:
            self._queue_check(trigger, availability, now)
        return trigger.trigger_id

    def handle_transcript_available(self, payload: Dict[str, Any]) -> Optional[str]:
        """Bus handler for TRANSCRIPT_AVAILABLE pushes."""
        event = payload.get("event")
        if event is None:
            logger.warning("Transcript pushed for unknown event %s", payload.get("event_id"))
            return None
        return self.manually_trigger_analysis(
            payload["event_id"], payload["user_id"], event, test_transcript=payload.get("transcript"),
        )

    # ── Polling ────────────────────────────────────────────────

    def perform_recording_checks(self, now: Optional[datetime] = None) -> int:
        """
        Run every check that is due.

        Returns:
            Number of checks performed
        """
        now = now or utcnow()
        with self._lock:
            due = [c for c in self._checks.values() if c.next_check_at <= now]

        for check in due:
            with self._lock:
                if check.trigger_id not in self._checks:
                    continue
            trigger = self._triggers[check.trigger_id]
            try:
                self._run_check(trigger, check, now)
            except Exception as e:
                logger.error("Recording check failed for '%s': %s", trigger.calendar_event.title, e)
                check.next_check_at = now + self.check_interval
        return len(due)

    def _run_check(self, trigger: AnalysisTrigger, check: RecordingCheck, now: datetime) -> None:
        check.check_count += 1
        check.last_checked = now
        availability = self._check_availability(trigger.calendar_event)
        check.recording_found = availability.recording_found
        check.transcript_found = availability.transcript_found

        if availability.transcript_found:
            trigger.transcript = availability.transcript
            trigger.recording = availability.recording
            self._trigger_analysis(trigger, now)
        elif check.check_count >= check.max_checks:
            self._time_out(trigger, check)
        else:
            check.next_check_at = now + self.check_interval
            logger.debug(
                "No transcript yet for '%s' (check %d/%d)",
                trigger.calendar_event.title, check.check_count, check.max_checks,
            )

    def cancel_trigger(self, event_id: str) -> bool:
        """Stop waiting on an event's transcript. Returns False if nothing was live."""
        with self._lock:
            trigger_id = self._active_by_event.pop(event_id, None)
            if trigger_id is None:
                return False
            self._checks.pop(trigger_id, None)
            trigger = self._triggers[trigger_id]
            trigger.status = "cancelled"
        logger.info("Cancelled analysis trigger %s for '%s'", trigger_id, trigger.calendar_event.title)
        return True

    # ── Completion ─────────────────────────────────────────────

    def handle_analysis_completed(
        self,
        event_id: str,
        result: MeetingAnalysisResult,
        session_id: Optional[str] = None,
    ) -> None:
        with self._lock:
            trigger_id = self._active_by_event.pop(event_id, None)
            trigger = self._triggers.get(trigger_id) if trigger_id else None
            if trigger is not None:
                trigger.status = "completed"

        self.bus.emit(topics.ANALYSIS_RESULT_AVAILABLE, {
            "event_id": event_id,
            "session_id": session_id,
            "trigger_id": trigger_id,
            "result": {"meeting_analysis": result},
        })

    def get_trigger(self, trigger_id: str) -> Optional[AnalysisTrigger]:
        return self._triggers.get(trigger_id)

    def get_analysis_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "pending_triggers": sum(1 for t in self._triggers.values() if t.status in LIVE_STATUSES),
                "active_workflows": len(self._active_by_event),
                "recording_checks": [c.model_dump(mode="json") for c in self._checks.values()],
                "recent_triggers": [
                    t.model_dump(mode="json", include={"trigger_id", "event_id", "trigger_type", "status", "error"})
                    for t in sorted(self._triggers.values(), key=lambda t: t.created_at, reverse=True)[:20]
                ],
            }

    # ── Internals ──────────────────────────────────────────────

    def _new_trigger(self, event_id, user_id, calendar_event, trigger_type, metadata, now) -> AnalysisTrigger:
        trigger = AnalysisTrigger(
            trigger_id=f"trigger-{event_id}-{int(now.timestamp() * 1000)}",
            event_id=event_id,
            user_id=user_id,
            calendar_event=calendar_event,
            trigger_type=trigger_type,
            created_at=now,
            metadata=dict(metadata or {}),
        )
        self._triggers[trigger.trigger_id] = trigger
        self._active_by_event[event_id] = trigger.trigger_id
        self._prune()
        return trigger

    def _prune(self) -> None:
        """Keep only the newest finished triggers."""
        finished = sorted(
            (t for t in self._triggers.values() if t.status not in LIVE_STATUSES),
            key=lambda t: t.created_at,
        )
        for trigger in finished[:max(0, len(finished) - self.history_size)]:
            del self._triggers[trigger.trigger_id]

    def _check_availability(self, event: CalendarEvent) -> RecordingAvailability:
        """Drive lookup. A failed lookup counts as "not there yet"."""
        if self.recording_client is None:
            return RecordingAvailability()
        try:
            return self.recording_client.check_availability(event)
        except Exception as e:
            logger.warning("Recording lookup failed for '%s': %s", event.title, e)
            return RecordingAvailability()

    def _queue_check(self, trigger: AnalysisTrigger, availability: RecordingAvailability, now: datetime) -> None:
        max_checks = self.config.max_recording_checks
        wait = trigger.metadata.get("max_wait_time_minutes")
        if wait:
            max_checks = max(1, math.ceil(wait / self.config.recording_check_interval_minutes))

        check = RecordingCheck(
            trigger_id=trigger.trigger_id,
            event_id=trigger.event_id,
            max_checks=max_checks,
            next_check_at=now + self.check_interval,
            recording_found=availability.recording_found,
        )
        with self._lock:
            self._checks[trigger.trigger_id] = check
        logger.info(
            "Waiting for transcript of '%s', next check at %s",
            trigger.calendar_event.title, check.next_check_at.isoformat(),
        )
        self.bus.emit(topics.ANALYSIS_WAITING, {
            "trigger_id": trigger.trigger_id, "event_id": trigger.event_id, "user_id": trigger.user_id,
        })

    def _trigger_analysis(self, trigger: AnalysisTrigger, now: datetime) -> None:
        with self._lock:
            self._checks.pop(trigger.trigger_id, None)
        trigger.status = "triggered"
        trigger.triggered_at = now
        logger.info("Triggering analysis for '%s' (%s)", trigger.calendar_event.title, trigger.trigger_type)
        self.bus.emit(topics.ANALYSIS_TRIGGERED, {
            "trigger_id": trigger.trigger_id,
            "event_id": trigger.event_id,
            "user_id": trigger.user_id,
            "has_transcript": bool(trigger.transcript),
        })

        if self.analysis_runner is None:
            return
        try:
            self.analysis_runner(trigger)
        except Exception as e:
            logger.error("Analysis failed for '%s': %s", trigger.calendar_event.title, e)
            trigger.status = "failed"
            trigger.error = str(e)
            with self._lock:
                if self._active_by_event.get(trigger.event_id) == trigger.trigger_id:
                    del self._active_by_event[trigger.event_id]
            self.bus.emit(topics.ANALYSIS_FAILED, {
                "trigger_id": trigger.trigger_id, "event_id": trigger.event_id, "error": str(e),
            })

    def _time_out(self, trigger: AnalysisTrigger, check: RecordingCheck) -> None:
        trigger.status = "timed_out"
        with self._lock:
            self._checks.pop(trigger.trigger_id, None)
            if self._active_by_event.get(trigger.event_id) == trigger.trigger_id:
                del self._active_by_event[trigger.event_id]
        logger.warning(
            "Gave up waiting for transcript of '%s' after %d checks",
            trigger.calendar_event.title, check.check_count,
        )
        self.bus.emit(topics.ANALYSIS_TIMEOUT, {
            "trigger_id": trigger.trigger_id,
            "event_id": trigger.event_id,
            "user_id": trigger.user_id,
            "checks": check.check_count,
            "metadata": trigger.metadata,
        })
