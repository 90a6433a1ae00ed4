"""Tests for the calendar workflow engine (mocked agents, real session store)."""

import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from followthrough import events as topics
from followthrough.analysis_trigger import MeetingAnalysisTriggerService
from followthrough.config import PollingConfig, WorkflowConfig
from followthrough.events import EventBus
from followthrough.exceptions import SessionNotFoundError, WorkflowStepError
from followthrough.follow_up import FollowUpPlanner
from followthrough.models import BriefDeliveryResult, MeetingBrief, PreMeetingContext, utcnow
from followthrough.post_meeting import PostMeetingOrchestrator, PostMeetingResult
from followthrough.recording_client import RecordingAvailability
from followthrough.router import FollowUpRouter
from followthrough.session_store import SessionStore
from followthrough.workflow import CalendarWorkflowEngine
from followthrough.workflow_state import (
    CalendarWorkflowStage as Stage,
    CalendarWorkflowStep as Step,
    MeetingStatus,
)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def store(tmp_path):
    return SessionStore(store_path=str(tmp_path / "sessions.json"))


@pytest.fixture
def context_agent():
    agent = MagicMock()
    agent.gather_context.return_value = PreMeetingContext(meeting_id="evt-1", rag_enhanced=True)
    return agent


@pytest.fixture
def generator():
    generator = MagicMock()
    generator.generate_brief.return_value = MeetingBrief(brief_id="brief-1", meeting_id="evt-1", title="Roadmap Review")
    return generator


@pytest.fixture
def delivery():
    delivery = MagicMock()
    delivery.config.default_methods = ["email", "slack"]
    delivery.deliver_brief.return_value = [
        BriefDeliveryResult(method="email", recipients=["me@example.com"], delivered_at=utcnow()),
        BriefDeliveryResult(method="slack", status="failed", error="Slack not configured"),
    ]
    return delivery


@pytest.fixture
def analyzer(analysis):
    analyzer = MagicMock()
    analyzer.analyze.return_value = analysis
    return analyzer


@pytest.fixture
def notes():
    return MagicMock()


@pytest.fixture
def engine(store, bus, context_agent, generator, delivery, analyzer, notes):
    orchestrator = PostMeetingOrchestrator(FollowUpPlanner(), FollowUpRouter())
    return CalendarWorkflowEngine(
        store, bus, context_agent, generator, delivery, analyzer, orchestrator, notes_store=notes,
    )


@pytest.fixture
def recordings():
    client = MagicMock()
    client.check_availability.return_value = RecordingAvailability(transcript="Alice: ship it.")
    return client


@pytest.fixture
def trigger(engine, bus, recordings):
    service = MeetingAnalysisTriggerService(PollingConfig(), bus, recordings)
    engine.attach(service)
    return service


def _received(bus, topic):
    received = []
    bus.subscribe(topic, received.append)
    return received


class TestPreMeeting:
    def test_runs_until_monitoring(self, engine, store, bus, delivery, make_event, now):
        started = _received(bus, topics.WORKFLOW_STARTED)
        progress = _received(bus, topics.WORKFLOW_PROGRESS)

        result = engine.start_workflow(make_event(), "me", now=now)
        assert result.status == "in_progress"
        assert result.stage == Stage.MEETING_MONITORING
        assert result.progress == 75

        state = store.get_session(result.session_id)
        assert state.current_step == Step.MONITOR_MEETING_START
        assert state.processing_metadata.rag_enhanced is True
        assert state.meeting_brief.brief_id == "brief-1"
        assert state.brief_delivery_status.delivered is True
        assert state.brief_delivery_status.delivery_methods == ["email"]
        assert state.brief_delivery_status.recipients == ["me@example.com"]
        assert len(state.metadata["delivery_results"]) == 2
        assert state.processing_metadata.agents_used == ["context_agent", "brief_generator"]
        assert delivery.deliver_brief.call_args.args[2] == ["email", "slack"]

        assert started[0]["session_id"] == result.session_id
        assert [p["progress"] for p in progress] == [10, 40, 70, 75]

    def test_completes_without_monitoring(self, engine, bus, make_event):
        completed = _received(bus, topics.WORKFLOW_COMPLETED)
        result = engine.start_workflow(make_event(), "me", engine.default_options(monitor_meeting=False))
        assert result.status == "completed"
        assert result.progress == 100
        assert len(completed) == 1

    def test_brief_and_delivery_can_be_disabled(self, engine, generator, delivery, make_event):
        options = engine.default_options(generate_brief=False, deliver_brief=False)
        engine.start_workflow(make_event(), "me", options)
        generator.generate_brief.assert_not_called()
        delivery.deliver_brief.assert_not_called()

    def test_options_from_config_defaults(self, store, bus, make_event):
        engine = CalendarWorkflowEngine(
            store, bus, MagicMock(), MagicMock(), None, MagicMock(), MagicMock(),
            defaults=WorkflowConfig(autonomy_level="manual", use_rag=False),
        )
        options = engine.default_options()
        assert options.autonomy_level.value == "manual"
        assert options.use_rag is False
        assert options.delivery_methods == ["email", "dashboard"]

    def test_failure_records_stage(self, engine, store, bus, generator, make_event):
        errors = _received(bus, topics.WORKFLOW_ERROR)
        generator.generate_brief.side_effect = RuntimeError("LLM down")

        result = engine.start_workflow(make_event(), "me")
        assert result.status == "failed"
        assert result.error == "LLM down"
        state = store.get_session(result.session_id)
        assert state.stage == Stage.ERROR
        assert state.error_stages == ["brief_generation"]
        assert errors[0]["stage"] == "brief_generation"

    def test_brief_request_starts_one_workflow(self, engine, store, bus, context_agent, make_event):
        engine.attach()
        event = make_event()
        bus.emit(topics.BRIEF_REQUESTED, {"user_id": "me", "event_id": "evt-1", "event": event})
        bus.emit(topics.BRIEF_REQUESTED, {"user_id": "me", "event_id": "evt-1", "event": event})
        assert len(store.get_sessions_by_event("evt-1")) == 1
        assert context_agent.gather_context.call_count == 1


class TestRetryAndCancel:
    def test_retry_resumes_from_failed_stage(self, engine, store, context_agent, generator, make_event):
        generator.generate_brief.side_effect = [RuntimeError("LLM down"), generator.generate_brief.return_value]
        failed = engine.start_workflow(make_event(), "me")

        result = engine.retry_session(failed.session_id)
        assert result.status == "in_progress"
        assert result.stage == Stage.MEETING_MONITORING
        assert context_agent.gather_context.call_count == 1
        state = store.get_session(failed.session_id)
        assert state.retry_count == 1
        assert state.error is None
        assert state.had_errors is True

    def test_retry_refused_for_healthy_session(self, engine, make_event):
        started = engine.start_workflow(make_event(), "me")
        result = engine.retry_session(started.session_id)
        assert result.status == "failed"
        assert result.error == "Only failed workflows can be retried"

    def test_retry_limit(self, engine, store, generator, make_event):
        generator.generate_brief.side_effect = RuntimeError("LLM down")
        failed = engine.start_workflow(make_event(), "me", engine.default_options(retry_attempts=1))

        assert engine.retry_session(failed.session_id).error == "LLM down"
        result = engine.retry_session(failed.session_id)
        assert result.error == "Retry limit reached (1)"
        assert store.get_session(failed.session_id).retry_count == 1

    def test_retry_missing_session(self, engine):
        with pytest.raises(SessionNotFoundError):
            engine.retry_session("cal-missing")

    def test_cancel(self, engine, store, bus, make_event):
        cancelled = _received(bus, topics.WORKFLOW_CANCELLED)
        started = engine.start_workflow(make_event(), "me")

        assert engine.cancel_workflow(started.session_id) is True
        state = store.get_session(started.session_id)
        assert state.stage == Stage.ERROR
        assert state.error == "Workflow cancelled by user"
        assert cancelled[0]["session_id"] == started.session_id
        assert engine.retry_session(started.session_id).error == "Cancelled workflows cannot be retried"

    def test_cancel_completed_or_missing(self, engine, make_event):
        done = engine.start_workflow(make_event(), "me", engine.default_options(monitor_meeting=False))
        assert engine.cancel_workflow(done.session_id) is False
        assert engine.cancel_workflow("cal-missing") is False

    def test_meeting_end_after_cancel_is_ignored(self, engine, trigger, store, analyzer, make_event, now):
        started = engine.start_workflow(make_event(), "me")
        engine.cancel_workflow(started.session_id)

        assert engine.handle_meeting_ended("me", make_event(), now=now) is None
        analyzer.analyze.assert_not_called()
        [state] = store.get_sessions_by_event("evt-1")
        assert state.stage == Stage.ERROR
        assert trigger.get_analysis_status()["pending_triggers"] == 0

    def test_cancel_while_waiting_for_transcript(self, engine, trigger, recordings, store, analyzer, make_event, now):
        recordings.check_availability.return_value = RecordingAvailability()
        started = engine.start_workflow(make_event(), "me")
        engine.handle_meeting_ended("me", make_event(), now=now)
        trigger_id = store.get_session(started.session_id).metadata["analysis_trigger_id"]

        assert engine.cancel_workflow(started.session_id) is True
        recordings.check_availability.return_value = RecordingAvailability(transcript="Bob: done.")
        assert trigger.perform_recording_checks(now + timedelta(minutes=5)) == 0

        analyzer.analyze.assert_not_called()
        assert trigger.get_trigger(trigger_id).status == "cancelled"
        assert store.get_session(started.session_id).stage == Stage.ERROR

    def test_brief_request_after_cancel_is_ignored(self, engine, store, bus, context_agent, make_event):
        engine.attach()
        event = make_event()
        engine.cancel_workflow(engine.start_workflow(event, "me").session_id)

        bus.emit(topics.BRIEF_REQUESTED, {"user_id": "me", "event_id": "evt-1", "event": event})
        assert len(store.get_sessions_by_event("evt-1")) == 1
        assert context_agent.gather_context.call_count == 1

    def test_runner_refuses_cancelled_session(self, engine, analyzer, make_event):
        started = engine.start_workflow(make_event(), "me")
        engine.cancel_workflow(started.session_id)
        trigger = MagicMock(
            metadata={"session_id": started.session_id}, user_id="me", event_id="evt-1", transcript="Alice: hi",
        )

        with pytest.raises(WorkflowStepError):
            engine.run_post_meeting_for_trigger(trigger)
        analyzer.analyze.assert_not_called()


class TestMeetingLifecycle:
    def test_meeting_started(self, engine, store, make_event, now):
        started = engine.start_workflow(make_event(), "me")
        state = engine.handle_meeting_started("me", make_event(), now=now)
        assert state.session_id == started.session_id
        stored = store.get_session(started.session_id)
        assert stored.meeting_status == MeetingStatus.STARTED
        assert stored.current_step == Step.TRACK_MEETING_PROGRESS
        assert stored.actual_meeting_start_time == now

    def test_meeting_started_without_session(self, engine, make_event):
        assert engine.handle_meeting_started("me", make_event()) is None

    def test_meeting_end_runs_post_meeting_when_transcript_ready(
        self, engine, trigger, store, notes, analysis, make_event, now,
    ):
        started = engine.start_workflow(make_event(), "me")
        state = engine.handle_meeting_ended("me", make_event(), now=now)

        assert state.session_id == started.session_id
        assert state.stage == Stage.COMPLETED
        assert state.meeting_status == MeetingStatus.ENDED
        assert state.meeting_transcript == "Alice: ship it."
        assert state.metadata["analysis_trigger_id"].startswith("trigger-evt-1-")
        assert len(state.metadata["email_drafts"]) == 2
        assert state.follow_up_status.emails_generated == 2
        assert state.follow_up_status.meetings_scheduled == 1
        assert state.follow_up_status.tasks_created == 2
        assert state.follow_up_status.routing_complete is True
        assert state.approval_required is False
        notes.record_analysis.assert_called_once()
        assert trigger.get_analysis_status()["active_workflows"] == 0

    def test_meeting_end_waits_for_transcript(self, engine, trigger, recordings, store, make_event, now):
        recordings.check_availability.return_value = RecordingAvailability()
        started = engine.start_workflow(make_event(), "me")
        engine.handle_meeting_ended("me", make_event(), now=now)

        waiting = store.get_session(started.session_id)
        assert waiting.stage == Stage.MEETING_MONITORING
        assert waiting.current_step == Step.DETECT_MEETING_END

        recordings.check_availability.return_value = RecordingAvailability(transcript="Bob: done.")
        trigger.perform_recording_checks(now + timedelta(minutes=5))
        done = store.get_session(started.session_id)
        assert done.stage == Stage.COMPLETED
        assert done.meeting_transcript == "Bob: done."

    def test_meeting_without_workflow_gets_post_meeting_session(self, engine, trigger, store, make_event, now):
        state = engine.handle_meeting_ended("me", make_event(), now=now)
        assert "post_meeting_only" in state.tags
        assert state.meeting_brief is None
        assert state.stage == Stage.COMPLETED

    def test_analysis_runner_failure_reaches_trigger(self, engine, trigger, analyzer, store, make_event, now):
        analyzer.analyze.side_effect = RuntimeError("analysis exploded")
        started = engine.start_workflow(make_event(), "me")
        engine.handle_meeting_ended("me", make_event(), now=now)

        state = store.get_session(started.session_id)
        assert state.stage == Stage.ERROR
        assert state.error_stages == ["post_meeting_analysis"]
        trigger_id = state.metadata["analysis_trigger_id"]
        assert trigger.get_trigger(trigger_id).status == "failed"


class TestPostMeeting:
    def test_missing_session(self, engine):
        with pytest.raises(SessionNotFoundError):
            engine.run_post_meeting("cal-missing")

    def test_completed_session_returned_as_is(self, engine, analyzer, make_event):
        done = engine.start_workflow(make_event(), "me", engine.default_options(monitor_meeting=False))
        assert engine.run_post_meeting(done.session_id, "text").status == "completed"
        analyzer.analyze.assert_not_called()

    def test_failed_session_is_not_resumed(self, engine, store, generator, analyzer, make_event):
        generator.generate_brief.side_effect = RuntimeError("LLM down")
        failed = engine.start_workflow(make_event(), "me")

        result = engine.run_post_meeting(failed.session_id, "Alice: hi")
        assert result.status == "failed"
        assert result.error == "Workflow is in error; retry it to resume"
        analyzer.analyze.assert_not_called()
        state = store.get_session(failed.session_id)
        assert state.stage == Stage.ERROR
        assert state.meeting_transcript is None

    def test_orchestration_failure_then_retry(self, engine, store, analyzer, make_event):
        real_orchestrator = engine.orchestrator
        engine.orchestrator = MagicMock()
        engine.orchestrator.process.return_value = PostMeetingResult(stage="failed", error="no plan")

        started = engine.start_workflow(make_event(), "me")
        failed = engine.run_post_meeting(started.session_id, "Alice: hi")
        assert failed.status == "failed"
        assert store.get_session(started.session_id).error_stages == ["follow_up_orchestration"]

        engine.orchestrator = real_orchestrator
        result = engine.retry_session(started.session_id)
        assert result.status == "completed"
        assert analyzer.analyze.call_count == 1

    def test_follow_ups_can_be_disabled(self, engine, store, make_event):
        started = engine.start_workflow(make_event(), "me", engine.default_options(generate_follow_ups=False))
        result = engine.run_post_meeting(started.session_id, "Alice: hi")
        assert result.status == "completed"
        assert store.get_session(started.session_id).follow_up_plan is None

    def test_manual_autonomy_requires_no_external_actions(self, engine, store, make_event):
        started = engine.start_workflow(make_event(), "me", engine.default_options(autonomy_level="manual"))
        engine.run_post_meeting(started.session_id, "Alice: hi")
        state = store.get_session(started.session_id)
        assert all(
            d["payload"]["autonomy_level"] == "manual"
            for d in state.follow_up_plan.model_dump(mode="json")["routing_decisions"]
        )


class TestQueries:
    def test_workflow_status(self, engine, make_event):
        started = engine.start_workflow(make_event(), "me")
        status = engine.get_workflow_status(started.session_id)
        assert status["stage"] == "meeting_monitoring"
        assert status["has_brief"] is True
        assert status["brief_delivered"] is True
        assert engine.get_workflow_status("cal-missing") is None

    def test_user_stats(self, engine, make_event):
        engine.start_workflow(make_event("a"), "me")
        engine.start_workflow(make_event("b"), "me", engine.default_options(monitor_meeting=False))
        engine.start_workflow(make_event("c"), "other")

        stats = engine.get_user_workflow_stats("me")
        assert stats["stats"]["total_sessions"] == 2
        assert stats["stats"]["completed_sessions"] == 1
        assert len(stats["recent_workflows"]) == 2

    def test_approval_interaction_clears_flag(self, engine, store, make_event):
        started = engine.start_workflow(make_event(), "me")
        store.update_session(started.session_id, {"approval_required": True})

        state = engine.record_interaction(started.session_id, "approval", {"by": "me"})
        assert state.approval_required is False
        assert state.user_interactions[0].type == "approval"
        assert engine.record_interaction("cal-missing", "feedback") is None
