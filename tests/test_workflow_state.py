"""Tests for the workflow session state machine."""

import pytest
from datetime import timedelta

from followthrough.exceptions import InvalidStageTransition
from followthrough.workflow_state import (
    ALLOWED_TRANSITIONS,
    CalendarWorkflowStage as Stage,
    CalendarWorkflowStep as Step,
    WorkflowOptions,
    can_transition,
    create_session_state,
    failed_stage,
    transition,
)
from followthrough.models import AutonomyLevel


@pytest.fixture
def state(make_event, now):
    return create_session_state(make_event(attendees=["Bob@Example.com", "alice@example.com"]), "me", now=now)


class TestCreateSession:
    def test_session_id_format(self, state):
        assert state.session_id.startswith("cal-")
        assert len(state.session_id.split("-")) == 3

    def test_starts_initialized(self, state, now):
        assert state.stage == Stage.INITIALIZED
        assert state.current_step == Step.START
        assert state.progress == 0
        assert state.created_at == now
        assert state.processing_metadata.start_time == now

    def test_derived_fields_mirror_event(self, state):
        assert state.participant_emails == ["alice@example.com", "bob@example.com"]
        assert state.meeting_organizer == "alice@example.com"
        assert state.scheduled_meeting_time == state.calendar_event.start_time

    def test_autonomy_from_options(self, make_event, now):
        options = WorkflowOptions(autonomy_level=AutonomyLevel.MANUAL)
        state = create_session_state(make_event(), "me", options, now)
        assert state.autonomy_level == AutonomyLevel.MANUAL


class TestTransitionTable:
    def test_completed_is_terminal(self):
        assert ALLOWED_TRANSITIONS[Stage.COMPLETED] == set()
        assert not can_transition(Stage.COMPLETED, Stage.COMPLETED)

    def test_every_working_stage_can_fail(self):
        for stage in Stage:
            if stage not in (Stage.COMPLETED, Stage.ERROR):
                assert can_transition(stage, Stage.ERROR)

    def test_stages_can_be_skipped_forward(self):
        assert can_transition(Stage.PRE_MEETING_CONTEXT, Stage.MEETING_MONITORING)
        assert can_transition(Stage.INITIALIZED, Stage.COMPLETED)

    def test_no_going_back(self):
        assert not can_transition(Stage.BRIEF_DELIVERY, Stage.BRIEF_GENERATION)
        assert not can_transition(Stage.MEETING_MONITORING, Stage.PRE_MEETING_CONTEXT)

    def test_error_retries_into_working_stages_only(self):
        assert can_transition(Stage.ERROR, Stage.BRIEF_GENERATION)
        assert can_transition(Stage.ERROR, Stage.POST_MEETING_ANALYSIS)
        assert not can_transition(Stage.ERROR, Stage.COMPLETED)
        assert not can_transition(Stage.ERROR, Stage.INITIALIZED)


class TestTransition:
    def test_moves_stage_and_step(self, state):
        transition(state, Stage.PRE_MEETING_CONTEXT, Step.GATHER_CONTEXT, 10)
        assert state.stage == Stage.PRE_MEETING_CONTEXT
        assert state.current_step == Step.GATHER_CONTEXT
        assert state.progress == 10

    def test_invalid_move_raises(self, state):
        transition(state, Stage.BRIEF_DELIVERY)
        with pytest.raises(InvalidStageTransition):
            transition(state, Stage.PRE_MEETING_CONTEXT)

    def test_progress_never_decreases(self, state):
        transition(state, Stage.BRIEF_GENERATION, progress=40)
        transition(state, Stage.BRIEF_GENERATION, progress=20)
        assert state.progress == 40

    def test_progress_capped_at_100(self, state):
        transition(state, Stage.BRIEF_GENERATION, progress=150)
        assert state.progress == 100

    def test_error_records_failed_stage(self, state):
        transition(state, Stage.BRIEF_GENERATION)
        transition(state, Stage.ERROR, error="LLM down")
        assert state.had_errors is True
        assert state.error == "LLM down"
        assert state.error_stages == ["brief_generation"]
        assert failed_stage(state) == Stage.BRIEF_GENERATION

    def test_leaving_error_clears_message(self, state):
        transition(state, Stage.BRIEF_GENERATION)
        transition(state, Stage.ERROR, error="boom")
        transition(state, Stage.BRIEF_GENERATION)
        assert state.error is None
        assert state.had_errors is True

    def test_completion_stamps_timing(self, state, now):
        done = now + timedelta(seconds=3)
        transition(state, Stage.COMPLETED, now=done)
        assert state.progress == 100
        assert state.current_step == Step.END
        assert state.completed_at == done
        assert state.processing_time_ms == 3000
        assert state.is_terminal

    def test_cannot_leave_completed(self, state):
        transition(state, Stage.COMPLETED)
        with pytest.raises(InvalidStageTransition):
            transition(state, Stage.ERROR)

    def test_failed_stage_none_without_errors(self, state):
        assert failed_stage(state) is None
