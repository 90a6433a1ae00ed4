"""
The calendar workflow session and the rules for moving it between stages.

One CalendarWorkflowState exists per (user, calendar event) run. It is
created when a brief is due, parked in MEETING_MONITORING while the meeting
is upcoming or in progress, and resumed once the recording/transcript shows
up after the meeting ends.

Stage order:
    initialized -> pre_meeting_context -> brief_generation -> brief_delivery
      -> meeting_monitoring -> post_meeting_analysis
        -> follow_up_orchestration -> completed

Stages may be skipped (e.g. brief delivery disabled) but never revisited,
except that a session in ERROR can be retried from any non-terminal stage.
COMPLETED is terminal.
"""

import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from followthrough.exceptions import InvalidStageTransition
from followthrough.models import (
    AutonomyLevel,
    CalendarEvent,
    FollowUpPlan,
    MeetingAnalysisResult,
    MeetingBrief,
    MeetingRecording,
    PreMeetingContext,
    utcnow,
)


# ── Enums ──────────────────────────────────────────────────────

class MeetingStatus(str, Enum):
    SCHEDULED = "scheduled"
    STARTED = "started"
    ENDED = "ended"


class CalendarWorkflowStage(str, Enum):
    INITIALIZED = "initialized"
    PRE_MEETING_CONTEXT = "pre_meeting_context"
    BRIEF_GENERATION = "brief_generation"
    BRIEF_DELIVERY = "brief_delivery"
    MEETING_MONITORING = "meeting_monitoring"
    POST_MEETING_ANALYSIS = "post_meeting_analysis"
    FOLLOW_UP_ORCHESTRATION = "follow_up_orchestration"
    COMPLETED = "completed"
    ERROR = "error"


class CalendarWorkflowStep(str, Enum):
    START = "start"
    GATHER_CONTEXT = "gather_context"
    ANALYZE_PARTICIPANTS = "analyze_participants"
    PREDICT_TOPICS = "predict_topics"
    ASSESS_RISKS = "assess_risks"
    GENERATE_BRIEF = "generate_brief"
    DELIVER_BRIEF = "deliver_brief"
    MONITOR_MEETING_START = "monitor_meeting_start"
    TRACK_MEETING_PROGRESS = "track_meeting_progress"
    DETECT_MEETING_END = "detect_meeting_end"
    EXTRACT_RECORDING = "extract_recording"
    TRIGGER_ANALYSIS = "trigger_analysis"
    PROCESS_ANALYSIS_RESULTS = "process_analysis_results"
    GENERATE_FOLLOW_UP_PLAN = "generate_follow_up_plan"
    ROUTE_FOLLOW_UP_ACTIONS = "route_follow_up_actions"
    FINALIZE = "finalize"
    END = "end"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


# ── Transition table ──────────────────────────────────────────

STAGE_ORDER: List[CalendarWorkflowStage] = [
    CalendarWorkflowStage.INITIALIZED,
    CalendarWorkflowStage.PRE_MEETING_CONTEXT,
    CalendarWorkflowStage.BRIEF_GENERATION,
    CalendarWorkflowStage.BRIEF_DELIVERY,
    CalendarWorkflowStage.MEETING_MONITORING,
    CalendarWorkflowStage.POST_MEETING_ANALYSIS,
    CalendarWorkflowStage.FOLLOW_UP_ORCHESTRATION,
    CalendarWorkflowStage.COMPLETED,
]

PRE_MEETING_STAGES = {
    CalendarWorkflowStage.INITIALIZED,
    CalendarWorkflowStage.PRE_MEETING_CONTEXT,
    CalendarWorkflowStage.BRIEF_GENERATION,
    CalendarWorkflowStage.BRIEF_DELIVERY,
}

POST_MEETING_STAGES = {
    CalendarWorkflowStage.POST_MEETING_ANALYSIS,
    CalendarWorkflowStage.FOLLOW_UP_ORCHESTRATION,
}


def _build_transitions() -> Dict[CalendarWorkflowStage, Set[CalendarWorkflowStage]]:
    table = {}
    for i, stage in enumerate(STAGE_ORDER[:-1]):
        table[stage] = set(STAGE_ORDER[i + 1:]) | {CalendarWorkflowStage.ERROR}
    table[CalendarWorkflowStage.COMPLETED] = set()
    # Retry: back into any working stage, never straight to completed
    table[CalendarWorkflowStage.ERROR] = set(STAGE_ORDER[1:-1])
    return table


ALLOWED_TRANSITIONS = _build_transitions()


# ── Session sub-records ───────────────────────────────────────

class WorkflowOptions(BaseModel):
    """Per-session switches. Defaults come from config.workflow."""
    use_rag: bool = True
    generate_brief: bool = True
    deliver_brief: bool = True
    delivery_methods: List[str] = Field(default_factory=lambda: ["email", "dashboard"])
    monitor_meeting: bool = True
    process_post_meeting: bool = True
    generate_follow_ups: bool = True
    autonomy_level: AutonomyLevel = AutonomyLevel.ASSISTED
    max_wait_time_minutes: int = 60
    retry_attempts: int = 3


class ProcessingMetadata(BaseModel):
    agents_used: List[str] = Field(default_factory=list)
    rag_enhanced: bool = False
    performance_metrics: Dict[str, float] = Field(default_factory=dict)
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None


class BriefDeliveryStatus(BaseModel):
    delivered: bool = False
    delivery_methods: List[str] = Field(default_factory=list)
    delivery_time: Optional[datetime] = None
    recipients: List[str] = Field(default_factory=list)


class FollowUpStatus(BaseModel):
    emails_generated: int = 0
    meetings_scheduled: int = 0
    tasks_created: int = 0
    routing_complete: bool = False


class UserInteraction(BaseModel):
    type: str  # approval, modification, rejection, feedback
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


# ── The session ───────────────────────────────────────────────

class CalendarWorkflowState(BaseModel):
    """
    A persisted workflow session.

    The first block of fields is the live workflow state. The second block
    is the indexed/analytics view kept alongside it; most of it is derived
    from the calendar event by refresh_derived_fields().
    """
    session_id: str
    user_id: str
    event_id: str
    calendar_event: CalendarEvent
    meeting_status: MeetingStatus = MeetingStatus.SCHEDULED
    pre_context: Optional[PreMeetingContext] = None
    meeting_brief: Optional[MeetingBrief] = None
    meeting_transcript: Optional[str] = None
    meeting_recording: Optional[MeetingRecording] = None
    analysis_result: Optional[MeetingAnalysisResult] = None
    follow_up_plan: Optional[FollowUpPlan] = None
    stage: CalendarWorkflowStage = CalendarWorkflowStage.INITIALIZED
    current_step: CalendarWorkflowStep = CalendarWorkflowStep.START
    progress: int = Field(default=0, ge=0, le=100)
    error: Optional[str] = None
    context: WorkflowOptions = Field(default_factory=WorkflowOptions)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    processing_metadata: ProcessingMetadata = Field(default_factory=ProcessingMetadata)
    brief_delivery_status: BriefDeliveryStatus = Field(default_factory=BriefDeliveryStatus)
    follow_up_status: FollowUpStatus = Field(default_factory=FollowUpStatus)
    autonomy_level: AutonomyLevel = AutonomyLevel.ASSISTED
    approval_required: bool = False
    user_interactions: List[UserInteraction] = Field(default_factory=list)

    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None
    scheduled_meeting_time: Optional[datetime] = None
    actual_meeting_start_time: Optional[datetime] = None
    actual_meeting_end_time: Optional[datetime] = None
    participant_emails: List[str] = Field(default_factory=list)
    meeting_organizer: Optional[str] = None
    is_recurring: bool = False
    recurring_series_id: Optional[str] = None
    brief_generation_time_ms: Optional[int] = None
    analysis_processing_time_ms: Optional[int] = None
    follow_up_generation_time_ms: Optional[int] = None
    had_errors: bool = False
    error_stages: List[str] = Field(default_factory=list)
    retry_count: int = 0
    tags: List[str] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.stage == CalendarWorkflowStage.COMPLETED


def new_session_id() -> str:
    """Session ids sort roughly by creation time: cal-<ms>-<random>."""
    return f"cal-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def create_session_state(
    event: CalendarEvent,
    user_id: str,
    options: Optional[WorkflowOptions] = None,
    now: Optional[datetime] = None,
) -> CalendarWorkflowState:
    """Build a fresh INITIALIZED session for a calendar event."""
    now = now or utcnow()
    options = options or WorkflowOptions()
    state = CalendarWorkflowState(
        session_id=new_session_id(),
        user_id=user_id,
        event_id=event.event_id,
        calendar_event=event,
        context=options,
        autonomy_level=options.autonomy_level,
        processing_metadata=ProcessingMetadata(start_time=now),
        created_at=now,
        updated_at=now,
    )
    return refresh_derived_fields(state)


def refresh_derived_fields(state: CalendarWorkflowState) -> CalendarWorkflowState:
    """Mirror the calendar event into the indexed session fields."""
    event = state.calendar_event
    state.scheduled_meeting_time = event.start_time
    state.participant_emails = sorted({a.lower() for a in event.attendees})
    state.meeting_organizer = event.organizer.lower() if event.organizer else None
    state.is_recurring = event.is_recurring
    state.recurring_series_id = event.recurring_event_id
    return state


def can_transition(current: CalendarWorkflowStage, target: CalendarWorkflowStage) -> bool:
    if current == target:
        return current != CalendarWorkflowStage.COMPLETED
    return target in ALLOWED_TRANSITIONS[current]


def transition(
    state: CalendarWorkflowState,
    stage: CalendarWorkflowStage,
    step: Optional[CalendarWorkflowStep] = None,
    progress: Optional[int] = None,
    error: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CalendarWorkflowState:
    """
    Move a session to a new stage, in place.

    Staying in the same stage is allowed (step/progress updates) for any
    non-terminal session. Progress never decreases.

    Raises:
        InvalidStageTransition: if the move is not in ALLOWED_TRANSITIONS
    """
    now = now or utcnow()
    previous = state.stage

    if not can_transition(previous, stage):
        raise InvalidStageTransition(previous.value, stage.value)

    state.stage = stage
    if step is not None:
        state.current_step = step
    if progress is not None:
        state.progress = max(state.progress, min(progress, 100))

    if stage == CalendarWorkflowStage.ERROR:
        state.had_errors = True
        if previous != CalendarWorkflowStage.ERROR:
            state.error_stages.append(previous.value)
        state.error = error or state.error or "Unknown error"
    elif previous == CalendarWorkflowStage.ERROR:
        state.error = None

    if stage == CalendarWorkflowStage.COMPLETED:
        state.progress = 100
        state.current_step = CalendarWorkflowStep.END
        state.completed_at = now
        state.processing_metadata.end_time = now
        started = state.processing_metadata.start_time
        state.processing_time_ms = int((now - started).total_seconds() * 1000)

    state.updated_at = now
    return state


def failed_stage(state: CalendarWorkflowState) -> Optional[CalendarWorkflowStage]:
    """The stage a session in ERROR failed in, if recorded."""
    if not state.error_stages:
        return None
    return CalendarWorkflowStage(state.error_stages[-1])
