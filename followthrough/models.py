"""
Data models for FollowThrough.

These Pydantic models define the shape of data flowing through a meeting's
life, before and after it happens:

  CalendarEvent (raw from API)
    -> PreMeetingContext (participants, history, predicted topics, risks)
      -> MeetingBrief (AI-generated prep)
        -> BriefDeliveryResult (one per channel)
  ... meeting happens ...
  MeetingRecording + transcript
    -> MeetingAnalysisResult (action items, decisions, summary)
      -> FollowUpPlan (emails, meetings, tasks, routing decisions)

The workflow session that threads all of this together lives in
workflow_state.py.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from enum import Enum


def utcnow() -> datetime:
    """Timezone-aware 'now'. Every timestamp in the system is UTC-aware."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Enums ──────────────────────────────────────────────────────

class Priority(str, Enum):
    """Priority of a follow-up action. Drives routing order."""
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class EventStatus(str, Enum):
    """Google Calendar event status."""
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class AutonomyLevel(str, Enum):
    """How much the assistant may do without asking the user first."""
    MANUAL = "manual"
    ASSISTED = "assisted"
    AUTOMATED = "automated"


class DeliveryMethod(str, Enum):
    """Channels a brief can be delivered through."""
    EMAIL = "email"
    SLACK = "slack"
    CALENDAR = "calendar"
    DASHBOARD = "dashboard"


class RoutingType(str, Enum):
    """Which downstream workflow handles a follow-up action."""
    EMAIL_TRIAGE = "email_triage"
    MEETING_ANALYSIS = "meeting_analysis"
    TASK_MANAGEMENT = "task_management"
    CALENDAR_SCHEDULING = "calendar_scheduling"


# ── Calendar Event (raw from API) ─────────────────────────────

class CalendarEvent(BaseModel):
    """
    An event fetched from the Google Calendar API.

    Example Google API response fields -> our fields:
      event['id']                    -> event_id
      event['summary']               -> title
      event['start']['dateTime']     -> start_time
      event['status']                -> status (cancelled = deleted)
      event['updated']               -> updated (used to debounce changes)
      [a['email'] for a in event.get('attendees', [])] -> attendees
    """
    event_id: str
    title: str
    start_time: datetime
    end_time: datetime
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    organizer: Optional[str] = None
    status: EventStatus = EventStatus.CONFIRMED
    is_recurring: bool = False
    recurring_event_id: Optional[str] = None
    is_all_day: bool = False
    meeting_link: Optional[str] = None
    calendar_id: str = "primary"
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    source: str = "google_calendar"

    @field_validator("start_time", "end_time", "created", "updated")
    @classmethod
    def _make_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(value) if value is not None else None

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.CANCELLED

    @classmethod
    def from_google_api(cls, raw_event: dict, calendar_id: str = "primary") -> "CalendarEvent":
        """
        Parse a Google Calendar API event dict into a CalendarEvent.

        All-day events carry {"date": ...} instead of {"dateTime": ...};
        they are parsed as midnight UTC.
        """
        is_all_day = "date" in raw_event.get("start", {})

        if is_all_day:
            start_time = ensure_aware(datetime.fromisoformat(raw_event["start"]["date"]))
            end_time = ensure_aware(datetime.fromisoformat(raw_event["end"]["date"]))
        else:
            start_time = ensure_aware(_parse_rfc3339(raw_event["start"]["dateTime"]))
            end_time = ensure_aware(_parse_rfc3339(raw_event["end"]["dateTime"]))

        attendees = [
            a.get("email", "")
            for a in raw_event.get("attendees", [])
            if a.get("email") and not a.get("resource")
        ]

        # Meeting link: hangoutLink first, then a video conference entry point
        meeting_link = raw_event.get("hangoutLink")
        if not meeting_link:
            entry_points = raw_event.get("conferenceData", {}).get("entryPoints", [])
            for ep in entry_points:
                if ep.get("entryPointType") == "video":
                    meeting_link = ep.get("uri")
                    break

        created = raw_event.get("created")
        updated = raw_event.get("updated")

        return cls(
            event_id=raw_event["id"],
            title=raw_event.get("summary", "(No Title)"),
            start_time=start_time,
            end_time=end_time,
            description=raw_event.get("description"),
            location=raw_event.get("location"),
            attendees=attendees,
            organizer=raw_event.get("organizer", {}).get("email"),
            status=raw_event.get("status", "confirmed"),
            is_recurring=raw_event.get("recurringEventId") is not None,
            recurring_event_id=raw_event.get("recurringEventId"),
            is_all_day=is_all_day,
            meeting_link=meeting_link,
            calendar_id=calendar_id,
            created=_parse_rfc3339(created) if created else None,
            updated=_parse_rfc3339(updated) if updated else None,
        )


def _parse_rfc3339(value: str) -> datetime:
    # Google uses a trailing "Z" which fromisoformat only accepts on 3.11+
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


# ── Pre-meeting context (RAG) ─────────────────────────────────

class ParticipantAnalysis(BaseModel):
    """What we know about one attendee from past sessions and notes."""
    email: str
    meeting_count: int = 0
    last_met: Optional[datetime] = None
    is_organizer: bool = False
    open_action_items: List[str] = Field(default_factory=list)
    notes: str = ""


class HistoricalMeeting(BaseModel):
    """A past meeting retrieved as context for an upcoming one."""
    meeting_id: str = ""
    title: str
    date: str = ""
    summary: str = ""
    action_items: List[str] = Field(default_factory=list)
    decisions: List[str] = Field(default_factory=list)
    relevance_score: float = 0.0


class TopicPrediction(BaseModel):
    topic: str
    likelihood: float = Field(default=0.5, ge=0.0, le=1.0)
    rationale: str = ""


class Risk(BaseModel):
    description: str
    severity: str = "medium"  # high, medium, low
    mitigation: str = ""


class RiskAssessment(BaseModel):
    overall_risk: str = "low"
    risks: List[Risk] = Field(default_factory=list)


class PreparationRecommendation(BaseModel):
    recommendation: str
    priority: str = "medium"
    time_minutes: int = 5


class PreMeetingContext(BaseModel):
    """
    Everything gathered before a brief is written.

    rag_enhanced is True only when retrieval actually found historical
    material to ground the brief in.
    """
    meeting_id: str
    participants: List[ParticipantAnalysis] = Field(default_factory=list)
    historical_meetings: List[HistoricalMeeting] = Field(default_factory=list)
    predicted_topics: List[TopicPrediction] = Field(default_factory=list)
    risk_assessment: RiskAssessment = Field(default_factory=RiskAssessment)
    recommendations: List[PreparationRecommendation] = Field(default_factory=list)
    rag_enhanced: bool = False
    generated_at: datetime = Field(default_factory=utcnow)


# ── AI-Generated Meeting Brief ────────────────────────────────

class TalkingPoint(BaseModel):
    """A single talking point for a meeting, with category and priority."""
    point: str
    category: str = "discussion"  # question, discussion, update, follow-up
    priority: str = "medium"       # high, medium, low


class MeetingBrief(BaseModel):
    """AI-generated preparation brief for a single meeting."""
    brief_id: str
    meeting_id: str
    title: str
    summary: str = ""
    objectives: List[str] = Field(default_factory=list)
    agenda: List[str] = Field(default_factory=list)
    talking_points: List[TalkingPoint] = Field(default_factory=list)
    suggested_questions: List[str] = Field(default_factory=list)
    participant_prep: List[str] = Field(default_factory=list)
    context_notes: str = ""
    preparation_time_minutes: int = 5
    generated_at: datetime = Field(default_factory=utcnow)

    def to_email_context(self, event: CalendarEvent) -> dict:
        """Convert brief + event to a dict for Jinja2 template rendering."""
        return {
            "brief": self,
            "event": event,
            "start": event.start_time.strftime("%A, %B %d at %I:%M %p %Z"),
            "duration_minutes": event.duration_minutes,
            "generated_at": self.generated_at.strftime("%I:%M %p"),
        }

    def to_plain_text(self) -> str:
        """Compact text rendition used for Slack and calendar descriptions."""
        lines = [f"Brief: {self.title}", "", self.summary]
        if self.objectives:
            lines.append("")
            lines.append("Objectives:")
            lines.extend(f"- {o}" for o in self.objectives)
        if self.talking_points:
            lines.append("")
            lines.append("Talking points:")
            lines.extend(f"- [{tp.priority}] {tp.point}" for tp in self.talking_points)
        if self.suggested_questions:
            lines.append("")
            lines.append("Questions:")
            lines.extend(f"- {q}" for q in self.suggested_questions)
        return "\n".join(lines).strip()


# ── Delivery ──────────────────────────────────────────────────

class BriefDeliveryResult(BaseModel):
    """Outcome of delivering a brief through one channel."""
    method: str
    status: str = "delivered"  # delivered, failed
    recipients: List[str] = Field(default_factory=list)
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None


class ScheduledDelivery(BaseModel):
    """A brief delivery planned for later."""
    brief_id: str
    meeting_id: str
    scheduled_for: datetime
    methods: List[str] = Field(default_factory=list)
    business_hours_adjusted: bool = False


# ── Post-meeting analysis ─────────────────────────────────────

class MeetingRecording(BaseModel):
    """A Google Meet recording found in Drive."""
    recording_id: str
    event_id: str
    file_name: str = ""
    mime_type: str = ""
    format: str = "mp4"  # mp4, webm, audio
    url: Optional[str] = None
    size_bytes: Optional[int] = None
    created_at: Optional[datetime] = None


class ActionItem(BaseModel):
    id: str
    task: str
    assignee: str = ""
    due_date: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    status: str = "open"  # open, in_progress, completed
    context: str = ""
    dependencies: List[str] = Field(default_factory=list)


class Decision(BaseModel):
    id: str
    description: str
    decision_maker: str = ""
    rationale: str = ""
    impact: str = "medium"  # high, medium, low


class Topic(BaseModel):
    name: str
    relevance: float = 0.5
    key_points: List[str] = Field(default_factory=list)


class MeetingSummary(BaseModel):
    summary: str = ""
    key_decisions: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)


class MeetingAnalysisResult(BaseModel):
    """What came out of a meeting, extracted from its transcript."""
    meeting_id: str
    meeting_title: str
    participants: List[str] = Field(default_factory=list)
    summary: MeetingSummary = Field(default_factory=MeetingSummary)
    action_items: List[ActionItem] = Field(default_factory=list)
    decisions: List[Decision] = Field(default_factory=list)
    topics: List[Topic] = Field(default_factory=list)
    follow_up_required: bool = False
    analyzed_at: datetime = Field(default_factory=utcnow)


# ── Follow-up orchestration ───────────────────────────────────

class EmailFollowUp(BaseModel):
    id: str
    type: str  # action_item_notification, decision_announcement
    priority: Priority = Priority.MEDIUM
    recipients: List[str] = Field(default_factory=list)
    subject: str
    content: str
    related_action_items: List[str] = Field(default_factory=list)


class MeetingFollowUp(BaseModel):
    id: str
    type: str = "follow_up_meeting"
    title: str
    participants: List[str] = Field(default_factory=list)
    suggested_duration_minutes: int = 30
    suggested_timeframe: str = "next_week"
    agenda: List[str] = Field(default_factory=list)
    related_decisions: List[str] = Field(default_factory=list)
    related_action_items: List[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM


class TaskFollowUp(BaseModel):
    id: str
    action_item_id: str
    title: str
    description: str = ""
    assignee: str = ""
    due_date: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    dependencies: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class RoutingDecision(BaseModel):
    """One follow-up action handed to a downstream workflow."""
    id: str
    type: RoutingType
    target: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 3  # 1 (urgent) .. 4 (low)
    dependencies: List[str] = Field(default_factory=list)
    status: str = "pending"  # pending, routed, failed
    error: Optional[str] = None


class OrchestrationMetadata(BaseModel):
    total_actions: int = 0
    estimated_completion_minutes: int = 0
    requires_approval: bool = False
    autonomy_level: AutonomyLevel = AutonomyLevel.AUTOMATED


class FollowUpPlan(BaseModel):
    """The full set of follow-ups planned for one meeting."""
    plan_id: str
    meeting_id: str
    email_follow_ups: List[EmailFollowUp] = Field(default_factory=list)
    meeting_follow_ups: List[MeetingFollowUp] = Field(default_factory=list)
    task_follow_ups: List[TaskFollowUp] = Field(default_factory=list)
    routing_decisions: List[RoutingDecision] = Field(default_factory=list)
    metadata: OrchestrationMetadata = Field(default_factory=OrchestrationMetadata)
    created_at: datetime = Field(default_factory=utcnow)
