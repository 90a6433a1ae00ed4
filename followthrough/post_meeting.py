"""
Post-meeting orchestration: analysis result in, follow-ups out.

    analysis result
      -> FollowUpPlanner.create_plan()
        -> FollowUpRouter.route()     (Gmail drafts, calendar holds, tasks)
          -> email drafts + scheduling requests for review

The incoming payload comes from different producers (the workflow engine,
the analysis trigger, the HTTP API) that name the analysis differently, so
it is looked up under several keys:

    meeting_analysis_result | analysis_result | meeting_result |
    result.meeting_analysis

What actually happens externally depends on the effective autonomy level,
the more restrictive of the session's and the plan's:

    manual     nothing leaves FollowThrough; drafts/requests are returned
    assisted   Gmail drafts are created (never sent); tasks are stored
    automated  as assisted, plus tentative follow-up events on the calendar
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from followthrough.follow_up import FollowUpPlanner
from followthrough.models import (
    AutonomyLevel,
    EmailFollowUp,
    FollowUpPlan,
    MeetingAnalysisResult,
    MeetingFollowUp,
    RoutingDecision,
    RoutingType,
    TaskFollowUp,
)
from followthrough.router import FollowUpRouter, RoutingOutcome

logger = logging.getLogger(__name__)

EMAIL_FOOTER = (
    "\n\n--\nDrafted by FollowThrough from the notes of \"{title}\". "
    "Please review before sending."
)

AUTONOMY_RANK = {
    AutonomyLevel.MANUAL: 0,
    AutonomyLevel.ASSISTED: 1,
    AutonomyLevel.AUTOMATED: 2,
}


class EmailDraft(BaseModel):
    email_id: str
    to: List[str] = Field(default_factory=list)
    subject: str
    body: str
    priority: str = "medium"
    gmail_draft_id: Optional[str] = None


class SchedulingRequest(BaseModel):
    title: str
    attendees: List[str] = Field(default_factory=list)
    duration_minutes: int = 30
    timeframe: str = "next_week"
    agenda: List[str] = Field(default_factory=list)
    calendar_event_id: Optional[str] = None


class PostMeetingResult(BaseModel):
    stage: str  # completed, failed
    meeting_id: Optional[str] = None
    plan: Optional[FollowUpPlan] = None
    routing: List[RoutingOutcome] = Field(default_factory=list)
    email_drafts: List[EmailDraft] = Field(default_factory=list)
    scheduling_requests: List[SchedulingRequest] = Field(default_factory=list)
    error: Optional[str] = None


def extract_analysis(payload: Dict[str, Any]) -> Optional[MeetingAnalysisResult]:
    """Find the analysis result in a payload, whatever key it came under."""
    candidates = [
        payload.get("meeting_analysis_result"),
        payload.get("analysis_result"),
        payload.get("meeting_result"),
    ]
    result = payload.get("result")
    if isinstance(result, dict):
        candidates.append(result.get("meeting_analysis"))

    for candidate in candidates:
        if candidate is None:
            continue
        if isinstance(candidate, MeetingAnalysisResult):
            return candidate
        try:
            return MeetingAnalysisResult.model_validate(candidate)
        except ValidationError as e:
            logger.warning("Ignoring malformed analysis result in payload: %s", e)
    return None


class PostMeetingOrchestrator:
    """
    Usage:
        orchestrator = PostMeetingOrchestrator(planner, router, gmail_client=gmail, task_store=tasks)
        result = orchestrator.process({"meeting_analysis_result": analysis, "autonomy_level": "assisted"})
    """

    def __init__(
        self,
        planner: FollowUpPlanner,
        router: FollowUpRouter,
        gmail_client=None,
        calendar_client=None,
        task_store=None,
    ):
        self.planner = planner
        self.router = router
        self.gmail_client = gmail_client
        self.calendar_client = calendar_client
        self.task_store = task_store
        self._register_default_handlers()

    def _register_default_handlers(self) -> None:
        if not self.router.has_handler(RoutingType.EMAIL_TRIAGE):
            self.router.register(RoutingType.EMAIL_TRIAGE, self._handle_email)
        if not self.router.has_handler(RoutingType.CALENDAR_SCHEDULING):
            self.router.register(RoutingType.CALENDAR_SCHEDULING, self._handle_scheduling)
        if not self.router.has_handler(RoutingType.TASK_MANAGEMENT):
            self.router.register(RoutingType.TASK_MANAGEMENT, self._handle_task)

    def process(self, payload: Dict[str, Any]) -> PostMeetingResult:
        analysis = extract_analysis(payload)
        if analysis is None:
            logger.error("Post-meeting payload has no meeting analysis result")
            return PostMeetingResult(stage="failed", error="No meeting analysis result found in payload")

        plan = self.planner.create_plan(analysis)
        autonomy = self._effective_autonomy(payload.get("autonomy_level"), plan)
        meeting_start = payload.get("meeting_start")

        for decision in plan.routing_decisions:
            decision.payload["autonomy_level"] = autonomy.value
            decision.payload["meeting_title"] = analysis.meeting_title
            if meeting_start is not None:
                decision.payload["meeting_start"] = (
                    meeting_start.isoformat() if isinstance(meeting_start, datetime) else meeting_start
                )

        outcomes = self.router.route(plan)
        results = {o.decision_id: o.result for o in outcomes if o.status == "routed"}

        drafts = [
            self._draft_for(email, analysis.meeting_title, results.get(f"route-email-{email.id}", {}))
            for email in plan.email_follow_ups
        ]
        requests_ = [
            self._request_for(meeting, results.get(f"route-meeting-{meeting.id}", {}))
            for meeting in plan.meeting_follow_ups
        ]

        logger.info(
            "Post-meeting processing for '%s' done: %d draft(s), %d scheduling request(s), autonomy %s",
            analysis.meeting_title, len(drafts), len(requests_), autonomy.value,
        )
        return PostMeetingResult(
            stage="completed",
            meeting_id=analysis.meeting_id,
            plan=plan,
            routing=outcomes,
            email_drafts=drafts,
            scheduling_requests=requests_,
        )

    @staticmethod
    def _effective_autonomy(requested, plan: FollowUpPlan) -> AutonomyLevel:
        try:
            session_level = AutonomyLevel(requested) if requested else AutonomyLevel.ASSISTED
        except ValueError:
            session_level = AutonomyLevel.MANUAL
        plan_level = plan.metadata.autonomy_level
        return min(session_level, plan_level, key=lambda level: AUTONOMY_RANK[level])

    @staticmethod
    def _draft_for(email: EmailFollowUp, title: str, routed: Dict[str, Any]) -> EmailDraft:
        return EmailDraft(
            email_id=email.id,
            to=email.recipients,
            subject=email.subject,
            body=email.content + EMAIL_FOOTER.format(title=title),
            priority=email.priority.value,
            gmail_draft_id=routed.get("draft_id"),
        )

    @staticmethod
    def _request_for(meeting: MeetingFollowUp, routed: Dict[str, Any]) -> SchedulingRequest:
        return SchedulingRequest(
            title=meeting.title,
            attendees=meeting.participants,
            duration_minutes=meeting.suggested_duration_minutes,
            timeframe=meeting.suggested_timeframe,
            agenda=meeting.agenda,
            calendar_event_id=routed.get("calendar_event_id"),
        )

    # ── Default routing handlers ───────────────────────────────

    def _handle_email(self, decision: RoutingDecision) -> Dict[str, Any]:
        email = EmailFollowUp.model_validate(decision.payload["email"])
        autonomy = AutonomyLevel(decision.payload.get("autonomy_level", "manual"))
        if self.gmail_client is None or autonomy == AutonomyLevel.MANUAL:
            return {"queued_for_review": True}

        body = email.content + EMAIL_FOOTER.format(title=decision.payload.get("meeting_title", ""))
        draft_id = self.gmail_client.create_draft(email.recipients, email.subject, body)
        return {"draft_id": draft_id}

    def _handle_scheduling(self, decision: RoutingDecision) -> Dict[str, Any]:
        meeting = MeetingFollowUp.model_validate(decision.payload["meeting"])
        autonomy = AutonomyLevel(decision.payload.get("autonomy_level", "manual"))
        meeting_start = decision.payload.get("meeting_start")

        if self.calendar_client is None or autonomy != AutonomyLevel.AUTOMATED or not meeting_start:
            return {"queued_for_review": True}

        # Same slot next week, marked tentative until someone confirms
        start = datetime.fromisoformat(meeting_start) + timedelta(days=7)
        end = start + timedelta(minutes=meeting.suggested_duration_minutes)
        created = self.calendar_client.create_event({
            "summary": meeting.title,
            "description": "Agenda:\n" + "\n".join(f"- {item}" for item in meeting.agenda),
            "start": {"dateTime": start.isoformat()},
            "end": {"dateTime": end.isoformat()},
            "attendees": [{"email": p} for p in meeting.participants],
            "status": "tentative",
        })
        return {"calendar_event_id": created.get("id")}

    def _handle_task(self, decision: RoutingDecision) -> Dict[str, Any]:
        task = TaskFollowUp.model_validate(decision.payload["task"])
        if self.task_store is None:
            return {"queued_for_review": True}
        record = self.task_store.add_task(
            task,
            meeting_id=decision.payload.get("originating_meeting", ""),
            meeting_title=decision.payload.get("meeting_title", ""),
        )
        return {"task_id": record["id"]}
