"""
Pre-meeting context gathering (the RAG step before a brief is written).

Three sources feed a PreMeetingContext:

1. Past workflow sessions: how often we've met each participant, when last,
   and what is still open with them.
2. Meeting notes: past meetings similar to this one (same title, same
   recurring series, overlapping attendees), ranked by relevance. This is
   the retrieval that grounds the brief.
3. Claude: predicted topics, risks and preparation recommendations, given
   the event and everything retrieved above.

If Claude is unavailable or answers in an unexpected format, topics, risks
and recommendations are derived from the event and the retrieved history
instead, so a brief can always be written.
"""

import json
import logging
from datetime import datetime
from typing import List, Optional

import anthropic

from followthrough.llm import LLMClient, parse_json_response
from followthrough.meeting_notes import MeetingNotesStore
from followthrough.models import (
    CalendarEvent,
    HistoricalMeeting,
    ParticipantAnalysis,
    PreMeetingContext,
    PreparationRecommendation,
    Risk,
    RiskAssessment,
    TopicPrediction,
)
from followthrough.session_store import SessionStore

logger = logging.getLogger(__name__)

LARGE_MEETING_ATTENDEES = 8

SYSTEM_PROMPT = """You help someone prepare for an upcoming meeting. Given the meeting \
details and notes from related past meetings, predict what will come up and what could go wrong.

ALWAYS respond with valid JSON matching this schema:
{
    "predicted_topics": [{"topic": "...", "likelihood": 0.0-1.0, "rationale": "..."}],
    "overall_risk": "low|medium|high",
    "risks": [{"description": "...", "severity": "low|medium|high", "mitigation": "..."}],
    "recommendations": [{"recommendation": "...", "priority": "low|medium|high", "time_minutes": 5}]
}

3-5 topics, at most 3 risks, 2-4 recommendations. Be specific to this meeting.
ONLY output valid JSON."""


class PreMeetingContextAgent:
    """
    Usage:
        agent = PreMeetingContextAgent(llm, session_store, notes_store)
        context = agent.gather_context(event, user_id="me")
    """

    def __init__(
        self,
        llm: Optional[LLMClient],
        session_store: SessionStore,
        notes_store: MeetingNotesStore,
        history_limit: int = 5,
    ):
        self.llm = llm
        self.session_store = session_store
        self.notes_store = notes_store
        self.history_limit = history_limit

    def gather_context(
        self, event: CalendarEvent, user_id: str, use_rag: bool = True
    ) -> PreMeetingContext:
        history = self.retrieve_history(event) if use_rag else []
        participants = self.analyze_participants(event, user_id)

        predictions = self._predict_with_llm(event, participants, history)
        if predictions is None:
            predictions = self._heuristic_predictions(event, participants, history)
        topics, risk_assessment, recommendations = predictions

        context = PreMeetingContext(
            meeting_id=event.event_id,
            participants=participants,
            historical_meetings=history,
            predicted_topics=topics,
            risk_assessment=risk_assessment,
            recommendations=recommendations,
            rag_enhanced=bool(history),
        )
        logger.info(
            "Context for '%s': %d participants, %d related meetings, %d topics",
            event.title, len(participants), len(history), len(topics),
        )
        return context

    # ── Retrieval ──────────────────────────────────────────────

    def retrieve_history(self, event: CalendarEvent) -> List[HistoricalMeeting]:
        scored = self.notes_store.get_relevant_notes(
            title=event.title,
            attendees=event.attendees,
            series_id=event.recurring_event_id,
            exclude_meeting_id=event.event_id,
            limit=self.history_limit,
        )
        if not scored:
            return []

        top_score = scored[0][0]
        return [
            HistoricalMeeting(
                meeting_id=note.meeting_id,
                title=note.meeting_title,
                date=note.date,
                summary=note.content,
                action_items=note.action_items,
                decisions=note.decisions,
                relevance_score=round(score / top_score, 2),
            )
            for score, note in scored
        ]

    def analyze_participants(self, event: CalendarEvent, user_id: str) -> List[ParticipantAnalysis]:
        """Meeting history with each attendee, from past sessions and notes."""
        analyses = []
        organizer = (event.organizer or "").lower()

        for email in event.attendees:
            email = email.lower()
            past = [
                s for s in self.session_store.get_sessions_by_participant(email)
                if s.user_id == user_id
                and s.event_id != event.event_id
                and s.scheduled_meeting_time is not None
                and s.scheduled_meeting_time < event.start_time
            ]
            last_met: Optional[datetime] = max(
                (s.scheduled_meeting_time for s in past), default=None
            )
            open_items = [
                item["action"] for item in self.notes_store.get_open_action_items(attendee=email)
            ]
            analyses.append(
                ParticipantAnalysis(
                    email=email,
                    meeting_count=len(past),
                    last_met=last_met,
                    is_organizer=(email == organizer),
                    open_action_items=open_items[:5],
                    notes="First meeting together" if not past else "",
                )
            )
        return analyses

    # ── Predictions ────────────────────────────────────────────

    def _predict_with_llm(self, event, participants, history):
        if self.llm is None:
            return None

        prompt = self._build_prompt(event, participants, history)
        try:
            response_text = self.llm.complete(SYSTEM_PROMPT, prompt)
        except anthropic.APIError as e:
            logger.error(f"Claude API error predicting topics for '{event.title}': {e}")
            return None

        data = parse_json_response(response_text)
        if data is None:
            logger.warning(f"Unparseable context response for '{event.title}', using heuristics")
            return None

        try:
            topics = [TopicPrediction(**t) for t in data.get("predicted_topics", [])]
            risks = RiskAssessment(
                overall_risk=data.get("overall_risk", "low"),
                risks=[Risk(**r) for r in data.get("risks", [])],
            )
            recommendations = [
                PreparationRecommendation(**r) for r in data.get("recommendations", [])
            ]
        except (TypeError, ValueError) as e:
            logger.warning("Context response had unexpected shape: %s", e)
            return None
        return topics, risks, recommendations

    def _build_prompt(self, event, participants, history) -> str:
        participant_lines = [
            f"- {p.email}: met {p.meeting_count} time(s) before"
            + (f", open items: {'; '.join(p.open_action_items)}" if p.open_action_items else "")
            for p in participants
        ]
        history_json = json.dumps(
            [h.model_dump(include={"title", "date", "summary", "action_items", "decisions"}) for h in history],
            indent=2,
        )
        return f"""UPCOMING MEETING:
- Title: {event.title}
- When: {event.start_time.isoformat()} ({event.duration_minutes} minutes)
- Organizer: {event.organizer or "Not specified"}
- Recurring: {"Yes" if event.is_recurring else "No"}

DESCRIPTION/AGENDA:
{event.description or "No description provided"}

PARTICIPANTS:
{chr(10).join(participant_lines) or "None listed"}

RELATED PAST MEETINGS:
{history_json if history else "None found"}"""

    def _heuristic_predictions(self, event, participants, history):
        topics = []
        for line in (event.description or "").splitlines():
            line = line.strip(" -*\t")
            if line:
                topics.append(TopicPrediction(topic=line[:120], likelihood=0.8, rationale="Listed in the agenda"))
        for h in history[:2]:
            for item in h.action_items[:2]:
                topics.append(TopicPrediction(
                    topic=f"Status of: {item}", likelihood=0.6,
                    rationale=f"Open from '{h.title}' on {h.date}",
                ))
        if not topics:
            topics.append(TopicPrediction(topic=event.title, likelihood=0.5, rationale="Meeting title"))

        risks = []
        if not event.description:
            risks.append(Risk(
                description="No agenda shared",
                severity="medium",
                mitigation="Ask the organizer for the intended outcome before the meeting",
            ))
        if len(event.attendees) > LARGE_MEETING_ATTENDEES:
            risks.append(Risk(
                description=f"Large meeting ({len(event.attendees)} attendees)",
                severity="low",
                mitigation="Prepare a short, specific ask to avoid getting lost in discussion",
            ))
        if any(p.open_action_items for p in participants):
            risks.append(Risk(
                description="Unresolved action items with attendees",
                severity="medium",
                mitigation="Check their status before the meeting",
            ))
        overall = "medium" if any(r.severity != "low" for r in risks) else "low"

        recommendations = [
            PreparationRecommendation(recommendation="Review the agenda and shared documents", time_minutes=5),
        ]
        if history:
            recommendations.append(PreparationRecommendation(
                recommendation=f"Re-read notes from '{history[0].title}' ({history[0].date})",
                priority="high", time_minutes=5,
            ))

        return topics[:5], RiskAssessment(overall_risk=overall, risks=risks), recommendations
