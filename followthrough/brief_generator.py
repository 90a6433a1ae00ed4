"""
AI-powered meeting brief generation using Claude.

Takes a calendar event plus the PreMeetingContext gathered for it and asks
Claude for a structured brief:
- Summary of what the meeting is for
- Objectives and a proposed agenda
- Talking points (categorized, prioritized)
- Questions to ask
- Per-participant prep notes

Retrieved history (past notes, open action items, predicted topics, risks)
is injected into the prompt so the brief builds on what already happened
instead of starting from scratch.
"""

import logging
import uuid
from typing import Optional

import anthropic

from followthrough.llm import LLMClient, parse_json_response
from followthrough.models import (
    CalendarEvent,
    MeetingBrief,
    PreMeetingContext,
    TalkingPoint,
)

logger = logging.getLogger(__name__)


# ── Prompt Templates ───────────────────────────────────────────

SYSTEM_PROMPT = """You are an expert meeting preparation assistant. Generate concise, \
actionable meeting prep. No fluff, no filler, no generic advice.

Rules:
- Every talking point must be SPECIFIC to this meeting
- If past meeting notes are provided, build on them: reference outcomes and open items
- If predicted topics or risks are provided, prepare for them
- Output only the JSON

ALWAYS respond with valid JSON matching this exact schema:
{
    "summary": "2-3 sentences. What this meeting is about and what YOU need to get out of it.",
    "objectives": ["Concrete outcome to leave the meeting with"],
    "agenda": ["Proposed agenda item"],
    "talking_points": [
        {"point": "...", "category": "discussion|question|update|follow-up", "priority": "high|medium|low"}
    ],
    "suggested_questions": ["A targeted question that moves the meeting forward"],
    "participant_prep": ["alice@example.com: what to know / raise with this person"],
    "context_notes": "Specific things to review beforehand",
    "preparation_time_minutes": 5
}"""


class MeetingBriefGenerator:
    """
    Usage:
        generator = MeetingBriefGenerator(llm)
        brief = generator.generate_brief(event, context)
    """

    def __init__(self, llm: LLMClient):
        self.llm = llm

    def generate_brief(
        self, event: CalendarEvent, context: Optional[PreMeetingContext] = None
    ) -> MeetingBrief:
        """
        Generate a brief for one meeting. Never raises for API or parsing
        problems; a minimal fallback brief is returned instead.
        """
        prompt = self._build_prompt(event, context)

        try:
            logger.info(f"Generating brief for: {event.title}")
            response_text = self.llm.complete(SYSTEM_PROMPT, prompt)
            return self._parse_response(response_text, event)
        except anthropic.APIError as e:
            logger.error(f"Claude API error for '{event.title}': {e}")
            return self._fallback_brief(event, context, f"API error: {e}")
        except Exception as e:
            logger.error(f"Unexpected error generating brief for '{event.title}': {e}")
            return self._fallback_brief(event, context, f"Error: {e}")

    def _build_prompt(self, event: CalendarEvent, context: Optional[PreMeetingContext]) -> str:
        attendees_str = ", ".join(event.attendees) if event.attendees else "No attendees listed"

        prompt = f"""Generate a meeting preparation brief for the following meeting:

MEETING DETAILS:
- Title: {event.title}
- Time: {event.start_time.strftime("%A %I:%M %p %Z")} ({event.duration_minutes} minutes)
- Attendees: {attendees_str}
- Organizer: {event.organizer or "Not specified"}
- Location: {event.location or "Not specified"}
- Recurring: {"Yes" if event.is_recurring else "No"}

DESCRIPTION/AGENDA:
{event.description or "No description provided"}"""

        if context is None:
            return prompt + "\n\nRespond with valid JSON only."

        if context.historical_meetings:
            history = "\n\n".join(
                f"[{h.date}] {h.title}\n{h.summary}"
                + (f"\nOpen action items: {'; '.join(h.action_items)}" if h.action_items else "")
                + (f"\nDecisions: {'; '.join(h.decisions)}" if h.decisions else "")
                for h in context.historical_meetings
            )
            prompt += f"""

PAST MEETING NOTES (build on these, don't repeat):
{history}"""

        known = [p for p in context.participants if p.meeting_count or p.open_action_items]
        if known:
            lines = "\n".join(
                f"- {p.email}: {p.meeting_count} past meeting(s)"
                + (f"; open: {'; '.join(p.open_action_items)}" if p.open_action_items else "")
                for p in known
            )
            prompt += f"\n\nPARTICIPANT HISTORY:\n{lines}"

        if context.predicted_topics:
            topics = "\n".join(f"- {t.topic} ({t.likelihood:.0%})" for t in context.predicted_topics)
            prompt += f"\n\nLIKELY TOPICS:\n{topics}"

        if context.risk_assessment.risks:
            risks = "\n".join(
                f"- [{r.severity}] {r.description}" for r in context.risk_assessment.risks
            )
            prompt += f"\n\nRISKS ({context.risk_assessment.overall_risk} overall):\n{risks}"

        prompt += "\n\nBe specific and actionable. Respond with valid JSON only."
        return prompt

    def _parse_response(self, response_text: str, event: CalendarEvent) -> MeetingBrief:
        data = parse_json_response(response_text)
        if data is not None:
            return self._build_brief_from_dict(data, event)

        logger.warning(f"Could not parse JSON response for '{event.title}', using raw text")
        return MeetingBrief(
            brief_id=_brief_id(),
            meeting_id=event.event_id,
            title=event.title,
            summary=response_text[:500],
            context_notes="Note: AI response was not in expected format.",
        )

    def _build_brief_from_dict(self, data: dict, event: CalendarEvent) -> MeetingBrief:
        talking_points = [
            TalkingPoint(
                point=tp.get("point", ""),
                category=tp.get("category", "discussion"),
                priority=tp.get("priority", "medium"),
            )
            for tp in data.get("talking_points", [])
            if isinstance(tp, dict)
        ]

        return MeetingBrief(
            brief_id=_brief_id(),
            meeting_id=event.event_id,
            title=event.title,
            summary=data.get("summary", ""),
            objectives=data.get("objectives", []),
            agenda=data.get("agenda", []),
            talking_points=talking_points,
            suggested_questions=data.get("suggested_questions", []),
            participant_prep=data.get("participant_prep", []),
            context_notes=data.get("context_notes", ""),
            preparation_time_minutes=data.get("preparation_time_minutes", 5),
        )

    def _fallback_brief(
        self, event: CalendarEvent, context: Optional[PreMeetingContext], error_msg: str
    ) -> MeetingBrief:
        """
        Minimal brief when AI generation fails. Still carries whatever the
        context step found, so retrieved history is not lost.
        """
        talking_points = [
            TalkingPoint(point="Review meeting agenda and any shared documents", category="update"),
        ]
        agenda = []
        if context:
            for topic in context.predicted_topics[:3]:
                agenda.append(topic.topic)
            for h in context.historical_meetings[:1]:
                for item in h.action_items[:3]:
                    talking_points.append(
                        TalkingPoint(point=f"Follow up: {item}", category="follow-up", priority="high")
                    )

        return MeetingBrief(
            brief_id=_brief_id(),
            meeting_id=event.event_id,
            title=event.title,
            summary=f"Meeting: {event.title} ({event.duration_minutes} min)",
            agenda=agenda,
            talking_points=talking_points,
            suggested_questions=["What are the key outcomes we need from this meeting?"],
            context_notes=f"AI brief generation failed ({error_msg}). Review event description for context.",
        )


def _brief_id() -> str:
    return f"brief-{str(uuid.uuid4())[:8]}"
