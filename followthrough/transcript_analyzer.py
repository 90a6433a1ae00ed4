"""
Post-meeting transcript analysis with Claude.

Turns a Meet transcript into a MeetingAnalysisResult: summary, action items
(with assignee, due date, priority), decisions (with impact), topics, and
whether a follow-up meeting is needed.

Without a transcript (analysis forced before Meet produced one) or when
Claude fails, a minimal result is built from the calendar event so the
workflow can still finish; it carries no action items or decisions.
"""

import logging
from typing import Optional

import anthropic

from followthrough.llm import LLMClient, parse_json_response
from followthrough.models import (
    ActionItem,
    CalendarEvent,
    Decision,
    MeetingAnalysisResult,
    MeetingSummary,
    Topic,
)

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_CHARS = 60000

SYSTEM_PROMPT = """You analyze meeting transcripts. Extract only what was actually said; \
never invent owners or dates.

ALWAYS respond with valid JSON matching this schema:
{
    "summary": "3-5 sentences",
    "next_steps": ["..."],
    "action_items": [
        {"task": "...", "assignee": "email or name", "due_date": "YYYY-MM-DD or null",
         "priority": "urgent|high|medium|low", "context": "why / where it came from",
         "dependencies": ["id of another action item, if any"]}
    ],
    "decisions": [
        {"description": "...", "decision_maker": "...", "rationale": "...", "impact": "high|medium|low"}
    ],
    "topics": [{"name": "...", "relevance": 0.0-1.0, "key_points": ["..."]}],
    "follow_up_required": true
}
ONLY output valid JSON."""


class TranscriptAnalyzer:
    def __init__(self, llm: LLMClient):
        self.llm = llm

    def analyze(self, transcript: Optional[str], event: CalendarEvent) -> MeetingAnalysisResult:
        if not transcript:
            logger.warning(f"No transcript for '{event.title}', producing minimal analysis")
            return self._minimal_result(event, "No transcript was available for this meeting.")

        if len(transcript) > MAX_TRANSCRIPT_CHARS:
            logger.info("Transcript for '%s' truncated to %d chars", event.title, MAX_TRANSCRIPT_CHARS)
            transcript = transcript[:MAX_TRANSCRIPT_CHARS]

        prompt = f"""MEETING: {event.title}
DATE: {event.start_time.strftime("%Y-%m-%d")}
PARTICIPANTS: {", ".join(event.attendees) or "Not listed"}

TRANSCRIPT:
{transcript}"""

        try:
            logger.info(f"Analyzing transcript for: {event.title}")
            response_text = self.llm.complete(SYSTEM_PROMPT, prompt, max_tokens=2048, temperature=0.2)
        except anthropic.APIError as e:
            logger.error(f"Claude API error analyzing '{event.title}': {e}")
            return self._minimal_result(event, f"Analysis failed (API error: {e}).")

        data = parse_json_response(response_text)
        if data is None:
            logger.warning(f"Could not parse analysis for '{event.title}', using raw text")
            return self._minimal_result(event, response_text[:500])
        return self._build_result(data, event)

    def _build_result(self, data: dict, event: CalendarEvent) -> MeetingAnalysisResult:
        action_items = []
        for i, item in enumerate(data.get("action_items", []), start=1):
            if not isinstance(item, dict) or not item.get("task"):
                continue
            priority = item.get("priority") or "medium"
            if priority not in ("urgent", "high", "medium", "low"):
                priority = "medium"
            action_items.append(ActionItem(
                id=item.get("id") or f"ai-{i}",
                task=item["task"],
                assignee=item.get("assignee") or "",
                due_date=item.get("due_date"),
                priority=priority,
                context=item.get("context") or "",
                dependencies=item.get("dependencies") or [],
            ))

        decisions = [
            Decision(
                id=d.get("id") or f"dec-{i}",
                description=d["description"],
                decision_maker=d.get("decision_maker") or "",
                rationale=d.get("rationale") or "",
                impact=d.get("impact") if d.get("impact") in ("high", "medium", "low") else "medium",
            )
            for i, d in enumerate(data.get("decisions", []), start=1)
            if isinstance(d, dict) and d.get("description")
        ]

        topics = [
            Topic(name=t["name"], relevance=t.get("relevance", 0.5), key_points=t.get("key_points", []))
            for t in data.get("topics", [])
            if isinstance(t, dict) and t.get("name")
        ]

        return MeetingAnalysisResult(
            meeting_id=event.event_id,
            meeting_title=event.title,
            participants=event.attendees,
            summary=MeetingSummary(
                summary=data.get("summary", ""),
                key_decisions=[d.description for d in decisions],
                next_steps=data.get("next_steps", []),
            ),
            action_items=action_items,
            decisions=decisions,
            topics=topics,
            follow_up_required=bool(data.get("follow_up_required", False)),
        )

    def _minimal_result(self, event: CalendarEvent, summary: str) -> MeetingAnalysisResult:
        return MeetingAnalysisResult(
            meeting_id=event.event_id,
            meeting_title=event.title,
            participants=event.attendees,
            summary=MeetingSummary(summary=summary),
        )
