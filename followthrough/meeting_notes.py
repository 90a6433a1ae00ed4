"""
Meeting notes: the retrieval corpus behind pre-meeting context.

Every analysed meeting leaves a note behind (summary, action items,
decisions). When a later meeting comes up, the context agent asks this store
for the most relevant notes and grounds the brief in them, which is the
"retrieval" half of the RAG loop:

    post-meeting analysis --record_analysis()--> meeting_notes.json
    pre-meeting context   <--get_relevant_notes()--

Notes can also be added by hand (the web app / CLI), e.g. for meetings that
happened before FollowThrough was running.

Relevance scoring:
    exact title match (recurring meetings)   +10
    same recurring series                      +8
    each shared title word (minus stopwords)   +2
    each shared attendee                       +3
"""

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from followthrough.models import CalendarEvent, MeetingAnalysisResult, utcnow

logger = logging.getLogger(__name__)

DEFAULT_NOTES_PATH = "./meeting_notes.json"

STOPWORDS = {"with", "and", "the", "for", "a", "an", "of", "to", "on", "re", "-", "/"}


def _today() -> str:
    return utcnow().strftime("%Y-%m-%d")


class MeetingNote(BaseModel):
    id: str = Field(default_factory=lambda: f"note-{str(uuid.uuid4())[:8]}")
    meeting_title: str
    meeting_id: str = ""
    series_id: str = ""
    date: str = Field(default_factory=_today)
    attendees: List[str] = Field(default_factory=list)
    content: str = ""
    action_items: List[str] = Field(default_factory=list)
    decisions: List[str] = Field(default_factory=list)
    source: str = "manual"  # manual, analysis


class MeetingNotesStore:
    """JSON-file store of MeetingNote entries with relevance search."""

    def __init__(self, store_path: str = DEFAULT_NOTES_PATH):
        self.store_path = Path(store_path)
        self._lock = threading.RLock()
        if not self.store_path.exists():
            self.store_path.write_text("[]")

    def _load(self) -> List[MeetingNote]:
        try:
            data = json.loads(self.store_path.read_text())
        except (json.JSONDecodeError, IOError) as e:
            logger.error("Failed to load notes: %s", e)
            return []
        return [MeetingNote.model_validate(n) for n in data] if isinstance(data, list) else []

    def _save(self, notes: List[MeetingNote]) -> None:
        self.store_path.write_text(
            json.dumps([n.model_dump(mode="json") for n in notes], indent=2, default=str)
        )

    def add_note(self, note: MeetingNote) -> MeetingNote:
        with self._lock:
            notes = self._load()
            notes.append(note)
            self._save(notes)
        logger.info("Saved note for: %s", note.meeting_title)
        return note

    def record_analysis(
        self, analysis: MeetingAnalysisResult, event: Optional[CalendarEvent] = None
    ) -> MeetingNote:
        """
        Turn a finished meeting analysis into a note for future retrieval.

        Re-analysing the same meeting replaces its previous analysis note.
        """
        date = event.start_time.strftime("%Y-%m-%d") if event else analysis.analyzed_at.strftime("%Y-%m-%d")
        note = MeetingNote(
            meeting_title=analysis.meeting_title,
            meeting_id=analysis.meeting_id,
            series_id=(event.recurring_event_id or "") if event else "",
            date=date,
            attendees=[p.lower() for p in analysis.participants],
            content=analysis.summary.summary,
            action_items=[
                f"{item.task} ({item.assignee})" if item.assignee else item.task
                for item in analysis.action_items
                if item.status != "completed"
            ],
            decisions=[d.description for d in analysis.decisions],
            source="analysis",
        )

        with self._lock:
            notes = [
                n for n in self._load()
                if not (n.source == "analysis" and n.meeting_id == analysis.meeting_id)
            ]
            notes.append(note)
            self._save(notes)

        logger.info("Recorded analysis note for '%s'", analysis.meeting_title)
        return note

    def get_relevant_notes(
        self,
        title: Optional[str] = None,
        attendees: Optional[List[str]] = None,
        series_id: Optional[str] = None,
        exclude_meeting_id: Optional[str] = None,
        limit: int = 5,
    ) -> List[Tuple[int, MeetingNote]]:
        """
        Score every note against an upcoming meeting.

        Returns:
            (score, note) pairs, best first, most recent first on ties
        """
        title_words = _words(title)
        attendees_set = {a.lower() for a in (attendees or [])}
        scored = []

        for note in self._load():
            if exclude_meeting_id and note.meeting_id == exclude_meeting_id:
                continue
            score = 0
            if title and note.meeting_title.lower() == title.lower():
                score += 10
            if series_id and note.series_id == series_id:
                score += 8
            score += len(title_words & _words(note.meeting_title)) * 2
            score += len(attendees_set & {a.lower() for a in note.attendees}) * 3
            if score > 0:
                scored.append((score, note))

        scored.sort(key=lambda x: (x[0], x[1].date), reverse=True)
        return scored[:limit]

    def get_open_action_items(self, attendee: Optional[str] = None) -> List[dict]:
        """Flat list of action items, optionally only from meetings with `attendee`."""
        items = []
        for note in self._load():
            if attendee and attendee.lower() not in {a.lower() for a in note.attendees}:
                continue
            for action in note.action_items:
                items.append({"action": action, "meeting": note.meeting_title, "date": note.date})
        return items

    def get_all_notes(self) -> List[MeetingNote]:
        return self._load()

    def remove_note(self, note_id: str) -> bool:
        with self._lock:
            notes = self._load()
            remaining = [n for n in notes if n.id != note_id]
            if len(remaining) == len(notes):
                return False
            self._save(remaining)
        return True


def _words(text: Optional[str]) -> set:
    return set((text or "").lower().split()) - STOPWORDS
