"""
Persistent storage for calendar workflow sessions.

Every workflow run is a CalendarWorkflowState document. The store keeps them
in a single JSON file so they survive restarts without needing a database,
and answers the questions the rest of the system asks about them:

- lookups by session, user, calendar event, or participant
- filtered + paginated queries (find_sessions)
- aggregate statistics (get_session_stats)
- housekeeping: archival of old completed sessions, soft/hard delete
- "needs attention": stuck, failed-but-retryable, or awaiting approval

Storage format:
    sessions.json - a JSON array of session documents

Deleted sessions stay in the file with status "deleted" until hard-deleted,
and are invisible to every query that does not ask for them explicitly.

Jobs from the background scheduler and Flask request threads share one
store, so every read-modify-write happens under a re-entrant lock.
"""

import json
import logging
import threading
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from followthrough.exceptions import SessionExistsError, SessionNotFoundError
from followthrough.models import utcnow
from followthrough.workflow_state import (
    CalendarWorkflowStage,
    CalendarWorkflowState,
    CalendarWorkflowStep,
    MeetingStatus,
    SessionStatus,
    refresh_derived_fields,
    transition,
)

logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = "./sessions.json"

SORTABLE_FIELDS = {
    "created_at",
    "updated_at",
    "completed_at",
    "scheduled_meeting_time",
    "progress",
    "processing_time_ms",
    "retry_count",
}


class SessionQuery(BaseModel):
    """Filters for find_sessions(). Unset fields do not filter."""
    user_id: Optional[str] = None
    event_id: Optional[str] = None
    stage: Optional[CalendarWorkflowStage] = None
    meeting_status: Optional[MeetingStatus] = None
    participant_email: Optional[str] = None
    organizer: Optional[str] = None
    status: Optional[SessionStatus] = None
    has_errors: Optional[bool] = None
    is_completed: Optional[bool] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=50, ge=1, le=500)


class ParticipantActivity(BaseModel):
    email: str
    session_count: int


class SessionStats(BaseModel):
    total_sessions: int = 0
    completed_sessions: int = 0
    errored_sessions: int = 0
    average_processing_time_ms: float = 0.0
    completion_rate: float = 0.0  # percent
    sessions_by_stage: Dict[str, int] = Field(default_factory=dict)
    sessions_by_status: Dict[str, int] = Field(default_factory=dict)
    most_active_participants: List[ParticipantActivity] = Field(default_factory=list)
    average_brief_generation_time_ms: float = 0.0
    average_analysis_time_ms: float = 0.0
    rag_usage_rate: float = 0.0  # percent


class SessionStore:
    """
    JSON file-backed repository of CalendarWorkflowState documents.

    Usage:
        store = SessionStore("./sessions.json")
        store.create_session(state)
        sessions, total = store.find_sessions(SessionQuery(user_id="me", limit=10))
        stats = store.get_session_stats(user_id="me")
    """

    def __init__(
        self,
        store_path: str = DEFAULT_STORE_PATH,
        stale_after_minutes: int = 60,
        max_retries: int = 3,
    ):
        self.store_path = Path(store_path)
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self.max_retries = max_retries
        self._lock = threading.RLock()
        self._ensure_store_exists()

    # ── File handling ──────────────────────────────────────────

    def _ensure_store_exists(self) -> None:
        if not self.store_path.exists():
            self.store_path.parent.mkdir(parents=True, exist_ok=True)
            self.store_path.write_text("[]")
            logger.info("Created session store at %s", self.store_path)

    def _load(self) -> List[CalendarWorkflowState]:
        try:
            data = json.loads(self.store_path.read_text())
        except (json.JSONDecodeError, IOError) as e:
            logger.error("Failed to load session store: %s", e)
            return []
        if not isinstance(data, list):
            return []

        sessions = []
        for doc in data:
            try:
                sessions.append(CalendarWorkflowState.model_validate(doc))
            except ValidationError as e:
                logger.warning("Skipping unreadable session %s: %s", doc.get("session_id"), e)
        return sessions

    def _save(self, sessions: List[CalendarWorkflowState]) -> None:
        docs = [s.model_dump(mode="json") for s in sessions]
        tmp_path = self.store_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(docs, indent=2, default=str))
        tmp_path.replace(self.store_path)

    # ── CRUD ───────────────────────────────────────────────────

    def create_session(self, state: CalendarWorkflowState) -> CalendarWorkflowState:
        """
        Persist a new session.

        Raises:
            SessionExistsError: if a session with the same id is stored
        """
        with self._lock:
            sessions = self._load()
            if any(s.session_id == state.session_id for s in sessions):
                raise SessionExistsError(state.session_id)
            refresh_derived_fields(state)
            sessions.append(state)
            self._save(sessions)

        logger.info(
            "Created session %s for event '%s' (user %s)",
            state.session_id, state.calendar_event.title, state.user_id,
        )
        return state

    def save_session(self, state: CalendarWorkflowState) -> CalendarWorkflowState:
        """Replace the stored document with `state` (insert if new)."""
        with self._lock:
            sessions = self._load()
            refresh_derived_fields(state)
            for i, existing in enumerate(sessions):
                if existing.session_id == state.session_id:
                    sessions[i] = state
                    break
            else:
                sessions.append(state)
            self._save(sessions)
        return state

    def get_session(self, session_id: str) -> Optional[CalendarWorkflowState]:
        """Get a session by id. Soft-deleted sessions are not returned."""
        for s in self._load():
            if s.session_id == session_id and s.status != SessionStatus.DELETED:
                return s
        return None

    def update_session(
        self, session_id: str, updates: Dict[str, Any], now: Optional[datetime] = None
    ) -> Optional[CalendarWorkflowState]:
        """
        Apply field updates to a session and stamp updated_at.

        Updates are validated by re-building the model, so nested dicts
        (e.g. {"follow_up_status": {...}}) are accepted.

        Returns:
            The updated session, or None if missing or deleted
        """
        with self._lock:
            sessions = self._load()
            for i, s in enumerate(sessions):
                if s.session_id != session_id or s.status == SessionStatus.DELETED:
                    continue
                merged = s.model_dump()
                merged.update(updates)
                merged["updated_at"] = now or utcnow()
                updated = refresh_derived_fields(CalendarWorkflowState.model_validate(merged))
                sessions[i] = updated
                self._save(sessions)
                logger.debug("Updated session %s: %s", session_id, list(updates.keys()))
                return updated

        logger.warning("Session not found for update: %s", session_id)
        return None

    def delete_session(self, session_id: str) -> bool:
        """Soft delete: mark status 'deleted'. Returns False if not found."""
        with self._lock:
            sessions = self._load()
            for s in sessions:
                if s.session_id == session_id and s.status != SessionStatus.DELETED:
                    s.status = SessionStatus.DELETED
                    s.updated_at = utcnow()
                    self._save(sessions)
                    logger.info("Deleted session %s", session_id)
                    return True
        return False

    def hard_delete_session(self, session_id: str) -> bool:
        """Remove a session document entirely."""
        with self._lock:
            sessions = self._load()
            remaining = [s for s in sessions if s.session_id != session_id]
            if len(remaining) == len(sessions):
                return False
            self._save(remaining)
        logger.info("Permanently removed session %s", session_id)
        return True

    # ── Queries ────────────────────────────────────────────────

    def find_sessions(self, query: SessionQuery) -> Tuple[List[CalendarWorkflowState], int]:
        """
        Filtered, sorted, paginated session search.

        Returns:
            (page of sessions, total number of matches before pagination)
        """
        matches = [s for s in self._load() if self._matches(s, query)]
        matches = self._sort(matches, query.sort_by, query.sort_order)
        total = len(matches)
        return matches[query.offset:query.offset + query.limit], total

    def get_sessions_by_user(
        self, user_id: str, query: Optional[SessionQuery] = None
    ) -> List[CalendarWorkflowState]:
        query = (query or SessionQuery()).model_copy(update={"user_id": user_id})
        sessions, _ = self.find_sessions(query)
        return sessions

    def get_sessions_by_event(self, event_id: str) -> List[CalendarWorkflowState]:
        """All sessions for a calendar event, newest first."""
        sessions = [
            s for s in self._load()
            if s.event_id == event_id and s.status != SessionStatus.DELETED
        ]
        return self._sort(sessions, "created_at", "desc")

    def get_sessions_by_participant(
        self, email: str, query: Optional[SessionQuery] = None
    ) -> List[CalendarWorkflowState]:
        query = (query or SessionQuery()).model_copy(update={"participant_email": email})
        sessions, _ = self.find_sessions(query)
        return sessions

    def get_sessions_needing_attention(
        self, now: Optional[datetime] = None
    ) -> List[CalendarWorkflowState]:
        """
        Active, unfinished sessions that somebody should look at.

        A session needs attention when any of:
        - it has not moved for stale_after_minutes (monitoring sessions
          legitimately sit still until the meeting happens, so they are
          never considered stale)
        - it is waiting for user approval
        - it is in error (not by cancellation) and still has retries left
          under both its own retry_attempts and the store's max_retries

        Returns:
            Matching sessions, least recently updated first
        """
        now = now or utcnow()
        stale_cutoff = now - self.stale_after
        results = []

        for s in self._load():
            if s.status != SessionStatus.ACTIVE:
                continue
            if s.stage == CalendarWorkflowStage.COMPLETED:
                continue

            is_stale = (
                s.stage not in (CalendarWorkflowStage.MEETING_MONITORING, CalendarWorkflowStage.ERROR)
                and s.updated_at <= stale_cutoff
            )
            retryable = (
                s.stage == CalendarWorkflowStage.ERROR
                and not s.metadata.get("cancelled")
                and s.retry_count < min(s.context.retry_attempts, self.max_retries)
            )
            if is_stale or s.approval_required or retryable:
                results.append(s)

        results.sort(key=lambda s: s.updated_at)
        return results

    # ── Stage / metrics updates ────────────────────────────────

    def update_session_stage(
        self,
        session_id: str,
        stage: CalendarWorkflowStage,
        step: Optional[CalendarWorkflowStep] = None,
        progress: Optional[int] = None,
        error: Optional[str] = None,
    ) -> CalendarWorkflowState:
        """
        Move a stored session to a new stage.

        Raises:
            SessionNotFoundError: if the session does not exist
            InvalidStageTransition: if the move is not allowed
        """
        with self._lock:
            state = self.get_session(session_id)
            if state is None:
                raise SessionNotFoundError(session_id)
            transition(state, stage, step=step, progress=progress, error=error)
            self.save_session(state)

        logger.info("Session %s -> %s", session_id, stage.value)
        return state

    def add_performance_metric(self, session_id: str, metric: str, value: float) -> bool:
        with self._lock:
            state = self.get_session(session_id)
            if state is None:
                return False
            state.processing_metadata.performance_metrics[metric] = value
            state.updated_at = utcnow()
            self.save_session(state)
        return True

    # ── Housekeeping ───────────────────────────────────────────

    def archive_completed_sessions(
        self, older_than_days: int = 30, now: Optional[datetime] = None
    ) -> int:
        """
        Archive active sessions that completed more than N days ago.

        Returns:
            Number of sessions archived
        """
        cutoff = (now or utcnow()) - timedelta(days=older_than_days)
        archived = 0

        with self._lock:
            sessions = self._load()
            for s in sessions:
                if (
                    s.status == SessionStatus.ACTIVE
                    and s.stage == CalendarWorkflowStage.COMPLETED
                    and s.completed_at is not None
                    and s.completed_at <= cutoff
                ):
                    s.status = SessionStatus.ARCHIVED
                    archived += 1
            if archived:
                self._save(sessions)

        if archived:
            logger.info("Archived %d completed sessions older than %d days", archived, older_than_days)
        return archived

    # ── Statistics ─────────────────────────────────────────────

    def get_session_stats(
        self,
        user_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> SessionStats:
        """Aggregate statistics over non-deleted sessions (optionally scoped)."""
        query = SessionQuery(user_id=user_id, date_from=date_from, date_to=date_to)
        sessions = [s for s in self._load() if self._matches(s, query)]
        total = len(sessions)
        if total == 0:
            return SessionStats()

        completed = [s for s in sessions if s.stage == CalendarWorkflowStage.COMPLETED]
        participants = Counter(email for s in sessions for email in s.participant_emails)

        return SessionStats(
            total_sessions=total,
            completed_sessions=len(completed),
            errored_sessions=sum(1 for s in sessions if s.had_errors),
            average_processing_time_ms=_average(s.processing_time_ms for s in sessions),
            completion_rate=round(len(completed) / total * 100, 2),
            sessions_by_stage=dict(Counter(s.stage.value for s in sessions)),
            sessions_by_status=dict(Counter(s.meeting_status.value for s in sessions)),
            most_active_participants=[
                ParticipantActivity(email=email, session_count=count)
                for email, count in participants.most_common(10)
            ],
            average_brief_generation_time_ms=_average(s.brief_generation_time_ms for s in sessions),
            average_analysis_time_ms=_average(s.analysis_processing_time_ms for s in sessions),
            rag_usage_rate=round(
                sum(1 for s in sessions if s.processing_metadata.rag_enhanced) / total * 100, 2
            ),
        )

    # ── Internals ──────────────────────────────────────────────

    @staticmethod
    def _matches(s: CalendarWorkflowState, q: SessionQuery) -> bool:
        if q.status is not None:
            if s.status != q.status:
                return False
        elif s.status == SessionStatus.DELETED:
            return False

        if q.user_id and s.user_id != q.user_id:
            return False
        if q.event_id and s.event_id != q.event_id:
            return False
        if q.stage and s.stage != q.stage:
            return False
        if q.meeting_status and s.meeting_status != q.meeting_status:
            return False
        if q.participant_email and q.participant_email.lower() not in s.participant_emails:
            return False
        if q.organizer and (s.meeting_organizer or "") != q.organizer.lower():
            return False
        if q.has_errors is not None and s.had_errors != q.has_errors:
            return False
        if q.is_completed is not None:
            if (s.stage == CalendarWorkflowStage.COMPLETED) != q.is_completed:
                return False
        if q.date_from and s.created_at < q.date_from:
            return False
        if q.date_to and s.created_at > q.date_to:
            return False
        return True

    @staticmethod
    def _sort(
        sessions: List[CalendarWorkflowState], sort_by: str, sort_order: str
    ) -> List[CalendarWorkflowState]:
        if sort_by not in SORTABLE_FIELDS:
            logger.warning("Unsupported sort field '%s', using created_at", sort_by)
            sort_by = "created_at"

        # Sessions without a value for the sort field always go last
        present = [s for s in sessions if getattr(s, sort_by) is not None]
        missing = [s for s in sessions if getattr(s, sort_by) is None]
        present.sort(key=lambda s: getattr(s, sort_by), reverse=(sort_order == "desc"))
        return present + missing


def _average(values) -> float:
    numbers = [v for v in values if v is not None]
    if not numbers:
        return 0.0
    return round(sum(numbers) / len(numbers), 2)
