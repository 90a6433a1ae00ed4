"""
In-process event bus connecting the trigger pipeline.

Components never call each other across the pipeline directly; they emit
topics and subscribe to the ones they care about:

    detector/webhook --calendar.meeting.ended--> workflow engine
    workflow engine  --(initiate trigger)------> analysis trigger
    analysis trigger --meeting.analysis.*-----> workflow engine / dashboard

Handlers run synchronously in the emitting thread. A failing handler is
logged and skipped so one broken subscriber cannot stall the pipeline.
"""

import logging
import threading
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional

from followthrough.models import utcnow

logger = logging.getLogger(__name__)


# ── Topics ─────────────────────────────────────────────────────

WORKFLOW_STARTED = "calendar.workflow.started"
WORKFLOW_PROGRESS = "calendar.workflow.progress"
WORKFLOW_COMPLETED = "calendar.workflow.completed"
WORKFLOW_ERROR = "calendar.workflow.error"
WORKFLOW_CANCELLED = "calendar.workflow.cancelled"

EVENT_CREATED = "calendar.event.created"
EVENT_UPDATED = "calendar.event.updated"
EVENT_DELETED = "calendar.event.deleted"

BRIEF_REQUESTED = "calendar.brief.requested"
MEETING_STARTING = "calendar.meeting.starting"
MEETING_STARTED = "calendar.meeting.started"
MEETING_ENDED = "calendar.meeting.ended"
TRANSCRIPT_AVAILABLE = "calendar.transcript.available"

ANALYSIS_WAITING = "meeting.analysis.waiting"
ANALYSIS_TRIGGERED = "meeting.analysis.triggered"
ANALYSIS_COMPLETED = "meeting.analysis.completed"
ANALYSIS_FAILED = "meeting.analysis.failed"
ANALYSIS_TIMEOUT = "meeting.analysis.timeout"
ANALYSIS_RESULT_AVAILABLE = "meeting.analysis.result.available"

Handler = Callable[[Dict[str, Any]], None]


class EventBus:
    """
    Minimal publish/subscribe hub.

    Usage:
        bus = EventBus()
        bus.subscribe(MEETING_ENDED, lambda payload: print(payload["event_id"]))
        bus.emit(MEETING_ENDED, {"user_id": "me", "event_id": "abc"})
    """

    def __init__(self, history_size: int = 200):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> bool:
        with self._lock:
            handlers = self._handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)
                return True
        return False

    def emit(self, topic: str, payload: Dict[str, Any]) -> int:
        """
        Deliver payload to every subscriber of topic.

        Returns:
            Number of handlers that ran without raising
        """
        with self._lock:
            handlers = list(self._handlers.get(topic, []))
            self._history.append({"topic": topic, "payload": payload, "emitted_at": utcnow()})

        logger.debug("Emitting %s to %d handler(s)", topic, len(handlers))
        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception:
                logger.exception("Handler %r failed for %s", handler, topic)
        return delivered

    def recent(self, topic: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent emitted events, newest first (for the dashboard)."""
        with self._lock:
            items = list(self._history)
        if topic:
            items = [i for i in items if i["topic"] == topic]
        return list(reversed(items))[:limit]
