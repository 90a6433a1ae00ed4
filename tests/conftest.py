"""Shared fixtures: a fixed clock and a calendar event factory."""

import pytest
from datetime import datetime, timedelta, timezone

from followthrough.models import (
    ActionItem,
    CalendarEvent,
    Decision,
    MeetingAnalysisResult,
    MeetingSummary,
    Priority,
)

NOW = datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)  # a Tuesday


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_event():
    """Build a CalendarEvent starting `starts_in` from NOW."""
    def _make(
        event_id="evt-1",
        title="Roadmap Review",
        starts_in=timedelta(hours=2),
        duration=timedelta(minutes=30),
        **kwargs,
    ):
        start = NOW + starts_in
        kwargs.setdefault("attendees", ["alice@example.com", "bob@example.com"])
        kwargs.setdefault("organizer", "alice@example.com")
        return CalendarEvent(
            event_id=event_id,
            title=title,
            start_time=start,
            end_time=start + duration,
            **kwargs,
        )
    return _make


@pytest.fixture
def analysis():
    return MeetingAnalysisResult(
        meeting_id="evt-1",
        meeting_title="Roadmap Review",
        participants=["alice@example.com", "bob@example.com"],
        summary=MeetingSummary(summary="Agreed on Q3 scope.", next_steps=["Share the plan"]),
        action_items=[
            ActionItem(id="1", task="Draft Q3 plan", assignee="alice@example.com", priority=Priority.MEDIUM),
            ActionItem(id="2", task="Review Q3 plan", assignee="bob@example.com",
                       priority=Priority.LOW, dependencies=["1"]),
        ],
        decisions=[Decision(id="d1", description="Ship search in Q3", impact="high")],
        follow_up_required=True,
    )
