"""Tests for follow-up planning."""

import pytest
from unittest.mock import patch

from followthrough.follow_up import FollowUpPlanner, routing_priority
from followthrough.models import (
    ActionItem,
    AutonomyLevel,
    MeetingAnalysisResult,
    Priority,
    RoutingType,
)


@pytest.fixture
def planner():
    return FollowUpPlanner()


class TestPlan:
    def test_emails(self, planner, analysis):
        plan = planner.create_plan(analysis)
        types = [e.type for e in plan.email_follow_ups]
        assert types == ["action_item_notification", "decision_announcement"]
        actions, decisions = plan.email_follow_ups
        assert actions.related_action_items == ["1", "2"]
        assert "Draft Q3 plan (alice@example.com)" in actions.content
        assert decisions.priority == Priority.HIGH
        assert "Ship search in Q3" in decisions.content

    def test_follow_up_meeting(self, planner, analysis):
        meeting = planner.create_plan(analysis).meeting_follow_ups[0]
        assert meeting.title == "Follow-up: Roadmap Review"
        assert meeting.suggested_duration_minutes == 30
        assert meeting.related_decisions == ["d1"]

    def test_tasks_keep_dependencies(self, planner, analysis):
        tasks = planner.create_plan(analysis).task_follow_ups
        assert [t.id for t in tasks] == ["task-1", "task-2"]
        assert tasks[1].dependencies == ["task-1"]
        assert tasks[0].tags == ["evt-1", "meeting-follow-up"]

    def test_routing_decisions(self, planner, analysis):
        routing = planner.create_plan(analysis).routing_decisions
        by_type = {}
        for decision in routing:
            by_type.setdefault(decision.type, []).append(decision)

        assert len(by_type[RoutingType.EMAIL_TRIAGE]) == 2
        assert len(by_type[RoutingType.CALENDAR_SCHEDULING]) == 1
        review = by_type[RoutingType.TASK_MANAGEMENT][1]
        assert review.dependencies == ["route-task-task-1"]
        assert review.priority == 4
        assert by_type[RoutingType.TASK_MANAGEMENT][0].target == "task_management_system"

    def test_metadata(self, planner, analysis):
        metadata = planner.create_plan(analysis).metadata
        assert metadata.total_actions == 5
        assert metadata.estimated_completion_minutes == 2 * 2 + 5 + 2 * 3
        assert metadata.requires_approval is False
        assert metadata.autonomy_level == AutonomyLevel.AUTOMATED

    def test_high_priority_task_requires_approval(self, planner, analysis):
        analysis.action_items[0].priority = Priority.HIGH
        metadata = planner.create_plan(analysis).metadata
        assert metadata.requires_approval is True
        assert metadata.autonomy_level == AutonomyLevel.ASSISTED

    def test_too_many_actions_requires_approval(self, planner):
        analysis = MeetingAnalysisResult(
            meeting_id="m", meeting_title="Planning",
            action_items=[ActionItem(id=str(i), task=f"Task {i}") for i in range(11)],
        )
        assert planner.create_plan(analysis).metadata.requires_approval is True

    def test_empty_analysis(self, planner):
        plan = planner.create_plan(MeetingAnalysisResult(meeting_id="m", meeting_title="Chat"))
        assert plan.email_follow_ups == []
        assert plan.meeting_follow_ups == []
        assert plan.routing_decisions == []
        assert plan.metadata.total_actions == 0

    def test_failure_returns_minimal_plan(self, planner, analysis):
        with patch.object(FollowUpPlanner, "_tasks", side_effect=RuntimeError("boom")):
            plan = planner.create_plan(analysis)
        assert len(plan.email_follow_ups) == 1
        assert plan.metadata.requires_approval is True
        assert plan.metadata.autonomy_level == AutonomyLevel.MANUAL


def test_routing_priority_mapping():
    assert routing_priority(Priority.URGENT) == 1
    assert routing_priority("high") == 2
    assert routing_priority("whatever") == 3
