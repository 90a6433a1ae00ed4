"""
Follow-up planning: from meeting analysis to a FollowUpPlan.

Rules:
- Action items exist            -> "action_item_notification" email (medium)
- Any high-impact decision      -> "decision_announcement" email (high)
- follow_up_required            -> 30 min follow-up meeting, next week
- Every action item             -> one task, tagged [meeting id, "meeting-follow-up"]

Every email, meeting and task becomes a RoutingDecision for the router.
Routing priority: urgent=1, high=2, medium=3, low=4.

Orchestration metadata:
- estimated time: 2 min per email, 5 per meeting, 3 per task
- approval required if any urgent email, any high-priority meeting or task,
  or more than 10 actions in total
- autonomy: assisted when approval is required, otherwise automated

If planning itself blows up, a minimal plan (one summary email, approval
required, manual autonomy) is returned so a human still gets something.
"""

import logging
import uuid
from typing import List

from followthrough.models import (
    AutonomyLevel,
    EmailFollowUp,
    FollowUpPlan,
    MeetingAnalysisResult,
    MeetingFollowUp,
    OrchestrationMetadata,
    Priority,
    RoutingDecision,
    RoutingType,
    TaskFollowUp,
)

logger = logging.getLogger(__name__)

ROUTING_PRIORITY = {
    Priority.URGENT: 1,
    Priority.HIGH: 2,
    Priority.MEDIUM: 3,
    Priority.LOW: 4,
}

ROUTING_TARGETS = {
    RoutingType.EMAIL_TRIAGE: "email_triage_team",
    RoutingType.CALENDAR_SCHEDULING: "calendar_workflow",
    RoutingType.TASK_MANAGEMENT: "task_management_system",
    RoutingType.MEETING_ANALYSIS: "meeting_analysis_workflow",
}

MINUTES_PER_EMAIL = 2
MINUTES_PER_MEETING = 5
MINUTES_PER_TASK = 3
MAX_ACTIONS_WITHOUT_APPROVAL = 10


def routing_priority(priority) -> int:
    try:
        return ROUTING_PRIORITY[Priority(priority)]
    except ValueError:
        return 3


class FollowUpPlanner:
    def create_plan(self, analysis: MeetingAnalysisResult) -> FollowUpPlan:
        try:
            emails = self._emails(analysis)
            meetings = self._meetings(analysis)
            tasks = self._tasks(analysis)
            routing = self._routing(analysis, emails, meetings, tasks)
            plan = FollowUpPlan(
                plan_id=_plan_id(),
                meeting_id=analysis.meeting_id,
                email_follow_ups=emails,
                meeting_follow_ups=meetings,
                task_follow_ups=tasks,
                routing_decisions=routing,
                metadata=self._metadata(emails, meetings, tasks),
            )
        except Exception as e:
            logger.error(f"Follow-up planning failed for '{analysis.meeting_title}': {e}")
            return self.minimal_plan(analysis)

        logger.info(
            "Planned %d email(s), %d meeting(s), %d task(s) for '%s'",
            len(emails), len(meetings), len(tasks), analysis.meeting_title,
        )
        return plan

    def _emails(self, analysis: MeetingAnalysisResult) -> List[EmailFollowUp]:
        emails = []
        if analysis.action_items:
            lines = "\n".join(
                f"- {item.task}"
                + (f" ({item.assignee})" if item.assignee else "")
                + (f", due {item.due_date}" if item.due_date else "")
                for item in analysis.action_items
            )
            emails.append(EmailFollowUp(
                id=f"email-actions-{analysis.meeting_id}",
                type="action_item_notification",
                priority=Priority.MEDIUM,
                recipients=analysis.participants,
                subject=f"Action Items from {analysis.meeting_title}",
                content=f"Please review your assigned action items from our meeting.\n\n{lines}",
                related_action_items=[item.id for item in analysis.action_items],
            ))

        high_impact = [d for d in analysis.decisions if d.impact == "high"]
        if high_impact:
            lines = "\n".join(f"- {d.description}" for d in high_impact)
            emails.append(EmailFollowUp(
                id=f"email-decisions-{analysis.meeting_id}",
                type="decision_announcement",
                priority=Priority.HIGH,
                recipients=analysis.participants,
                subject=f"Important Decisions from {analysis.meeting_title}",
                content=f"Key decisions were made that require your attention.\n\n{lines}",
            ))
        return emails

    def _meetings(self, analysis: MeetingAnalysisResult) -> List[MeetingFollowUp]:
        if not analysis.follow_up_required:
            return []
        return [MeetingFollowUp(
            id=f"meeting-followup-{analysis.meeting_id}",
            title=f"Follow-up: {analysis.meeting_title}",
            participants=analysis.participants,
            suggested_duration_minutes=30,
            suggested_timeframe="next_week",
            agenda=["Review action items", "Check decision implementation"],
            related_decisions=[d.id for d in analysis.decisions],
            related_action_items=[item.id for item in analysis.action_items],
            priority=Priority.MEDIUM,
        )]

    def _tasks(self, analysis: MeetingAnalysisResult) -> List[TaskFollowUp]:
        return [
            TaskFollowUp(
                id=f"task-{item.id}",
                action_item_id=item.id,
                title=item.task,
                description=f"{item.context}\n\nFrom meeting: {analysis.meeting_title}".strip(),
                assignee=item.assignee,
                due_date=item.due_date,
                priority=item.priority,
                dependencies=[f"task-{dep}" for dep in item.dependencies],
                tags=[analysis.meeting_id, "meeting-follow-up"],
            )
            for item in analysis.action_items
        ]

    def _routing(self, analysis, emails, meetings, tasks) -> List[RoutingDecision]:
        decisions = []
        for email in emails:
            decisions.append(RoutingDecision(
                id=f"route-email-{email.id}",
                type=RoutingType.EMAIL_TRIAGE,
                target=ROUTING_TARGETS[RoutingType.EMAIL_TRIAGE],
                payload={"email": email.model_dump(mode="json"), "originating_meeting": analysis.meeting_id},
                priority=routing_priority(email.priority),
            ))
        for meeting in meetings:
            decisions.append(RoutingDecision(
                id=f"route-meeting-{meeting.id}",
                type=RoutingType.CALENDAR_SCHEDULING,
                target=ROUTING_TARGETS[RoutingType.CALENDAR_SCHEDULING],
                payload={"meeting": meeting.model_dump(mode="json"), "originating_meeting": analysis.meeting_id},
                priority=routing_priority(meeting.priority),
            ))
        for task in tasks:
            decisions.append(RoutingDecision(
                id=f"route-task-{task.id}",
                type=RoutingType.TASK_MANAGEMENT,
                target=ROUTING_TARGETS[RoutingType.TASK_MANAGEMENT],
                payload={
                    "task": task.model_dump(mode="json"),
                    "originating_meeting": analysis.meeting_id,
                    "meeting_title": analysis.meeting_title,
                },
                priority=routing_priority(task.priority),
                dependencies=[f"route-task-{dep}" for dep in task.dependencies],
            ))
        return decisions

    def _metadata(self, emails, meetings, tasks) -> OrchestrationMetadata:
        total = len(emails) + len(meetings) + len(tasks)
        requires_approval = (
            any(e.priority == Priority.URGENT for e in emails)
            or any(m.priority == Priority.HIGH for m in meetings)
            or any(t.priority == Priority.HIGH for t in tasks)
            or total > MAX_ACTIONS_WITHOUT_APPROVAL
        )
        return OrchestrationMetadata(
            total_actions=total,
            estimated_completion_minutes=(
                len(emails) * MINUTES_PER_EMAIL
                + len(meetings) * MINUTES_PER_MEETING
                + len(tasks) * MINUTES_PER_TASK
            ),
            requires_approval=requires_approval,
            autonomy_level=AutonomyLevel.ASSISTED if requires_approval else AutonomyLevel.AUTOMATED,
        )

    def minimal_plan(self, analysis: MeetingAnalysisResult) -> FollowUpPlan:
        email = EmailFollowUp(
            id=f"email-summary-{analysis.meeting_id}",
            type="action_item_notification",
            recipients=analysis.participants,
            subject=f"Action Items from {analysis.meeting_title}",
            content="Please see your assigned action items from our recent meeting.",
        )
        return FollowUpPlan(
            plan_id=_plan_id(),
            meeting_id=analysis.meeting_id,
            email_follow_ups=[email],
            metadata=OrchestrationMetadata(
                total_actions=1,
                estimated_completion_minutes=MINUTES_PER_EMAIL,
                requires_approval=True,
                autonomy_level=AutonomyLevel.MANUAL,
            ),
        )


def _plan_id() -> str:
    return f"plan-{str(uuid.uuid4())[:8]}"
