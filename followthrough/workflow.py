"""
Calendar workflow engine - drives one session through every stage.

Flow for a meeting:

    BRIEF_REQUESTED (30 min before start)
      -> start_workflow()
           pre_meeting_context   10%   RAG context + participant analysis
           brief_generation      40%   Claude writes the brief
           brief_delivery        70%   email / slack / calendar / dashboard
           meeting_monitoring    75%   parked until the meeting happens
    MEETING_STARTED -> handle_meeting_started()
    MEETING_ENDED   -> handle_meeting_ended()  -> analysis trigger polls Drive
    transcript found -> run_post_meeting()
           post_meeting_analysis      85%
           follow_up_orchestration    95%
           completed                 100%

Every phase checks whether its artifact already exists before running, so a
retry after an error resumes where the session failed instead of redoing
(and re-billing) finished phases.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from followthrough import events as topics
from followthrough.config import WorkflowConfig
from followthrough.events import EventBus
from followthrough.exceptions import SessionNotFoundError, WorkflowStepError
from followthrough.models import CalendarEvent, MeetingRecording, utcnow
from followthrough.session_store import SessionQuery, SessionStore
from followthrough.workflow_state import (
    POST_MEETING_STAGES,
    BriefDeliveryStatus,
    CalendarWorkflowStage,
    CalendarWorkflowState,
    CalendarWorkflowStep,
    FollowUpStatus,
    MeetingStatus,
    SessionStatus,
    UserInteraction,
    WorkflowOptions,
    create_session_state,
    failed_stage,
    transition,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Workflow cancelled by user"

Stage = CalendarWorkflowStage
Step = CalendarWorkflowStep


class WorkflowExecutionResult(BaseModel):
    session_id: str
    status: str  # completed, failed, in_progress
    stage: CalendarWorkflowStage
    progress: int
    error: Optional[str] = None

    @classmethod
    def from_state(cls, state: CalendarWorkflowState) -> "WorkflowExecutionResult":
        if state.stage == Stage.COMPLETED:
            status = "completed"
        elif state.stage == Stage.ERROR:
            status = "failed"
        else:
            status = "in_progress"
        return cls(
            session_id=state.session_id,
            status=status,
            stage=state.stage,
            progress=state.progress,
            error=state.error,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class CalendarWorkflowEngine:
    """
    Usage:
        engine = CalendarWorkflowEngine(store, bus, context_agent, generator,
                                        delivery, analyzer, orchestrator)
        engine.attach(analysis_trigger)
        result = engine.start_workflow(event, user_id="me")
    """

    def __init__(
        self,
        store: SessionStore,
        bus: EventBus,
        context_agent,
        brief_generator,
        delivery,
        analyzer,
        orchestrator,
        notes_store=None,
        defaults: Optional[WorkflowConfig] = None,
        delivery_methods: Optional[List[str]] = None,
    ):
        self.store = store
        self.bus = bus
        self.context_agent = context_agent
        self.brief_generator = brief_generator
        self.delivery = delivery
        self.analyzer = analyzer
        self.orchestrator = orchestrator
        self.notes_store = notes_store
        self.defaults = defaults or WorkflowConfig()
        if delivery_methods is None and delivery is not None:
            delivery_methods = list(delivery.config.default_methods)
        self.delivery_methods = delivery_methods or ["email", "dashboard"]
        self.analysis_trigger = None

    def attach(self, analysis_trigger=None) -> None:
        """Subscribe to the trigger pipeline's events."""
        self.bus.subscribe(topics.BRIEF_REQUESTED, self._on_brief_requested)
        self.bus.subscribe(topics.MEETING_STARTED, self._on_meeting_started)
        self.bus.subscribe(topics.MEETING_ENDED, self._on_meeting_ended)
        if analysis_trigger is not None:
            self.analysis_trigger = analysis_trigger
            analysis_trigger.set_analysis_runner(self.run_post_meeting_for_trigger)

    def default_options(self, **overrides) -> WorkflowOptions:
        options = self.defaults.model_dump()
        options["delivery_methods"] = list(self.delivery_methods)
        options.update(overrides)
        return WorkflowOptions(**options)

    # ── Pre-meeting ────────────────────────────────────────────

    def start_workflow(
        self,
        event: CalendarEvent,
        user_id: str,
        options: Optional[WorkflowOptions] = None,
        now: Optional[datetime] = None,
    ) -> WorkflowExecutionResult:
        state = create_session_state(event, user_id, options or self.default_options(), now)
        self.store.create_session(state)
        logger.info(f"Started workflow {state.session_id} for '{event.title}'")
        self.bus.emit(topics.WORKFLOW_STARTED, {
            "session_id": state.session_id, "user_id": user_id, "event_id": event.event_id,
        })
        return self._run_pre_meeting(state)

    def _run_pre_meeting(self, state: CalendarWorkflowState) -> WorkflowExecutionResult:
        options = state.context
        event = state.calendar_event

        try:
            if state.pre_context is None:
                transition(state, Stage.PRE_MEETING_CONTEXT, Step.GATHER_CONTEXT)
                context = self.context_agent.gather_context(event, state.user_id, use_rag=options.use_rag)
                state.pre_context = context
                state.processing_metadata.rag_enhanced = context.rag_enhanced
                self._used(state, "context_agent")
                self._advance(state, Stage.PRE_MEETING_CONTEXT, Step.ASSESS_RISKS, 10)

            if options.generate_brief and state.meeting_brief is None:
                transition(state, Stage.BRIEF_GENERATION, Step.GENERATE_BRIEF)
                started = time.monotonic()
                state.meeting_brief = self.brief_generator.generate_brief(event, state.pre_context)
                state.brief_generation_time_ms = _elapsed_ms(started)
                state.processing_metadata.performance_metrics["brief_generation_ms"] = state.brief_generation_time_ms
                self._used(state, "brief_generator")
                self._advance(state, Stage.BRIEF_GENERATION, Step.GENERATE_BRIEF, 40)

            if options.deliver_brief and state.meeting_brief is not None and not state.brief_delivery_status.delivered:
                transition(state, Stage.BRIEF_DELIVERY, Step.DELIVER_BRIEF)
                self._deliver(state)
                self._advance(state, Stage.BRIEF_DELIVERY, Step.DELIVER_BRIEF, 70)

            if options.monitor_meeting and options.process_post_meeting:
                self._advance(state, Stage.MEETING_MONITORING, Step.MONITOR_MEETING_START, 75)
                logger.info(f"Workflow {state.session_id} is waiting for '{event.title}' to happen")
                return WorkflowExecutionResult.from_state(state)

            return self._complete(state)
        except Exception as e:
            return self._fail(state, e)

    def _deliver(self, state: CalendarWorkflowState) -> None:
        results = self.delivery.deliver_brief(
            state.meeting_brief, state.calendar_event, state.context.delivery_methods,
        )
        delivered = [r for r in results if r.status == "delivered"]
        recipients = sorted({email for r in delivered for email in r.recipients})
        state.brief_delivery_status = BriefDeliveryStatus(
            delivered=bool(delivered),
            delivery_methods=[r.method for r in delivered],
            delivery_time=utcnow() if delivered else None,
            recipients=recipients,
        )
        state.metadata["delivery_results"] = [r.model_dump(mode="json") for r in results]
        if not delivered:
            logger.warning(f"Brief for '{state.calendar_event.title}' was not delivered on any channel")

    # ── Meeting lifecycle ──────────────────────────────────────

    def find_active_session(self, user_id: str, event_id: str) -> Optional[CalendarWorkflowState]:
        """Newest unfinished session for this user's event. Failed sessions only resume via retry."""
        for state in self.store.get_sessions_by_event(event_id):
            if (
                state.user_id == user_id
                and state.status == SessionStatus.ACTIVE
                and state.stage != Stage.ERROR
                and not state.is_terminal
            ):
                return state
        return None

    def is_cancelled(self, user_id: str, event_id: str) -> bool:
        """Whether the user's newest session for this event was cancelled."""
        for state in self.store.get_sessions_by_event(event_id):
            if state.user_id == user_id:
                return bool(state.metadata.get("cancelled"))
        return False

    def handle_meeting_started(
        self, user_id: str, event: CalendarEvent, now: Optional[datetime] = None
    ) -> Optional[CalendarWorkflowState]:
        state = self.find_active_session(user_id, event.event_id)
        if state is None:
            logger.debug(f"No workflow to update for started meeting '{event.title}'")
            return None

        state.meeting_status = MeetingStatus.STARTED
        state.actual_meeting_start_time = now or utcnow()
        if state.stage == Stage.MEETING_MONITORING:
            self._advance(state, Stage.MEETING_MONITORING, Step.TRACK_MEETING_PROGRESS)
        else:
            self.store.save_session(state)
        return state

    def handle_meeting_ended(
        self, user_id: str, event: CalendarEvent, now: Optional[datetime] = None
    ) -> Optional[CalendarWorkflowState]:
        """
        Mark the meeting ended and hand it to the analysis trigger.

        Meetings that never got a pre-meeting workflow (created after the
        brief window, briefs disabled, ...) get a post-meeting-only session.
        """
        now = now or utcnow()
        state = self.find_active_session(user_id, event.event_id)
        if state is None:
            if self.is_cancelled(user_id, event.event_id):
                logger.info(f"Workflow for '{event.title}' was cancelled, skipping post-meeting")
                return None
            if not (self.defaults.monitor_meeting and self.defaults.process_post_meeting):
                return None
            state = self._post_meeting_session(user_id, event, now)

        state.calendar_event = event
        state.meeting_status = MeetingStatus.ENDED
        state.actual_meeting_end_time = now
        if state.actual_meeting_start_time is None:
            state.actual_meeting_start_time = event.start_time
        if state.stage == Stage.MEETING_MONITORING:
            self._advance(state, Stage.MEETING_MONITORING, Step.DETECT_MEETING_END)
        else:
            self.store.save_session(state)

        if not state.context.process_post_meeting or self.analysis_trigger is None:
            return state

        # The trigger may run analysis synchronously, so nothing of `state`
        # is saved after this point
        trigger_id = self.analysis_trigger.initiate_trigger(
            event.event_id,
            user_id,
            event,
            metadata={
                "session_id": state.session_id,
                "max_wait_time_minutes": state.context.max_wait_time_minutes,
            },
            now=now,
        )
        return self.store.update_session(
            state.session_id, {"metadata": {**self._metadata(state.session_id), "analysis_trigger_id": trigger_id}},
        )

    def _post_meeting_session(self, user_id: str, event: CalendarEvent, now: datetime) -> CalendarWorkflowState:
        options = self.default_options(generate_brief=False, deliver_brief=False)
        state = create_session_state(event, user_id, options, now)
        transition(state, Stage.MEETING_MONITORING, Step.DETECT_MEETING_END, 75, now=now)
        state.tags.append("post_meeting_only")
        self.store.create_session(state)
        self.bus.emit(topics.WORKFLOW_STARTED, {
            "session_id": state.session_id, "user_id": user_id, "event_id": event.event_id,
        })
        return state

    # ── Post-meeting ───────────────────────────────────────────

    def run_post_meeting_for_trigger(self, trigger) -> WorkflowExecutionResult:
        """Analysis runner for MeetingAnalysisTriggerService."""
        state = None
        session_id = trigger.metadata.get("session_id")
        if session_id:
            state = self.store.get_session(session_id)
            if state is not None and state.metadata.get("cancelled"):
                raise WorkflowStepError(f"Workflow {session_id} was cancelled")
            if state is not None and (state.is_terminal or state.stage == Stage.ERROR):
                state = None
        if state is None:
            state = self.find_active_session(trigger.user_id, trigger.event_id)
        if state is None:
            if self.is_cancelled(trigger.user_id, trigger.event_id):
                raise WorkflowStepError(f"Workflow for event {trigger.event_id} was cancelled")
            state = self._post_meeting_session(trigger.user_id, trigger.calendar_event, utcnow())

        result = self.run_post_meeting(state.session_id, trigger.transcript, trigger.recording)
        if result.status == "failed":
            raise WorkflowStepError(result.error or "Post-meeting processing failed")
        return result

    def run_post_meeting(
        self,
        session_id: str,
        transcript: Optional[str] = None,
        recording: Optional[MeetingRecording] = None,
    ) -> WorkflowExecutionResult:
        """
        Analyse the meeting and orchestrate follow-ups.

        Raises:
            SessionNotFoundError: if the session does not exist
        """
        state = self.store.get_session(session_id)
        if state is None:
            raise SessionNotFoundError(session_id)
        if state.is_terminal:
            logger.info(f"Workflow {session_id} already completed")
            return WorkflowExecutionResult.from_state(state)
        if state.stage == Stage.ERROR:
            logger.warning(f"Workflow {session_id} is in error, not running post-meeting")
            result = WorkflowExecutionResult.from_state(state)
            result.status = "failed"
            result.error = "Workflow is in error; retry it to resume"
            return result

        if transcript:
            state.meeting_transcript = transcript
        if recording is not None:
            state.meeting_recording = recording

        try:
            if not state.context.process_post_meeting:
                return self._complete(state)

            if state.analysis_result is None:
                transition(state, Stage.POST_MEETING_ANALYSIS, Step.TRIGGER_ANALYSIS)
                started = time.monotonic()
                analysis = self.analyzer.analyze(state.meeting_transcript, state.calendar_event)
                state.analysis_result = analysis
                state.analysis_processing_time_ms = _elapsed_ms(started)
                state.processing_metadata.performance_metrics["analysis_ms"] = state.analysis_processing_time_ms
                self._used(state, "transcript_analyzer")
                if self.notes_store is not None:
                    self.notes_store.record_analysis(analysis, state.calendar_event)
                self._advance(state, Stage.POST_MEETING_ANALYSIS, Step.PROCESS_ANALYSIS_RESULTS, 85)
                self.bus.emit(topics.ANALYSIS_COMPLETED, {
                    "session_id": state.session_id,
                    "event_id": state.event_id,
                    "action_items": len(analysis.action_items),
                    "decisions": len(analysis.decisions),
                })

            if state.context.generate_follow_ups and state.follow_up_plan is None:
                transition(state, Stage.FOLLOW_UP_ORCHESTRATION, Step.GENERATE_FOLLOW_UP_PLAN)
                self._orchestrate(state)
                self._advance(state, Stage.FOLLOW_UP_ORCHESTRATION, Step.ROUTE_FOLLOW_UP_ACTIONS, 95)

            result = self._complete(state)
        except Exception as e:
            return self._fail(state, e)

        if self.analysis_trigger is not None and state.analysis_result is not None:
            self.analysis_trigger.handle_analysis_completed(state.event_id, state.analysis_result, state.session_id)
        return result

    def _orchestrate(self, state: CalendarWorkflowState) -> None:
        started = time.monotonic()
        outcome = self.orchestrator.process({
            "meeting_analysis_result": state.analysis_result,
            "autonomy_level": state.autonomy_level.value,
            "meeting_start": state.calendar_event.start_time,
            "session_id": state.session_id,
        })
        if outcome.stage == "failed":
            raise WorkflowStepError(outcome.error or "Follow-up orchestration failed")

        plan = outcome.plan
        state.follow_up_plan = plan
        state.follow_up_status = FollowUpStatus(
            emails_generated=len(outcome.email_drafts),
            meetings_scheduled=len(outcome.scheduling_requests),
            tasks_created=len(plan.task_follow_ups),
            routing_complete=all(o.status == "routed" for o in outcome.routing),
        )
        state.approval_required = plan.metadata.requires_approval
        state.metadata["email_drafts"] = [d.model_dump(mode="json") for d in outcome.email_drafts]
        state.metadata["scheduling_requests"] = [r.model_dump(mode="json") for r in outcome.scheduling_requests]
        state.follow_up_generation_time_ms = _elapsed_ms(started)
        self._used(state, "post_meeting_orchestrator")

    # ── Session management ─────────────────────────────────────

    def get_workflow_status(self, session_id: str) -> Optional[Dict[str, Any]]:
        state = self.store.get_session(session_id)
        if state is None:
            return None
        return {
            "session_id": state.session_id,
            "event_id": state.event_id,
            "title": state.calendar_event.title,
            "stage": state.stage.value,
            "current_step": state.current_step.value,
            "progress": state.progress,
            "meeting_status": state.meeting_status.value,
            "error": state.error,
            "has_brief": state.meeting_brief is not None,
            "brief_delivered": state.brief_delivery_status.delivered,
            "has_analysis": state.analysis_result is not None,
            "follow_up_status": state.follow_up_status.model_dump(),
            "approval_required": state.approval_required,
            "retry_count": state.retry_count,
            "updated_at": state.updated_at.isoformat(),
        }

    def cancel_workflow(self, session_id: str, now: Optional[datetime] = None) -> bool:
        state = self.store.get_session(session_id)
        if state is None or state.is_terminal:
            return False

        transition(state, Stage.ERROR, error=CANCELLED_MESSAGE, now=now)
        state.metadata["cancelled"] = True
        self.store.save_session(state)
        if self.analysis_trigger is not None:
            self.analysis_trigger.cancel_trigger(state.event_id)
        logger.info(f"Cancelled workflow {session_id}")
        self.bus.emit(topics.WORKFLOW_CANCELLED, {"session_id": session_id, "event_id": state.event_id})
        return True

    def retry_session(self, session_id: str) -> WorkflowExecutionResult:
        """
        Resume a failed session from the stage it failed in.

        Raises:
            SessionNotFoundError: if the session does not exist
        """
        state = self.store.get_session(session_id)
        if state is None:
            raise SessionNotFoundError(session_id)

        refusal = None
        if state.stage != Stage.ERROR:
            refusal = "Only failed workflows can be retried"
        elif state.metadata.get("cancelled"):
            refusal = "Cancelled workflows cannot be retried"
        elif state.retry_count >= state.context.retry_attempts:
            refusal = f"Retry limit reached ({state.context.retry_attempts})"
        if refusal:
            logger.warning(f"Not retrying {session_id}: {refusal}")
            result = WorkflowExecutionResult.from_state(state)
            result.status = "failed"
            result.error = refusal
            return result

        target = failed_stage(state)
        if target is None or target == Stage.INITIALIZED:
            target = Stage.PRE_MEETING_CONTEXT
        state.retry_count += 1
        logger.info(f"Retrying workflow {session_id} from {target.value} (attempt {state.retry_count})")
        transition(state, target)
        self.store.save_session(state)

        if target in POST_MEETING_STAGES:
            return self.run_post_meeting(session_id)
        if target == Stage.MEETING_MONITORING:
            return WorkflowExecutionResult.from_state(state)
        return self._run_pre_meeting(state)

    def get_user_workflow_stats(self, user_id: str, recent_limit: int = 5) -> Dict[str, Any]:
        stats = self.store.get_session_stats(user_id=user_id)
        recent = self.store.get_sessions_by_user(user_id, SessionQuery(limit=recent_limit))
        return {
            "user_id": user_id,
            "stats": stats.model_dump(mode="json"),
            "recent_workflows": [
                {
                    "session_id": s.session_id,
                    "title": s.calendar_event.title,
                    "stage": s.stage.value,
                    "progress": s.progress,
                    "created_at": s.created_at.isoformat(),
                }
                for s in recent
            ],
        }

    def record_interaction(
        self, session_id: str, interaction_type: str, data: Optional[Dict[str, Any]] = None
    ) -> Optional[CalendarWorkflowState]:
        """Record approval / modification / rejection / feedback on a session."""
        state = self.store.get_session(session_id)
        if state is None:
            return None

        state.user_interactions.append(UserInteraction(type=interaction_type, data=data or {}))
        if interaction_type in ("approval", "rejection"):
            state.approval_required = False
        state.updated_at = utcnow()
        return self.store.save_session(state)

    # ── Bus handlers ───────────────────────────────────────────

    def _on_brief_requested(self, payload: Dict[str, Any]) -> None:
        event = payload["event"]
        existing = self.find_active_session(payload["user_id"], event.event_id)
        if existing is not None:
            logger.info(f"Workflow {existing.session_id} already covers '{event.title}'")
            return
        if self.is_cancelled(payload["user_id"], event.event_id):
            logger.info(f"Workflow for '{event.title}' was cancelled, not starting another")
            return
        self.start_workflow(event, payload["user_id"])

    def _on_meeting_started(self, payload: Dict[str, Any]) -> None:
        self.handle_meeting_started(payload["user_id"], payload["event"])

    def _on_meeting_ended(self, payload: Dict[str, Any]) -> None:
        self.handle_meeting_ended(payload["user_id"], payload["event"])

    # ── Internals ──────────────────────────────────────────────

    def _advance(
        self,
        state: CalendarWorkflowState,
        stage: CalendarWorkflowStage,
        step: CalendarWorkflowStep,
        progress: Optional[int] = None,
    ) -> None:
        transition(state, stage, step, progress)
        self.store.save_session(state)
        self.bus.emit(topics.WORKFLOW_PROGRESS, {
            "session_id": state.session_id,
            "stage": state.stage.value,
            "step": state.current_step.value,
            "progress": state.progress,
        })

    def _complete(self, state: CalendarWorkflowState) -> WorkflowExecutionResult:
        transition(state, Stage.COMPLETED)
        self.store.save_session(state)
        logger.info(f"Workflow {state.session_id} completed in {state.processing_time_ms} ms")
        self.bus.emit(topics.WORKFLOW_COMPLETED, {
            "session_id": state.session_id, "event_id": state.event_id,
        })
        return WorkflowExecutionResult.from_state(state)

    def _fail(self, state: CalendarWorkflowState, error: Exception) -> WorkflowExecutionResult:
        message = str(error) or error.__class__.__name__
        logger.error(f"Workflow {state.session_id} failed in {state.stage.value}: {message}")
        if not state.is_terminal:
            transition(state, Stage.ERROR, error=message)
        self.store.save_session(state)
        self.bus.emit(topics.WORKFLOW_ERROR, {
            "session_id": state.session_id,
            "event_id": state.event_id,
            "stage": state.error_stages[-1] if state.error_stages else state.stage.value,
            "error": message,
        })
        return WorkflowExecutionResult.from_state(state)

    def _metadata(self, session_id: str) -> Dict[str, Any]:
        state = self.store.get_session(session_id)
        return dict(state.metadata) if state is not None else {}

    @staticmethod
    def _used(state: CalendarWorkflowState, agent: str) -> None:
        if agent not in state.processing_metadata.agents_used:
            state.processing_metadata.agents_used.append(agent)
