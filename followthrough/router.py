"""
Dispatch of follow-up routing decisions to their handlers.

One handler per RoutingType. route(plan) runs every decision:

- in priority order (1 = urgent first), stable within a priority
- only after all of its dependencies were routed; a decision whose
  dependency failed (or never resolves) fails too
- a decision without a registered handler fails
- a handler exception fails only that decision

Each decision's status ("routed" / "failed") and error are written back
onto the plan, and a RoutingOutcome per decision is returned.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from followthrough.models import FollowUpPlan, RoutingDecision, RoutingType

logger = logging.getLogger(__name__)

RoutingHandler = Callable[[RoutingDecision], Dict[str, Any]]


class RoutingOutcome(BaseModel):
    decision_id: str
    type: RoutingType
    target: str
    status: str  # routed, failed
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class FollowUpRouter:
    """
    Usage:
        router = FollowUpRouter()
        router.register(RoutingType.TASK_MANAGEMENT, create_task)
        outcomes = router.route(plan)
    """

    def __init__(self):
        self._handlers: Dict[RoutingType, RoutingHandler] = {}

    def register(self, routing_type: RoutingType, handler: RoutingHandler) -> None:
        self._handlers[routing_type] = handler

    def has_handler(self, routing_type: RoutingType) -> bool:
        return routing_type in self._handlers

    def route(self, plan: FollowUpPlan) -> List[RoutingOutcome]:
        pending = sorted(plan.routing_decisions, key=lambda d: d.priority)
        known_ids = {d.id for d in plan.routing_decisions}
        outcomes: Dict[str, RoutingOutcome] = {}

        while pending:
            progressed = False
            for decision in list(pending):
                deps = [d for d in decision.dependencies if d in known_ids]
                if any(d not in outcomes for d in deps):
                    continue  # wait for dependencies

                pending.remove(decision)
                progressed = True
                failed_deps = [d for d in deps if outcomes[d].status != "routed"]
                if failed_deps:
                    outcomes[decision.id] = self._fail(
                        decision, f"Dependency failed: {', '.join(failed_deps)}"
                    )
                else:
                    outcomes[decision.id] = self._dispatch(decision)

            if not progressed:
                # Circular dependencies: nothing left can ever run
                for decision in pending:
                    outcomes[decision.id] = self._fail(decision, "Unresolvable dependencies")
                break

        routed = sum(1 for o in outcomes.values() if o.status == "routed")
        logger.info("Routed %d/%d follow-up action(s) for %s", routed, len(outcomes), plan.meeting_id)
        return [outcomes[d.id] for d in plan.routing_decisions]

    def _dispatch(self, decision: RoutingDecision) -> RoutingOutcome:
        handler = self._handlers.get(decision.type)
        if handler is None:
            return self._fail(decision, f"No handler for routing type '{decision.type.value}'")

        try:
            result = handler(decision) or {}
        except Exception as e:
            logger.error("Routing %s to %s failed: %s", decision.id, decision.target, e)
            return self._fail(decision, str(e))

        decision.status = "routed"
        decision.error = None
        logger.debug("Routed %s to %s", decision.id, decision.target)
        return RoutingOutcome(
            decision_id=decision.id,
            type=decision.type,
            target=decision.target,
            status="routed",
            result=result,
        )

    @staticmethod
    def _fail(decision: RoutingDecision, error: str) -> RoutingOutcome:
        decision.status = "failed"
        decision.error = error
        return RoutingOutcome(
            decision_id=decision.id,
            type=decision.type,
            target=decision.target,
            status="failed",
            error=error,
        )
