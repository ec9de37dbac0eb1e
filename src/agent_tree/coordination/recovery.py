"""Failure recovery for subtasks: retry, redefine, split, escalate or skip."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from agent_tree.config import CoordinationSettings
from agent_tree.coordination.assignment import SubtaskAssigner
from agent_tree.coordination.errors import DependencyCycleError, PlannerError
from agent_tree.coordination.events import EventBus
from agent_tree.coordination.human import HumanInteractionService
from agent_tree.coordination.lifecycle import RECOVERY_PENDING, TaskLifecycle
from agent_tree.coordination.models import (
    Complexity,
    EventType,
    RecoveryAction,
    TaskCreate,
    TaskView,
    Urgency,
)
from agent_tree.coordination.parser import RecoveryDecision, parse_recovery_action
from agent_tree.coordination.planner import Planner
from agent_tree.coordination.prompts import build_failure_analysis_prompt
from agent_tree.coordination.repository import TaskGraphRepository
from agent_tree.coordination.scheduling import is_eligible

logger = logging.getLogger(__name__)

SKIPPED_RESULT = "Skipped due to non-critical failure: {error}"
REDEFINED_TITLE = "Redefined: {title}"
REDEFINED_DESCRIPTION = "REDEFINED AFTER FAILURE: {description}\n\nPrevious Error: {error}"


@dataclass(frozen=True, slots=True)
class RecoveryPlan:
    """Classified action plus how loudly to escalate if it comes to that."""

    action: RecoveryAction
    reason: str
    details: str = ""
    urgency: Urgency = Urgency.HIGH
    required: bool = True


RecoveryHandler = Callable[[TaskView, TaskView, RecoveryPlan, str], None]


class FailureRecovery:
    """Classify a subtask failure and apply exactly one recovery action."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskGraphRepository,
        lifecycle: TaskLifecycle,
        assigner: SubtaskAssigner,
        human: HumanInteractionService,
        planner: Planner,
        bus: EventBus,
        settings: CoordinationSettings,
    ) -> None:
        self.repository = repository
        self.lifecycle = lifecycle
        self.assigner = assigner
        self.human = human
        self.planner = planner
        self.bus = bus
        self.settings = settings
        self._handlers: dict[RecoveryAction, RecoveryHandler] = {
            RecoveryAction.RETRY: self._retry,
            RecoveryAction.REDEFINE: self._redefine,
            RecoveryAction.SPLIT: self._split,
            RecoveryAction.HUMAN: self._escalate,
            RecoveryAction.SKIP: self._skip,
        }

    def recover(
        self,
        parent: TaskView,
        subtask: TaskView,
        *,
        error: str | None = None,
    ) -> RecoveryAction:
        """Decide and apply recovery for a failed subtask; returns the applied action."""

        error = error or subtask.error_message or "unknown error"
        attempts = int(subtask.metadata.get("recovery_attempts", 0))
        if attempts >= self.settings.max_recovery_attempts:
            plan = RecoveryPlan(
                action=RecoveryAction.HUMAN,
                reason=f"Recovery attempts exhausted ({attempts})",
            )
        else:
            plan = self.classify(parent, subtask, error=error, attempts=attempts)
        if plan.action == RecoveryAction.SPLIT and not self.assigner.can_nest(subtask):
            plan = RecoveryPlan(
                action=RecoveryAction.HUMAN,
                reason=f"Cannot split at nesting level {subtask.nesting_level}: {plan.reason}",
            )

        self.repository.update_task(
            subtask.task_id,
            metadata_updates={
                "recovery_action": plan.action.value,
                "recovery_attempts": attempts + 1,
                "recovery_reason": plan.reason,
                "last_error": error,
            },
            clear_metadata=(RECOVERY_PENDING,),
        )
        self.repository.append_note(
            parent.task_id,
            f"Subtask {subtask.title} failed: {error}. Recovery: {plan.action.value.upper()}",
        )
        self.bus.publish(
            EventType.RECOVERY_DECIDED,
            {"action": plan.action.value, "reason": plan.reason, "error": error},
            task_id=subtask.task_id,
            parent_task_id=parent.task_id,
            project_id=subtask.project_id,
            priority=subtask.priority.value,
        )
        logger.info(
            "Recovery for subtask %s of %s: %s (%s)",
            subtask.task_id,
            parent.task_id,
            plan.action.value,
            plan.reason,
        )
        refreshed = self.repository.require_task(subtask.task_id)
        self._handlers[plan.action](parent, refreshed, plan, error)
        return plan.action

    def classify(
        self,
        parent: TaskView,
        subtask: TaskView,
        *,
        error: str,
        attempts: int,
    ) -> RecoveryPlan:
        """Ask the planner; anything unusable becomes an optional low-urgency escalation."""

        try:
            text = self.planner.complete(
                build_failure_analysis_prompt(
                    parent=parent,
                    subtask=subtask,
                    error=error,
                    attempts=attempts,
                ),
                purpose="failure_analysis",
                task_id=subtask.task_id,
            )
        except PlannerError as planner_error:
            logger.warning("Failure analysis failed for %s: %s", subtask.task_id, planner_error)
            return RecoveryPlan(
                action=RecoveryAction.HUMAN,
                reason=f"Failure analysis unavailable: {planner_error}",
                urgency=Urgency.LOW,
                required=False,
            )
        decision: RecoveryDecision | None = parse_recovery_action(text)
        if decision is None:
            return RecoveryPlan(
                action=RecoveryAction.HUMAN,
                reason="Failure analysis was unclear",
                urgency=Urgency.LOW,
                required=False,
            )
        return RecoveryPlan(
            action=decision.action,
            reason=decision.reason,
            details=decision.details,
        )

    def _retry(
        self,
        parent: TaskView,
        subtask: TaskView,
        plan: RecoveryPlan,
        error: str,
    ) -> None:
        requeued = self.lifecycle.requeue(subtask.task_id)
        self._dispatch_if_eligible(parent, requeued)

    def _redefine(
        self,
        parent: TaskView,
        subtask: TaskView,
        plan: RecoveryPlan,
        error: str,
    ) -> None:
        description = REDEFINED_DESCRIPTION.format(description=subtask.description, error=error)
        if plan.details:
            description = f"{description}\n\nGuidance: {plan.details}"
        agent = subtask.assigned_agent or subtask.suggested_agent
        metadata: dict[str, object] = {
            "complexity": subtask.complexity.value,
            "nesting_level": subtask.nesting_level,
            "redefines": subtask.task_id,
        }
        if agent is not None:
            metadata["suggested_agent"] = agent.value
        if subtask.metadata.get("requires_decomposition"):
            metadata["requires_decomposition"] = True
        replacement = self.repository.create_task(
            TaskCreate(
                title=REDEFINED_TITLE.format(title=subtask.title),
                description=description,
                priority=subtask.priority,
                task_type=subtask.task_type,
                parent_id=parent.task_id,
                position=subtask.position,
                metadata=metadata,
            ),
        )
        self.bus.publish(
            EventType.TASK_CREATED,
            {"title": replacement.title, "redefines": subtask.task_id},
            task_id=replacement.task_id,
            parent_task_id=parent.task_id,
            project_id=replacement.project_id,
            priority=replacement.priority.value,
        )
        if subtask.depends_on:
            self.repository.link_dependencies(replacement.task_id, subtask.depends_on)
        try:
            self.repository.replace_dependency(old_id=subtask.task_id, new_id=replacement.task_id)
        except DependencyCycleError:
            logger.warning(
                "Could not rewire dependents of %s to %s without a cycle",
                subtask.task_id,
                replacement.task_id,
            )
        self.repository.update_task(
            subtask.task_id,
            metadata_updates={"superseded_by": replacement.task_id},
        )
        self._dispatch_if_eligible(parent, self.repository.require_task(replacement.task_id))

    def _split(
        self,
        parent: TaskView,
        subtask: TaskView,
        plan: RecoveryPlan,
        error: str,
    ) -> None:
        requeued = self.lifecycle.requeue(
            subtask.task_id,
            metadata_updates={
                "split_requested": True,
                "requires_decomposition": True,
                "decomposition": "requested",
                "complexity": Complexity.COMPLEX.value,
            },
        )
        self._dispatch_if_eligible(parent, requeued)

    def _escalate(
        self,
        parent: TaskView,
        subtask: TaskView,
        plan: RecoveryPlan,
        error: str,
    ) -> None:
        if plan.required:
            question = f"Subtask {subtask.title} failed and requires human intervention: {error}"
        else:
            question = (
                f"Subtask {subtask.title} failed and automatic recovery is unclear. "
                f"Please review: {error}"
            )
        interaction = self.human.request_input(
            subtask.task_id,
            question,
            context=plan.reason,
            required=plan.required,
            urgency=plan.urgency,
            block_task=False,
        )
        self.lifecycle.hold_for_human(subtask.task_id, interaction_id=interaction.interaction_id)

    def _skip(
        self,
        parent: TaskView,
        subtask: TaskView,
        plan: RecoveryPlan,
        error: str,
    ) -> None:
        self.lifecycle.skip(subtask.task_id, result=SKIPPED_RESULT.format(error=error))

    def _dispatch_if_eligible(self, parent: TaskView, subtask: TaskView) -> None:
        siblings = self.repository.list_children(parent.task_id)
        states = {sibling.task_id: sibling.state for sibling in siblings}
        if is_eligible(subtask, states):
            self.assigner.assign(subtask)
        else:
            logger.debug("Subtask %s waits for its dependencies", subtask.task_id)
