"""Stateless coordinator: decompose a task, dispatch subtasks, recover, finalize."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from agent_tree.config import CoordinationSettings
from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.assignment import Assignment, AssignmentStatus, SubtaskAssigner
from agent_tree.coordination.errors import DependencyCycleError, PlannerError
from agent_tree.coordination.lifecycle import RECOVERY_PENDING, TaskLifecycle
from agent_tree.coordination.models import (
    CompletionResult,
    CoordinatorOutcome,
    OutcomeKind,
    ParsedSubtask,
    RecoveryAction,
    TaskCreate,
    TaskState,
    TaskTransition,
    TaskType,
    TaskView,
    TriggerContext,
    TriggerKind,
)
from agent_tree.coordination.parser import parse_subtasks
from agent_tree.coordination.planner import Planner
from agent_tree.coordination.prompts import build_decomposition_prompt, build_summary_prompt
from agent_tree.coordination.recovery import FailureRecovery
from agent_tree.coordination.repository import TaskGraphRepository
from agent_tree.coordination.scheduling import (
    live_subtasks,
    next_batch,
    select_eligible,
    stragglers,
)
from agent_tree.storage.common import utc_now

logger = logging.getLogger(__name__)

NO_SUBTASKS_SUMMARY = "Task completed without subtasks."
SUMMARY_FALLBACK = "Task completed. All subtasks finished; a summary could not be generated."

_TASK_TYPES = {
    AgentType.RESEARCHER: TaskType.RESEARCH,
    AgentType.WEB_RESEARCHER: TaskType.RESEARCH,
    AgentType.CODE_RESEARCHER: TaskType.CODE,
    AgentType.ANALYZER: TaskType.ANALYSIS,
    AgentType.WRITER: TaskType.GENERAL,
    AgentType.COORDINATOR: TaskType.ORCHESTRATION,
}


class Coordinator:
    """Supervises one task per invocation.

    Nothing is kept between calls. Each ``run`` reads the task and its
    subtasks from the repository, does one step chosen by the trigger
    context, and leaves follow-up work to events and queued jobs.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskGraphRepository,
        lifecycle: TaskLifecycle,
        assigner: SubtaskAssigner,
        recovery: FailureRecovery,
        planner: Planner,
        settings: CoordinationSettings,
    ) -> None:
        self.repository = repository
        self.lifecycle = lifecycle
        self.assigner = assigner
        self.recovery = recovery
        self.planner = planner
        self.settings = settings

    def run(self, task_id: str, context: TriggerContext | None = None) -> CoordinatorOutcome:
        """Run one coordination step; failures mark the task failed and re-raise."""

        context = context or TriggerContext()
        try:
            return self._run(task_id, context)
        except Exception as error:
            logger.exception("Coordinator failed for task %s (%s)", task_id, context.kind.value)
            self._fail_task(task_id, error)
            raise

    def _run(self, task_id: str, context: TriggerContext) -> CoordinatorOutcome:
        task = self.repository.require_task(task_id)
        if task.is_terminal:
            return CoordinatorOutcome(
                task_id=task_id,
                kind=OutcomeKind.NOOP,
                message=f"Task is already {task.state.value}",
            )
        if task.state == TaskState.PAUSED:
            return CoordinatorOutcome(task_id=task_id, kind=OutcomeKind.NOOP, message="Task paused")
        if task.state == TaskState.PENDING:
            task = self.lifecycle.transition(
                task_id,
                TaskTransition.ACTIVATE,
                metadata_updates={"coordinator_spawned_at": utc_now().isoformat()},
            )

        children = self.repository.list_children(task_id)
        if not children:
            if task.metadata.get("decomposition") == "none":
                return CoordinatorOutcome(
                    task_id=task_id,
                    kind=OutcomeKind.NO_DECOMPOSITION,
                    message="No decomposition needed",
                )
            return self.decompose(task)

        if context.kind == TriggerKind.SUBTASK_FAILED and context.subtask_id:
            outcome = self._handle_subtask_failure(task, context)
            if outcome is not None:
                return outcome
        if context.kind == TriggerKind.HUMAN_INPUT_REQUIRED:
            return self._continue_around_wait(task, children, context)
        return self.evaluate_progress(task)

    def decompose(self, task: TaskView) -> CoordinatorOutcome:
        """Plan subtasks, persist them with dependencies, dispatch what is eligible."""

        prompt = build_decomposition_prompt(task, project_context=self._project_context(task))
        try:
            text = self.planner.complete(prompt, purpose="decomposition", task_id=task.task_id)
        except PlannerError as error:
            logger.warning("Decomposition planner call failed for %s: %s", task.task_id, error)
            text = ""
        parsed = parse_subtasks(text)
        if not parsed:
            self.repository.update_task(task.task_id, metadata_updates={"decomposition": "none"})
            self.repository.append_note(task.task_id, "No decomposition needed")
            return CoordinatorOutcome(
                task_id=task.task_id,
                kind=OutcomeKind.NO_DECOMPOSITION,
                message="No decomposition needed",
            )

        created = self._create_subtasks(task, parsed)
        self.repository.update_task(
            task.task_id,
            metadata_updates={
                "decomposition": "planned",
                "decomposed_at": utc_now().isoformat(),
                "subtask_count": len(created),
            },
        )
        eligible = select_eligible(self.repository.list_children(task.task_id))
        assignments = [self.assigner.assign(subtask) for subtask in eligible]
        dispatched, deferred = _split_assignments(assignments)
        self.repository.append_note(
            task.task_id,
            f"Decomposed into {len(created)} subtasks; dispatched {len(dispatched)}"
            + (f", deferred {len(deferred)}" if deferred else ""),
        )
        logger.info(
            "Task %s decomposed into %d subtasks (%d dispatched)",
            task.task_id,
            len(created),
            len(dispatched),
        )
        return CoordinatorOutcome(
            task_id=task.task_id,
            kind=OutcomeKind.DECOMPOSED,
            created=tuple(subtask.task_id for subtask in created),
            dispatched=dispatched,
            deferred=deferred,
        )

    def evaluate_progress(self, task: TaskView) -> CoordinatorOutcome:
        """Finalize when done, otherwise recover stragglers and dispatch the next batch."""

        children = self.repository.list_children(task.task_id)
        pending_recovery = [
            subtask
            for subtask in live_subtasks(children)
            if subtask.state == TaskState.FAILED and subtask.metadata.get(RECOVERY_PENDING)
        ]
        recovered: RecoveryAction | None = None
        for failed in pending_recovery:
            recovered = self.recovery.recover(task, failed)
        if pending_recovery:
            children = self.repository.list_children(task.task_id)

        if not stragglers(children):
            completion = self.mark_complete(task.task_id)
            return CoordinatorOutcome(
                task_id=task.task_id,
                kind=OutcomeKind.FINALIZED if completion.completed else OutcomeKind.IDLE,
                recovery=recovered,
                message=completion.summary or "",
            )

        batch = next_batch(select_eligible(children), self.settings.batch_size)
        dispatched, deferred = _split_assignments(
            [self.assigner.assign(subtask) for subtask in batch],
        )
        if dispatched:
            self.repository.append_note(task.task_id, f"Dispatched {len(dispatched)} subtasks")
            kind = OutcomeKind.DISPATCHED
        elif any(subtask.state == TaskState.WAITING_ON_HUMAN for subtask in children):
            kind = OutcomeKind.WAITING
        elif pending_recovery:
            kind = OutcomeKind.RECOVERED
        else:
            kind = OutcomeKind.IDLE
        return CoordinatorOutcome(
            task_id=task.task_id,
            kind=kind,
            dispatched=dispatched,
            deferred=deferred,
            recovery=recovered,
        )

    def mark_complete(self, task_id: str, summary: str | None = None) -> CompletionResult:
        """Complete the task once every live subtask is completed.

        Rejected with the list of stragglers otherwise. Exactly one
        ``task.completed`` is published per successful completion.
        """

        task = self.repository.require_task(task_id)
        if task.state == TaskState.COMPLETED:
            return CompletionResult(completed=True, task=task, summary=task.result)
        children = self.repository.list_children(task_id)
        remaining = stragglers(children)
        if remaining:
            logger.info("Task %s not complete: %d subtasks outstanding", task_id, len(remaining))
            return CompletionResult(
                completed=False,
                task=task,
                stragglers=tuple(subtask.task_id for subtask in remaining),
            )

        if summary is None:
            summary = self._summarize(task, live_subtasks(children))
        if task.state == TaskState.PENDING:
            self.lifecycle.try_transition(task_id, TaskTransition.ACTIVATE)
        completed = self.lifecycle.try_transition(task_id, TaskTransition.COMPLETE, result=summary)
        if completed is None:
            current = self.repository.require_task(task_id)
            return CompletionResult(
                completed=current.state == TaskState.COMPLETED,
                task=current,
                summary=current.result,
            )
        self.repository.append_note(task_id, "Task completed")
        logger.info("Task %s completed", task_id)
        return CompletionResult(completed=True, task=completed, summary=summary)

    def _handle_subtask_failure(
        self,
        task: TaskView,
        context: TriggerContext,
    ) -> CoordinatorOutcome | None:
        subtask = self.repository.get_task(context.subtask_id or "")
        if (
            subtask is None
            or subtask.parent_id != task.task_id
            or subtask.state != TaskState.FAILED
            or subtask.superseded_by is not None
            or not subtask.metadata.get(RECOVERY_PENDING)
        ):
            return None
        action = self.recovery.recover(task, subtask, error=context.error)
        if action == RecoveryAction.SKIP:
            progress = self.evaluate_progress(self.repository.require_task(task.task_id))
            return CoordinatorOutcome(
                task_id=task.task_id,
                kind=progress.kind,
                dispatched=progress.dispatched,
                deferred=progress.deferred,
                recovery=action,
                message=progress.message,
            )
        return CoordinatorOutcome(task_id=task.task_id, kind=OutcomeKind.RECOVERED, recovery=action)

    def _continue_around_wait(
        self,
        task: TaskView,
        children: Sequence[TaskView],
        context: TriggerContext,
    ) -> CoordinatorOutcome:
        batch = next_batch(select_eligible(children), self.settings.batch_size)
        dispatched, deferred = _split_assignments(
            [self.assigner.assign(subtask) for subtask in batch],
        )
        if dispatched:
            self.repository.append_note(
                task.task_id,
                f"Subtask {context.subtask_id} awaits human input; "
                f"dispatched {len(dispatched)} other subtasks",
            )
            return CoordinatorOutcome(
                task_id=task.task_id,
                kind=OutcomeKind.DISPATCHED,
                dispatched=dispatched,
                deferred=deferred,
            )
        self.repository.append_note(
            task.task_id,
            f"Waiting on human input for subtask {context.subtask_id}",
        )
        return CoordinatorOutcome(
            task_id=task.task_id,
            kind=OutcomeKind.WAITING,
            deferred=deferred,
            message="Waiting on human input",
        )

    def _create_subtasks(
        self,
        task: TaskView,
        parsed: Sequence[ParsedSubtask],
    ) -> list[TaskView]:
        by_index: dict[int, TaskView] = {}
        for item in parsed:
            metadata: dict[str, object] = {
                "complexity": item.complexity.value,
                "nesting_level": task.nesting_level + 1,
            }
            if item.agent_type is not None:
                metadata["suggested_agent"] = item.agent_type.value
            if item.dependency_indices:
                metadata["dependency_indices"] = list(item.dependency_indices)
            by_index[item.index] = self.repository.create_task(
                TaskCreate(
                    title=item.title,
                    description=item.description,
                    priority=item.priority,
                    task_type=_task_type(item.agent_type).value,
                    parent_id=task.task_id,
                    position=item.index,
                    metadata=metadata,
                ),
            )

        for item in parsed:
            subtask = by_index[item.index]
            for index in item.dependency_indices:
                upstream = by_index.get(index)
                if index == item.index or upstream is None:
                    logger.warning(
                        "Dropping dependency %d of subtask %d (%s): no such sibling",
                        index,
                        item.index,
                        subtask.title,
                    )
                    continue
                try:
                    self.repository.link_dependencies(subtask.task_id, [upstream.task_id])
                except DependencyCycleError:
                    logger.warning(
                        "Dropping dependency %d -> %d: it would create a cycle",
                        item.index,
                        index,
                    )
        return [by_index[item.index] for item in parsed]

    def _summarize(self, task: TaskView, subtasks: Sequence[TaskView]) -> str:
        if not subtasks:
            return NO_SUBTASKS_SUMMARY
        try:
            summary = self.planner.complete(
                build_summary_prompt(task, subtasks),
                purpose="summary",
                task_id=task.task_id,
            )
        except PlannerError as error:
            logger.warning("Summary generation failed for %s: %s", task.task_id, error)
            return SUMMARY_FALLBACK
        return summary or SUMMARY_FALLBACK

    def _project_context(self, task: TaskView) -> str | None:
        if task.project_id is None:
            return None
        project = self.repository.get_project(task.project_id)
        if project is None or not project.description:
            return None
        return f"{project.name}: {project.description}"

    def _fail_task(self, task_id: str, error: Exception) -> None:
        task = self.repository.get_task(task_id)
        if task is None or task.is_terminal:
            return
        self.lifecycle.try_fail(task_id, error=f"Coordinator error: {error}")


def _task_type(agent_type: AgentType | None) -> TaskType:
    if agent_type is None:
        return TaskType.GENERAL
    return _TASK_TYPES.get(agent_type, TaskType.GENERAL)


def _split_assignments(
    assignments: Sequence[Assignment],
) -> tuple[tuple[str, ...], tuple[str, ...]]:
    dispatched = tuple(
        item.task_id for item in assignments if item.status == AssignmentStatus.DISPATCHED
    )
    deferred = tuple(
        item.task_id for item in assignments if item.status == AssignmentStatus.DEFERRED
    )
    return dispatched, deferred
