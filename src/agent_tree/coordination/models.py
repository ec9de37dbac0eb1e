"""Domain models for the task graph, job queue and human interactions."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_tree.coordination.agents import AgentType


class TaskState(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    WAITING_ON_HUMAN = "waiting_on_human"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED})


class TaskPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort key, lower is served first."""

        return _PRIORITY_RANKS[self]

    @classmethod
    def parse(cls, value: str | None, default: TaskPriority | None = None) -> TaskPriority:
        if value is None:
            return default or cls.NORMAL
        try:
            return cls(value.strip().lower())
        except ValueError:
            return default or cls.NORMAL


_PRIORITY_RANKS = {TaskPriority.HIGH: 0, TaskPriority.NORMAL: 1, TaskPriority.LOW: 2}


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"

    @property
    def rank(self) -> int:
        return _COMPLEXITY_RANKS[self]


_COMPLEXITY_RANKS = {Complexity.SIMPLE: 0, Complexity.MODERATE: 1, Complexity.COMPLEX: 2}


class TaskType(str, Enum):
    GENERAL = "general"
    RESEARCH = "research"
    CODE = "code"
    ANALYSIS = "analysis"
    REVIEW = "review"
    ORCHESTRATION = "orchestration"


class EventType(str, Enum):
    """Event names published on the bus and stored in the event log."""

    TASK_CREATED = "task.created"
    TASK_ACTIVATED = "task.activated"
    TASK_PAUSED = "task.paused"
    TASK_WAITING_ON_HUMAN = "task.waiting_on_human"
    TASK_RESUMED = "task.resumed"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_REQUEUED = "task.requeued"
    TASK_SKIPPED = "task.skipped"
    TASK_STUCK = "task.stuck"
    RECOVERY_DECIDED = "subtask.recovery_decided"
    PRIORITY_ADJUSTED = "priority.adjusted"
    PROJECT_CREATED = "project.created"
    PROJECT_PAUSED = "project.paused"
    PROJECT_RESUMED = "project.resumed"
    HUMAN_INPUT_REQUESTED = "human.input_requested"
    HUMAN_INPUT_ANSWERED = "human.input_answered"
    HUMAN_INPUT_IGNORED = "human.input_ignored"
    HUMAN_INPUT_EXPIRED = "human.input_expired"
    INTERVENTION_RAISED = "human.intervention_raised"
    INTERVENTION_ACKNOWLEDGED = "human.intervention_acknowledged"
    INTERVENTION_CLOSED = "human.intervention_closed"
    SYSTEM_ASSESSED = "system.assessed"


class TaskTransition(str, Enum):
    ACTIVATE = "activate"
    PAUSE = "pause"
    WAIT_ON_HUMAN = "wait_on_human"
    RESUME = "resume"
    COMPLETE = "complete"
    FAIL = "fail"
    REQUEUE = "requeue"
    SKIP = "skip"
    HOLD_FOR_HUMAN = "hold_for_human"


@dataclass(frozen=True, slots=True)
class TransitionRule:
    sources: frozenset[TaskState]
    target: TaskState
    event_type: EventType


TRANSITION_RULES: Mapping[TaskTransition, TransitionRule] = {
    TaskTransition.ACTIVATE: TransitionRule(
        frozenset({TaskState.PENDING, TaskState.PAUSED}),
        TaskState.ACTIVE,
        EventType.TASK_ACTIVATED,
    ),
    TaskTransition.PAUSE: TransitionRule(
        frozenset({TaskState.ACTIVE}),
        TaskState.PAUSED,
        EventType.TASK_PAUSED,
    ),
    TaskTransition.WAIT_ON_HUMAN: TransitionRule(
        frozenset({TaskState.ACTIVE}),
        TaskState.WAITING_ON_HUMAN,
        EventType.TASK_WAITING_ON_HUMAN,
    ),
    TaskTransition.RESUME: TransitionRule(
        frozenset({TaskState.WAITING_ON_HUMAN}),
        TaskState.ACTIVE,
        EventType.TASK_RESUMED,
    ),
    TaskTransition.COMPLETE: TransitionRule(
        frozenset({TaskState.ACTIVE, TaskState.WAITING_ON_HUMAN, TaskState.PAUSED}),
        TaskState.COMPLETED,
        EventType.TASK_COMPLETED,
    ),
    TaskTransition.FAIL: TransitionRule(
        frozenset(
            {TaskState.PENDING, TaskState.ACTIVE, TaskState.WAITING_ON_HUMAN, TaskState.PAUSED},
        ),
        TaskState.FAILED,
        EventType.TASK_FAILED,
    ),
    # Recovery-only transitions out of the failed state.
    TaskTransition.REQUEUE: TransitionRule(
        frozenset({TaskState.FAILED}),
        TaskState.PENDING,
        EventType.TASK_REQUEUED,
    ),
    TaskTransition.SKIP: TransitionRule(
        frozenset({TaskState.FAILED}),
        TaskState.COMPLETED,
        EventType.TASK_SKIPPED,
    ),
    TaskTransition.HOLD_FOR_HUMAN: TransitionRule(
        frozenset({TaskState.FAILED}),
        TaskState.WAITING_ON_HUMAN,
        EventType.TASK_WAITING_ON_HUMAN,
    ),
}


class RecoveryAction(str, Enum):
    """Outcome of failure classification for a subtask."""

    RETRY = "retry"
    REDEFINE = "redefine"
    SPLIT = "split"
    HUMAN = "human"
    SKIP = "skip"


class TriggerKind(str, Enum):
    """Why a coordinator invocation was enqueued."""

    INITIAL = "initial"
    SUBTASK_COMPLETED = "subtask_completed"
    SUBTASK_FAILED = "subtask_failed"
    HUMAN_INPUT_REQUIRED = "human_input_required"
    TASK_RESUMED = "task_resumed"
    RECHECK = "recheck"


class OrchestratorTrigger(str, Enum):
    PERIODIC = "periodic"
    TASK_CREATED = "task_created"
    PROJECT_CREATED = "project_created"
    PROJECT_RESUMED = "project_resumed"
    TASK_STUCK = "task_stuck"
    RESOURCES_CRITICAL = "resources_critical"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


ACTIVE_JOB_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING})


class ProjectStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class InteractionKind(str, Enum):
    INPUT_REQUEST = "input_request"
    INTERVENTION = "intervention"


class InteractionStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    ANSWERED = "answered"
    RESOLVED = "resolved"
    IGNORED = "ignored"
    DISMISSED = "dismissed"
    EXPIRED = "expired"


class Urgency(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.NORMAL
    task_type: str = TaskType.GENERAL.value
    parent_id: str | None = None
    project_id: str | None = None
    position: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    task_id: str | None = None


@dataclass(frozen=True, slots=True)
class TaskView:
    """Read-only snapshot of one task; state changes go through the lifecycle."""

    task_id: str
    title: str
    description: str
    state: TaskState
    priority: TaskPriority
    task_type: str
    parent_id: str | None
    project_id: str | None
    position: int
    depends_on: tuple[str, ...]
    metadata: Mapping[str, Any]
    result: str | None
    error_message: str | None
    notes: tuple[str, ...]
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def complexity(self) -> Complexity:
        raw = self.metadata.get("complexity")
        try:
            return Complexity(raw) if raw else Complexity.SIMPLE
        except ValueError:
            return Complexity.SIMPLE

    @property
    def nesting_level(self) -> int:
        return int(self.metadata.get("nesting_level", 0))

    @property
    def assigned_agent(self) -> AgentType | None:
        return _agent_or_none(self.metadata.get("assigned_agent"))

    @property
    def suggested_agent(self) -> AgentType | None:
        return _agent_or_none(self.metadata.get("suggested_agent"))

    @property
    def superseded_by(self) -> str | None:
        return self.metadata.get("superseded_by")

    @property
    def waiting_for_interaction_id(self) -> str | None:
        return self.metadata.get("waiting_for_interaction_id")

    @property
    def needs_coordinator(self) -> bool:
        """True when the task should be decomposed rather than executed by a leaf."""

        if self.metadata.get("decomposition") == "none":
            return False
        return (
            self.complexity == Complexity.COMPLEX
            or self.suggested_agent == AgentType.COORDINATOR
            or bool(self.metadata.get("requires_decomposition"))
        )


@dataclass(frozen=True, slots=True)
class TransitionLogView:
    """Audit entry for one state change."""

    entry_id: int
    task_id: str
    transition: str
    state_from: TaskState | None
    state_to: TaskState | None
    created_at: datetime
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TaskDetails:
    """Task with its children and transition history."""

    task: TaskView
    children: list[TaskView]
    transitions: list[TransitionLogView]


@dataclass(frozen=True, slots=True)
class EventView:
    """Immutable envelope delivered to bus subscribers."""

    event_id: str
    event_type: str
    payload: Mapping[str, Any]
    task_id: str | None
    parent_task_id: str | None
    project_id: str | None
    job_id: str | None
    priority: str | None
    created_at: datetime


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing one agent invocation."""

    agent_type: AgentType
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 100
    task_id: str | None = None
    max_attempts: int = 3


@dataclass(frozen=True, slots=True)
class JobView:
    job_id: str
    agent_type: AgentType
    task_id: str | None
    priority: int
    status: JobStatus
    attempt: int
    max_attempts: int
    payload: Mapping[str, Any]
    worker_id: str | None
    error_summary: str | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ProjectCreate:
    name: str
    description: str = ""
    priority: TaskPriority = TaskPriority.NORMAL
    metadata: dict[str, Any] = field(default_factory=dict)
    project_id: str | None = None


@dataclass(frozen=True, slots=True)
class ProjectView:
    project_id: str
    name: str
    description: str
    status: ProjectStatus
    priority: TaskPriority
    metadata: Mapping[str, Any]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class InteractionCreate:
    """Input payload for a human input request or intervention."""

    kind: InteractionKind
    question: str
    task_id: str | None = None
    project_id: str | None = None
    context: str | None = None
    required: bool = True
    urgency: Urgency = Urgency.NORMAL
    expires_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class InteractionView:
    interaction_id: str
    kind: InteractionKind
    task_id: str | None
    project_id: str | None
    question: str
    context: str | None
    required: bool
    urgency: Urgency
    status: InteractionStatus
    response: str | None
    responded_by: str | None
    expires_at: datetime | None
    resolved_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True, slots=True)
class TriggerContext:
    """Why a coordinator job was enqueued, carried in the job payload."""

    kind: TriggerKind = TriggerKind.INITIAL
    subtask_id: str | None = None
    result: str | None = None
    error: str | None = None
    event_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"trigger": self.kind.value}
        for key in ("subtask_id", "result", "error", "event_id"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> TriggerContext:
        if not payload:
            return cls()
        try:
            kind = TriggerKind(payload.get("trigger", TriggerKind.INITIAL.value))
        except ValueError:
            kind = TriggerKind.RECHECK
        return cls(
            kind=kind,
            subtask_id=payload.get("subtask_id"),
            result=payload.get("result"),
            error=payload.get("error"),
            event_id=payload.get("event_id"),
        )


@dataclass(frozen=True, slots=True)
class ParsedSubtask:
    """One subtask extracted from planner decomposition text."""

    index: int
    title: str
    description: str
    priority: TaskPriority
    complexity: Complexity
    agent_type: AgentType | None
    dependency_indices: tuple[int, ...] = ()


class OutcomeKind(str, Enum):
    DECOMPOSED = "decomposed"
    NO_DECOMPOSITION = "no_decomposition"
    DISPATCHED = "dispatched"
    WAITING = "waiting"
    FINALIZED = "finalized"
    RECOVERED = "recovered"
    IDLE = "idle"
    NOOP = "noop"


@dataclass(frozen=True, slots=True)
class CoordinatorOutcome:
    """What one coordinator invocation did."""

    task_id: str
    kind: OutcomeKind
    created: tuple[str, ...] = ()
    dispatched: tuple[str, ...] = ()
    deferred: tuple[str, ...] = ()
    recovery: RecoveryAction | None = None
    message: str = ""


@dataclass(frozen=True, slots=True)
class CompletionResult:
    """Result of a finalization attempt."""

    completed: bool
    task: TaskView
    stragglers: tuple[str, ...] = ()
    summary: str | None = None


@dataclass(frozen=True, slots=True)
class SubtaskStatusReport:
    total: int
    by_state: Mapping[str, int]
    by_priority: Mapping[str, int]
    completion_percent: float


def _agent_or_none(value: object) -> AgentType | None:
    if not isinstance(value, str):
        return None
    return AgentType.from_label(value)
