"""Leaf worker interface and the bundled implementations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.errors import PlannerError
from agent_tree.coordination.planner import Planner

WORKER_PROMPT = """\
You are the {agent_name}. Complete the following assignment and reply with the
result only.

Title: {title}

{instructions}
{human_response}"""


class WorkStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_INPUT = "needs_input"


@dataclass(frozen=True, slots=True)
class WorkItem:
    """What a leaf worker receives for one subtask."""

    task_id: str
    agent_type: AgentType
    title: str
    instructions: str
    human_response: str | None = None
    attempt: int = 1


@dataclass(frozen=True, slots=True)
class WorkOutcome:
    status: WorkStatus
    result: str | None = None
    error: str | None = None
    question: str | None = None
    required: bool = True

    @classmethod
    def completed(cls, result: str) -> WorkOutcome:
        return cls(status=WorkStatus.COMPLETED, result=result)

    @classmethod
    def failed(cls, error: str) -> WorkOutcome:
        return cls(status=WorkStatus.FAILED, error=error)

    @classmethod
    def needs_input(cls, question: str, *, required: bool = True) -> WorkOutcome:
        return cls(status=WorkStatus.NEEDS_INPUT, question=question, required=required)


class WorkerAgent(Protocol):
    """Protocol implemented by leaf workers."""

    def execute(self, item: WorkItem) -> WorkOutcome:
        """Do the subtask's actual work."""


class EchoWorker:
    """Deterministic worker for demos and tests."""

    def execute(self, item: WorkItem) -> WorkOutcome:
        text = item.instructions.strip() or item.title
        if item.human_response:
            text = f"{text}\n\nOperator input: {item.human_response}"
        return WorkOutcome.completed(f"[{item.agent_type.display_name}] {text}")


class PlannerWorker:
    """Leaf worker that delegates the subtask to the planner backend."""

    def __init__(self, planner: Planner) -> None:
        self.planner = planner

    def execute(self, item: WorkItem) -> WorkOutcome:
        response = (
            f"\nOperator input: {item.human_response}\n" if item.human_response else ""
        )
        prompt = WORKER_PROMPT.format(
            agent_name=item.agent_type.display_name,
            title=item.title,
            instructions=item.instructions,
            human_response=response,
        )
        try:
            text = self.planner.complete(prompt, purpose="leaf_work", task_id=item.task_id)
        except PlannerError as error:
            if error.transient:
                raise
            return WorkOutcome.failed(str(error))
        if not text:
            return WorkOutcome.failed("Worker produced an empty result")
        return WorkOutcome.completed(text)
