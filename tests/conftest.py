"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from agent_tree.config import Settings, WorkerSettings
from agent_tree.coordination import orchestrator as orchestrator_module
from agent_tree.coordination.errors import PlannerError
from agent_tree.coordination.repository import TaskGraphRepository
from agent_tree.coordination.runtime import CoordinationRuntime, build_runtime
from agent_tree.coordination.workers import WorkItem, WorkOutcome

HEALTHY_ASSESSMENT = "SYSTEM STATE: All queues are moving.\nBOTTLENECK: no\nRESOURCES CRITICAL: no"

THREE_SUBTASKS = """\
Subtask 1: Collect sources
Description: Find primary references for the topic.
Priority: high
Agent: WebResearcherAgent
Complexity: simple
Dependencies: None

Subtask 2: Analyze findings
Description: Compare the collected numbers.
Priority: normal
Agent: AnalyzerAgent
Complexity: simple
Dependencies: None

Subtask 3: Write report
Description: Turn the analysis into a short report.
Priority: normal
Agent: WriterAgent
Complexity: simple
Dependencies: 1, 2
"""

PlannerResponse = str | PlannerError | Callable[[str], str]


class ScriptedPlanner:
    """Planner double answering per call purpose.

    Each purpose holds a queue of responses; the last one repeats once the
    queue is down to it. A PlannerError in the queue is raised instead.
    """

    def __init__(self) -> None:
        self.responses: dict[str, list[PlannerResponse]] = {
            "agent_selection": ["RECOMMENDED AGENT: ResearcherAgent"],
            "summary": ["Combined summary of all subtasks."],
            "system_assessment": [HEALTHY_ASSESSMENT],
        }
        self.calls: list[tuple[str, str | None]] = []
        self.prompts: dict[str, list[str]] = {}

    def script(self, purpose: str, *responses: PlannerResponse) -> None:
        self.responses[purpose] = list(responses)

    def count(self, purpose: str) -> int:
        return sum(1 for called, _ in self.calls if called == purpose)

    def complete(self, prompt: str, *, purpose: str, task_id: str | None = None) -> str:
        self.calls.append((purpose, task_id))
        self.prompts.setdefault(purpose, []).append(prompt)
        queue = self.responses.get(purpose)
        if not queue:
            return ""
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, PlannerError):
            raise response
        if callable(response):
            return response(prompt)
        return response


class ScriptedWorker:
    """Leaf worker double; completes everything unless told otherwise per title."""

    def __init__(self) -> None:
        self.outcomes: dict[str, list[WorkOutcome | Exception]] = {}
        self.items: list[WorkItem] = []

    def script(self, title: str, *outcomes: WorkOutcome | Exception) -> None:
        self.outcomes[title] = list(outcomes)

    def titles(self) -> list[str]:
        return [item.title for item in self.items]

    def execute(self, item: WorkItem) -> WorkOutcome:
        self.items.append(item)
        queue = self.outcomes.get(item.title)
        if not queue:
            return WorkOutcome.completed(f"done: {item.title}")
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture(autouse=True)
def quiet_host_metrics(monkeypatch):
    """Keep host load and disk readings out of orchestrator decisions."""

    monkeypatch.setattr(orchestrator_module, "_load_percent", lambda: None)
    monkeypatch.setattr(orchestrator_module, "_disk_percent", lambda path: None)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "agent-tree.db"


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    return Settings(
        db_path=db_path,
        worker=WorkerSettings(worker_id="test-worker", poll_interval_seconds=0.0),
    )


@pytest.fixture()
def repository(db_path: Path) -> Iterator[TaskGraphRepository]:
    repo = TaskGraphRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def planner() -> ScriptedPlanner:
    return ScriptedPlanner()


@pytest.fixture()
def worker() -> ScriptedWorker:
    return ScriptedWorker()


@pytest.fixture()
def runtime(
    settings: Settings,
    repository: TaskGraphRepository,
    planner: ScriptedPlanner,
    worker: ScriptedWorker,
) -> CoordinationRuntime:
    return build_runtime(settings, repository=repository, planner=planner, worker=worker)
