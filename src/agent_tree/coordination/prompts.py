"""Prompt templates for planner calls."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence

from agent_tree.coordination.agents import AGENT_DESCRIPTIONS, LEAF_AGENT_TYPES
from agent_tree.coordination.models import TaskView

DECOMPOSE_PROMPT = """\
You are an expert project manager. Decompose the task below into a plan of
subtasks.

## TASK
Title: {title}

{description}
{project_context}
## REQUIREMENTS
1. Break the task into 3-7 DISTINCT subtasks with no overlap.
2. Give each subtask a single clear objective and success criteria.
3. List subtasks in execution order, dependencies first.
4. Mark a subtask "complex" only when it needs its own decomposition.
5. If the task is already atomic, answer with the single line: NO SUBTASKS.

## OUTPUT FORMAT
For each subtask write exactly:

Subtask N: CLEAR, SPECIFIC TITLE
Description: detailed instructions with success criteria
Priority: high|normal|low
Agent: {agent_names}
Complexity: simple|moderate|complex
Dependencies: comma-separated subtask numbers this depends on, or None

## SPECIALIZED AGENT TYPES
{agent_descriptions}
"""

AGENT_SELECTION_PROMPT = """\
Choose the single best agent type for this subtask.

Title: {title}
Description: {description}

Available agents:
{agent_descriptions}

Answer in this format:
RECOMMENDED AGENT: <AgentName>
REASON: brief justification
"""

FAILURE_ANALYSIS_PROMPT = """\
A subtask of a larger task has failed. Decide how to recover.

Parent task: {parent_title}
Failed subtask: {title}
Description: {description}
Error: {error}
Previous recovery attempts: {attempts}

Options:
- RETRY: the failure looks transient; run the same subtask again.
- REDEFINE: the instructions were wrong or ambiguous; rewrite the subtask.
- SPLIT: the subtask is too large; decompose it further.
- HUMAN: a person must decide or supply missing information.
- SKIP: the subtask is not essential; continue without it.

Answer in this format:
ACTION: one of RETRY, REDEFINE, SPLIT, HUMAN, SKIP
REASON: brief explanation
DETAILS: anything the next attempt should know
"""

SUMMARY_PROMPT = """\
Write a concise final summary for the task "{title}".

Task description:
{description}

Results of its subtasks:

{results}

Combine the results into one coherent answer. Do not invent facts that are
not present in the results.
"""

ASSESSMENT_PROMPT = """\
You monitor a multi-agent task system. Assess the current state.

CURRENT SYSTEM METRICS:
{metrics}

Trigger: {trigger}

Answer in this format:
SYSTEM STATE: one-paragraph assessment
BOTTLENECK: yes|no
RESOURCES CRITICAL: yes|no

KEY AREAS OF CONCERN:
- area

RECOMMENDED ACTIONS:
- action
"""


def agent_descriptions(*, include_coordinator: bool = True) -> str:
    lines = [
        f"- {agent_type.display_name}: {AGENT_DESCRIPTIONS[agent_type]}"
        for agent_type in LEAF_AGENT_TYPES
    ]
    if include_coordinator:
        coordinator = next(agent for agent in AGENT_DESCRIPTIONS if not agent.is_leaf)
        lines.append(f"- {coordinator.display_name}: {AGENT_DESCRIPTIONS[coordinator]}")
    return "\n".join(lines)


def build_decomposition_prompt(task: TaskView, *, project_context: str | None = None) -> str:
    context = f"\n## PROJECT CONTEXT\n{project_context}\n" if project_context else ""
    return DECOMPOSE_PROMPT.format(
        title=task.title,
        description=task.description or task.title,
        project_context=context,
        agent_names="|".join(agent.display_name for agent in LEAF_AGENT_TYPES),
        agent_descriptions=agent_descriptions(),
    )


def build_agent_selection_prompt(task: TaskView) -> str:
    return AGENT_SELECTION_PROMPT.format(
        title=task.title,
        description=task.description,
        agent_descriptions=agent_descriptions(include_coordinator=False),
    )


def build_failure_analysis_prompt(
    *,
    parent: TaskView,
    subtask: TaskView,
    error: str,
    attempts: int,
) -> str:
    return FAILURE_ANALYSIS_PROMPT.format(
        parent_title=parent.title,
        title=subtask.title,
        description=subtask.description,
        error=error,
        attempts=attempts,
    )


def build_summary_prompt(task: TaskView, subtasks: Sequence[TaskView]) -> str:
    results = "\n\n".join(
        f"## Subtask: {subtask.title}\n{subtask.result or ''}" for subtask in subtasks
    )
    return SUMMARY_PROMPT.format(
        title=task.title,
        description=task.description,
        results=results,
    )


def build_assessment_prompt(metrics: Mapping[str, object], *, trigger: str) -> str:
    return ASSESSMENT_PROMPT.format(
        metrics=json.dumps(metrics, indent=2, sort_keys=True, default=str),
        trigger=trigger,
    )
