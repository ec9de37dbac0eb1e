from __future__ import annotations

import allure
from conftest import THREE_SUBTASKS

from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.models import Complexity, RecoveryAction, TaskPriority
from agent_tree.coordination.parser import (
    parse_assessment,
    parse_recommended_agent,
    parse_recovery_action,
    parse_subtasks,
)

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Planner Output Parsing"),
]


def test_parse_subtasks_reads_every_field() -> None:
    parsed = parse_subtasks(THREE_SUBTASKS)

    assert [item.title for item in parsed] == [
        "Collect sources",
        "Analyze findings",
        "Write report",
    ]
    first = parsed[0]
    assert first.index == 1
    assert first.description == "Find primary references for the topic."
    assert first.priority == TaskPriority.HIGH
    assert first.agent_type == AgentType.WEB_RESEARCHER
    assert first.complexity == Complexity.SIMPLE
    assert first.dependency_indices == ()
    assert parsed[2].dependency_indices == (1, 2)
    assert parsed[2].agent_type == AgentType.WRITER


def test_complex_subtask_is_addressed_to_a_coordinator() -> None:
    text = """\
Subtask 1: Build the data pipeline
Description: Several stages of ingestion and cleanup.
Priority: high
Agent: CodeResearcherAgent
Complexity: complex
Dependencies: None
"""

    [parsed] = parse_subtasks(text)

    assert parsed.complexity == Complexity.COMPLEX
    assert parsed.agent_type == AgentType.COORDINATOR


def test_blocks_separated_by_rules() -> None:
    text = """\
Gather requirements
Description: Talk to the stakeholders.
Priority: low
---
Draft the plan
Description: Outline milestones.
Priority: normal
"""

    parsed = parse_subtasks(text)

    assert [item.title for item in parsed] == ["Gather requirements", "Draft the plan"]
    assert parsed[0].priority == TaskPriority.LOW
    assert parsed[1].agent_type is None


def test_no_subtasks_marker_yields_empty_list() -> None:
    assert parse_subtasks("NO SUBTASKS") == []
    assert parse_subtasks("  no subtasks needed, this is atomic") == []


def test_empty_or_unstructured_text_yields_empty_list() -> None:
    assert parse_subtasks("") == []
    assert parse_subtasks("I could not think of a plan, sorry.") == []


def test_block_without_priority_is_dropped() -> None:
    text = """\
Subtask 1: Keep me
Description: Has everything.
Priority: normal

Subtask 2: Drop me
Description: Missing its priority line.
"""

    parsed = parse_subtasks(text)

    assert [item.title for item in parsed] == ["Keep me"]


def test_parse_recovery_action() -> None:
    decision = parse_recovery_action(
        "ACTION: REDEFINE\nREASON: The instructions were ambiguous.\nDETAILS: Name the source.",
    )

    assert decision is not None
    assert decision.action == RecoveryAction.REDEFINE
    assert decision.reason == "The instructions were ambiguous."
    assert decision.details == "Name the source."


def test_parse_recovery_action_tolerates_brackets_and_case() -> None:
    decision = parse_recovery_action("Action: [skip] it does not matter")

    assert decision is not None
    assert decision.action == RecoveryAction.SKIP


def test_unrecognized_recovery_action_is_none() -> None:
    assert parse_recovery_action("I think we should probably panic.") is None
    assert parse_recovery_action("") is None


def test_recommended_agent_must_be_a_leaf() -> None:
    assert parse_recommended_agent("RECOMMENDED AGENT: WriterAgent\nREASON: prose") == (
        AgentType.WRITER
    )
    assert parse_recommended_agent("RECOMMENDED AGENT: CoordinatorAgent") is None
    assert parse_recommended_agent("RECOMMENDED AGENT: PainterAgent") is None
    assert parse_recommended_agent("no idea") is None


def test_parse_assessment_flags() -> None:
    assessment = parse_assessment(
        "SYSTEM STATE: Queues are backing up.\n\nBOTTLENECK: yes\nRESOURCES CRITICAL: no",
    )

    assert assessment.summary == "Queues are backing up."
    assert assessment.bottleneck is True
    assert assessment.resources_critical is False


def test_parse_assessment_without_flags_is_calm() -> None:
    assessment = parse_assessment("Everything looks fine.")

    assert assessment.summary == "Everything looks fine."
    assert assessment.bottleneck is False
    assert assessment.resources_critical is False
