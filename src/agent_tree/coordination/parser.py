"""Best-effort extraction of structured records from planner text.

Decomposition grammar, one block per subtask::

    Subtask 1: Collect sources
    Description: Find primary references for the topic.
    Priority: high
    Agent: WebResearcherAgent
    Complexity: simple
    Dependencies: None

Blocks are separated by ``Subtask N:`` headers or by ``---``, ``***`` or
``===`` rules. ``Description`` and ``Priority`` are required; ``Agent``,
``Complexity`` (default simple) and ``Dependencies`` (1-based block numbers or
``None``) are optional. A block marked complex is addressed to a Coordinator.
When no block parses, capitalized title lines followed by the same fields are
tried, and if that also fails the raw text is logged and an empty list
returned.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from agent_tree.coordination.agents import AgentType
from agent_tree.coordination.models import Complexity, ParsedSubtask, RecoveryAction, TaskPriority

logger = logging.getLogger(__name__)

RAW_PREVIEW_CHARS = 2_000

_NO_SUBTASKS = re.compile(r"\s*NO SUBTASKS\b", re.IGNORECASE)
_SECTION_SPLIT = re.compile(r"---|\*{3}|={3}|Subtask\s+\d+:")
_SUBTASK_BLOCK = re.compile(r"Subtask\s+\d+:.*?(?=Subtask\s+\d+:|$)", re.DOTALL)
_TITLE = re.compile(r"(?:Subtask\s+\d+:)?\s*(.*?)(?:\r?\n|$)")
_DESCRIPTION = re.compile(
    r"Description:?\s*(.*?)(?=Priority:|Agent:|Dependencies:|Complexity:|$)",
    re.DOTALL,
)
_PRIORITY = re.compile(r"Priority:?\s*([Hh]igh|[Nn]ormal|[Ll]ow)")
_AGENT = re.compile(r"Agent:?\s*([A-Za-z]+Agent)")
_DEPENDENCIES = re.compile(r"Dependencies:?\s*(None|\d+(?:,\s*\d+)*)", re.IGNORECASE)
_COMPLEXITY = re.compile(r"Complexity:?\s*([Ss]imple|[Mm]oderate|[Cc]omplex)")
_TITLE_LINE = re.compile(r"(?:^|\n)(?:Subtask\s+\d+:)?[ \t]*([A-Z][\w \t,]+)(?=\n|$)")

_ACTION = re.compile(r"ACTION:\s*\[?\s*(RETRY|REDEFINE|SPLIT|HUMAN|SKIP)\b", re.IGNORECASE)
_REASON = re.compile(r"REASON:\s*(.*?)(?=\n\s*[A-Z ]+:|$)", re.DOTALL)
_DETAILS = re.compile(r"DETAILS:\s*(.*)$", re.DOTALL)
_RECOMMENDED_AGENT = re.compile(r"RECOMMENDED AGENT:\s*([A-Za-z]+Agent)")
_SYSTEM_STATE = re.compile(r"SYSTEM STATE:\s*(.*?)(?:\n\s*\n|$)", re.DOTALL)
_FLAG = r"{name}:\s*(yes|no|true|false)"


@dataclass(frozen=True, slots=True)
class RecoveryDecision:
    action: RecoveryAction
    reason: str
    details: str


@dataclass(frozen=True, slots=True)
class PlannerAssessment:
    """Orchestrator reading of a system assessment."""

    summary: str
    bottleneck: bool
    resources_critical: bool


def parse_subtasks(text: str) -> list[ParsedSubtask]:
    """Parse decomposition text; empty list when nothing usable is found."""

    if not text or not text.strip():
        logger.warning("Planner returned empty decomposition text")
        return []
    if _NO_SUBTASKS.match(text):
        logger.info("Planner reported the task needs no decomposition")
        return []

    sections = [section for section in _SECTION_SPLIT.split(text) if section.strip()]
    if len(sections) <= 1:
        sections = _SUBTASK_BLOCK.findall(text)

    parsed: list[ParsedSubtask] = []
    for section in sections:
        subtask = _parse_section(section, index=len(parsed) + 1)
        if subtask is not None:
            parsed.append(subtask)
    if parsed:
        logger.info("Parsed %d subtasks from planner output", len(parsed))
        return parsed

    parsed = _parse_by_title_lines(text)
    if parsed:
        logger.info("Parsed %d subtasks from planner output by title lines", len(parsed))
        return parsed

    logger.warning(
        "No subtasks parsed from planner output; raw text follows:\n%s",
        text[:RAW_PREVIEW_CHARS],
    )
    return []


def _parse_section(section: str, *, index: int) -> ParsedSubtask | None:
    title_match = _TITLE.match(section)
    description_match = _DESCRIPTION.search(section)
    priority_match = _PRIORITY.search(section)
    if title_match is None or description_match is None or priority_match is None:
        return None
    title = title_match.group(1).strip()
    if not title or title.startswith("Description"):
        return None

    complexity_match = _COMPLEXITY.search(section)
    complexity = (
        Complexity(complexity_match.group(1).lower()) if complexity_match else Complexity.SIMPLE
    )
    agent_match = _AGENT.search(section)
    agent_type = AgentType.from_label(agent_match.group(1)) if agent_match else None
    if complexity == Complexity.COMPLEX:
        agent_type = AgentType.COORDINATOR

    return ParsedSubtask(
        index=index,
        title=title,
        description=description_match.group(1).strip(),
        priority=TaskPriority.parse(priority_match.group(1)),
        complexity=complexity,
        agent_type=agent_type,
        dependency_indices=_parse_dependencies(section),
    )


def _parse_dependencies(section: str) -> tuple[int, ...]:
    match = _DEPENDENCIES.search(section)
    if match is None or match.group(1).lower() == "none":
        return ()
    return tuple(int(token) for token in re.split(r",\s*", match.group(1)))


def _parse_by_title_lines(text: str) -> list[ParsedSubtask]:
    parsed: list[ParsedSubtask] = []
    matches = list(_TITLE_LINE.finditer(text))
    for position, match in enumerate(matches):
        end = matches[position + 1].start() if position + 1 < len(matches) else len(text)
        section = text[match.end() : end]
        description = _DESCRIPTION.search(section)
        priority = _PRIORITY.search(section)
        if description is None or priority is None:
            continue
        parsed.append(
            ParsedSubtask(
                index=len(parsed) + 1,
                title=match.group(1).strip(),
                description=description.group(1).strip(),
                priority=TaskPriority.parse(priority.group(1)),
                complexity=Complexity.SIMPLE,
                agent_type=None,
            ),
        )
    return parsed


def parse_recovery_action(text: str) -> RecoveryDecision | None:
    """Extract ``ACTION: <X>`` from failure analysis; None when unrecognized."""

    match = _ACTION.search(text or "")
    if match is None:
        logger.warning(
            "No recovery action in planner output; raw text follows:\n%s",
            (text or "")[:RAW_PREVIEW_CHARS],
        )
        return None
    reason = _REASON.search(text)
    details = _DETAILS.search(text)
    return RecoveryDecision(
        action=RecoveryAction(match.group(1).lower()),
        reason=reason.group(1).strip() if reason else "",
        details=details.group(1).strip() if details else "",
    )


def parse_recommended_agent(text: str) -> AgentType | None:
    """Leaf agent from ``RECOMMENDED AGENT: XAgent``; None otherwise."""

    match = _RECOMMENDED_AGENT.search(text or "")
    if match is None:
        return None
    agent_type = AgentType.from_label(match.group(1))
    if agent_type is None or not agent_type.is_leaf:
        logger.info("Ignoring non-leaf agent recommendation: %s", match.group(1))
        return None
    return agent_type


def parse_assessment(text: str) -> PlannerAssessment:
    """Read explicit BOTTLENECK / RESOURCES CRITICAL flags from an assessment."""

    text = text or ""
    state = _SYSTEM_STATE.search(text)
    summary = state.group(1).strip() if state else text.strip()[:500]
    return PlannerAssessment(
        summary=summary,
        bottleneck=_flag(text, "BOTTLENECK"),
        resources_critical=_flag(text, "RESOURCES CRITICAL"),
    )


def _flag(text: str, name: str) -> bool:
    match = re.search(_FLAG.format(name=name), text, re.IGNORECASE)
    return match is not None and match.group(1).lower() in {"yes", "true"}
