"""Closed set of agent types and the registry mapping them to job handlers."""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Generic, TypeVar


class AgentType(str, Enum):
    """Every kind of agent a job can be addressed to."""

    COORDINATOR = "coordinator"
    ORCHESTRATOR = "orchestrator"
    RESEARCHER = "researcher"
    WEB_RESEARCHER = "web_researcher"
    CODE_RESEARCHER = "code_researcher"
    WRITER = "writer"
    ANALYZER = "analyzer"

    @property
    def is_leaf(self) -> bool:
        return self not in {AgentType.COORDINATOR, AgentType.ORCHESTRATOR}

    @property
    def display_name(self) -> str:
        """Name used in planner prompts, for example ``WebResearcherAgent``."""

        return "".join(part.capitalize() for part in self.value.split("_")) + "Agent"

    @classmethod
    def from_label(cls, label: str) -> AgentType | None:
        """Resolve ``ResearcherAgent``, ``web_researcher`` or ``Web Researcher``."""

        token = label.strip()
        if not token:
            return None
        if token.endswith("Agent"):
            token = token[: -len("Agent")]
        normalized = re.sub(r"(?<=[a-z])(?=[A-Z])", "_", token)
        normalized = re.sub(r"[\s\-]+", "_", normalized).lower().strip("_")
        try:
            return cls(normalized)
        except ValueError:
            return None


LEAF_AGENT_TYPES: tuple[AgentType, ...] = tuple(agent for agent in AgentType if agent.is_leaf)

AGENT_DESCRIPTIONS: Mapping[AgentType, str] = {
    AgentType.RESEARCHER: "General information gathering and analysis",
    AgentType.WEB_RESEARCHER: "Internet searches and web information retrieval",
    AgentType.CODE_RESEARCHER: "Code analysis, generation, and explanation",
    AgentType.WRITER: "Content creation, editing, and formatting",
    AgentType.ANALYZER: "Data analysis and insight generation",
    AgentType.COORDINATOR: "Breaks a complex task into subtasks and supervises them",
}

HandlerT = TypeVar("HandlerT")


class AgentRegistry(Generic[HandlerT]):
    """Maps each agent type to a factory building its job handler."""

    def __init__(self, factories: Mapping[AgentType, Callable[[], HandlerT]] | None = None) -> None:
        self._factories: dict[AgentType, Callable[[], HandlerT]] = dict(factories or {})

    def register(self, agent_type: AgentType, factory: Callable[[], HandlerT]) -> None:
        self._factories[agent_type] = factory

    def register_leaves(self, factory: Callable[[], HandlerT]) -> None:
        """Use one factory for every leaf type that has no dedicated handler."""

        for agent_type in LEAF_AGENT_TYPES:
            self._factories.setdefault(agent_type, factory)

    def handled_types(self) -> tuple[AgentType, ...]:
        return tuple(agent for agent in AgentType if agent in self._factories)

    def handler_for(self, agent_type: AgentType) -> HandlerT:
        factory = self._factories.get(agent_type)
        if factory is None:
            raise KeyError(f"No handler registered for agent type {agent_type.value!r}")
        return factory()
