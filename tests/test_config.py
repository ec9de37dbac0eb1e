from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_tree.config import (
    DEFAULT_CONCURRENCY_LIMITS,
    CoordinationSettings,
    OrchestratorSettings,
    PlannerSettings,
    Settings,
)
from agent_tree.coordination.agents import AgentType

pytestmark = [
    allure.epic("Control Plane"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("AGENT_TREE_CONCURRENCY_LIMITS", raising=False)
    monkeypatch.delenv("AGENT_TREE_DEFAULT_AGENT", raising=False)
    monkeypatch.delenv("AGENT_TREE_PLANNER_BACKEND", raising=False)

    settings = Settings.from_env(db_path=tmp_path / "x.db")

    assert settings.db_path == tmp_path / "x.db"
    assert settings.coordination.batch_size == 3
    assert settings.coordination.max_nesting_level == 3
    assert settings.coordination.default_agent == AgentType.RESEARCHER
    assert settings.coordination.concurrency_limits == DEFAULT_CONCURRENCY_LIMITS
    assert settings.planner.backend == "cli"


def test_from_env_parses_concurrency_limits(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_TREE_CONCURRENCY_LIMITS", "writer=2, WebResearcherAgent=7")

    coordination = Settings.from_env().coordination

    assert coordination.ceiling_for(AgentType.WRITER) == 2
    assert coordination.ceiling_for(AgentType.WEB_RESEARCHER) == 7
    assert coordination.ceiling_for(AgentType.ANALYZER) == 3


def test_orchestrator_ceiling_is_always_one(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_TREE_CONCURRENCY_LIMITS", "orchestrator=4")

    coordination = Settings.from_env().coordination

    assert coordination.ceiling_for(AgentType.ORCHESTRATOR) == 1


def test_unknown_agent_in_concurrency_limits_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_TREE_CONCURRENCY_LIMITS", "painter=2")

    with pytest.raises(ValueError, match="Unknown agent type"):
        Settings.from_env()


def test_malformed_concurrency_entry_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_TREE_CONCURRENCY_LIMITS", "writer")

    with pytest.raises(ValueError, match="Expected format"):
        Settings.from_env()


def test_non_positive_concurrency_limit_is_rejected() -> None:
    settings = CoordinationSettings(concurrency_limits={AgentType.WRITER: 0})

    with pytest.raises(ValueError, match="Concurrency limit must be positive"):
        settings.validate()


def test_default_agent_must_be_a_leaf(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_TREE_DEFAULT_AGENT", "coordinator")

    with pytest.raises(ValueError, match="AGENT_TREE_DEFAULT_AGENT"):
        Settings.from_env()


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_TREE_TREAT_UNDECOMPOSED_AS_ATOMIC", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


def test_batch_size_must_be_positive() -> None:
    with pytest.raises(ValueError, match="AGENT_TREE_BATCH_SIZE"):
        CoordinationSettings(batch_size=0).validate()


def test_resource_threshold_must_be_a_percentage() -> None:
    with pytest.raises(ValueError, match="AGENT_TREE_RESOURCE_CRITICAL_PERCENT"):
        OrchestratorSettings(resource_critical_percent=120).validate()


def test_planner_backend_is_validated() -> None:
    with pytest.raises(ValueError, match="Unsupported AGENT_TREE_PLANNER_BACKEND"):
        PlannerSettings(backend="carrier-pigeon").validate()


def test_cli_planner_template_needs_prompt_placeholder() -> None:
    with pytest.raises(ValueError, match="must include"):
        PlannerSettings(command_template="claude -p").validate()
