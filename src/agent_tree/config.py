"""Runtime configuration for the coordination control plane."""

from __future__ import annotations

import os
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from agent_tree.coordination.agents import AgentType

DEFAULT_CONCURRENCY_LIMITS: Mapping[AgentType, int] = MappingProxyType(
    {
        AgentType.COORDINATOR: 3,
        AgentType.ORCHESTRATOR: 1,
        AgentType.RESEARCHER: 3,
        AgentType.WEB_RESEARCHER: 3,
        AgentType.CODE_RESEARCHER: 3,
        AgentType.WRITER: 3,
        AgentType.ANALYZER: 3,
    },
)
SUPPORTED_PLANNER_BACKENDS: tuple[str, ...] = ("cli", "http")


@dataclass(frozen=True, slots=True)
class CoordinationSettings:
    """Immutable knobs injected into coordinators, dispatchers and runners."""

    batch_size: int = 3
    max_nesting_level: int = 3
    max_recovery_attempts: int = 3
    default_agent: AgentType = AgentType.RESEARCHER
    concurrency_limits: Mapping[AgentType, int] = field(
        default_factory=lambda: DEFAULT_CONCURRENCY_LIMITS,
    )
    default_concurrency_limit: int = 5
    treat_undecomposed_as_atomic: bool = True
    job_max_attempts: int = 3
    human_input_timeout_hours: int = 24

    def ceiling_for(self, agent_type: AgentType) -> int:
        """Return the queued+running job ceiling for one agent type."""

        if agent_type == AgentType.ORCHESTRATOR:
            return 1
        return self.concurrency_limits.get(agent_type, self.default_concurrency_limit)

    def validate(self) -> None:
        if self.batch_size <= 0:
            raise ValueError("AGENT_TREE_BATCH_SIZE must be > 0.")
        if self.max_nesting_level < 0:
            raise ValueError("AGENT_TREE_MAX_NESTING_LEVEL must be >= 0.")
        if self.max_recovery_attempts <= 0:
            raise ValueError("AGENT_TREE_MAX_RECOVERY_ATTEMPTS must be > 0.")
        if self.default_concurrency_limit <= 0:
            raise ValueError("AGENT_TREE_DEFAULT_CONCURRENCY_LIMIT must be > 0.")
        if self.job_max_attempts <= 0:
            raise ValueError("AGENT_TREE_JOB_MAX_ATTEMPTS must be > 0.")
        for agent_type, limit in self.concurrency_limits.items():
            if limit <= 0:
                raise ValueError(
                    f"Concurrency limit must be positive: {agent_type.value!r} -> {limit}",
                )


@dataclass(frozen=True, slots=True)
class OrchestratorSettings:
    """System-wide monitoring thresholds."""

    rebalance_limit: int = 5
    queue_bottleneck_threshold: int = 20
    stuck_after_seconds: int = 1_800
    daily_planner_call_limit: int = 1_000
    resource_critical_percent: float = 90.0

    def validate(self) -> None:
        if self.rebalance_limit < 0:
            raise ValueError("AGENT_TREE_REBALANCE_LIMIT must be >= 0.")
        if self.stuck_after_seconds <= 0:
            raise ValueError("AGENT_TREE_STUCK_AFTER_SECONDS must be > 0.")
        if self.daily_planner_call_limit <= 0:
            raise ValueError("AGENT_TREE_DAILY_PLANNER_CALL_LIMIT must be > 0.")
        if not 0 < self.resource_critical_percent <= 100:
            raise ValueError("AGENT_TREE_RESOURCE_CRITICAL_PERCENT must be in (0, 100].")


@dataclass(slots=True)
class PlannerSettings:
    """Planner backend selection and transport settings."""

    backend: str = "cli"
    command_template: str = "claude -p {prompt}"
    timeout_seconds: int = 300
    http_url: str = "http://localhost:11434/v1/chat/completions"
    http_model: str = "llama3.1"
    http_api_key_env: str = "AGENT_TREE_PLANNER_API_KEY"

    def validate(self) -> None:
        if self.backend not in SUPPORTED_PLANNER_BACKENDS:
            raise ValueError(
                f"Unsupported AGENT_TREE_PLANNER_BACKEND: {self.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_PLANNER_BACKENDS)}",
            )
        if self.timeout_seconds <= 0:
            raise ValueError("AGENT_TREE_PLANNER_TIMEOUT_SECONDS must be > 0.")
        if self.backend == "cli" and "{prompt" not in self.command_template:
            raise ValueError(
                "AGENT_TREE_PLANNER_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.",
            )


@dataclass(slots=True)
class WorkerSettings:
    """Job runner identity and polling."""

    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}")
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_tree.db")
    sqlite_busy_timeout_ms: int = 5_000
    coordination: CoordinationSettings = field(default_factory=CoordinationSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    planner: PlannerSettings = field(default_factory=PlannerSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        settings = cls(
            db_path=db_path or Path(os.getenv("AGENT_TREE_DB_PATH", ".agent_tree.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_TREE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            coordination=CoordinationSettings(
                batch_size=int(os.getenv("AGENT_TREE_BATCH_SIZE", "3")),
                max_nesting_level=int(os.getenv("AGENT_TREE_MAX_NESTING_LEVEL", "3")),
                max_recovery_attempts=int(os.getenv("AGENT_TREE_MAX_RECOVERY_ATTEMPTS", "3")),
                default_agent=_env_agent("AGENT_TREE_DEFAULT_AGENT", AgentType.RESEARCHER),
                concurrency_limits=_collect_concurrency_limits(),
                default_concurrency_limit=int(
                    os.getenv("AGENT_TREE_DEFAULT_CONCURRENCY_LIMIT", "5"),
                ),
                treat_undecomposed_as_atomic=_env_bool(
                    "AGENT_TREE_TREAT_UNDECOMPOSED_AS_ATOMIC",
                    default=True,
                ),
                job_max_attempts=int(os.getenv("AGENT_TREE_JOB_MAX_ATTEMPTS", "3")),
                human_input_timeout_hours=int(
                    os.getenv("AGENT_TREE_HUMAN_INPUT_TIMEOUT_HOURS", "24"),
                ),
            ),
            orchestrator=OrchestratorSettings(
                rebalance_limit=int(os.getenv("AGENT_TREE_REBALANCE_LIMIT", "5")),
                queue_bottleneck_threshold=int(
                    os.getenv("AGENT_TREE_QUEUE_BOTTLENECK_THRESHOLD", "20"),
                ),
                stuck_after_seconds=int(os.getenv("AGENT_TREE_STUCK_AFTER_SECONDS", "1800")),
                daily_planner_call_limit=int(
                    os.getenv("AGENT_TREE_DAILY_PLANNER_CALL_LIMIT", "1000"),
                ),
                resource_critical_percent=float(
                    os.getenv("AGENT_TREE_RESOURCE_CRITICAL_PERCENT", "90"),
                ),
            ),
            planner=PlannerSettings(
                backend=os.getenv("AGENT_TREE_PLANNER_BACKEND", "cli").strip().lower(),
                command_template=os.getenv(
                    "AGENT_TREE_PLANNER_COMMAND_TEMPLATE",
                    "claude -p {prompt}",
                ),
                timeout_seconds=int(os.getenv("AGENT_TREE_PLANNER_TIMEOUT_SECONDS", "300")),
                http_url=os.getenv(
                    "AGENT_TREE_PLANNER_HTTP_URL",
                    "http://localhost:11434/v1/chat/completions",
                ),
                http_model=os.getenv("AGENT_TREE_PLANNER_HTTP_MODEL", "llama3.1"),
                http_api_key_env=os.getenv(
                    "AGENT_TREE_PLANNER_API_KEY_ENV",
                    "AGENT_TREE_PLANNER_API_KEY",
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv(
                    "AGENT_TREE_WORKER_ID",
                    f"{socket.gethostname()}-{os.getpid()}",
                ),
                poll_interval_seconds=float(
                    os.getenv("AGENT_TREE_POLL_INTERVAL_SECONDS", "2.0"),
                ),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error on inconsistent values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_TREE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        self.coordination.validate()
        self.orchestrator.validate()
        self.planner.validate()
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("AGENT_TREE_POLL_INTERVAL_SECONDS must be >= 0.")


def _collect_concurrency_limits() -> Mapping[AgentType, int]:
    raw = os.getenv("AGENT_TREE_CONCURRENCY_LIMITS", "").strip()
    if not raw:
        return DEFAULT_CONCURRENCY_LIMITS

    limits = dict(DEFAULT_CONCURRENCY_LIMITS)
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid AGENT_TREE_CONCURRENCY_LIMITS entry: "
                f"{token!r}. Expected format '<agent_type>=<limit>'.",
            )
        name, limit_raw = (piece.strip() for piece in token.split("=", 1))
        agent_type = AgentType.from_label(name)
        if agent_type is None:
            raise ValueError(f"Unknown agent type in AGENT_TREE_CONCURRENCY_LIMITS: {name!r}")
        try:
            limit = int(limit_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid AGENT_TREE_CONCURRENCY_LIMITS value for {name!r}: {limit_raw!r}",
            ) from error
        limits[agent_type] = limit
    return MappingProxyType(limits)


def _env_agent(name: str, default: AgentType) -> AgentType:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    agent_type = AgentType.from_label(value)
    if agent_type is None or not agent_type.is_leaf:
        raise ValueError(f"Invalid leaf agent type for {name}: {value!r}")
    return agent_type


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
