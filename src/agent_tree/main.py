"""CLI entrypoint for agent-tree."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import rich_click as click

from agent_tree import __version__
from agent_tree.coordination.controllers import (
    AgentTreeCliController,
    EventReplayCommand,
    EventsCommand,
    HumanActionCommand,
    HumanListCommand,
    OrchestrateCommand,
    ProjectCreateCommand,
    ProjectListCommand,
    ProjectMutateCommand,
    RunCommand,
    TaskCreateCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskMutateCommand,
)
from agent_tree.coordination.errors import CoordinationError
from agent_tree.coordination.models import (
    InteractionKind,
    InteractionStatus,
    OrchestratorTrigger,
    ProjectStatus,
    TaskPriority,
    TaskState,
    TaskType,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentTreeCliController()

DB_PATH_HELP = "SQLite DB path. Defaults to AGENT_TREE_DB_PATH or .agent_tree.db."
PRIORITY_CHOICE = click.Choice([item.value for item in TaskPriority], case_sensitive=False)
CommandT = TypeVar("CommandT", bound=Callable[..., Any])


class AgentTreeGroup(click.RichGroup):
    """Report domain errors as CLI errors instead of tracebacks."""

    def invoke(self, ctx: click.Context) -> object:
        try:
            return super().invoke(ctx)
        except CoordinationError as error:
            raise click.ClickException(str(error)) from error


def db_path_option(func: CommandT) -> CommandT:
    return click.option(
        "--db-path",
        type=click.Path(path_type=Path),
        default=None,
        help=DB_PATH_HELP,
    )(func)


@click.group(cls=AgentTreeGroup)
@click.version_option(version=__version__, prog_name="agent-tree")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def agent_tree(log_level: str) -> None:
    """Hierarchical multi-agent task coordination."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_tree.group()
def task() -> None:
    """Root task commands."""


@task.command("create")
@db_path_option
@click.option("--title", required=True, help="Short task title.")
@click.option("--description", default="", help="What the task should achieve.")
@click.option(
    "--priority",
    type=PRIORITY_CHOICE,
    default=TaskPriority.NORMAL.value,
    show_default=True,
)
@click.option(
    "--task-type",
    type=click.Choice([item.value for item in TaskType], case_sensitive=False),
    default=TaskType.GENERAL.value,
    show_default=True,
)
@click.option("--project-id", default=None, help="Attach the task to an existing project.")
@click.option(
    "--complex/--simple",
    "complex_task",
    default=True,
    show_default=True,
    help="Complex tasks are decomposed by a coordinator first.",
)
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str,
    priority: str,
    task_type: str,
    project_id: str | None,
    complex_task: bool,
) -> None:
    """Submit a root task; the orchestrator picks it up on its next pass."""

    _emit_lines(
        CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                title=title,
                description=description,
                priority=priority,
                task_type=task_type.lower(),
                project_id=project_id,
                complex_task=complex_task,
            ),
        ),
    )


@task.command("list")
@db_path_option
@click.option(
    "--state",
    type=click.Choice([item.value for item in TaskState], case_sensitive=False),
    default=None,
    help="Optional state filter.",
)
@click.option("--roots-only", is_flag=True, default=False, help="Only show root tasks.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def task_list(db_path: Path | None, state: str | None, roots_only: bool, limit: int) -> None:
    """List tasks, newest first."""

    _emit_lines(
        CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, state=state, roots_only=roots_only, limit=limit),
        ),
    )


@task.command("inspect")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def task_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with subtasks, notes and transition history."""

    _emit_lines(CONTROLLER.inspect_task(TaskInspectCommand(db_path=db_path, task_id=task_id)))


@task.command("fail")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--error", "message", required=True, help="Failure reason.")
def task_fail(db_path: Path | None, task_id: str, message: str) -> None:
    """Mark a task failed; a subtask failure goes through recovery."""

    _emit_lines(
        CONTROLLER.fail_task(TaskMutateCommand(db_path=db_path, task_id=task_id, message=message)),
    )


@task.command("complete")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option("--result", "message", default="", help="Result text; summarized when omitted.")
def task_complete(db_path: Path | None, task_id: str, message: str) -> None:
    """Complete a task once all of its subtasks are completed."""

    _emit_lines(
        CONTROLLER.complete_task(
            TaskMutateCommand(db_path=db_path, task_id=task_id, message=message),
        ),
    )


@agent_tree.group()
def project() -> None:
    """Project commands."""


@project.command("create")
@db_path_option
@click.option("--name", required=True, help="Project name.")
@click.option("--description", default="", help="Project goal, passed to planning prompts.")
@click.option(
    "--priority",
    type=PRIORITY_CHOICE,
    default=TaskPriority.NORMAL.value,
    show_default=True,
)
def project_create(db_path: Path | None, name: str, description: str, priority: str) -> None:
    """Create a project and kick off its root orchestration task."""

    _emit_lines(
        CONTROLLER.create_project(
            ProjectCreateCommand(
                db_path=db_path,
                name=name,
                description=description,
                priority=priority,
            ),
        ),
    )


@project.command("pause")
@db_path_option
@click.option("--project-id", required=True, help="Project id.")
def project_pause(db_path: Path | None, project_id: str) -> None:
    """Stop new dispatch for a project; running jobs finish."""

    _emit_lines(
        CONTROLLER.pause_project(ProjectMutateCommand(db_path=db_path, project_id=project_id)),
    )


@project.command("resume")
@db_path_option
@click.option("--project-id", required=True, help="Project id.")
def project_resume(db_path: Path | None, project_id: str) -> None:
    """Resume dispatch for a paused project."""

    _emit_lines(
        CONTROLLER.resume_project(ProjectMutateCommand(db_path=db_path, project_id=project_id)),
    )


@project.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([item.value for item in ProjectStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def project_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List projects."""

    _emit_lines(
        CONTROLLER.list_projects(ProjectListCommand(db_path=db_path, status=status, limit=limit)),
    )


@agent_tree.command("run")
@db_path_option
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
@click.option(
    "--echo-workers",
    is_flag=True,
    default=False,
    help="Use the deterministic echo worker for leaf jobs.",
)
def run(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
    echo_workers: bool,
) -> None:
    """Run the job runner: coordinator, orchestrator and leaf jobs."""

    _emit_lines(
        CONTROLLER.run(
            RunCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
                echo_workers=echo_workers,
            ),
        ),
    )


@agent_tree.command("orchestrate")
@db_path_option
@click.option(
    "--trigger",
    type=click.Choice([item.value for item in OrchestratorTrigger], case_sensitive=False),
    default=OrchestratorTrigger.PERIODIC.value,
    show_default=True,
)
@click.option(
    "--now",
    "inline",
    is_flag=True,
    default=False,
    help="Run the pass in this process instead of enqueueing an orchestrator job.",
)
def orchestrate(db_path: Path | None, trigger: str, inline: bool) -> None:
    """Enqueue or run one orchestrator pass."""

    _emit_lines(
        CONTROLLER.orchestrate(
            OrchestrateCommand(db_path=db_path, trigger=trigger.lower(), inline=inline),
        ),
    )


@agent_tree.group()
def human() -> None:
    """Operator interactions: input requests and interventions."""


@human.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([item.value for item in InteractionStatus], case_sensitive=False),
    default=InteractionStatus.PENDING.value,
    show_default=True,
)
@click.option(
    "--kind",
    type=click.Choice([item.value for item in InteractionKind], case_sensitive=False),
    default=None,
)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def human_list(db_path: Path | None, status: str, kind: str | None, limit: int) -> None:
    """List interactions."""

    _emit_lines(
        CONTROLLER.list_interactions(
            HumanListCommand(db_path=db_path, status=status, kind=kind, limit=limit),
        ),
    )


@human.command("answer")
@db_path_option
@click.option("--interaction-id", required=True, help="Interaction id.")
@click.option("--response", required=True, help="Answer text passed back to the task.")
@click.option("--by", "responded_by", default="operator", show_default=True)
def human_answer(
    db_path: Path | None,
    interaction_id: str,
    response: str,
    responded_by: str,
) -> None:
    """Answer an input request and resume its task."""

    _emit_lines(
        CONTROLLER.answer(
            HumanActionCommand(
                db_path=db_path,
                interaction_id=interaction_id,
                text=response,
                responded_by=responded_by,
            ),
        ),
    )


@human.command("ignore")
@db_path_option
@click.option("--interaction-id", required=True, help="Interaction id.")
def human_ignore(db_path: Path | None, interaction_id: str) -> None:
    """Close an optional input request without answering."""

    _emit_lines(
        CONTROLLER.ignore(HumanActionCommand(db_path=db_path, interaction_id=interaction_id)),
    )


@human.command("acknowledge")
@db_path_option
@click.option("--interaction-id", required=True, help="Interaction id.")
def human_acknowledge(db_path: Path | None, interaction_id: str) -> None:
    """Acknowledge an intervention."""

    _emit_lines(
        CONTROLLER.acknowledge(HumanActionCommand(db_path=db_path, interaction_id=interaction_id)),
    )


@human.command("resolve")
@db_path_option
@click.option("--interaction-id", required=True, help="Interaction id.")
@click.option("--resolution", required=True, help="How the intervention was resolved.")
def human_resolve(db_path: Path | None, interaction_id: str, resolution: str) -> None:
    """Resolve an intervention and resume the blocked task."""

    _emit_lines(
        CONTROLLER.resolve(
            HumanActionCommand(db_path=db_path, interaction_id=interaction_id, text=resolution),
        ),
    )


@human.command("dismiss")
@db_path_option
@click.option("--interaction-id", required=True, help="Interaction id.")
def human_dismiss(db_path: Path | None, interaction_id: str) -> None:
    """Dismiss an intervention."""

    _emit_lines(
        CONTROLLER.dismiss(HumanActionCommand(db_path=db_path, interaction_id=interaction_id)),
    )


@human.command("expire")
@db_path_option
def human_expire(db_path: Path | None) -> None:
    """Expire overdue requests; unanswered required inputs escalate."""

    _emit_lines(CONTROLLER.expire(db_path))


@agent_tree.group(invoke_without_command=True)
@db_path_option
@click.option("--type", "event_type", default=None, help="Event type filter, e.g. task.failed.")
@click.option("--task-id", default=None, help="Only events for this task.")
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
)
@click.pass_context
def events(  # noqa: PLR0913
    ctx: click.Context,
    db_path: Path | None,
    event_type: str | None,
    task_id: str | None,
    limit: int,
    output_format: str,
) -> None:
    """Show recent events from the persisted log."""

    if ctx.invoked_subcommand is not None:
        return
    _emit_lines(
        CONTROLLER.events(
            EventsCommand(
                db_path=db_path,
                event_type=event_type,
                task_id=task_id,
                limit=limit,
                output_format=output_format.lower(),
            ),
        ),
    )


@events.command("replay")
@db_path_option
@click.option("--event-id", required=True, help="Event id to re-deliver.")
def events_replay(db_path: Path | None, event_id: str) -> None:
    """Re-deliver a persisted event to the current subscribers."""

    _emit_lines(CONTROLLER.replay_event(EventReplayCommand(db_path=db_path, event_id=event_id)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_tree()
