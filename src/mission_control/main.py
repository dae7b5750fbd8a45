"""CLI entrypoint for mission-control."""

import logging
import signal
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import rich_click as click

from mission_control import __version__
from mission_control.controllers import (
    AgentAddCommand,
    AgentSyncCommand,
    DbCommand,
    EventsCommand,
    MissionControlCliController,
    PhaseAddCommand,
    PhaseCompleteCommand,
    PhaseFailCommand,
    QueueDequeueCommand,
    ServeCommand,
    StoryAddCommand,
    StoryFailCommand,
    StoryPassCommand,
    TaskCreateCommand,
    TaskAssignCommand,
    TaskListCommand,
    TaskMutateCommand,
    TaskShowCommand,
)
from mission_control.scheduler.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = MissionControlCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
TOKEN_OPTION = click.option(
    "--token",
    required=True,
    help="Capability token handed to the session in its briefing.",
)


@click.group()
@click.version_option(version=__version__, prog_name="mission-control")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def mission_control(log_level: str) -> None:
    """Task scheduling core for gateway-executed agent sessions."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@mission_control.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@DB_PATH_OPTION
def db_init(db_path: Path | None) -> None:
    """Create or upgrade the database schema."""

    _emit_lines(_run(CONTROLLER.init_db, DbCommand(db_path=db_path)))


@mission_control.group()
def agent() -> None:
    """Agent roster commands."""


@agent.command("add")
@DB_PATH_OPTION
@click.argument("agent_id")
@click.option("--name", default=None, help="Display name; defaults to the id.")
def agent_add(db_path: Path | None, agent_id: str, name: str | None) -> None:
    """Register or rename one agent."""

    _emit_lines(
        _run(CONTROLLER.add_agent, AgentAddCommand(db_path=db_path, agent_id=agent_id, name=name)),
    )


@agent.command("list")
@DB_PATH_OPTION
def agent_list(db_path: Path | None) -> None:
    """List registered agents."""

    _emit_lines(_run(CONTROLLER.list_agents, DbCommand(db_path=db_path)))


@agent.command("sync")
@DB_PATH_OPTION
@click.option(
    "--gateway-config/--no-gateway-config",
    default=True,
    show_default=True,
    help="Also read agents.list from the gateway config file.",
)
def agent_sync(db_path: Path | None, gateway_config: bool) -> None:
    """Reconcile configured agents; missing ones are marked orphaned."""

    _emit_lines(
        _run(
            CONTROLLER.sync_agents,
            AgentSyncCommand(db_path=db_path, from_gateway_config=gateway_config),
        ),
    )


@mission_control.group()
def task() -> None:
    """Task commands."""


@task.command("create")
@DB_PATH_OPTION
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default=None, help="Task description.")
@click.option("--agent", "agent_id", default=None, help="Agent id to assign.")
@click.option(
    "--priority",
    type=click.IntRange(min=1),
    default=3,
    show_default=True,
    help="Lower number runs first.",
)
@click.option(
    "--queued/--backlog",
    default=False,
    show_default=True,
    help="Create behind the agent's current work instead of in backlog.",
)
@click.option(
    "--manual/--auto",
    default=False,
    show_default=True,
    help="Manual tasks are never started automatically.",
)
@click.option(
    "--scheduled-at",
    type=click.DateTime(formats=["%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"]),
    default=None,
    help="UTC time before which the task is not started.",
)
@click.option("--work-dir", default=None, help="Working directory for the session.")
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str | None,
    agent_id: str | None,
    priority: int,
    queued: bool,
    manual: bool,
    scheduled_at: datetime | None,
    work_dir: str | None,
) -> None:
    """Create a task in backlog (or queued)."""

    _emit_lines(
        _run(
            CONTROLLER.create_task,
            TaskCreateCommand(
                db_path=db_path,
                title=title,
                description=description,
                agent_id=agent_id,
                priority=priority,
                queued=queued,
                manual=manual,
                scheduled_at=scheduled_at,
                work_dir=work_dir,
            ),
        ),
    )


@task.command("list")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Filter by status.",
)
@click.option("--agent", "agent_id", default=None, help="Filter by agent id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def task_list(db_path: Path | None, status: str | None, agent_id: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit_lines(
        _run(
            CONTROLLER.list_tasks,
            TaskListCommand(db_path=db_path, status=status, agent_id=agent_id, limit=limit),
        ),
    )


@task.command("show")
@DB_PATH_OPTION
@click.argument("task_id")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
def task_show(db_path: Path | None, task_id: str, output_format: str) -> None:
    """Show a task with its phases, stories and events."""

    _emit_lines(
        _run(
            CONTROLLER.show_task,
            TaskShowCommand(db_path=db_path, task_id=task_id, output_format=output_format),
        ),
    )


@task.command("retry")
@DB_PATH_OPTION
@click.argument("task_id")
def task_retry(db_path: Path | None, task_id: str) -> None:
    """Return a failed task to backlog with a fresh retry budget."""

    _emit_lines(
        _run(CONTROLLER.retry_task, TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@task.command("enqueue")
@DB_PATH_OPTION
@click.argument("task_id")
def task_enqueue(db_path: Path | None, task_id: str) -> None:
    """Submit a backlog task to its agent (queued when the agent is busy)."""

    _emit_lines(
        _run(CONTROLLER.enqueue_task, TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@task.command("assign")
@DB_PATH_OPTION
@click.argument("task_id")
@click.argument("agent_id")
def task_assign(db_path: Path | None, task_id: str, agent_id: str) -> None:
    """Give a backlog task to an agent."""

    _emit_lines(
        _run(
            CONTROLLER.assign_task,
            TaskAssignCommand(db_path=db_path, task_id=task_id, agent_id=agent_id),
        ),
    )


@mission_control.group()
def phase() -> None:
    """Phase commands."""


@phase.command("add")
@DB_PATH_OPTION
@click.argument("task_id")
@click.option("--title", required=True, help="Phase title.")
@click.option("--description", default=None, help="Phase description.")
@click.option("--sequence", type=click.IntRange(min=1), default=None, help="1-based position.")
def phase_add(
    db_path: Path | None,
    task_id: str,
    title: str,
    description: str | None,
    sequence: int | None,
) -> None:
    """Append a phase to a task."""

    _emit_lines(
        _run(
            CONTROLLER.add_phase,
            PhaseAddCommand(
                db_path=db_path,
                task_id=task_id,
                title=title,
                description=description,
                sequence=sequence,
            ),
        ),
    )


@mission_control.group()
def story() -> None:
    """Story commands."""


@story.command("add")
@DB_PATH_OPTION
@click.argument("task_id")
@click.option("--title", required=True, help="Story title.")
@click.option("--description", default=None, help="Story description.")
@click.option(
    "--priority",
    type=click.IntRange(min=1),
    default=3,
    show_default=True,
    help="Lower number is dispatched first.",
)
@click.option(
    "--criterion",
    "acceptance_criteria",
    multiple=True,
    help="Acceptance criterion. Can be repeated.",
)
def story_add(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    title: str,
    description: str | None,
    priority: int,
    acceptance_criteria: tuple[str, ...],
) -> None:
    """Add a story to a task."""

    _emit_lines(
        _run(
            CONTROLLER.add_story,
            StoryAddCommand(
                db_path=db_path,
                task_id=task_id,
                title=title,
                description=description,
                priority=priority,
                acceptance_criteria=acceptance_criteria,
            ),
        ),
    )


@mission_control.group()
def queue() -> None:
    """Per-agent queue commands."""


@queue.command("dequeue")
@DB_PATH_OPTION
@click.argument("agent_id")
def queue_dequeue(db_path: Path | None, agent_id: str) -> None:
    """Promote the next queued task of an idle agent to backlog."""

    _emit_lines(
        _run(CONTROLLER.dequeue, QueueDequeueCommand(db_path=db_path, agent_id=agent_id)),
    )


@queue.command("sweep")
@DB_PATH_OPTION
def queue_sweep(db_path: Path | None) -> None:
    """Dequeue once for every agent with queued work."""

    _emit_lines(_run(CONTROLLER.sweep_queue, DbCommand(db_path=db_path)))


@mission_control.group()
def dispatch() -> None:
    """Foreground dispatch commands."""


@dispatch.command("phases")
@DB_PATH_OPTION
@click.argument("task_id")
def dispatch_phases(db_path: Path | None, task_id: str) -> None:
    """Dispatch the next unfinished phase of a task."""

    _emit_lines(
        _run(CONTROLLER.dispatch_phases, TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@dispatch.command("stories")
@DB_PATH_OPTION
@click.argument("task_id")
def dispatch_stories(db_path: Path | None, task_id: str) -> None:
    """Run the story loop of a task until it completes or runs out of iterations."""

    _emit_lines(
        _run(CONTROLLER.dispatch_stories, TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@mission_control.group()
def callback() -> None:
    """Session callback commands."""


@callback.command("phase-complete")
@DB_PATH_OPTION
@click.argument("phase_id")
@TOKEN_OPTION
@click.option("--summary", required=True, help="What the phase accomplished.")
@click.option("--artifacts", "artifacts_json", default=None, help="JSON object of artifacts.")
def callback_phase_complete(
    db_path: Path | None,
    phase_id: str,
    token: str,
    summary: str,
    artifacts_json: str | None,
) -> None:
    """Report a phase as done and advance the task."""

    _emit_lines(
        _run(
            CONTROLLER.complete_phase,
            PhaseCompleteCommand(
                db_path=db_path,
                phase_id=phase_id,
                token=token,
                summary=summary,
                artifacts_json=artifacts_json,
            ),
        ),
    )


@callback.command("phase-fail")
@DB_PATH_OPTION
@click.argument("phase_id")
@TOKEN_OPTION
@click.option("--error", required=True, help="Failure description.")
@click.option(
    "--recoverable/--fatal",
    default=True,
    show_default=True,
    help="Recoverable failures are retried with backoff.",
)
@click.option("--suggestion", default=None, help="Hint for the next attempt.")
def callback_phase_fail(  # noqa: PLR0913
    db_path: Path | None,
    phase_id: str,
    token: str,
    error: str,
    recoverable: bool,
    suggestion: str | None,
) -> None:
    """Report a phase failure."""

    _emit_lines(
        _run(
            CONTROLLER.fail_phase,
            PhaseFailCommand(
                db_path=db_path,
                phase_id=phase_id,
                token=token,
                error=error,
                recoverable=recoverable,
                suggestion=suggestion,
            ),
        ),
    )


@callback.command("story-pass")
@DB_PATH_OPTION
@click.argument("story_id")
@TOKEN_OPTION
@click.option("--commit-sha", default=None, help="Commit that satisfied the story.")
@click.option("--learnings", default=None, help="Notes appended to the task progress log.")
def callback_story_pass(
    db_path: Path | None,
    story_id: str,
    token: str,
    commit_sha: str | None,
    learnings: str | None,
) -> None:
    """Report a story as passing."""

    _emit_lines(
        _run(
            CONTROLLER.pass_story,
            StoryPassCommand(
                db_path=db_path,
                story_id=story_id,
                token=token,
                commit_sha=commit_sha,
                learnings=learnings,
            ),
        ),
    )


@callback.command("story-fail")
@DB_PATH_OPTION
@click.argument("story_id")
@TOKEN_OPTION
@click.option("--error", required=True, help="Failure description.")
@click.option("--iteration", type=click.IntRange(min=0), default=None, help="Loop iteration.")
@click.option(
    "--recoverable/--fatal",
    default=True,
    show_default=True,
    help="A fatal story failure fails the whole task.",
)
def callback_story_fail(  # noqa: PLR0913
    db_path: Path | None,
    story_id: str,
    token: str,
    error: str,
    iteration: int | None,
    recoverable: bool,
) -> None:
    """Report a story attempt as failed."""

    _emit_lines(
        _run(
            CONTROLLER.fail_story,
            StoryFailCommand(
                db_path=db_path,
                story_id=story_id,
                token=token,
                error=error,
                iteration=iteration,
                recoverable=recoverable,
            ),
        ),
    )


@mission_control.group()
def watchdog() -> None:
    """Watchdog commands."""


@watchdog.command("tick")
@DB_PATH_OPTION
def watchdog_tick(db_path: Path | None) -> None:
    """Run one watchdog pass: stale recovery plus due timers."""

    _emit_lines(_run(CONTROLLER.watchdog_tick, DbCommand(db_path=db_path)))


@mission_control.command("events")
@DB_PATH_OPTION
@click.option("--task", "task_id", default=None, help="Only events of this task.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of events to print.",
)
def events(db_path: Path | None, task_id: str | None, limit: int) -> None:
    """Print the audit event stream."""

    _emit_lines(
        _run(CONTROLLER.events, EventsCommand(db_path=db_path, task_id=task_id, limit=limit)),
    )


@mission_control.command("serve")
@DB_PATH_OPTION
@click.option(
    "--follow/--no-follow",
    default=False,
    show_default=True,
    help="Print live broadcast messages as JSON lines.",
)
@click.option(
    "--duration",
    "duration_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop after this many seconds instead of waiting for a signal.",
)
def serve(db_path: Path | None, follow: bool, duration_seconds: float | None) -> None:
    """Run the watchdog and queue sweep loops until interrupted."""

    stop = threading.Event()

    def _request_stop(signum: int, _frame: object) -> None:
        logging.getLogger(__name__).info("Signal %s received; stopping", signum)
        stop.set()

    previous = {
        signum: signal.signal(signum, _request_stop) for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        lines = _run(
            lambda command: CONTROLLER.serve(command, stop=stop, emit=click.echo),
            ServeCommand(db_path=db_path, follow=follow, duration_seconds=duration_seconds),
        )
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
    _emit_lines(lines)


def _run(handler: Callable[..., list[str]], command: object) -> list[str]:
    try:
        return handler(command)
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    mission_control()
