"""Controllers for mission-control CLI commands."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from mission_control.config import Settings
from mission_control.scheduler.admission import AdmissionController
from mission_control.scheduler.broadcaster import EventBroadcaster
from mission_control.scheduler.gateway import ExecutionGateway, read_gateway_agents
from mission_control.scheduler.models import (
    AgentCreate,
    DelegationMode,
    DequeueOutcome,
    DequeueResult,
    PhaseCreate,
    StoryCreate,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from mission_control.scheduler.repository import WorkStore
from mission_control.scheduler.service import SchedulerService

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[Settings], ExecutionGateway]


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class AgentAddCommand:
    db_path: Path | None
    agent_id: str
    name: str | None


@dataclass(slots=True)
class AgentSyncCommand:
    """CLI input for reconciling configured agents with the store."""

    db_path: Path | None
    from_gateway_config: bool


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    title: str
    description: str | None
    agent_id: str | None
    priority: int
    queued: bool
    manual: bool
    scheduled_at: datetime | None
    work_dir: str | None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    agent_id: str | None
    limit: int


@dataclass(slots=True)
class TaskShowCommand:
    db_path: Path | None
    task_id: str
    output_format: str = "table"


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for single-task operations (retry, enqueue, dispatch)."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskAssignCommand:
    db_path: Path | None
    task_id: str
    agent_id: str


@dataclass(slots=True)
class PhaseAddCommand:
    db_path: Path | None
    task_id: str
    title: str
    description: str | None
    sequence: int | None


@dataclass(slots=True)
class StoryAddCommand:
    db_path: Path | None
    task_id: str
    title: str
    description: str | None
    priority: int
    acceptance_criteria: tuple[str, ...]


@dataclass(slots=True)
class QueueDequeueCommand:
    db_path: Path | None
    agent_id: str


@dataclass(slots=True)
class PhaseCompleteCommand:
    db_path: Path | None
    phase_id: str
    token: str
    summary: str
    artifacts_json: str | None


@dataclass(slots=True)
class PhaseFailCommand:
    db_path: Path | None
    phase_id: str
    token: str
    error: str
    recoverable: bool
    suggestion: str | None


@dataclass(slots=True)
class StoryPassCommand:
    db_path: Path | None
    story_id: str
    token: str
    commit_sha: str | None
    learnings: str | None


@dataclass(slots=True)
class StoryFailCommand:
    db_path: Path | None
    story_id: str
    token: str
    error: str
    iteration: int | None
    recoverable: bool


@dataclass(slots=True)
class EventsCommand:
    db_path: Path | None
    task_id: str | None
    limit: int


@dataclass(slots=True)
class ServeCommand:
    """CLI input for the long-running scheduler."""

    db_path: Path | None
    follow: bool
    duration_seconds: float | None = None


class MissionControlCliController:
    """Coordinates store, dispatch and watchdog CLI operations."""

    def __init__(self, gateway_factory: GatewayFactory | None = None) -> None:
        self.gateway_factory = gateway_factory

    def init_db(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            revision = store.schema_revision()
        return [f"Database ready: {settings.db_path} revision={revision}"]

    def add_agent(self, command: AgentAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            agent = store.add_agent(AgentCreate(agent_id=command.agent_id, name=command.name))
        return [f"Agent registered: agent_id={agent.agent_id} name={agent.name}"]

    def list_agents(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            agents = store.list_agents()
        lines = [f"Agents: {len(agents)}"]
        for agent in agents:
            lines.append(
                f"  agent_id={agent.agent_id} name={agent.name} status={agent.status.value}",
            )
        return lines

    def sync_agents(self, command: AgentSyncCommand) -> list[str]:
        """Reconcile agents from ``MISSION_CONTROL_AGENTS`` and the gateway config."""

        settings = Settings.from_env(db_path=command.db_path)
        configured = dict(settings.agents)
        if command.from_gateway_config:
            for agent_id, name in read_gateway_agents(settings.gateway.config_path):
                configured.setdefault(agent_id, name)
        if not configured:
            return ["No agents configured; nothing to sync."]

        with _store(settings) as store:
            result = store.sync_agents(
                [AgentCreate(agent_id=key, name=name) for key, name in configured.items()],
            )
        return [
            "Agent sync: "
            f"created={len(result.created)} updated={len(result.updated)} "
            f"orphaned={len(result.orphaned)}",
            *(f"  orphaned agent_id={agent_id}" for agent_id in result.orphaned),
        ]

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            task = store.create_task(
                TaskCreate(
                    title=command.title,
                    description=command.description,
                    agent_id=command.agent_id,
                    status=TaskStatus.QUEUED if command.queued else TaskStatus.BACKLOG,
                    priority=command.priority,
                    delegation_mode=(
                        DelegationMode.MANUAL if command.manual else DelegationMode.AUTO
                    ),
                    scheduled_at=_as_utc(command.scheduled_at),
                    work_dir=command.work_dir,
                ),
            )
        return [
            "Task created: "
            f"task_id={task.task_id} status={task.status.value} priority={task.priority}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status) if command.status is not None else None
        with _store(settings) as store:
            tasks = store.list_tasks(status=status, agent_id=command.agent_id, limit=command.limit)
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(_task_line(task) for task in tasks)
        return lines

    def show_task(self, command: TaskShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            details = store.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        if command.output_format == "json":
            payload = {
                "task_id": task.task_id,
                "title": task.title,
                "status": task.status.value,
                "agent_id": task.agent_id,
                "priority": task.priority,
                "retry_count": task.retry_count,
                "retry_at": task.retry_at.isoformat() if task.retry_at else None,
                "error_summary": task.error_summary,
                "phases": [
                    {
                        "phase_id": phase.phase_id,
                        "sequence": phase.sequence,
                        "status": phase.status.value,
                        "session_key": phase.session_key,
                    }
                    for phase in details.phases
                ],
                "stories": [
                    {
                        "story_id": story.story_id,
                        "priority": story.priority,
                        "passes": story.passes,
                        "iterations": story.iterations,
                    }
                    for story in details.stories
                ],
                "events": [event.event_type for event in details.events],
            }
            return [json.dumps(payload, indent=2, ensure_ascii=False)]

        lines = [
            f"Task: {task.task_id} ({task.title})",
            f"Status: {task.status.value}",
            f"Agent: {task.agent_id or '-'}",
            f"Priority: {task.priority} mode={task.delegation_mode.value}",
            f"Retries: {task.retry_count} next={_iso(task.retry_at)}",
        ]
        if task.error_summary:
            lines.append(f"Error: {task.error_summary}")
        if details.phases:
            lines.append("Phases:")
            for phase in details.phases:
                lines.append(
                    f"  {phase.sequence}. {phase.title} status={phase.status.value} "
                    f"phase_id={phase.phase_id} session={phase.session_key or '-'}",
                )
        if details.stories:
            lines.append("Stories:")
            for story in details.stories:
                lines.append(
                    f"  p{story.priority} {story.title} passes={story.passes} "
                    f"iterations={story.iterations} story_id={story.story_id}",
                )
        lines.append("Events:")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type}: {event.message}",
            )
        return lines

    def retry_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            task = store.retry_failed_task(task_id=command.task_id)
        return [f"Task returned to backlog: {task.task_id}"]

    def enqueue_task(self, command: TaskMutateCommand) -> list[str]:
        """Submit a backlog task to its agent: ready if free, queued if busy."""

        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            outcome = _admission(store).submit(command.task_id)
        return [f"Task {command.task_id}: {outcome.value}"]

    def assign_task(self, command: TaskAssignCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            if not store.assign_task(task_id=command.task_id, agent_id=command.agent_id):
                task = store.require_task(command.task_id)
                return [f"Task {command.task_id} is {task.status.value}; only backlog tasks move"]
        return [f"Task {command.task_id} assigned to {command.agent_id}"]

    def add_phase(self, command: PhaseAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            phase = store.add_phase(
                task_id=command.task_id,
                payload=PhaseCreate(
                    title=command.title,
                    description=command.description,
                    sequence=command.sequence,
                ),
            )
        return [f"Phase added: phase_id={phase.phase_id} sequence={phase.sequence}"]

    def add_story(self, command: StoryAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            story = store.add_story(
                task_id=command.task_id,
                payload=StoryCreate(
                    title=command.title,
                    description=command.description,
                    priority=command.priority,
                    acceptance_criteria=command.acceptance_criteria,
                ),
            )
        return [f"Story added: story_id={story.story_id} priority={story.priority}"]

    def dequeue(self, command: QueueDequeueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            result = _admission(store).dequeue_next(command.agent_id)
        return [_dequeue_line(result)]

    def sweep_queue(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            results = _admission(store).sweep()
        lines = [f"Queue sweep: {len(results)} agents with queued work"]
        lines.extend(f"  {_dequeue_line(result)}" for result in results)
        return lines

    def dispatch_phases(self, command: TaskMutateCommand) -> list[str]:
        with self._service(command.db_path) as service:
            result = service.phase_dispatcher.run_task(command.task_id)
        lines = [f"Phase dispatch: task_id={result.task_id} outcome={result.outcome.value}"]
        if result.phase_id:
            lines.append(f"  phase_id={result.phase_id} session={result.session_key or '-'}")
        if result.error:
            lines.append(f"  error={result.error}")
        return lines

    def dispatch_stories(self, command: TaskMutateCommand) -> list[str]:
        """Run the story loop in the foreground until it finishes."""

        with self._service(command.db_path) as service:
            result = service.story_dispatcher.run(command.task_id)
        return [
            f"Story loop: task_id={result.task_id} outcome={result.outcome.value} "
            f"attempts={result.attempts}",
        ]

    def complete_phase(self, command: PhaseCompleteCommand) -> list[str]:
        artifacts = json.loads(command.artifacts_json) if command.artifacts_json else {}
        if not isinstance(artifacts, dict):
            raise ValueError("Phase artifacts must be a JSON object")
        with self._service(command.db_path) as service:
            result = service.callbacks.complete_phase(
                command.phase_id,
                summary=command.summary,
                artifacts=artifacts,
                token=command.token,
            )
        lines = [f"Phase completed: {command.phase_id}"]
        if result is not None:
            lines.append(
                f"  next: outcome={result.outcome.value} phase_id={result.phase_id or '-'}",
            )
        return lines

    def fail_phase(self, command: PhaseFailCommand) -> list[str]:
        with self._service(command.db_path) as service:
            task = service.callbacks.fail_phase(
                command.phase_id,
                error=command.error,
                recoverable=command.recoverable,
                token=command.token,
                suggestion=command.suggestion,
            )
        return [f"Phase failed: {command.phase_id}; task {task.task_id} is {task.status.value}"]

    def pass_story(self, command: StoryPassCommand) -> list[str]:
        with self._service(command.db_path) as service:
            story = service.callbacks.pass_story(
                command.story_id,
                token=command.token,
                commit_sha=command.commit_sha,
                learnings=command.learnings,
            )
        return [f"Story passed: {story.story_id} commit={story.commit_sha or '-'}"]

    def fail_story(self, command: StoryFailCommand) -> list[str]:
        with self._service(command.db_path) as service:
            story = service.callbacks.fail_story(
                command.story_id,
                error=command.error,
                token=command.token,
                iteration=command.iteration,
                recoverable=command.recoverable,
            )
        return [f"Story failed: {story.story_id} error={story.last_error or '-'}"]

    def watchdog_tick(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with self._service(command.db_path, settings=settings) as service:
            summary = service.watchdog.tick()
        return [
            "Watchdog tick: "
            f"reset={len(summary.reset)} failed={len(summary.failed)} "
            f"scheduled_released={len(summary.scheduled_released)} "
            f"retries_released={len(summary.retries_released)}",
        ]

    def events(self, command: EventsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            events = store.list_events(task_id=command.task_id, limit=command.limit)
        return [
            f"{event.event_id} {event.created_at.isoformat()} {event.event_type} "
            f"task={event.task_id or '-'}: {event.message}"
            for event in events
        ]

    def serve(
        self,
        command: ServeCommand,
        *,
        stop: threading.Event,
        emit: Callable[[str], None],
    ) -> list[str]:
        """Run the watchdog and queue loops until ``stop`` is set."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with self._service(command.db_path, settings=settings) as service:
            service.start()
            subscription = service.broadcaster.subscribe() if command.follow else None
            deadline = command.duration_seconds
            waited = 0.0
            try:
                while not stop.is_set():
                    if deadline is not None and waited >= deadline:
                        break
                    if subscription is None:
                        stop.wait(0.5)
                    else:
                        message = subscription.get(timeout=0.5)
                        if message is not None:
                            emit(message.to_json())
                        elif subscription.closed:
                            logger.warning("Event stream closed by the broadcaster")
                            subscription = None
                    waited += 0.5
            finally:
                if subscription is not None:
                    service.broadcaster.unsubscribe(subscription)
            running = service.runner.running_tasks()
        return [f"Scheduler stopped ({len(running)} dispatch loops were running)"]

    @contextmanager
    def _service(
        self,
        db_path: Path | None,
        *,
        settings: Settings | None = None,
    ) -> Iterator[SchedulerService]:
        settings = settings or Settings.from_env(db_path=db_path)
        gateway = self.gateway_factory(settings) if self.gateway_factory is not None else None
        with _store(settings) as store:
            service = SchedulerService(settings, store=store, gateway=gateway)
            try:
                yield service
            finally:
                service.close()


@contextmanager
def _store(settings: Settings) -> Iterator[WorkStore]:
    store = WorkStore(settings.db_path, busy_timeout_ms=settings.busy_timeout_ms)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


def _admission(store: WorkStore) -> AdmissionController:
    # one-shot commands have no live observers
    return AdmissionController(store=store, broadcaster=EventBroadcaster())


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _task_line(task: TaskView) -> str:
    return (
        "  "
        f"task_id={task.task_id} status={task.status.value} priority={task.priority} "
        f"agent={task.agent_id or '-'} retries={task.retry_count} title={task.title}"
    )


def _dequeue_line(result: DequeueResult) -> str:
    if result.outcome == DequeueOutcome.DEQUEUED and result.task is not None:
        return (
            f"agent={result.agent_id} dequeued task_id={result.task.task_id} "
            f"remaining={result.remaining}"
        )
    return f"agent={result.agent_id} {result.outcome.value} remaining={result.remaining}"


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"
