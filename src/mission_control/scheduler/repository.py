"""Persistent work store for tasks, phases, stories, agents and events."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import ColumnElement, func
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from mission_control.scheduler.errors import (
    PhaseNotFoundError,
    StoryNotFoundError,
    TaskNotFoundError,
)
from mission_control.scheduler.lifecycle import (
    clears_agent,
    validate_phase_transition,
    validate_transition,
)
from mission_control.scheduler.models import (
    ACTIVE_TASK_STATUSES,
    TERMINAL_TASK_STATUSES,
    AgentCreate,
    AgentStatus,
    AgentSyncResult,
    AgentView,
    CapabilitySubject,
    CapabilityView,
    DelegationMode,
    DequeueOutcome,
    DequeueResult,
    EventView,
    PhaseCreate,
    PhaseStatus,
    PhaseView,
    StoryCreate,
    StoryProgress,
    StoryView,
    TaskCreate,
    TaskDetails,
    TaskStatus,
    TaskView,
)
from mission_control.storage.alembic_runner import current_revision, upgrade_schema
from mission_control.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from mission_control.storage.sqlmodel_models import (
    Agent,
    CapabilityToken,
    Event,
    Phase,
    Story,
    Task,
)

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = tuple(status.value for status in ACTIVE_TASK_STATUSES)


class WorkStore:
    """Work store facade backed by SQLModel + SQLite.

    Every status change is a conditional ``UPDATE`` naming the expected prior
    status; a lost race shows up as ``False`` and leaves the row untouched.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_schema(self.db_path)

    def schema_revision(self) -> str | None:
        return current_revision(self.db_path)

    # Agents

    def add_agent(self, payload: AgentCreate) -> AgentView:
        """Create or rename an agent."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Agent, payload.agent_id)
            if row is None:
                row = Agent(
                    agent_id=payload.agent_id,
                    name=payload.name or payload.agent_id,
                    status=AgentStatus.IDLE.value,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.name = payload.name or row.name
                row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_agent_view(row)

    def get_agent(self, agent_id: str) -> AgentView | None:
        with Session(self.engine) as session:
            row = session.get(Agent, agent_id)
            return _to_agent_view(row) if row is not None else None

    def list_agents(self) -> list[AgentView]:
        with Session(self.engine) as session:
            rows = session.exec(select(Agent).order_by(col(Agent.agent_id).asc())).all()
        return [_to_agent_view(row) for row in rows]

    def set_agent_status(self, *, agent_id: str, status: AgentStatus) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Agent)
                .where(col(Agent.agent_id) == agent_id)
                .values(status=status.value, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1

    def sync_agents(self, agents: Sequence[AgentCreate]) -> AgentSyncResult:
        """Upsert configured agents and flag stored ones missing from the pass."""

        now = to_db_datetime(utc_now())
        outcome = AgentSyncResult()
        configured = {agent.agent_id for agent in agents}
        with Session(self.engine) as session:
            existing = {row.agent_id: row for row in session.exec(select(Agent)).all()}
            for payload in agents:
                row = existing.get(payload.agent_id)
                if row is None:
                    session.add(
                        Agent(
                            agent_id=payload.agent_id,
                            name=payload.name or payload.agent_id,
                            status=AgentStatus.IDLE.value,
                            created_at=now,
                            updated_at=now,
                        ),
                    )
                    outcome.created.append(payload.agent_id)
                    continue
                row.name = payload.name or row.name
                if row.status == AgentStatus.ORPHANED.value:
                    row.status = AgentStatus.IDLE.value
                row.updated_at = now
                session.add(row)
                outcome.updated.append(payload.agent_id)

            for agent_id, row in sorted(existing.items()):
                if agent_id in configured or row.status == AgentStatus.ORPHANED.value:
                    continue
                logger.warning("Agent %s is not configured anymore; marking orphaned", agent_id)
                row.status = AgentStatus.ORPHANED.value
                row.updated_at = now
                session.add(row)
                self._add_event(
                    session=session,
                    event_type="agent_orphaned",
                    message=f"Agent {agent_id} missing from configured roster",
                    agent_id=agent_id,
                )
                outcome.orphaned.append(agent_id)
            session.commit()
        return outcome

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a task in ``backlog`` or ``queued``."""

        if payload.status not in {TaskStatus.BACKLOG, TaskStatus.QUEUED}:
            raise ValueError(f"New tasks start in backlog or queued, got {payload.status.value}")
        if payload.status == TaskStatus.QUEUED and payload.agent_id is None:
            raise ValueError("Queued tasks require an agent")

        now = to_db_datetime(utc_now())
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = Task(
                task_id=task_id,
                title=payload.title,
                description=payload.description,
                agent_id=payload.agent_id,
                status=payload.status.value,
                priority=payload.priority,
                delegation_mode=payload.delegation_mode.value,
                retry_count=0,
                scheduled_at=(
                    to_db_datetime(payload.scheduled_at)
                    if payload.scheduled_at is not None
                    else None
                ),
                work_dir=payload.work_dir,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            # the event row references the task; write the parent first
            session.flush()
            self._add_event(
                session=session,
                event_type="task_created",
                message=f"Task created: {payload.title}",
                task_id=task_id,
                agent_id=payload.agent_id,
                details={"status": payload.status.value, "priority": payload.priority},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def require_task(self, task_id: str) -> TaskView:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        agent_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status and agent."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            if agent_id is not None:
                statement = statement.where(Task.agent_id == agent_id)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task with phases, stories and event stream."""

        task = self.get_task(task_id)
        if task is None:
            return None
        return TaskDetails(
            task=task,
            phases=self.list_phases(task_id),
            stories=self.list_stories(task_id),
            events=self.list_events(task_id=task_id, limit=None),
        )

    def start_task(self, *, task_id: str, status_from: TaskStatus) -> bool:
        """Move a ready task into ``executing``."""

        now = to_db_datetime(utc_now())
        return self._transition(
            task_id=task_id,
            status_from=status_from,
            status_to=TaskStatus.EXECUTING,
            values={"started_at": func.coalesce(col(Task.started_at), now)},
            event_type="task_executing",
            message="Task picked up for execution",
        )

    def begin_execution(self, task_id: str) -> TaskView | None:
        """Walk a dispatchable task forward to ``executing``.

        Returns ``None`` when the task is not dispatchable or one of the
        conditional steps lost a race.
        """

        while True:
            task = self.require_task(task_id)
            if task.status in {TaskStatus.EXECUTING, TaskStatus.VERIFYING}:
                return task
            if task.status == TaskStatus.BACKLOG:
                changed = self.start_task(task_id=task_id, status_from=TaskStatus.BACKLOG)
            elif task.status == TaskStatus.PLANNING:
                changed = self.advance_task(
                    task_id=task_id,
                    status_from=TaskStatus.PLANNING,
                    status_to=TaskStatus.DISCUSSING,
                )
            elif task.status == TaskStatus.DISCUSSING:
                changed = self.advance_task(
                    task_id=task_id,
                    status_from=TaskStatus.DISCUSSING,
                    status_to=TaskStatus.EXECUTING,
                )
            else:
                return None
            if not changed:
                return None

    def advance_task(
        self,
        *,
        task_id: str,
        status_from: TaskStatus,
        status_to: TaskStatus,
        message: str | None = None,
    ) -> bool:
        """Move a task along one lifecycle edge."""

        values: dict[str, Any] = {}
        now = to_db_datetime(utc_now())
        if status_from == TaskStatus.BACKLOG and status_to in ACTIVE_TASK_STATUSES:
            values["started_at"] = func.coalesce(col(Task.started_at), now)
        if status_to in TERMINAL_TASK_STATUSES:
            values["completed_at"] = now
        if status_to == TaskStatus.BACKLOG:
            values["agent_id"] = None
        return self._transition(
            task_id=task_id,
            status_from=status_from,
            status_to=status_to,
            values=values,
            event_type="task_status_changed",
            message=message or f"Task moved {status_from.value} -> {status_to.value}",
        )

    def complete_task(self, *, task_id: str, status_from: TaskStatus, message: str) -> bool:
        return self._transition(
            task_id=task_id,
            status_from=status_from,
            status_to=TaskStatus.DONE,
            values={"completed_at": to_db_datetime(utc_now())},
            event_type="task_completed",
            message=message,
        )

    def fail_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        status_from: TaskStatus,
        error_summary: str,
        event_type: str = "task_failed",
        stale_before: datetime | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Terminate a task as failed, preserving the causing error."""

        return self._transition(
            task_id=task_id,
            status_from=status_from,
            status_to=TaskStatus.FAILED,
            values={
                "completed_at": to_db_datetime(utc_now()),
                "error_summary": error_summary,
            },
            event_type=event_type,
            message=f"Task failed: {error_summary}",
            details={"error": error_summary, **(details or {})},
            stale_before=stale_before,
        )

    def reschedule_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        status_from: TaskStatus,
        retry_at: datetime,
        error_summary: str,
        event_type: str = "task_retry_scheduled",
        stale_before: datetime | None = None,
        clear_agent: bool = False,
    ) -> bool:
        """Reset a task to ``backlog`` with the retry counter bumped by one.

        The agent assignment survives unless ``clear_agent`` is set, so a
        released retry goes back to the same agent.
        """

        return self._transition(
            task_id=task_id,
            status_from=status_from,
            status_to=TaskStatus.BACKLOG,
            values={
                "retry_count": col(Task.retry_count) + 1,
                "retry_at": to_db_datetime(retry_at),
                "error_summary": error_summary,
                **({"agent_id": None} if clear_agent else {}),
            },
            event_type=event_type,
            message=f"Task reset to backlog: {error_summary}",
            details={
                "error": error_summary,
                "retry_at": to_utc_aware_datetime(retry_at).isoformat(),
            },
            stale_before=stale_before,
        )

    def recover_task(
        self,
        *,
        task_id: str,
        status_from: TaskStatus,
        reason: str,
        event_type: str = "task_stopped",
    ) -> bool:
        """Return an active task to ``backlog`` without counting a retry."""

        return self._transition(
            task_id=task_id,
            status_from=status_from,
            status_to=TaskStatus.BACKLOG,
            values={"agent_id": None, "error_summary": reason},
            event_type=event_type,
            message=f"Task returned to backlog: {reason}",
        )

    def park_task(self, *, task_id: str) -> bool:
        """Put a ready task behind the agent's current work."""

        return self._transition(
            task_id=task_id,
            status_from=TaskStatus.BACKLOG,
            status_to=TaskStatus.QUEUED,
            values={},
            event_type="task_queued",
            message="Agent busy; task queued",
        )

    def assign_task(self, *, task_id: str, agent_id: str) -> bool:
        """Give a ``backlog`` task to an agent; recovery leaves tasks unassigned."""

        with Session(self.engine) as session:
            if session.get(Agent, agent_id) is None:
                raise ValueError(f"Unknown agent: {agent_id}")
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.BACKLOG.value,
                )
                .values(agent_id=agent_id, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                event_type="task_assigned",
                message=f"Task assigned to agent {agent_id}",
                task_id=task_id,
                agent_id=agent_id,
            )
            session.commit()
            return True

    def retry_failed_task(self, *, task_id: str, retry_at: datetime | None = None) -> TaskView:
        """Manual operator retry for failed tasks."""

        task = self.require_task(task_id)
        validate_transition(task.status, TaskStatus.BACKLOG)
        changed = self._transition(
            task_id=task_id,
            status_from=task.status,
            status_to=TaskStatus.BACKLOG,
            values={
                "retry_count": 0,
                "retry_at": to_db_datetime(retry_at) if retry_at is not None else None,
                "completed_at": None,
                "error_summary": None,
            },
            event_type="task_manual_retry",
            message="Task retried by operator",
        )
        if not changed:
            raise RuntimeError(
                "Task state changed concurrently while retrying; "
                f"please retry command (task_id={task_id}).",
            )
        return self.require_task(task_id)

    def touch_task(self, *, task_id: str) -> bool:
        """Heartbeat: bump ``updated_at`` of an active task."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status).in_(_ACTIVE_VALUES),
                )
                .values(updated_at=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1

    def append_progress_text(self, *, task_id: str, content: str) -> bool:
        """Append learnings to the task's accumulated progress text."""

        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            row.progress_text = f"{row.progress_text}\n{content}" if row.progress_text else content
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            return True

    def list_stale_tasks(self, *, cutoff: datetime) -> list[TaskView]:
        """Active tasks whose heartbeat precedes ``cutoff``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(
                    col(Task.status).in_(_ACTIVE_VALUES),
                    col(Task.updated_at) < to_db_datetime(cutoff),
                )
                .order_by(col(Task.updated_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_scheduled_due(self, *, now: datetime) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(
                    Task.status == TaskStatus.BACKLOG.value,
                    col(Task.scheduled_at).is_not(None),
                    col(Task.scheduled_at) <= to_db_datetime(now),
                )
                .order_by(col(Task.scheduled_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_retry_due(self, *, now: datetime) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(
                    Task.status == TaskStatus.BACKLOG.value,
                    col(Task.retry_at).is_not(None),
                    col(Task.retry_at) <= to_db_datetime(now),
                )
                .order_by(col(Task.retry_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def release_scheduled(self, *, task_id: str, now: datetime) -> bool:
        """Clear a due ``scheduled_at`` if the task is still waiting in backlog."""

        return self._release_timer(
            task_id=task_id,
            column=col(Task.scheduled_at),
            field_name="scheduled_at",
            now=now,
            event_type="task_schedule_due",
            message="Scheduled start time reached",
        )

    def release_retry(self, *, task_id: str, now: datetime) -> bool:
        return self._release_timer(
            task_id=task_id,
            column=col(Task.retry_at),
            field_name="retry_at",
            now=now,
            event_type="task_retry_due",
            message="Retry backoff elapsed",
        )

    def count_active_tasks(self, *, agent_id: str) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(Task)
                .where(
                    Task.agent_id == agent_id,
                    col(Task.status).in_(_ACTIVE_VALUES),
                ),
            ).one()

    def list_queued_tasks(self, *, agent_id: str) -> list[TaskView]:
        """Agent queue in admission order: priority, then FIFO."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(
                    Task.agent_id == agent_id,
                    Task.status == TaskStatus.QUEUED.value,
                )
                .order_by(col(Task.priority).asc(), col(Task.created_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def dequeue_next(self, *, agent_id: str) -> DequeueResult:
        """Atomically promote the head of an idle agent's queue to ``backlog``.

        The promoting ``UPDATE`` itself requires that no active task exists for
        the agent, so two concurrent dequeues can never both succeed.
        """

        busy = aliased(Task)
        agent_is_busy = (
            sa_select(busy.task_id)
            .where(busy.agent_id == agent_id, busy.status.in_(_ACTIVE_VALUES))
            .exists()
        )
        while True:
            if self.count_active_tasks(agent_id=agent_id) > 0:
                return DequeueResult(outcome=DequeueOutcome.BUSY, agent_id=agent_id)
            queue = self.list_queued_tasks(agent_id=agent_id)
            if not queue:
                return DequeueResult(outcome=DequeueOutcome.EMPTY, agent_id=agent_id)
            head = queue[0]

            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == head.task_id,
                        col(Task.status) == TaskStatus.QUEUED.value,
                        ~agent_is_busy,
                    )
                    .values(status=TaskStatus.BACKLOG.value, updated_at=now),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    event_type="task_dequeued",
                    message=f"Task dequeued for agent {agent_id}",
                    task_id=head.task_id,
                    agent_id=agent_id,
                    details={
                        "priority": head.priority,
                        "queue_depth": len(queue) - 1,
                        "status_from": TaskStatus.QUEUED.value,
                        "status_to": TaskStatus.BACKLOG.value,
                    },
                )
                session.commit()
            return DequeueResult(
                outcome=DequeueOutcome.DEQUEUED,
                agent_id=agent_id,
                task=self.require_task(head.task_id),
                remaining=len(queue) - 1,
            )

    def list_agents_with_queued_tasks(self) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.agent_id)
                .where(
                    Task.status == TaskStatus.QUEUED.value,
                    col(Task.agent_id).is_not(None),
                )
                .distinct()
                .order_by(col(Task.agent_id).asc()),
            ).all()
        return [agent_id for agent_id in rows if agent_id is not None]

    # Phases

    def add_phase(self, *, task_id: str, payload: PhaseCreate) -> PhaseView:
        """Append a phase; sequence defaults to the next free number."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            if session.get(Task, task_id) is None:
                raise TaskNotFoundError(task_id)
            sequence = payload.sequence
            if sequence is None:
                current = session.exec(
                    select(func.max(Phase.sequence)).where(Phase.task_id == task_id),
                ).one()
                sequence = (current or 0) + 1
            row = Phase(
                phase_id=payload.phase_id or str(uuid4()),
                task_id=task_id,
                sequence=sequence,
                title=payload.title,
                description=payload.description,
                status=PhaseStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_phase_view(row)

    def get_phase(self, phase_id: str) -> PhaseView | None:
        with Session(self.engine) as session:
            row = session.get(Phase, phase_id)
            return _to_phase_view(row) if row is not None else None

    def require_phase(self, phase_id: str) -> PhaseView:
        phase = self.get_phase(phase_id)
        if phase is None:
            raise PhaseNotFoundError(phase_id)
        return phase

    def list_phases(self, task_id: str) -> list[PhaseView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Phase)
                .where(Phase.task_id == task_id)
                .order_by(col(Phase.sequence).asc()),
            ).all()
        return [_to_phase_view(row) for row in rows]

    def transition_phase(  # noqa: PLR0913
        self,
        *,
        phase_id: str,
        status_from: PhaseStatus,
        status_to: PhaseStatus,
        summary: str | None = None,
        artifacts: dict[str, Any] | None = None,
        session_key: str | None = None,
    ) -> bool:
        """Conditional phase status change; optional fields are set when given."""

        validate_phase_transition(status_from, status_to)
        values: dict[str, Any] = {
            "status": status_to.value,
            "updated_at": to_db_datetime(utc_now()),
        }
        if summary is not None:
            values["summary"] = summary
        if artifacts is not None:
            values["artifacts_json"] = json.dumps(artifacts, ensure_ascii=False, sort_keys=True)
        if session_key is not None:
            values["session_key"] = session_key
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Phase)
                .where(
                    col(Phase.phase_id) == phase_id,
                    col(Phase.status) == status_from.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def record_phase_session(self, *, phase_id: str, session_key: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Phase)
                .where(
                    col(Phase.phase_id) == phase_id,
                    col(Phase.status) == PhaseStatus.EXECUTING.value,
                )
                .values(session_key=session_key, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1

    # Stories

    def add_story(self, *, task_id: str, payload: StoryCreate) -> StoryView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            if session.get(Task, task_id) is None:
                raise TaskNotFoundError(task_id)
            sequence = payload.sequence
            if sequence is None:
                current = session.exec(
                    select(func.max(Story.sequence)).where(Story.task_id == task_id),
                ).one()
                sequence = (current or 0) + 1
            row = Story(
                story_id=payload.story_id or str(uuid4()),
                task_id=task_id,
                sequence=sequence,
                title=payload.title,
                description=payload.description,
                priority=payload.priority,
                passes=False,
                acceptance_criteria_json=(
                    json.dumps(list(payload.acceptance_criteria), ensure_ascii=False)
                    if payload.acceptance_criteria
                    else None
                ),
                iterations=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_story_view(row)

    def get_story(self, story_id: str) -> StoryView | None:
        with Session(self.engine) as session:
            row = session.get(Story, story_id)
            return _to_story_view(row) if row is not None else None

    def require_story(self, story_id: str) -> StoryView:
        story = self.get_story(story_id)
        if story is None:
            raise StoryNotFoundError(story_id)
        return story

    def list_stories(self, task_id: str) -> list[StoryView]:
        """Stories in dispatch order: priority, then sequence."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Story)
                .where(Story.task_id == task_id)
                .order_by(col(Story.priority).asc(), col(Story.sequence).asc()),
            ).all()
        return [_to_story_view(row) for row in rows]

    def next_pending_story(self, task_id: str) -> StoryView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Story)
                .where(Story.task_id == task_id, col(Story.passes).is_(False))
                .order_by(col(Story.priority).asc(), col(Story.sequence).asc())
                .limit(1),
            ).one_or_none()
            return _to_story_view(row) if row is not None else None

    def story_progress(self, task_id: str) -> StoryProgress:
        with Session(self.engine) as session:
            total = session.exec(
                select(func.count()).select_from(Story).where(Story.task_id == task_id),
            ).one()
            passed = session.exec(
                select(func.count())
                .select_from(Story)
                .where(Story.task_id == task_id, col(Story.passes).is_(True)),
            ).one()
        return StoryProgress(passed=passed, total=total)

    def record_story_dispatch(self, *, story_id: str, session_key: str | None) -> bool:
        """Count one accepted dispatch against a story."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Story)
                .where(col(Story.story_id) == story_id)
                .values(
                    iterations=col(Story.iterations) + 1,
                    session_key=session_key,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def mark_story_passed(self, *, story_id: str, commit_sha: str | None) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Story)
                .where(col(Story.story_id) == story_id, col(Story.passes).is_(False))
                .values(
                    passes=True,
                    commit_sha=commit_sha,
                    last_error=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def record_story_failure(self, *, story_id: str, error: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Story)
                .where(col(Story.story_id) == story_id, col(Story.passes).is_(False))
                .values(last_error=error, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1

    # Events

    def add_event(  # noqa: PLR0913
        self,
        *,
        event_type: str,
        message: str,
        task_id: str | None = None,
        agent_id: str | None = None,
        details: dict[str, object] | None = None,
    ) -> EventView:
        with Session(self.engine) as session:
            row = self._add_event(
                session=session,
                event_type=event_type,
                message=message,
                task_id=task_id,
                agent_id=agent_id,
                details=details,
            )
            session.commit()
            session.refresh(row)
            return _to_event_view(row)

    def list_events(
        self,
        *,
        task_id: str | None = None,
        after_id: int | None = None,
        limit: int | None = 50,
    ) -> list[EventView]:
        """Events in insertion order, optionally after a known id."""

        with Session(self.engine) as session:
            statement = select(Event).order_by(col(Event.id).asc())
            if task_id is not None:
                statement = statement.where(Event.task_id == task_id)
            if after_id is not None:
                statement = statement.where(col(Event.id) > after_id)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_event_view(row) for row in rows]

    def last_agent_for_task(self, task_id: str) -> str | None:
        """Most recent agent recorded on the task's event stream."""

        with Session(self.engine) as session:
            return session.exec(
                select(Event.agent_id)
                .where(Event.task_id == task_id, col(Event.agent_id).is_not(None))
                .order_by(col(Event.id).desc())
                .limit(1),
            ).first()

    # Capability tokens

    def add_capability(
        self,
        *,
        token_hash: str,
        subject_kind: CapabilitySubject,
        subject_id: str,
        task_id: str,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                CapabilityToken(
                    token_hash=token_hash,
                    subject_kind=subject_kind.value,
                    subject_id=subject_id,
                    task_id=task_id,
                    issued_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def get_capability(self, token_hash: str) -> CapabilityView | None:
        with Session(self.engine) as session:
            row = session.get(CapabilityToken, token_hash)
            if row is None:
                return None
            return CapabilityView(
                subject_kind=CapabilitySubject(row.subject_kind),
                subject_id=row.subject_id,
                task_id=row.task_id,
                issued_at=to_utc_aware_datetime(row.issued_at),
                consumed_at=optional_utc(row.consumed_at),
            )

    def consume_capability(self, token_hash: str) -> bool:
        """Mark a token used; only the first caller wins."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CapabilityToken)
                .where(
                    col(CapabilityToken.token_hash) == token_hash,
                    col(CapabilityToken.consumed_at).is_(None),
                )
                .values(consumed_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Internals

    def _transition(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        status_from: TaskStatus,
        status_to: TaskStatus,
        values: dict[str, Any],
        event_type: str,
        message: str,
        details: dict[str, object] | None = None,
        stale_before: datetime | None = None,
    ) -> bool:
        validate_transition(status_from, status_to)
        update_values: dict[str, Any] = {
            **values,
            "status": status_to.value,
            "updated_at": to_db_datetime(utc_now()),
        }
        if clears_agent(status_to):
            update_values["agent_id"] = None

        conditions: list[ColumnElement[bool]] = [
            col(Task.task_id) == task_id,
            col(Task.status) == status_from.value,
        ]
        if stale_before is not None:
            conditions.append(col(Task.updated_at) < to_db_datetime(stale_before))

        with Session(self.engine) as session:
            previous = session.get(Task, task_id)
            if previous is None:
                raise TaskNotFoundError(task_id)
            previous_agent = previous.agent_id
            result = session.exec(sa_update(Task).where(*conditions).values(**update_values))
            if result.rowcount != 1:
                session.rollback()
                logger.debug(
                    "Task %s transition %s -> %s lost its precondition",
                    task_id,
                    status_from.value,
                    status_to.value,
                )
                return False
            self._add_event(
                session=session,
                event_type=event_type,
                message=message,
                task_id=task_id,
                agent_id=previous_agent,
                details={
                    "status_from": status_from.value,
                    "status_to": status_to.value,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def _release_timer(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        column: Any,
        field_name: str,
        now: datetime,
        event_type: str,
        message: str,
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.BACKLOG.value,
                    column.is_not(None),
                    column <= to_db_datetime(now),
                )
                .values({field_name: None, "updated_at": to_db_datetime(utc_now())}),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                event_type=event_type,
                message=message,
                task_id=task_id,
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        event_type: str,
        message: str,
        task_id: str | None = None,
        agent_id: str | None = None,
        details: dict[str, object] | None = None,
    ) -> Event:
        row = Event(
            task_id=task_id,
            agent_id=agent_id,
            event_type=event_type,
            message=message,
            details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
            if details
            else None,
            created_at=to_db_datetime(utc_now()),
        )
        session.add(row)
        return row


def _load_json(raw: str | None) -> Any:
    if not raw:
        return None
    return json.loads(raw)


def _to_agent_view(row: Agent) -> AgentView:
    return AgentView(
        agent_id=row.agent_id,
        name=row.name,
        status=AgentStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        title=row.title,
        description=row.description,
        agent_id=row.agent_id,
        status=TaskStatus(row.status),
        priority=row.priority,
        delegation_mode=DelegationMode(row.delegation_mode),
        retry_count=row.retry_count,
        scheduled_at=optional_utc(row.scheduled_at),
        retry_at=optional_utc(row.retry_at),
        work_dir=row.work_dir,
        progress_text=row.progress_text,
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
    )


def _to_phase_view(row: Phase) -> PhaseView:
    artifacts = _load_json(row.artifacts_json)
    return PhaseView(
        phase_id=row.phase_id,
        task_id=row.task_id,
        sequence=row.sequence,
        title=row.title,
        description=row.description,
        status=PhaseStatus(row.status),
        summary=row.summary,
        artifacts=artifacts if isinstance(artifacts, dict) else None,
        session_key=row.session_key,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_story_view(row: Story) -> StoryView:
    criteria = _load_json(row.acceptance_criteria_json)
    return StoryView(
        story_id=row.story_id,
        task_id=row.task_id,
        sequence=row.sequence,
        title=row.title,
        description=row.description,
        priority=row.priority,
        passes=row.passes,
        acceptance_criteria=[str(item) for item in criteria] if isinstance(criteria, list) else [],
        iterations=row.iterations,
        last_error=row.last_error,
        commit_sha=row.commit_sha,
        session_key=row.session_key,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: Event) -> EventView:
    details = _load_json(row.details_json)
    return EventView(
        event_id=row.id or 0,
        event_type=row.event_type,
        message=row.message,
        task_id=row.task_id,
        agent_id=row.agent_id,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details if isinstance(details, dict) else {},
    )
