"""Domain models for the task scheduling core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    QUEUED = "queued"
    BACKLOG = "backlog"
    PLANNING = "planning"
    DISCUSSING = "discussing"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    REVIEW = "review"
    DONE = "done"
    FAILED = "failed"


ACTIVE_TASK_STATUSES = frozenset(
    {
        TaskStatus.PLANNING,
        TaskStatus.DISCUSSING,
        TaskStatus.EXECUTING,
        TaskStatus.VERIFYING,
    },
)
TERMINAL_TASK_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.FAILED})


class PhaseStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    DONE = "done"
    FAILED = "failed"


class DelegationMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class AgentStatus(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    ORPHANED = "orphaned"


class CapabilitySubject(str, Enum):
    PHASE = "phase"
    STORY = "story"


class DequeueOutcome(str, Enum):
    """Admission decision for one dequeue attempt."""

    DEQUEUED = "dequeued"
    BUSY = "busy"
    EMPTY = "empty"


class SubmitOutcome(str, Enum):
    READY = "ready"
    QUEUED = "queued"
    SKIPPED = "skipped"


@dataclass(slots=True)
class AgentCreate:
    """Input payload for registering an execution agent."""

    agent_id: str
    name: str | None = None


@dataclass(slots=True)
class AgentView:
    agent_id: str
    name: str
    status: AgentStatus
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class AgentSyncResult:
    """Outcome of reconciling configured agents with stored ones."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    description: str | None = None
    task_id: str | None = None
    agent_id: str | None = None
    status: TaskStatus = TaskStatus.BACKLOG
    priority: int = 3
    delegation_mode: DelegationMode = DelegationMode.AUTO
    scheduled_at: datetime | None = None
    work_dir: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for dispatchers, watchdog and CLI."""

    task_id: str
    title: str
    description: str | None
    agent_id: str | None
    status: TaskStatus
    priority: int
    delegation_mode: DelegationMode
    retry_count: int
    scheduled_at: datetime | None
    retry_at: datetime | None
    work_dir: str | None
    progress_text: str | None
    error_summary: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_TASK_STATUSES


@dataclass(slots=True)
class PhaseCreate:
    title: str
    description: str | None = None
    sequence: int | None = None
    phase_id: str | None = None


@dataclass(slots=True)
class PhaseView:
    phase_id: str
    task_id: str
    sequence: int
    title: str
    description: str | None
    status: PhaseStatus
    summary: str | None
    artifacts: dict[str, Any] | None
    session_key: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class StoryCreate:
    title: str
    description: str | None = None
    priority: int = 3
    acceptance_criteria: tuple[str, ...] = ()
    sequence: int | None = None
    story_id: str | None = None


@dataclass(slots=True)
class StoryView:
    story_id: str
    task_id: str
    sequence: int
    title: str
    description: str | None
    priority: int
    passes: bool
    acceptance_criteria: list[str]
    iterations: int
    last_error: str | None
    commit_sha: str | None
    session_key: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class StoryProgress:
    passed: int
    total: int

    @property
    def all_passed(self) -> bool:
        return self.total > 0 and self.passed == self.total

    @property
    def fraction(self) -> float:
        if self.total == 0:
            return 0.0
        return self.passed / self.total


@dataclass(slots=True)
class EventView:
    """Append-only audit event."""

    event_id: int
    event_type: str
    message: str
    task_id: str | None
    agent_id: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task with its phases, stories and event stream."""

    task: TaskView
    phases: list[PhaseView]
    stories: list[StoryView]
    events: list[EventView]


@dataclass(slots=True)
class DequeueResult:
    outcome: DequeueOutcome
    agent_id: str
    task: TaskView | None = None
    remaining: int = 0


@dataclass(slots=True)
class CapabilityGrant:
    """Issued capability: clear secret plus what it is bound to."""

    token: str
    subject_kind: CapabilitySubject
    subject_id: str
    task_id: str


@dataclass(slots=True)
class CapabilityView:
    subject_kind: CapabilitySubject
    subject_id: str
    task_id: str
    issued_at: datetime
    consumed_at: datetime | None

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None
