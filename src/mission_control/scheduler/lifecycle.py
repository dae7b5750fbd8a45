"""Task and phase lifecycle graph.

Every status-changing write in the work store names the expected prior
status and must be one of the edges below; anything else is rejected
before a conditional update is issued.
"""

from __future__ import annotations

from mission_control.scheduler.errors import InvalidTransitionError
from mission_control.scheduler.models import ACTIVE_TASK_STATUSES, PhaseStatus, TaskStatus

_T = TaskStatus

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    _T.QUEUED: frozenset({_T.BACKLOG}),
    _T.BACKLOG: frozenset({_T.PLANNING, _T.EXECUTING, _T.QUEUED}),
    _T.PLANNING: frozenset({_T.DISCUSSING, _T.FAILED, _T.BACKLOG}),
    _T.DISCUSSING: frozenset({_T.EXECUTING, _T.FAILED, _T.BACKLOG}),
    _T.EXECUTING: frozenset({_T.VERIFYING, _T.DONE, _T.FAILED, _T.BACKLOG}),
    _T.VERIFYING: frozenset({_T.REVIEW, _T.DONE, _T.FAILED, _T.BACKLOG}),
    _T.REVIEW: frozenset({_T.DONE, _T.EXECUTING}),
    _T.DONE: frozenset(),
    _T.FAILED: frozenset({_T.BACKLOG}),
}

PHASE_TRANSITIONS: dict[PhaseStatus, frozenset[PhaseStatus]] = {
    PhaseStatus.PENDING: frozenset({PhaseStatus.EXECUTING}),
    PhaseStatus.EXECUTING: frozenset(
        {PhaseStatus.DONE, PhaseStatus.FAILED, PhaseStatus.PENDING},
    ),
    PhaseStatus.DONE: frozenset(),
    PhaseStatus.FAILED: frozenset({PhaseStatus.EXECUTING}),
}

# Statuses a dispatcher may pick a task up from.
DISPATCHABLE_TASK_STATUSES = frozenset({_T.BACKLOG, *ACTIVE_TASK_STATUSES})


def can_transition(status_from: TaskStatus, status_to: TaskStatus) -> bool:
    return status_to in TASK_TRANSITIONS[status_from]


def validate_transition(status_from: TaskStatus, status_to: TaskStatus) -> None:
    """Raise ``InvalidTransitionError`` unless the edge is allowed."""

    if not can_transition(status_from, status_to):
        raise InvalidTransitionError("task", status_from.value, status_to.value)


def validate_phase_transition(status_from: PhaseStatus, status_to: PhaseStatus) -> None:
    if status_to not in PHASE_TRANSITIONS[status_from]:
        raise InvalidTransitionError("phase", status_from.value, status_to.value)


def clears_agent(status_to: TaskStatus) -> bool:
    """Terminal states drop the agent assignment."""

    return status_to in {_T.DONE, _T.FAILED}
