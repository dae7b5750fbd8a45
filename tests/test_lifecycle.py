from __future__ import annotations

import allure
import pytest

from mission_control.scheduler.errors import InvalidTransitionError
from mission_control.scheduler.lifecycle import (
    TASK_TRANSITIONS,
    can_transition,
    validate_phase_transition,
    validate_transition,
)
from mission_control.scheduler.models import PhaseStatus, TaskStatus

pytestmark = [
    allure.epic("Scheduling Core"),
    allure.feature("Task Lifecycle"),
]


def test_every_status_has_an_entry_in_the_transition_graph() -> None:
    assert set(TASK_TRANSITIONS) == set(TaskStatus)


@pytest.mark.parametrize(
    ("status_from", "status_to"),
    [
        (TaskStatus.QUEUED, TaskStatus.BACKLOG),
        (TaskStatus.BACKLOG, TaskStatus.PLANNING),
        (TaskStatus.PLANNING, TaskStatus.DISCUSSING),
        (TaskStatus.DISCUSSING, TaskStatus.EXECUTING),
        (TaskStatus.EXECUTING, TaskStatus.VERIFYING),
        (TaskStatus.VERIFYING, TaskStatus.REVIEW),
        (TaskStatus.REVIEW, TaskStatus.DONE),
        (TaskStatus.EXECUTING, TaskStatus.FAILED),
        (TaskStatus.EXECUTING, TaskStatus.BACKLOG),
    ],
)
def test_forward_failure_and_recovery_edges_are_allowed(
    status_from: TaskStatus,
    status_to: TaskStatus,
) -> None:
    assert can_transition(status_from, status_to)
    validate_transition(status_from, status_to)


@pytest.mark.parametrize(
    ("status_from", "status_to"),
    [
        (TaskStatus.DONE, TaskStatus.BACKLOG),
        (TaskStatus.DONE, TaskStatus.EXECUTING),
        (TaskStatus.QUEUED, TaskStatus.EXECUTING),
        (TaskStatus.VERIFYING, TaskStatus.PLANNING),
        (TaskStatus.BACKLOG, TaskStatus.DONE),
    ],
)
def test_regressions_and_skips_are_rejected(
    status_from: TaskStatus,
    status_to: TaskStatus,
) -> None:
    assert not can_transition(status_from, status_to)
    with pytest.raises(InvalidTransitionError, match=f"{status_from.value} -> {status_to.value}"):
        validate_transition(status_from, status_to)


def test_done_is_terminal() -> None:
    assert TASK_TRANSITIONS[TaskStatus.DONE] == frozenset()


def test_phase_cannot_leave_done() -> None:
    validate_phase_transition(PhaseStatus.PENDING, PhaseStatus.EXECUTING)
    validate_phase_transition(PhaseStatus.FAILED, PhaseStatus.EXECUTING)
    with pytest.raises(InvalidTransitionError):
        validate_phase_transition(PhaseStatus.DONE, PhaseStatus.EXECUTING)
