from __future__ import annotations

from collections.abc import Callable

import allure
import pytest

from mission_control.scheduler.admission import AdmissionController
from mission_control.scheduler.broadcaster import EventBroadcaster
from mission_control.scheduler.models import (
    AgentCreate,
    AgentStatus,
    DequeueOutcome,
    SubmitOutcome,
    TaskStatus,
    TaskView,
)
from mission_control.scheduler.repository import WorkStore

pytestmark = [
    allure.epic("Scheduling Core"),
    allure.feature("Admission Control"),
]


@pytest.fixture()
def admission(store: WorkStore, broadcaster: EventBroadcaster) -> AdmissionController:
    return AdmissionController(store=store, broadcaster=broadcaster)


def test_submit_leaves_task_ready_for_an_idle_agent(
    store: WorkStore,
    admission: AdmissionController,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task(agent_id="alpha")

    assert admission.submit(task.task_id) == SubmitOutcome.READY
    assert store.require_task(task.task_id).status == TaskStatus.BACKLOG


def test_submit_queues_behind_active_work(
    store: WorkStore,
    admission: AdmissionController,
    make_task: Callable[..., TaskView],
) -> None:
    running = make_task("running", agent_id="alpha")
    store.start_task(task_id=running.task_id, status_from=TaskStatus.BACKLOG)
    waiting = make_task("waiting", agent_id="alpha")

    assert admission.submit(waiting.task_id) == SubmitOutcome.QUEUED
    assert store.require_task(waiting.task_id).status == TaskStatus.QUEUED
    assert store.require_task(waiting.task_id).agent_id == "alpha"


def test_submit_skips_unassigned_and_non_backlog_tasks(
    store: WorkStore,
    admission: AdmissionController,
    make_task: Callable[..., TaskView],
) -> None:
    unassigned = make_task("nobody")
    queued = make_task("queued", agent_id="alpha", status=TaskStatus.QUEUED)

    assert admission.submit(unassigned.task_id) == SubmitOutcome.SKIPPED
    assert admission.submit(queued.task_id) == SubmitOutcome.SKIPPED


def test_dequeue_reports_busy_and_empty(
    store: WorkStore,
    admission: AdmissionController,
    make_task: Callable[..., TaskView],
) -> None:
    assert admission.dequeue_next("alpha").outcome == DequeueOutcome.EMPTY

    running = make_task("running", agent_id="alpha")
    store.start_task(task_id=running.task_id, status_from=TaskStatus.BACKLOG)
    make_task("next", agent_id="alpha", status=TaskStatus.QUEUED)

    assert admission.dequeue_next("alpha").outcome == DequeueOutcome.BUSY


def test_sweep_dequeues_per_agent_and_skips_orphans(
    store: WorkStore,
    admission: AdmissionController,
    make_task: Callable[..., TaskView],
) -> None:
    first = make_task("alpha work", agent_id="alpha", status=TaskStatus.QUEUED)
    second = make_task("beta work", agent_id="beta", status=TaskStatus.QUEUED)
    make_task("ghost work", agent_id="ghost", status=TaskStatus.QUEUED)
    store.sync_agents([AgentCreate(agent_id="alpha"), AgentCreate(agent_id="beta")])
    ghost = store.get_agent("ghost")
    assert ghost is not None
    assert ghost.status == AgentStatus.ORPHANED

    results = admission.sweep()

    promoted = sorted(result.task.task_id for result in results if result.task is not None)
    assert promoted == sorted([first.task_id, second.task_id])
    assert all(result.outcome == DequeueOutcome.DEQUEUED for result in results)
