from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from mission_control.scheduler.errors import InvalidTransitionError, TaskNotFoundError
from mission_control.scheduler.models import (
    AgentCreate,
    AgentStatus,
    DequeueOutcome,
    DequeueResult,
    PhaseCreate,
    StoryCreate,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from mission_control.scheduler.repository import WorkStore

pytestmark = [
    allure.epic("Scheduling Core"),
    allure.feature("Work Store"),
]


def test_create_task_records_event_and_defaults(
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task("Write docs", agent_id="alpha", priority=2)

    assert task.status == TaskStatus.BACKLOG
    assert task.retry_count == 0
    assert task.agent_id == "alpha"
    events = store.list_events(task_id=task.task_id)
    assert [event.event_type for event in events] == ["task_created"]
    assert events[0].details == {"status": "backlog", "priority": 2}


def test_create_task_rejects_active_status_and_agentless_queue(store: WorkStore) -> None:
    with pytest.raises(ValueError, match="backlog or queued"):
        store.create_task(TaskCreate(title="x", status=TaskStatus.EXECUTING))
    with pytest.raises(ValueError, match="require an agent"):
        store.create_task(TaskCreate(title="x", status=TaskStatus.QUEUED))


def test_transitions_are_conditional_on_the_expected_status(
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task(agent_id="alpha")

    assert store.start_task(task_id=task.task_id, status_from=TaskStatus.BACKLOG)
    # a second caller that still believes the task is in backlog loses
    assert not store.start_task(task_id=task.task_id, status_from=TaskStatus.BACKLOG)

    started = store.require_task(task.task_id)
    assert started.status == TaskStatus.EXECUTING
    assert started.started_at is not None

    with pytest.raises(InvalidTransitionError):
        store.advance_task(
            task_id=task.task_id,
            status_from=TaskStatus.EXECUTING,
            status_to=TaskStatus.PLANNING,
        )

    assert store.complete_task(
        task_id=task.task_id,
        status_from=TaskStatus.EXECUTING,
        message="all good",
    )
    done = store.require_task(task.task_id)
    assert done.status == TaskStatus.DONE
    assert done.agent_id is None
    assert done.completed_at is not None

    event_types = [event.event_type for event in store.list_events(task_id=task.task_id)]
    assert event_types == ["task_created", "task_executing", "task_completed"]


def test_begin_execution_walks_planning_through_discussing(
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task(agent_id="alpha")
    assert store.advance_task(
        task_id=task.task_id,
        status_from=TaskStatus.BACKLOG,
        status_to=TaskStatus.PLANNING,
    )

    started = store.begin_execution(task.task_id)

    assert started is not None
    assert started.status == TaskStatus.EXECUTING
    statuses = [
        (event.details["status_from"], event.details["status_to"])
        for event in store.list_events(task_id=task.task_id)
        if "status_to" in event.details
    ]
    assert statuses == [
        ("backlog", "planning"),
        ("planning", "discussing"),
        ("discussing", "executing"),
    ]


def test_begin_execution_refuses_terminal_tasks(
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task()
    store.start_task(task_id=task.task_id, status_from=TaskStatus.BACKLOG)
    store.fail_task(task_id=task.task_id, status_from=TaskStatus.EXECUTING, error_summary="boom")

    assert store.begin_execution(task.task_id) is None


def test_fail_and_manual_retry_preserve_then_reset_error(
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task(agent_id="alpha")
    store.start_task(task_id=task.task_id, status_from=TaskStatus.BACKLOG)
    store.fail_task(
        task_id=task.task_id,
        status_from=TaskStatus.EXECUTING,
        error_summary="compiler exploded",
    )

    failed = store.require_task(task.task_id)
    assert failed.status == TaskStatus.FAILED
    assert failed.error_summary == "compiler exploded"
    assert failed.agent_id is None

    retried = store.retry_failed_task(task_id=task.task_id)
    assert retried.status == TaskStatus.BACKLOG
    assert retried.error_summary is None
    assert retried.retry_count == 0


def test_reschedule_keeps_agent_and_bumps_retry_count(
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task(agent_id="alpha")
    store.start_task(task_id=task.task_id, status_from=TaskStatus.BACKLOG)
    retry_at = task.created_at.replace(microsecond=0)

    assert store.reschedule_task(
        task_id=task.task_id,
        status_from=TaskStatus.EXECUTING,
        retry_at=retry_at,
        error_summary="gateway down",
    )

    rescheduled = store.require_task(task.task_id)
    assert rescheduled.status == TaskStatus.BACKLOG
    assert rescheduled.agent_id == "alpha"
    assert rescheduled.retry_count == 1
    assert rescheduled.retry_at == retry_at
    assert [task.task_id for task in store.list_retry_due(now=retry_at)] == [task.task_id]


def test_assign_task_only_moves_backlog_tasks(
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    store.add_agent(AgentCreate(agent_id="beta"))
    task = make_task()

    assert store.assign_task(task_id=task.task_id, agent_id="beta")
    assert store.require_task(task.task_id).agent_id == "beta"

    with pytest.raises(ValueError, match="Unknown agent"):
        store.assign_task(task_id=task.task_id, agent_id="ghost")

    store.start_task(task_id=task.task_id, status_from=TaskStatus.BACKLOG)
    assert not store.assign_task(task_id=task.task_id, agent_id="beta")


def test_require_task_raises_for_unknown_id(store: WorkStore) -> None:
    with pytest.raises(TaskNotFoundError, match="missing"):
        store.require_task("missing")


def test_phase_sequence_defaults_to_next_number(
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task()
    first = store.add_phase(task_id=task.task_id, payload=PhaseCreate(title="Plan"))
    second = store.add_phase(task_id=task.task_id, payload=PhaseCreate(title="Build"))

    assert (first.sequence, second.sequence) == (1, 2)
    assert [phase.title for phase in store.list_phases(task.task_id)] == ["Plan", "Build"]


def test_stories_are_listed_by_priority_then_sequence(
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task()
    for title, priority in (("second", 2), ("first", 1), ("third", 3), ("first-b", 1)):
        store.add_story(task_id=task.task_id, payload=StoryCreate(title=title, priority=priority))

    assert [story.title for story in store.list_stories(task.task_id)] == [
        "first",
        "first-b",
        "second",
        "third",
    ]
    pending = store.next_pending_story(task.task_id)
    assert pending is not None
    assert pending.title == "first"


def test_story_pass_is_recorded_once(
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task()
    story = store.add_story(task_id=task.task_id, payload=StoryCreate(title="login"))

    assert store.mark_story_passed(story_id=story.story_id, commit_sha="abc123")
    assert not store.mark_story_passed(story_id=story.story_id, commit_sha="def456")

    passed = store.require_story(story.story_id)
    assert passed.passes
    assert passed.commit_sha == "abc123"
    assert store.story_progress(task.task_id).all_passed


def test_dequeue_promotes_by_priority_and_refuses_busy_agents(
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    low = make_task("low", agent_id="alpha", status=TaskStatus.QUEUED, priority=5)
    high = make_task("high", agent_id="alpha", status=TaskStatus.QUEUED, priority=1)

    result = store.dequeue_next(agent_id="alpha")
    assert result.outcome == DequeueOutcome.DEQUEUED
    assert result.task is not None
    assert result.task.task_id == high.task_id
    assert result.task.status == TaskStatus.BACKLOG
    assert result.remaining == 1

    store.start_task(task_id=high.task_id, status_from=TaskStatus.BACKLOG)
    busy = store.dequeue_next(agent_id="alpha")
    assert busy.outcome == DequeueOutcome.BUSY
    assert store.require_task(low.task_id).status == TaskStatus.QUEUED

    assert store.dequeue_next(agent_id="nobody").outcome == DequeueOutcome.EMPTY

    dequeued = [
        event
        for event in store.list_events(task_id=high.task_id)
        if event.event_type == "task_dequeued"
    ]
    assert dequeued[0].details["queue_depth"] == 1


def test_concurrent_dequeue_yields_exactly_one_success(
    tmp_path: Path,
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    make_task("only", agent_id="alpha", status=TaskStatus.QUEUED)
    barrier = threading.Barrier(2)
    results: list[DequeueResult] = []
    lock = threading.Lock()

    def _dequeue() -> None:
        worker_store = WorkStore(tmp_path / "mission-control.db")
        try:
            barrier.wait(timeout=5)
            result = worker_store.dequeue_next(agent_id="alpha")
            with lock:
                results.append(result)
        finally:
            worker_store.close()

    threads = [threading.Thread(target=_dequeue) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    outcomes = sorted(result.outcome.value for result in results)
    assert len(outcomes) == 2
    assert outcomes.count(DequeueOutcome.DEQUEUED.value) == 1
    assert set(outcomes) <= {"dequeued", "busy", "empty"}


def test_sync_agents_marks_missing_agents_orphaned(store: WorkStore) -> None:
    store.add_agent(AgentCreate(agent_id="alpha", name="Alpha"))
    store.add_agent(AgentCreate(agent_id="legacy"))

    result = store.sync_agents([AgentCreate(agent_id="alpha"), AgentCreate(agent_id="beta")])

    assert result.created == ["beta"]
    assert result.updated == ["alpha"]
    assert result.orphaned == ["legacy"]
    legacy = store.get_agent("legacy")
    assert legacy is not None
    assert legacy.status == AgentStatus.ORPHANED
    alpha = store.get_agent("alpha")
    assert alpha is not None
    assert alpha.name == "Alpha"
    assert [event.event_type for event in store.list_events()] == ["agent_orphaned"]

    again = store.sync_agents([AgentCreate(agent_id="alpha"), AgentCreate(agent_id="beta")])
    assert again.orphaned == []


def test_create_task_with_agent_persists_task_and_event(store: WorkStore) -> None:
    store.add_agent(AgentCreate(agent_id="alpha"))

    task = store.create_task(TaskCreate(title="x", agent_id="alpha"))

    assert store.require_task(task.task_id).agent_id == "alpha"
    events = store.list_events(task_id=task.task_id)
    assert [(event.event_type, event.agent_id) for event in events] == [
        ("task_created", "alpha"),
    ]


def test_create_task_without_agent_persists_task_and_event(store: WorkStore) -> None:
    task = store.create_task(TaskCreate(title="unassigned"))

    assert store.require_task(task.task_id).status == TaskStatus.BACKLOG
    assert [event.event_type for event in store.list_events(task_id=task.task_id)] == [
        "task_created",
    ]


def test_stale_reschedule_clears_agent_but_remembers_it(
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task(agent_id="alpha")
    store.start_task(task_id=task.task_id, status_from=TaskStatus.BACKLOG)

    assert store.reschedule_task(
        task_id=task.task_id,
        status_from=TaskStatus.EXECUTING,
        retry_at=task.created_at,
        error_summary="stalled",
        event_type="task_stuck_reset",
        clear_agent=True,
    )

    assert store.require_task(task.task_id).agent_id is None
    assert store.last_agent_for_task(task.task_id) == "alpha"
    assert store.last_agent_for_task("missing") is None
