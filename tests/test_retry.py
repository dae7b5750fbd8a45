from __future__ import annotations

import threading
from collections.abc import Callable

import allure
import pytest

from mission_control.scheduler.models import TaskStatus, TaskView
from mission_control.scheduler.periodic import PeriodicRunner
from mission_control.scheduler.repository import WorkStore
from mission_control.scheduler.retry import RetryDecision, RetryPolicy
from mission_control.storage.common import utc_now

pytestmark = [
    allure.epic("Scheduling Core"),
    allure.feature("Retry & Timers"),
]


@pytest.mark.parametrize(
    ("retry_number", "delay"),
    [(1, 60), (2, 120), (3, 240), (5, 960), (6, 1_800), (12, 1_800)],
)
def test_backoff_doubles_up_to_the_cap(
    retry_policy: RetryPolicy,
    retry_number: int,
    delay: float,
) -> None:
    assert retry_policy.compute_delay(retry_number=retry_number) == delay


def test_reschedule_then_fail_at_ceiling(
    store: WorkStore,
    make_task: Callable[..., TaskView],
) -> None:
    policy = RetryPolicy(max_retries=1, base_seconds=10, max_seconds=10)
    task = make_task(agent_id="alpha")
    store.start_task(task_id=task.task_id, status_from=TaskStatus.BACKLOG)
    now = utc_now()

    first = policy.reschedule_or_fail(
        store,
        task=store.require_task(task.task_id),
        error="e1",
        now=now,
    )
    assert first.decision == RetryDecision.RESCHEDULED
    assert first.retry_number == 1
    assert first.retry_at is not None
    assert (first.retry_at - now).total_seconds() == 10

    store.start_task(task_id=task.task_id, status_from=TaskStatus.BACKLOG)
    second = policy.reschedule_or_fail(store, task=store.require_task(task.task_id), error="e2")
    assert second.decision == RetryDecision.FAILED
    assert store.require_task(task.task_id).status == TaskStatus.FAILED


def test_inactive_task_is_skipped(
    store: WorkStore,
    retry_policy: RetryPolicy,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task(agent_id="alpha")

    outcome = retry_policy.reschedule_or_fail(store, task=task, error="late callback")

    assert outcome.decision == RetryDecision.SKIPPED
    assert store.require_task(task.task_id).retry_count == 0


def test_periodic_runner_survives_failing_iterations() -> None:
    calls: list[int] = []
    two_calls = threading.Event()

    def flaky() -> None:
        calls.append(len(calls))
        if len(calls) >= 2:
            two_calls.set()
        raise RuntimeError("boom")

    runner = PeriodicRunner("flaky", 0.01, flaky, run_immediately=True)
    runner.start()
    try:
        assert two_calls.wait(5)
    finally:
        runner.stop()

    assert not runner.running
    assert runner.runs >= 2


def test_periodic_runner_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError, match="interval must be > 0"):
        PeriodicRunner("broken", 0, lambda: None)
