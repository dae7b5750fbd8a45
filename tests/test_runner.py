from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from mission_control.config import DispatchSettings, Settings, WatchdogSettings
from mission_control.scheduler.briefing import BriefingBuilder, PhaseBriefing
from mission_control.scheduler.broadcaster import EventBroadcaster
from mission_control.scheduler.errors import RunnerBusyError
from mission_control.scheduler.gateway import GatewayError
from mission_control.scheduler.models import (
    AgentStatus,
    DelegationMode,
    PhaseCreate,
    PhaseStatus,
    StoryCreate,
    TaskStatus,
    TaskView,
)
from mission_control.scheduler.phases import PhaseDispatcher
from mission_control.scheduler.repository import WorkStore
from mission_control.scheduler.retry import RetryPolicy
from mission_control.scheduler.runner import DispatchStrategy, TaskRunner
from mission_control.scheduler.service import SchedulerService
from mission_control.scheduler.stories import StoryDispatcher
from mission_control.scheduler.tokens import CapabilityIssuer
from mission_control.storage.common import utc_now
from tests.fakes import FakeGateway

pytestmark = [
    allure.epic("Scheduling Core"),
    allure.feature("Task Runner"),
]


@pytest.fixture()
def build_runner(  # noqa: PLR0913
    store: WorkStore,
    broadcaster: EventBroadcaster,
    briefings: BriefingBuilder,
    capabilities: CapabilityIssuer,
    retry_policy: RetryPolicy,
) -> Callable[..., TaskRunner]:
    def _build(
        gateway: FakeGateway,
        *,
        max_parallel: int = 3,
        on_finished: Callable[[str, str | None], None] | None = None,
    ) -> TaskRunner:
        common = {
            "store": store,
            "gateway": gateway,
            "broadcaster": broadcaster,
            "briefings": briefings,
            "capabilities": capabilities,
        }
        return TaskRunner(
            store=store,
            broadcaster=broadcaster,
            phase_dispatcher=PhaseDispatcher(retry_policy=retry_policy, **common),
            story_dispatcher=StoryDispatcher(max_iterations=1, pacing_seconds=0, **common),
            max_parallel=max_parallel,
            on_finished=on_finished,
        )

    return _build


def test_phase_task_is_dispatched_and_agent_returns_idle_when_done(
    store: WorkStore,
    gateway: FakeGateway,
    make_task: Callable[..., TaskView],
    build_runner: Callable[..., TaskRunner],
) -> None:
    finished: list[tuple[str, str | None]] = []
    task = make_task(agent_id="alpha")
    runner = build_runner(gateway, on_finished=lambda *ids: finished.append(ids))

    strategy = runner.start_task(task.task_id)

    assert strategy == DispatchStrategy.PHASES
    assert runner.join(task.task_id, timeout=5)
    assert not runner.is_running(task.task_id)
    assert store.require_task(task.task_id).status == TaskStatus.DONE
    agent = store.get_agent("alpha")
    assert agent is not None
    assert agent.status == AgentStatus.IDLE
    assert finished == [(task.task_id, "alpha")]
    event_types = [event.event_type for event in store.list_events(task_id=task.task_id)]
    assert "task_started" in event_types


def test_tasks_with_stories_use_the_story_loop(
    store: WorkStore,
    gateway: FakeGateway,
    make_task: Callable[..., TaskView],
    build_runner: Callable[..., TaskRunner],
) -> None:
    task = make_task(agent_id="alpha")
    store.add_story(task_id=task.task_id, payload=StoryCreate(title="only story"))
    runner = build_runner(gateway)

    assert runner.start_task(task.task_id) == DispatchStrategy.STORIES
    assert runner.join(task.task_id, timeout=5)

    # one iteration budget, the story never reports back
    assert store.require_task(task.task_id).status == TaskStatus.FAILED
    assert gateway.labels[0].startswith(f"ralph-{task.task_id}-story-")


def test_parallel_ceiling_and_duplicate_start_are_refused(
    store: WorkStore,
    make_task: Callable[..., TaskView],
    build_runner: Callable[..., TaskRunner],
) -> None:
    release = threading.Event()
    gateway = FakeGateway(on_spawn=lambda _: release.wait(5))
    first = make_task("first", agent_id="alpha")
    second = make_task("second", agent_id="beta")
    store.add_phase(task_id=first.task_id, payload=PhaseCreate(title="slow"))
    runner = build_runner(gateway, max_parallel=1)

    runner.start_task(first.task_id)
    try:
        with pytest.raises(RunnerBusyError, match="already running"):
            runner.start_task(first.task_id)
        with pytest.raises(RunnerBusyError, match=r"Max parallel tasks \(1\)"):
            runner.start_task(second.task_id)
        assert runner.running_tasks() == [first.task_id]
    finally:
        release.set()
        runner.join(first.task_id, timeout=5)

    assert store.require_task(second.task_id).status == TaskStatus.BACKLOG


def test_failed_start_releases_its_slot(
    monkeypatch: pytest.MonkeyPatch,
    store: WorkStore,
    gateway: FakeGateway,
    make_task: Callable[..., TaskView],
    build_runner: Callable[..., TaskRunner],
) -> None:
    task = make_task(agent_id="alpha")
    runner = build_runner(gateway, max_parallel=1)
    add_event = store.add_event

    def _broken_add_event(**_kwargs: object) -> None:
        raise RuntimeError("database is locked")

    monkeypatch.setattr(store, "add_event", _broken_add_event)
    with pytest.raises(RuntimeError, match="database is locked"):
        runner.start_task(task.task_id)

    assert not runner.is_running(task.task_id)
    assert runner.running_tasks() == []

    monkeypatch.setattr(store, "add_event", add_event)
    assert runner.start_task(task.task_id) == DispatchStrategy.PHASES
    assert runner.join(task.task_id, timeout=5)
    assert store.require_task(task.task_id).status == TaskStatus.DONE


def test_terminal_task_is_not_started(
    store: WorkStore,
    gateway: FakeGateway,
    make_task: Callable[..., TaskView],
    build_runner: Callable[..., TaskRunner],
) -> None:
    task = make_task(agent_id="alpha")
    store.start_task(task_id=task.task_id, status_from=TaskStatus.BACKLOG)
    store.complete_task(task_id=task.task_id, status_from=TaskStatus.EXECUTING, message="done")

    with pytest.raises(RunnerBusyError, match="nothing to dispatch"):
        build_runner(gateway).start_task(task.task_id)


def test_stop_returns_active_task_to_backlog(
    store: WorkStore,
    gateway: FakeGateway,
    make_task: Callable[..., TaskView],
    build_runner: Callable[..., TaskRunner],
) -> None:
    task = make_task(agent_id="alpha")
    store.add_phase(task_id=task.task_id, payload=PhaseCreate(title="long"))
    runner = build_runner(gateway)
    runner.start_task(task.task_id)
    runner.join(task.task_id, timeout=5)

    assert runner.stop_task(task.task_id, reason="operator pause")

    stopped = store.require_task(task.task_id)
    assert stopped.status == TaskStatus.BACKLOG
    assert stopped.agent_id is None
    assert stopped.retry_count == 0
    assert stopped.error_summary == "operator pause"


@pytest.fixture()
def service(tmp_path: Path, store: WorkStore, gateway: FakeGateway) -> Iterator[SchedulerService]:
    settings = Settings(
        db_path=tmp_path / "mission-control.db",
        dispatch=DispatchSettings(story_pacing_seconds=0),
        watchdog=WatchdogSettings(enabled=False),
    )
    scheduler = SchedulerService(settings, store=store, gateway=gateway)
    scheduler.start()
    yield scheduler
    scheduler.stop()


def test_handoff_queues_behind_busy_agent_until_it_frees_up(
    store: WorkStore,
    gateway: FakeGateway,
    service: SchedulerService,
    make_task: Callable[..., TaskView],
) -> None:
    first = make_task("first", agent_id="alpha")
    first_phase = store.add_phase(task_id=first.task_id, payload=PhaseCreate(title="build"))
    second = make_task("second", agent_id="alpha")

    assert service.handoff(first)
    assert service.runner.join(first.task_id, timeout=5)
    assert not service.handoff(second)
    assert store.require_task(second.task_id).status == TaskStatus.QUEUED

    briefing = gateway.requests[0].briefing
    assert isinstance(briefing, PhaseBriefing)
    service.callbacks.complete_phase(first_phase.phase_id, summary="built", token=briefing.token)
    assert store.require_task(first.task_id).status == TaskStatus.DONE

    results = service.sweep_queue()

    assert [result.task.task_id for result in results if result.task] == [second.task_id]
    assert service.runner.join(second.task_id, timeout=5)
    assert store.require_task(second.task_id).status == TaskStatus.DONE


def test_manual_and_unassigned_tasks_are_not_handed_off(
    service: SchedulerService,
    make_task: Callable[..., TaskView],
) -> None:
    manual = make_task("manual", agent_id="alpha", delegation_mode=DelegationMode.MANUAL)
    unassigned = make_task("unassigned")

    assert not service.handoff(manual)
    assert not service.handoff(unassigned)
    assert service.runner.running_tasks() == []


def test_released_retry_is_picked_up_by_the_watchdog_hook(
    store: WorkStore,
    service: SchedulerService,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task(agent_id="alpha")
    store.start_task(task_id=task.task_id, status_from=TaskStatus.BACKLOG)
    store.reschedule_task(
        task_id=task.task_id,
        status_from=TaskStatus.EXECUTING,
        retry_at=task.created_at,
        error_summary="spawn refused",
    )

    summary = service.watchdog.tick()

    assert summary.retries_released == [task.task_id]
    assert service.runner.join(task.task_id, timeout=5)
    assert store.require_task(task.task_id).status == TaskStatus.DONE


def test_transient_spawn_failure_is_retried_on_the_same_agent(
    store: WorkStore,
    gateway: FakeGateway,
    service: SchedulerService,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task(agent_id="alpha")
    phase = store.add_phase(task_id=task.task_id, payload=PhaseCreate(title="build"))
    gateway.fail_with = GatewayError("HTTP 503", transient=True)

    assert service.handoff(task)
    assert service.runner.join(task.task_id, timeout=5)
    rescheduled = store.require_task(task.task_id)
    assert rescheduled.status == TaskStatus.BACKLOG
    assert rescheduled.agent_id == "alpha"

    gateway.fail_with = None
    summary = service.watchdog.tick(now=utc_now() + timedelta(hours=1))

    assert summary.retries_released == [task.task_id]
    assert service.runner.join(task.task_id, timeout=5)
    assert len(gateway.requests) == 2
    assert gateway.requests[1].agent_id == "alpha"
    assert store.require_phase(phase.phase_id).status == PhaseStatus.EXECUTING
    assert store.require_task(task.task_id).status == TaskStatus.EXECUTING


def test_stalled_task_returns_to_its_previous_agent_after_backoff(
    store: WorkStore,
    gateway: FakeGateway,
    service: SchedulerService,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task(agent_id="alpha")
    store.add_phase(task_id=task.task_id, payload=PhaseCreate(title="build"))
    store.start_task(task_id=task.task_id, status_from=TaskStatus.BACKLOG)
    later = utc_now() + timedelta(hours=1)

    assert service.watchdog.tick(now=later).reset == [task.task_id]
    assert store.require_task(task.task_id).agent_id is None

    summary = service.watchdog.tick(now=later + timedelta(hours=1))

    assert summary.retries_released == [task.task_id]
    assert service.runner.join(task.task_id, timeout=5)
    resumed = store.require_task(task.task_id)
    assert resumed.agent_id == "alpha"
    assert resumed.status == TaskStatus.EXECUTING
    assert [request.agent_id for request in gateway.requests] == ["alpha"]


def test_released_task_of_an_orphaned_agent_stays_in_backlog(
    store: WorkStore,
    gateway: FakeGateway,
    service: SchedulerService,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task(agent_id="alpha")
    store.start_task(task_id=task.task_id, status_from=TaskStatus.BACKLOG)
    later = utc_now() + timedelta(hours=1)
    service.watchdog.tick(now=later)
    store.sync_agents([])

    summary = service.watchdog.tick(now=later + timedelta(hours=1))

    assert summary.retries_released == [task.task_id]
    assert service.runner.running_tasks() == []
    assert store.require_task(task.task_id).agent_id is None
    assert gateway.requests == []
