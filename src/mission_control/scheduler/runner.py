"""Run dispatch loops for individual tasks on bounded background threads."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from mission_control.scheduler.broadcaster import EventBroadcaster
from mission_control.scheduler.errors import IterationBudgetExhaustedError, RunnerBusyError
from mission_control.scheduler.lifecycle import DISPATCHABLE_TASK_STATUSES
from mission_control.scheduler.models import AgentStatus, TaskView
from mission_control.scheduler.phases import PhaseDispatcher
from mission_control.scheduler.repository import WorkStore
from mission_control.scheduler.stories import StoryDispatcher

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL = 3


class DispatchStrategy(str, Enum):
    PHASES = "phases"
    STORIES = "stories"


@dataclass(slots=True)
class _RunningTask:
    task_id: str
    agent_id: str | None
    strategy: DispatchStrategy
    cancel: threading.Event
    thread: threading.Thread


class TaskRunner:
    """Start at most ``max_parallel`` dispatch loops, one per task.

    Tasks with stories run through the story dispatcher; all others through
    the phase dispatcher. ``on_finished`` is called with the task and agent ids
    after a loop exits.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: WorkStore,
        broadcaster: EventBroadcaster,
        phase_dispatcher: PhaseDispatcher,
        story_dispatcher: StoryDispatcher,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        on_finished: Callable[[str, str | None], None] | None = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.phase_dispatcher = phase_dispatcher
        self.story_dispatcher = story_dispatcher
        self.max_parallel = max_parallel
        self.on_finished = on_finished
        self._running: dict[str, _RunningTask] = {}
        self._lock = threading.Lock()

    def start_task(self, task_id: str) -> DispatchStrategy:
        task = self.store.require_task(task_id)
        if task.status not in DISPATCHABLE_TASK_STATUSES:
            raise RunnerBusyError(f"Task {task_id} is {task.status.value}; nothing to dispatch")
        strategy = self._strategy_for(task)

        with self._lock:
            if task_id in self._running:
                raise RunnerBusyError(f"Task {task_id} is already running")
            if len(self._running) >= self.max_parallel:
                raise RunnerBusyError(
                    f"Max parallel tasks ({self.max_parallel}) reached; task {task_id} not started",
                )
            cancel = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(task, strategy, cancel),
                daemon=True,
                name=f"dispatch-{task_id}",
            )
            self._running[task_id] = _RunningTask(
                task_id=task_id,
                agent_id=task.agent_id,
                strategy=strategy,
                cancel=cancel,
                thread=thread,
            )

        try:
            event = self.store.add_event(
                event_type="task_started",
                message=f"Dispatch started ({strategy.value})",
                task_id=task_id,
                agent_id=task.agent_id,
                details={"strategy": strategy.value},
            )
            self.broadcaster.publish_event(event)
            if task.agent_id is not None:
                self.store.set_agent_status(agent_id=task.agent_id, status=AgentStatus.WORKING)
                self.broadcaster.publish_agent_status(
                    task.agent_id,
                    AgentStatus.WORKING.value,
                    task_id,
                )
            thread.start()
        except Exception:
            with self._lock:
                self._running.pop(task_id, None)
            raise
        logger.info("Started %s dispatch for task %s", strategy.value, task_id)
        return strategy

    def stop_task(self, task_id: str, reason: str = "Stopped by operator") -> bool:
        """Cancel the loop (if any) and return an active task to backlog."""

        with self._lock:
            running = self._running.get(task_id)
        if running is not None:
            running.cancel.set()

        task = self.store.require_task(task_id)
        if not task.is_active:
            return running is not None
        if not self.store.recover_task(task_id=task_id, status_from=task.status, reason=reason):
            return False
        self.broadcaster.publish_task_status(task_id, "backlog", 0.0)
        if task.agent_id is not None:
            self._mark_idle(task.agent_id)
        logger.info("Stopped task %s: %s", task_id, reason)
        return True

    def running_tasks(self) -> list[str]:
        with self._lock:
            return sorted(self._running)

    def is_running(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._running

    def join(self, task_id: str, timeout: float | None = None) -> bool:
        """Wait for one loop to exit; ``True`` when it is no longer running."""

        with self._lock:
            running = self._running.get(task_id)
        if running is None:
            return True
        running.thread.join(timeout=timeout)
        return not running.thread.is_alive()

    def shutdown(self, timeout: float = 15.0) -> None:
        with self._lock:
            running = list(self._running.values())
        for item in running:
            item.cancel.set()
        for item in running:
            item.thread.join(timeout=timeout)
            if item.thread.is_alive():
                logger.warning("Dispatch loop for task %s did not stop", item.task_id)

    def _strategy_for(self, task: TaskView) -> DispatchStrategy:
        if self.store.list_stories(task.task_id):
            return DispatchStrategy.STORIES
        return DispatchStrategy.PHASES

    def _run(self, task: TaskView, strategy: DispatchStrategy, cancel: threading.Event) -> None:
        try:
            if strategy == DispatchStrategy.STORIES:
                result = self.story_dispatcher.run(task.task_id, cancel)
                logger.info(
                    "Story loop for task %s ended: %s after %d attempts",
                    task.task_id,
                    result.outcome.value,
                    result.attempts,
                )
            else:
                outcome = self.phase_dispatcher.run_task(task.task_id, cancel)
                logger.info("Phase dispatch for task %s: %s", task.task_id, outcome.outcome.value)
        except IterationBudgetExhaustedError as error:
            logger.warning("%s", error)
        except Exception:  # noqa: BLE001
            logger.exception("Dispatch loop for task %s crashed", task.task_id)
        finally:
            with self._lock:
                self._running.pop(task.task_id, None)
            if task.agent_id is not None and not self.store.count_active_tasks(
                agent_id=task.agent_id,
            ):
                self._mark_idle(task.agent_id)
            if self.on_finished is not None:
                self.on_finished(task.task_id, task.agent_id)

    def _mark_idle(self, agent_id: str) -> None:
        agent = self.store.get_agent(agent_id)
        if agent is None or agent.status == AgentStatus.ORPHANED:
            return
        self.store.set_agent_status(agent_id=agent_id, status=AgentStatus.IDLE)
        self.broadcaster.publish_agent_status(agent_id, AgentStatus.IDLE.value, None)
