"""Story dispatcher: iterate over a task's unfinished stories within a budget."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum

from mission_control.scheduler.briefing import BriefingBuilder
from mission_control.scheduler.broadcaster import EventBroadcaster
from mission_control.scheduler.errors import DispatchError, IterationBudgetExhaustedError
from mission_control.scheduler.gateway import (
    ExecutionGateway,
    GatewayError,
    SpawnRequest,
    SpawnResult,
)
from mission_control.scheduler.lifecycle import DISPATCHABLE_TASK_STATUSES
from mission_control.scheduler.models import (
    CapabilitySubject,
    StoryView,
    TaskStatus,
    TaskView,
)
from mission_control.scheduler.repository import WorkStore
from mission_control.scheduler.tokens import CapabilityIssuer

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_PACING_SECONDS = 2.0
STORY_TIMEOUT_SECONDS = 1_200


class StoryRunOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass(slots=True)
class StoryRunResult:
    task_id: str
    outcome: StoryRunOutcome
    attempts: int = 0
    dispatched_story_ids: list[str] = field(default_factory=list)


class StoryDispatcher:
    """Dispatch the most urgent unfinished story until all pass or the budget runs out.

    Each iteration dispatches one story and does not wait for it; pass/fail
    arrives through callbacks and is observed on the next iteration.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: WorkStore,
        gateway: ExecutionGateway,
        broadcaster: EventBroadcaster,
        briefings: BriefingBuilder,
        capabilities: CapabilityIssuer,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        pacing_seconds: float = DEFAULT_PACING_SECONDS,
        timeout_seconds: int = STORY_TIMEOUT_SECONDS,
        cleanup: str = "delete",
        model: str | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.broadcaster = broadcaster
        self.briefings = briefings
        self.capabilities = capabilities
        self.max_iterations = max_iterations if max_iterations > 0 else DEFAULT_MAX_ITERATIONS
        self.pacing_seconds = pacing_seconds
        self.timeout_seconds = timeout_seconds
        self.cleanup = cleanup
        self.model = model

    def run(self, task_id: str, cancel: threading.Event | None = None) -> StoryRunResult:
        """Run the iteration loop.

        Raises ``IterationBudgetExhaustedError`` after failing the task when
        ``max_iterations`` dispatch attempts did not get every story to pass.
        """

        cancel = cancel or threading.Event()
        result = StoryRunResult(task_id=task_id, outcome=StoryRunOutcome.SKIPPED)
        for iteration in range(self.max_iterations):
            if cancel.is_set():
                result.outcome = StoryRunOutcome.CANCELLED
                return result

            task = self.store.require_task(task_id)
            if task.status not in DISPATCHABLE_TASK_STATUSES:
                return result
            if task.status == TaskStatus.BACKLOG and iteration > 0:
                # recovered by the watchdog while this loop was pacing
                return result
            started = self.store.begin_execution(task_id)
            if started is None:
                return result

            progress = self.store.story_progress(task_id)
            if progress.all_passed:
                return self._complete(started, result, f"All {progress.total} stories passed")

            story = self.store.next_pending_story(task_id)
            if story is None:
                return self._complete(started, result, "No pending stories left")

            result.attempts += 1
            try:
                self.execute_story(started, story, iteration)
                result.dispatched_story_ids.append(story.story_id)
            except DispatchError as error:
                logger.warning("Story %s dispatch failed: %s", story.story_id, error)
                event = self.store.add_event(
                    event_type="story_error",
                    message=str(error),
                    task_id=task_id,
                    agent_id=started.agent_id,
                    details={"story_id": story.story_id, "iteration": iteration},
                )
                self.broadcaster.publish_event(event)

            if iteration < self.max_iterations - 1:
                cancel.wait(self.pacing_seconds)

        if cancel.is_set():
            result.outcome = StoryRunOutcome.CANCELLED
            return result
        return self._exhaust(task_id, result)

    def execute_story(self, task: TaskView, story: StoryView, iteration: int) -> SpawnResult:
        grant = self.capabilities.issue(
            subject_kind=CapabilitySubject.STORY,
            subject_id=story.story_id,
            task_id=task.task_id,
        )
        briefing = self.briefings.for_story(
            task=task,
            story=story,
            iteration=iteration,
            max_iterations=self.max_iterations,
            token=grant.token,
        )
        try:
            spawned = self.gateway.spawn(
                SpawnRequest(
                    briefing=briefing,
                    agent_id=task.agent_id,
                    label=f"ralph-{task.task_id}-story-{story.story_id}-iter-{iteration}",
                    timeout_seconds=self.timeout_seconds,
                    cleanup=self.cleanup,
                    model=self.model,
                ),
            )
        except GatewayError as error:
            raise DispatchError(
                f"failed to spawn session: {error}",
                transient=error.transient,
            ) from error

        self.store.record_story_dispatch(story_id=story.story_id, session_key=spawned.session_key)
        self.store.touch_task(task_id=task.task_id)
        event = self.store.add_event(
            event_type="story_started",
            message=(
                f"Story '{story.title}' iteration {iteration} started "
                f"(session: {spawned.session_key})"
            ),
            task_id=task.task_id,
            agent_id=task.agent_id,
            details={
                "story_id": story.story_id,
                "iteration": iteration,
                "session_key": spawned.session_key,
            },
        )
        progress = self.store.story_progress(task.task_id)
        self.broadcaster.publish_task_status(task.task_id, task.status.value, progress.fraction)
        self.broadcaster.publish_story(self.store.require_story(story.story_id))
        self.broadcaster.publish_event(event)
        return spawned

    def _complete(self, task: TaskView, result: StoryRunResult, message: str) -> StoryRunResult:
        if self.store.complete_task(task_id=task.task_id, status_from=task.status, message=message):
            self.broadcaster.publish_task_status(task.task_id, TaskStatus.DONE.value, 1.0)
            logger.info("Task %s completed: %s", task.task_id, message)
            result.outcome = StoryRunOutcome.COMPLETED
        return result

    def _exhaust(self, task_id: str, result: StoryRunResult) -> StoryRunResult:
        task = self.store.require_task(task_id)
        if not task.is_active:
            return result
        progress = self.store.story_progress(task_id)
        if progress.all_passed:
            return self._complete(task, result, f"All {progress.total} stories passed")

        error = IterationBudgetExhaustedError(task_id, self.max_iterations)
        if not self.store.fail_task(
            task_id=task_id,
            status_from=task.status,
            error_summary=str(error),
            details={"attempts": result.attempts},
        ):
            return result
        self.broadcaster.publish_task_status(task_id, TaskStatus.FAILED.value, progress.fraction)
        logger.warning("Task %s failed: %s", task_id, error)
        raise error
