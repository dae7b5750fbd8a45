"""Watchdog: recover stalled active tasks and release due timers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from mission_control.scheduler.broadcaster import EventBroadcaster
from mission_control.scheduler.models import AgentStatus, TaskStatus, TaskView
from mission_control.scheduler.repository import WorkStore
from mission_control.scheduler.retry import RetryDecision, RetryPolicy
from mission_control.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_SECONDS = 1_800


@dataclass(slots=True)
class WatchdogTickSummary:
    """Task ids touched by each scan of one tick."""

    reset: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    scheduled_released: list[str] = field(default_factory=list)
    retries_released: list[str] = field(default_factory=list)

    @property
    def changes(self) -> int:
        return (
            len(self.reset)
            + len(self.failed)
            + len(self.scheduled_released)
            + len(self.retries_released)
        )


class Watchdog:
    """Three independent, idempotent scans over the work store.

    Every write is conditional on the state the scan observed, so a tick
    racing with a dispatcher or callback never overwrites a legitimate
    transition, and a second tick on unchanged state writes nothing.
    """

    def __init__(
        self,
        *,
        store: WorkStore,
        broadcaster: EventBroadcaster,
        retry_policy: RetryPolicy,
        stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS,
        on_released: Callable[[TaskView], object] | None = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.retry_policy = retry_policy
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.on_released = on_released

    def tick(self, now: datetime | None = None) -> WatchdogTickSummary:
        now = now or utc_now()
        summary = WatchdogTickSummary()
        self.scan_stale(now, summary)
        self.scan_scheduled(now, summary)
        self.scan_retries(now, summary)
        if summary.changes:
            logger.info(
                "Watchdog tick: %d reset, %d failed, %d scheduled released, %d retries released",
                len(summary.reset),
                len(summary.failed),
                len(summary.scheduled_released),
                len(summary.retries_released),
            )
        return summary

    def scan_stale(self, now: datetime, summary: WatchdogTickSummary) -> None:
        cutoff = now - self.stale_after
        for task in self.store.list_stale_tasks(cutoff=cutoff):
            idle_minutes = int((now - task.updated_at).total_seconds() // 60)
            error = (
                f"No progress for {idle_minutes}m in status {task.status.value}; "
                "session presumed abandoned"
            )
            outcome = self.retry_policy.reschedule_or_fail(
                self.store,
                task=task,
                error=error,
                now=now,
                stale_before=cutoff,
                reset_event="task_stuck_reset",
                fail_event="task_stuck_failed",
                clear_agent=True,
            )
            if outcome.decision == RetryDecision.RESCHEDULED:
                summary.reset.append(task.task_id)
                self.broadcaster.publish_task_status(task.task_id, TaskStatus.BACKLOG.value, 0.0)
            elif outcome.decision == RetryDecision.FAILED:
                summary.failed.append(task.task_id)
                self.broadcaster.publish_task_status(task.task_id, TaskStatus.FAILED.value, 0.0)
            if task.agent_id is not None and outcome.decision != RetryDecision.SKIPPED:
                self._agent_released(task.agent_id)

    def scan_scheduled(self, now: datetime, summary: WatchdogTickSummary) -> None:
        for task in self.store.list_scheduled_due(now=now):
            if not self.store.release_scheduled(task_id=task.task_id, now=now):
                continue
            logger.info("Scheduled task %s (%s) is due", task.task_id, task.title)
            summary.scheduled_released.append(task.task_id)
            self._released(task.task_id)

    def scan_retries(self, now: datetime, summary: WatchdogTickSummary) -> None:
        for task in self.store.list_retry_due(now=now):
            if not self.store.release_retry(task_id=task.task_id, now=now):
                continue
            logger.info("Retry for task %s (%s) is due", task.task_id, task.title)
            summary.retries_released.append(task.task_id)
            self._released(task.task_id)

    def _agent_released(self, agent_id: str) -> None:
        if self.store.count_active_tasks(agent_id=agent_id):
            return
        agent = self.store.get_agent(agent_id)
        if agent is None or agent.status == AgentStatus.ORPHANED:
            return
        self.store.set_agent_status(agent_id=agent_id, status=AgentStatus.IDLE)
        self.broadcaster.publish_agent_status(agent_id, AgentStatus.IDLE.value, None)

    def _released(self, task_id: str) -> None:
        if self.on_released is None:
            return
        task = self.store.get_task(task_id)
        if task is not None:
            self.on_released(task)
