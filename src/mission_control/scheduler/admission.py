"""Per-agent admission control for queued tasks."""

from __future__ import annotations

import logging

from mission_control.scheduler.broadcaster import EventBroadcaster
from mission_control.scheduler.models import (
    AgentStatus,
    DequeueOutcome,
    DequeueResult,
    SubmitOutcome,
    TaskStatus,
)
from mission_control.scheduler.repository import WorkStore

logger = logging.getLogger(__name__)


class AdmissionController:
    """Gate promotion of queued work by each agent's active task count.

    ``BUSY`` and ``EMPTY`` are ordinary outcomes; store failures propagate.
    """

    def __init__(self, *, store: WorkStore, broadcaster: EventBroadcaster) -> None:
        self.store = store
        self.broadcaster = broadcaster

    def dequeue_next(self, agent_id: str) -> DequeueResult:
        result = self.store.dequeue_next(agent_id=agent_id)
        if result.outcome == DequeueOutcome.DEQUEUED and result.task is not None:
            logger.info(
                "Dequeued task %s for agent %s (%d still queued)",
                result.task.task_id,
                agent_id,
                result.remaining,
            )
            self.broadcaster.publish_task_status(
                result.task.task_id,
                TaskStatus.BACKLOG.value,
                0.0,
            )
        else:
            logger.debug("Dequeue for agent %s: %s", agent_id, result.outcome.value)
        return result

    def submit(self, task_id: str) -> SubmitOutcome:
        """Leave a ready task for dispatch if its agent is free, else queue it."""

        task = self.store.require_task(task_id)
        if task.status != TaskStatus.BACKLOG or task.agent_id is None:
            return SubmitOutcome.SKIPPED
        if self.store.count_active_tasks(agent_id=task.agent_id) == 0:
            return SubmitOutcome.READY
        if not self.store.park_task(task_id=task_id):
            return SubmitOutcome.SKIPPED
        logger.info("Agent %s busy; task %s queued", task.agent_id, task_id)
        self.broadcaster.publish_task_status(task_id, TaskStatus.QUEUED.value, 0.0)
        return SubmitOutcome.QUEUED

    def sweep(self) -> list[DequeueResult]:
        """Dequeue once for every non-orphaned agent that has queued work."""

        results: list[DequeueResult] = []
        for agent_id in self.store.list_agents_with_queued_tasks():
            agent = self.store.get_agent(agent_id)
            if agent is not None and agent.status == AgentStatus.ORPHANED:
                continue
            result = self.dequeue_next(agent_id)
            if result.outcome != DequeueOutcome.EMPTY:
                results.append(result)
        return results
