"""Wire the store, gateway and control loops into one running scheduler."""

from __future__ import annotations

import logging

from mission_control.config import Settings
from mission_control.scheduler.admission import AdmissionController
from mission_control.scheduler.briefing import BriefingBuilder
from mission_control.scheduler.broadcaster import EventBroadcaster
from mission_control.scheduler.callbacks import CallbackService
from mission_control.scheduler.errors import RunnerBusyError
from mission_control.scheduler.gateway import ExecutionGateway, GatewayClient, load_gateway_token
from mission_control.scheduler.models import (
    AgentStatus,
    DelegationMode,
    DequeueOutcome,
    DequeueResult,
    SubmitOutcome,
    TaskView,
)
from mission_control.scheduler.periodic import PeriodicRunner
from mission_control.scheduler.phases import PhaseDispatcher
from mission_control.scheduler.repository import WorkStore
from mission_control.scheduler.retry import RetryPolicy
from mission_control.scheduler.runner import TaskRunner
from mission_control.scheduler.stories import StoryDispatcher
from mission_control.scheduler.tokens import CapabilityIssuer
from mission_control.scheduler.watchdog import Watchdog

logger = logging.getLogger(__name__)


def build_gateway(settings: Settings) -> GatewayClient:
    gateway = settings.gateway
    token = gateway.token or load_gateway_token(gateway.config_path)
    if token is None:
        logger.warning("No gateway token configured; spawn requests are sent unauthenticated")
    return GatewayClient(
        gateway_url=gateway.url,
        token=token,
        timeout_seconds=gateway.request_timeout_seconds,
        retries=gateway.transport_retries,
    )


class SchedulerService:
    """Own every scheduler component and the periodic loops that drive them.

    Tasks released by the watchdog and tasks promoted from an agent queue are
    handed to the runner when their agent is free and queued otherwise.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: WorkStore | None = None,
        gateway: ExecutionGateway | None = None,
    ) -> None:
        self.settings = settings
        self._owns_store = store is None
        self.store = store or WorkStore(settings.db_path, busy_timeout_ms=settings.busy_timeout_ms)
        self._owned_gateway = build_gateway(settings) if gateway is None else None
        self.gateway: ExecutionGateway = gateway or self._owned_gateway

        self.broadcaster = EventBroadcaster(
            inbox_size=settings.broadcast.inbox_size,
            subscriber_buffer=settings.broadcast.subscriber_buffer,
            publish_timeout_seconds=settings.broadcast.publish_timeout_seconds,
        )
        self.capabilities = CapabilityIssuer(self.store)
        self.briefings = BriefingBuilder(settings.dispatch.api_base_url)
        self.retry_policy = RetryPolicy(
            max_retries=settings.watchdog.max_retries,
            base_seconds=settings.watchdog.backoff_base_seconds,
            max_seconds=settings.watchdog.backoff_max_seconds,
        )
        dispatch = settings.dispatch
        self.phase_dispatcher = PhaseDispatcher(
            store=self.store,
            gateway=self.gateway,
            broadcaster=self.broadcaster,
            briefings=self.briefings,
            capabilities=self.capabilities,
            retry_policy=self.retry_policy,
            timeout_seconds=dispatch.phase_timeout_seconds,
            cleanup=dispatch.cleanup,
            model=settings.gateway.model,
        )
        self.story_dispatcher = StoryDispatcher(
            store=self.store,
            gateway=self.gateway,
            broadcaster=self.broadcaster,
            briefings=self.briefings,
            capabilities=self.capabilities,
            max_iterations=dispatch.max_story_iterations,
            pacing_seconds=dispatch.story_pacing_seconds,
            timeout_seconds=dispatch.story_timeout_seconds,
            cleanup=dispatch.cleanup,
            model=settings.gateway.model,
        )
        self.callbacks = CallbackService(
            store=self.store,
            broadcaster=self.broadcaster,
            capabilities=self.capabilities,
            retry_policy=self.retry_policy,
            phase_dispatcher=self.phase_dispatcher,
        )
        self.admission = AdmissionController(store=self.store, broadcaster=self.broadcaster)
        self.runner = TaskRunner(
            store=self.store,
            broadcaster=self.broadcaster,
            phase_dispatcher=self.phase_dispatcher,
            story_dispatcher=self.story_dispatcher,
            max_parallel=dispatch.max_parallel,
            on_finished=self._on_finished,
        )
        self.watchdog = Watchdog(
            store=self.store,
            broadcaster=self.broadcaster,
            retry_policy=self.retry_policy,
            stale_after_seconds=settings.watchdog.stale_after_seconds,
            on_released=self.resume_released,
        )
        self._loops = [
            PeriodicRunner(
                "watchdog",
                settings.watchdog.interval_seconds,
                self.watchdog.tick,
                run_immediately=True,
            ),
            PeriodicRunner(
                "queue-sweep",
                settings.watchdog.queue_interval_seconds,
                self.sweep_queue,
            ),
        ]

    def start(self) -> None:
        self.broadcaster.start()
        if not self.settings.watchdog.enabled:
            logger.info("Watchdog disabled; timers and stale work are not scanned")
            return
        for loop in self._loops:
            loop.start()
        logger.info(
            "Scheduler started (watchdog every %.0fs, queue sweep every %.0fs)",
            self.settings.watchdog.interval_seconds,
            self.settings.watchdog.queue_interval_seconds,
        )

    def stop(self, timeout: float = 5.0) -> None:
        for loop in self._loops:
            loop.stop(timeout=timeout)
        self.runner.shutdown(timeout=timeout)
        self.broadcaster.stop(timeout=timeout)
        logger.info("Scheduler stopped")

    def close(self) -> None:
        self.stop()
        if self._owned_gateway is not None:
            self._owned_gateway.close()
        if self._owns_store:
            self.store.close()

    def handoff(self, task: TaskView) -> bool:
        """Start a ready task now, or queue it behind its agent's current work."""

        if task.agent_id is None or task.delegation_mode == DelegationMode.MANUAL:
            return False
        if self.admission.submit(task.task_id) != SubmitOutcome.READY:
            return False
        return self._start(task.task_id)

    def resume_released(self, task: TaskView) -> bool:
        """Hand a watchdog-released task back to the agent that last ran it.

        Stale recovery clears the assignment; the previous owner is taken from
        the event stream unless it has since been orphaned or removed.
        """

        if task.agent_id is None:
            agent_id = self.store.last_agent_for_task(task.task_id)
            agent = self.store.get_agent(agent_id) if agent_id is not None else None
            if agent is None or agent.status == AgentStatus.ORPHANED:
                logger.warning("Released task %s has no agent to return to", task.task_id)
                return False
            if not self.store.assign_task(task_id=task.task_id, agent_id=agent.agent_id):
                return False
            task = self.store.require_task(task.task_id)
        return self.handoff(task)

    def sweep_queue(self) -> list[DequeueResult]:
        results = self.admission.sweep()
        for result in results:
            if result.outcome == DequeueOutcome.DEQUEUED and result.task is not None:
                self._start(result.task.task_id)
        return results

    def _on_finished(self, task_id: str, agent_id: str | None) -> None:
        if agent_id is None:
            return
        result = self.admission.dequeue_next(agent_id)
        if result.outcome == DequeueOutcome.DEQUEUED and result.task is not None:
            logger.info("Agent %s free after task %s", agent_id, task_id)
            self._start(result.task.task_id)

    def _start(self, task_id: str) -> bool:
        try:
            self.runner.start_task(task_id)
        except RunnerBusyError as error:
            logger.info("Task %s left for a later pass: %s", task_id, error)
            return False
        return True
