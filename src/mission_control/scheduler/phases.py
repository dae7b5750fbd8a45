"""Phase dispatcher: walk a task's ordered phases one dispatch at a time."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from mission_control.scheduler.briefing import BriefingBuilder
from mission_control.scheduler.broadcaster import EventBroadcaster
from mission_control.scheduler.errors import DispatchError
from mission_control.scheduler.gateway import (
    ExecutionGateway,
    GatewayError,
    SpawnRequest,
    SpawnResult,
)
from mission_control.scheduler.lifecycle import DISPATCHABLE_TASK_STATUSES
from mission_control.scheduler.models import (
    CapabilitySubject,
    PhaseStatus,
    PhaseView,
    TaskStatus,
    TaskView,
)
from mission_control.scheduler.repository import WorkStore
from mission_control.scheduler.retry import RetryDecision, RetryPolicy
from mission_control.scheduler.tokens import CapabilityIssuer

logger = logging.getLogger(__name__)

PHASE_TIMEOUT_SECONDS = 1_800


class PhaseRunOutcome(str, Enum):
    DISPATCHED = "dispatched"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(slots=True)
class PhaseRunResult:
    task_id: str
    outcome: PhaseRunOutcome
    phase_id: str | None = None
    session_key: str | None = None
    error: str | None = None


class PhaseDispatcher:
    """Dispatch the first unfinished phase of a task and return immediately.

    Completion arrives later through the phase callbacks, which call
    ``run_task`` again to advance to the next phase.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: WorkStore,
        gateway: ExecutionGateway,
        broadcaster: EventBroadcaster,
        briefings: BriefingBuilder,
        capabilities: CapabilityIssuer,
        retry_policy: RetryPolicy,
        timeout_seconds: int = PHASE_TIMEOUT_SECONDS,
        cleanup: str = "delete",
        model: str | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.broadcaster = broadcaster
        self.briefings = briefings
        self.capabilities = capabilities
        self.retry_policy = retry_policy
        self.timeout_seconds = timeout_seconds
        self.cleanup = cleanup
        self.model = model

    def run_task(self, task_id: str, cancel: threading.Event | None = None) -> PhaseRunResult:
        task = self.store.require_task(task_id)
        if task.status not in DISPATCHABLE_TASK_STATUSES:
            return PhaseRunResult(task_id=task_id, outcome=PhaseRunOutcome.SKIPPED)
        if cancel is not None and cancel.is_set():
            return PhaseRunResult(task_id=task_id, outcome=PhaseRunOutcome.CANCELLED)

        try:
            return self._advance(task, cancel)
        except DispatchError as error:
            return self._handle_dispatch_error(task_id, error)
        except SQLAlchemyError as error:
            logger.exception("Phase dispatch for task %s failed on the work store", task_id)
            try:
                self.store.add_event(
                    event_type="phase_error",
                    message=f"Phase dispatch aborted: {error}",
                    task_id=task_id,
                )
            except SQLAlchemyError:
                logger.exception("Cannot record phase_error event for task %s", task_id)
            return PhaseRunResult(
                task_id=task_id,
                outcome=PhaseRunOutcome.ERROR,
                error=str(error),
            )

    def run_phase(
        self,
        task: TaskView,
        phase: PhaseView,
        *,
        total_phases: int,
    ) -> SpawnResult | None:
        """Start a session for one phase; ``None`` if another caller took it."""

        if not self.store.transition_phase(
            phase_id=phase.phase_id,
            status_from=phase.status,
            status_to=PhaseStatus.EXECUTING,
        ):
            return None

        grant = self.capabilities.issue(
            subject_kind=CapabilitySubject.PHASE,
            subject_id=phase.phase_id,
            task_id=task.task_id,
        )
        briefing = self.briefings.for_phase(
            task=task,
            phase=phase,
            total_phases=total_phases,
            token=grant.token,
        )
        label = f"gsd-phase-{phase.phase_id}"
        try:
            spawned = self.gateway.spawn(
                SpawnRequest(
                    briefing=briefing,
                    agent_id=task.agent_id,
                    label=label,
                    timeout_seconds=self.timeout_seconds,
                    cleanup=self.cleanup,
                    model=self.model,
                ),
            )
        except GatewayError as error:
            self.store.transition_phase(
                phase_id=phase.phase_id,
                status_from=PhaseStatus.EXECUTING,
                status_to=PhaseStatus.FAILED,
            )
            event = self.store.add_event(
                event_type="phase_error",
                message=f"Phase {phase.sequence} failed to start: {error}",
                task_id=task.task_id,
                agent_id=task.agent_id,
                details={"phase_id": phase.phase_id, "transient": error.transient},
            )
            self.broadcaster.publish_phase(self.store.require_phase(phase.phase_id))
            self.broadcaster.publish_event(event)
            raise DispatchError(
                f"failed to spawn session: {error}",
                transient=error.transient,
            ) from error

        self.store.record_phase_session(phase_id=phase.phase_id, session_key=spawned.session_key)
        self.store.touch_task(task_id=task.task_id)
        event = self.store.add_event(
            event_type="phase_started",
            message=(
                f"Phase {phase.sequence} started: {phase.title} "
                f"(session: {spawned.session_key})"
            ),
            task_id=task.task_id,
            agent_id=task.agent_id,
            details={"phase_id": phase.phase_id, "session_key": spawned.session_key},
        )
        self.broadcaster.publish_task_status(
            task.task_id,
            task.status.value,
            phase.sequence / total_phases if total_phases else 0.0,
        )
        self.broadcaster.publish_phase(self.store.require_phase(phase.phase_id))
        self.broadcaster.publish_event(event)
        logger.info("Dispatched phase %s of task %s", phase.sequence, task.task_id)
        return spawned

    def _advance(self, task: TaskView, cancel: threading.Event | None = None) -> PhaseRunResult:
        phases = self.store.list_phases(task.task_id)
        next_phase = next((phase for phase in phases if phase.status != PhaseStatus.DONE), None)
        if next_phase is not None and next_phase.status == PhaseStatus.EXECUTING:
            if task.is_active:
                return PhaseRunResult(
                    task_id=task.task_id,
                    outcome=PhaseRunOutcome.IN_FLIGHT,
                    phase_id=next_phase.phase_id,
                    session_key=next_phase.session_key,
                )
            # task was recovered to backlog; its session is gone
            if not self.store.transition_phase(
                phase_id=next_phase.phase_id,
                status_from=PhaseStatus.EXECUTING,
                status_to=PhaseStatus.PENDING,
            ):
                return PhaseRunResult(task_id=task.task_id, outcome=PhaseRunOutcome.SKIPPED)
            next_phase = self.store.require_phase(next_phase.phase_id)

        started = self.store.begin_execution(task.task_id)
        if started is None:
            return PhaseRunResult(task_id=task.task_id, outcome=PhaseRunOutcome.SKIPPED)

        if next_phase is None:
            return self._complete(started, total_phases=len(phases))
        if cancel is not None and cancel.is_set():
            return PhaseRunResult(task_id=task.task_id, outcome=PhaseRunOutcome.CANCELLED)

        spawned = self.run_phase(started, next_phase, total_phases=len(phases))
        if spawned is None:
            return PhaseRunResult(
                task_id=task.task_id,
                outcome=PhaseRunOutcome.IN_FLIGHT,
                phase_id=next_phase.phase_id,
            )
        return PhaseRunResult(
            task_id=task.task_id,
            outcome=PhaseRunOutcome.DISPATCHED,
            phase_id=next_phase.phase_id,
            session_key=spawned.session_key,
        )

    def _complete(self, task: TaskView, *, total_phases: int) -> PhaseRunResult:
        if not self.store.complete_task(
            task_id=task.task_id,
            status_from=task.status,
            message=f"All {total_phases} phases done",
        ):
            return PhaseRunResult(task_id=task.task_id, outcome=PhaseRunOutcome.SKIPPED)
        self.broadcaster.publish_task_status(task.task_id, TaskStatus.DONE.value, 1.0)
        logger.info("Task %s completed (%d phases)", task.task_id, total_phases)
        return PhaseRunResult(task_id=task.task_id, outcome=PhaseRunOutcome.COMPLETED)

    def _handle_dispatch_error(self, task_id: str, error: DispatchError) -> PhaseRunResult:
        task = self.store.require_task(task_id)
        retry = self.retry_policy.reschedule_or_fail(self.store, task=task, error=str(error))
        refreshed = self.store.require_task(task_id)
        self.broadcaster.publish_task_status(task_id, refreshed.status.value, 0.0)
        outcome = {
            RetryDecision.RESCHEDULED: PhaseRunOutcome.RETRY_SCHEDULED,
            RetryDecision.FAILED: PhaseRunOutcome.FAILED,
            RetryDecision.SKIPPED: PhaseRunOutcome.SKIPPED,
        }[retry.decision]
        return PhaseRunResult(task_id=task_id, outcome=outcome, error=str(error))
