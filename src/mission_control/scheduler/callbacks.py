"""Effects of the progress/complete/fail callbacks made by spawned sessions."""

from __future__ import annotations

import logging
from typing import Any

from mission_control.scheduler.broadcaster import EventBroadcaster
from mission_control.scheduler.errors import InvalidTransitionError
from mission_control.scheduler.models import (
    CapabilitySubject,
    EventView,
    PhaseStatus,
    StoryView,
    TaskView,
)
from mission_control.scheduler.phases import PhaseDispatcher, PhaseRunResult
from mission_control.scheduler.repository import WorkStore
from mission_control.scheduler.retry import RetryPolicy
from mission_control.scheduler.tokens import CapabilityIssuer

logger = logging.getLogger(__name__)


class CallbackService:
    """Apply session callbacks to the work store.

    Progress calls only verify the capability token; terminal calls verify it,
    apply their conditional write, then consume it. A reported failure is
    authoritative.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: WorkStore,
        broadcaster: EventBroadcaster,
        capabilities: CapabilityIssuer,
        retry_policy: RetryPolicy,
        phase_dispatcher: PhaseDispatcher | None = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.capabilities = capabilities
        self.retry_policy = retry_policy
        self.phase_dispatcher = phase_dispatcher

    def phase_progress(
        self,
        phase_id: str,
        *,
        progress: float,
        message: str | None,
        token: str | None,
    ) -> EventView:
        phase = self.store.require_phase(phase_id)
        self.capabilities.verify(token, subject_kind=CapabilitySubject.PHASE, subject_id=phase_id)
        fraction = min(max(progress, 0.0), 1.0)
        self.store.touch_task(task_id=phase.task_id)
        event = self.store.add_event(
            event_type="phase_progress",
            message=message or f"Phase {phase.sequence} at {fraction:.0%}",
            task_id=phase.task_id,
            details={"phase_id": phase_id, "progress": fraction},
        )
        task = self.store.require_task(phase.task_id)
        total = len(self.store.list_phases(phase.task_id)) or 1
        self.broadcaster.publish_task_status(
            task.task_id,
            task.status.value,
            (phase.sequence - 1 + fraction) / total,
        )
        self.broadcaster.publish_event(event)
        return event

    def complete_phase(
        self,
        phase_id: str,
        *,
        summary: str,
        artifacts: dict[str, Any] | None = None,
        token: str | None,
    ) -> PhaseRunResult | None:
        """Mark the phase done and let the dispatcher advance the task."""

        phase = self.store.require_phase(phase_id)
        self.capabilities.verify(token, subject_kind=CapabilitySubject.PHASE, subject_id=phase_id)
        if not self.store.transition_phase(
            phase_id=phase_id,
            status_from=PhaseStatus.EXECUTING,
            status_to=PhaseStatus.DONE,
            summary=summary,
            artifacts=artifacts or {},
        ):
            raise InvalidTransitionError("phase", phase.status.value, PhaseStatus.DONE.value)
        self.capabilities.consume(token, subject_kind=CapabilitySubject.PHASE, subject_id=phase_id)

        self.store.touch_task(task_id=phase.task_id)
        event = self.store.add_event(
            event_type="phase_completed",
            message=f"Phase {phase.sequence} completed: {summary}",
            task_id=phase.task_id,
            details={"phase_id": phase_id, "artifacts": artifacts or {}},
        )
        self.broadcaster.publish_phase(self.store.require_phase(phase_id))
        self.broadcaster.publish_event(event)

        if self.phase_dispatcher is None:
            return None
        return self.phase_dispatcher.run_task(phase.task_id)

    def fail_phase(
        self,
        phase_id: str,
        *,
        error: str,
        recoverable: bool,
        token: str | None,
        suggestion: str | None = None,
    ) -> TaskView:
        phase = self.store.require_phase(phase_id)
        self.capabilities.verify(token, subject_kind=CapabilitySubject.PHASE, subject_id=phase_id)
        target = PhaseStatus.PENDING if recoverable else PhaseStatus.FAILED
        if not self.store.transition_phase(
            phase_id=phase_id,
            status_from=PhaseStatus.EXECUTING,
            status_to=target,
        ):
            raise InvalidTransitionError("phase", phase.status.value, target.value)
        self.capabilities.consume(token, subject_kind=CapabilitySubject.PHASE, subject_id=phase_id)

        event = self.store.add_event(
            event_type="phase_failed",
            message=f"Phase {phase.sequence} failed: {error}",
            task_id=phase.task_id,
            details={
                "phase_id": phase_id,
                "recoverable": recoverable,
                "suggestion": suggestion,
            },
        )
        task = self.store.require_task(phase.task_id)
        if recoverable:
            self.retry_policy.reschedule_or_fail(self.store, task=task, error=error)
        elif task.is_active:
            self.store.fail_task(
                task_id=task.task_id,
                status_from=task.status,
                error_summary=error,
                details={"phase_id": phase_id},
            )
        updated = self.store.require_task(phase.task_id)
        logger.info(
            "Phase %s of task %s failed (recoverable=%s); task now %s",
            phase.sequence,
            phase.task_id,
            recoverable,
            updated.status.value,
        )
        self.broadcaster.publish_phase(self.store.require_phase(phase_id))
        self.broadcaster.publish_task_status(updated.task_id, updated.status.value, 0.0)
        self.broadcaster.publish_event(event)
        return updated

    def pass_story(
        self,
        story_id: str,
        *,
        token: str | None,
        commit_sha: str | None = None,
        learnings: str | None = None,
    ) -> StoryView:
        story = self.store.require_story(story_id)
        self.capabilities.verify(token, subject_kind=CapabilitySubject.STORY, subject_id=story_id)
        if not self.store.mark_story_passed(story_id=story_id, commit_sha=commit_sha):
            raise InvalidTransitionError("story", "passed", "passed")
        self.capabilities.consume(token, subject_kind=CapabilitySubject.STORY, subject_id=story_id)

        if learnings:
            self.store.append_progress_text(task_id=story.task_id, content=learnings)
        self.store.touch_task(task_id=story.task_id)
        event = self.store.add_event(
            event_type="story_passed",
            message=f"Story '{story.title}' passed",
            task_id=story.task_id,
            details={"story_id": story_id, "commit_sha": commit_sha},
        )
        updated = self.store.require_story(story_id)
        task = self.store.require_task(story.task_id)
        progress = self.store.story_progress(story.task_id)
        self.broadcaster.publish_story(updated)
        self.broadcaster.publish_task_status(task.task_id, task.status.value, progress.fraction)
        self.broadcaster.publish_event(event)
        return updated

    def fail_story(
        self,
        story_id: str,
        *,
        error: str,
        token: str | None,
        iteration: int | None = None,
        recoverable: bool = True,
    ) -> StoryView:
        story = self.store.require_story(story_id)
        self.capabilities.verify(token, subject_kind=CapabilitySubject.STORY, subject_id=story_id)
        self.store.record_story_failure(story_id=story_id, error=error)
        self.capabilities.consume(token, subject_kind=CapabilitySubject.STORY, subject_id=story_id)

        event = self.store.add_event(
            event_type="story_failed",
            message=f"Story '{story.title}' failed: {error}",
            task_id=story.task_id,
            details={"story_id": story_id, "iteration": iteration, "recoverable": recoverable},
        )
        if not recoverable:
            task = self.store.require_task(story.task_id)
            if task.is_active:
                self.store.fail_task(
                    task_id=task.task_id,
                    status_from=task.status,
                    error_summary=error,
                    details={"story_id": story_id},
                )
                self.broadcaster.publish_task_status(task.task_id, "failed", 0.0)
        updated = self.store.require_story(story_id)
        self.broadcaster.publish_story(updated)
        self.broadcaster.publish_event(event)
        return updated

    def append_progress_text(self, task_id: str, content: str) -> TaskView:
        """Record learnings reported outside a pass/fail call."""

        self.store.append_progress_text(task_id=task_id, content=content)
        self.store.touch_task(task_id=task_id)
        return self.store.require_task(task_id)
