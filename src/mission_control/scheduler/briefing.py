"""Typed work descriptions handed to the execution gateway.

Briefings carry identifiers, callback endpoints and budgets only; they are
turned into prompt text at the gateway boundary.
"""

from __future__ import annotations

from dataclasses import dataclass

from mission_control.scheduler.models import PhaseView, StoryView, TaskView


@dataclass(slots=True, frozen=True)
class PhaseCallbacks:
    progress_url: str
    complete_url: str
    fail_url: str


@dataclass(slots=True, frozen=True)
class StoryCallbacks:
    pass_url: str
    fail_url: str
    progress_text_url: str


@dataclass(slots=True, frozen=True)
class PhaseBriefing:
    """Self-contained description of one phase dispatch."""

    api_base_url: str
    token: str
    task_id: str
    task_title: str
    task_description: str | None
    work_dir: str | None
    phase_id: str
    phase_sequence: int
    total_phases: int
    phase_title: str
    phase_description: str | None
    callbacks: PhaseCallbacks


@dataclass(slots=True, frozen=True)
class StoryBriefing:
    """Self-contained description of one story iteration."""

    api_base_url: str
    token: str
    task_id: str
    task_title: str
    work_dir: str | None
    story_id: str
    story_title: str
    story_description: str | None
    story_priority: int
    acceptance_criteria: tuple[str, ...]
    iteration: int
    max_iterations: int
    callbacks: StoryCallbacks
    learnings: str | None = None

    @property
    def remaining_iterations(self) -> int:
        return max(0, self.max_iterations - self.iteration - 1)


Briefing = PhaseBriefing | StoryBriefing


class BriefingBuilder:
    """Build briefings with callback URLs rooted at the API base URL."""

    def __init__(self, api_base_url: str) -> None:
        self.api_base_url = api_base_url.rstrip("/")

    def phase_callbacks(self, phase_id: str) -> PhaseCallbacks:
        base = f"{self.api_base_url}/api/v1/phases/{phase_id}"
        return PhaseCallbacks(
            progress_url=f"{base}/progress",
            complete_url=f"{base}/complete",
            fail_url=f"{base}/fail",
        )

    def story_callbacks(self, *, task_id: str, story_id: str) -> StoryCallbacks:
        base = f"{self.api_base_url}/api/v1"
        return StoryCallbacks(
            pass_url=f"{base}/stories/{story_id}/pass",
            fail_url=f"{base}/stories/{story_id}/fail",
            progress_text_url=f"{base}/tasks/{task_id}/progress-txt",
        )

    def for_phase(
        self,
        *,
        task: TaskView,
        phase: PhaseView,
        total_phases: int,
        token: str,
    ) -> PhaseBriefing:
        return PhaseBriefing(
            api_base_url=self.api_base_url,
            token=token,
            task_id=task.task_id,
            task_title=task.title,
            task_description=task.description,
            work_dir=task.work_dir,
            phase_id=phase.phase_id,
            phase_sequence=phase.sequence,
            total_phases=total_phases,
            phase_title=phase.title,
            phase_description=phase.description,
            callbacks=self.phase_callbacks(phase.phase_id),
        )

    def for_story(  # noqa: PLR0913
        self,
        *,
        task: TaskView,
        story: StoryView,
        iteration: int,
        max_iterations: int,
        token: str,
    ) -> StoryBriefing:
        return StoryBriefing(
            api_base_url=self.api_base_url,
            token=token,
            task_id=task.task_id,
            task_title=task.title,
            work_dir=task.work_dir,
            story_id=story.story_id,
            story_title=story.title,
            story_description=story.description,
            story_priority=story.priority,
            acceptance_criteria=tuple(story.acceptance_criteria),
            iteration=iteration,
            max_iterations=max_iterations,
            callbacks=self.story_callbacks(task_id=task.task_id, story_id=story.story_id),
            learnings=task.progress_text,
        )
