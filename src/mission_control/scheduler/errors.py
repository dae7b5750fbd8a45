"""Exception hierarchy for the scheduling core."""

from __future__ import annotations


class SchedulerError(RuntimeError):
    """Base error for scheduling operations."""


class TaskNotFoundError(SchedulerError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class PhaseNotFoundError(SchedulerError):
    def __init__(self, phase_id: str) -> None:
        super().__init__(f"Phase not found: {phase_id}")
        self.phase_id = phase_id


class StoryNotFoundError(SchedulerError):
    def __init__(self, story_id: str) -> None:
        super().__init__(f"Story not found: {story_id}")
        self.story_id = story_id


class InvalidTransitionError(SchedulerError):
    """Requested status change is not an edge of the lifecycle graph."""

    def __init__(self, kind: str, status_from: str, status_to: str) -> None:
        super().__init__(f"Invalid {kind} transition: {status_from} -> {status_to}")
        self.status_from = status_from
        self.status_to = status_to


class DispatchError(SchedulerError):
    """Gateway refused or could not start a session."""

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class IterationBudgetExhaustedError(SchedulerError):
    def __init__(self, task_id: str, max_iterations: int) -> None:
        super().__init__(f"max iterations ({max_iterations}) reached for task {task_id}")
        self.task_id = task_id
        self.max_iterations = max_iterations


class CapabilityError(SchedulerError):
    """Callback presented a missing, foreign or already consumed token."""


class RunnerBusyError(SchedulerError):
    """Task runner refused to start another dispatch loop."""
