"""Bounded exponential retry policy for recoverable task failures."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from mission_control.scheduler.models import TaskView
from mission_control.scheduler.repository import WorkStore
from mission_control.storage.common import utc_now

logger = logging.getLogger(__name__)


class RetryDecision(str, Enum):
    RESCHEDULED = "rescheduled"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class RetryOutcome:
    decision: RetryDecision
    retry_number: int
    retry_at: datetime | None = None


class RetryPolicy:
    """``min(max_seconds, base_seconds * 2 ** (n - 1))`` up to ``max_retries``."""

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_seconds: float = 60.0,
        max_seconds: float = 1_800.0,
    ) -> None:
        self.max_retries = max_retries
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds

    def compute_delay(self, *, retry_number: int) -> float:
        return min(self.max_seconds, self.base_seconds * (2 ** max(retry_number - 1, 0)))

    def exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_retries

    def reschedule_or_fail(  # noqa: PLR0913
        self,
        store: WorkStore,
        *,
        task: TaskView,
        error: str,
        now: datetime | None = None,
        stale_before: datetime | None = None,
        reset_event: str = "task_retry_scheduled",
        fail_event: str = "task_failed",
        clear_agent: bool = False,
    ) -> RetryOutcome:
        """Reset an active task to backlog with a backoff, or fail it at the ceiling.

        ``SKIPPED`` means the task changed concurrently and nothing was written.
        """

        now = now or utc_now()
        retry_number = task.retry_count + 1
        if not task.is_active:
            return RetryOutcome(decision=RetryDecision.SKIPPED, retry_number=task.retry_count)

        if self.exhausted(task.retry_count):
            summary = f"{error} (retry limit {self.max_retries} reached)"
            changed = store.fail_task(
                task_id=task.task_id,
                status_from=task.status,
                error_summary=summary,
                event_type=fail_event,
                stale_before=stale_before,
                details={"retry_count": task.retry_count},
            )
            if not changed:
                return RetryOutcome(decision=RetryDecision.SKIPPED, retry_number=task.retry_count)
            logger.warning(
                "Task %s failed after %d retries: %s",
                task.task_id,
                task.retry_count,
                error,
            )
            return RetryOutcome(decision=RetryDecision.FAILED, retry_number=task.retry_count)

        retry_at = now + timedelta(seconds=self.compute_delay(retry_number=retry_number))
        changed = store.reschedule_task(
            task_id=task.task_id,
            status_from=task.status,
            retry_at=retry_at,
            error_summary=error,
            event_type=reset_event,
            stale_before=stale_before,
            clear_agent=clear_agent,
        )
        if not changed:
            return RetryOutcome(decision=RetryDecision.SKIPPED, retry_number=task.retry_count)
        logger.info(
            "Task %s reset to backlog (retry %d/%d at %s): %s",
            task.task_id,
            retry_number,
            self.max_retries,
            retry_at.isoformat(),
            error,
        )
        return RetryOutcome(
            decision=RetryDecision.RESCHEDULED,
            retry_number=retry_number,
            retry_at=retry_at,
        )
