"""Retry and escalation policy for failed task executions."""

import logging
from datetime import timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from agentfleet.app.config import settings
from agentfleet.app.models import TaskStatus, utcnow
from agentfleet.orchestrator.store import TaskGraphStore, TaskNotFoundError
from agentfleet.orchestrator.subtasks import SubtaskService

logger = logging.getLogger(__name__)


class FailureAction(str, Enum):
    """What happened to a failed task."""
    REQUEUED = "requeued"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class FailureOutcome(BaseModel):
    """Result of handling one failure."""
    task_id: str
    action: FailureAction
    retry_count: int
    reason: str


class RetryPolicy:
    """
    Decides between requeue and BLOCKED for a failed task.

    Retryable failures requeue the task with retry_count + 1 and a backoff,
    until the task fails again at retry_count == max_retries. Non-retryable
    failures block immediately without touching retry_count.
    """

    def __init__(
        self,
        store: TaskGraphStore,
        subtasks: SubtaskService,
        max_retries: Optional[int] = None,
        backoff_minutes: Optional[list[int]] = None,
    ):
        self.store = store
        self.subtasks = subtasks
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.backoff_minutes = (
            list(settings.retry_backoff_minutes) if backoff_minutes is None else backoff_minutes
        )

    def backoff_for(self, retry_count: int) -> timedelta:
        """Backoff before the next attempt, given the count before incrementing."""
        if not self.backoff_minutes:
            return timedelta(0)
        index = min(retry_count, len(self.backoff_minutes) - 1)
        return timedelta(minutes=self.backoff_minutes[index])

    async def handle_failure(self, task_id: str, reason: str, retryable: bool = True) -> FailureOutcome:
        """
        Move an IN_PROGRESS task through FAILED to READY or BLOCKED.

        Args:
            task_id: Failed task
            reason: Error or gate failure reason
            retryable: False for failures a retry cannot fix

        Returns:
            FailureOutcome describing the transition
        """
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")

        if not await self.store.transition_task(
            task_id, [TaskStatus.IN_PROGRESS], TaskStatus.FAILED, error_message=reason
        ):
            logger.info(f"Task {task_id} is no longer in progress; failure not applied")
            return FailureOutcome(
                task_id=task_id,
                action=FailureAction.SKIPPED,
                retry_count=task.retry_count,
                reason=reason,
            )

        if not retryable or task.retry_count >= self.max_retries:
            await self.store.transition_task(task_id, [TaskStatus.FAILED], TaskStatus.BLOCKED)
            await self.store.release_worker(task.assigned_worker_id, failed=True)
            cause = "non-retryable failure" if not retryable else f"{task.retry_count} retries exhausted"
            logger.error(
                f"Task {task_id} blocked ({cause}): {reason}. Manual intervention required."
            )
            await self.subtasks.update_parent_status(task.parent_task_id)
            return FailureOutcome(
                task_id=task_id,
                action=FailureAction.BLOCKED,
                retry_count=task.retry_count,
                reason=reason,
            )

        retry_count = task.retry_count + 1
        await self.store.transition_task(
            task_id,
            [TaskStatus.FAILED],
            TaskStatus.READY,
            retry_count=retry_count,
            blocked_until=utcnow() + self.backoff_for(task.retry_count),
        )
        await self.store.release_worker(task.assigned_worker_id)
        logger.warning(
            f"Task {task_id} failed (attempt {retry_count}/{self.max_retries}), requeued: {reason}"
        )
        return FailureOutcome(
            task_id=task_id,
            action=FailureAction.REQUEUED,
            retry_count=retry_count,
            reason=reason,
        )

    async def unblock(self, task_id: str) -> bool:
        """
        Operator action: return a BLOCKED task to READY with fresh retry and
        review budgets.

        Returns:
            True if the task was BLOCKED and has been released
        """
        released = await self.store.transition_task(
            task_id,
            [TaskStatus.BLOCKED],
            TaskStatus.READY,
            retry_count=0,
            review_count=0,
            blocked_until=None,
            error_message=None,
        )
        if released:
            logger.info(f"Task {task_id} unblocked by operator")
        return released
