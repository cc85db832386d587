"""Task executor: one pull-execute-validate cycle for a worker."""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from agentfleet.app.models import TaskModel, TaskStatus
from agentfleet.llm.prompt_templates import EXECUTION_SYSTEM_PROMPT, get_task_execution_prompt
from agentfleet.llm.provider import GenerationProvider
from agentfleet.orchestrator.escalation import FailureOutcome, RetryPolicy
from agentfleet.orchestrator.review_cycle import ReviewCycleController
from agentfleet.orchestrator.store import TaskGraphStore, TaskNotFoundError
from agentfleet.orchestrator.task_pool import TaskPool
from agentfleet.quality.gate import QualityGate, QualityGateResult

logger = logging.getLogger(__name__)


class CycleOutcome(str, Enum):
    """How a worker cycle ended."""
    IDLE = "idle"
    SUBMITTED = "submitted"
    FAILED = "failed"
    SKIPPED = "skipped"


class CycleResult(BaseModel):
    """Result of one worker cycle."""
    outcome: CycleOutcome
    task_id: Optional[str] = None
    reason: Optional[str] = None
    review_route: Optional[str] = None
    failure: Optional[FailureOutcome] = None
    gate: Optional[QualityGateResult] = None


class TaskExecutor:
    """Runs claimed tasks through the provider and the quality gate."""

    def __init__(
        self,
        store: TaskGraphStore,
        provider: GenerationProvider,
        pool: TaskPool,
        quality_gate: QualityGate,
        retry_policy: RetryPolicy,
        review: ReviewCycleController,
    ):
        self.store = store
        self.provider = provider
        self.pool = pool
        self.quality_gate = quality_gate
        self.retry_policy = retry_policy
        self.review = review

    async def run_cycle(self, worker_id: str) -> CycleResult:
        """
        Pull the next task for a worker and execute it.

        Returns:
            CycleResult; outcome is IDLE with the pool's reason when no task
            was pulled
        """
        pull = await self.pool.pull_next_task(worker_id)
        if pull.task is None:
            return CycleResult(outcome=CycleOutcome.IDLE, reason=pull.reason)
        return await self.execute_claimed(pull.task.id)

    async def execute_claimed(self, task_id: str) -> CycleResult:
        """
        Execute a task that is already IN_PROGRESS with its worker.

        Used for fresh claims and for rework after review. Gate failures
        and any error raised while executing go to the retry policy, so the
        task never stays IN_PROGRESS with its worker; a passing result moves
        to READY_FOR_REVIEW and is routed to a review layer.

        Raises:
            TaskNotFoundError: If the task does not exist
        """
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if task.status != TaskStatus.IN_PROGRESS:
            return CycleResult(
                outcome=CycleOutcome.SKIPPED,
                task_id=task_id,
                reason=f"Task is {task.status}, not in progress",
            )

        try:
            return await self._execute(task)
        except Exception as e:
            logger.error(f"Execution of task {task.id} failed: {e}", exc_info=True)
            failure = await self.retry_policy.handle_failure(
                task.id, f"Execution failed: {e}", retryable=True
            )
            return CycleResult(
                outcome=CycleOutcome.FAILED,
                task_id=task.id,
                reason=failure.reason,
                failure=failure,
            )

    async def _execute(self, task: TaskModel) -> CycleResult:
        project = await self.store.get_project(task.project_id)
        organization = await self.store.get_organization(task.organization_id)
        working_directory = project.working_directory if project else None

        prompt = get_task_execution_prompt(
            title=task.title,
            description=task.description or "",
            acceptance_criteria=list(task.acceptance_criteria or []),
            affected_files=list(task.affected_files or []),
            working_directory=working_directory,
            review_feedback=task.review_feedback,
            last_error=task.error_message,
        )

        logger.info(f"Executing task {task.id} for worker {task.assigned_worker_id}: {task.title}")
        result = await self.provider.execute(
            prompt,
            system_prompt=EXECUTION_SYSTEM_PROMPT,
            context={
                "task_id": task.id,
                "worker_id": task.assigned_worker_id,
                "working_directory": working_directory,
            },
        )

        gate = await self.quality_gate.validate(
            task,
            result,
            cost_limit_daily_cents=organization.cost_limit_daily_cents if organization else None,
            working_directory=working_directory,
        )
        if not gate.passed:
            logger.warning(f"Task {task.id} failed quality gate {gate.gate_name}: {gate.reason}")
            failure = await self.retry_policy.handle_failure(
                task.id,
                f"Quality gate '{gate.gate_name}' failed: {gate.reason}",
                retryable=gate.should_retry,
            )
            return CycleResult(
                outcome=CycleOutcome.FAILED,
                task_id=task.id,
                reason=failure.reason,
                failure=failure,
                gate=gate,
            )

        if not await self.store.transition_task(
            task.id,
            [TaskStatus.IN_PROGRESS],
            TaskStatus.READY_FOR_REVIEW,
            output=result.output,
            error_message=None,
        ):
            logger.warning(f"Task {task.id} left IN_PROGRESS during execution; result discarded")
            return CycleResult(
                outcome=CycleOutcome.SKIPPED,
                task_id=task.id,
                reason="Task left IN_PROGRESS during execution",
                gate=gate,
            )

        route = await self.review.route_for_review(task.id)
        logger.info(
            f"Task {task.id} ready for review (${result.cost.total_cost_cents / 100:.4f}, "
            f"{result.duration_seconds:.1f}s)"
        )
        return CycleResult(
            outcome=CycleOutcome.SUBMITTED,
            task_id=task.id,
            review_route=route,
            gate=gate,
        )
