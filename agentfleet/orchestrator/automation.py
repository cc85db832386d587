"""Automation pipeline: periodic sweeps that move work through the system."""

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from agentfleet.app.config import settings
from agentfleet.app.models import GoalStatus, TaskStatus, TaskType, utcnow
from agentfleet.orchestrator.decomposer import DecompositionOptions, GoalDecomposer
from agentfleet.orchestrator.escalation import FailureAction, RetryPolicy
from agentfleet.orchestrator.executor import CycleOutcome, TaskExecutor
from agentfleet.orchestrator.goal_tracking import GoalTracker
from agentfleet.orchestrator.goals import GoalAlreadyDecomposedError
from agentfleet.orchestrator.review_cycle import ReviewAction, ReviewCycleController, ReviewOutcome
from agentfleet.orchestrator.store import TaskGraphStore
from agentfleet.orchestrator.task_pool import filter_dependency_ready
from agentfleet.orchestrator.team_planner import TeamEpicPlanner

logger = logging.getLogger(__name__)

SWEEP_DECOMPOSITION = "decomposition"
SWEEP_EXECUTION = "execution"
SWEEP_MANAGER_REVIEW = "manager_review"
SWEEP_TASK_REVIEW = "task_review"
SWEEP_TEAM_PLANNING = "team_planning"
SWEEP_GOAL_PROGRESS = "goal_progress"
SWEEP_STUCK_TASKS = "stuck_tasks"


class SweepReport(BaseModel):
    """Counts for one sweep run."""
    name: str
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class SweepConfig(BaseModel):
    """Cadence and batch cap of one sweep."""
    interval_seconds: float
    batch_size: int


def default_sweep_configs() -> dict[str, SweepConfig]:
    """Sweep cadences and batch caps from settings."""
    return {
        SWEEP_DECOMPOSITION: SweepConfig(
            interval_seconds=settings.decomposition_interval,
            batch_size=settings.decomposition_batch_size,
        ),
        SWEEP_EXECUTION: SweepConfig(
            interval_seconds=settings.execution_interval,
            batch_size=settings.execution_batch_size,
        ),
        SWEEP_MANAGER_REVIEW: SweepConfig(
            interval_seconds=settings.manager_review_interval,
            batch_size=settings.manager_review_batch_size,
        ),
        SWEEP_TASK_REVIEW: SweepConfig(
            interval_seconds=settings.task_review_interval,
            batch_size=settings.task_review_batch_size,
        ),
        SWEEP_TEAM_PLANNING: SweepConfig(
            interval_seconds=settings.planning_interval,
            batch_size=settings.planning_batch_size,
        ),
        SWEEP_GOAL_PROGRESS: SweepConfig(
            interval_seconds=settings.goal_progress_interval,
            batch_size=settings.goal_progress_batch_size,
        ),
        SWEEP_STUCK_TASKS: SweepConfig(
            interval_seconds=settings.stuck_task_interval,
            batch_size=settings.stuck_task_batch_size,
        ),
    }


class AutomationPipeline:
    """
    The sweeps of the automation pipeline.

    Each sweep selects a bounded batch, handles items one at a time and
    isolates their failures: an item that raises is logged and counted,
    and the sweep moves on to the next one.
    """

    def __init__(
        self,
        store: TaskGraphStore,
        decomposer: GoalDecomposer,
        executor: TaskExecutor,
        review: ReviewCycleController,
        planner: TeamEpicPlanner,
        goal_tracker: GoalTracker,
        retry_policy: RetryPolicy,
        configs: Optional[dict[str, SweepConfig]] = None,
        auto_assign: Optional[bool] = None,
        stuck_threshold_minutes: Optional[int] = None,
    ):
        self.store = store
        self.decomposer = decomposer
        self.executor = executor
        self.review = review
        self.planner = planner
        self.goal_tracker = goal_tracker
        self.retry_policy = retry_policy
        self.configs = configs or default_sweep_configs()
        self.auto_assign = settings.auto_assign if auto_assign is None else auto_assign
        self.stuck_threshold = timedelta(
            minutes=settings.stuck_task_threshold_minutes
            if stuck_threshold_minutes is None
            else stuck_threshold_minutes
        )

    @property
    def sweeps(self) -> dict[str, Callable[[], Awaitable[SweepReport]]]:
        return {
            SWEEP_DECOMPOSITION: self.run_decomposition_sweep,
            SWEEP_EXECUTION: self.run_execution_sweep,
            SWEEP_MANAGER_REVIEW: self.run_manager_review_sweep,
            SWEEP_TASK_REVIEW: self.run_task_review_sweep,
            SWEEP_TEAM_PLANNING: self.run_team_planning_sweep,
            SWEEP_GOAL_PROGRESS: self.run_goal_progress_sweep,
            SWEEP_STUCK_TASKS: self.run_stuck_task_sweep,
        }

    def batch_size(self, name: str) -> int:
        return self.configs[name].batch_size

    async def run_decomposition_sweep(self) -> SweepReport:
        """Decompose ACTIVE goals that have not been decomposed yet."""
        report = SweepReport(name=SWEEP_DECOMPOSITION)
        goals = await self.store.list_goals(
            status=GoalStatus.ACTIVE,
            auto_decomposed=False,
            limit=self.batch_size(SWEEP_DECOMPOSITION),
        )
        report.selected = len(goals)
        options = DecompositionOptions(auto_assign=self.auto_assign)

        for goal in goals:
            async def decompose(goal_id: str = goal.id) -> bool:
                try:
                    await self.decomposer.decompose(goal_id, options)
                except GoalAlreadyDecomposedError:
                    return False
                return True

            await self._run_item(report, f"goal {goal.id}", decompose)
        return self._finish(report)

    async def run_execution_sweep(self) -> SweepReport:
        """Run one cycle for each worker that has assigned, runnable work."""
        report = SweepReport(name=SWEEP_EXECUTION)
        tasks = await self.store.list_tasks(
            statuses=[TaskStatus.READY, TaskStatus.PENDING],
            exclude_type=TaskType.TEAM_EPIC,
            assigned=True,
        )
        tasks = await filter_dependency_ready(self.store, tasks)

        worker_ids: list[str] = []
        for task in tasks:
            if task.assigned_worker_id not in worker_ids:
                worker_ids.append(task.assigned_worker_id)
        worker_ids = worker_ids[: self.batch_size(SWEEP_EXECUTION)]
        report.selected = len(worker_ids)

        for worker_id in worker_ids:
            async def cycle(worker_id: str = worker_id) -> bool:
                result = await self.executor.run_cycle(worker_id)
                return result.outcome != CycleOutcome.IDLE

            await self._run_item(report, f"worker {worker_id}", cycle)
        return self._finish(report)

    async def run_manager_review_sweep(self) -> SweepReport:
        """Review READY_FOR_REVIEW tasks that have a reviewer, grouped by reviewer."""
        report = SweepReport(name=SWEEP_MANAGER_REVIEW)
        if not self.review.manager_first:
            return report

        tasks = await self.store.list_tasks(
            statuses=[TaskStatus.READY_FOR_REVIEW],
            has_reviewer=True,
            limit=self.batch_size(SWEEP_MANAGER_REVIEW),
        )
        report.selected = len(tasks)

        batches: dict[str, list[str]] = {}
        for task in tasks:
            batches.setdefault(task.reviewer_worker_id, []).append(task.id)

        for manager_id, task_ids in batches.items():
            try:
                outcomes = await self.review.run_manager_reviews(manager_id, task_ids)
            except Exception as e:
                report.failed += len(task_ids)
                logger.error(f"Manager review batch for {manager_id} failed: {e}", exc_info=True)
                continue
            for outcome in outcomes:
                await self._record_review(report, outcome)
        return self._finish(report)

    async def run_task_review_sweep(self) -> SweepReport:
        """Self-review IN_REVIEW tasks of their assigned workers."""
        report = SweepReport(name=SWEEP_TASK_REVIEW)
        tasks = await self.store.list_tasks(
            statuses=[TaskStatus.IN_REVIEW],
            assigned=True,
            has_reviewer=False if self.review.manager_first else None,
            limit=self.batch_size(SWEEP_TASK_REVIEW),
        )
        report.selected = len(tasks)

        for task in tasks:
            try:
                outcome = await self.review.run_self_review(task.id)
            except Exception as e:
                report.failed += 1
                logger.error(f"Self-review of task {task.id} failed: {e}", exc_info=True)
                continue
            await self._record_review(report, outcome)
        return self._finish(report)

    async def run_team_planning_sweep(self) -> SweepReport:
        """Plan team epics that are waiting for their manager."""
        report = SweepReport(name=SWEEP_TEAM_PLANNING)
        epics = await self.store.list_tasks(
            statuses=[TaskStatus.PENDING],
            task_type=TaskType.TEAM_EPIC,
            needs_planning=True,
            limit=self.batch_size(SWEEP_TEAM_PLANNING),
        )
        report.selected = len(epics)

        for epic in epics:
            async def plan(epic_id: str = epic.id) -> bool:
                return bool(await self.planner.plan_epic(epic_id))

            await self._run_item(report, f"epic {epic.id}", plan)
        return self._finish(report)

    async def run_goal_progress_sweep(self) -> SweepReport:
        """Recompute progress of ACTIVE goals from their work."""
        report = SweepReport(name=SWEEP_GOAL_PROGRESS)
        goals = await self.store.list_goals(
            status=GoalStatus.ACTIVE,
            limit=self.batch_size(SWEEP_GOAL_PROGRESS),
        )
        report.selected = len(goals)

        for goal in goals:
            async def refresh(goal_id: str = goal.id) -> bool:
                return await self.goal_tracker.update_goal_progress(goal_id) is not None

            await self._run_item(report, f"goal {goal.id}", refresh)
        return self._finish(report)

    async def run_stuck_task_sweep(self) -> SweepReport:
        """
        Fail tasks that have been IN_PROGRESS longer than the stuck threshold.

        A stuck task holds its worker and locks its affected files; the
        retry policy requeues it or blocks it once its retries are used up.
        """
        report = SweepReport(name=SWEEP_STUCK_TASKS)
        tasks = await self.store.list_tasks(
            statuses=[TaskStatus.IN_PROGRESS],
            started_before=utcnow() - self.stuck_threshold,
            limit=self.batch_size(SWEEP_STUCK_TASKS),
        )
        report.selected = len(tasks)
        minutes = int(self.stuck_threshold.total_seconds() // 60)

        for task in tasks:
            async def release(task_id: str = task.id) -> bool:
                outcome = await self.retry_policy.handle_failure(
                    task_id, f"Stuck in progress for over {minutes} minutes", retryable=True
                )
                return outcome.action != FailureAction.SKIPPED

            await self._run_item(report, f"task {task.id}", release)
        return self._finish(report)

    async def _record_review(self, report: SweepReport, outcome: ReviewOutcome) -> None:
        if outcome.error:
            report.failed += 1
            return
        if not outcome.applied:
            report.skipped += 1
            return
        report.succeeded += 1

        if outcome.action == ReviewAction.REWORK and outcome.status == TaskStatus.IN_PROGRESS:
            try:
                await self.executor.execute_claimed(outcome.task_id)
            except Exception as e:
                logger.error(f"Rework of task {outcome.task_id} failed: {e}", exc_info=True)

    async def _run_item(
        self,
        report: SweepReport,
        label: str,
        handler: Callable[[], Awaitable[bool]],
    ) -> None:
        try:
            if await handler():
                report.succeeded += 1
            else:
                report.skipped += 1
        except Exception as e:
            report.failed += 1
            logger.error(f"{report.name} sweep: {label} failed: {e}", exc_info=True)

    @staticmethod
    def _finish(report: SweepReport) -> SweepReport:
        if report.selected:
            logger.info(
                f"{report.name} sweep: {report.selected} selected, {report.succeeded} succeeded, "
                f"{report.failed} failed, {report.skipped} skipped"
            )
        return report


class AutomationScheduler:
    """
    Runs each sweep in its own asyncio task on its own cadence.

    A sweep never overlaps itself: the loop waits for a run to finish
    before sleeping, and on-demand runs share the same per-sweep lock.
    """

    def __init__(self, pipeline: AutomationPipeline):
        self.pipeline = pipeline
        self._tasks: dict[str, asyncio.Task] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def start(self) -> None:
        """Launch one loop per sweep."""
        if self.running:
            logger.warning("Automation scheduler already running")
            return
        for name in self.pipeline.sweeps:
            self._tasks[name] = asyncio.create_task(self._loop(name), name=f"sweep-{name}")
        logger.info(f"Automation scheduler started with {len(self._tasks)} sweeps")

    async def stop(self) -> None:
        """Cancel every sweep loop and wait for them to exit."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Automation scheduler stopped")

    async def run_once(self, name: str) -> SweepReport:
        """
        Run one sweep now.

        A sweep that raises is logged and reported as failed.

        Raises:
            ValueError: If the sweep name is unknown
        """
        sweep = self.pipeline.sweeps.get(name)
        if sweep is None:
            raise ValueError(f"Unknown sweep: {name}")

        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            try:
                return await sweep()
            except Exception as e:
                logger.error(f"{name} sweep failed: {e}", exc_info=True)
                return SweepReport(name=name, failed=1)

    async def _loop(self, name: str) -> None:
        interval = self.pipeline.configs[name].interval_seconds
        while True:
            await self.run_once(name)
            await asyncio.sleep(interval)
