"""Task pool: picks the next task for an idle worker."""

import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict

from agentfleet.app.models import TaskModel, TaskStatus, WorkerModel, WorkerStatus, utcnow
from agentfleet.orchestrator.store import TaskGraphStore, WorkerNotFoundError

logger = logging.getLogger(__name__)

REASON_DIRECT = "Directly assigned"
REASON_QUEUE = "Priority queue"
REASON_NONE = "No available tasks"
REASON_NOT_IDLE = "Worker is not idle"
REASON_CLAIMED = "Task already claimed"


class PullResult(BaseModel):
    """Outcome of a pull: the claimed task, or None with a reason."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    task: Optional[TaskModel] = None
    reason: str


async def filter_dependency_ready(store: TaskGraphStore, tasks: list[TaskModel]) -> list[TaskModel]:
    """
    Keep READY tasks and PENDING tasks whose dependencies are all COMPLETED.

    Order of the input is preserved.
    """
    pending_deps = {
        dep_id
        for task in tasks
        if task.status == TaskStatus.PENDING
        for dep_id in (task.depends_on or [])
    }
    statuses = await store.get_status_map(pending_deps)

    ready = []
    for task in tasks:
        if task.status == TaskStatus.READY:
            ready.append(task)
        elif task.status == TaskStatus.PENDING and all(
            statuses.get(dep_id) == TaskStatus.COMPLETED for dep_id in (task.depends_on or [])
        ):
            ready.append(task)
    return ready


class TaskPool:
    """
    Assignment algorithm for idle workers.

    Directly assigned work wins over the shared queue; the shared queue is
    ordered by priority then age. A task whose affected files overlap any
    IN_PROGRESS task of the same project is held back until that task
    finishes.
    """

    def __init__(self, store: TaskGraphStore):
        self.store = store

    async def pull_next_task(self, worker_id: str) -> PullResult:
        """
        Select and claim the best next task for a worker.

        Args:
            worker_id: Worker asking for work

        Returns:
            PullResult with the claimed task (now IN_PROGRESS), or no task
            and the reason why

        Raises:
            WorkerNotFoundError: If the worker does not exist
        """
        worker = await self.store.get_worker(worker_id)
        if worker is None:
            raise WorkerNotFoundError(f"Worker {worker_id} not found")
        if worker.status != WorkerStatus.IDLE:
            return PullResult(reason=REASON_NOT_IDLE)

        selected, reason = await self._select(worker)
        if selected is None:
            logger.debug(f"No task for worker {worker.name}: {reason}")
            return PullResult(reason=reason)

        return await self._claim(worker, selected, reason)

    async def _select(self, worker: WorkerModel) -> tuple[Optional[TaskModel], str]:
        candidates = await self.store.list_pool_candidates(worker.organization_id, utcnow())
        candidates = await filter_dependency_ready(self.store, candidates)

        direct = [task for task in candidates if task.assigned_worker_id == worker.id]
        queue = [
            task
            for task in candidates
            if task.assigned_worker_id is None
            and (task.assigned_team_id is None or task.assigned_team_id == worker.team_id)
        ]

        locked_by_project: dict[str, set[str]] = {}
        for tasks, reason in ((direct, REASON_DIRECT), (queue, REASON_QUEUE)):
            for task in tasks:
                if task.project_id not in locked_by_project:
                    locked_by_project[task.project_id] = await self.store.get_locked_files(
                        task.project_id
                    )
                locked = locked_by_project[task.project_id]
                if locked.intersection(task.affected_files or []):
                    logger.info(
                        f"Skipping task {task.id} for worker {worker.name}: "
                        f"affected files are locked by in-progress work"
                    )
                    continue
                return task, reason

        return None, REASON_NONE

    async def _claim(self, worker: WorkerModel, task: TaskModel, reason: str) -> PullResult:
        if not await self.store.transition_worker(worker.id, [WorkerStatus.IDLE], WorkerStatus.BUSY):
            return PullResult(reason=REASON_NOT_IDLE)

        if not await self.store.claim_task(task.id, worker.id):
            logger.info(f"Task {task.id} was claimed by someone else; worker {worker.name} skips")
            await self.store.transition_worker(worker.id, [WorkerStatus.BUSY], WorkerStatus.IDLE)
            return PullResult(reason=REASON_CLAIMED)

        # Two workers can pass the file check for different overlapping tasks
        # at the same time; re-check after claiming and back off on overlap.
        locked = await self.store.get_locked_files(task.project_id, exclude_task_id=task.id)
        if locked.intersection(task.affected_files or []):
            logger.warning(f"Concurrent file conflict on task {task.id}; releasing claim")
            await self.store.transition_task(
                task.id,
                [TaskStatus.IN_PROGRESS],
                TaskStatus(task.status),
                assigned_worker_id=task.assigned_worker_id,
                started_at=task.started_at,
            )
            await self.store.transition_worker(worker.id, [WorkerStatus.BUSY], WorkerStatus.IDLE)
            return PullResult(reason=REASON_NONE)

        claimed = await self.store.get_task(task.id)
        logger.info(f"Worker {worker.name} pulled task {task.id} ({reason}): {task.title}")
        return PullResult(task=claimed, reason=reason)
