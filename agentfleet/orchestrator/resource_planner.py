"""Resource planning: initial worker assignment for a project's tasks."""

import logging
from typing import Optional, Protocol

from pydantic import BaseModel

from agentfleet.app.models import (
    TaskModel,
    TaskStatus,
    TaskType,
    WorkerModel,
    WorkerStatus,
)
from agentfleet.orchestrator.store import ProjectNotFoundError, TaskGraphStore

logger = logging.getLogger(__name__)


class AssignmentResult(BaseModel):
    """Outcome of assigning one project."""
    assigned_count: int
    total_tasks: int


class ResourcePlanner(Protocol):
    """Assigns a project's tasks to workers."""

    async def assign_project(self, project_id: str) -> AssignmentResult:
        ...


class WorkloadResourcePlanner:
    """Gives each unassigned task to the least-loaded eligible worker."""

    def __init__(self, store: TaskGraphStore):
        self.store = store

    async def assign_project(self, project_id: str) -> AssignmentResult:
        """
        Assign every unassigned open task of a project.

        Workers of the task's team are preferred; temporary and errored
        workers are never chosen. Each assignment is conditional on the task
        still being unassigned.

        Returns:
            AssignmentResult with counts

        Raises:
            ProjectNotFoundError: If the project does not exist
        """
        project = await self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project {project_id} not found")

        tasks = await self.store.list_tasks(
            project_id=project_id,
            statuses=[TaskStatus.PENDING, TaskStatus.READY],
            exclude_type=TaskType.TEAM_EPIC,
        )
        workers = [
            w for w in await self.store.list_workers(project.organization_id)
            if w.status != WorkerStatus.ERROR
        ]
        if not workers:
            logger.warning(f"No eligible workers for project {project.name}")
            return AssignmentResult(assigned_count=0, total_tasks=len(tasks))

        load = await self.store.count_active_assignments([w.id for w in workers])
        assigned = 0

        for task in tasks:
            if task.assigned_worker_id is not None:
                continue
            worker = self._choose(task, workers, load)
            if worker is None:
                continue
            if await self.store.transition_task(
                task.id,
                [TaskStatus.PENDING, TaskStatus.READY],
                only_if=[TaskModel.assigned_worker_id.is_(None)],
                assigned_worker_id=worker.id,
            ):
                load[worker.id] += 1
                assigned += 1
                logger.debug(f"Assigned task {task.id} to {worker.name}")

        logger.info(f"Assigned {assigned}/{len(tasks)} tasks of project {project.name}")
        return AssignmentResult(assigned_count=assigned, total_tasks=len(tasks))

    @staticmethod
    def _choose(
        task: TaskModel,
        workers: list[WorkerModel],
        load: dict[str, int],
    ) -> Optional[WorkerModel]:
        candidates = workers
        if task.assigned_team_id:
            team_members = [w for w in workers if w.team_id == task.assigned_team_id]
            candidates = team_members or workers

        skills = {s.lower() for s in task.required_skills or []}
        if skills:
            skilled = [w for w in candidates if skills & {s.lower() for s in w.skills or []}]
            candidates = skilled or candidates

        # min() keeps the first worker on ties, i.e. the oldest
        return min(candidates, key=lambda w: load.get(w.id, 0)) if candidates else None
