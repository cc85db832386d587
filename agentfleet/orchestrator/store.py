"""Task graph store: repository-style CRUD plus conditional updates."""

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import and_, case, delete, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import aliased

from agentfleet.app.models import (
    GoalModel,
    GoalProgressRecordModel,
    GoalStatus,
    OrganizationModel,
    ProjectModel,
    TaskModel,
    TaskStatus,
    TaskType,
    TeamModel,
    WorkerModel,
    WorkerStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


def _values(statuses: Iterable) -> list[str]:
    return [s.value if hasattr(s, "value") else s for s in statuses]


class TaskGraphStore:
    """
    Durable access to goals, projects, tasks, workers and teams.

    Every state transition that can race with another sweep goes through
    a conditional update: the UPDATE carries the expected current state in
    its WHERE clause, and a zero rowcount tells the caller that someone
    else got there first.
    """

    def __init__(self, session_factory: async_sessionmaker):
        """
        Initialize store.

        Args:
            session_factory: Async session factory (expire_on_commit=False)
        """
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    async def add(self, instance: Any) -> Any:
        """Persist a new model instance and return it."""
        async with self.session_factory() as session:
            session.add(instance)
            await session.commit()
            await session.refresh(instance)
        return instance

    async def add_all(self, instances: list[Any]) -> list[Any]:
        """Persist several new instances in one transaction."""
        async with self.session_factory() as session:
            session.add_all(instances)
            await session.commit()
            for instance in instances:
                await session.refresh(instance)
        return instances

    async def _get(self, model: type, entity_id: str) -> Optional[Any]:
        async with self.session_factory() as session:
            return await session.get(model, entity_id)

    async def _update(self, model: type, entity_id: str, values: dict[str, Any]) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(model).where(model.id == entity_id).values(**values)
            )
            await session.commit()
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Organizations and teams
    # ------------------------------------------------------------------

    async def get_organization(self, organization_id: str) -> Optional[OrganizationModel]:
        return await self._get(OrganizationModel, organization_id)

    async def get_team(self, team_id: str) -> Optional[TeamModel]:
        return await self._get(TeamModel, team_id)

    async def list_teams(self, organization_id: str) -> list[TeamModel]:
        """Teams of an organization in creation order."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(TeamModel)
                .where(TeamModel.organization_id == organization_id)
                .order_by(TeamModel.created_at, TeamModel.id)
            )
            return list(result.scalars())

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def get_worker(self, worker_id: str) -> Optional[WorkerModel]:
        return await self._get(WorkerModel, worker_id)

    async def list_workers(
        self,
        organization_id: str,
        team_id: Optional[str] = None,
        status: Optional[WorkerStatus] = None,
        include_temporary: bool = False,
    ) -> list[WorkerModel]:
        """
        List workers of an organization.

        Args:
            organization_id: Organization scope
            team_id: Restrict to one team
            status: Restrict to one status
            include_temporary: Include spawned reviewer workers

        Returns:
            Workers ordered by creation time
        """
        stmt = select(WorkerModel).where(WorkerModel.organization_id == organization_id)
        if team_id is not None:
            stmt = stmt.where(WorkerModel.team_id == team_id)
        if status is not None:
            stmt = stmt.where(WorkerModel.status == status.value)
        if not include_temporary:
            stmt = stmt.where(WorkerModel.is_temporary.is_(False))
        stmt = stmt.order_by(WorkerModel.created_at, WorkerModel.id)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars())

    async def transition_worker(
        self,
        worker_id: str,
        from_statuses: Iterable[WorkerStatus],
        to_status: WorkerStatus,
    ) -> bool:
        """
        Conditionally move a worker between statuses.

        Returns:
            True if the worker was in one of from_statuses and was updated
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(WorkerModel)
                .where(
                    WorkerModel.id == worker_id,
                    WorkerModel.status.in_(_values(from_statuses)),
                )
                .values(status=to_status.value, last_heartbeat=utcnow())
            )
            await session.commit()
            return result.rowcount > 0

    async def release_worker(
        self,
        worker_id: Optional[str],
        completed: bool = False,
        failed: bool = False,
    ) -> None:
        """Return a worker to IDLE and bump its counters."""
        if not worker_id:
            return
        values: dict[str, Any] = {
            "status": WorkerStatus.IDLE.value,
            "last_heartbeat": utcnow(),
        }
        if completed:
            values["tasks_completed"] = WorkerModel.tasks_completed + 1
        if failed:
            values["tasks_failed"] = WorkerModel.tasks_failed + 1
        async with self.session_factory() as session:
            await session.execute(
                update(WorkerModel)
                .where(WorkerModel.id == worker_id, WorkerModel.status != WorkerStatus.ERROR.value)
                .values(**values)
            )
            await session.commit()

    async def delete_worker(self, worker_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(WorkerModel).where(WorkerModel.id == worker_id))
            await session.commit()

    async def count_active_assignments(self, worker_ids: list[str]) -> dict[str, int]:
        """Count non-terminal tasks assigned to each worker."""
        if not worker_ids:
            return {}
        terminal = _values([TaskStatus.COMPLETED, TaskStatus.BLOCKED, TaskStatus.CANCELLED])
        async with self.session_factory() as session:
            result = await session.execute(
                select(TaskModel.assigned_worker_id, func.count(TaskModel.id))
                .where(
                    TaskModel.assigned_worker_id.in_(worker_ids),
                    TaskModel.status.not_in(terminal),
                )
                .group_by(TaskModel.assigned_worker_id)
            )
            counts = {worker_id: 0 for worker_id in worker_ids}
            for worker_id, count in result.all():
                counts[worker_id] = count
            return counts

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    async def get_goal(self, goal_id: str) -> Optional[GoalModel]:
        return await self._get(GoalModel, goal_id)

    async def update_goal(self, goal_id: str, **values: Any) -> bool:
        return await self._update(GoalModel, goal_id, values)

    async def list_goals(
        self,
        status: Optional[Any] = None,
        auto_decomposed: Optional[bool] = None,
        organization_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[GoalModel]:
        """List goals oldest first, optionally filtered."""
        stmt = select(GoalModel)
        if status is not None:
            stmt = stmt.where(GoalModel.status == status.value)
        if auto_decomposed is not None:
            stmt = stmt.where(GoalModel.auto_decomposed.is_(auto_decomposed))
        if organization_id is not None:
            stmt = stmt.where(GoalModel.organization_id == organization_id)
        stmt = stmt.order_by(GoalModel.created_at, GoalModel.id)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars())

    async def list_child_goals(self, goal_id: str) -> list[GoalModel]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(GoalModel)
                .where(GoalModel.parent_goal_id == goal_id)
                .order_by(GoalModel.created_at, GoalModel.id)
            )
            return list(result.scalars())

    async def mark_goal_decomposed(self, goal_id: str, strategy: str) -> bool:
        """Flip auto_decomposed from False to True. Returns False if already set."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(GoalModel)
                .where(GoalModel.id == goal_id, GoalModel.auto_decomposed.is_(False))
                .values(
                    auto_decomposed=True,
                    decomposition_strategy=strategy,
                    updated_at=utcnow(),
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def complete_goal(self, goal_id: str, from_status: Any, progress: float) -> bool:
        """Conditionally mark a goal COMPLETED at the given progress."""
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(GoalModel)
                .where(GoalModel.id == goal_id, GoalModel.status == from_status.value)
                .values(
                    status=GoalStatus.COMPLETED.value,
                    progress_percent=progress,
                    completed_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def add_progress_record(
        self,
        goal_id: str,
        progress_percent: float,
        current_value: Optional[float],
        note: Optional[str],
        recorded_by: Optional[str],
    ) -> GoalProgressRecordModel:
        """Append a progress record and update the goal's progress in one transaction."""
        record = GoalProgressRecordModel(
            goal_id=goal_id,
            progress_percent=progress_percent,
            current_value=current_value,
            note=note,
            recorded_by=recorded_by,
            recorded_at=utcnow(),
        )
        values: dict[str, Any] = {"progress_percent": progress_percent, "updated_at": utcnow()}
        if current_value is not None:
            values["current_value"] = current_value

        async with self.session_factory() as session:
            session.add(record)
            await session.execute(
                update(GoalModel).where(GoalModel.id == goal_id).values(**values)
            )
            await session.commit()
            await session.refresh(record)
        return record

    async def list_progress_records(self, goal_id: str) -> list[GoalProgressRecordModel]:
        """Progress history, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(GoalProgressRecordModel)
                .where(GoalProgressRecordModel.goal_id == goal_id)
                .order_by(
                    GoalProgressRecordModel.recorded_at.desc(),
                    GoalProgressRecordModel.id.desc(),
                )
            )
            return list(result.scalars())

    async def delete_goal(self, goal_id: str) -> bool:
        """
        Delete a goal with everything it owns.

        Projects and their tasks, and progress records, are removed. Child
        goals are detached rather than deleted.

        Returns:
            True if the goal existed
        """
        async with self.session_factory() as session:
            project_ids = select(ProjectModel.id).where(ProjectModel.goal_id == goal_id)
            await session.execute(
                delete(TaskModel).where(TaskModel.project_id.in_(project_ids))
            )
            await session.execute(delete(ProjectModel).where(ProjectModel.goal_id == goal_id))
            await session.execute(
                delete(GoalProgressRecordModel).where(GoalProgressRecordModel.goal_id == goal_id)
            )
            await session.execute(
                update(GoalModel)
                .where(GoalModel.parent_goal_id == goal_id)
                .values(parent_goal_id=None)
            )
            result = await session.execute(delete(GoalModel).where(GoalModel.id == goal_id))
            await session.commit()
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def get_project(self, project_id: str) -> Optional[ProjectModel]:
        return await self._get(ProjectModel, project_id)

    async def list_projects(
        self,
        organization_id: Optional[str] = None,
        goal_id: Optional[str] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> list[ProjectModel]:
        stmt = select(ProjectModel)
        if organization_id is not None:
            stmt = stmt.where(ProjectModel.organization_id == organization_id)
        if goal_id is not None:
            stmt = stmt.where(ProjectModel.goal_id == goal_id)
        if newest_first:
            stmt = stmt.order_by(ProjectModel.created_at.desc(), ProjectModel.id.desc())
        else:
            stmt = stmt.order_by(ProjectModel.created_at, ProjectModel.id)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars())

    async def delete_project(self, project_id: str) -> bool:
        """Delete a project and its tasks."""
        async with self.session_factory() as session:
            await session.execute(delete(TaskModel).where(TaskModel.project_id == project_id))
            result = await session.execute(
                delete(ProjectModel).where(ProjectModel.id == project_id)
            )
            await session.commit()
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> Optional[TaskModel]:
        return await self._get(TaskModel, task_id)

    async def get_tasks(self, task_ids: Iterable[str]) -> list[TaskModel]:
        ids = list(task_ids)
        if not ids:
            return []
        async with self.session_factory() as session:
            result = await session.execute(select(TaskModel).where(TaskModel.id.in_(ids)))
            return list(result.scalars())

    async def update_task(self, task_id: str, **values: Any) -> bool:
        """Unconditional task update (operator and API edits)."""
        return await self._update(TaskModel, task_id, values)

    async def delete_task(self, task_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(delete(TaskModel).where(TaskModel.id == task_id))
            await session.commit()
            return result.rowcount > 0

    async def transition_task(
        self,
        task_id: str,
        from_statuses: Iterable[TaskStatus],
        to_status: Optional[TaskStatus] = None,
        only_if: Optional[list[Any]] = None,
        **values: Any,
    ) -> bool:
        """
        Conditionally update a task that is in one of from_statuses.

        Args:
            task_id: Task to update
            from_statuses: Statuses the task must currently have
            to_status: New status (None keeps the current status)
            only_if: Extra WHERE clauses
            **values: Other columns to set

        Returns:
            True if exactly this caller performed the update
        """
        if to_status is not None:
            values["status"] = to_status.value
        values.setdefault("updated_at", utcnow())

        conditions = [TaskModel.id == task_id, TaskModel.status.in_(_values(from_statuses))]
        if only_if:
            conditions.extend(only_if)

        async with self.session_factory() as session:
            result = await session.execute(
                update(TaskModel).where(*conditions).values(**values)
            )
            await session.commit()
            return result.rowcount > 0

    async def claim_task(self, task_id: str, worker_id: str) -> bool:
        """
        Claim a READY (or PENDING) task for a worker.

        The task must be unassigned or already assigned to this worker.
        """
        return await self.transition_task(
            task_id,
            [TaskStatus.READY, TaskStatus.PENDING],
            TaskStatus.IN_PROGRESS,
            only_if=[
                or_(
                    TaskModel.assigned_worker_id.is_(None),
                    TaskModel.assigned_worker_id == worker_id,
                )
            ],
            assigned_worker_id=worker_id,
            started_at=utcnow(),
        )

    async def list_tasks(
        self,
        organization_id: Optional[str] = None,
        project_id: Optional[str] = None,
        statuses: Optional[Iterable[TaskStatus]] = None,
        parent_task_id: Optional[str] = None,
        task_type: Optional[TaskType] = None,
        exclude_type: Optional[TaskType] = None,
        assigned: Optional[bool] = None,
        has_reviewer: Optional[bool] = None,
        needs_planning: Optional[bool] = None,
        started_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[TaskModel]:
        """
        List tasks with optional filters, ordered by priority then age.

        Returns:
            Matching tasks (P1 first, oldest first within a priority)
        """
        stmt = select(TaskModel)
        if organization_id is not None:
            stmt = stmt.where(TaskModel.organization_id == organization_id)
        if project_id is not None:
            stmt = stmt.where(TaskModel.project_id == project_id)
        if statuses is not None:
            stmt = stmt.where(TaskModel.status.in_(_values(statuses)))
        if parent_task_id is not None:
            stmt = stmt.where(TaskModel.parent_task_id == parent_task_id)
        if task_type is not None:
            stmt = stmt.where(TaskModel.type == task_type.value)
        if exclude_type is not None:
            stmt = stmt.where(TaskModel.type != exclude_type.value)
        if assigned is True:
            stmt = stmt.where(TaskModel.assigned_worker_id.is_not(None))
        elif assigned is False:
            stmt = stmt.where(TaskModel.assigned_worker_id.is_(None))
        if has_reviewer is True:
            stmt = stmt.where(TaskModel.reviewer_worker_id.is_not(None))
        elif has_reviewer is False:
            stmt = stmt.where(TaskModel.reviewer_worker_id.is_(None))
        if needs_planning is not None:
            stmt = stmt.where(TaskModel.needs_planning.is_(needs_planning))
        if started_before is not None:
            stmt = stmt.where(TaskModel.started_at < started_before)
        stmt = stmt.order_by(TaskModel.priority, TaskModel.created_at, TaskModel.id)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars())

    async def list_pool_candidates(
        self,
        organization_id: str,
        now: datetime,
    ) -> list[TaskModel]:
        """
        Tasks a worker could pick up.

        READY or PENDING, not a team epic, without children, and not in
        retry backoff. Dependency readiness is checked by the caller.
        """
        child = aliased(TaskModel)
        has_children = exists().where(child.parent_task_id == TaskModel.id)

        stmt = (
            select(TaskModel)
            .where(
                TaskModel.organization_id == organization_id,
                TaskModel.status.in_(_values([TaskStatus.READY, TaskStatus.PENDING])),
                TaskModel.type != TaskType.TEAM_EPIC.value,
                ~has_children,
                or_(TaskModel.blocked_until.is_(None), TaskModel.blocked_until <= now),
            )
            .order_by(TaskModel.priority, TaskModel.created_at, TaskModel.id)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars())

    async def get_status_map(self, task_ids: Iterable[str]) -> dict[str, str]:
        """Map task id to current status for the given ids."""
        ids = list(set(task_ids))
        if not ids:
            return {}
        async with self.session_factory() as session:
            result = await session.execute(
                select(TaskModel.id, TaskModel.status).where(TaskModel.id.in_(ids))
            )
            return {task_id: status for task_id, status in result.all()}

    async def get_locked_files(
        self,
        project_id: str,
        exclude_task_id: Optional[str] = None,
    ) -> set[str]:
        """Union of affected files across IN_PROGRESS tasks of a project."""
        stmt = select(TaskModel.affected_files).where(
            TaskModel.project_id == project_id,
            TaskModel.status == TaskStatus.IN_PROGRESS.value,
        )
        if exclude_task_id is not None:
            stmt = stmt.where(TaskModel.id != exclude_task_id)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            locked: set[str] = set()
            for files in result.scalars():
                locked.update(files or [])
            return locked

    async def count_children(self, parent_task_id: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count(TaskModel.id)).where(TaskModel.parent_task_id == parent_task_id)
            )
            return result.scalar_one()

    async def list_children(self, parent_task_id: str) -> list[TaskModel]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TaskModel)
                .where(TaskModel.parent_task_id == parent_task_id)
                .order_by(TaskModel.created_at, TaskModel.id)
            )
            return list(result.scalars())

    async def count_project_tasks(self, project_ids: list[str]) -> tuple[int, int]:
        """
        Count non-epic tasks across projects.

        Returns:
            Tuple of (completed, total)
        """
        if not project_ids:
            return 0, 0
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    func.count(TaskModel.id),
                    func.sum(
                        case((TaskModel.status == TaskStatus.COMPLETED.value, 1), else_=0)
                    ),
                ).where(
                    and_(
                        TaskModel.project_id.in_(project_ids),
                        TaskModel.type != TaskType.TEAM_EPIC.value,
                        TaskModel.status != TaskStatus.CANCELLED.value,
                    )
                )
            )
            total, completed = result.one()
            return completed or 0, total or 0


class TaskNotFoundError(Exception):
    """Raised when a task does not exist."""
    pass


class WorkerNotFoundError(Exception):
    """Raised when a worker does not exist."""
    pass


class ProjectNotFoundError(Exception):
    """Raised when a project does not exist."""
    pass
