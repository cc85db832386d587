"""Task creation with hierarchy limits, and parent status rollup."""

import logging
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from agentfleet.app.config import settings
from agentfleet.app.models import (
    TERMINAL_TASK_STATUSES,
    TaskModel,
    TaskPriority,
    TaskStatus,
    TaskType,
    new_id,
    utcnow,
)
from agentfleet.orchestrator.dependency_graph import DependencyGraph
from agentfleet.orchestrator.store import TaskGraphStore, TaskNotFoundError

logger = logging.getLogger(__name__)


class SubtaskDefinition(BaseModel):
    """A task to create, as produced by a planner or reviewer."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    type: TaskType = TaskType.IMPLEMENTATION
    priority: TaskPriority = TaskPriority.P3
    affected_files: list[str] = Field(default_factory=list, alias="affectedFiles")
    dependencies: list[str] = Field(default_factory=list)  # titles within the same batch
    acceptance_criteria: list[str] = Field(default_factory=list, alias="acceptanceCriteria")
    required_skills: list[str] = Field(default_factory=list, alias="requiredSkills")
    estimated_hours: float = Field(default=0.0, ge=0, alias="estimatedHours")
    assignee: Optional[str] = None


class SubtaskService:
    """
    Single path for creating tasks.

    Enforces the hierarchy invariants: depth never exceeds max_depth, a
    parent never has more than max_subtasks direct children, and every
    dependency resolves to a task of the same project.
    """

    def __init__(
        self,
        store: TaskGraphStore,
        max_depth: Optional[int] = None,
        max_subtasks: Optional[int] = None,
    ):
        self.store = store
        self.max_depth = settings.max_depth if max_depth is None else max_depth
        self.max_subtasks = settings.max_subtasks_per_task if max_subtasks is None else max_subtasks

    async def create_task(
        self,
        organization_id: str,
        project_id: str,
        title: str,
        description: str = "",
        task_type: TaskType = TaskType.IMPLEMENTATION,
        priority: TaskPriority = TaskPriority.P3,
        parent_task_id: Optional[str] = None,
        depends_on: Optional[list[str]] = None,
        **fields,
    ) -> TaskModel:
        """
        Create a single task after validating the hierarchy rules.

        Depth is derived from the parent (0 for root tasks). Status is READY
        unless the task has dependencies, in which case it starts PENDING.

        Raises:
            TaskDepthExceededError: If the task would be deeper than max_depth
            SubtaskLimitExceededError: If the parent is already full
            InvalidDependencyError: If a dependency is unknown or in another project
        """
        depth = 0
        if parent_task_id is not None:
            parent = await self._get_parent(parent_task_id)
            depth = parent.depth + 1
            self._check_depth(depth)
            await self._check_child_capacity(parent, 1)

        depends_on = list(depends_on or [])
        await self._check_dependencies(project_id, depends_on)

        task_id = fields.pop("id", None) or new_id()
        fields.setdefault("status", (TaskStatus.PENDING if depends_on else TaskStatus.READY).value)
        task = TaskModel(
            id=task_id,
            organization_id=organization_id,
            project_id=project_id,
            parent_task_id=parent_task_id,
            title=title,
            description=description,
            type=task_type.value,
            priority=priority.value,
            depth=depth,
            depends_on=depends_on,
            **fields,
        )
        return await self.store.add(task)

    async def create_subtasks(
        self,
        parent_task_id: str,
        definitions: list[SubtaskDefinition],
        reviewer_worker_id: Optional[str] = None,
        assignees: Optional[dict[str, str]] = None,
    ) -> list[TaskModel]:
        """
        Create children of a task in one batch.

        The whole batch is validated before anything is written. Titles in
        `dependencies` resolve against other definitions in the batch.

        Args:
            parent_task_id: Parent task
            definitions: Children to create
            reviewer_worker_id: Reviewer for every child (default: parent's reviewer)
            assignees: Map of child title to worker id

        Returns:
            Created tasks in definition order

        Raises:
            TaskDepthExceededError: If children would exceed max_depth
            SubtaskLimitExceededError: If the parent would exceed max_subtasks
            CyclicDependencyError: If the batch's dependencies form a cycle
        """
        parent = await self._get_parent(parent_task_id)
        depth = parent.depth + 1
        self._check_depth(depth)
        await self._check_child_capacity(parent, len(definitions))

        keys = [new_id() for _ in definitions]
        graph = DependencyGraph.from_titles(
            [
                (key, definition.title, definition.dependencies, definition.estimated_hours)
                for key, definition in zip(keys, definitions)
            ]
        )

        assignees = assignees or {}
        reviewer = reviewer_worker_id or parent.reviewer_worker_id
        now = utcnow()
        children = []
        for index, (key, definition) in enumerate(zip(keys, definitions)):
            depends_on = graph.dependencies_of(key)
            children.append(
                TaskModel(
                    id=key,
                    organization_id=parent.organization_id,
                    project_id=parent.project_id,
                    parent_task_id=parent.id,
                    title=definition.title,
                    description=definition.description,
                    type=definition.type.value,
                    priority=definition.priority.value,
                    status=(TaskStatus.PENDING if depends_on else TaskStatus.READY).value,
                    depth=depth,
                    depends_on=depends_on,
                    affected_files=list(definition.affected_files),
                    acceptance_criteria=list(definition.acceptance_criteria),
                    required_skills=list(definition.required_skills),
                    estimated_hours=definition.estimated_hours,
                    assigned_team_id=parent.assigned_team_id,
                    assigned_worker_id=assignees.get(definition.title),
                    reviewer_worker_id=reviewer,
                    # Keep definition order within one priority
                    created_at=now + timedelta(microseconds=index),
                )
            )

        created = await self.store.add_all(children)
        logger.info(
            f"Created {len(created)} subtasks under {parent.id} at depth {depth} "
            f"(parallel estimate {graph.get_parallel_estimated_hours():.1f}h)"
        )
        return created

    async def update_parent_status(self, parent_task_id: Optional[str]) -> Optional[TaskStatus]:
        """
        Roll a parent's status up from its children, recursively.

        All children COMPLETED makes the parent COMPLETED; any child BLOCKED
        makes it BLOCKED. Otherwise the parent is left alone.

        Returns:
            The status the parent moved to, or None if it did not change
        """
        if parent_task_id is None:
            return None
        parent = await self.store.get_task(parent_task_id)
        if parent is None or parent.status in TERMINAL_TASK_STATUSES:
            return None

        children = await self.store.list_children(parent_task_id)
        if not children:
            return None

        statuses = [child.status for child in children]
        open_statuses = [s for s in TaskStatus if s not in TERMINAL_TASK_STATUSES]

        new_status = None
        if all(status == TaskStatus.COMPLETED for status in statuses):
            moved = await self.store.transition_task(
                parent.id,
                open_statuses,
                TaskStatus.COMPLETED,
                completed_at=utcnow(),
                needs_planning=False,
            )
            new_status = TaskStatus.COMPLETED if moved else None
        elif any(status == TaskStatus.BLOCKED for status in statuses):
            moved = await self.store.transition_task(
                parent.id,
                open_statuses,
                TaskStatus.BLOCKED,
                error_message="A subtask is blocked",
            )
            new_status = TaskStatus.BLOCKED if moved else None

        if new_status is not None:
            logger.info(f"Parent task {parent.id} rolled up to {new_status.value}")
            await self.update_parent_status(parent.parent_task_id)
        return new_status

    async def _get_parent(self, parent_task_id: str) -> TaskModel:
        parent = await self.store.get_task(parent_task_id)
        if parent is None:
            raise TaskNotFoundError(f"Parent task {parent_task_id} not found")
        return parent

    def _check_depth(self, depth: int) -> None:
        if depth > self.max_depth:
            raise TaskDepthExceededError(
                f"Task depth {depth} exceeds maximum depth {self.max_depth}"
            )

    async def _check_child_capacity(self, parent: TaskModel, adding: int) -> None:
        existing = await self.store.count_children(parent.id)
        if existing + adding > self.max_subtasks:
            raise SubtaskLimitExceededError(
                f"Task {parent.id} has {existing} subtasks; adding {adding} would exceed "
                f"the limit of {self.max_subtasks}"
            )

    async def _check_dependencies(self, project_id: str, depends_on: list[str]) -> None:
        if not depends_on:
            return
        found = {task.id: task for task in await self.store.get_tasks(depends_on)}
        for dep_id in depends_on:
            dep = found.get(dep_id)
            if dep is None:
                raise InvalidDependencyError(f"Dependency {dep_id} does not exist")
            if dep.project_id != project_id:
                raise InvalidDependencyError(
                    f"Dependency {dep_id} belongs to project {dep.project_id}, not {project_id}"
                )


class TaskCreationError(Exception):
    """Raised when a task violates the hierarchy rules."""
    pass


class TaskDepthExceededError(TaskCreationError):
    """Raised when a task would be nested deeper than allowed."""
    pass


class SubtaskLimitExceededError(TaskCreationError):
    """Raised when a parent would have too many direct children."""
    pass


class InvalidDependencyError(TaskCreationError):
    """Raised when a dependency does not resolve within the project."""
    pass
