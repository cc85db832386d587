"""Team epic planning: a manager turns an epic into concrete tasks."""

import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from agentfleet.app.models import TaskModel, TaskStatus, TaskType, WorkerModel
from agentfleet.llm.prompt_templates import PLANNING_SYSTEM_PROMPT, get_team_planning_prompt
from agentfleet.llm.provider import GenerationProvider
from agentfleet.llm.structured_output import StructuredOutputError, parse_structured
from agentfleet.orchestrator.resource_planner import ResourcePlanner
from agentfleet.orchestrator.store import TaskGraphStore, TaskNotFoundError
from agentfleet.orchestrator.subtasks import SubtaskDefinition, SubtaskService

logger = logging.getLogger(__name__)


class TeamPlanPayload(BaseModel):
    """Schema of a team plan."""
    model_config = ConfigDict(extra="ignore")

    tasks: list[SubtaskDefinition] = Field(min_length=1)


def resolve_assignees(
    definitions: list[SubtaskDefinition],
    members: list[WorkerModel],
) -> dict[str, str]:
    """Map task titles to worker ids by case-insensitive member name."""
    by_name = {member.name.strip().lower(): member.id for member in members}
    assignees = {}
    for definition in definitions:
        if not definition.assignee:
            continue
        worker_id = by_name.get(definition.assignee.strip().lower())
        if worker_id is None:
            logger.warning(f"Unknown assignee '{definition.assignee}' for '{definition.title}'")
            continue
        assignees[definition.title] = worker_id
    return assignees


class TeamEpicPlanner:
    """Plans PENDING team epics into depth-1 tasks for the team."""

    def __init__(
        self,
        store: TaskGraphStore,
        provider: GenerationProvider,
        subtasks: SubtaskService,
        resource_planner: Optional[ResourcePlanner] = None,
    ):
        self.store = store
        self.provider = provider
        self.subtasks = subtasks
        self.resource_planner = resource_planner

    async def plan_epic(self, epic_id: str) -> list[TaskModel]:
        """
        Plan one team epic.

        The epic is claimed by flipping needs_planning off. If planning
        fails before any task is created, the flag is restored so the next
        sweep tries again.

        Returns:
            Created tasks; empty if another sweep claimed the epic first

        Raises:
            TeamPlanParseError: If the manager's plan is malformed
        """
        epic = await self.store.get_task(epic_id)
        if epic is None:
            raise TaskNotFoundError(f"Task {epic_id} not found")
        if epic.type != TaskType.TEAM_EPIC:
            raise ValueError(f"Task {epic_id} is not a team epic")

        if not await self.store.transition_task(
            epic_id,
            [TaskStatus.PENDING],
            only_if=[TaskModel.needs_planning.is_(True)],
            needs_planning=False,
        ):
            logger.info(f"Epic {epic_id} is already being planned")
            return []

        try:
            children = await self._plan(epic)
        except Exception:
            await self.store.transition_task(epic_id, [TaskStatus.PENDING], needs_planning=True)
            raise

        if self.resource_planner is not None:
            try:
                await self.resource_planner.assign_project(epic.project_id)
            except Exception as e:
                logger.error(f"Failed to assign project {epic.project_id}: {e}", exc_info=True)
        return children

    async def _plan(self, epic: TaskModel) -> list[TaskModel]:
        team = await self.store.get_team(epic.assigned_team_id) if epic.assigned_team_id else None
        members = (
            await self.store.list_workers(epic.organization_id, team_id=team.id) if team else []
        )

        prompt = get_team_planning_prompt(
            team_name=team.name if team else "unassigned",
            epic_title=epic.title,
            epic_description=epic.description or "",
            members=[(member.name, list(member.skills or [])) for member in members],
            max_tasks=self.subtasks.max_subtasks,
        )
        response = await self.provider.execute(
            prompt,
            system_prompt=PLANNING_SYSTEM_PROMPT,
            context={
                "task_id": epic.id,
                "manager_id": team.manager_worker_id if team else None,
                "purpose": "team_planning",
            },
        )

        try:
            payload = parse_structured(response.output, TeamPlanPayload)
        except StructuredOutputError as e:
            raise TeamPlanParseError(e.detail, response.output) from e

        definitions = payload.tasks
        if len(definitions) > self.subtasks.max_subtasks:
            logger.warning(
                f"Plan for epic {epic.id} has {len(definitions)} tasks; "
                f"keeping the first {self.subtasks.max_subtasks}"
            )
            definitions = definitions[: self.subtasks.max_subtasks]

        for definition in definitions:
            if definition.type == TaskType.TEAM_EPIC:
                definition.type = TaskType.IMPLEMENTATION

        children = await self.subtasks.create_subtasks(
            epic.id,
            definitions,
            reviewer_worker_id=team.manager_worker_id if team else None,
            assignees=resolve_assignees(definitions, members),
        )
        logger.info(f"Planned epic '{epic.title}' into {len(children)} tasks")
        return children


class TeamPlanParseError(Exception):
    """Raised when a team plan cannot be parsed."""

    def __init__(self, detail: str, raw_response: str):
        self.detail = detail
        self.response_excerpt = raw_response[:200]
        super().__init__(f"Invalid team plan: {detail}. Response: {self.response_excerpt}")
