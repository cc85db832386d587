"""Goal decomposition into projects, team epics and work items."""

import logging
import os
import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from agentfleet.app.config import settings
from agentfleet.app.models import (
    DecompositionStrategy,
    GoalModel,
    OrganizationModel,
    ProjectModel,
    ProjectStatus,
    TaskModel,
    TaskPriority,
    TaskStatus,
    TaskType,
    TeamModel,
    new_id,
)
from agentfleet.llm.prompt_templates import (
    DECOMPOSITION_SYSTEM_PROMPT,
    HOUSE_CONVENTIONS,
    get_goal_decomposition_prompt,
)
from agentfleet.llm.provider import GenerationProvider
from agentfleet.llm.structured_output import StructuredOutputError, parse_structured
from agentfleet.orchestrator.dependency_graph import CyclicDependencyError, DependencyGraph
from agentfleet.orchestrator.goals import GoalAlreadyDecomposedError, GoalNotFoundError
from agentfleet.orchestrator.resource_planner import ResourcePlanner
from agentfleet.orchestrator.store import TaskGraphStore
from agentfleet.orchestrator.subtasks import SubtaskService
from agentfleet.orchestrator.team_affinity import (
    KeywordAffinityScorer,
    TeamAffinityScorer,
    select_team,
)

logger = logging.getLogger(__name__)

CONTEXT_PROJECT_LIMIT = 10
PROMPT_PROJECT_LIMIT = 5
EPIC_PRIORITY = TaskPriority.P2


class TaskDefinition(BaseModel):
    """One generated work item."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    priority: TaskPriority = TaskPriority.P3
    estimated_hours: float = Field(default=0.0, ge=0, alias="estimatedHours")
    required_skills: list[str] = Field(default_factory=list, alias="requiredSkills")
    dependencies: list[str] = Field(default_factory=list)
    acceptance_criteria: list[str] = Field(default_factory=list, alias="acceptanceCriteria")

    def routing_text(self) -> str:
        return f"{self.title} {self.description} {' '.join(self.required_skills)}"


class ProjectDefinition(BaseModel):
    """One generated project."""
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1, max_length=500)
    description: str = ""
    tasks: list[TaskDefinition] = Field(default_factory=list)


class DecompositionPayload(BaseModel):
    """Schema the generation provider must satisfy."""
    model_config = ConfigDict(extra="ignore")

    projects: list[ProjectDefinition]


class DecompositionOptions(BaseModel):
    """Caller options for one decomposition."""
    auto_assign: bool = False
    use_team_distribution: bool = True
    strategy: DecompositionStrategy = DecompositionStrategy.TASK_BASED


class DecompositionResult(BaseModel):
    """What a decomposition produced."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    projects: list[ProjectModel] = []
    tasks: list[TaskModel] = []
    project_count: int = 0
    task_count: int = 0
    strategy_used: DecompositionStrategy


def infer_task_type(definition: TaskDefinition) -> TaskType:
    """Best-effort task type from a work item's text."""
    text = definition.routing_text().lower()
    if re.search(r"\b(test|tests|testing|e2e|coverage)\b", text):
        return TaskType.TESTING
    if re.search(r"\b(doc|docs|documentation|readme|guide)\b", text):
        return TaskType.DOCUMENTATION
    if re.search(r"\b(fix|bug|defect|regression)\b", text):
        return TaskType.BUG_FIX
    if re.search(r"\b(research|investigate|spike|evaluate)\b", text):
        return TaskType.RESEARCH
    return TaskType.IMPLEMENTATION


def format_epic_description(team: TeamModel, project: ProjectModel, items: list[TaskDefinition]) -> str:
    """Aggregate the work items routed to one team into an epic description."""
    lines = [
        f"This is a Team Task containing {len(items)} work items for the {team.name} team "
        f"in project '{project.name}'. Break it down into concrete tasks for team members.",
        "",
    ]
    for index, item in enumerate(items, start=1):
        lines.append(f"## {index}. {item.title} [{item.priority.value}]")
        if item.description:
            lines.append(item.description)
        if item.estimated_hours:
            lines.append(f"Estimated hours: {item.estimated_hours:g}")
        if item.required_skills:
            lines.append(f"Skills: {', '.join(item.required_skills)}")
        if item.dependencies:
            lines.append(f"Depends on: {', '.join(item.dependencies)}")
        if item.acceptance_criteria:
            lines.append("Acceptance criteria:")
            lines.extend(f"- {criterion}" for criterion in item.acceptance_criteria)
        lines.append("")
    return "\n".join(lines).rstrip()


class GoalDecomposer:
    """Turns a goal into projects and tasks with one generation call."""

    def __init__(
        self,
        store: TaskGraphStore,
        provider: GenerationProvider,
        subtasks: SubtaskService,
        affinity_scorer: Optional[TeamAffinityScorer] = None,
        resource_planner: Optional[ResourcePlanner] = None,
    ):
        self.store = store
        self.provider = provider
        self.subtasks = subtasks
        self.affinity_scorer = affinity_scorer or KeywordAffinityScorer()
        self.resource_planner = resource_planner

    async def decompose(
        self,
        goal_id: str,
        options: Optional[DecompositionOptions] = None,
    ) -> DecompositionResult:
        """
        Decompose a goal.

        Args:
            goal_id: Goal to decompose
            options: Assignment and distribution options

        Returns:
            DecompositionResult with created projects and tasks

        Raises:
            GoalNotFoundError: If the goal does not exist
            GoalAlreadyDecomposedError: If the goal was decomposed before
            DecompositionParseError: If the generated plan is malformed
        """
        options = options or DecompositionOptions()

        goal = await self.store.get_goal(goal_id)
        if goal is None:
            raise GoalNotFoundError(f"Goal {goal_id} not found")
        if goal.auto_decomposed:
            raise GoalAlreadyDecomposedError(f"Goal {goal_id} is already decomposed")

        organization = await self.store.get_organization(goal.organization_id)
        teams = await self.store.list_teams(goal.organization_id)
        payload = await self._generate_plan(goal, teams)

        use_teams = options.use_team_distribution and bool(teams)
        if options.use_team_distribution and not teams:
            logger.info(f"Organization {goal.organization_id} has no teams; creating tasks directly")

        result_projects: list[ProjectModel] = []
        result_tasks: list[TaskModel] = []

        for definition in payload.projects:
            project = await self._create_project(goal, organization, definition)
            result_projects.append(project)
            if use_teams:
                result_tasks.extend(await self._create_team_epics(project, definition, teams))
            else:
                result_tasks.extend(await self._create_work_items(project, definition))

        if options.auto_assign and not use_teams and self.resource_planner is not None:
            for project in result_projects:
                try:
                    assignment = await self.resource_planner.assign_project(project.id)
                    logger.info(
                        f"Auto-assigned {assignment.assigned_count}/{assignment.total_tasks} "
                        f"tasks of project {project.name}"
                    )
                except Exception as e:
                    logger.error(f"Failed to assign project {project.id}: {e}", exc_info=True)

        strategy = DecompositionStrategy.TEAM_BASED if use_teams else options.strategy
        if not await self.store.mark_goal_decomposed(goal.id, strategy.value):
            logger.warning(f"Goal {goal.id} was marked decomposed concurrently")

        logger.info(
            f"Decomposed goal '{goal.title}' into {len(result_projects)} projects "
            f"and {len(result_tasks)} tasks ({strategy.value})"
        )
        return DecompositionResult(
            projects=result_projects,
            tasks=result_tasks,
            project_count=len(result_projects),
            task_count=len(result_tasks),
            strategy_used=strategy,
        )

    async def _generate_plan(self, goal: GoalModel, teams: list[TeamModel]) -> DecompositionPayload:
        recent_projects = await self.store.list_projects(
            organization_id=goal.organization_id,
            newest_first=True,
            limit=CONTEXT_PROJECT_LIMIT,
        )
        workers = await self.store.list_workers(goal.organization_id)
        team_skills = sorted({skill for team in teams for skill in team.skills or []})

        prompt = get_goal_decomposition_prompt(
            title=goal.title,
            description=goal.description or "",
            target_date=goal.target_date.date().isoformat() if goal.target_date else None,
            recent_projects=[
                (p.name, p.description or "") for p in recent_projects[:PROMPT_PROJECT_LIMIT]
            ],
            conventions=HOUSE_CONVENTIONS,
            team_skills=team_skills,
            worker_count=len(workers),
        )

        response = await self.provider.execute(
            prompt,
            system_prompt=DECOMPOSITION_SYSTEM_PROMPT,
            context={"goal_id": goal.id, "purpose": "decomposition"},
        )

        try:
            payload = parse_structured(response.output, DecompositionPayload)
        except StructuredOutputError as e:
            logger.error(f"Decomposition of goal {goal.id} returned malformed output: {e.detail}")
            raise DecompositionParseError(e.detail, response.output) from e

        # Reject cyclic plans before anything is written
        for project in payload.projects:
            try:
                DependencyGraph.from_titles(
                    [
                        (item.title, item.title, item.dependencies, item.estimated_hours)
                        for item in project.tasks
                    ]
                )
            except CyclicDependencyError as e:
                raise DecompositionParseError(str(e), response.output) from e
        return payload

    async def _create_project(
        self,
        goal: GoalModel,
        organization: Optional[OrganizationModel],
        definition: ProjectDefinition,
    ) -> ProjectModel:
        working_directory = organization.working_directory if organization else None
        repository_url = organization.repository_url if organization else None

        if not working_directory or not repository_url:
            existing = await self.store.list_projects(organization_id=goal.organization_id, limit=1)
            earliest = existing[0] if existing else None
            if earliest is not None:
                working_directory = working_directory or earliest.working_directory
                repository_url = repository_url or earliest.repository_url

        working_directory = working_directory or settings.default_working_directory or os.getcwd()
        repository_url = repository_url or f"file://{working_directory}"

        project = ProjectModel(
            id=new_id(),
            organization_id=goal.organization_id,
            goal_id=goal.id,
            name=definition.name,
            description=definition.description,
            status=ProjectStatus.ACTIVE.value,
            working_directory=working_directory,
            repository_url=repository_url,
        )
        return await self.store.add(project)

    async def _create_team_epics(
        self,
        project: ProjectModel,
        definition: ProjectDefinition,
        teams: list[TeamModel],
    ) -> list[TaskModel]:
        routed: dict[str, list[TaskDefinition]] = {}
        for item in definition.tasks:
            team = select_team(self.affinity_scorer, item.routing_text(), teams)
            routed.setdefault(team.id, []).append(item)

        epics = []
        for team in teams:
            items = routed.get(team.id)
            if not items:
                continue
            epic = await self.subtasks.create_task(
                organization_id=project.organization_id,
                project_id=project.id,
                title=f"{team.name}: {project.name}",
                description=format_epic_description(team, project, items),
                task_type=TaskType.TEAM_EPIC,
                priority=EPIC_PRIORITY,
                status=TaskStatus.PENDING.value,
                needs_planning=True,
                assigned_team_id=team.id,
                estimated_hours=sum(item.estimated_hours for item in items),
                work_items=[item.model_dump(by_alias=True, mode="json") for item in items],
            )
            epics.append(epic)
            logger.info(f"Created team epic '{epic.title}' with {len(items)} work items")
        return epics

    async def _create_work_items(
        self,
        project: ProjectModel,
        definition: ProjectDefinition,
    ) -> list[TaskModel]:
        keys = [new_id() for _ in definition.tasks]
        graph = DependencyGraph.from_titles(
            [
                (key, item.title, item.dependencies, item.estimated_hours)
                for key, item in zip(keys, definition.tasks)
            ]
        )

        # Create in dependency order so every depends_on id already exists
        by_key = dict(zip(keys, definition.tasks))
        created = []
        for level in graph.get_execution_order():
            for key in level:
                item = by_key[key]
                created.append(
                    await self.subtasks.create_task(
                        id=key,
                        organization_id=project.organization_id,
                        project_id=project.id,
                        title=item.title,
                        description=item.description,
                        task_type=infer_task_type(item),
                        priority=item.priority,
                        depends_on=graph.dependencies_of(key),
                        acceptance_criteria=list(item.acceptance_criteria),
                        required_skills=list(item.required_skills),
                        estimated_hours=item.estimated_hours,
                    )
                )
        return created


class DecompositionParseError(Exception):
    """Raised when the generated plan cannot be parsed."""

    def __init__(self, detail: str, raw_response: str):
        self.detail = detail
        self.response_excerpt = raw_response[:200]
        super().__init__(
            f"Failed to parse LLM response: {detail}. Response: {self.response_excerpt}"
        )
