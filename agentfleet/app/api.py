"""HTTP API: goals, projects, tasks and worker pulls."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from agentfleet.app.models import GoalStatus, ProjectModel, TaskStatus, new_id, utcnow
from agentfleet.app.schemas import (
    AggregatedProgressResponse,
    DecomposeResponse,
    GoalCreate,
    GoalResponse,
    GoalUpdate,
    ProgressRecordResponse,
    ProjectCreate,
    ProjectResponse,
    PullResponse,
    TaskCreate,
    TaskResponse,
    TaskUpdate,
)
from agentfleet.app.services import Services
from agentfleet.orchestrator.automation import SweepReport
from agentfleet.orchestrator.decomposer import DecompositionOptions, DecompositionParseError
from agentfleet.orchestrator.dependency_graph import CyclicDependencyError
from agentfleet.orchestrator.goal_tracking import RiskAssessment
from agentfleet.orchestrator.goals import (
    GoalAlreadyDecomposedError,
    GoalNotFoundError,
    ProgressTrend,
    ProgressUpdate,
)
from agentfleet.orchestrator.store import (
    ProjectNotFoundError,
    TaskNotFoundError,
    WorkerNotFoundError,
)
from agentfleet.orchestrator.subtasks import TaskCreationError

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _column_values(body: Any, exclude_unset: bool = True) -> dict[str, Any]:
    """Request body as column values: enums as their values, datetimes as naive UTC."""
    values = {}
    for key, value in body.model_dump(exclude_unset=exclude_unset).items():
        if hasattr(value, "value"):
            value = value.value
        elif isinstance(value, datetime):
            value = _naive_utc(value)
        values[key] = value
    return values


# ----------------------------------------------------------------------
# Goals
# ----------------------------------------------------------------------

@router.post("/goals", response_model=GoalResponse, status_code=status.HTTP_201_CREATED)
async def create_goal(body: GoalCreate, services: Services = Depends(get_services)):
    values = _column_values(body, exclude_unset=False)
    organization_id = values.pop("organization_id")
    title = values.pop("title")
    return await services.goals.create_goal(organization_id, title, **values)


@router.get("/goals", response_model=list[GoalResponse])
async def list_goals(
    organization_id: Optional[str] = None,
    goal_status: Optional[GoalStatus] = None,
    services: Services = Depends(get_services),
):
    return await services.store.list_goals(status=goal_status, organization_id=organization_id)


@router.get("/goals/{goal_id}", response_model=GoalResponse)
async def get_goal(goal_id: str, services: Services = Depends(get_services)):
    return await services.goals.get_goal(goal_id)


@router.patch("/goals/{goal_id}", response_model=GoalResponse)
async def update_goal(goal_id: str, body: GoalUpdate, services: Services = Depends(get_services)):
    return await services.goals.update_goal(goal_id, **_column_values(body))


@router.delete("/goals/{goal_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_goal(goal_id: str, services: Services = Depends(get_services)):
    await services.goals.delete_goal(goal_id)


@router.post(
    "/goals/{goal_id}/progress",
    response_model=GoalResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_progress(
    goal_id: str,
    body: ProgressUpdate,
    services: Services = Depends(get_services),
):
    return await services.goals.record_progress(goal_id, body)


@router.get("/goals/{goal_id}/progress", response_model=list[ProgressRecordResponse])
async def get_progress_history(goal_id: str, services: Services = Depends(get_services)):
    return await services.goals.get_progress_history(goal_id)


@router.get("/goals/{goal_id}/children", response_model=list[GoalResponse])
async def get_child_goals(goal_id: str, services: Services = Depends(get_services)):
    return await services.goals.get_child_goals(goal_id)


@router.get("/goals/{goal_id}/aggregated-progress", response_model=AggregatedProgressResponse)
async def get_aggregated_progress(goal_id: str, services: Services = Depends(get_services)):
    progress = await services.goals.calculate_aggregated_progress(goal_id)
    children = await services.goals.get_child_goals(goal_id)
    return AggregatedProgressResponse(
        goal_id=goal_id,
        progress_percent=progress,
        child_count=len(children),
    )


@router.get("/goals/{goal_id}/trend", response_model=ProgressTrend)
async def get_progress_trend(goal_id: str, services: Services = Depends(get_services)):
    return await services.goals.get_progress_trend(goal_id)


@router.get("/goals/{goal_id}/risk", response_model=RiskAssessment)
async def get_risk(goal_id: str, services: Services = Depends(get_services)):
    return await services.goal_tracker.analyze_risk(goal_id)


@router.post("/goals/{goal_id}/decompose", response_model=DecomposeResponse)
async def decompose_goal(
    goal_id: str,
    options: Optional[DecompositionOptions] = None,
    services: Services = Depends(get_services),
):
    result = await services.decomposer.decompose(goal_id, options)
    return DecomposeResponse(
        goal_id=goal_id,
        project_ids=[project.id for project in result.projects],
        task_ids=[task.id for task in result.tasks],
        project_count=result.project_count,
        task_count=result.task_count,
        strategy_used=result.strategy_used.value,
    )


# ----------------------------------------------------------------------
# Projects
# ----------------------------------------------------------------------

@router.post("/projects", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(body: ProjectCreate, services: Services = Depends(get_services)):
    if body.goal_id is not None:
        await services.goals.get_goal(body.goal_id)
    project = ProjectModel(id=new_id(), **_column_values(body, exclude_unset=False))
    return await services.store.add(project)


@router.get("/projects", response_model=list[ProjectResponse])
async def list_projects(
    organization_id: Optional[str] = None,
    goal_id: Optional[str] = None,
    services: Services = Depends(get_services),
):
    return await services.store.list_projects(organization_id=organization_id, goal_id=goal_id)


@router.get("/projects/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: str, services: Services = Depends(get_services)):
    project = await services.store.get_project(project_id)
    if project is None:
        raise ProjectNotFoundError(f"Project {project_id} not found")
    return project


@router.delete("/projects/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(project_id: str, services: Services = Depends(get_services)):
    if not await services.store.delete_project(project_id):
        raise ProjectNotFoundError(f"Project {project_id} not found")


# ----------------------------------------------------------------------
# Tasks
# ----------------------------------------------------------------------

@router.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(body: TaskCreate, services: Services = Depends(get_services)):
    project = await services.store.get_project(body.project_id)
    if project is None:
        raise ProjectNotFoundError(f"Project {body.project_id} not found")

    values = body.model_dump(
        exclude={"organization_id", "project_id", "title", "description", "type", "priority",
                 "parent_task_id", "depends_on"}
    )
    return await services.subtasks.create_task(
        organization_id=body.organization_id,
        project_id=body.project_id,
        title=body.title,
        description=body.description,
        task_type=body.type,
        priority=body.priority,
        parent_task_id=body.parent_task_id,
        depends_on=body.depends_on,
        **values,
    )


@router.get("/tasks", response_model=list[TaskResponse])
async def list_tasks(
    organization_id: Optional[str] = None,
    project_id: Optional[str] = None,
    task_status: Optional[TaskStatus] = None,
    parent_task_id: Optional[str] = None,
    services: Services = Depends(get_services),
):
    return await services.store.list_tasks(
        organization_id=organization_id,
        project_id=project_id,
        statuses=[task_status] if task_status else None,
        parent_task_id=parent_task_id,
    )


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, services: Services = Depends(get_services)):
    task = await services.store.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(f"Task {task_id} not found")
    return task


@router.patch("/tasks/{task_id}", response_model=TaskResponse)
async def update_task(task_id: str, body: TaskUpdate, services: Services = Depends(get_services)):
    values = _column_values(body)
    if values:
        values["updated_at"] = utcnow()
        if not await services.store.update_task(task_id, **values):
            raise TaskNotFoundError(f"Task {task_id} not found")
    return await get_task(task_id, services)


@router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: str, services: Services = Depends(get_services)):
    if not await services.store.delete_task(task_id):
        raise TaskNotFoundError(f"Task {task_id} not found")


@router.post("/tasks/{task_id}/unblock", response_model=TaskResponse)
async def unblock_task(task_id: str, services: Services = Depends(get_services)):
    task = await get_task(task_id, services)
    if not await services.retry_policy.unblock(task_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Task {task_id} is {task.status}, not blocked",
        )
    return await get_task(task_id, services)


# ----------------------------------------------------------------------
# Workers and automation
# ----------------------------------------------------------------------

@router.post("/workers/{worker_id}/pull", response_model=PullResponse)
async def pull_task(worker_id: str, services: Services = Depends(get_services)):
    result = await services.pool.pull_next_task(worker_id)
    return PullResponse(
        task=TaskResponse.model_validate(result.task) if result.task else None,
        reason=result.reason,
    )


@router.post("/automation/{sweep}/run", response_model=SweepReport)
async def run_sweep(sweep: str, services: Services = Depends(get_services)):
    if sweep not in services.pipeline.sweeps:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown sweep: {sweep}")
    return await services.scheduler.run_once(sweep)


# ----------------------------------------------------------------------
# Error mapping
# ----------------------------------------------------------------------

_ERROR_STATUS: dict[type, int] = {
    GoalNotFoundError: status.HTTP_404_NOT_FOUND,
    TaskNotFoundError: status.HTTP_404_NOT_FOUND,
    WorkerNotFoundError: status.HTTP_404_NOT_FOUND,
    ProjectNotFoundError: status.HTTP_404_NOT_FOUND,
    TaskCreationError: 422,
    CyclicDependencyError: 422,
    GoalAlreadyDecomposedError: status.HTTP_409_CONFLICT,
    DecompositionParseError: status.HTTP_502_BAD_GATEWAY,
}


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors to HTTP status codes."""

    async def handle_domain_error(request: Request, exc: Exception) -> JSONResponse:
        status_code = next(
            code for error_type, code in _ERROR_STATUS.items() if isinstance(exc, error_type)
        )
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    for error_type in _ERROR_STATUS:
        app.add_exception_handler(error_type, handle_domain_error)
