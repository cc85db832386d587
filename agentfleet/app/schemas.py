"""Request and response schemas for the HTTP API."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from agentfleet.app.models import GoalStatus, TaskPriority, TaskStatus, TaskType
from agentfleet.app.models.project import ProjectStatus


class GoalCreate(BaseModel):
    """Request body for creating a goal."""
    organization_id: str
    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    team_id: Optional[str] = None
    owner_worker_id: Optional[str] = None
    parent_goal_id: Optional[str] = None
    goal_type: str = "objective"
    priority: TaskPriority = TaskPriority.P3
    status: GoalStatus = GoalStatus.ACTIVE
    target_date: Optional[datetime] = None
    start_date: Optional[datetime] = None


class GoalUpdate(BaseModel):
    """Request body for editing a goal. Only provided fields change."""
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    team_id: Optional[str] = None
    owner_worker_id: Optional[str] = None
    goal_type: Optional[str] = None
    priority: Optional[TaskPriority] = None
    status: Optional[GoalStatus] = None
    target_date: Optional[datetime] = None
    start_date: Optional[datetime] = None


class GoalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    team_id: Optional[str] = None
    owner_worker_id: Optional[str] = None
    parent_goal_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    goal_type: Optional[str] = None
    priority: Optional[str] = None
    status: str
    target_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    progress_percent: float
    current_value: Optional[float] = None
    auto_decomposed: bool
    decomposition_strategy: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProgressRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    goal_id: str
    progress_percent: float
    current_value: Optional[float] = None
    note: Optional[str] = None
    recorded_by: Optional[str] = None
    recorded_at: Optional[datetime] = None


class AggregatedProgressResponse(BaseModel):
    goal_id: str
    progress_percent: float
    child_count: int


class DecomposeResponse(BaseModel):
    """Summary of a decomposition."""
    goal_id: str
    project_ids: list[str]
    task_ids: list[str]
    project_count: int
    task_count: int
    strategy_used: str


class ProjectCreate(BaseModel):
    """Request body for creating a project."""
    organization_id: str
    goal_id: Optional[str] = None
    name: str = Field(min_length=1, max_length=500)
    description: str = ""
    status: ProjectStatus = ProjectStatus.ACTIVE
    working_directory: Optional[str] = None
    repository_url: Optional[str] = None


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    goal_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    status: str
    working_directory: Optional[str] = None
    repository_url: Optional[str] = None
    created_at: Optional[datetime] = None


class TaskCreate(BaseModel):
    """Request body for creating a task."""
    organization_id: str
    project_id: str
    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    type: TaskType = TaskType.IMPLEMENTATION
    priority: TaskPriority = TaskPriority.P3
    parent_task_id: Optional[str] = None
    depends_on: list[str] = Field(default_factory=list)
    affected_files: list[str] = Field(default_factory=list)
    acceptance_criteria: list[str] = Field(default_factory=list)
    required_skills: list[str] = Field(default_factory=list)
    estimated_hours: float = Field(default=0.0, ge=0)
    assigned_worker_id: Optional[str] = None
    assigned_team_id: Optional[str] = None
    reviewer_worker_id: Optional[str] = None


class TaskUpdate(BaseModel):
    """Request body for editing a task. Only provided fields change."""
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None
    affected_files: Optional[list[str]] = None
    acceptance_criteria: Optional[list[str]] = None
    required_skills: Optional[list[str]] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    assigned_worker_id: Optional[str] = None
    assigned_team_id: Optional[str] = None
    reviewer_worker_id: Optional[str] = None


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    project_id: str
    parent_task_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    type: str
    status: str
    priority: str
    depth: int
    depends_on: list[str] = []
    affected_files: list[str] = []
    acceptance_criteria: list[str] = []
    required_skills: list[str] = []
    estimated_hours: Optional[float] = None
    assigned_worker_id: Optional[str] = None
    assigned_team_id: Optional[str] = None
    reviewer_worker_id: Optional[str] = None
    retry_count: int
    review_count: int
    needs_planning: bool
    output: Optional[str] = None
    review_feedback: Optional[str] = None
    error_message: Optional[str] = None
    blocked_until: Optional[datetime] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PullResponse(BaseModel):
    """Result of a worker pull."""
    task: Optional[TaskResponse] = None
    reason: str
