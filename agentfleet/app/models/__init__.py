"""Database models."""

from agentfleet.app.models.task import (
    TERMINAL_TASK_STATUSES,
    Base,
    TaskModel,
    TaskPriority,
    TaskStatus,
    TaskType,
    new_id,
    utcnow,
)
from agentfleet.app.models.project import ProjectModel, ProjectStatus
from agentfleet.app.models.worker import (
    OrganizationModel,
    TeamModel,
    WorkerModel,
    WorkerStatus,
)
from agentfleet.app.models.goal import (
    DecompositionStrategy,
    GoalModel,
    GoalProgressRecordModel,
    GoalStatus,
)

__all__ = [
    "TERMINAL_TASK_STATUSES",
    "Base",
    "TaskModel",
    "TaskPriority",
    "TaskStatus",
    "TaskType",
    "new_id",
    "utcnow",
    "ProjectModel",
    "ProjectStatus",
    "OrganizationModel",
    "TeamModel",
    "WorkerModel",
    "WorkerStatus",
    "DecompositionStrategy",
    "GoalModel",
    "GoalProgressRecordModel",
    "GoalStatus",
]
