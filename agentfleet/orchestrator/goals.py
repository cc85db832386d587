"""Goal service: CRUD, progress recording and aggregation."""

import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from agentfleet.app.models import (
    GoalModel,
    GoalProgressRecordModel,
    GoalStatus,
    new_id,
    utcnow,
)
from agentfleet.orchestrator.store import TaskGraphStore

logger = logging.getLogger(__name__)

COMPLETION_THRESHOLD = 100.0
IMPROVING_RATE_PER_DAY = 0.5


class ProgressUpdate(BaseModel):
    """One progress report against a goal."""
    progress_percent: float = Field(ge=0, le=100)
    current_value: Optional[float] = None
    note: Optional[str] = None
    recorded_by: Optional[str] = None


class ProgressTrend(BaseModel):
    """Direction of recent progress."""
    trend: str  # improving, stable, declining, insufficient_data
    rate_per_day: Optional[float] = None
    samples: int


class GoalService:
    """Operations on goals exposed to the API layer and the automation pipeline."""

    def __init__(self, store: TaskGraphStore):
        self.store = store

    async def create_goal(self, organization_id: str, title: str, **fields: Any) -> GoalModel:
        """Create a goal; status defaults to ACTIVE."""
        fields.setdefault("status", GoalStatus.ACTIVE.value)
        if fields.get("parent_goal_id"):
            await self.get_goal(fields["parent_goal_id"])
        goal = GoalModel(id=new_id(), organization_id=organization_id, title=title, **fields)
        goal = await self.store.add(goal)
        logger.info(f"Created goal {goal.id}: {title}")
        return goal

    async def get_goal(self, goal_id: str) -> GoalModel:
        """
        Load a goal.

        Raises:
            GoalNotFoundError: If the goal does not exist
        """
        goal = await self.store.get_goal(goal_id)
        if goal is None:
            raise GoalNotFoundError(f"Goal {goal_id} not found")
        return goal

    async def update_goal(self, goal_id: str, **values: Any) -> GoalModel:
        await self.get_goal(goal_id)
        if values:
            values["updated_at"] = utcnow()
            await self.store.update_goal(goal_id, **values)
        return await self.get_goal(goal_id)

    async def delete_goal(self, goal_id: str) -> None:
        """Delete a goal with its projects, tasks and progress records."""
        if not await self.store.delete_goal(goal_id):
            raise GoalNotFoundError(f"Goal {goal_id} not found")
        logger.info(f"Deleted goal {goal_id}")

    async def record_progress(self, goal_id: str, update: ProgressUpdate) -> GoalModel:
        """
        Append a progress record and update the goal.

        An ACTIVE goal reaching 100% becomes COMPLETED; lower values never
        change the status.

        Returns:
            The updated goal
        """
        goal = await self.get_goal(goal_id)
        await self.store.add_progress_record(
            goal_id,
            progress_percent=update.progress_percent,
            current_value=update.current_value,
            note=update.note,
            recorded_by=update.recorded_by,
        )

        if update.progress_percent >= COMPLETION_THRESHOLD and goal.status == GoalStatus.ACTIVE:
            if await self.store.complete_goal(goal_id, GoalStatus.ACTIVE, update.progress_percent):
                logger.info(f"Goal {goal_id} reached {update.progress_percent:g}% and is completed")

        return await self.get_goal(goal_id)

    async def get_progress_history(self, goal_id: str) -> list[GoalProgressRecordModel]:
        """Progress records, newest first."""
        await self.get_goal(goal_id)
        return await self.store.list_progress_records(goal_id)

    async def get_child_goals(self, goal_id: str) -> list[GoalModel]:
        """Direct child goals, oldest first."""
        await self.get_goal(goal_id)
        return await self.store.list_child_goals(goal_id)

    async def calculate_aggregated_progress(self, goal_id: str) -> float:
        """
        Unweighted mean of the direct children's progress.

        A goal without children reports its own progress.
        """
        goal = await self.get_goal(goal_id)
        children = await self.store.list_child_goals(goal_id)
        if not children:
            return goal.progress_percent
        return sum(child.progress_percent for child in children) / len(children)

    async def get_progress_trend(self, goal_id: str) -> ProgressTrend:
        """Rate of change between the two most recent progress records."""
        records = await self.get_progress_history(goal_id)
        if len(records) < 2:
            return ProgressTrend(trend="insufficient_data", samples=len(records))

        latest, previous = records[0], records[1]
        elapsed_days = _days_between(previous.recorded_at, latest.recorded_at)
        delta = latest.progress_percent - previous.progress_percent
        rate = delta / elapsed_days if elapsed_days > 0 else delta

        if rate > IMPROVING_RATE_PER_DAY:
            trend = "improving"
        elif rate < 0:
            trend = "declining"
        else:
            trend = "stable"
        return ProgressTrend(trend=trend, rate_per_day=round(rate, 3), samples=len(records))


def _days_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 86400


class GoalNotFoundError(Exception):
    """Raised when a goal does not exist."""
    pass


class GoalAlreadyDecomposedError(Exception):
    """Raised when decomposing a goal that was already decomposed."""
    pass
