"""Goal tracking: progress derived from work, and schedule risk."""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from agentfleet.app.models import GoalModel, GoalStatus, utcnow
from agentfleet.orchestrator.goals import COMPLETION_THRESHOLD, GoalNotFoundError
from agentfleet.orchestrator.store import TaskGraphStore

logger = logging.getLogger(__name__)


class RiskLevel(str, Enum):
    """Schedule risk of a goal."""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskAssessment(BaseModel):
    """Risk analysis of one goal."""
    goal_id: str
    level: RiskLevel
    actual_progress: float
    expected_progress: Optional[float] = None
    gap: Optional[float] = None
    reasons: list[str] = []


class GoalTracker:
    """Keeps goal progress in step with the tasks and child goals beneath it."""

    def __init__(self, store: TaskGraphStore):
        self.store = store

    async def update_goal_progress(self, goal_id: str) -> Optional[float]:
        """
        Recompute a goal's progress.

        Child goals win: their average is used when any exist. Otherwise
        progress is the share of completed work items across the goal's
        projects. A goal with neither is left untouched.

        Returns:
            The new progress, or None if nothing could be computed
        """
        goal = await self.store.get_goal(goal_id)
        if goal is None:
            raise GoalNotFoundError(f"Goal {goal_id} not found")
        if goal.status != GoalStatus.ACTIVE:
            return None

        progress = await self._derive_progress(goal)
        if progress is None:
            return None
        progress = round(progress, 2)

        if progress >= COMPLETION_THRESHOLD:
            if await self.store.complete_goal(goal.id, GoalStatus.ACTIVE, progress):
                logger.info(f"Goal '{goal.title}' completed: all tracked work is done")
        elif progress != goal.progress_percent:
            await self.store.update_goal(goal.id, progress_percent=progress, updated_at=utcnow())
            logger.debug(f"Goal {goal.id} progress {goal.progress_percent:g}% -> {progress:g}%")
        return progress

    async def refresh_for_project(self, project_id: str) -> None:
        """Update the goal owning a project, and its ancestors."""
        project = await self.store.get_project(project_id)
        if project is None or project.goal_id is None:
            return

        goal_id = project.goal_id
        seen = set()
        while goal_id and goal_id not in seen:
            seen.add(goal_id)
            await self.update_goal_progress(goal_id)
            goal = await self.store.get_goal(goal_id)
            goal_id = goal.parent_goal_id if goal else None

    async def analyze_risk(self, goal_id: str) -> RiskAssessment:
        """
        Compare actual progress with linear progress toward the target date.

        Returns:
            RiskAssessment; goals without a target date carry no risk
        """
        goal = await self.store.get_goal(goal_id)
        if goal is None:
            raise GoalNotFoundError(f"Goal {goal_id} not found")

        actual = goal.progress_percent
        if goal.status == GoalStatus.COMPLETED or goal.target_date is None:
            return RiskAssessment(goal_id=goal.id, level=RiskLevel.NONE, actual_progress=actual)

        now = utcnow()
        if now > goal.target_date and actual < COMPLETION_THRESHOLD:
            return RiskAssessment(
                goal_id=goal.id,
                level=RiskLevel.CRITICAL,
                actual_progress=actual,
                expected_progress=COMPLETION_THRESHOLD,
                gap=actual - COMPLETION_THRESHOLD,
                reasons=["Target date has passed"],
            )

        start = goal.start_date or goal.created_at
        total = (goal.target_date - start).total_seconds()
        elapsed = (now - start).total_seconds()
        expected = 0.0 if total <= 0 else max(0.0, min(100.0, elapsed / total * 100))
        gap = actual - expected

        if gap <= -30:
            level = RiskLevel.HIGH
        elif gap <= -15:
            level = RiskLevel.MEDIUM
        elif gap <= -5:
            level = RiskLevel.LOW
        else:
            level = RiskLevel.NONE

        reasons = []
        if level != RiskLevel.NONE:
            reasons.append(f"Progress is {abs(gap):.0f} points behind schedule")
        return RiskAssessment(
            goal_id=goal.id,
            level=level,
            actual_progress=actual,
            expected_progress=round(expected, 2),
            gap=round(gap, 2),
            reasons=reasons,
        )

    async def _derive_progress(self, goal: GoalModel) -> Optional[float]:
        children = await self.store.list_child_goals(goal.id)
        if children:
            return sum(child.progress_percent for child in children) / len(children)

        projects = await self.store.list_projects(goal_id=goal.id)
        completed, total = await self.store.count_project_tasks([p.id for p in projects])
        if total == 0:
            return None
        return completed / total * 100
