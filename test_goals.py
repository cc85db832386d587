"""Tests for goal progress, aggregation, trend and risk."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from agentfleet.app.models import (
    GoalProgressRecordModel,
    GoalStatus,
    TaskStatus,
    TaskType,
    utcnow,
)
from agentfleet.orchestrator.goal_tracking import GoalTracker, RiskLevel
from agentfleet.orchestrator.goals import GoalNotFoundError, GoalService, ProgressUpdate


@pytest.fixture
async def org(seed):
    return await seed.organization()


@pytest.fixture
def goals(store):
    return GoalService(store)


@pytest.fixture
def tracker(store):
    return GoalTracker(store)


async def test_full_progress_completes_goal(goals, org):
    goal = await goals.create_goal(org.id, "Launch")

    updated = await goals.record_progress(goal.id, ProgressUpdate(progress_percent=100, note="Shipped"))

    assert updated.status == GoalStatus.COMPLETED
    assert updated.progress_percent == 100
    assert updated.completed_at is not None
    history = await goals.get_progress_history(goal.id)
    assert [record.note for record in history] == ["Shipped"]


async def test_partial_progress_keeps_goal_active(goals, org):
    goal = await goals.create_goal(org.id, "Launch")

    updated = await goals.record_progress(
        goal.id, ProgressUpdate(progress_percent=99.9, current_value=42)
    )

    assert updated.status == GoalStatus.ACTIVE
    assert updated.progress_percent == 99.9
    assert updated.current_value == 42
    assert updated.completed_at is None


async def test_paused_goal_is_not_completed(seed, goals, org):
    goal = await seed.goal(org, status=GoalStatus.PAUSED)

    updated = await goals.record_progress(goal.id, ProgressUpdate(progress_percent=100))

    assert updated.status == GoalStatus.PAUSED
    assert updated.progress_percent == 100


def test_progress_is_bounded():
    with pytest.raises(ValidationError):
        ProgressUpdate(progress_percent=101)
    with pytest.raises(ValidationError):
        ProgressUpdate(progress_percent=-1)


async def test_aggregated_progress_is_mean_of_children(seed, goals, org):
    parent = await seed.goal(org, "Parent", progress_percent=10)
    await seed.goal(org, "A", parent_goal_id=parent.id, progress_percent=20)
    await seed.goal(org, "B", parent_goal_id=parent.id, progress_percent=60)

    assert await goals.calculate_aggregated_progress(parent.id) == 40


async def test_aggregated_progress_without_children_is_own_progress(seed, goals, org):
    goal = await seed.goal(org, progress_percent=35)

    assert await goals.calculate_aggregated_progress(goal.id) == 35


async def test_child_goal_requires_existing_parent(goals, org):
    with pytest.raises(GoalNotFoundError):
        await goals.create_goal(org.id, "Orphan", parent_goal_id="missing")


async def add_record(store, goal, progress, age_days):
    await store.add(
        GoalProgressRecordModel(
            goal_id=goal.id,
            progress_percent=progress,
            recorded_at=utcnow() - timedelta(days=age_days),
        )
    )


async def test_trend_from_two_latest_records(seed, store, goals, org):
    goal = await seed.goal(org)
    await add_record(store, goal, 0, 10)
    await add_record(store, goal, 10, 4)
    await add_record(store, goal, 20, 2)

    trend = await goals.get_progress_trend(goal.id)

    assert trend.trend == "improving"
    assert trend.rate_per_day == 5.0
    assert trend.samples == 3


async def test_trend_declining_and_insufficient(seed, store, goals, org):
    goal = await seed.goal(org)
    assert (await goals.get_progress_trend(goal.id)).trend == "insufficient_data"

    await add_record(store, goal, 50, 2)
    await add_record(store, goal, 40, 1)

    assert (await goals.get_progress_trend(goal.id)).trend == "declining"


async def test_delete_removes_projects_tasks_and_history(seed, store, goals, org):
    goal = await seed.goal(org)
    child = await seed.goal(org, "Child", parent_goal_id=goal.id)
    project = await seed.project(org, goal)
    task = await seed.task(project)
    await goals.record_progress(goal.id, ProgressUpdate(progress_percent=10))

    await goals.delete_goal(goal.id)

    assert await store.get_goal(goal.id) is None
    assert await store.get_project(project.id) is None
    assert await store.get_task(task.id) is None
    assert await store.list_progress_records(goal.id) == []
    assert (await store.get_goal(child.id)).parent_goal_id is None

    with pytest.raises(GoalNotFoundError):
        await goals.delete_goal(goal.id)


async def test_tracker_derives_progress_from_tasks(seed, store, tracker, org):
    goal = await seed.goal(org)
    project = await seed.project(org, goal)
    await seed.task(project, "Epic", status=TaskStatus.PENDING, type=TaskType.TEAM_EPIC.value)
    await seed.task(project, "Done", status=TaskStatus.COMPLETED)
    await seed.task(project, "Open", status=TaskStatus.IN_PROGRESS)
    await seed.task(project, "Dropped", status=TaskStatus.CANCELLED)

    assert await tracker.update_goal_progress(goal.id) == 50.0
    assert (await store.get_goal(goal.id)).progress_percent == 50.0


async def test_tracker_completes_goal_and_ancestors(seed, store, tracker, org):
    parent = await seed.goal(org, "Parent")
    child = await seed.goal(org, "Child", parent_goal_id=parent.id)
    project = await seed.project(org, child)
    await seed.task(project, status=TaskStatus.COMPLETED)

    await tracker.refresh_for_project(project.id)

    assert (await store.get_goal(child.id)).status == GoalStatus.COMPLETED
    finished_parent = await store.get_goal(parent.id)
    assert finished_parent.status == GoalStatus.COMPLETED
    assert finished_parent.progress_percent == 100.0


async def test_tracker_leaves_goal_without_work_alone(seed, tracker, org):
    goal = await seed.goal(org, progress_percent=30)

    assert await tracker.update_goal_progress(goal.id) is None


async def test_risk_levels(seed, tracker, org):
    now = utcnow()
    on_track = await seed.goal(
        org, "On track", start_date=now - timedelta(days=5), target_date=now + timedelta(days=5),
        progress_percent=50,
    )
    behind = await seed.goal(
        org, "Behind", start_date=now - timedelta(days=8), target_date=now + timedelta(days=2),
        progress_percent=10,
    )
    overdue = await seed.goal(org, "Overdue", target_date=now - timedelta(days=1), progress_percent=90)
    open_ended = await seed.goal(org, "Open ended")

    assert (await tracker.analyze_risk(on_track.id)).level == RiskLevel.NONE
    behind_risk = await tracker.analyze_risk(behind.id)
    assert behind_risk.level == RiskLevel.HIGH
    assert behind_risk.reasons
    assert (await tracker.analyze_risk(overdue.id)).level == RiskLevel.CRITICAL
    assert (await tracker.analyze_risk(open_ended.id)).level == RiskLevel.NONE


def test_models_package_reexports_model_modules():
    from agentfleet.app import models
    from agentfleet.app.models import goal, project, task, worker

    assert models.GoalModel is goal.GoalModel
    assert models.ProjectModel is project.ProjectModel
    assert models.TaskModel is task.TaskModel
    assert models.WorkerModel is worker.WorkerModel
    assert all(hasattr(models, name) for name in models.__all__)
