"""Tests for the automation sweeps and scheduler."""

from datetime import timedelta

import pytest

from agentfleet.app.models import GoalStatus, TaskStatus, TaskType, WorkerStatus, utcnow
from agentfleet.app.services import Services
from agentfleet.llm.provider import GenerationError
from agentfleet.orchestrator.automation import (
    SWEEP_DECOMPOSITION,
    SWEEP_GOAL_PROGRESS,
    SWEEP_STUCK_TASKS,
    AutomationScheduler,
    SweepConfig,
)
from agentfleet.orchestrator.review_cycle import PRECEDENCE_MANAGER, PRECEDENCE_SELF


CODE_OUTPUT = "def create_order(payload):\n    return {'status': 201, 'order': payload}\n"


def small_plan(name):
    return {"projects": [{"name": name, "tasks": [{"title": f"{name} work"}]}]}


@pytest.fixture
async def org(seed):
    return await seed.organization()


@pytest.fixture
def services(store, provider):
    return Services(store, provider, review_precedence=PRECEDENCE_MANAGER)


@pytest.fixture
def pipeline(services):
    return services.pipeline


async def test_decomposition_sweep_is_idempotent(seed, store, provider, pipeline, org):
    first = await seed.goal(org, "First")
    second = await seed.goal(org, "Second")
    await seed.goal(org, "Done already", auto_decomposed=True)
    await seed.goal(org, "Paused", status=GoalStatus.PAUSED)
    provider.queue(small_plan("Alpha"), small_plan("Beta"))

    report = await pipeline.run_decomposition_sweep()

    assert (report.selected, report.succeeded, report.failed) == (2, 2, 0)
    assert (await store.get_goal(first.id)).auto_decomposed is True
    assert (await store.get_goal(second.id)).auto_decomposed is True

    again = await pipeline.run_decomposition_sweep()

    assert again.selected == 0
    assert len(provider.calls) == 2


async def test_decomposition_failure_does_not_stop_the_sweep(seed, store, provider, pipeline, org):
    broken = await seed.goal(org, "Broken")
    healthy = await seed.goal(org, "Healthy")
    provider.queue("not json at all", small_plan("Gamma"))

    report = await pipeline.run_decomposition_sweep()

    assert (report.selected, report.succeeded, report.failed) == (2, 1, 1)
    assert (await store.get_goal(broken.id)).auto_decomposed is False
    assert (await store.get_goal(healthy.id)).auto_decomposed is True


async def test_execution_then_self_review_completes_task(seed, store, provider, pipeline, org):
    worker = await seed.worker(org)
    project = await seed.project(org)
    task = await seed.task(project, "Create orders endpoint", assigned_worker_id=worker.id)
    provider.queue(CODE_OUTPUT)

    report = await pipeline.run_execution_sweep()

    assert (report.selected, report.succeeded) == (1, 1)
    submitted = await store.get_task(task.id)
    assert submitted.status == TaskStatus.IN_REVIEW
    assert submitted.output == CODE_OUTPUT
    assert (await store.get_worker(worker.id)).status == WorkerStatus.BUSY

    provider.queue({"action": "complete", "reasoning": "Done"})
    review_report = await pipeline.run_task_review_sweep()

    assert review_report.succeeded == 1
    assert (await store.get_task(task.id)).status == TaskStatus.COMPLETED
    assert (await store.get_worker(worker.id)).status == WorkerStatus.IDLE


async def test_execution_error_goes_to_retry_policy(seed, store, provider, pipeline, org):
    worker = await seed.worker(org)
    project = await seed.project(org)
    task = await seed.task(project, assigned_worker_id=worker.id)
    provider.queue(GenerationError("throttled"))

    await pipeline.run_execution_sweep()

    retried = await store.get_task(task.id)
    assert retried.status == TaskStatus.READY
    assert retried.retry_count == 1
    assert "throttled" in retried.error_message
    assert retried.blocked_until is not None
    assert (await store.get_worker(worker.id)).status == WorkerStatus.IDLE


async def test_execution_skips_unassigned_and_waiting_work(seed, pipeline, org):
    worker = await seed.worker(org)
    project = await seed.project(org)
    dep = await seed.task(project, "Running", status=TaskStatus.IN_PROGRESS)
    await seed.task(project, "Unassigned")
    await seed.task(project, "Waiting", status=TaskStatus.PENDING, assigned_worker_id=worker.id, depends_on=[dep.id])

    report = await pipeline.run_execution_sweep()

    assert report.selected == 0


async def test_manager_rework_is_executed_again(seed, store, provider, pipeline, org):
    manager = await seed.worker(org, "manager")
    worker = await seed.worker(org, "developer", status=WorkerStatus.BUSY)
    project = await seed.project(org)
    task = await seed.task(
        project,
        "Create orders endpoint",
        status=TaskStatus.READY_FOR_REVIEW,
        assigned_worker_id=worker.id,
        reviewer_worker_id=manager.id,
        output=CODE_OUTPUT,
    )
    provider.queue({"action": "rework", "feedback": "Validate the payload"}, CODE_OUTPUT)

    report = await pipeline.run_manager_review_sweep()

    assert (report.selected, report.succeeded) == (1, 1)
    resubmitted = await store.get_task(task.id)
    assert resubmitted.status == TaskStatus.READY_FOR_REVIEW
    assert resubmitted.review_feedback == "Validate the payload"
    assert resubmitted.review_count == 1
    assert "Validate the payload" in provider.calls[1]["prompt"]


async def test_manager_rework_on_locked_files_waits(seed, store, provider, pipeline, org):
    manager = await seed.worker(org, "manager")
    worker = await seed.worker(org, "developer", status=WorkerStatus.BUSY)
    project = await seed.project(org)
    await seed.task(project, "Migrate schema", status=TaskStatus.IN_PROGRESS, affected_files=["src/orders.py"])
    task = await seed.task(
        project,
        "Create orders endpoint",
        status=TaskStatus.READY_FOR_REVIEW,
        assigned_worker_id=worker.id,
        reviewer_worker_id=manager.id,
        affected_files=["src/orders.py"],
        output=CODE_OUTPUT,
    )
    provider.queue({"action": "rework", "feedback": "Validate the payload"})

    report = await pipeline.run_manager_review_sweep()

    assert report.succeeded == 1
    assert len(provider.calls) == 1
    held = await store.get_task(task.id)
    assert held.status == TaskStatus.READY
    assert held.assigned_worker_id == worker.id
    assert (await store.get_worker(worker.id)).status == WorkerStatus.IDLE


async def test_manager_sweep_is_idle_under_self_precedence(seed, store, provider, org):
    services = Services(store, provider, review_precedence=PRECEDENCE_SELF)
    manager = await seed.worker(org, "manager")
    project = await seed.project(org)
    await seed.task(project, status=TaskStatus.READY_FOR_REVIEW, reviewer_worker_id=manager.id)

    report = await services.pipeline.run_manager_review_sweep()

    assert report.selected == 0
    assert provider.calls == []


async def test_team_planning_sweep_plans_epics_once(seed, store, provider, pipeline, org):
    manager = await seed.worker(org, "manager")
    team = await seed.team(org, "Backend", manager_worker_id=manager.id)
    alice = await seed.worker(org, "Alice", team=team)
    project = await seed.project(org)
    epic = await seed.task(
        project,
        "Backend: Core",
        status=TaskStatus.PENDING,
        type=TaskType.TEAM_EPIC.value,
        needs_planning=True,
        assigned_team_id=team.id,
    )
    provider.queue(
        {
            "tasks": [
                {"title": "Schema", "assignee": "alice", "type": "team_epic"},
                {"title": "API", "dependencies": ["Schema"]},
            ]
        }
    )

    report = await pipeline.run_team_planning_sweep()

    assert (report.selected, report.succeeded) == (1, 1)
    children = {child.title: child for child in await store.list_children(epic.id)}
    assert children["Schema"].assigned_worker_id == alice.id
    assert children["Schema"].type == TaskType.IMPLEMENTATION
    assert children["API"].depends_on == [children["Schema"].id]
    assert {child.reviewer_worker_id for child in children.values()} == {manager.id}
    assert (await store.get_task(epic.id)).needs_planning is False

    again = await pipeline.run_team_planning_sweep()
    assert again.selected == 0


async def test_failed_planning_is_retried_later(seed, store, provider, pipeline, org):
    team = await seed.team(org, "Backend")
    project = await seed.project(org)
    epic = await seed.task(
        project,
        "Backend: Core",
        status=TaskStatus.PENDING,
        type=TaskType.TEAM_EPIC.value,
        needs_planning=True,
        assigned_team_id=team.id,
    )
    provider.queue({"tasks": []})

    report = await pipeline.run_team_planning_sweep()

    assert report.failed == 1
    assert (await store.get_task(epic.id)).needs_planning is True
    assert await store.count_children(epic.id) == 0


async def test_goal_progress_sweep(seed, store, pipeline, org):
    goal = await seed.goal(org)
    project = await seed.project(org, goal)
    await seed.task(project, status=TaskStatus.COMPLETED)
    await seed.task(project, status=TaskStatus.READY)
    await seed.goal(org, "Nothing tracked")

    report = await pipeline.run_goal_progress_sweep()

    assert (report.selected, report.succeeded, report.skipped) == (2, 1, 1)
    assert (await store.get_goal(goal.id)).progress_percent == 50.0


async def test_stuck_task_sweep_requeues_stale_work(seed, store, pipeline, org):
    worker = await seed.worker(org, status=WorkerStatus.BUSY)
    project = await seed.project(org)
    stale = await seed.task(
        project,
        "Stale",
        status=TaskStatus.IN_PROGRESS,
        assigned_worker_id=worker.id,
        started_at=utcnow() - timedelta(hours=3),
    )
    recent = await seed.task(
        project,
        "Recent",
        status=TaskStatus.IN_PROGRESS,
        started_at=utcnow() - timedelta(minutes=10),
    )

    report = await pipeline.run_stuck_task_sweep()

    assert (report.selected, report.succeeded) == (1, 1)
    requeued = await store.get_task(stale.id)
    assert requeued.status == TaskStatus.READY
    assert requeued.retry_count == 1
    assert "Stuck in progress" in requeued.error_message
    assert (await store.get_worker(worker.id)).status == WorkerStatus.IDLE
    assert (await store.get_task(recent.id)).status == TaskStatus.IN_PROGRESS


async def test_stuck_task_sweep_is_scheduled(pipeline):
    assert SWEEP_STUCK_TASKS in pipeline.sweeps
    assert pipeline.configs[SWEEP_STUCK_TASKS].interval_seconds == 1800


async def test_run_once_rejects_unknown_sweep(pipeline):
    scheduler = AutomationScheduler(pipeline)

    with pytest.raises(ValueError):
        await scheduler.run_once("nonexistent")


async def test_run_once_reports_crashing_sweep(pipeline, monkeypatch):
    async def crash():
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(pipeline, "run_goal_progress_sweep", crash)
    scheduler = AutomationScheduler(pipeline)

    report = await scheduler.run_once(SWEEP_GOAL_PROGRESS)

    assert report.failed == 1


async def test_scheduler_start_and_stop(pipeline):
    pipeline.configs = {
        name: SweepConfig(interval_seconds=3600, batch_size=1) for name in pipeline.sweeps
    }
    scheduler = AutomationScheduler(pipeline)

    scheduler.start()
    assert scheduler.running is True
    assert SWEEP_DECOMPOSITION in scheduler._tasks

    await scheduler.stop()
    assert scheduler.running is False
