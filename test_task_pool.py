"""Tests for task pool selection and claiming."""

from datetime import timedelta

import pytest

from agentfleet.app.models import TaskStatus, TaskType, WorkerStatus, utcnow
from agentfleet.orchestrator.store import WorkerNotFoundError
from agentfleet.orchestrator.task_pool import (
    REASON_CLAIMED,
    REASON_DIRECT,
    REASON_NONE,
    REASON_NOT_IDLE,
    REASON_QUEUE,
    TaskPool,
)


@pytest.fixture
async def org(seed):
    return await seed.organization()


@pytest.fixture
async def project(seed, org):
    return await seed.project(org)


@pytest.fixture
def pool(store):
    return TaskPool(store)


async def test_directly_assigned_task_wins_over_priority_queue(seed, store, pool, org, project):
    worker = await seed.worker(org, "alice")
    await seed.task(project, "Urgent shared work", priority="P1")
    direct = await seed.task(project, "Alice's work", priority="P4", assigned_worker_id=worker.id)

    result = await pool.pull_next_task(worker.id)

    assert result.task.id == direct.id
    assert result.reason == REASON_DIRECT


async def test_queue_orders_by_priority_then_age(seed, pool, org, project):
    worker = await seed.worker(org)
    await seed.task(project, "Low", priority="P3")
    older_high = await seed.task(project, "High, older", priority="P1")
    await seed.task(project, "High, newer", priority="P1")

    result = await pool.pull_next_task(worker.id)

    assert result.task.id == older_high.id
    assert result.reason == REASON_QUEUE


async def test_claim_marks_task_in_progress_and_worker_busy(seed, store, pool, org, project):
    worker = await seed.worker(org)
    task = await seed.task(project, "Build API")

    result = await pool.pull_next_task(worker.id)

    assert result.task.status == TaskStatus.IN_PROGRESS
    assert result.task.assigned_worker_id == worker.id
    assert result.task.started_at is not None
    assert (await store.get_worker(worker.id)).status == WorkerStatus.BUSY
    assert (await store.get_task(task.id)).status == TaskStatus.IN_PROGRESS


async def test_shared_file_with_in_progress_task_blocks_pickup(seed, store, pool, org, project):
    other = await seed.worker(org, "busy", status=WorkerStatus.BUSY)
    worker = await seed.worker(org, "idle")
    await seed.task(
        project,
        "Running",
        status=TaskStatus.IN_PROGRESS,
        assigned_worker_id=other.id,
        affected_files=["src/api.py"],
    )
    await seed.task(project, "Also edits api", affected_files=["src/api.py", "src/models.py"])
    await seed.task(project, "Edits api again", affected_files=["src/api.py"])

    result = await pool.pull_next_task(worker.id)

    assert result.task is None
    assert result.reason == REASON_NONE
    assert (await store.get_worker(worker.id)).status == WorkerStatus.IDLE


async def test_conflicting_task_is_skipped_for_next_candidate(seed, pool, org, project):
    worker = await seed.worker(org)
    await seed.task(project, "Running", status=TaskStatus.IN_PROGRESS, affected_files=["a.py"])
    await seed.task(project, "Conflicts", priority="P1", affected_files=["a.py"])
    free = await seed.task(project, "Free", priority="P2", affected_files=["b.py"])

    result = await pool.pull_next_task(worker.id)

    assert result.task.id == free.id


async def test_files_in_other_projects_do_not_conflict(seed, pool, org, project):
    other_project = await seed.project(org, name="Other")
    worker = await seed.worker(org)
    await seed.task(other_project, "Running", status=TaskStatus.IN_PROGRESS, affected_files=["a.py"])
    task = await seed.task(project, "Same path elsewhere", affected_files=["a.py"])

    result = await pool.pull_next_task(worker.id)

    assert result.task.id == task.id


async def test_pending_task_waits_for_dependencies(seed, pool, org, project):
    worker = await seed.worker(org)
    dep = await seed.task(project, "First", status=TaskStatus.IN_REVIEW)
    await seed.task(project, "Second", status=TaskStatus.PENDING, depends_on=[dep.id])

    result = await pool.pull_next_task(worker.id)

    assert result.task is None
    assert result.reason == REASON_NONE


async def test_pending_task_with_completed_dependencies_is_eligible(seed, pool, org, project):
    worker = await seed.worker(org)
    dep = await seed.task(project, "First", status=TaskStatus.COMPLETED)
    task = await seed.task(project, "Second", status=TaskStatus.PENDING, depends_on=[dep.id])

    result = await pool.pull_next_task(worker.id)

    assert result.task.id == task.id


async def test_excluded_candidates(seed, pool, org, project):
    worker = await seed.worker(org)
    await seed.task(project, "Epic", status=TaskStatus.PENDING, type=TaskType.TEAM_EPIC.value)
    parent = await seed.task(project, "Parent waiting on children", priority="P1")
    await seed.task(project, "Child", status=TaskStatus.IN_REVIEW, parent_task_id=parent.id)
    await seed.task(project, "Backing off", blocked_until=utcnow() + timedelta(minutes=5))

    result = await pool.pull_next_task(worker.id)

    assert result.task is None


async def test_expired_backoff_is_eligible(seed, pool, org, project):
    worker = await seed.worker(org)
    task = await seed.task(project, "Retry", blocked_until=utcnow() - timedelta(minutes=1))

    result = await pool.pull_next_task(worker.id)

    assert result.task.id == task.id


async def test_other_teams_work_is_not_offered(seed, pool, org, project):
    backend = await seed.team(org, "Backend")
    frontend = await seed.team(org, "Frontend")
    worker = await seed.worker(org, team=frontend)
    await seed.task(project, "Backend only", priority="P1", assigned_team_id=backend.id)
    mine = await seed.task(project, "Frontend work", priority="P2", assigned_team_id=frontend.id)

    result = await pool.pull_next_task(worker.id)

    assert result.task.id == mine.id


async def test_task_assigned_to_someone_else_is_not_offered(seed, pool, org, project):
    other = await seed.worker(org, "other")
    worker = await seed.worker(org, "me")
    await seed.task(project, "Theirs", assigned_worker_id=other.id)

    result = await pool.pull_next_task(worker.id)

    assert result.task is None


async def test_busy_worker_gets_nothing(seed, pool, org, project):
    worker = await seed.worker(org, status=WorkerStatus.BUSY)
    await seed.task(project)

    result = await pool.pull_next_task(worker.id)

    assert result.task is None
    assert result.reason == REASON_NOT_IDLE


async def test_unknown_worker_raises(pool):
    with pytest.raises(WorkerNotFoundError):
        await pool.pull_next_task("missing")


async def test_lost_claim_returns_worker_to_idle(seed, store, pool, org, project, monkeypatch):
    worker = await seed.worker(org)
    task = await seed.task(project)

    async def lose_claim(task_id, worker_id):
        return False

    monkeypatch.setattr(store, "claim_task", lose_claim)

    result = await pool.pull_next_task(worker.id)

    assert result.task is None
    assert result.reason == REASON_CLAIMED
    assert (await store.get_worker(worker.id)).status == WorkerStatus.IDLE
    assert (await store.get_task(task.id)).status == TaskStatus.READY


async def test_overlap_found_after_claim_is_reverted(seed, store, pool, org, project, monkeypatch):
    worker = await seed.worker(org)
    task = await seed.task(project, affected_files=["shared.py"])

    original = store.get_locked_files
    calls = []

    async def racing_locks(project_id, exclude_task_id=None):
        calls.append(exclude_task_id)
        if exclude_task_id is not None:
            # A concurrent claim landed between selection and claim
            return {"shared.py"}
        return await original(project_id, exclude_task_id)

    monkeypatch.setattr(store, "get_locked_files", racing_locks)

    result = await pool.pull_next_task(worker.id)

    assert result.task is None
    assert result.reason == REASON_NONE
    reverted = await store.get_task(task.id)
    assert reverted.status == TaskStatus.READY
    assert reverted.assigned_worker_id is None
    assert (await store.get_worker(worker.id)).status == WorkerStatus.IDLE
    assert calls == [None, task.id]
