"""Tests for task creation limits and parent rollup."""

import pytest

from agentfleet.app.models import TaskStatus, TaskType
from agentfleet.orchestrator.dependency_graph import CyclicDependencyError
from agentfleet.orchestrator.subtasks import (
    InvalidDependencyError,
    SubtaskDefinition,
    SubtaskLimitExceededError,
    SubtaskService,
    TaskDepthExceededError,
)


@pytest.fixture
async def org(seed):
    return await seed.organization()


@pytest.fixture
async def project(seed, org):
    return await seed.project(org)


@pytest.fixture
def subtasks(store):
    return SubtaskService(store)


async def create_chain(subtasks, org, project, length):
    parent_id = None
    tasks = []
    for depth in range(length):
        task = await subtasks.create_task(
            org.id, project.id, f"Level {depth}", parent_task_id=parent_id
        )
        tasks.append(task)
        parent_id = task.id
    return tasks


async def test_depth_is_derived_from_parent(subtasks, org, project):
    chain = await create_chain(subtasks, org, project, 4)

    assert [task.depth for task in chain] == [0, 1, 2, 3]


async def test_creation_beyond_max_depth_raises(subtasks, store, org, project):
    chain = await create_chain(subtasks, org, project, 4)

    with pytest.raises(TaskDepthExceededError):
        await subtasks.create_task(org.id, project.id, "Too deep", parent_task_id=chain[-1].id)
    with pytest.raises(TaskDepthExceededError):
        await subtasks.create_subtasks(chain[-1].id, [SubtaskDefinition(title="Too deep")])

    assert await store.count_children(chain[-1].id) == 0


async def test_child_limit_is_enforced(subtasks, store, org, project):
    parent = await subtasks.create_task(org.id, project.id, "Parent")
    await subtasks.create_subtasks(
        parent.id, [SubtaskDefinition(title=f"Child {i}") for i in range(10)]
    )

    with pytest.raises(SubtaskLimitExceededError):
        await subtasks.create_task(org.id, project.id, "Eleventh", parent_task_id=parent.id)

    assert await store.count_children(parent.id) == 10


async def test_oversized_batch_writes_nothing(subtasks, store, org, project):
    parent = await subtasks.create_task(org.id, project.id, "Parent")

    with pytest.raises(SubtaskLimitExceededError):
        await subtasks.create_subtasks(
            parent.id, [SubtaskDefinition(title=f"Child {i}") for i in range(11)]
        )

    assert await store.count_children(parent.id) == 0


async def test_status_follows_dependencies(subtasks, org, project):
    first = await subtasks.create_task(org.id, project.id, "First")
    second = await subtasks.create_task(org.id, project.id, "Second", depends_on=[first.id])

    assert first.status == TaskStatus.READY
    assert second.status == TaskStatus.PENDING
    assert second.depends_on == [first.id]


async def test_dependency_in_other_project_is_rejected(seed, subtasks, org, project):
    other_project = await seed.project(org, name="Other")
    foreign = await subtasks.create_task(org.id, other_project.id, "Elsewhere")

    with pytest.raises(InvalidDependencyError):
        await subtasks.create_task(org.id, project.id, "Needs foreign", depends_on=[foreign.id])


async def test_unknown_dependency_is_rejected(subtasks, org, project):
    with pytest.raises(InvalidDependencyError):
        await subtasks.create_task(org.id, project.id, "Needs ghost", depends_on=["missing"])


async def test_batch_dependencies_resolve_by_title(seed, subtasks, org, project):
    team = await seed.team(org)
    reviewer = await seed.worker(org, "manager", team=team)
    member = await seed.worker(org, "dev", team=team)
    parent = await subtasks.create_task(org.id, project.id, "Epic", assigned_team_id=team.id)

    children = await subtasks.create_subtasks(
        parent.id,
        [
            SubtaskDefinition(title="Schema", type=TaskType.IMPLEMENTATION),
            SubtaskDefinition(title="Endpoints", dependencies=["schema"]),
            SubtaskDefinition(title="Tests", type=TaskType.TESTING, dependencies=["Endpoints", "Nope"]),
        ],
        reviewer_worker_id=reviewer.id,
        assignees={"Endpoints": member.id},
    )

    schema, endpoints, tests = children
    assert schema.status == TaskStatus.READY
    assert endpoints.depends_on == [schema.id]
    assert endpoints.status == TaskStatus.PENDING
    assert tests.depends_on == [endpoints.id]
    assert endpoints.assigned_worker_id == member.id
    assert all(child.depth == 1 for child in children)
    assert all(child.assigned_team_id == team.id for child in children)
    assert all(child.reviewer_worker_id == reviewer.id for child in children)


async def test_cyclic_batch_writes_nothing(subtasks, store, org, project):
    parent = await subtasks.create_task(org.id, project.id, "Parent")

    with pytest.raises(CyclicDependencyError):
        await subtasks.create_subtasks(
            parent.id,
            [
                SubtaskDefinition(title="A", dependencies=["B"]),
                SubtaskDefinition(title="B", dependencies=["A"]),
            ],
        )

    assert await store.count_children(parent.id) == 0


async def test_parent_completes_when_all_children_complete(seed, subtasks, store, org, project):
    root = await seed.task(project, "Root", status=TaskStatus.PENDING)
    parent = await seed.task(project, "Parent", status=TaskStatus.PENDING, parent_task_id=root.id, depth=1)
    await seed.task(project, "A", status=TaskStatus.COMPLETED, parent_task_id=parent.id, depth=2)
    await seed.task(project, "B", status=TaskStatus.COMPLETED, parent_task_id=parent.id, depth=2)

    moved = await subtasks.update_parent_status(parent.id)

    assert moved == TaskStatus.COMPLETED
    assert (await store.get_task(parent.id)).completed_at is not None
    assert (await store.get_task(root.id)).status == TaskStatus.COMPLETED


async def test_parent_blocked_when_a_child_is_blocked(seed, subtasks, store, org, project):
    parent = await seed.task(project, "Parent", status=TaskStatus.PENDING)
    await seed.task(project, "A", status=TaskStatus.COMPLETED, parent_task_id=parent.id, depth=1)
    await seed.task(project, "B", status=TaskStatus.BLOCKED, parent_task_id=parent.id, depth=1)

    assert await subtasks.update_parent_status(parent.id) == TaskStatus.BLOCKED
    assert (await store.get_task(parent.id)).status == TaskStatus.BLOCKED


async def test_parent_untouched_while_children_open(seed, subtasks, store, org, project):
    parent = await seed.task(project, "Parent", status=TaskStatus.PENDING)
    await seed.task(project, "A", status=TaskStatus.COMPLETED, parent_task_id=parent.id, depth=1)
    await seed.task(project, "B", status=TaskStatus.IN_PROGRESS, parent_task_id=parent.id, depth=1)

    assert await subtasks.update_parent_status(parent.id) is None
    assert (await store.get_task(parent.id)).status == TaskStatus.PENDING
