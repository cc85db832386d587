"""Shared fixtures: in-memory database, store, scripted provider and seed helpers."""

import json
from datetime import timedelta
from typing import Any, Optional

import pytest

from agentfleet.app.database import create_engine, create_session_factory, init_db
from agentfleet.app.models import (
    GoalModel,
    GoalStatus,
    OrganizationModel,
    ProjectModel,
    TaskModel,
    TaskStatus,
    TeamModel,
    WorkerModel,
    WorkerStatus,
    new_id,
    utcnow,
)
from agentfleet.llm.provider import GenerationCost, GenerationError, GenerationResult
from agentfleet.orchestrator.store import TaskGraphStore


class FakeProvider:
    """Generation provider that replays scripted outputs in order."""

    def __init__(self, outputs: Optional[list[Any]] = None, cost_cents: float = 0.5):
        self.outputs = list(outputs or [])
        self.cost_cents = cost_cents
        self.calls: list[dict[str, Any]] = []

    def queue(self, *outputs: Any) -> None:
        """Queue outputs; dicts are sent as JSON, exceptions are raised."""
        self.outputs.extend(outputs)

    async def execute(self, prompt, system_prompt=None, context=None) -> GenerationResult:
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt, "context": context or {}})
        if not self.outputs:
            raise GenerationError("No scripted output left")

        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        if isinstance(output, dict):
            output = json.dumps(output)
        return GenerationResult(
            output=output,
            cost=GenerationCost(input_tokens=100, output_tokens=50, total_cost_cents=self.cost_cents),
            duration_seconds=0.01,
        )


class Seeder:
    """Inserts rows directly, with strictly increasing created_at."""

    def __init__(self, store: TaskGraphStore):
        self.store = store
        self._base = utcnow() - timedelta(days=1)
        self._counter = 0

    def _next_created_at(self):
        self._counter += 1
        return self._base + timedelta(seconds=self._counter)

    async def organization(self, name: str = "Acme", **fields) -> OrganizationModel:
        return await self.store.add(
            OrganizationModel(id=new_id(), name=name, created_at=self._next_created_at(), **fields)
        )

    async def team(
        self,
        organization: OrganizationModel,
        name: str = "Backend",
        description: str = "",
        **fields,
    ) -> TeamModel:
        return await self.store.add(
            TeamModel(
                id=new_id(),
                organization_id=organization.id,
                name=name,
                description=description,
                created_at=self._next_created_at(),
                **fields,
            )
        )

    async def worker(
        self,
        organization: OrganizationModel,
        name: str = "worker",
        team: Optional[TeamModel] = None,
        status: WorkerStatus = WorkerStatus.IDLE,
        **fields,
    ) -> WorkerModel:
        return await self.store.add(
            WorkerModel(
                id=new_id(),
                organization_id=organization.id,
                team_id=team.id if team else None,
                name=name,
                status=status.value,
                created_at=self._next_created_at(),
                **fields,
            )
        )

    async def goal(
        self,
        organization: OrganizationModel,
        title: str = "Launch the product",
        status: GoalStatus = GoalStatus.ACTIVE,
        **fields,
    ) -> GoalModel:
        return await self.store.add(
            GoalModel(
                id=new_id(),
                organization_id=organization.id,
                title=title,
                status=status.value,
                created_at=self._next_created_at(),
                **fields,
            )
        )

    async def project(
        self,
        organization: OrganizationModel,
        goal: Optional[GoalModel] = None,
        name: str = "Core",
        **fields,
    ) -> ProjectModel:
        return await self.store.add(
            ProjectModel(
                id=new_id(),
                organization_id=organization.id,
                goal_id=goal.id if goal else None,
                name=name,
                created_at=self._next_created_at(),
                **fields,
            )
        )

    async def task(
        self,
        project: ProjectModel,
        title: str = "Task",
        status: TaskStatus = TaskStatus.READY,
        **fields,
    ) -> TaskModel:
        fields.setdefault("priority", "P3")
        return await self.store.add(
            TaskModel(
                id=new_id(),
                organization_id=project.organization_id,
                project_id=project.id,
                title=title,
                status=status.value,
                created_at=self._next_created_at(),
                **fields,
            )
        )


@pytest.fixture
async def db_engine():
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(db_engine) -> TaskGraphStore:
    return TaskGraphStore(create_session_factory(db_engine))


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def seed(store) -> Seeder:
    return Seeder(store)
