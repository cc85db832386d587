"""Wiring of the orchestration services."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from agentfleet.llm.provider import GenerationProvider
from agentfleet.orchestrator.automation import AutomationPipeline, AutomationScheduler
from agentfleet.orchestrator.decomposer import GoalDecomposer
from agentfleet.orchestrator.escalation import RetryPolicy
from agentfleet.orchestrator.executor import TaskExecutor
from agentfleet.orchestrator.goal_tracking import GoalTracker
from agentfleet.orchestrator.goals import GoalService
from agentfleet.orchestrator.resource_planner import WorkloadResourcePlanner
from agentfleet.orchestrator.review_cycle import ReviewCycleController
from agentfleet.orchestrator.store import TaskGraphStore
from agentfleet.orchestrator.subtasks import SubtaskService
from agentfleet.orchestrator.task_pool import TaskPool
from agentfleet.orchestrator.team_affinity import KeywordAffinityScorer
from agentfleet.orchestrator.team_planner import TeamEpicPlanner
from agentfleet.quality.gate import QualityGate

logger = logging.getLogger(__name__)


class Services:
    """Every orchestration component, built over one store and one provider."""

    def __init__(
        self,
        store: TaskGraphStore,
        provider: GenerationProvider,
        quality_gate: Optional[QualityGate] = None,
        review_precedence: Optional[str] = None,
    ):
        self.store = store
        self.provider = provider
        self.subtasks = SubtaskService(store)
        self.goals = GoalService(store)
        self.goal_tracker = GoalTracker(store)
        self.resource_planner = WorkloadResourcePlanner(store)
        self.pool = TaskPool(store)
        self.retry_policy = RetryPolicy(store, self.subtasks)
        self.quality_gate = quality_gate or QualityGate()
        self.decomposer = GoalDecomposer(
            store,
            provider,
            self.subtasks,
            affinity_scorer=KeywordAffinityScorer(),
            resource_planner=self.resource_planner,
        )
        self.team_planner = TeamEpicPlanner(
            store, provider, self.subtasks, resource_planner=self.resource_planner
        )
        self.review = ReviewCycleController(
            store,
            provider,
            self.subtasks,
            goal_tracker=self.goal_tracker,
            review_precedence=review_precedence,
        )
        self.executor = TaskExecutor(
            store, provider, self.pool, self.quality_gate, self.retry_policy, self.review
        )
        self.pipeline = AutomationPipeline(
            store,
            self.decomposer,
            self.executor,
            self.review,
            self.team_planner,
            self.goal_tracker,
            self.retry_policy,
        )
        self.scheduler = AutomationScheduler(self.pipeline)


def build_services(
    session_factory: Optional[async_sessionmaker] = None,
    provider: Optional[GenerationProvider] = None,
) -> Services:
    """
    Build the services for the application.

    Args:
        session_factory: Session factory (default: the application's)
        provider: Generation provider (default: Bedrock)

    Returns:
        Services instance
    """
    if session_factory is None:
        from agentfleet.app.database import async_session
        session_factory = async_session
    if provider is None:
        from agentfleet.llm.bedrock_client import BedrockGenerationProvider
        provider = BedrockGenerationProvider()
        logger.info("Using Bedrock generation provider")

    return Services(TaskGraphStore(session_factory), provider)
