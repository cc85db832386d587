"""Review cycle: worker self-review and manager review of delivered tasks."""

import asyncio
import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from agentfleet.app.config import settings
from agentfleet.app.models import (
    TaskModel,
    TaskStatus,
    WorkerModel,
    WorkerStatus,
    new_id,
    utcnow,
)
from agentfleet.git.change_set import ChangeSetInspector
from agentfleet.llm.prompt_templates import (
    REVIEW_SYSTEM_PROMPT,
    get_manager_review_prompt,
    get_self_review_prompt,
)
from agentfleet.llm.provider import GenerationProvider
from agentfleet.llm.structured_output import StructuredOutputError, parse_structured
from agentfleet.orchestrator.dependency_graph import CyclicDependencyError
from agentfleet.orchestrator.goal_tracking import GoalTracker
from agentfleet.orchestrator.store import TaskGraphStore, TaskNotFoundError, WorkerNotFoundError
from agentfleet.orchestrator.subtasks import SubtaskDefinition, SubtaskService, TaskCreationError

logger = logging.getLogger(__name__)

PRECEDENCE_MANAGER = "manager"
PRECEDENCE_SELF = "self"


class ReviewAction(str, Enum):
    """Possible review decisions."""
    COMPLETE = "complete"
    REWORK = "rework"
    ADD_TASKS = "add_tasks"
    REDIRECT = "redirect"


class ReviewDecision(BaseModel):
    """A reviewer's decision, parsed strictly from model output."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: ReviewAction
    reasoning: str = ""
    feedback: Optional[str] = None
    subtasks: list[SubtaskDefinition] = Field(default_factory=list)
    target_worker_id: Optional[str] = Field(default=None, alias="targetWorkerId")

    @model_validator(mode="after")
    def _check_subtasks(self) -> "ReviewDecision":
        if self.action == ReviewAction.ADD_TASKS and not self.subtasks:
            raise ValueError("add_tasks requires at least one subtask")
        return self


class ReviewOutcome(BaseModel):
    """What applying (or attempting) a review did to a task."""
    task_id: str
    action: Optional[ReviewAction] = None
    applied: bool = False
    status: Optional[TaskStatus] = None
    created_task_ids: list[str] = []
    reassigned_to: Optional[str] = None
    downgraded: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None


def parse_review_decision(content: str) -> ReviewDecision:
    """
    Parse a review decision, failing closed.

    Raises:
        ReviewParseError: If the output is not a valid decision
    """
    try:
        return parse_structured(content, ReviewDecision)
    except StructuredOutputError as e:
        raise ReviewParseError(e.detail, content) from e


def _append_feedback(existing: Optional[str], feedback: Optional[str]) -> Optional[str]:
    if not feedback:
        return existing
    return f"{existing}\n\n{feedback}" if existing else feedback


class ReviewCycleController:
    """
    Drives tasks from READY_FOR_REVIEW to a final decision.

    Two layers review work: the worker itself, and a temporary reviewer
    acting for the team manager. Which layer handles a task that has a
    reviewer assigned is set by review_precedence. Every transition is
    conditional on the task still being IN_REVIEW, so a task one layer has
    finished is skipped by the other.

    A task gets at most max_review_count reviews. Unparseable decisions
    count toward the limit, and a review at the limit that does not
    complete the task blocks it for an operator.
    """

    def __init__(
        self,
        store: TaskGraphStore,
        provider: GenerationProvider,
        subtasks: SubtaskService,
        goal_tracker: Optional[GoalTracker] = None,
        change_sets: Optional[ChangeSetInspector] = None,
        review_precedence: Optional[str] = None,
        max_review_count: Optional[int] = None,
    ):
        self.store = store
        self.provider = provider
        self.subtasks = subtasks
        self.goal_tracker = goal_tracker
        self.change_sets = change_sets or ChangeSetInspector()
        self.review_precedence = review_precedence or settings.review_precedence
        self.max_review_count = (
            settings.max_review_count if max_review_count is None else max_review_count
        )

    @property
    def manager_first(self) -> bool:
        return self.review_precedence == PRECEDENCE_MANAGER

    async def route_for_review(self, task_id: str) -> Optional[str]:
        """
        Send a READY_FOR_REVIEW task to the right review layer.

        Returns:
            "manager" if it waits for the manager-review sweep, "self" if it
            moved to IN_REVIEW for self-review, None if it was not routable
        """
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if task.status != TaskStatus.READY_FOR_REVIEW:
            return None

        if self.manager_first and task.reviewer_worker_id:
            logger.info(f"Task {task_id} awaits manager review by {task.reviewer_worker_id}")
            return PRECEDENCE_MANAGER

        if await self.store.transition_task(
            task_id, [TaskStatus.READY_FOR_REVIEW], TaskStatus.IN_REVIEW
        ):
            logger.info(f"Task {task_id} moved to self-review")
            return PRECEDENCE_SELF
        return None

    async def run_self_review(self, task_id: str) -> ReviewOutcome:
        """
        Let the assigned worker review its own latest output.

        Raises:
            ReviewParseError: If the worker's decision is malformed; the
                attempt counts as a review and the task stays IN_REVIEW for
                the next sweep, or is BLOCKED at the review limit
        """
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if task.status != TaskStatus.IN_REVIEW:
            return ReviewOutcome(task_id=task_id, reason=f"Task is {task.status}, not in review")

        prompt = get_self_review_prompt(
            title=task.title,
            description=task.description or "",
            acceptance_criteria=list(task.acceptance_criteria or []),
            output=task.output or "",
            review_count=task.review_count,
            max_reviews=self.max_review_count,
        )
        response = await self.provider.execute(
            prompt,
            system_prompt=REVIEW_SYSTEM_PROMPT,
            context={"task_id": task.id, "worker_id": task.assigned_worker_id, "purpose": "self_review"},
        )
        try:
            decision = parse_review_decision(response.output)
        except ReviewParseError as e:
            await self._record_unusable_review(task, e.detail, TaskStatus.IN_REVIEW)
            raise
        logger.info(f"Self-review of task {task.id}: {decision.action.value}")
        return await self.apply_decision(task.id, decision)

    async def run_manager_reviews(self, manager_id: str, task_ids: list[str]) -> list[ReviewOutcome]:
        """
        Review a batch of tasks on a manager's behalf.

        One temporary reviewer worker is spawned for the batch and removed
        afterwards. A failing item is returned to READY_FOR_REVIEW and does
        not stop the rest of the batch; an unparseable decision also counts
        toward the task's review limit.

        Returns:
            One outcome per task id, in order

        Raises:
            WorkerNotFoundError: If the manager does not exist
        """
        manager = await self.store.get_worker(manager_id)
        if manager is None:
            raise WorkerNotFoundError(f"Manager {manager_id} not found")

        reviewer = await self.store.add(
            WorkerModel(
                id=new_id(),
                organization_id=manager.organization_id,
                team_id=manager.team_id,
                name=f"Reviewer-{manager.id[:8]}",
                status=WorkerStatus.BUSY.value,
                skills=list(manager.skills or []),
                is_temporary=True,
                created_by_worker_id=manager.id,
                last_heartbeat=utcnow(),
            )
        )
        logger.info(f"Spawned {reviewer.name} for {len(task_ids)} tasks of manager {manager.name}")

        outcomes = []
        try:
            for task_id in task_ids:
                if not await self.store.transition_task(
                    task_id, [TaskStatus.READY_FOR_REVIEW], TaskStatus.IN_REVIEW
                ):
                    outcomes.append(ReviewOutcome(task_id=task_id, reason="Task already claimed"))
                    continue
                try:
                    outcomes.append(await self._review_for_manager(task_id, manager, reviewer))
                except ReviewParseError as e:
                    logger.error(f"Manager review of task {task_id} was unusable: {e}")
                    task = await self.store.get_task(task_id)
                    if task is not None:
                        await self._record_unusable_review(
                            task, e.detail, TaskStatus.READY_FOR_REVIEW
                        )
                    outcomes.append(ReviewOutcome(task_id=task_id, error=str(e)))
                except Exception as e:
                    logger.error(f"Manager review of task {task_id} failed: {e}", exc_info=True)
                    await self.store.transition_task(
                        task_id, [TaskStatus.IN_REVIEW], TaskStatus.READY_FOR_REVIEW
                    )
                    outcomes.append(ReviewOutcome(task_id=task_id, error=str(e)))
        finally:
            await self.store.delete_worker(reviewer.id)
            logger.debug(f"Removed temporary reviewer {reviewer.name}")
        return outcomes

    async def apply_decision(
        self,
        task_id: str,
        decision: ReviewDecision,
        reviewer_id: Optional[str] = None,
    ) -> ReviewOutcome:
        """
        Apply a review decision to a task that is IN_REVIEW.

        Args:
            task_id: Task under review
            decision: Parsed decision
            reviewer_id: Reviewer acting on the task (None for self-review)

        Returns:
            ReviewOutcome; applied is False if the task had already left review
        """
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if task.status != TaskStatus.IN_REVIEW:
            return ReviewOutcome(
                task_id=task_id,
                action=decision.action,
                reason=f"Task is {task.status}, not in review",
            )

        if (
            decision.action != ReviewAction.COMPLETE
            and task.review_count + 1 >= self.max_review_count
        ):
            return await self._block_at_review_limit(task, decision)
        if decision.action == ReviewAction.COMPLETE:
            return await self._complete(task, decision)
        if decision.action == ReviewAction.REWORK:
            return await self._rework(task, decision.feedback or decision.reasoning)
        if decision.action == ReviewAction.ADD_TASKS:
            return await self._add_tasks(task, decision, reviewer_id)
        return await self._redirect(task, decision)

    async def _review_for_manager(
        self,
        task_id: str,
        manager: WorkerModel,
        reviewer: WorkerModel,
    ) -> ReviewOutcome:
        task = await self.store.get_task(task_id)
        project = await self.store.get_project(task.project_id)
        working_directory = project.working_directory if project else None

        change_set = await asyncio.to_thread(
            self.change_sets.inspect, working_directory, list(task.affected_files or [])
        )
        change_text = change_set.render() if change_set else ""
        if not change_text:
            change_text = "(no repository changes found; judge from the worker report)"

        members = await self.store.list_workers(manager.organization_id, team_id=manager.team_id)
        prompt = get_manager_review_prompt(
            title=task.title,
            description=task.description or "",
            acceptance_criteria=list(task.acceptance_criteria or []),
            output=task.output or "",
            change_set=change_text,
            team_members=[(w.id, w.name) for w in members if w.id != task.assigned_worker_id],
            review_count=task.review_count,
            max_reviews=self.max_review_count,
        )
        response = await self.provider.execute(
            prompt,
            system_prompt=REVIEW_SYSTEM_PROMPT,
            context={
                "task_id": task.id,
                "reviewer_id": reviewer.id,
                "manager_id": manager.id,
                "purpose": "manager_review",
            },
        )
        decision = parse_review_decision(response.output)
        logger.info(f"{reviewer.name} recommends {decision.action.value} for task {task.id}")
        return await self.apply_decision(task.id, decision, reviewer_id=manager.id)

    async def _complete(self, task: TaskModel, decision: ReviewDecision) -> ReviewOutcome:
        if not await self.store.transition_task(
            task.id,
            [TaskStatus.IN_REVIEW],
            TaskStatus.COMPLETED,
            completed_at=utcnow(),
            review_count=TaskModel.review_count + 1,
            review_feedback=_append_feedback(task.review_feedback, decision.feedback),
        ):
            return ReviewOutcome(task_id=task.id, action=decision.action, reason="Task left review")

        await self.store.release_worker(task.assigned_worker_id, completed=True)
        logger.info(f"Task {task.id} completed: {decision.reasoning or 'approved'}")
        await self.subtasks.update_parent_status(task.parent_task_id)
        if self.goal_tracker is not None:
            await self.goal_tracker.refresh_for_project(task.project_id)
        return ReviewOutcome(
            task_id=task.id,
            action=ReviewAction.COMPLETE,
            applied=True,
            status=TaskStatus.COMPLETED,
        )

    async def _rework(
        self,
        task: TaskModel,
        feedback: Optional[str],
        downgraded: bool = False,
    ) -> ReviewOutcome:
        """
        Send a task back to its worker.

        The task goes straight to IN_PROGRESS unless its affected files are
        locked by other in-progress work of the project. In that case it is
        requeued as READY for the same worker, and the pool hands it back
        once the files are free.
        """
        files = set(task.affected_files or [])
        review_values = {
            "review_count": TaskModel.review_count + 1,
            "review_feedback": _append_feedback(task.review_feedback, feedback),
        }

        locked = await self.store.get_locked_files(task.project_id, exclude_task_id=task.id)
        if files & locked:
            return await self._requeue_rework(task, [TaskStatus.IN_REVIEW], downgraded, **review_values)

        if not await self.store.transition_task(
            task.id,
            [TaskStatus.IN_REVIEW],
            TaskStatus.IN_PROGRESS,
            started_at=utcnow(),
            **review_values,
        ):
            return ReviewOutcome(task_id=task.id, action=ReviewAction.REWORK, reason="Task left review")

        # A worker may have claimed an overlapping task since the check above.
        locked = await self.store.get_locked_files(task.project_id, exclude_task_id=task.id)
        if files & locked:
            return await self._requeue_rework(task, [TaskStatus.IN_PROGRESS], downgraded)

        logger.info(f"Task {task.id} sent back for rework")
        return ReviewOutcome(
            task_id=task.id,
            action=ReviewAction.REWORK,
            applied=True,
            status=TaskStatus.IN_PROGRESS,
            downgraded=downgraded,
            reason=feedback,
        )

    async def _requeue_rework(
        self,
        task: TaskModel,
        from_statuses: list[TaskStatus],
        downgraded: bool,
        **values,
    ) -> ReviewOutcome:
        if not await self.store.transition_task(task.id, from_statuses, TaskStatus.READY, **values):
            return ReviewOutcome(task_id=task.id, action=ReviewAction.REWORK, reason="Task left review")

        await self.store.release_worker(task.assigned_worker_id)
        logger.info(
            f"Rework of task {task.id} waits for locked files; "
            f"requeued for worker {task.assigned_worker_id}"
        )
        return ReviewOutcome(
            task_id=task.id,
            action=ReviewAction.REWORK,
            applied=True,
            status=TaskStatus.READY,
            downgraded=downgraded,
            reason="Affected files are locked by in-progress work",
        )

    async def _block_at_review_limit(self, task: TaskModel, decision: ReviewDecision) -> ReviewOutcome:
        reason = (
            f"Review limit of {self.max_review_count} reached without completion "
            f"(last decision: {decision.action.value})"
        )
        detail = decision.feedback or decision.reasoning
        if not await self._block(task, f"{reason}: {detail}" if detail else reason, decision.feedback):
            return ReviewOutcome(task_id=task.id, action=decision.action, reason="Task left review")
        return ReviewOutcome(
            task_id=task.id,
            action=decision.action,
            applied=True,
            status=TaskStatus.BLOCKED,
            reason=reason,
        )

    async def _record_unusable_review(
        self,
        task: TaskModel,
        detail: str,
        return_to: TaskStatus,
    ) -> None:
        """Count an unparseable review; block the task at the review limit."""
        if task.review_count + 1 >= self.max_review_count:
            await self._block(
                task,
                f"No usable review decision after {task.review_count + 1} reviews: {detail}",
            )
            return
        await self.store.transition_task(
            task.id,
            [TaskStatus.IN_REVIEW],
            return_to,
            review_count=TaskModel.review_count + 1,
        )

    async def _block(self, task: TaskModel, reason: str, feedback: Optional[str] = None) -> bool:
        if not await self.store.transition_task(
            task.id,
            [TaskStatus.IN_REVIEW],
            TaskStatus.BLOCKED,
            error_message=reason,
            review_count=TaskModel.review_count + 1,
            review_feedback=_append_feedback(task.review_feedback, feedback),
        ):
            return False

        await self.store.release_worker(task.assigned_worker_id, failed=True)
        logger.error(f"Task {task.id} blocked: {reason}. Manual intervention required.")
        await self.subtasks.update_parent_status(task.parent_task_id)
        return True

    async def _add_tasks(
        self,
        task: TaskModel,
        decision: ReviewDecision,
        reviewer_id: Optional[str],
    ) -> ReviewOutcome:
        try:
            children = await self.subtasks.create_subtasks(
                task.id,
                decision.subtasks,
                reviewer_worker_id=reviewer_id or task.reviewer_worker_id,
            )
        except (TaskCreationError, CyclicDependencyError) as e:
            logger.warning(f"Follow-up tasks for {task.id} rejected, falling back to rework: {e}")
            feedback = _append_feedback(f"Follow-up tasks could not be created: {e}", decision.feedback)
            return await self._rework(task, feedback, downgraded=True)

        child_ids = [child.id for child in children]
        depends_on = list(task.depends_on or []) + child_ids
        if not await self.store.transition_task(
            task.id,
            [TaskStatus.IN_REVIEW],
            TaskStatus.PENDING,
            depends_on=depends_on,
            review_count=TaskModel.review_count + 1,
            review_feedback=_append_feedback(task.review_feedback, decision.feedback),
        ):
            logger.warning(
                f"Task {task.id} left review while its follow-up tasks were created; "
                f"removing {len(child_ids)} follow-up tasks"
            )
            for child_id in child_ids:
                await self.store.delete_task(child_id)
            return ReviewOutcome(
                task_id=task.id,
                action=ReviewAction.ADD_TASKS,
                reason="Task left review",
            )

        await self.store.release_worker(task.assigned_worker_id)
        logger.info(f"Task {task.id} waits on {len(child_ids)} follow-up tasks")
        return ReviewOutcome(
            task_id=task.id,
            action=ReviewAction.ADD_TASKS,
            applied=True,
            status=TaskStatus.PENDING,
            created_task_ids=child_ids,
        )

    async def _redirect(self, task: TaskModel, decision: ReviewDecision) -> ReviewOutcome:
        target = await self._redirect_target(task, decision.target_worker_id)
        target_id = target.id if target else None

        if not await self.store.transition_task(
            task.id,
            [TaskStatus.IN_REVIEW],
            TaskStatus.READY,
            assigned_worker_id=target_id,
            review_count=TaskModel.review_count + 1,
            review_feedback=_append_feedback(task.review_feedback, decision.feedback),
        ):
            return ReviewOutcome(task_id=task.id, action=ReviewAction.REDIRECT, reason="Task left review")

        await self.store.release_worker(task.assigned_worker_id)
        logger.info(
            f"Task {task.id} redirected to {target.name if target else 'the shared queue'}"
        )
        return ReviewOutcome(
            task_id=task.id,
            action=ReviewAction.REDIRECT,
            applied=True,
            status=TaskStatus.READY,
            reassigned_to=target_id,
        )

    async def _redirect_target(
        self,
        task: TaskModel,
        requested_id: Optional[str],
    ) -> Optional[WorkerModel]:
        """Requested worker if valid, else an idle teammate, else nobody."""
        if requested_id and requested_id != task.assigned_worker_id:
            requested = await self.store.get_worker(requested_id)
            if (
                requested is not None
                and not requested.is_temporary
                and requested.organization_id == task.organization_id
            ):
                return requested
            logger.warning(f"Ignoring invalid redirect target {requested_id} for task {task.id}")

        current = await self.store.get_worker(task.assigned_worker_id) if task.assigned_worker_id else None
        team_id = current.team_id if current and current.team_id else task.assigned_team_id
        if team_id is None:
            return None

        teammates = await self.store.list_workers(
            task.organization_id, team_id=team_id, status=WorkerStatus.IDLE
        )
        for worker in teammates:
            if worker.id != task.assigned_worker_id:
                return worker
        return None


class ReviewParseError(Exception):
    """Raised when a review decision cannot be parsed."""

    def __init__(self, detail: str, raw_response: str):
        self.detail = detail
        self.response_excerpt = raw_response[:200]
        super().__init__(f"Invalid review decision: {detail}. Response: {self.response_excerpt}")
