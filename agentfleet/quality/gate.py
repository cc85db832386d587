"""Quality gate: validates one execution result and classifies failures."""

import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel

from agentfleet.app.config import settings
from agentfleet.app.models import TaskModel
from agentfleet.llm.provider import GenerationResult
from agentfleet.quality.lint_checker import LintChecker
from agentfleet.quality.output_checks import (
    CodeQualityCheck,
    CostBudgetCheck,
    FormatComplianceCheck,
    NonEmptyOutputCheck,
)
from agentfleet.quality.test_runner import TestRunner
from agentfleet.quality.type_checker import TypeChecker
from agentfleet.quality.validators import (
    GateContext,
    QualityGatePipeline,
    ValidationStatus,
)

logger = logging.getLogger(__name__)


class QualityGateResult(BaseModel):
    """Verdict on an execution result."""
    passed: bool
    should_retry: bool = False
    reason: Optional[str] = None
    gate_name: Optional[str] = None
    details: dict[str, Any] = {}
    warnings: list[str] = []


def build_default_pipeline() -> QualityGatePipeline:
    """Output checks first, then cost, then the external tools."""
    return QualityGatePipeline([
        NonEmptyOutputCheck(),
        FormatComplianceCheck(),
        CodeQualityCheck(),
        CostBudgetCheck(settings.cost_budget_fraction),
        LintChecker(settings.lint_timeout),
        TypeChecker(settings.type_check_timeout),
        TestRunner(settings.test_timeout),
    ])


class QualityGate:
    """Runs the validation pipeline and turns its results into a verdict."""

    def __init__(self, pipeline: Optional[QualityGatePipeline] = None):
        self.pipeline = pipeline or build_default_pipeline()

    async def validate(
        self,
        task: TaskModel,
        result: GenerationResult,
        cost_limit_daily_cents: Optional[int] = None,
        working_directory: Optional[str] = None,
    ) -> QualityGateResult:
        """
        Validate a task's execution result.

        Args:
            task: Task that was executed
            result: Provider output and cost
            cost_limit_daily_cents: Organization's daily cost limit
            working_directory: Project working directory for tool checks

        Returns:
            QualityGateResult; should_retry is False for failures a retry
            cannot fix
        """
        workdir = Path(working_directory) if working_directory else None
        if workdir is not None and not workdir.is_dir():
            workdir = None

        context = GateContext(
            task_id=task.id,
            task_type=task.type,
            output=result.output or "",
            cost_cents=result.cost.total_cost_cents,
            cost_limit_daily_cents=cost_limit_daily_cents,
            working_directory=workdir,
            affected_files=list(task.affected_files or []),
        )

        passed, results = await self.pipeline.run_all(context, stop_on_failure=True)
        warnings = [warning for r in results for warning in r.warnings]

        if passed:
            logger.info(f"Task {task.id} passed quality gate ({self.pipeline.summary(results)})")
            return QualityGateResult(passed=True, warnings=warnings)

        failure = next(
            r for r in results
            if r.status in (ValidationStatus.FAILED, ValidationStatus.ERROR)
        )
        return QualityGateResult(
            passed=False,
            should_retry=failure.retryable,
            reason=failure.error_message or f"{failure.gate_name} failed",
            gate_name=failure.gate_name,
            details=failure.details,
            warnings=warnings,
        )
