"""Base quality gate validator and validation pipeline."""

import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ValidationStatus(str, Enum):
    """Validation result status."""
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


class ValidationIssue(BaseModel):
    """Individual validation issue."""
    file: str
    line: Optional[int] = None
    column: Optional[int] = None
    severity: str  # error, warning, info
    message: str
    rule: Optional[str] = None


class ValidationResult(BaseModel):
    """Result from a quality gate validation."""
    gate_name: str
    status: ValidationStatus
    duration_seconds: float = 0.0
    retryable: bool = True
    issues: list[ValidationIssue] = []
    warnings: list[str] = []
    details: dict[str, Any] = {}
    output: Optional[str] = None
    error_message: Optional[str] = None


class GateContext(BaseModel):
    """Everything a validator may look at for one execution result."""
    task_id: str
    task_type: str
    output: str
    cost_cents: float = 0.0
    cost_limit_daily_cents: Optional[int] = None
    working_directory: Optional[Path] = None
    affected_files: list[str] = []

    def existing_files(self, suffixes: tuple[str, ...]) -> list[str]:
        """Affected files with the given suffixes that exist in the working directory."""
        if self.working_directory is None:
            return []
        return [
            f for f in self.affected_files
            if f.endswith(suffixes) and (self.working_directory / f).is_file()
        ]


class QualityGateValidator(ABC):
    """Base class for quality gate validators."""

    retryable: bool = True

    @abstractmethod
    async def validate(self, context: GateContext) -> ValidationResult:
        """
        Run validation and return result.

        Args:
            context: Execution result under validation

        Returns:
            ValidationResult with status and issues
        """
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of this quality gate."""
        pass

    def _is_skippable(self, context: GateContext) -> bool:
        """
        Check if this validator can be skipped.

        Subclasses override to skip validation when not applicable, for
        example tool checks for a task without affected files.
        """
        return False

    def _result(
        self,
        status: ValidationStatus,
        start_time: float,
        **fields: Any,
    ) -> ValidationResult:
        return ValidationResult(
            gate_name=self.name,
            status=status,
            duration_seconds=time.time() - start_time,
            retryable=self.retryable,
            **fields,
        )


class QualityGatePipeline:
    """Pipeline for running multiple quality gates in sequence."""

    def __init__(self, validators: Optional[list[QualityGateValidator]] = None):
        self.validators: list[QualityGateValidator] = list(validators or [])

    def add_validator(self, validator: QualityGateValidator) -> None:
        """
        Add validator to pipeline.

        Args:
            validator: Validator instance to add
        """
        self.validators.append(validator)

    async def run_all(
        self,
        context: GateContext,
        stop_on_failure: bool = True
    ) -> tuple[bool, list[ValidationResult]]:
        """
        Run all validators in pipeline.

        Args:
            context: Execution result under validation
            stop_on_failure: Stop pipeline if any validator fails

        Returns:
            Tuple of (all_passed, results_list)
        """
        results = []
        all_passed = True

        for validator in self.validators:
            logger.debug(f"Running quality gate '{validator.name}' for task {context.task_id}")

            if validator._is_skippable(context):
                results.append(ValidationResult(
                    gate_name=validator.name,
                    status=ValidationStatus.SKIPPED,
                    output="Skipped (not applicable)"
                ))
                continue

            try:
                result = await validator.validate(context)
            except Exception as e:
                logger.error(
                    f"Quality gate '{validator.name}' raised exception: {e}",
                    exc_info=True,
                )
                result = ValidationResult(
                    gate_name=validator.name,
                    status=ValidationStatus.ERROR,
                    error_message=f"{validator.name} check crashed: {e}"
                )

            results.append(result)
            for warning in result.warnings:
                logger.warning(f"Task {context.task_id}: {warning}")

            if result.status in (ValidationStatus.FAILED, ValidationStatus.ERROR):
                all_passed = False
                logger.warning(
                    f"Quality gate '{validator.name}' failed for task {context.task_id}: "
                    f"{result.error_message}"
                )
                if stop_on_failure:
                    break

        return all_passed, results

    def summary(self, results: list[ValidationResult]) -> str:
        """
        Generate summary of validation results.

        Args:
            results: List of validation results

        Returns:
            Human-readable summary string
        """
        counts = {status: 0 for status in ValidationStatus}
        for result in results:
            counts[result.status] += 1
        total_issues = sum(len(r.issues) for r in results)

        parts = [f"{counts[ValidationStatus.PASSED]}/{len(results)} passed"]
        if counts[ValidationStatus.FAILED]:
            parts.append(f"{counts[ValidationStatus.FAILED]} failed")
        if counts[ValidationStatus.ERROR]:
            parts.append(f"{counts[ValidationStatus.ERROR]} errors")
        if counts[ValidationStatus.SKIPPED]:
            parts.append(f"{counts[ValidationStatus.SKIPPED]} skipped")
        if total_issues:
            parts.append(f"{total_issues} issues")
        return ", ".join(parts)
