"""Checks that look only at the execution output and its cost."""

import logging
import re
import time

from agentfleet.app.models import TaskType
from agentfleet.quality.validators import (
    GateContext,
    QualityGateValidator,
    ValidationResult,
    ValidationStatus,
)

logger = logging.getLogger(__name__)

MIN_OUTPUT_LENGTH = 10

# Anchored patterns apply to the start of the output; the rest match anywhere
ERROR_PATTERNS = [
    re.compile(r"^Error:", re.IGNORECASE),
    re.compile(r"^Fatal:", re.IGNORECASE),
    re.compile(r"^Exception:", re.IGNORECASE),
    re.compile(r"command not found", re.IGNORECASE),
    re.compile(r"permission denied", re.IGNORECASE),
]

CODE_INDICATOR = re.compile(
    r"```|\bdef \w+\(|\bclass \w+|\bfunction\b|\bimport\b|\bconst \w+|\breturn\b|=>|\bexport\b"
)
CODE_TASK_TYPES = (TaskType.IMPLEMENTATION, TaskType.BUG_FIX)
CODE_CHECK_MIN_LENGTH = 100

INCOMPLETE_MARKER = re.compile(r"\b(TODO|FIXME|XXX|HACK)\b")
LONG_LINE_LENGTH = 200
MAX_LONG_LINES = 5


class NonEmptyOutputCheck(QualityGateValidator):
    """Rejects empty or suspiciously short output."""

    @property
    def name(self) -> str:
        return "Non-empty result"

    async def validate(self, context: GateContext) -> ValidationResult:
        start_time = time.time()
        length = len(context.output.strip())
        if length < MIN_OUTPUT_LENGTH:
            return self._result(
                ValidationStatus.FAILED,
                start_time,
                error_message=f"Result is empty or too short ({length} chars)",
                details={"length": length},
            )
        return self._result(ValidationStatus.PASSED, start_time)


class FormatComplianceCheck(QualityGateValidator):
    """Rejects output that is an error message rather than a result."""

    @property
    def name(self) -> str:
        return "Format compliance"

    async def validate(self, context: GateContext) -> ValidationResult:
        start_time = time.time()
        output = context.output.strip()

        for pattern in ERROR_PATTERNS:
            if pattern.search(output):
                return self._result(
                    ValidationStatus.FAILED,
                    start_time,
                    error_message=(
                        f"Output contains error messages (matched error pattern "
                        f"'{pattern.pattern}')"
                    ),
                    details={"pattern": pattern.pattern},
                )

        warnings = []
        if (
            context.task_type in CODE_TASK_TYPES
            and len(output) > CODE_CHECK_MIN_LENGTH
            and not CODE_INDICATOR.search(output)
        ):
            warnings.append("Output of a code task contains no code-like content")

        return self._result(ValidationStatus.PASSED, start_time, warnings=warnings)


class CodeQualityCheck(QualityGateValidator):
    """Flags incompletion markers and overlong lines. Never fails."""

    @property
    def name(self) -> str:
        return "Code quality heuristics"

    async def validate(self, context: GateContext) -> ValidationResult:
        start_time = time.time()
        warnings = []

        markers = sorted(set(INCOMPLETE_MARKER.findall(context.output)))
        if markers:
            warnings.append(f"Output contains incompletion markers: {', '.join(markers)}")

        long_lines = sum(1 for line in context.output.splitlines() if len(line) > LONG_LINE_LENGTH)
        if long_lines > MAX_LONG_LINES:
            warnings.append(f"Output has {long_lines} lines longer than {LONG_LINE_LENGTH} chars")

        return self._result(
            ValidationStatus.PASSED,
            start_time,
            warnings=warnings,
            details={"markers": markers, "long_lines": long_lines},
        )


class CostBudgetCheck(QualityGateValidator):
    """Fails when one execution costs more than a fraction of the daily limit."""

    retryable = False

    def __init__(self, budget_fraction: float = 0.1):
        self.budget_fraction = budget_fraction

    @property
    def name(self) -> str:
        return "Cost budget"

    def _is_skippable(self, context: GateContext) -> bool:
        return not context.cost_limit_daily_cents

    async def validate(self, context: GateContext) -> ValidationResult:
        start_time = time.time()
        threshold = context.cost_limit_daily_cents * self.budget_fraction
        details = {"cost_cents": context.cost_cents, "threshold_cents": threshold}

        if context.cost_cents > threshold:
            return self._result(
                ValidationStatus.FAILED,
                start_time,
                error_message=(
                    f"Execution cost {context.cost_cents:.2f}c exceeds "
                    f"{self.budget_fraction:.0%} of the daily limit "
                    f"({context.cost_limit_daily_cents}c)"
                ),
                details=details,
            )
        return self._result(ValidationStatus.PASSED, start_time, details=details)
