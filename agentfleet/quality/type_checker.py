"""Type checking for Python (mypy) and TypeScript (tsc)."""

import logging
import re
import subprocess
import time
from pathlib import Path

from agentfleet.quality.tooling import run_tool, tool_available
from agentfleet.quality.validators import (
    GateContext,
    QualityGateValidator,
    ValidationIssue,
    ValidationResult,
    ValidationStatus,
)

logger = logging.getLogger(__name__)

PYTHON_SUFFIXES = (".py",)
TYPESCRIPT_SUFFIXES = (".ts", ".tsx")
MAX_REPORTED_ERRORS = 10

# Format: file.py:line:col: error: message
MYPY_LINE = re.compile(r"(.+?):(\d+):(\d+): (error|warning): (.+)")
# Format: file.ts(line,col): error TS1234: message
TSC_LINE = re.compile(r"(.+?)\((\d+),(\d+)\): (error|warning) TS\d+: (.+)")


class TypeChecker(QualityGateValidator):
    """Type checks the task's affected files using mypy and tsc."""

    def __init__(self, timeout: float = 120):
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "Type Checking"

    def _is_skippable(self, context: GateContext) -> bool:
        """Skip unless the task names affected Python or TypeScript files."""
        if not context.affected_files or context.working_directory is None:
            return True
        return not context.existing_files(PYTHON_SUFFIXES + TYPESCRIPT_SUFFIXES)

    async def validate(self, context: GateContext) -> ValidationResult:
        """Run type checking."""
        start_time = time.time()
        cwd = context.working_directory
        issues: list[ValidationIssue] = []
        error_lines: list[str] = []

        try:
            for check, suffixes in (
                (self._check_python_types, PYTHON_SUFFIXES),
                (self._check_typescript_types, TYPESCRIPT_SUFFIXES),
            ):
                found, lines = await check(cwd, context.existing_files(suffixes))
                issues.extend(found)
                error_lines.extend(lines)
        except subprocess.TimeoutExpired as e:
            return self._result(
                ValidationStatus.FAILED,
                start_time,
                error_message=f"Type check timed out after {e.timeout}s",
            )

        errors = [issue for issue in issues if issue.severity == "error"]
        if errors:
            first_errors = error_lines[:MAX_REPORTED_ERRORS]
            return self._result(
                ValidationStatus.FAILED,
                start_time,
                issues=issues,
                details={"error_count": len(errors), "errors": first_errors},
                output=f"Found {len(issues)} type issues",
                error_message=(
                    f"Type check failed with {len(errors)} errors:\n" + "\n".join(first_errors)
                ),
            )
        return self._result(ValidationStatus.PASSED, start_time, issues=issues)

    async def _check_python_types(
        self, cwd: Path, files: list[str]
    ) -> tuple[list[ValidationIssue], list[str]]:
        """Check Python types using mypy."""
        if not files or not await tool_available(["mypy"], cwd):
            return [], []

        result = await run_tool(
            [
                "mypy",
                "--no-error-summary",
                "--show-column-numbers",
                "--ignore-missing-imports",  # Don't fail on missing stubs
                *files,
            ],
            cwd,
            self.timeout,
        )
        return self._parse(result.stdout, MYPY_LINE, "mypy")

    async def _check_typescript_types(
        self, cwd: Path, files: list[str]
    ) -> tuple[list[ValidationIssue], list[str]]:
        """Check TypeScript types using tsc --noEmit."""
        if not files or not await tool_available(["tsc"], cwd):
            return [], []

        result = await run_tool(
            ["tsc", "--noEmit", "--skipLibCheck", "--pretty", "false", *files],
            cwd,
            self.timeout,
        )
        if result.returncode == 0:
            return [], []
        return self._parse(result.stdout, TSC_LINE, "tsc")

    @staticmethod
    def _parse(
        stdout: str, pattern: re.Pattern, rule: str
    ) -> tuple[list[ValidationIssue], list[str]]:
        issues = []
        error_lines = []
        for line in stdout.splitlines():
            match = pattern.match(line)
            if not match:
                continue
            severity = match.group(4)
            issues.append(
                ValidationIssue(
                    file=match.group(1),
                    line=int(match.group(2)),
                    column=int(match.group(3)),
                    severity=severity,
                    message=match.group(5),
                    rule=rule,
                )
            )
            if severity == "error":
                error_lines.append(line)
        return issues, error_lines
