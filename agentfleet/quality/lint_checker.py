"""Linting for Python (ruff) and TypeScript/JavaScript (eslint)."""

import json
import logging
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
JS_SUFFIXES = (".ts", ".tsx", ".js", ".jsx")


class LintChecker(QualityGateValidator):
    """Lints exactly the task's affected files using ruff and eslint."""

    def __init__(self, timeout: float = 60):
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "Linting"

    def _is_skippable(self, context: GateContext) -> bool:
        """Skip unless the task names affected files inside a working directory."""
        if not context.affected_files or context.working_directory is None:
            return True
        return not context.existing_files(PYTHON_SUFFIXES + JS_SUFFIXES)

    async def validate(self, context: GateContext) -> ValidationResult:
        """Run linting."""
        start_time = time.time()
        cwd = context.working_directory
        issues: list[ValidationIssue] = []

        try:
            issues.extend(await self._lint_python(cwd, context.existing_files(PYTHON_SUFFIXES)))
            issues.extend(await self._lint_javascript(cwd, context.existing_files(JS_SUFFIXES)))
        except subprocess.TimeoutExpired as e:
            return self._result(
                ValidationStatus.FAILED,
                start_time,
                error_message=f"Lint check timed out after {e.timeout}s",
            )

        error_count = sum(1 for issue in issues if issue.severity == "error")
        warning_count = len(issues) - error_count
        details = {"error_count": error_count, "warning_count": warning_count}

        if issues:
            return self._result(
                ValidationStatus.FAILED,
                start_time,
                issues=issues,
                details=details,
                output=f"Found {len(issues)} lint issues",
                error_message=(
                    f"Lint check failed: {error_count} errors, {warning_count} warnings"
                ),
            )
        return self._result(ValidationStatus.PASSED, start_time, details=details)

    async def _lint_python(self, cwd: Path, files: list[str]) -> list[ValidationIssue]:
        """Lint Python files using ruff."""
        if not files or not await tool_available(["ruff"], cwd):
            return []

        result = await run_tool(
            ["ruff", "check", "--output-format=json", *files], cwd, self.timeout
        )
        if not result.stdout:
            return []

        try:
            ruff_output = json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.error("Failed to parse ruff JSON output")
            return [ValidationIssue(file="", severity="error", message=result.stdout[:500], rule="ruff")]

        issues = []
        for issue in ruff_output:
            location = issue.get("location") or {}
            issues.append(
                ValidationIssue(
                    file=self._relative(issue.get("filename", ""), cwd),
                    line=location.get("row"),
                    column=location.get("column"),
                    severity="error",
                    message=issue.get("message", ""),
                    rule=issue.get("code") or "ruff",
                )
            )
        return issues

    async def _lint_javascript(self, cwd: Path, files: list[str]) -> list[ValidationIssue]:
        """Lint JavaScript/TypeScript files using eslint."""
        if not files or not await tool_available(["eslint"], cwd):
            return []

        result = await run_tool(["eslint", "--format=json", *files], cwd, self.timeout)
        if not result.stdout:
            return []

        try:
            eslint_output = json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.error("Failed to parse eslint JSON output")
            return [ValidationIssue(file="", severity="error", message=result.stdout[:500], rule="eslint")]

        issues = []
        for file_result in eslint_output:
            file_path = self._relative(file_result.get("filePath", ""), cwd)
            for message in file_result.get("messages", []):
                issues.append(
                    ValidationIssue(
                        file=file_path,
                        line=message.get("line"),
                        column=message.get("column"),
                        # eslint severity: 1 = warning, 2 = error
                        severity="error" if message.get("severity") == 2 else "warning",
                        message=message.get("message", ""),
                        rule=message.get("ruleId") or "eslint",
                    )
                )
        return issues

    @staticmethod
    def _relative(file_path: str, cwd: Path) -> str:
        try:
            return str(Path(file_path).relative_to(cwd))
        except ValueError:
            return file_path
