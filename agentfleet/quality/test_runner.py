"""Test execution for Python (pytest) and TypeScript (vitest)."""

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

PYTEST_FILE = re.compile(r"(^|/)(test_[^/]*\.py|[^/]*_test\.py)$")
VITEST_FILE = re.compile(r"\.(test|spec)\.(ts|tsx|js)$")


class TestRunner(QualityGateValidator):
    """Runs the test files a task touched, when it touched any."""

    __test__ = False  # not a pytest test class

    def __init__(self, timeout: float = 120):
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "Test Execution"

    @staticmethod
    def _test_files(context: GateContext) -> tuple[list[str], list[str]]:
        files = context.existing_files((".py", ".ts", ".tsx", ".js"))
        pytest_files = [f for f in files if PYTEST_FILE.search(f)]
        vitest_files = [f for f in files if VITEST_FILE.search(f)]
        return pytest_files, vitest_files

    def _is_skippable(self, context: GateContext) -> bool:
        """Skip if the task's affected files include no test files."""
        if not context.affected_files or context.working_directory is None:
            return True
        pytest_files, vitest_files = self._test_files(context)
        return not (pytest_files or vitest_files)

    async def validate(self, context: GateContext) -> ValidationResult:
        """Run tests."""
        start_time = time.time()
        cwd = context.working_directory
        pytest_files, vitest_files = self._test_files(context)
        issues = []
        summaries = []

        for runner, files, rule in (
            (self._run_pytest, pytest_files, "pytest"),
            (self._run_vitest, vitest_files, "vitest"),
        ):
            if not files:
                continue
            try:
                passed, summary = await runner(cwd, files)
            except subprocess.TimeoutExpired:
                logger.error(f"{rule} timed out")
                passed, summary = False, f"{rule} timed out after {self.timeout}s"
            summaries.append(f"{rule}: {summary}")
            if not passed:
                issues.append(
                    ValidationIssue(file="tests", severity="error", message=summary, rule=rule)
                )

        output = "\n".join(summaries) if summaries else "No tests run"
        if issues:
            return self._result(
                ValidationStatus.FAILED,
                start_time,
                issues=issues,
                output=output,
                error_message=f"Tests failed: {'; '.join(i.message for i in issues)}",
            )
        return self._result(ValidationStatus.PASSED, start_time, output=output)

    async def _run_pytest(self, cwd: Path, files: list[str]) -> tuple[bool, str]:
        """
        Run pytest on the given files.

        Returns:
            Tuple of (all_passed, output_summary)
        """
        if not await tool_available(["pytest"], cwd):
            return True, "pytest not available"

        result = await run_tool(
            ["pytest", "-q", "--tb=short", "--no-header", *files], cwd, self.timeout
        )
        # Extract summary line (e.g., "3 passed, 1 failed in 1.23s")
        summary_match = re.search(r"\d+ (passed|failed|error)[^\n]*in [\d.]+s", result.stdout)
        if summary_match:
            summary = summary_match.group(0)
        else:
            summary = "Tests completed" if result.returncode == 0 else "Tests failed"
        return result.returncode == 0, summary

    async def _run_vitest(self, cwd: Path, files: list[str]) -> tuple[bool, str]:
        """
        Run vitest on the given files.

        Returns:
            Tuple of (all_passed, output_summary)
        """
        if not (cwd / "package.json").exists():
            return True, "No package.json found"
        if not await tool_available(["npx", "vitest"], cwd):
            return True, "vitest not available"

        result = await run_tool(["npx", "vitest", "run", *files], cwd, self.timeout)
        summary_match = re.search(r"Tests\s+[^\n]*", result.stdout)
        if summary_match:
            summary = summary_match.group(0).strip()
        else:
            summary = "Tests completed" if result.returncode == 0 else "Tests failed"
        return result.returncode == 0, summary
