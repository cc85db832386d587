"""Tests for the quality gate and its validators."""

import json
import subprocess

import pytest

from agentfleet.app.models import TaskModel, TaskType
from agentfleet.llm.provider import GenerationCost, GenerationResult
from agentfleet.quality import (
    GateContext,
    LintChecker,
    QualityGate,
    QualityGatePipeline,
    QualityGateValidator,
    ValidationStatus,
)
from agentfleet.quality import lint_checker


def make_task(task_type: TaskType = TaskType.IMPLEMENTATION, affected_files=None) -> TaskModel:
    return TaskModel(
        id="task-1",
        organization_id="org-1",
        project_id="project-1",
        title="Build endpoint",
        type=task_type.value,
        affected_files=affected_files or [],
    )


def make_result(output: str, cost_cents: float = 1.0) -> GenerationResult:
    return GenerationResult(output=output, cost=GenerationCost(total_cost_cents=cost_cents))


@pytest.fixture
def gate():
    return QualityGate()


async def test_error_output_fails_retryable_with_pattern(gate):
    verdict = await gate.validate(make_task(), make_result("Error: command not found"))

    assert verdict.passed is False
    assert verdict.should_retry is True
    assert verdict.gate_name == "Format compliance"
    assert "error pattern" in verdict.reason


async def test_unanchored_error_pattern_matches_anywhere(gate):
    verdict = await gate.validate(
        make_task(), make_result("Tried to write the file but got permission denied on /etc")
    )

    assert verdict.passed is False
    assert "permission denied" in verdict.reason


async def test_anchored_pattern_only_matches_at_start(gate):
    verdict = await gate.validate(
        make_task(TaskType.DOCUMENTATION),
        make_result("Documented how to read an Error: line in the logs."),
    )

    assert verdict.passed is True


async def test_short_output_fails_retryable(gate):
    verdict = await gate.validate(make_task(), make_result("   ok   "))

    assert verdict.passed is False
    assert verdict.should_retry is True
    assert verdict.gate_name == "Non-empty result"


async def test_cost_over_budget_fails_non_retryable(gate):
    # $12 against a $100 daily limit
    verdict = await gate.validate(
        make_task(),
        make_result("def handler():\n    return 200\n", cost_cents=1200),
        cost_limit_daily_cents=10000,
    )

    assert verdict.passed is False
    assert verdict.should_retry is False
    assert verdict.gate_name == "Cost budget"


async def test_cost_within_budget_passes(gate):
    verdict = await gate.validate(
        make_task(),
        make_result("def handler():\n    return 200\n", cost_cents=900),
        cost_limit_daily_cents=10000,
    )

    assert verdict.passed is True


async def test_cost_check_skipped_without_limit(gate):
    verdict = await gate.validate(
        make_task(), make_result("def handler():\n    return 200\n", cost_cents=1_000_000)
    )

    assert verdict.passed is True


async def test_code_quality_only_warns(gate):
    output = "def handler():\n    # TODO: handle errors\n    return 200\n"

    verdict = await gate.validate(make_task(), make_result(output))

    assert verdict.passed is True
    assert any("TODO" in warning for warning in verdict.warnings)


async def test_code_task_without_code_gets_warning(gate):
    output = "I looked at the request and described in prose what the endpoint should do. " * 3

    verdict = await gate.validate(make_task(TaskType.IMPLEMENTATION), make_result(output))

    assert verdict.passed is True
    assert any("code-like" in warning for warning in verdict.warnings)


class ExplodingValidator(QualityGateValidator):
    @property
    def name(self) -> str:
        return "Exploding"

    async def validate(self, context):
        raise RuntimeError("boom")


async def test_crashing_validator_is_retryable_failure():
    gate = QualityGate(QualityGatePipeline([ExplodingValidator()]))

    verdict = await gate.validate(make_task(), make_result("def handler(): return 200"))

    assert verdict.passed is False
    assert verdict.should_retry is True
    assert "boom" in verdict.reason


async def test_pipeline_stops_at_first_failure():
    pipeline = QualityGate().pipeline
    context = GateContext(task_id="t", task_type="implementation", output="")

    passed, results = await pipeline.run_all(context, stop_on_failure=True)

    assert passed is False
    assert len(results) == 1
    assert results[0].status == ValidationStatus.FAILED


async def test_lint_skipped_without_working_directory():
    checker = LintChecker()
    context = GateContext(task_id="t", task_type="implementation", output="x", affected_files=["a.py"])

    assert checker._is_skippable(context) is True


async def test_lint_reports_ruff_findings(tmp_path, monkeypatch):
    (tmp_path / "app.py").write_text("import os\n")
    ruff_output = [
        {
            "filename": str(tmp_path / "app.py"),
            "location": {"row": 1, "column": 8},
            "message": "`os` imported but unused",
            "code": "F401",
        }
    ]

    async def available(args, cwd):
        return args == ["ruff"]

    async def run(args, cwd, timeout):
        return subprocess.CompletedProcess(args, 1, stdout=json.dumps(ruff_output), stderr="")

    monkeypatch.setattr(lint_checker, "tool_available", available)
    monkeypatch.setattr(lint_checker, "run_tool", run)

    gate = QualityGate(QualityGatePipeline([LintChecker()]))
    verdict = await gate.validate(
        make_task(affected_files=["app.py"]),
        make_result("import os"),
        working_directory=str(tmp_path),
    )

    assert verdict.passed is False
    assert verdict.should_retry is True
    assert verdict.details == {"error_count": 1, "warning_count": 0}


async def test_lint_missing_tool_passes(tmp_path, monkeypatch):
    (tmp_path / "app.py").write_text("x = 1\n")

    async def unavailable(args, cwd):
        return False

    monkeypatch.setattr(lint_checker, "tool_available", unavailable)

    gate = QualityGate(QualityGatePipeline([LintChecker()]))
    verdict = await gate.validate(
        make_task(affected_files=["app.py"]),
        make_result("x = 1"),
        working_directory=str(tmp_path),
    )

    assert verdict.passed is True


async def test_lint_timeout_is_retryable_failure(tmp_path, monkeypatch):
    (tmp_path / "app.py").write_text("x = 1\n")

    async def available(args, cwd):
        return True

    async def hang(args, cwd, timeout):
        raise subprocess.TimeoutExpired(args, timeout)

    monkeypatch.setattr(lint_checker, "tool_available", available)
    monkeypatch.setattr(lint_checker, "run_tool", hang)

    gate = QualityGate(QualityGatePipeline([LintChecker(timeout=5)]))
    verdict = await gate.validate(
        make_task(affected_files=["app.py"]),
        make_result("x = 1"),
        working_directory=str(tmp_path),
    )

    assert verdict.passed is False
    assert verdict.should_retry is True
    assert "timed out" in verdict.reason
