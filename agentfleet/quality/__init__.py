"""Quality gate validation system."""

from agentfleet.quality.validators import (
    GateContext,
    QualityGateValidator,
    QualityGatePipeline,
    ValidationResult,
    ValidationStatus,
)
from agentfleet.quality.output_checks import (
    CodeQualityCheck,
    CostBudgetCheck,
    FormatComplianceCheck,
    NonEmptyOutputCheck,
)
from agentfleet.quality.type_checker import TypeChecker
from agentfleet.quality.lint_checker import LintChecker
from agentfleet.quality.test_runner import TestRunner
from agentfleet.quality.gate import QualityGate, QualityGateResult, build_default_pipeline

__all__ = [
    "GateContext",
    "QualityGateValidator",
    "QualityGatePipeline",
    "ValidationResult",
    "ValidationStatus",
    "CodeQualityCheck",
    "CostBudgetCheck",
    "FormatComplianceCheck",
    "NonEmptyOutputCheck",
    "TypeChecker",
    "LintChecker",
    "TestRunner",
    "QualityGate",
    "QualityGateResult",
    "build_default_pipeline",
]
