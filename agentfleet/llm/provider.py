"""Generation provider contract."""

from typing import Any, Optional, Protocol

from pydantic import BaseModel


class GenerationCost(BaseModel):
    """Token usage and cost of one generation call."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost_cents: float = 0.0


class GenerationResult(BaseModel):
    """Output of one generation call."""
    output: str
    cost: GenerationCost = GenerationCost()
    duration_seconds: float = 0.0


class GenerationProvider(Protocol):
    """Anything that can turn a prompt into text with a cost attached."""

    async def execute(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> GenerationResult:
        ...


class GenerationError(Exception):
    """Raised when a generation call fails."""
    pass


class GenerationTimeoutError(GenerationError):
    """Raised when a generation call exceeds its timeout."""
    pass
