"""Strict parsing of model output into pydantic schemas."""

import json
import logging
from typing import TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def extract_json_text(content: str) -> str:
    """
    Pull the JSON document out of a model response.

    A fenced ```json block wins, then any fenced block, then the raw text.

    Args:
        content: Raw model output

    Returns:
        Text expected to contain a single JSON document
    """
    content = content.strip()

    # Remove markdown code blocks if present
    if "```json" in content:
        return content.split("```json", 1)[1].split("```", 1)[0].strip()
    if "```" in content:
        return content.split("```", 1)[1].split("```", 1)[0].strip()
    return content


def parse_structured(content: str, schema: type[ModelT]) -> ModelT:
    """
    Parse model output against a schema, failing closed.

    Args:
        content: Raw model output
        schema: Pydantic model the output must satisfy

    Returns:
        Validated schema instance

    Raises:
        StructuredOutputError: If the output is not valid JSON or does not
            match the schema
    """
    text = extract_json_text(content)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise StructuredOutputError(f"invalid JSON ({e.msg})", content) from e

    if not isinstance(data, dict):
        raise StructuredOutputError("expected a JSON object", content)

    try:
        return schema.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise StructuredOutputError(errors, content) from e


class StructuredOutputError(Exception):
    """Raised when model output does not match the expected schema."""

    def __init__(self, detail: str, raw_response: str):
        self.detail = detail
        self.raw_response = raw_response
        super().__init__(detail)

    @property
    def response_excerpt(self) -> str:
        """First 200 characters of the raw response."""
        return self.raw_response[:200]
