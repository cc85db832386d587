"""AWS Bedrock generation provider."""

import asyncio
import json
import logging
import time
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from agentfleet.app.config import settings
from agentfleet.llm.provider import (
    GenerationCost,
    GenerationError,
    GenerationResult,
    GenerationTimeoutError,
)

logger = logging.getLogger(__name__)


class BedrockConfig(BaseModel):
    """Bedrock configuration."""
    profile: Optional[str] = None
    region: str = "eu-west-1"
    model_id: str = "eu.anthropic.claude-sonnet-4-5-20250929-v1:0"
    max_tokens: int = 8000
    temperature: float = 1.0
    timeout_seconds: float = 300.0
    input_cost_per_mtok_cents: float = 300.0
    output_cost_per_mtok_cents: float = 1500.0


class BedrockResponse(BaseModel):
    """Response from Bedrock API."""
    content: str
    stop_reason: str
    usage: dict[str, Any]  # Can contain nested dicts for cache_creation
    model: str


class BedrockClient:
    """Synchronous Bedrock runtime client for Anthropic models."""

    def __init__(self, config: Optional[BedrockConfig] = None):
        """
        Initialize Bedrock client.

        Args:
            config: Client configuration (default: built from settings)
        """
        self.config = config or BedrockConfig(
            profile=settings.aws_profile or None,
            region=settings.aws_region,
            model_id=settings.bedrock_model_id,
            max_tokens=settings.max_tokens,
            timeout_seconds=settings.generation_timeout,
            input_cost_per_mtok_cents=settings.input_cost_per_mtok_cents,
            output_cost_per_mtok_cents=settings.output_cost_per_mtok_cents,
        )

        session = boto3.Session(
            profile_name=self.config.profile,
            region_name=self.config.region
        )

        # Configure retry strategy
        retry_config = Config(
            region_name=self.config.region,
            read_timeout=int(self.config.timeout_seconds),
            retries={
                'max_attempts': 3,
                'mode': 'adaptive'
            }
        )

        self.client = session.client(
            service_name='bedrock-runtime',
            config=retry_config
        )

        logger.info(
            f"Initialized Bedrock client: profile={self.config.profile}, "
            f"region={self.config.region}, model={self.config.model_id}"
        )

    def invoke_model(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> BedrockResponse:
        """
        Invoke the model with a single user prompt.

        Args:
            prompt: User prompt
            system_prompt: Optional system prompt
            max_tokens: Maximum tokens to generate
            temperature: Temperature for sampling

        Returns:
            BedrockResponse with content and metadata

        Raises:
            BedrockInvocationError: If API call fails
        """
        request_body = {
            "anthropic_version": "bedrock-2023-05-31",
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens or self.config.max_tokens,
            "temperature": temperature if temperature is not None else self.config.temperature
        }
        if system_prompt:
            request_body["system"] = system_prompt

        logger.debug(
            f"Invoking model: {self.config.model_id} "
            f"(prompt_length={len(prompt)}, max_tokens={request_body['max_tokens']})"
        )

        try:
            response = self.client.invoke_model(
                modelId=self.config.model_id,
                body=json.dumps(request_body),
                contentType='application/json',
                accept='application/json'
            )
            response_body = json.loads(response['body'].read())
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Bedrock invocation failed: {e}")
            raise BedrockInvocationError(f"Failed to invoke model: {e}") from e

        content = "".join(
            block.get("text", "")
            for block in response_body.get("content") or []
            if block.get("type") == "text"
        )

        logger.info(
            f"Model invocation successful: "
            f"stop_reason={response_body.get('stop_reason')}, "
            f"input_tokens={response_body.get('usage', {}).get('input_tokens')}, "
            f"output_tokens={response_body.get('usage', {}).get('output_tokens')}"
        )

        return BedrockResponse(
            content=content,
            stop_reason=response_body.get("stop_reason") or "",
            usage=response_body.get("usage", {}),
            model=response_body.get("model", self.config.model_id)
        )


class BedrockGenerationProvider:
    """Generation provider backed by Bedrock, with cost metering and a timeout."""

    def __init__(self, client: Optional[BedrockClient] = None):
        self.client = client or BedrockClient()

    def calculate_cost(self, usage: dict[str, Any]) -> GenerationCost:
        """Convert token usage into cents using the configured prices."""
        input_tokens = int(usage.get("input_tokens") or 0)
        output_tokens = int(usage.get("output_tokens") or 0)
        config = self.client.config
        total = (
            input_tokens * config.input_cost_per_mtok_cents
            + output_tokens * config.output_cost_per_mtok_cents
        ) / 1_000_000
        return GenerationCost(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_cost_cents=round(total, 4),
        )

    async def execute(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> GenerationResult:
        """
        Run one generation call off the event loop.

        Args:
            prompt: User prompt
            system_prompt: Optional system prompt
            context: Caller metadata, used for logging only

        Returns:
            GenerationResult with output, cost and duration

        Raises:
            GenerationTimeoutError: If the call exceeds the configured timeout
            BedrockInvocationError: If the API call fails
        """
        context = context or {}
        timeout = self.client.config.timeout_seconds
        start_time = time.time()

        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(self.client.invoke_model, prompt, system_prompt),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Generation timed out after {timeout}s (context={context})")
            raise GenerationTimeoutError(f"Generation timed out after {timeout}s") from e

        return GenerationResult(
            output=response.content,
            cost=self.calculate_cost(response.usage),
            duration_seconds=time.time() - start_time,
        )


class BedrockInvocationError(GenerationError):
    """Raised when Bedrock API invocation fails."""
    pass
