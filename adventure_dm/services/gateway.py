# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Language model gateway backed by the OpenAI Responses API.

The pipeline only depends on the three capabilities described by
LLMGateway: plain completion, structured (schema-validated) completion and
streaming completion. OpenAIGateway is the production implementation;
tests substitute their own object with the same methods.
"""

import asyncio
import time
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Type, TypeVar

import httpx
import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from adventure_dm.logging import StructuredLogger, redact_secrets, get_action_id
from adventure_dm.metrics import get_metrics_collector
from adventure_dm.models import (
    ChangeDecision,
    SkillCheckAnswer,
    ValidityAnswer,
    get_strict_json_schema,
)

logger = StructuredLogger(__name__)

ChatMessage = Dict[str, str]
ModelT = TypeVar("ModelT", bound=BaseModel)
T = TypeVar("T")


class GatewayError(Exception):
    """Base exception for language model gateway errors."""
    pass


class GatewayConfigurationError(GatewayError):
    """Raised when gateway configuration is invalid."""
    pass


class GatewayTimeoutError(GatewayError):
    """Raised when a gateway request times out."""
    pass


class GatewayResponseError(GatewayError):
    """Raised when a response is missing required data."""
    pass


class LLMGateway(Protocol):
    """Capability set the pipeline needs from a language model backend.

    Messages are dicts with "role" and "content" keys, roles being
    "system", "user" or "assistant".
    """

    async def complete(
        self, messages: List[ChatMessage], temperature: Optional[float] = None
    ) -> str:
        """Return the full text of a plain completion."""
        ...

    async def complete_structured(
        self,
        messages: List[ChatMessage],
        response_model: Type[ModelT],
        name: str,
        temperature: Optional[float] = None,
    ) -> Optional[ModelT]:
        """Return a validated instance of response_model.

        Returns None when the model produced no parsable object. Transport
        failures raise GatewayError.
        """
        ...

    def complete_streaming(
        self, messages: List[ChatMessage], temperature: Optional[float] = None
    ) -> AsyncIterator[str]:
        """Yield text fragments in arrival order."""
        ...


class OpenAIGateway:
    """Gateway implementation using OpenAI's Responses API.

    This gateway:
    - Sends the full message list as Responses API input
    - Enforces strict JSON schemas for structured completions
    - Streams output text deltas for narrative generation
    - Retries transient errors up to max_retries times (0 by default)
    - Supports stub mode for offline development
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        timeout: int = 60,
        stub_mode: bool = False,
        max_retries: int = 0,
        retry_delay_base: float = 1.0,
        retry_delay_max: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """Initialize the gateway.

        Args:
            api_key: OpenAI API key
            model: Model name used for every request
            timeout: Request timeout in seconds
            stub_mode: If True, returns stub responses without calling the API
            max_retries: Retry attempts for transient errors
            retry_delay_base: Base delay for exponential backoff (seconds)
            retry_delay_max: Maximum delay for exponential backoff (seconds)
            http_client: Optional shared httpx client for connection pooling
        """
        if not api_key or api_key.strip() == "":
            raise GatewayConfigurationError("API key cannot be empty")

        self.model = model
        self.timeout = timeout
        self.stub_mode = stub_mode
        self.max_retries = max_retries
        self.retry_delay_base = retry_delay_base
        self.retry_delay_max = retry_delay_max

        if not stub_mode:
            self.client = AsyncOpenAI(
                api_key=api_key,
                timeout=timeout,
                max_retries=0,
                http_client=http_client
            )
            logger.info(
                f"Initialized OpenAIGateway with model={self.model}, timeout={self.timeout}s, "
                f"max_retries={self.max_retries}"
            )
        else:
            self.client = None
            logger.info("Initialized OpenAIGateway in STUB MODE (no API calls will be made)")

    async def complete(
        self, messages: List[ChatMessage], temperature: Optional[float] = None
    ) -> str:
        """Run a plain completion and return its text."""
        if self.stub_mode:
            return self._stub_text(messages)

        async def request():
            return await self.client.responses.create(
                **self._request_kwargs(messages, temperature)
            )

        response = await self._call_with_retry("complete", request)
        content = self._extract_text(response)
        if not content:
            logger.error("OpenAI API returned empty content", action_id=get_action_id())
            raise GatewayResponseError("LLM returned empty content")
        return content

    async def complete_structured(
        self,
        messages: List[ChatMessage],
        response_model: Type[ModelT],
        name: str,
        temperature: Optional[float] = None,
    ) -> Optional[ModelT]:
        """Run a strict JSON schema completion.

        Args:
            messages: Conversation to send
            response_model: Pydantic model describing the answer
            name: Schema name reported to the API
            temperature: Optional sampling temperature

        Returns:
            Validated model instance, or None if the output could not be parsed
        """
        if self.stub_mode:
            return self._stub_structured(response_model)

        kwargs = self._request_kwargs(messages, temperature)
        kwargs["text"] = {"format": {
            "type": "json_schema",
            "name": name,
            "strict": True,
            "schema": get_strict_json_schema(response_model)
        }}

        async def request():
            return await self.client.responses.create(**kwargs)

        response = await self._call_with_retry(name, request)
        content = self._extract_text(response)

        collector = get_metrics_collector()
        if not content:
            logger.warning("Structured completion returned no content", schema=name)
            if collector:
                collector.record_structured_output(name, parsed=False)
            return None

        try:
            parsed = response_model.model_validate_json(content)
        except ValidationError as e:
            logger.warning(
                "Structured completion did not match schema",
                schema=name,
                error_count=e.error_count(),
                content_length=len(content)
            )
            if collector:
                collector.record_structured_output(name, parsed=False)
            return None

        if collector:
            collector.record_structured_output(name, parsed=True)
        return parsed

    async def complete_streaming(
        self, messages: List[ChatMessage], temperature: Optional[float] = None
    ) -> AsyncIterator[str]:
        """Stream output text deltas in arrival order.

        Streaming requests are never retried since fragments may already
        have reached the caller.
        """
        if self.stub_mode:
            for word in self._stub_text(messages).split(" "):
                yield word + " "
            return

        start_time = time.time()
        fragment_count = 0
        try:
            stream = await self.client.responses.create(
                **self._request_kwargs(messages, temperature),
                stream=True
            )
            async for event in stream:
                if getattr(event, "type", None) != "response.output_text.delta":
                    continue
                delta = getattr(event, "delta", None)
                if delta:
                    fragment_count += 1
                    yield delta

        except openai.APITimeoutError as e:
            logger.error(
                "LLM streaming request timed out",
                timeout_seconds=self.timeout,
                fragments_received=fragment_count
            )
            raise GatewayTimeoutError(
                f"LLM streaming request timed out after {self.timeout}s"
            ) from e

        except openai.AuthenticationError as e:
            logger.error("LLM streaming authentication failed")
            raise GatewayConfigurationError("Invalid OpenAI API key") from e

        except openai.OpenAIError as e:
            logger.error(
                "LLM streaming request failed",
                error_type=type(e).__name__,
                error=redact_secrets(str(e)),
                fragments_received=fragment_count
            )
            raise GatewayError(f"LLM streaming request failed: {e}") from e

        if (collector := get_metrics_collector()):
            collector.record_latency("llm_stream", (time.time() - start_time) * 1000)

    def _request_kwargs(
        self, messages: List[ChatMessage], temperature: Optional[float]
    ) -> dict:
        kwargs = {
            "model": self.model,
            "input": [
                {"role": message["role"], "content": message["content"]}
                for message in messages
            ],
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        return kwargs

    async def _call_with_retry(self, operation: str, request: Callable[[], Awaitable[T]]) -> T:
        """Run a request, retrying transient errors with exponential backoff.

        Retryable errors:
        - APITimeoutError, RateLimitError, InternalServerError, APIConnectionError

        Non-retryable errors:
        - AuthenticationError, BadRequestError, PermissionDeniedError
        """
        for attempt in range(self.max_retries + 1):
            start_time = time.time()
            try:
                response = await request()
                if (collector := get_metrics_collector()):
                    collector.record_latency("llm_call", (time.time() - start_time) * 1000)
                    if attempt > 0:
                        collector.record_error("llm_retry_success")
                return response

            except openai.AuthenticationError as e:
                logger.error("LLM authentication failed (non-retryable)", operation=operation)
                raise GatewayConfigurationError("Invalid OpenAI API key") from e

            except (openai.BadRequestError, openai.PermissionDeniedError) as e:
                logger.error(
                    "LLM request rejected (non-retryable)",
                    operation=operation,
                    error_type=type(e).__name__,
                    error=redact_secrets(str(e))
                )
                raise GatewayError(f"LLM request rejected: {e}") from e

            except (openai.APITimeoutError, openai.RateLimitError,
                    openai.InternalServerError, openai.APIConnectionError) as e:
                error_type = type(e).__name__
                duration_ms = (time.time() - start_time) * 1000

                if attempt >= self.max_retries:
                    logger.error(
                        f"LLM request failed after {self.max_retries} retries",
                        operation=operation,
                        error_type=error_type,
                        error=redact_secrets(str(e)),
                        total_attempts=attempt + 1,
                        duration_ms=f"{duration_ms:.2f}"
                    )
                    if (collector := get_metrics_collector()):
                        collector.record_error(f"llm_{error_type.lower()}_exhausted")

                    if isinstance(e, openai.APITimeoutError):
                        raise GatewayTimeoutError(
                            f"LLM request timed out after {self.timeout}s"
                        ) from e
                    raise GatewayError(f"LLM request failed: {e}") from e

                delay = min(self.retry_delay_base * (2 ** attempt), self.retry_delay_max)
                logger.warning(
                    f"LLM request failed (retryable), retrying in {delay:.2f}s",
                    operation=operation,
                    error_type=error_type,
                    attempt=attempt + 1,
                    max_retries=self.max_retries
                )
                await asyncio.sleep(delay)

        raise GatewayError("LLM request failed with unknown error")

    @staticmethod
    def _extract_text(response) -> Optional[str]:
        """Collect output text from a Responses API result."""
        text = getattr(response, "output_text", None)
        if isinstance(text, str) and text:
            return text

        text_parts = []
        for output_item in getattr(response, "output", None) or []:
            content = getattr(output_item, "content", None)
            if isinstance(content, str):
                text_parts.append(content)
            elif isinstance(content, list):
                for content_item in content:
                    if hasattr(content_item, "text"):
                        text_parts.append(content_item.text)
                    elif isinstance(content_item, dict) and "text" in content_item:
                        text_parts.append(content_item["text"])
        return "".join(text_parts) or None

    def _stub_text(self, messages: List[ChatMessage]) -> str:
        logger.debug("Generating stub completion (API not called)")
        last = messages[-1]["content"] if messages else ""
        snippet = last[:100]
        return (
            f"[STUB MODE] This is a placeholder narrative response. "
            f"In production, this would be generated by {self.model}. "
            f"Based on: '{snippet}'"
        )

    @staticmethod
    def _stub_structured(response_model: Type[ModelT]) -> Optional[ModelT]:
        """Canned answers so the whole pipeline runs offline."""
        stubs = {
            ValidityAnswer: lambda: ValidityAnswer(valid=True, reason=None),
            SkillCheckAnswer: lambda: SkillCheckAnswer(
                required=False, stat=None, difficulty_category=None, reason=None
            ),
            ChangeDecision: lambda: ChangeDecision(change=False),
        }
        factory = stubs.get(response_model)
        return factory() if factory else None
