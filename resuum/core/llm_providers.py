"""LLM provider abstraction for chat/completion APIs (OpenAI GPT-4o-mini etc.)."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from resuum.core.embedding_providers import HealthCheckResult
from resuum.core.provider_errors import (
    ProviderError,
    ProviderErrorCode,
    error_from_response,
    error_from_transport,
)

logger = logging.getLogger(__name__)

# Retry settings for transient errors
MAX_RETRIES = 3
INITIAL_DELAY = 1.0  # seconds
MAX_DELAY = 30.0  # seconds

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"


@dataclass(frozen=True)
class ChatModelInfo:
    """Information about a chat/completion model."""

    model_id: str
    cost_per_1m_input: float  # USD per 1M input tokens
    cost_per_1m_output: float  # USD per 1M output tokens
    max_context: int
    description: str


OPENAI_CHAT_MODELS: dict[str, ChatModelInfo] = {
    "gpt-4o-mini": ChatModelInfo(
        model_id="gpt-4o-mini",
        cost_per_1m_input=0.15,
        cost_per_1m_output=0.60,
        max_context=128000,
        description="Cheap and fast. Default for job analysis and bullet scoring.",
    ),
    "gpt-4.1-nano": ChatModelInfo(
        model_id="gpt-4.1-nano",
        cost_per_1m_input=0.10,
        cost_per_1m_output=0.40,
        max_context=1047576,
        description="Cheapest GPT-4.1 model.",
    ),
    "gpt-4.1-mini": ChatModelInfo(
        model_id="gpt-4.1-mini",
        cost_per_1m_input=0.40,
        cost_per_1m_output=1.60,
        max_context=1047576,
        description="Better reasoning on long job descriptions.",
    ),
    "gpt-4o": ChatModelInfo(
        model_id="gpt-4o",
        cost_per_1m_input=2.50,
        cost_per_1m_output=10.00,
        max_context=128000,
        description="Highest quality, highest cost.",
    ),
}

DEFAULT_CHAT_MODEL = "gpt-4o-mini"


@dataclass
class ChatResponse:
    """Response from a chat completion."""

    content: str
    model: str
    tokens_input: int
    tokens_output: int
    finish_reason: str
    latency_ms: int


class LLMError(ProviderError):
    """Error during LLM API call."""


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        ...

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        json_mode: bool = False,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> ChatResponse:
        """Send a chat completion request.

        Args:
            messages: List of message dicts with 'role' and 'content' keys.
            temperature: Sampling temperature (0-2).
            max_tokens: Max tokens to generate (None = model default).
            json_mode: Ask the model for a single JSON object.
            timeout: Per-request timeout in seconds.
            max_attempts: Overrides the provider's retry budget for this call.

        Raises:
            LLMError: If the API call fails.
        """
        ...

    @abstractmethod
    async def health_check(self) -> HealthCheckResult:
        ...


class OpenAIChatProvider(LLMProvider):
    """OpenAI Chat/Completion provider using the API."""

    def __init__(
        self,
        model: str = DEFAULT_CHAT_MODEL,
        api_key: str | None = None,
        max_retries: int = MAX_RETRIES,
        timeout: float = 60.0,
    ):
        if model not in OPENAI_CHAT_MODELS:
            raise ValueError(
                f"Unknown OpenAI model: {model}. Available: {list(OPENAI_CHAT_MODELS.keys())}"
            )

        self._model = model
        self._model_info = OPENAI_CHAT_MODELS[model]
        self._api_key = api_key or os.getenv("OPENAI_API_KEY", "").strip()
        self._max_retries = max(1, max_retries)
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key)

    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        json_mode: bool = False,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> ChatResponse:
        if not self._api_key:
            raise LLMError(
                "OPENAI_API_KEY not set",
                provider=self.name,
                code=ProviderErrorCode.NO_KEY,
            )

        attempts = max(1, max_attempts or self._max_retries)
        request_body: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens:
            request_body["max_tokens"] = max_tokens
        if json_mode:
            request_body["response_format"] = {"type": "json_object"}

        async with httpx.AsyncClient(timeout=timeout or self._timeout) as client:
            delay = INITIAL_DELAY

            for attempt in range(attempts):
                start_time = time.monotonic()
                try:
                    response = await client.post(
                        OPENAI_CHAT_URL,
                        headers={
                            "Authorization": f"Bearer {self._api_key}",
                            "Content-Type": "application/json",
                        },
                        json=request_body,
                    )
                    response.raise_for_status()
                    data = response.json()

                    choice = data["choices"][0]
                    usage = data.get("usage", {})
                    return ChatResponse(
                        content=choice["message"]["content"] or "",
                        model=data.get("model", self._model),
                        tokens_input=usage.get("prompt_tokens", 0),
                        tokens_output=usage.get("completion_tokens", 0),
                        finish_reason=choice.get("finish_reason") or "",
                        latency_ms=int((time.monotonic() - start_time) * 1000),
                    )

                except httpx.HTTPStatusError as e:
                    error = error_from_response(e.response, self.name, LLMError)
                except httpx.HTTPError as e:
                    error = error_from_transport(e, self.name, LLMError)
                except (KeyError, IndexError, ValueError) as e:
                    raise LLMError(
                        f"Malformed completion response: {e}",
                        provider=self.name,
                        code=ProviderErrorCode.INVALID_RESPONSE,
                    ) from e

                if not error.retriable or attempt + 1 >= attempts:
                    raise error

                wait = max(delay, error.retry_after or 0.0)
                logger.warning(
                    f"Chat request failed ({error.code.value}), attempt {attempt + 1}/{attempts}. "
                    f"Waiting {wait:.1f}s..."
                )
                await asyncio.sleep(wait)
                delay = min(delay * 2, MAX_DELAY)

        raise LLMError("Chat retries exhausted", provider=self.name, code=ProviderErrorCode.NETWORK_ERROR)

    async def health_check(self) -> HealthCheckResult:
        """Check OpenAI API connectivity and authentication."""
        if not self._api_key:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self._model,
                message="API key not set",
                details={"error": "OPENAI_API_KEY environment variable not set"},
            )

        start = time.monotonic()
        try:
            await self.chat(
                messages=[{"role": "user", "content": "Say 'OK'"}],
                temperature=0,
                max_tokens=5,
                max_attempts=1,
            )
        except LLMError as e:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self._model,
                message=e.user_message,
                details={"code": e.code.value, "retriable": e.retriable},
            )

        return HealthCheckResult(
            healthy=True,
            provider=self.name,
            model=self._model,
            message="Connected",
            latency_ms=int((time.monotonic() - start) * 1000),
            details={"max_context": self._model_info.max_context},
        )


def parse_json_content(content: str) -> Any:
    """Parse a JSON completion, tolerating a surrounding markdown code fence.

    Raises ValueError (json.JSONDecodeError) if the content is not JSON.
    """
    content = content.strip()
    if content.startswith("```"):
        content = content.split("```")[1]
        if content.startswith("json"):
            content = content[4:]
    return json.loads(content.strip())
