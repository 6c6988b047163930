"""Embedding provider abstraction and the OpenAI embeddings client."""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import struct
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

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
MAX_DELAY = 20.0  # seconds

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"


@dataclass(frozen=True)
class ModelInfo:
    """Information about an embedding model."""

    model_id: str
    dimensions: int
    cost_per_1m_tokens: float  # USD
    max_tokens: int  # Max input tokens
    description: str


OPENAI_MODELS: dict[str, ModelInfo] = {
    "text-embedding-3-small": ModelInfo(
        model_id="text-embedding-3-small",
        dimensions=1536,
        cost_per_1m_tokens=0.02,
        max_tokens=8191,
        description="Best balance of quality and cost. Default for bullet embeddings.",
    ),
    "text-embedding-3-large": ModelInfo(
        model_id="text-embedding-3-large",
        dimensions=3072,
        cost_per_1m_tokens=0.13,
        max_tokens=8191,
        description="Highest precision, roughly six times the cost.",
    ),
}


@dataclass
class HealthCheckResult:
    """Result of a provider health check."""

    healthy: bool
    provider: str
    model: str
    message: str
    latency_ms: int | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "provider": self.provider,
            "model": self.model,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "details": self.details or {},
        }


class EmbeddingError(ProviderError):
    """Error during embedding generation."""


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name, stored as the embedding vendor."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        ...

    @property
    @abstractmethod
    def dimensions(self) -> int:
        ...

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a list of texts.

        Returns one vector per input, in input order.

        Raises:
            EmbeddingError: If embedding generation fails.
        """
        ...

    async def embed_single(self, text: str) -> list[float]:
        result = await self.embed([text])
        return result[0]

    @abstractmethod
    async def health_check(self) -> HealthCheckResult:
        ...


class OpenAIProvider(EmbeddingProvider):
    """OpenAI embedding provider using the REST API."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: str | None = None,
        max_retries: int = MAX_RETRIES,
        timeout: float = 30.0,
    ):
        if model not in OPENAI_MODELS:
            raise ValueError(f"Unknown OpenAI model: {model}. Available: {list(OPENAI_MODELS.keys())}")

        self._model = model
        self._model_info = OPENAI_MODELS[model]
        self._api_key = api_key or os.getenv("OPENAI_API_KEY", "").strip()
        self._max_retries = max(1, max_retries)
        self._timeout = timeout
        self._max_chars = 20000  # ~5000 tokens, well inside the 8191 limit

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._model_info.dimensions

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key)

    def _decode(self, data: dict[str, Any], count: int) -> list[list[float]]:
        embeddings: list[list[float] | None] = [None] * count
        for item in data.get("data", []):
            embedding = item["embedding"]
            if isinstance(embedding, str):
                raw = base64.b64decode(embedding)
                # Each float32 is 4 bytes
                embedding = list(struct.unpack(f"{len(raw) // 4}f", raw))
            embeddings[item["index"]] = embedding

        if any(e is None for e in embeddings):
            raise EmbeddingError(
                f"Embedding response incomplete: expected {count} vectors",
                provider=self.name,
                code=ProviderErrorCode.INVALID_RESPONSE,
            )
        return embeddings  # type: ignore[return-value]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        if not self._api_key:
            raise EmbeddingError(
                "OPENAI_API_KEY not set",
                provider=self.name,
                code=ProviderErrorCode.NO_KEY,
            )

        truncated = [t[: self._max_chars] for t in texts]

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            delay = INITIAL_DELAY

            for attempt in range(self._max_retries):
                try:
                    response = await client.post(
                        OPENAI_EMBEDDINGS_URL,
                        headers={
                            "Authorization": f"Bearer {self._api_key}",
                            "Content-Type": "application/json",
                        },
                        json={
                            "model": self._model,
                            "input": truncated,
                            "encoding_format": "base64",
                        },
                    )
                    response.raise_for_status()
                    return self._decode(response.json(), len(texts))

                except httpx.HTTPStatusError as e:
                    error = error_from_response(e.response, self.name, EmbeddingError)
                except httpx.HTTPError as e:
                    error = error_from_transport(e, self.name, EmbeddingError)

                if not error.retriable or attempt + 1 >= self._max_retries:
                    raise error

                wait = max(delay, error.retry_after or 0.0)
                logger.warning(
                    f"Embedding request failed ({error.code.value}), attempt {attempt + 1}/{self._max_retries}. "
                    f"Waiting {wait:.1f}s..."
                )
                await asyncio.sleep(wait)
                delay = min(delay * 2, MAX_DELAY)

        # Unreachable: the loop either returns or raises
        raise EmbeddingError("Embedding retries exhausted", provider=self.name, code=ProviderErrorCode.NETWORK_ERROR)

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
            await self.embed_single("health check")
        except EmbeddingError as e:
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
            details={"dimensions": self.dimensions},
        )
