"""Structured error taxonomy for the remote model provider (chat + embeddings)."""

from __future__ import annotations

from enum import Enum

import httpx


class ProviderErrorCode(str, Enum):
    NO_KEY = "no_key"
    KEY_INVALID = "key_invalid"
    MODEL_UNAVAILABLE = "model_unavailable"
    RATE_LIMIT = "rate_limit"
    BAD_REQUEST = "bad_request"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    INVALID_RESPONSE = "invalid_response"


RETRIABLE_CODES = frozenset(
    {
        ProviderErrorCode.RATE_LIMIT,
        ProviderErrorCode.SERVER_ERROR,
        ProviderErrorCode.NETWORK_ERROR,
        ProviderErrorCode.TIMEOUT,
    }
)

USER_MESSAGES: dict[ProviderErrorCode, str] = {
    ProviderErrorCode.NO_KEY: "Please set your OpenAI API key (OPENAI_API_KEY).",
    ProviderErrorCode.KEY_INVALID: "Invalid API key. Please check your OpenAI key.",
    ProviderErrorCode.MODEL_UNAVAILABLE: "The selected model isn't available for your account.",
    ProviderErrorCode.RATE_LIMIT: "Rate limit exceeded. Please wait a moment and try again.",
    ProviderErrorCode.BAD_REQUEST: "The request was rejected by the model provider.",
    ProviderErrorCode.SERVER_ERROR: "OpenAI server error. Please try again in a moment.",
    ProviderErrorCode.NETWORK_ERROR: "Network error. Please check your connection and try again.",
    ProviderErrorCode.TIMEOUT: "The model provider did not answer in time. Please try again.",
    ProviderErrorCode.INVALID_RESPONSE: "Unexpected response from the model provider. Please try again.",
}


class ProviderError(Exception):
    """Error while talking to the remote model provider."""

    def __init__(
        self,
        message: str,
        provider: str,
        code: ProviderErrorCode,
        retriable: bool | None = None,
        retry_after: float | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.code = code
        self.retriable = code in RETRIABLE_CODES if retriable is None else retriable
        self.retry_after = retry_after
        self.status_code = status_code

    @property
    def user_message(self) -> str:
        return USER_MESSAGES.get(self.code, str(self))


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a Retry-After header (delta-seconds form only)."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _error_detail(response: httpx.Response) -> str | None:
    """Message from an error body: {"error": {"message": ...}}, {"error": "..."} or anything else."""
    try:
        body = response.json()
    except ValueError:
        return None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        error = error.get("message")
    return error if isinstance(error, str) else None


def error_from_response(
    response: httpx.Response,
    provider: str,
    error_cls: type[ProviderError] = ProviderError,
) -> ProviderError:
    """Map a non-2xx HTTP response onto the error taxonomy."""
    status = response.status_code
    detail = _error_detail(response) or response.text
    detail = (detail or f"HTTP {status}")[:300]

    if status in (401, 403):
        return error_cls(
            "Invalid OpenAI API key",
            provider=provider,
            code=ProviderErrorCode.KEY_INVALID,
            status_code=status,
        )
    if status == 404:
        return error_cls(
            f"Model not available for this key: {detail}",
            provider=provider,
            code=ProviderErrorCode.MODEL_UNAVAILABLE,
            status_code=status,
        )
    if status == 429:
        if "quota" in detail.lower():
            # Exhausted credit does not recover by waiting
            return error_cls(
                "OpenAI quota exhausted. Please add credits on platform.openai.com",
                provider=provider,
                code=ProviderErrorCode.RATE_LIMIT,
                retriable=False,
                status_code=status,
            )
        return error_cls(
            "Rate limit exceeded",
            provider=provider,
            code=ProviderErrorCode.RATE_LIMIT,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            status_code=status,
        )
    if status in (400, 422):
        return error_cls(
            f"Bad request: {detail}",
            provider=provider,
            code=ProviderErrorCode.BAD_REQUEST,
            status_code=status,
        )
    if status >= 500:
        return error_cls(
            f"OpenAI server error: {status}",
            provider=provider,
            code=ProviderErrorCode.SERVER_ERROR,
            status_code=status,
        )
    return error_cls(
        f"OpenAI API error: {status} - {detail}",
        provider=provider,
        code=ProviderErrorCode.BAD_REQUEST,
        status_code=status,
    )


def error_from_transport(
    exc: httpx.HTTPError,
    provider: str,
    error_cls: type[ProviderError] = ProviderError,
) -> ProviderError:
    """Map an httpx transport failure (no response) onto the error taxonomy."""
    if isinstance(exc, httpx.TimeoutException):
        return error_cls(
            f"Request timed out: {exc}",
            provider=provider,
            code=ProviderErrorCode.TIMEOUT,
        )
    return error_cls(
        f"Network error: {exc}",
        provider=provider,
        code=ProviderErrorCode.NETWORK_ERROR,
    )
