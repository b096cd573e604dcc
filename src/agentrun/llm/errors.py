"""LLM-specific error hierarchy.

All LLM errors inherit from AgentError for consistent exception handling.
"""

from __future__ import annotations

from agentrun.exceptions import AgentError


class LLMClientError(AgentError):
    """Base for all LLM client errors."""


class LLMConfigError(LLMClientError):
    """Missing or invalid client configuration (e.g., no base URL)."""


class LLMRateLimitError(LLMClientError):
    """Rate limited by the API (429).

    Attributes:
        retry_after: Seconds to wait before retrying (from Retry-After header),
            or None if not provided.
    """

    def __init__(self, message: str = "Rate limited", retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        if retry_after is not None:
            message = f"{message} (retry after {retry_after}s)"
        super().__init__(message)


class LLMAuthError(LLMClientError):
    """Authentication failed (401/403)."""


class LLMResponseError(LLMClientError):
    """Non-success status or unexpected response format from the API.

    Attributes:
        status_code: HTTP status when the error came from a response, else None.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class LLMTimeoutError(LLMClientError):
    """The request deadline expired on every attempt."""


class StreamingUnsupportedError(LLMClientError):
    """The server answered a streaming request without an event stream."""

    def __init__(self, content_type: str) -> None:
        self.content_type = content_type
        super().__init__(
            f"server does not support streaming (content-type={content_type!r})"
        )
