"""LLM client infrastructure for agentrun.

Provides an OpenAI-compatible HTTP client with retry, parameter recovery
and streaming, plus the LLM error hierarchy.
"""

from agentrun.llm.client import OpenAIClient
from agentrun.llm.errors import (
    LLMAuthError,
    LLMClientError,
    LLMConfigError,
    LLMRateLimitError,
    LLMResponseError,
    LLMTimeoutError,
    StreamingUnsupportedError,
)

__all__ = [
    "OpenAIClient",
    "LLMClientError",
    "LLMConfigError",
    "LLMRateLimitError",
    "LLMAuthError",
    "LLMResponseError",
    "LLMTimeoutError",
    "StreamingUnsupportedError",
]
