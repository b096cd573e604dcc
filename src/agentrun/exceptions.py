"""Agentrun exception hierarchy.

All agentrun-specific exceptions inherit from AgentError.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base exception for all agentrun errors."""


class ConfigError(AgentError):
    """Raised when user-supplied configuration is malformed.

    The CLI maps this to exit status 2 (misuse).
    """


class TranscriptError(AgentError):
    """Base for structural problems in a transcript."""


class InvalidRoleError(TranscriptError):
    """Raised when a message carries a role outside the closed role set."""

    def __init__(self, index: int, role: str) -> None:
        self.index = index
        self.role = role
        super().__init__(f"message[{index}]: invalid role {role!r}")


class SequenceError(TranscriptError):
    """Raised when a tool message does not answer a preceding tool call.

    Carries the offending index and tool_call_id (may be empty).
    """

    def __init__(self, index: int, tool_call_id: str, reason: str) -> None:
        self.index = index
        self.tool_call_id = tool_call_id
        super().__init__(f"message[{index}]: {reason}")


class ManifestError(AgentError):
    """Raised when a tool manifest cannot be read or is invalid."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"tool manifest {path}: {reason}")


class ToolUnavailableError(AgentError):
    """Raised when a manifest tool's program cannot be found."""

    def __init__(self, tool_name: str, program: str) -> None:
        self.tool_name = tool_name
        self.program = program
        super().__init__(f"tool {tool_name!r}: program not available: {program}")


class ToolRunError(AgentError):
    """Raised by a ToolRunner when a tool process fails."""


class ToolTimeoutError(ToolRunError):
    """Raised by a ToolRunner when a tool exceeds its deadline."""

    def __init__(self, tool_name: str, timeout: float) -> None:
        self.tool_name = tool_name
        self.timeout = timeout
        super().__init__("tool timed out")


class PrestageError(AgentError):
    """Raised inside the pre-stage engine; always recovered by fail-open."""
