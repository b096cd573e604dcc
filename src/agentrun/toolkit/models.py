"""Toolkit data models for agentrun tool declarations and results.

Frozen dataclasses for manifest tool specs and dispatch results.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ToolSpec:
    """A single external tool as declared in a manifest.

    Attributes:
        name: Tool name advertised to the model.
        description: Human-readable description of when/why to use this tool.
        schema: JSON Schema dict describing tool parameters.
        command: argv; ``command[0]`` is the program (absolute once loaded).
        timeout: Per-tool timeout in seconds, or None to use the run default.
        env_passthrough: Environment variable names forwarded to the process.
    """

    name: str
    command: tuple[str, ...]
    description: str = ""
    schema: dict | None = None
    timeout: float | None = None
    env_passthrough: tuple[str, ...] = field(default_factory=tuple)

    def to_openai(self) -> dict:
        """Convert to OpenAI function-calling format.

        Returns:
            Dict with "type": "function" and nested "function" object.
        """
        function: dict = {"name": self.name}
        if self.description:
            function["description"] = self.description
        if self.schema is not None:
            function["parameters"] = self.schema
        return {"type": "function", "function": function}

    def effective_timeout(self, default: float) -> float:
        return self.timeout if self.timeout and self.timeout > 0 else default


@dataclass(frozen=True)
class ToolResult:
    """Structured result from executing one tool call.

    Attributes:
        tool_name: Name of the tool that was requested.
        tool_call_id: Id of the assistant tool call being answered.
        success: Whether execution succeeded.
        output: Raw output on success.
        error: Error message on failure.
        timed_out: Whether the failure was a deadline expiry.
    """

    tool_name: str
    tool_call_id: str
    success: bool
    output: str = ""
    error: str = ""
    timed_out: bool = False
