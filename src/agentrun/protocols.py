"""Protocol definitions and transcript value types for agentrun.

Defines the frozen Message/ToolCall dataclasses that make up a transcript,
the closed Role enum, and the pluggable collaborator interfaces
(ChatClient, ToolRunner, TokenCounter) the orchestration core consumes.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Sequence

    from agentrun.toolkit.models import ToolSpec


class Role(str, enum.Enum):
    """The closed set of legal message roles."""

    SYSTEM = "system"
    DEVELOPER = "developer"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


FINAL_CHANNEL = "final"


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the assistant.

    ``arguments`` is the opaque JSON text sent by the model; an empty
    string is treated as ``{}`` at dispatch time.
    """

    id: str
    name: str
    arguments: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, d: dict) -> ToolCall:
        fn = d.get("function") or {}
        args = fn.get("arguments", "")
        if not isinstance(args, str):
            # Some servers send already-decoded objects.
            import json

            args = json.dumps(args, separators=(",", ":"), ensure_ascii=False)
        return cls(id=d.get("id") or "", name=fn.get("name") or "", arguments=args)


@dataclass(frozen=True)
class Message:
    """A single transcript entry in OpenAI chat-completion shape.

    Attributes:
        role: One of the Role values (kept as plain str until validated).
        content: Free text; empty string when absent.
        name: Optional display name, used for tool-result attribution.
        tool_call_id: Only on tool messages; id of the call being answered.
        channel: Only on assistant messages; empty means the final channel.
        tool_calls: Only on assistant messages requesting tool execution.
    """

    role: str
    content: str = ""
    name: str | None = None
    tool_call_id: str | None = None
    channel: str | None = None
    tool_calls: tuple[ToolCall, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if isinstance(self.role, Role):
            object.__setattr__(self, "role", self.role.value)
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @property
    def effective_channel(self) -> str:
        """Channel with the implicit final default applied."""
        return self.channel or FINAL_CHANNEL

    def with_content(self, content: str) -> Message:
        return replace(self, content=content)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the OpenAI wire format, omitting empty optionals."""
        d: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            d["name"] = self.name
        if self.tool_call_id:
            d["tool_call_id"] = self.tool_call_id
        if self.channel:
            d["channel"] = self.channel
        if self.tool_calls:
            d["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Message:
        """Build a Message from an OpenAI-shaped dict.

        ``content`` may be null on assistant tool-call messages; it maps
        to the empty string.
        """
        return cls(
            role=str(d.get("role") or ""),
            content=d.get("content") or "",
            name=d.get("name") or None,
            tool_call_id=d.get("tool_call_id") or None,
            channel=d.get("channel") or None,
            tool_calls=tuple(ToolCall.from_dict(tc) for tc in d.get("tool_calls") or ()),
        )


def messages_to_dicts(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Serialize a transcript for a request payload or a file."""
    return [m.to_dict() for m in messages]


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------

DeltaCallback = Callable[[str, str], None]
"""Streaming callback receiving ``(channel, text)`` for each content delta."""


@runtime_checkable
class ChatClient(Protocol):
    """OpenAI-compatible chat-completion capability.

    Payloads and responses are plain dicts in the OpenAI wire format so
    that alternative transports or test fakes can stand in.
    """

    def chat(self, payload: dict) -> dict:
        """Send one chat-completion request and return the response dict."""
        ...

    def stream_chat(self, payload: dict, on_delta: DeltaCallback) -> dict:
        """Stream a chat completion, returning the assembled response dict.

        Raises StreamingUnsupportedError when the server does not answer
        with an event stream.
        """
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class ToolRunner(Protocol):
    """Executes one external tool invocation.

    Returns the tool's stdout bytes, or raises ToolRunError /
    ToolTimeoutError.
    """

    def run(self, spec: ToolSpec, arguments: str, timeout: float) -> bytes:
        ...


@runtime_checkable
class TokenCounter(Protocol):
    """Protocol for estimating token cost of transcripts."""

    def count_text(self, text: str) -> int:
        ...

    def count_messages(self, messages: Sequence[Message]) -> int:
        ...
