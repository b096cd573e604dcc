"""agentrun: a non-interactive agent for OpenAI-compatible chat endpoints.

Drives a multi-step conversation, runs local tools on the model's behalf,
and prints one final answer. A cached, fail-open pre-stage call can enrich
the transcript before the main loop.
"""

from agentrun._version import __version__

# Core entry point
from agentrun.orchestrator import AgentLoop, ExitStatus, LoopState, RunResult, seed_messages

# Configuration
from agentrun.models.config import AgentConfig, PrepConfig, PrepSettings, resolve_prep_settings

# Protocols and transcript types
from agentrun.protocols import (
    ChatClient,
    Message,
    Role,
    TokenCounter,
    ToolCall,
    ToolRunner,
)

# Transcript invariants
from agentrun.engine.transcript import apply_hygiene, normalize_messages, validate_sequence
from agentrun.engine.tokens import estimate_tokens, trim_messages_to_fit
from agentrun.engine.routing import Destination, parse_channel_routes, resolve_channel_route

# Pre-stage and tools
from agentrun.prestage import PrepCache, PrestageEngine, PrestageOutcome
from agentrun.toolkit import SubprocessToolRunner, ToolDispatcher, ToolSpec, load_manifest

# LLM client
from agentrun.llm import OpenAIClient

# Exceptions
from agentrun.exceptions import (
    AgentError,
    ConfigError,
    InvalidRoleError,
    ManifestError,
    PrestageError,
    SequenceError,
    ToolRunError,
    ToolTimeoutError,
    ToolUnavailableError,
    TranscriptError,
)

__all__ = [
    "__version__",
    "AgentLoop",
    "ExitStatus",
    "LoopState",
    "RunResult",
    "seed_messages",
    # Config
    "AgentConfig",
    "PrepConfig",
    "PrepSettings",
    "resolve_prep_settings",
    # Protocols
    "ChatClient",
    "ToolRunner",
    "TokenCounter",
    "Message",
    "Role",
    "ToolCall",
    # Transcript
    "normalize_messages",
    "validate_sequence",
    "apply_hygiene",
    "estimate_tokens",
    "trim_messages_to_fit",
    "Destination",
    "parse_channel_routes",
    "resolve_channel_route",
    # Pre-stage and tools
    "PrestageEngine",
    "PrestageOutcome",
    "PrepCache",
    "ToolDispatcher",
    "ToolSpec",
    "SubprocessToolRunner",
    "load_manifest",
    "OpenAIClient",
    # Exceptions
    "AgentError",
    "ConfigError",
    "TranscriptError",
    "InvalidRoleError",
    "SequenceError",
    "ManifestError",
    "ToolUnavailableError",
    "ToolRunError",
    "ToolTimeoutError",
    "PrestageError",
]
