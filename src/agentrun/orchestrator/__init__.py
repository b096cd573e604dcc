"""Orchestrator package -- the step-loop controller and its result types."""

from agentrun.orchestrator.config import LoopState
from agentrun.orchestrator.loop import ONE_KNOB_WARNING, AgentLoop, seed_messages
from agentrun.orchestrator.models import ExitStatus, RunResult

__all__ = [
    # Core
    "AgentLoop",
    "seed_messages",
    "ONE_KNOB_WARNING",
    # State
    "LoopState",
    # Models
    "ExitStatus",
    "RunResult",
]
