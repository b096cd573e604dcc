"""Step-loop lifecycle states.

The loop walks SEED -> PRE_STAGE -> REQUEST -> RESPONSE and from there to
TOOL_EXEC (back to REQUEST), LENGTH_BACKOFF (back to REQUEST within the
same step), FINAL, EXHAUSTED or ERROR.
"""

from __future__ import annotations

import enum


class LoopState(str, enum.Enum):
    """States the step loop can be in during a run."""

    IDLE = "idle"
    SEED = "seed"
    PRE_STAGE = "pre_stage"
    REQUEST = "request"
    RESPONSE = "response"
    TOOL_EXEC = "tool_exec"
    LENGTH_BACKOFF = "length_backoff"
    FINAL = "final"
    EXHAUSTED = "exhausted"
    ERROR = "error"
