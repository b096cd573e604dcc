"""Run result models for the step loop."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from agentrun.protocols import Message


class ExitStatus(str, enum.Enum):
    """How a run ended."""

    SUCCESS = "success"
    ERROR = "error"
    EXHAUSTED = "exhausted"

    @property
    def exit_code(self) -> int:
        return 0 if self is ExitStatus.SUCCESS else 1


@dataclass(frozen=True)
class RunResult:
    """Outcome of one agent run.

    Frozen: a finished run is an immutable record.

    Attributes:
        status: Terminal status.
        final_text: The final answer (empty unless status is SUCCESS).
        transcript: The transcript as it stood when the run ended.
        steps: Number of steps started.
        error: One-line diagnostic for ERROR runs.
    """

    status: ExitStatus
    final_text: str = ""
    transcript: tuple[Message, ...] = field(default_factory=tuple)
    steps: int = 0
    error: str = ""

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    @property
    def ok(self) -> bool:
        return self.status is ExitStatus.SUCCESS
