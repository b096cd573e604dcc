"""ToolDispatcher: concurrent execution of an assistant's tool calls.

Provides ``dispatch()``, which fans the N tool calls of one assistant
message out to a bounded thread pool and fans exactly N correlated
``tool`` messages back in. Failures never escape: every call yields a
result message, errors included.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING

from agentrun.exceptions import ToolRunError, ToolTimeoutError
from agentrun.protocols import Message, Role, ToolCall
from agentrun.toolkit.models import ToolResult

if TYPE_CHECKING:
    from collections.abc import Mapping

    from agentrun.protocols import ToolRunner
    from agentrun.toolkit.models import ToolSpec

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 30.0
DEFAULT_MAX_WORKERS = 8
MAX_ERROR_LENGTH = 1000
TIMEOUT_MESSAGE = "tool timed out"


def one_line(text: str) -> str:
    """Collapse all whitespace runs (newlines and tabs included) to one space."""
    return " ".join(text.split())


def error_payload(message: str) -> str:
    """One-line ``{"error": ...}`` JSON text."""
    return one_line(json.dumps({"error": message}, ensure_ascii=False))


def sanitize_tool_content(result: ToolResult) -> str:
    """Render a tool result as the content of a ``tool`` message.

    Successful empty output becomes ``{}``; other output is trimmed to one
    line. Failures become ``{"error": "<message>"}`` with timeouts
    normalized to "tool timed out" and messages capped at 1000 chars.
    """
    if result.success:
        trimmed = result.output.strip()
        return one_line(trimmed) if trimmed else "{}"
    message = TIMEOUT_MESSAGE if result.timed_out else result.error
    return error_payload(message[:MAX_ERROR_LENGTH])


class ToolDispatcher:
    """Executes assistant tool calls against a ToolRunner.

    Usage::

        dispatcher = ToolDispatcher(registry, SubprocessToolRunner())
        transcript.extend(dispatcher.dispatch(assistant_message))

    Args:
        registry: Tool name -> ToolSpec map from a loaded manifest.
        runner: The ToolRunner capability.
        default_timeout: Per-call deadline when a spec sets none.
        max_workers: Upper bound on concurrently running calls.
        ordered: Append results in request order instead of completion
            order.
    """

    def __init__(
        self,
        registry: Mapping[str, ToolSpec],
        runner: ToolRunner,
        *,
        default_timeout: float = DEFAULT_TOOL_TIMEOUT,
        max_workers: int = DEFAULT_MAX_WORKERS,
        ordered: bool = False,
    ) -> None:
        self._registry = dict(registry)
        self._runner = runner
        self._default_timeout = default_timeout
        self._max_workers = max(1, max_workers)
        self._ordered = ordered

    @property
    def tool_names(self) -> list[str]:
        return sorted(self._registry)

    def execute(self, call: ToolCall) -> ToolResult:
        """Run a single tool call and capture its outcome.

        Unknown tool names short-circuit to an error result without
        touching the runner.
        """
        spec = self._registry.get(call.name)
        if spec is None:
            return ToolResult(
                tool_name=call.name,
                tool_call_id=call.id,
                success=False,
                error=f"unknown tool: {call.name}",
            )
        arguments = call.arguments.strip() or "{}"
        try:
            output = self._runner.run(spec, arguments, self._default_timeout)
        except ToolTimeoutError:
            logger.debug("Tool %s timed out", call.name)
            return ToolResult(
                tool_name=call.name, tool_call_id=call.id, success=False,
                error=TIMEOUT_MESSAGE, timed_out=True,
            )
        except ToolRunError as exc:
            logger.debug("Tool %s failed: %s", call.name, exc)
            return ToolResult(
                tool_name=call.name, tool_call_id=call.id, success=False, error=str(exc),
            )
        except Exception as exc:
            logger.debug("Tool %s raised: %s", call.name, exc, exc_info=True)
            return ToolResult(
                tool_name=call.name, tool_call_id=call.id, success=False,
                error=f"{type(exc).__name__}: {exc}",
            )
        return ToolResult(
            tool_name=call.name,
            tool_call_id=call.id,
            success=True,
            output=output.decode("utf-8", errors="replace"),
        )

    def dispatch(self, assistant: Message) -> list[Message]:
        """Execute every tool call of ``assistant`` concurrently.

        Blocks until all calls have produced a result.

        Returns:
            Exactly ``len(assistant.tool_calls)`` tool messages, each with
            ``name`` and ``tool_call_id`` of its originating call. Order is
            completion order unless the dispatcher was built with
            ``ordered=True``.
        """
        calls = assistant.tool_calls
        if not calls:
            return []
        slots: list[Message | None] = [None] * len(calls)
        drained: list[Message] = []
        workers = min(self._max_workers, len(calls))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="agentrun-tool") as pool:
            futures = {pool.submit(self.execute, call): idx for idx, call in enumerate(calls)}
            for future in as_completed(futures):
                result = future.result()
                msg = Message(
                    role=Role.TOOL.value,
                    content=sanitize_tool_content(result),
                    name=result.tool_name,
                    tool_call_id=result.tool_call_id,
                )
                slots[futures[future]] = msg
                drained.append(msg)
        if self._ordered:
            return [m for m in slots if m is not None]
        return drained
