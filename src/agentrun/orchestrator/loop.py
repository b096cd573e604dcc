"""AgentLoop: the step-loop controller.

Seeds the transcript, runs the pre-stage once, then alternates between
model requests and tool execution until the model produces final-channel
content or the step budget (hard-capped at 15) runs out.

Each step builds a request from the hygiene-filtered transcript, validates
tool-call sequencing, and sends it. A ``finish_reason == "length"`` answer
is resent once within the same step with a doubled, window-clamped
completion cap; the resend does not consume a step.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import TYPE_CHECKING, Callable

from agentrun import audit
from agentrun.engine.routing import Destination, resolve_channel_route
from agentrun.engine.sampling import resolve_sampling
from agentrun.engine.tokens import context_window_for_model, estimate_tokens, next_completion_cap
from agentrun.engine.transcript import apply_hygiene, normalize_messages, validate_sequence
from agentrun.exceptions import AgentError, TranscriptError
from agentrun.llm.errors import StreamingUnsupportedError
from agentrun.orchestrator.config import LoopState
from agentrun.orchestrator.models import ExitStatus, RunResult
from agentrun.protocols import FINAL_CHANNEL, Message, Role

if TYPE_CHECKING:
    from collections.abc import Sequence
    from typing import TextIO

    from agentrun.models.config import AgentConfig
    from agentrun.prestage.engine import PrestageEngine
    from agentrun.protocols import ChatClient
    from agentrun.toolkit.executor import ToolDispatcher

logger = logging.getLogger(__name__)

ONE_KNOB_WARNING = "warning: --top-p is set; omitting temperature per one-knob rule"


def seed_messages(
    prompt: str, system: str | None = None, developers: Sequence[str] = ()
) -> list[Message]:
    """Initial transcript: optional system, developer messages, then the user prompt."""
    messages: list[Message] = []
    if system and system.strip():
        messages.append(Message(role=Role.SYSTEM.value, content=system))
    for dev in developers:
        if dev.strip():
            messages.append(Message(role=Role.DEVELOPER.value, content=dev.strip()))
    messages.append(Message(role=Role.USER.value, content=prompt))
    return messages


class AgentLoop:
    """Drives one agent run against a ChatClient.

    Usage::

        loop = AgentLoop(config, client, dispatcher=dispatcher, tools=declarations)
        result = loop.run(seed_messages("What is 2+2?", DEFAULT_SYSTEM_PROMPT))
        sys.exit(result.exit_code)

    Args:
        config: The run configuration.
        client: ChatClient for main-loop requests.
        dispatcher: Executes tool calls; None when no manifest is loaded.
        tools: OpenAI tool declarations advertised with each request.
        prestage: Pre-stage engine; None disables the pre-stage.
        stdout: Primary output stream (final answers).
        stderr: Diagnostic stream.
    """

    def __init__(
        self,
        config: AgentConfig,
        client: ChatClient,
        *,
        dispatcher: ToolDispatcher | None = None,
        tools: Sequence[dict] = (),
        prestage: PrestageEngine | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._dispatcher = dispatcher
        self._tools = list(tools)
        self._prestage = prestage
        self._stdout = stdout if stdout is not None else sys.stdout
        self._stderr = stderr if stderr is not None else sys.stderr
        self._state = LoopState.IDLE
        self._warned_one_knob = False

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def has_tools(self) -> bool:
        return self._dispatcher is not None and bool(self._dispatcher.tool_names)

    def _transition(self, state: LoopState) -> None:
        logger.debug("Loop state %s -> %s", self._state.value, state.value)
        self._state = state

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _stream_for(self, destination: Destination) -> TextIO | None:
        if destination is Destination.STDOUT:
            return self._stdout
        if destination is Destination.STDERR:
            return self._stderr
        return None

    def _emit(self, destination: Destination, text: str) -> None:
        stream = self._stream_for(destination)
        if stream is not None:
            print(text, file=stream)

    def _diagnostic(self, text: str) -> None:
        print(text, file=self._stderr)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        seed: Sequence[Message],
        *,
        run_prestage: bool = True,
        on_prepared: Callable[[list[Message]], None] | None = None,
    ) -> RunResult:
        """Execute the run.

        Args:
            seed: Initial transcript.
            run_prestage: Whether to invoke the pre-stage (skipped for
                transcripts loaded from a file).
            on_prepared: Called with the transcript after the pre-stage and
                before the first step (used to print or save it).
                Exceptions it raises propagate to the caller.

        Returns:
            RunResult whose ``exit_code`` is 0 on success and 1 on errors
            or step exhaustion.
        """
        self._transition(LoopState.SEED)
        self._warned_one_knob = False
        try:
            messages = normalize_messages(seed)
        except TranscriptError as exc:
            return self._fail(str(exc), list(seed), 0)

        if run_prestage and self._prestage is not None and self._config.prep.enabled:
            self._transition(LoopState.PRE_STAGE)
            messages = list(self._prestage.run(messages).messages)

        if on_prepared is not None:
            on_prepared(list(messages))

        max_steps = self._config.effective_max_steps
        for step in range(1, max_steps + 1):
            outcome = self._run_step(step, messages)
            if outcome is not None:
                return outcome

        self._transition(LoopState.EXHAUSTED)
        self._diagnostic(f"info: reached maximum steps ({max_steps}); needs human review")
        return RunResult(
            status=ExitStatus.EXHAUSTED, transcript=tuple(messages), steps=max_steps,
        )

    def _fail(self, reason: str, messages: list[Message], step: int) -> RunResult:
        self._transition(LoopState.ERROR)
        self._diagnostic(f"error: {reason}")
        return RunResult(
            status=ExitStatus.ERROR, transcript=tuple(messages), steps=step, error=reason,
        )

    def build_request(self, messages: Sequence[Message], completion_cap: int = 0) -> dict:
        """Request payload for the current transcript.

        Applies hygiene, the one-knob sampling rule, tool declarations and
        the completion cap (only when positive).
        """
        config = self._config
        payload: dict = {
            "model": config.model,
            "messages": [m.to_dict() for m in apply_hygiene(messages, config.debug)],
        }
        temperature, top_p = resolve_sampling(config.model, config.top_p, config.temperature)
        if top_p is not None:
            payload["top_p"] = top_p
            if not self._warned_one_knob:
                self._diagnostic(ONE_KNOB_WARNING)
                self._warned_one_knob = True
        elif temperature is not None:
            payload["temperature"] = temperature
        if self._tools:
            payload["tools"] = list(self._tools)
            payload["tool_choice"] = "auto"
        if completion_cap > 0:
            payload["max_tokens"] = completion_cap
        return payload

    def _run_step(self, step: int, messages: list[Message]) -> RunResult | None:
        """Run one step, mutating ``messages`` in place.

        Returns a RunResult when the run is over, None to continue.
        """
        completion_cap = 0
        retried_for_length = False
        window = context_window_for_model(self._config.model)

        while True:
            self._transition(LoopState.REQUEST)
            payload = self.build_request(messages, completion_cap)
            try:
                validate_sequence(messages)
            except TranscriptError as exc:
                return self._fail(str(exc), messages, step)
            logger.debug("chat.request step=%d: %s", step, json.dumps(payload, ensure_ascii=False))

            streamed_final: list[str] = []
            buffered: list[tuple[str, str]] = []
            try:
                response = self._send(payload, streamed_final, buffered)
            except AgentError as exc:
                return self._fail(f"chat call failed: {exc}", messages, step)

            self._transition(LoopState.RESPONSE)
            logger.debug("chat.response step=%d: %s", step, json.dumps(response, ensure_ascii=False))
            choices = response.get("choices") or []
            if not choices:
                return self._fail("chat response has no choices", messages, step)
            choice = choices[0]

            if "".join(streamed_final).strip():
                return self._finish_stream(step, messages, choice, streamed_final, buffered)

            if (choice.get("finish_reason") or "").strip() == "length" and not retried_for_length:
                self._transition(LoopState.LENGTH_BACKOFF)
                previous = completion_cap
                completion_cap = next_completion_cap(previous, messages, window)
                audit.emit(
                    "length_backoff",
                    model=self._config.model,
                    prev_cap=previous,
                    new_cap=completion_cap,
                    window=window,
                    estimated_prompt_tokens=estimate_tokens(messages),
                )
                logger.debug("Length backoff: cap %d -> %d", previous, completion_cap)
                retried_for_length = True
                continue

            return self._handle_message(step, messages, choice)

    def _send(
        self, payload: dict, streamed_final: list[str], buffered: list[tuple[str, str]]
    ) -> dict:
        if self._config.stream_final:
            final_stream = self._stream_for(
                resolve_channel_route(FINAL_CHANNEL, self._config.channel_routes)
            )

            def on_delta(channel: str, text: str) -> None:
                if not text:
                    return
                ch = channel.strip()
                if not ch or ch == FINAL_CHANNEL:
                    if final_stream is not None:
                        final_stream.write(text)
                        final_stream.flush()
                    streamed_final.append(text)
                elif buffered and buffered[-1][0] == ch:
                    buffered[-1] = (ch, buffered[-1][1] + text)
                else:
                    buffered.append((ch, text))

            try:
                return self._client.stream_chat(payload, on_delta)
            except StreamingUnsupportedError as exc:
                logger.debug("Streaming unsupported, falling back: %s", exc)
                buffered.clear()
        return self._client.chat(payload)

    def _finish_stream(
        self,
        step: int,
        messages: list[Message],
        choice: dict,
        streamed_final: list[str],
        buffered: list[tuple[str, str]],
    ) -> RunResult:
        routes = self._config.channel_routes
        final_stream = self._stream_for(resolve_channel_route(FINAL_CHANNEL, routes))
        if final_stream is not None:
            print(file=final_stream)
        if self._config.verbose:
            for channel, text in buffered:
                self._emit(resolve_channel_route(channel, routes), text.strip())
        raw = choice.get("message") or {}
        final_text = "".join(streamed_final).strip()
        messages.append(Message.from_dict({**raw, "role": Role.ASSISTANT.value}))
        self._transition(LoopState.FINAL)
        return RunResult(
            status=ExitStatus.SUCCESS, final_text=final_text,
            transcript=tuple(messages), steps=step,
        )

    def _handle_message(self, step: int, messages: list[Message], choice: dict) -> RunResult | None:
        raw = choice.get("message") or {}
        try:
            msg = normalize_messages([Message.from_dict({**raw, "role": raw.get("role") or "assistant"})])[0]
        except TranscriptError as exc:
            return self._fail(str(exc), messages, step)
        content = msg.content.strip()
        is_assistant = msg.role == Role.ASSISTANT.value
        routes = self._config.channel_routes

        if self._config.verbose and is_assistant and msg.effective_channel != FINAL_CHANNEL and content:
            self._emit(resolve_channel_route(msg.effective_channel, routes), content)

        if msg.tool_calls and self.has_tools:
            self._transition(LoopState.TOOL_EXEC)
            messages.append(msg)
            results = self._dispatcher.dispatch(msg)
            messages.extend(results)
            logger.debug("Step %d: appended %d tool results", step, len(results))
            return None

        if is_assistant and content:
            if msg.effective_channel == FINAL_CHANNEL:
                self._emit(resolve_channel_route(FINAL_CHANNEL, routes), content)
                messages.append(msg)
                self._transition(LoopState.FINAL)
                return RunResult(
                    status=ExitStatus.SUCCESS, final_text=content,
                    transcript=tuple(messages), steps=step,
                )

        messages.append(msg)
        return None
