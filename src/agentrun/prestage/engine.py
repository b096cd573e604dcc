"""PrestageEngine: one cached, fail-open enrichment call before the main loop.

The pre-stage call sends the seed transcript to a (possibly different)
model, merges the structured directives it returns into the transcript,
and optionally answers its tool calls with the read-only built-in tools
(or, when explicitly allowed, with manifest tools). Any failure leaves the
seed transcript untouched.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from agentrun.engine.hashing import toolset_fingerprint
from agentrun.engine.transcript import apply_hygiene, normalize_messages, validate_sequence
from agentrun.exceptions import PrestageError
from agentrun.llm.client import OpenAIClient
from agentrun.models.config import resolve_prep_settings
from agentrun.prestage.cache import PrepCache, cache_key
from agentrun.prestage.payload import merge_prestage_payload, parse_prestage_payload
from agentrun.protocols import FINAL_CHANNEL, Message, Role
from agentrun.toolkit.builtins import builtin_tool_messages
from agentrun.toolkit.executor import ToolDispatcher, one_line
from agentrun.toolkit.manifest import check_availability, load_manifest
from agentrun.toolkit.runner import SubprocessToolRunner

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from typing import TextIO

    from agentrun.models.config import AgentConfig, PrepSettings
    from agentrun.protocols import ChatClient, ToolRunner

logger = logging.getLogger(__name__)

ClientFactory = Callable[["PrepSettings"], "ChatClient"]


def default_client_factory(settings: PrepSettings) -> ChatClient:
    return OpenAIClient(
        settings.base_url,
        settings.api_key,
        timeout=settings.timeout,
        retries=settings.retries,
        backoff=settings.backoff,
        stage="prep",
    )


@dataclass(frozen=True)
class PrestageOutcome:
    """Result of a pre-stage attempt.

    Attributes:
        messages: Transcript to continue with (the seed on failure).
        cache_hit: Whether the result came from the cache.
        error: One-line failure reason when the pre-stage was skipped.
    """

    messages: list[Message]
    cache_hit: bool = False
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class PrestageEngine:
    """Runs the pre-stage call for one agent run.

    Args:
        config: The run configuration.
        client_factory: Builds a ChatClient from resolved pre-stage
            settings; defaults to an OpenAIClient.
        cache: Pre-stage cache; defaults to one rooted at ``config.work_dir``.
        runner: ToolRunner for external manifest tools.
        environ: Environment used for setting resolution and ``env.get``.
        stderr: Stream for the fail-open warning and verbose output.
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        client_factory: ClientFactory | None = None,
        cache: PrepCache | None = None,
        runner: ToolRunner | None = None,
        environ: Mapping[str, str] | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self._config = config
        self._client_factory = client_factory or default_client_factory
        self._cache = cache or PrepCache(config.work_dir, ttl=config.prep.cache_ttl)
        self._runner = runner or SubprocessToolRunner()
        self._environ = environ
        self._stderr = stderr if stderr is not None else sys.stderr

    @property
    def settings(self) -> PrepSettings:
        return resolve_prep_settings(self._config, self._environ)

    @property
    def manifest_path(self) -> str | None:
        path = self._config.prep.tools_path or self._config.tools_path
        return path.strip() if path and path.strip() else None

    def request_messages(self, messages: Sequence[Message]) -> list[Message]:
        """Messages the pre-stage call would send (used for dry runs)."""
        prepared = apply_hygiene(normalize_messages(messages), self._config.debug)
        system = (self._config.prep.system or "").strip()
        if system:
            prepared.insert(0, Message(role=Role.SYSTEM.value, content=system))
        return prepared

    def run(self, messages: Sequence[Message]) -> PrestageOutcome:
        """Run the pre-stage, falling back to the seed transcript on any error.

        Emits ``WARN: pre-stage failed; skipping (reason: ...)`` once on
        failure.
        """
        seed = list(messages)
        try:
            return self._run(seed)
        except Exception as exc:
            reason = one_line(str(exc)) or type(exc).__name__
            logger.debug("Pre-stage failed", exc_info=True)
            print(f"WARN: pre-stage failed; skipping (reason: {reason})", file=self._stderr)
            return PrestageOutcome(messages=seed, error=reason)

    def _run(self, seed: list[Message]) -> PrestageOutcome:
        settings = self.settings
        prep = self._config.prep
        tool_spec = toolset_fingerprint(prep.allow_external_tools, self.manifest_path)
        key = cache_key(
            model=settings.model,
            base_url=settings.base_url,
            temperature=settings.temperature,
            top_p=settings.top_p,
            retries=settings.retries,
            backoff=settings.backoff,
            tool_spec=tool_spec,
            messages=seed,
        )
        if not prep.cache_bust:
            cached = self._cache.read(key)
            if cached is not None:
                logger.debug("Pre-stage cache hit %s", key[:12])
                return PrestageOutcome(messages=cached, cache_hit=True)

        normalized = normalize_messages(seed)
        request_messages = self.request_messages(normalized)
        validate_sequence(request_messages)

        payload: dict = {
            "model": settings.model,
            "messages": [m.to_dict() for m in request_messages],
        }
        if settings.top_p is not None:
            payload["top_p"] = settings.top_p
        elif settings.temperature is not None:
            payload["temperature"] = settings.temperature

        client = self._client_factory(settings)
        try:
            response = client.chat(payload)
        finally:
            client.close()

        choices = response.get("choices") or []
        if not choices:
            merged = normalized
            self._cache.write(key, merged)
            return PrestageOutcome(messages=merged)

        raw = choices[0].get("message") or {}
        assistant = normalize_messages([Message.from_dict({**raw, "role": raw.get("role") or "assistant"})])[0]
        if (
            self._config.verbose
            and assistant.role == Role.ASSISTANT.value
            and assistant.effective_channel != FINAL_CHANNEL
            and assistant.content.strip()
        ):
            print(assistant.content.strip(), file=self._stderr)

        merged = normalized
        if assistant.content.strip():
            try:
                parsed = parse_prestage_payload(assistant.content)
            except (ValueError, json.JSONDecodeError) as exc:
                logger.debug("Pre-stage content is not a payload: %s", exc)
            else:
                merged = merge_prestage_payload(normalized, parsed)

        if not assistant.tool_calls:
            self._cache.write(key, merged)
            return PrestageOutcome(messages=merged)

        out = [*merged, assistant]
        if not prep.allow_external_tools:
            out.extend(builtin_tool_messages(
                assistant, Path(self._config.work_dir), self._environ,
            ))
        else:
            out.extend(self._external_tool_messages(assistant))
        self._cache.write(key, out)
        return PrestageOutcome(messages=out)

    def _external_tool_messages(self, assistant: Message) -> list[Message]:
        registry: dict = {}
        path = self.manifest_path
        if path:
            registry, _ = load_manifest(path)
            check_availability(registry)
        else:
            logger.debug("External pre-stage tools allowed but no manifest configured")
        dispatcher = ToolDispatcher(
            registry,
            self._runner,
            default_timeout=self._config.tool_timeout,
            ordered=self._config.ordered_tool_results,
        )
        results = dispatcher.dispatch(assistant)
        if len(results) != len(assistant.tool_calls):
            raise PrestageError("tool dispatch returned an incomplete result set")
        return results
