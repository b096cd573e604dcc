"""agentrun CLI -- one-shot agent runs from the command line.

Loaded via the ``agentrun`` entry point defined in pyproject.toml. Exit
status: 0 success, 1 runtime failure or step exhaustion, 2 misuse.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import TYPE_CHECKING, Any

import click

from agentrun import audit
from agentrun._version import __version__
from agentrun.cli.formatting import configure_logging, format_error, get_console
from agentrun.engine.routing import parse_channel_routes
from agentrun.engine.serialization import dump_messages, load_messages, save_messages
from agentrun.exceptions import AgentError, ConfigError, TranscriptError
from agentrun.llm.client import OpenAIClient
from agentrun.llm.errors import LLMConfigError
from agentrun.models.config import (
    DEFAULT_BASE_URL,
    DEFAULT_MODEL,
    DEFAULT_SYSTEM_PROMPT,
    AgentConfig,
    PrepConfig,
    parse_duration,
)
from agentrun.orchestrator import AgentLoop, seed_messages
from agentrun.prestage import PrestageEngine, ttl_from_env
from agentrun.toolkit import (
    SubprocessToolRunner,
    ToolDispatcher,
    check_availability,
    load_manifest,
)

if TYPE_CHECKING:
    from agentrun.protocols import Message

logger = logging.getLogger(__name__)


class DurationType(click.ParamType):
    """Seconds given as a bare number or with an ms/s/m/h suffix."""

    name = "duration"

    def convert(self, value: Any, param: click.Parameter | None, ctx: click.Context | None) -> float:
        if isinstance(value, (int, float)):
            return float(value)
        try:
            return parse_duration(str(value))
        except ValueError:
            self.fail(f"{value!r} is not a valid duration", param, ctx)


DURATION = DurationType()


def _read_text(source: str | None) -> str | None:
    """Contents of a file path, ``-`` meaning stdin."""
    if source is None:
        return None
    if source == "-":
        return sys.stdin.read()
    with open(source, encoding="utf-8") as fh:
        return fh.read()


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, prog_name="agentrun")
@click.option("-p", "--prompt", default=None, help="User prompt.")
@click.option("--prompt-file", default=None, help="Read the user prompt from a file ('-' for stdin).")
@click.option("--system", "system_prompt", default=DEFAULT_SYSTEM_PROMPT, show_default=True, help="System prompt.")
@click.option("--system-file", default=None, help="Read the system prompt from a file ('-' for stdin).")
@click.option("--developer", "developers", multiple=True, help="Developer message (repeatable).")
@click.option("--tools", "tools_path", default=None, help="Path to a tools.json manifest.")
@click.option("--model", default=DEFAULT_MODEL, envvar="OAI_MODEL", show_default=True, help="Model id.")
@click.option("--base-url", default=DEFAULT_BASE_URL, envvar="OAI_BASE_URL", show_default=True, help="OpenAI-compatible base URL.")
@click.option("--api-key", default=None, envvar=["OAI_API_KEY", "OPENAI_API_KEY"], help="API key.")
@click.option("--max-steps", default=8, type=int, show_default=True, help="Maximum agent steps (capped at 15).")
@click.option("--http-timeout", default="90s", type=DURATION, envvar="OAI_HTTP_TIMEOUT", show_default=True, help="HTTP timeout per model request.")
@click.option("--http-retries", default=2, type=int, show_default=True, help="Retries for transient HTTP errors.")
@click.option("--http-retry-backoff", default="500ms", type=DURATION, show_default=True, help="Base backoff between HTTP retries.")
@click.option("--tool-timeout", default="30s", type=DURATION, show_default=True, help="Per-tool timeout.")
@click.option("--temp", "temperature", default=1.0, type=float, show_default=True, help="Sampling temperature.")
@click.option("--top-p", default=None, type=float, help="Nucleus sampling; when set, temperature is omitted.")
@click.option("--stream-final", is_flag=True, help="Stream final-channel content as it arrives.")
@click.option("--ordered-tool-results", is_flag=True, help="Append tool results in request order.")
@click.option("--channel-route", "channel_routes", multiple=True, help="Route a channel: name=stdout|stderr|omit (repeatable).")
@click.option("--debug", is_flag=True, help="Debug logging; disables tool-output hygiene.")
@click.option("-v", "--verbose", is_flag=True, help="Show non-final channel output.")
@click.option("-q", "--quiet", is_flag=True, help="Only errors on stderr.")
@click.option("--load-messages", "load_path", default=None, help="Start from a saved transcript (skips the pre-stage).")
@click.option("--save-messages", "save_path", default=None, help="Save the prepared transcript before the main loop.")
@click.option("--print-messages", is_flag=True, help="Print the prepared transcript to stderr.")
@click.option("--audit-log", default=None, envvar="AGENTRUN_AUDIT_LOG", help="Append audit events as NDJSON to this file.")
@click.option("--prep/--no-prep", "prep_enabled", default=True, show_default=True, help="Run the pre-stage call.")
@click.option("--prep-model", default=None, help="Pre-stage model (env OAI_PREP_MODEL).")
@click.option("--prep-base-url", default=None, help="Pre-stage base URL (env OAI_PREP_BASE_URL).")
@click.option("--prep-api-key", default=None, help="Pre-stage API key (env OAI_PREP_API_KEY).")
@click.option("--prep-http-retries", default=None, type=int, help="Pre-stage HTTP retries.")
@click.option("--prep-http-retry-backoff", default=None, type=DURATION, help="Pre-stage retry backoff.")
@click.option("--prep-http-timeout", default=None, type=DURATION, help="Pre-stage HTTP timeout.")
@click.option("--prep-temp", default=None, type=float, help="Pre-stage temperature.")
@click.option("--prep-top-p", default=None, type=float, help="Pre-stage nucleus sampling.")
@click.option("--prep-profile", default=None, type=click.Choice(["deterministic", "general", "creative", "reasoning"], case_sensitive=False), help="Pre-stage prompt profile.")
@click.option("--prep-system", default=None, help="Extra system message for the pre-stage call.")
@click.option("--prep-tools", default=None, help="Manifest for pre-stage external tools.")
@click.option("--prep-tools-allow-external", is_flag=True, help="Let the pre-stage run manifest tools instead of the read-only built-ins.")
@click.option("--prep-cache-bust", is_flag=True, help="Ignore cached pre-stage results.")
@click.option("--prep-dry-run", is_flag=True, help="Print the pre-stage request messages and exit.")
def cli(**opts: Any) -> None:
    """Run one non-interactive agent conversation and print the final answer."""
    configure_logging(opts["debug"], opts["quiet"])
    console = get_console()
    if opts["audit_log"]:
        audit.attach_file(opts["audit_log"])

    try:
        config = _build_config(opts)
    except ConfigError as exc:
        raise click.BadParameter(str(exc), param_hint="'--channel-route'") from None

    try:
        seed, loaded = _initial_messages(opts)
    except (OSError, TranscriptError) as exc:
        format_error(str(exc), console)
        raise SystemExit(2) from None

    if opts["prep_dry_run"]:
        engine = PrestageEngine(config)
        try:
            prepared = engine.request_messages(seed)
        except TranscriptError as exc:
            format_error(str(exc), console)
            raise SystemExit(2) from None
        click.echo(json.dumps([m.to_dict() for m in prepared], ensure_ascii=False))
        return

    registry: dict = {}
    declarations: list[dict] = []
    if config.tools_path:
        try:
            registry, declarations = load_manifest(config.tools_path)
            check_availability(registry)
        except AgentError as exc:
            format_error(str(exc), console)
            raise SystemExit(1) from None

    try:
        client = OpenAIClient(
            config.base_url,
            config.api_key,
            timeout=config.http_timeout,
            retries=config.http_retries,
            backoff=config.http_retry_backoff,
            stage="main",
        )
    except LLMConfigError as exc:
        format_error(str(exc), console)
        raise SystemExit(2) from None

    dispatcher = None
    if registry:
        dispatcher = ToolDispatcher(
            registry,
            SubprocessToolRunner(),
            default_timeout=config.tool_timeout,
            ordered=config.ordered_tool_results,
        )

    def on_prepared(messages: list[Message]) -> None:
        if opts["print_messages"]:
            click.echo(dump_messages(messages, _prestage_metadata(config)), err=True)
        if opts["save_path"]:
            try:
                save_messages(opts["save_path"], messages, _prestage_metadata(config))
            except OSError as exc:
                format_error(f"write save-messages file: {exc}", console)
                raise SystemExit(2) from None

    loop = AgentLoop(
        config,
        client,
        dispatcher=dispatcher,
        tools=declarations,
        prestage=PrestageEngine(config),
    )
    try:
        result = loop.run(seed, run_prestage=not loaded, on_prepared=on_prepared)
    finally:
        client.close()
    if result.exit_code:
        raise SystemExit(result.exit_code)


def _build_config(opts: dict[str, Any]) -> AgentConfig:
    prep = PrepConfig(
        enabled=opts["prep_enabled"],
        model=opts["prep_model"],
        base_url=opts["prep_base_url"],
        api_key=opts["prep_api_key"],
        http_retries=opts["prep_http_retries"],
        http_retry_backoff=opts["prep_http_retry_backoff"],
        http_timeout=opts["prep_http_timeout"],
        temperature=opts["prep_temp"],
        top_p=opts["prep_top_p"],
        profile=opts["prep_profile"],
        system=opts["prep_system"],
        tools_path=opts["prep_tools"],
        allow_external_tools=opts["prep_tools_allow_external"],
        cache_bust=opts["prep_cache_bust"],
        cache_ttl=ttl_from_env(),
    )
    return AgentConfig(
        model=opts["model"],
        base_url=opts["base_url"],
        api_key=opts["api_key"],
        max_steps=opts["max_steps"],
        http_timeout=opts["http_timeout"],
        http_retries=opts["http_retries"],
        http_retry_backoff=opts["http_retry_backoff"],
        tool_timeout=opts["tool_timeout"],
        temperature=opts["temperature"],
        top_p=opts["top_p"],
        tools_path=opts["tools_path"],
        debug=opts["debug"],
        verbose=opts["verbose"],
        quiet=opts["quiet"],
        stream_final=opts["stream_final"],
        ordered_tool_results=opts["ordered_tool_results"],
        channel_routes=parse_channel_routes(opts["channel_routes"]),
        work_dir=os.getcwd(),
        prep=prep,
    )


def _initial_messages(opts: dict[str, Any]) -> tuple[list[Message], bool]:
    """Seed transcript and whether it was loaded from a file.

    Raises:
        click.UsageError: On a missing prompt or a prompt combined with
            ``--load-messages``.
    """
    prompt = opts["prompt"]
    prompt_file = _read_text(opts["prompt_file"])
    if opts["load_path"]:
        if prompt or prompt_file:
            raise click.UsageError("--load-messages cannot be combined with --prompt")
        return load_messages(opts["load_path"]), True
    if prompt_file is not None:
        prompt = prompt_file
    if not prompt or not prompt.strip():
        raise click.UsageError("missing required --prompt")
    system = _read_text(opts["system_file"])
    if system is None:
        system = opts["system_prompt"]
    return seed_messages(prompt.strip(), system, opts["developers"]), False


def _prestage_metadata(config: AgentConfig) -> dict[str, Any] | None:
    if not config.prep.enabled:
        return None
    meta: dict[str, Any] = {"enabled": True}
    if config.prep.profile:
        meta["profile"] = config.prep.profile
    return meta


if __name__ == "__main__":
    cli()
