"""Configuration models for agentrun.

AgentConfig holds the immutable settings of one run; PrepConfig holds the
pre-stage overrides. Both are built once (normally by the CLI) and passed
by reference into every component. PrepSettings is the fully resolved
pre-stage view produced by :func:`resolve_prep_settings`.
"""

from __future__ import annotations

import logging
import os
import types
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from agentrun.engine.sampling import profile_temperature, supports_temperature

if TYPE_CHECKING:
    from collections.abc import Mapping

    from agentrun.engine.routing import Destination

logger = logging.getLogger(__name__)

MAX_STEPS_CEILING = 15
DEFAULT_MODEL = "oss-gpt-20b"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_SYSTEM_PROMPT = "You are a helpful, precise assistant. Use tools when strictly helpful."


@dataclass(frozen=True)
class PrepConfig:
    """Pre-stage overrides. ``None`` means "not set, fall through"."""

    enabled: bool = True
    model: str | None = None
    base_url: str | None = None
    api_key: str | None = None
    http_retries: int | None = None
    http_retry_backoff: float | None = None
    http_timeout: float | None = None
    temperature: float | None = None
    top_p: float | None = None
    profile: str | None = None
    system: str | None = None
    tools_path: str | None = None
    allow_external_tools: bool = False
    cache_bust: bool = False
    cache_ttl: float = 600.0


@dataclass(frozen=True)
class AgentConfig:
    """Settings for one agent run.

    Example::

        config = AgentConfig(model="gpt-4o-mini", base_url="http://localhost:8080/v1")
    """

    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None
    max_steps: int = 8
    http_timeout: float = 90.0
    http_retries: int = 2
    http_retry_backoff: float = 0.5
    tool_timeout: float = 30.0
    temperature: float = 1.0
    top_p: float | None = None
    tools_path: str | None = None
    debug: bool = False
    verbose: bool = False
    quiet: bool = False
    stream_final: bool = False
    ordered_tool_results: bool = False
    channel_routes: Mapping[str, Destination] = field(default_factory=dict)
    work_dir: str = "."
    prep: PrepConfig = field(default_factory=PrepConfig)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "channel_routes", types.MappingProxyType(dict(self.channel_routes))
        )

    @property
    def effective_max_steps(self) -> int:
        """Configured step budget, hard-capped at 15."""
        return max(0, min(self.max_steps, MAX_STEPS_CEILING))


@dataclass(frozen=True)
class PrepSettings:
    """Resolved pre-stage connection and sampling settings.

    At most one of ``temperature`` and ``top_p`` is set.
    """

    model: str
    base_url: str
    api_key: str | None
    retries: int
    backoff: float
    timeout: float
    temperature: float | None
    top_p: float | None


def _first(*values: str | None) -> str | None:
    for v in values:
        if v is not None and v.strip():
            return v.strip()
    return None


def parse_duration(raw: str) -> float:
    """Seconds from ``"500ms"``, ``"2s"``, ``"1m"``, ``"1h"`` or a bare number.

    Raises:
        ValueError: If the text is not a duration.
    """
    text = raw.strip().lower()
    for suffix, scale in (("ms", 0.001), ("s", 1.0), ("m", 60.0), ("h", 3600.0)):
        if text.endswith(suffix):
            return float(text[: -len(suffix)]) * scale
    return float(text)


def _env_float(environ: Mapping[str, str], name: str, duration: bool = False) -> float | None:
    raw = (environ.get(name) or "").strip()
    if not raw:
        return None
    try:
        return parse_duration(raw) if duration else float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return None


def _env_int(environ: Mapping[str, str], name: str) -> int | None:
    raw = (environ.get(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return None


def resolve_prep_settings(
    config: AgentConfig, environ: Mapping[str, str] | None = None
) -> PrepSettings:
    """Resolve pre-stage settings: override, then environment, then main config.

    Pure apart from reading ``environ`` (defaults to ``os.environ``).

    Sampling follows the one-knob rule: an explicit positive top_p wins and
    omits temperature; otherwise an explicit pre-stage temperature, then a
    prompt profile, then the main temperature, each only when the
    pre-stage model supports temperature.
    """
    env = os.environ if environ is None else environ
    prep = config.prep

    model = _first(prep.model, env.get("OAI_PREP_MODEL")) or config.model
    base_url = _first(prep.base_url, env.get("OAI_PREP_BASE_URL")) or config.base_url
    api_key = _first(
        prep.api_key,
        env.get("OAI_PREP_API_KEY"),
        env.get("OAI_API_KEY"),
        env.get("OPENAI_API_KEY"),
    ) or config.api_key

    retries = prep.http_retries
    if retries is None or retries <= 0:
        retries = _env_int(env, "OAI_PREP_HTTP_RETRIES")
    if retries is None or retries <= 0:
        retries = config.http_retries

    backoff = prep.http_retry_backoff
    if not backoff:
        backoff = _env_float(env, "OAI_PREP_HTTP_RETRY_BACKOFF", duration=True)
    if not backoff:
        backoff = config.http_retry_backoff

    timeout = prep.http_timeout
    if not timeout or timeout <= 0:
        timeout = _env_float(env, "OAI_PREP_HTTP_TIMEOUT", duration=True)
    if not timeout or timeout <= 0:
        timeout = config.http_timeout

    top_p = prep.top_p if prep.top_p is not None else _env_float(env, "OAI_PREP_TOP_P")
    explicit_temp = (
        prep.temperature if prep.temperature is not None else _env_float(env, "OAI_PREP_TEMP")
    )

    temperature: float | None = None
    if top_p is None or top_p <= 0:
        top_p = None
        if explicit_temp is not None:
            temperature = explicit_temp if supports_temperature(model) else None
        elif prep.profile and prep.profile.strip():
            temperature = profile_temperature(model, prep.profile)
        elif supports_temperature(model):
            temperature = config.temperature

    return PrepSettings(
        model=model,
        base_url=base_url,
        api_key=api_key,
        retries=retries,
        backoff=backoff,
        timeout=timeout,
        temperature=temperature,
        top_p=top_p,
    )
