"""Sampling knobs: temperature support, prompt profiles, one-knob rule."""

from __future__ import annotations

import enum

MIN_TEMPERATURE = 0.1
MAX_TEMPERATURE = 1.0

_NO_TEMPERATURE_PREFIXES = ("o3", "o4")


class PromptProfile(str, enum.Enum):
    """Named pre-stage prompt profiles."""

    DETERMINISTIC = "deterministic"
    GENERAL = "general"
    CREATIVE = "creative"
    REASONING = "reasoning"


def supports_temperature(model: str) -> bool:
    """Whether a model accepts a ``temperature`` parameter.

    Reasoning-style model families (``o3*``, ``o4*``) reject it. An empty
    model id is assumed to support it.
    """
    model_id = (model or "").strip().lower()
    return not model_id.startswith(_NO_TEMPERATURE_PREFIXES)


def clamp_temperature(value: float) -> float:
    return min(MAX_TEMPERATURE, max(MIN_TEMPERATURE, value))


def profile_temperature(model: str, profile: str) -> float | None:
    """Temperature for a prompt profile, or None when the model has no knob.

    ``deterministic`` maps to 0.1; every other profile (known or not) maps
    to 1.0.
    """
    if not supports_temperature(model):
        return None
    desired = 0.1 if profile.strip().lower() == PromptProfile.DETERMINISTIC.value else 1.0
    return clamp_temperature(desired)


def resolve_sampling(
    model: str, top_p: float | None, temperature: float | None
) -> tuple[float | None, float | None]:
    """Apply the one-knob rule for a request.

    Returns ``(temperature, top_p)`` with at most one of them set. An
    explicit positive ``top_p`` wins and temperature is omitted; otherwise
    temperature is kept only if the model supports it.
    """
    if top_p is not None and top_p > 0:
        return None, top_p
    if temperature is not None and supports_temperature(model):
        return temperature, None
    return None, None
