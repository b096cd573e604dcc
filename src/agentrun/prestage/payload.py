"""Pre-stage payload parsing and merging.

The pre-stage model answers with a JSON array (or a single object) of
directives. Each object is exactly one variant:

- ``{"role": "system"|"developer", "content": "..."}``
- ``{"system": "..."}`` / ``{"developer": "..."}``
- ``{"tool_config": {"enable_tools": [...], "hints": {...}}}``
- ``{"image_instructions": {...}}``

Objects matching no variant are ignored.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from pydantic import BaseModel, ValidationError, field_validator

from agentrun.protocols import Message, Role

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Directive variants
# ---------------------------------------------------------------------------


class _Stripped(BaseModel):
    @field_validator("*", mode="after")
    @classmethod
    def _strip(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


class RoleDirective(_Stripped):
    """A message-shaped system or developer entry."""

    role: str
    content: str = ""

    @field_validator("role", mode="after")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.strip().lower()


class SystemDirective(_Stripped):
    system: str


class DeveloperDirective(_Stripped):
    developer: str


class ToolConfig(BaseModel):
    """Tool configuration hints from the pre-stage model."""

    enable_tools: list[str] = []
    hints: dict[str, Any] = {}


class ToolConfigDirective(BaseModel):
    tool_config: ToolConfig


class ImageInstructionsDirective(BaseModel):
    image_instructions: dict[str, Any]


Directive = Union[
    RoleDirective,
    SystemDirective,
    DeveloperDirective,
    ToolConfigDirective,
    ImageInstructionsDirective,
]

# Key that selects each variant, checked in this order.
_VARIANTS: tuple[tuple[str, type[BaseModel]], ...] = (
    ("role", RoleDirective),
    ("system", SystemDirective),
    ("developer", DeveloperDirective),
    ("tool_config", ToolConfigDirective),
    ("image_instructions", ImageInstructionsDirective),
)


@dataclass(frozen=True)
class PrestagePayload:
    """Parsed pre-stage directives.

    Attributes:
        system: Replacement system prompt (last directive wins), or None.
        developers: Developer prompts in payload order.
        tool_config: Last tool configuration directive, or None.
        image_instructions: Last non-empty image instruction map, or None.
    """

    system: str | None = None
    developers: tuple[str, ...] = field(default_factory=tuple)
    tool_config: ToolConfig | None = None
    image_instructions: dict[str, Any] | None = None

    @property
    def is_empty(self) -> bool:
        return (
            not self.system
            and not self.developers
            and self.tool_config is None
            and not self.image_instructions
        )


def _classify(obj: dict[str, Any]) -> Directive | None:
    for key, model in _VARIANTS:
        if key in obj:
            try:
                return model.model_validate(obj)  # type: ignore[return-value]
            except ValidationError as exc:
                logger.debug("Ignoring malformed %s directive: %s", key, exc)
                return None
    return None


def parse_prestage_payload(text: str) -> PrestagePayload:
    """Parse pre-stage response content into a PrestagePayload.

    Raises:
        ValueError: If the text is non-empty and not a JSON array or object.
    """
    text = text.strip()
    if not text:
        return PrestagePayload()
    data = json.loads(text)
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValueError("pre-stage payload must be a JSON array or object")

    system: str | None = None
    developers: list[str] = []
    tool_config: ToolConfig | None = None
    image_instructions: dict[str, Any] | None = None
    for obj in data:
        if not isinstance(obj, dict):
            continue
        directive = _classify(obj)
        if isinstance(directive, RoleDirective):
            if not directive.content:
                continue
            if directive.role == Role.SYSTEM.value:
                system = directive.content
            elif directive.role == Role.DEVELOPER.value:
                developers.append(directive.content)
        elif isinstance(directive, SystemDirective):
            if directive.system:
                system = directive.system
        elif isinstance(directive, DeveloperDirective):
            if directive.developer:
                developers.append(directive.developer)
        elif isinstance(directive, ToolConfigDirective):
            tool_config = directive.tool_config
        elif isinstance(directive, ImageInstructionsDirective):
            if directive.image_instructions:
                image_instructions = directive.image_instructions
    return PrestagePayload(
        system=system,
        developers=tuple(developers),
        tool_config=tool_config,
        image_instructions=image_instructions,
    )


def _compact(data: dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def merge_prestage_payload(
    messages: Sequence[Message], payload: PrestagePayload
) -> list[Message]:
    """Merge parsed directives into a transcript, returning a new list.

    - ``system`` replaces the first system message's content, or is
      inserted at the front when the transcript has none.
    - Developer prompts, then tool configuration and image instructions
      (rendered as compact JSON developer messages), are inserted before
      the first user message, or appended when there is none.
    """
    out = list(messages)
    if payload.system:
        for i, msg in enumerate(out):
            if msg.role == Role.SYSTEM.value:
                out[i] = msg.with_content(payload.system)
                break
        else:
            out.insert(0, Message(role=Role.SYSTEM.value, content=payload.system))

    extra = [Message(role=Role.DEVELOPER.value, content=d) for d in payload.developers]
    if payload.tool_config is not None and (
        payload.tool_config.enable_tools or payload.tool_config.hints
    ):
        extra.append(Message(
            role=Role.DEVELOPER.value,
            content=_compact({"tool_config": payload.tool_config.model_dump()}),
        ))
    if payload.image_instructions:
        extra.append(Message(
            role=Role.DEVELOPER.value,
            content=_compact({"image_instructions": payload.image_instructions}),
        ))
    if not extra:
        return out

    insert_at = next(
        (i for i, msg in enumerate(out) if msg.role == Role.USER.value), len(out)
    )
    return out[:insert_at] + extra + out[insert_at:]
