"""Transcript invariants: role/channel normalization, sequencing, hygiene.

Every function here takes a transcript and returns a new list; the caller's
list is never mutated.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import TYPE_CHECKING

from agentrun.exceptions import InvalidRoleError, SequenceError
from agentrun.protocols import Message, Role

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

MAX_CHANNEL_LENGTH = 32
HYGIENE_LIMIT_BYTES = 8 * 1024
TRUNCATED_TOOL_MARKER = '{"truncated":true,"reason":"large-tool-output"}'

_VALID_ROLES = frozenset(r.value for r in Role)
_CHANNEL_STRIP = re.compile(r"[^a-z0-9_-]")


def normalize_channel(channel: str | None) -> str | None:
    """Lowercase a channel token and reduce it to ``[a-z0-9_-]{0,32}``.

    Returns None for an empty result, which downstream code treats as the
    implicit final channel.
    """
    if not channel:
        return None
    token = _CHANNEL_STRIP.sub("", channel.strip().lower())[:MAX_CHANNEL_LENGTH]
    return token or None


def normalize_messages(messages: Sequence[Message]) -> list[Message]:
    """Trim and lowercase roles and channels.

    Channels survive only on assistant messages.

    Raises:
        InvalidRoleError: If a role is outside the closed role set.
    """
    out: list[Message] = []
    for i, msg in enumerate(messages):
        role = (msg.role or "").strip().lower()
        if role not in _VALID_ROLES:
            raise InvalidRoleError(i, msg.role)
        channel = normalize_channel(msg.channel) if role == Role.ASSISTANT.value else None
        if role != msg.role or channel != msg.channel:
            msg = replace(msg, role=role, channel=channel)
        out.append(msg)
    return out


def validate_sequence(messages: Sequence[Message]) -> None:
    """Check that every tool message answers the latest assistant tool-call set.

    One forward pass. Each assistant message replaces the allowed id set
    with its own tool-call ids (an assistant without tool calls leaves an
    empty set), so a tool message always belongs to the nearest preceding
    assistant message.

    Raises:
        SequenceError: On the first tool message that is orphaned, lacks a
            tool_call_id, or names an id outside the allowed set.
    """
    allowed: frozenset[str] = frozenset()
    seen_tool_calls = False
    for i, msg in enumerate(messages):
        if msg.role == Role.ASSISTANT.value:
            allowed = frozenset(tc.id for tc in msg.tool_calls if tc.id)
            seen_tool_calls = seen_tool_calls or bool(msg.tool_calls)
        elif msg.role == Role.TOOL.value:
            if not seen_tool_calls:
                raise SequenceError(
                    i, msg.tool_call_id or "",
                    'role "tool" without a prior assistant message containing tool_calls',
                )
            if not msg.tool_call_id:
                raise SequenceError(i, "", 'role "tool" is missing tool_call_id')
            if msg.tool_call_id not in allowed:
                raise SequenceError(
                    i, msg.tool_call_id,
                    f'role "tool" has tool_call_id {msg.tool_call_id!r} that does not '
                    "match any id from the most recent assistant tool_calls",
                )


def apply_hygiene(messages: Sequence[Message], debug: bool = False) -> list[Message]:
    """Replace oversized tool outputs with a fixed marker.

    Tool contents above 8 KiB (UTF-8 bytes) become
    ``{"truncated":true,"reason":"large-tool-output"}``. Under ``debug`` the
    transcript is returned unchanged (as a copy).
    """
    if debug:
        return list(messages)
    out: list[Message] = []
    for msg in messages:
        if (
            msg.role == Role.TOOL.value
            and len(msg.content.encode("utf-8")) > HYGIENE_LIMIT_BYTES
        ):
            logger.debug(
                "Truncating tool output for %s (%d bytes)",
                msg.tool_call_id, len(msg.content.encode("utf-8")),
            )
            msg = msg.with_content(TRUNCATED_TOOL_MARKER)
        out.append(msg)
    return out
