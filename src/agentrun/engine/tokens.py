"""Token budget estimation, transcript trimming and completion-cap clamping.

The estimator is a cheap deterministic heuristic (about four UTF-8 bytes
per token plus fixed per-message and per-tool-call overheads). It needs no
tokenizer and gives identical numbers on every run, which is what the
length-backoff arithmetic relies on.
"""

from __future__ import annotations

import math
from dataclasses import replace
from typing import TYPE_CHECKING

from agentrun.protocols import Message, Role

if TYPE_CHECKING:
    from collections.abc import Sequence

AVERAGE_BYTES_PER_TOKEN = 4.0
PER_MESSAGE_OVERHEAD = 4
PER_TOOL_CALL_OVERHEAD = 8
SAFETY_MARGIN = 32
MIN_BACKOFF_CAP = 256

DEFAULT_CONTEXT_WINDOW = 128000
_MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    "oss-gpt-20b": 131072,
}


def _text_tokens(text: str | None) -> int:
    if not text:
        return 0
    return math.ceil(len(text.encode("utf-8")) / AVERAGE_BYTES_PER_TOKEN)


def estimate_tokens(messages: Sequence[Message]) -> int:
    """Estimate the prompt cost of a transcript.

    Counts content, name and tool_call_id text, each tool call's name and
    arguments plus a fixed overhead, and a fixed overhead per message. The
    result is never below the number of messages.
    """
    total = 0
    for msg in messages:
        total += _text_tokens(msg.content)
        total += _text_tokens(msg.name)
        total += _text_tokens(msg.tool_call_id)
        for tc in msg.tool_calls:
            total += PER_TOOL_CALL_OVERHEAD
            total += _text_tokens(tc.name)
            total += _text_tokens(tc.arguments)
        total += PER_MESSAGE_OVERHEAD
    return max(total, len(messages))


class HeuristicTokenCounter:
    """TokenCounter backed by :func:`estimate_tokens`.

    Implements the TokenCounter protocol.
    """

    def count_text(self, text: str) -> int:
        return _text_tokens(text)

    def count_messages(self, messages: Sequence[Message]) -> int:
        if not messages:
            return 0
        return estimate_tokens(messages)


# ---------------------------------------------------------------------------
# Context window
# ---------------------------------------------------------------------------

def context_window_for_model(model: str) -> int:
    """Context window size for a model id, falling back to 128000."""
    key = (model or "").strip().lower()
    return _MODEL_CONTEXT_WINDOWS.get(key, DEFAULT_CONTEXT_WINDOW)


def clamp_completion_cap(
    messages: Sequence[Message], requested_cap: int, window: int
) -> int:
    """Bound a completion cap by the remaining context window.

    ``remaining = max(1, window - estimate - 32)``. A non-positive request
    means "as much as fits" and returns ``remaining``.
    """
    remaining = max(1, window - estimate_tokens(messages) - SAFETY_MARGIN)
    if requested_cap <= 0:
        return remaining
    return min(requested_cap, remaining)


def prompt_token_budget(window: int, completion_cap: int) -> int:
    """Tokens left for the prompt once a completion cap is reserved."""
    return max(1, window - completion_cap - SAFETY_MARGIN)


def next_completion_cap(
    previous_cap: int, messages: Sequence[Message], window: int
) -> int:
    """Completion cap for a length-backoff resend.

    Doubles the previous cap (at least 256; an unset cap starts at 256)
    and clamps it to the remaining window.
    """
    wanted = MIN_BACKOFF_CAP if previous_cap <= 0 else max(MIN_BACKOFF_CAP, previous_cap * 2)
    return clamp_completion_cap(messages, wanted, window)


# ---------------------------------------------------------------------------
# Trimming
# ---------------------------------------------------------------------------

def _pinned_indices(messages: Sequence[Message]) -> tuple[int, int]:
    sys_idx = dev_idx = -1
    for i, msg in enumerate(messages):
        if sys_idx == -1 and msg.role == Role.SYSTEM.value:
            sys_idx = i
        if dev_idx == -1 and msg.role == Role.DEVELOPER.value:
            dev_idx = i
        if sys_idx != -1 and dev_idx != -1:
            break
    return sys_idx, dev_idx


def _drop_oldest_unpinned(messages: list[Message]) -> bool:
    sys_idx, dev_idx = _pinned_indices(messages)
    for j in range(len(messages)):
        if j not in (sys_idx, dev_idx):
            del messages[j]
            return True
    return False


def truncate_message_to_budget(msg: Message, budget: int) -> Message:
    """Cut a message's content to the longest prefix that fits ``budget``.

    Binary search over character length; a budget of 1 or less clears
    the content entirely.
    """
    if budget <= 1:
        return replace(msg, content="")
    lo, hi, best = 0, len(msg.content), 0
    while lo <= hi:
        mid = (lo + hi) // 2
        if estimate_tokens([replace(msg, content=msg.content[:mid])]) <= budget:
            best = mid
            lo = mid + 1
        else:
            hi = mid - 1
    return replace(msg, content=msg.content[:best])


def trim_messages_to_fit(messages: Sequence[Message], limit: int) -> list[Message]:
    """Reduce a transcript until its estimate is within ``limit``.

    Policy:
        1. Pin the first system and first developer message.
        2. Drop the oldest non-pinned messages first.
        3. If only pinned messages remain and still exceed the limit,
           truncate their content proportionally to their size (they are
           never dropped).
        4. As a last resort keep only the newest message, truncated.

    Returns a new list; a non-positive limit yields an empty transcript.
    """
    if limit <= 0 or not messages:
        return []
    if estimate_tokens(messages) <= limit:
        return list(messages)

    out = list(messages)
    while len(out) > 1 and estimate_tokens(out) > limit:
        if not _drop_oldest_unpinned(out):
            break
    if estimate_tokens(out) <= limit:
        return out

    sys_idx, dev_idx = _pinned_indices(out)
    if sys_idx == -1 and dev_idx == -1:
        return [truncate_message_to_budget(out[-1], limit)]

    current = estimate_tokens(out)
    if sys_idx != -1 and dev_idx != -1:
        sys_tok = estimate_tokens([out[sys_idx]])
        dev_tok = estimate_tokens([out[dev_idx]])
        pinned_total = max(1, sys_tok + dev_tok)
        target_pinned = max(2, limit - (current - pinned_total))
        target_sys = max(1, (sys_tok * target_pinned) // pinned_total)
        target_dev = max(1, target_pinned - target_sys)
        out[sys_idx] = truncate_message_to_budget(out[sys_idx], target_sys)
        out[dev_idx] = truncate_message_to_budget(out[dev_idx], target_dev)
    else:
        idx = sys_idx if sys_idx != -1 else dev_idx
        others = current - estimate_tokens([out[idx]])
        out[idx] = truncate_message_to_budget(out[idx], max(1, limit - others))

    while estimate_tokens(out) > limit:
        if not _drop_oldest_unpinned(out):
            return [truncate_message_to_budget(out[-1], limit)]
    return out
