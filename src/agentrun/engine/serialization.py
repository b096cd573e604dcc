"""Transcript files: loading, saving and atomic writes.

A saved transcript is a JSON object ``{"messages": [...], "prestage":
{...}}``. Loading also accepts a bare JSON array of messages.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agentrun.engine.transcript import normalize_messages, validate_sequence
from agentrun.exceptions import TranscriptError
from agentrun.protocols import Message, messages_to_dicts

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


def write_atomic(path: str | os.PathLike[str], data: bytes) -> None:
    """Write bytes to ``path`` via a temp file in the same dir and a rename.

    Readers never observe a partially written file.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, target)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def parse_messages(text: str) -> list[Message]:
    """Parse transcript JSON (array or ``{"messages": [...]}`` wrapper).

    Raises:
        TranscriptError: If the JSON is malformed or has the wrong shape.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise TranscriptError(f"parse messages JSON: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("messages")
    if not isinstance(data, list) or not all(isinstance(m, dict) for m in data):
        raise TranscriptError("parse messages JSON: expected an array of message objects")
    return [Message.from_dict(m) for m in data]


def load_messages(path: str | os.PathLike[str]) -> list[Message]:
    """Load, normalize and validate a transcript file.

    Raises:
        OSError: If the file cannot be read.
        TranscriptError: If the content is malformed, carries an invalid
            role, or breaks tool-call sequencing.
    """
    text = Path(path).read_text(encoding="utf-8")
    messages = normalize_messages(parse_messages(text))
    validate_sequence(messages)
    logger.debug("Loaded %d messages from %s", len(messages), path)
    return messages


def build_messages_wrapper(
    messages: Sequence[Message], metadata: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Wrapper object used for saving and printing a transcript."""
    wrapper: dict[str, Any] = {"messages": messages_to_dicts(messages)}
    if metadata:
        wrapper["prestage"] = dict(metadata)
    return wrapper


def dump_messages(
    messages: Sequence[Message], metadata: dict[str, Any] | None = None
) -> str:
    """Pretty JSON text for a transcript wrapper."""
    return json.dumps(
        build_messages_wrapper(messages, metadata), indent=2, ensure_ascii=False
    )


def save_messages(
    path: str | os.PathLike[str],
    messages: Sequence[Message],
    metadata: dict[str, Any] | None = None,
) -> None:
    """Atomically write a transcript wrapper to ``path``."""
    write_atomic(path, dump_messages(messages, metadata).encode("utf-8"))
    logger.debug("Saved %d messages to %s", len(messages), path)
