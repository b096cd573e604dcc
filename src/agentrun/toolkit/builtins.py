"""Read-only built-in tools available to the pre-stage call.

``fs.read_file``, ``fs.list_dir``, ``fs.stat``, ``env.get`` and
``os.info``. Paths must be relative to the sandbox root; absolute paths
and parent traversal are rejected after normalization. Every result is a
one-line JSON object.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import posixpath
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from agentrun.protocols import Message, Role
from agentrun.toolkit.executor import error_payload

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

READ_CAP_BYTES = 256 * 1024


class SandboxError(ValueError):
    """A built-in tool argument violates the sandbox."""


def _to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _require_relative_path(args: Mapping[str, Any], root: Path) -> Path:
    raw = args.get("path")
    if not isinstance(raw, str) or not raw.strip():
        raise SandboxError("path is required")
    if os.path.isabs(raw) or raw.startswith(("/", "\\")):
        raise SandboxError("path must be repo-relative")
    cleaned = posixpath.normpath(raw.replace("\\", "/"))
    if cleaned == ".." or cleaned.startswith("../"):
        raise SandboxError("path must not contain parent traversal")
    return root / cleaned


def _read_file(args: Mapping[str, Any], root: Path, environ: Mapping[str, str]) -> dict:
    path = _require_relative_path(args, root)
    with open(path, "rb") as fh:
        data = fh.read(READ_CAP_BYTES)
    return {"content": data.decode("utf-8", errors="replace")}


def _list_dir(args: Mapping[str, Any], root: Path, environ: Mapping[str, str]) -> dict:
    path = _require_relative_path(args, root)
    entries = []
    with os.scandir(path) as it:
        for entry in it:
            if entry.is_symlink():
                kind = "other"
            elif entry.is_dir():
                kind = "dir"
            elif entry.is_file():
                kind = "file"
            else:
                kind = "other"
            entries.append({"name": entry.name, "type": kind})
    entries.sort(key=lambda e: e["name"])
    return {"entries": entries}


def _stat(args: Mapping[str, Any], root: Path, environ: Mapping[str, str]) -> dict:
    path = _require_relative_path(args, root)
    st = path.stat()
    return {"size": st.st_size, "is_dir": path.is_dir()}


def _env_get(args: Mapping[str, Any], root: Path, environ: Mapping[str, str]) -> dict:
    key = args.get("key")
    key = key.strip() if isinstance(key, str) else ""
    return {"value": environ.get(key, "") if key else ""}


def _os_info(args: Mapping[str, Any], root: Path, environ: Mapping[str, str]) -> dict:
    return {"os": sys.platform, "arch": platform.machine()}


_BUILTINS: dict[str, Callable[[Mapping[str, Any], Path, Mapping[str, str]], dict]] = {
    "fs.read_file": _read_file,
    "fs.list_dir": _list_dir,
    "fs.stat": _stat,
    "env.get": _env_get,
    "os.info": _os_info,
}


def run_builtin_tool(
    name: str,
    arguments: str,
    root: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Execute one built-in tool and return its one-line JSON result.

    Errors (invalid JSON arguments, sandbox violations, I/O failures,
    unknown names) come back as ``{"error": ...}`` payloads.
    """
    name = name.strip()
    try:
        args = json.loads(arguments.strip() or "{}")
    except json.JSONDecodeError:
        return error_payload("invalid arguments")
    if not isinstance(args, dict):
        return error_payload("invalid arguments")
    handler = _BUILTINS.get(name)
    if handler is None:
        return error_payload(f"unknown tool: {name}")
    try:
        result = handler(args, root or Path.cwd(), os.environ if environ is None else environ)
    except (SandboxError, OSError) as exc:
        logger.debug("Built-in %s failed: %s", name, exc)
        message = exc.strerror if isinstance(exc, OSError) and exc.strerror else str(exc)
        return error_payload(message)
    return _to_json(result)


def builtin_tool_messages(
    assistant: Message,
    root: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> list[Message]:
    """Answer every tool call of ``assistant`` with the built-in set, in order."""
    out: list[Message] = []
    for call in assistant.tool_calls:
        out.append(Message(
            role=Role.TOOL.value,
            content=run_builtin_tool(call.name, call.arguments, root, environ),
            name=call.name.strip(),
            tool_call_id=call.id,
        ))
    return out
