"""Tool manifest loading and availability checks.

A manifest is a JSON file ``{"tools": [...]}`` where each entry carries a
``name``, an argv ``command``, and optional ``description``, ``schema``,
``timeoutSec`` and ``envPassthrough``. Relative programs must live under
``./tools/bin/`` and are resolved against the manifest's directory.
"""

from __future__ import annotations

import json
import logging
import os
import posixpath
import re
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, ValidationError, field_validator

from agentrun.exceptions import ManifestError, ToolUnavailableError
from agentrun.toolkit.models import ToolSpec

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

_ENV_NAME = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_TOOLS_BIN_PREFIX = "./tools/bin/"


class ManifestTool(BaseModel):
    """One entry of a manifest's ``tools`` array."""

    name: str = ""
    description: str = ""
    schema_: dict | None = Field(default=None, alias="schema")
    command: list[str] = []
    timeout_sec: int = Field(default=0, alias="timeoutSec")
    env_passthrough: list[str] = Field(default_factory=list, alias="envPassthrough")

    model_config = {"populate_by_name": True}

    @field_validator("env_passthrough")
    @classmethod
    def _normalize_env(cls, keys: list[str]) -> list[str]:
        out: list[str] = []
        for idx, key in enumerate(keys):
            name = key.strip().upper()
            if not name:
                raise ValueError(f"envPassthrough[{idx}]: empty name")
            if not _ENV_NAME.match(name):
                raise ValueError(
                    f"envPassthrough[{idx}]: invalid name {key!r} (must match [A-Z_][A-Z0-9_]*)"
                )
            if name not in out:
                out.append(name)
        return out


class Manifest(BaseModel):
    tools: list[ManifestTool] = []


def _resolve_program(program: str, manifest_dir: Path) -> str:
    """Resolve a relative ``./tools/bin/...`` program against the manifest dir.

    Raises:
        ValueError: If the relative program escapes or lies outside tools/bin.
    """
    if os.path.isabs(program):
        return program
    raw = program.replace("\\", "/")
    norm = posixpath.normpath(raw)
    if norm == "tools" or norm.startswith("tools/"):
        norm = "./" + norm
    if norm == ".." or norm.startswith("../"):
        raise ValueError(f"command[0] must not start with '..' or escape tools/bin (got {program!r})")
    if not norm.startswith(_TOOLS_BIN_PREFIX):
        if raw.startswith(_TOOLS_BIN_PREFIX):
            raise ValueError(
                f"command[0] escapes ./tools/bin after normalization (got {program!r} -> {norm!r})"
            )
        raise ValueError("relative command[0] must start with ./tools/bin/")
    return str((manifest_dir / norm[2:]).resolve())


def load_manifest(path: str | os.PathLike[str]) -> tuple[dict[str, ToolSpec], list[dict]]:
    """Load and validate a tool manifest.

    Args:
        path: Path to the manifest JSON file.

    Returns:
        ``(registry, declarations)``: a name -> ToolSpec map and the
        OpenAI tool declarations in manifest order.

    Raises:
        ManifestError: If the file cannot be read or parsed, a name is
            missing or duplicated, a command is empty, a relative command
            lies outside ./tools/bin/, or an env passthrough name is invalid.
    """
    manifest_path = Path(path)
    try:
        data = json.loads(manifest_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ManifestError(str(path), f"read manifest: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ManifestError(str(path), f"parse manifest: {exc}") from exc

    try:
        manifest = Manifest.model_validate(data)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ManifestError(str(path), f"parse manifest: {errors}") from exc

    registry: dict[str, ToolSpec] = {}
    declarations: list[dict] = []
    manifest_dir = manifest_path.parent
    for i, tool in enumerate(manifest.tools):
        if not tool.name:
            raise ManifestError(str(path), f"tool[{i}]: name is required")
        if tool.name in registry:
            raise ManifestError(str(path), f"tool[{i}] {tool.name!r}: duplicate name")
        if not tool.command:
            raise ManifestError(
                str(path), f"tool[{i}] {tool.name!r}: command must have at least program name"
            )
        try:
            program = _resolve_program(tool.command[0], manifest_dir)
        except ValueError as exc:
            raise ManifestError(str(path), f"tool[{i}] {tool.name!r}: {exc}") from None
        spec = ToolSpec(
            name=tool.name,
            command=(program, *tool.command[1:]),
            description=tool.description,
            schema=tool.schema_,
            timeout=float(tool.timeout_sec) if tool.timeout_sec > 0 else None,
            env_passthrough=tuple(tool.env_passthrough),
        )
        registry[spec.name] = spec
        declarations.append(spec.to_openai())
    logger.debug("Loaded %d tools from %s", len(registry), path)
    return registry, declarations


def check_availability(registry: Mapping[str, ToolSpec]) -> None:
    """Verify every tool's program exists before any execution begins.

    Raises:
        ToolUnavailableError: For the first tool whose program cannot be
            resolved on PATH (or as an executable path).
    """
    for name in sorted(registry):
        spec = registry[name]
        program = spec.command[0] if spec.command else ""
        if not program or shutil.which(program) is None:
            raise ToolUnavailableError(name, program)
