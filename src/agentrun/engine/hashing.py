"""Deterministic hashing utilities for agentrun.

Provides canonical JSON serialization and SHA-256 hashing used for
pre-stage cache keys and toolset fingerprints. Same input always
produces the same output, regardless of dict key ordering.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

BUILTIN_PREP_TOOLS: tuple[str, ...] = (
    "fs.read_file",
    "fs.list_dir",
    "fs.stat",
    "env.get",
    "os.info",
)


def canonical_json(data: Any) -> bytes:
    """Serialize data to canonical JSON bytes.

    Uses sorted keys, compact separators, and UTF-8 encoding
    to ensure deterministic output.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Hex digest of SHA-256 over raw bytes."""
    return hashlib.sha256(data).hexdigest()


def payload_hash(payload: Any) -> str:
    """Compute SHA-256 hash of a JSON-serializable payload."""
    return sha256_hex(canonical_json(payload))


def toolset_fingerprint(allow_external: bool, manifest_path: str | None) -> str:
    """Identify which tools a pre-stage call can reach.

    The fingerprint is part of the pre-stage cache key so that a change in
    available tools (or in the manifest file's bytes) invalidates cached
    results.

    Args:
        allow_external: Whether external manifest tools may run.
        manifest_path: Manifest file consulted when external tools are allowed.

    Returns:
        ``builtin:<names>`` when only built-ins are reachable,
        ``external:none`` when external tools are allowed but no manifest
        is configured, ``manifest_err:<error>`` when the manifest cannot be
        read, otherwise ``manifest:<sha256 of file bytes>``.
    """
    if not allow_external:
        return "builtin:" + ",".join(BUILTIN_PREP_TOOLS)
    if not manifest_path or not manifest_path.strip():
        return "external:none"
    try:
        with open(manifest_path.strip(), "rb") as fh:
            data = fh.read()
    except OSError as exc:
        return f"manifest_err:{exc}"
    return "manifest:" + sha256_hex(data)
