"""File-based cache for pre-stage results.

Entries live under ``<root>/.agentrun/cache/prep/<key>.json`` and hold the
merged transcript as a JSON array. An entry expires ``ttl`` seconds after
its file was last written. Writes go through a temp file and an atomic
rename, so concurrent runs never see a partial entry; when two runs race,
the last writer wins, which is harmless because the value is a pure
function of the key.
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING

from agentrun import audit
from agentrun.engine.hashing import payload_hash
from agentrun.engine.serialization import write_atomic
from agentrun.protocols import Message, messages_to_dicts

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600.0
CACHE_SUBDIR = Path(".agentrun") / "cache" / "prep"


def cache_key(
    *,
    model: str,
    base_url: str,
    temperature: float | None,
    top_p: float | None,
    retries: int,
    backoff: float,
    tool_spec: str,
    messages: Sequence[Message],
) -> str:
    """Deterministic SHA-256 key for a pre-stage call.

    Messages are reduced to trimmed ``role`` and ``content``; tool calls
    and channels are not part of the key. At most one of temperature and
    top_p is present, matching what was sent.
    """
    data: dict = {
        "model": model.strip(),
        "base_url": base_url.strip(),
        "retries": retries,
        "backoff": backoff,
        "tool_spec": tool_spec,
        "messages": [
            {"role": m.role.strip(), "content": m.content.strip()} for m in messages
        ],
    }
    if top_p is not None:
        data["top_p"] = top_p
    elif temperature is not None:
        data["temperature"] = temperature
    return payload_hash(data)


class PrepCache:
    """Read/write access to cached pre-stage transcripts.

    Args:
        root: Directory under which ``.agentrun/cache/prep`` lives.
        ttl: Seconds an entry stays valid; non-positive disables expiry.
    """

    def __init__(self, root: str | os.PathLike[str], ttl: float = DEFAULT_TTL_SECONDS) -> None:
        self._dir = Path(root) / CACHE_SUBDIR
        self._ttl = ttl

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, key: str) -> Path:
        return self._dir / f"{key}.json"

    def read(self, key: str) -> list[Message] | None:
        """Return the cached transcript, or None on miss, expiry or corruption."""
        path = self.path_for(key)
        try:
            mtime = path.stat().st_mtime
            if self._ttl > 0 and mtime + self._ttl < time.time():
                logger.debug("Pre-stage cache entry %s expired", key[:12])
                audit.emit("prestage_cache", result="expired", key=key)
                return None
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            audit.emit("prestage_cache", result="miss", key=key)
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.debug("Unreadable pre-stage cache entry %s: %s", key[:12], exc)
            return None
        if not isinstance(data, list) or not all(isinstance(m, dict) for m in data):
            return None
        audit.emit("prestage_cache", result="hit", key=key)
        return [Message.from_dict(m) for m in data]

    def write(self, key: str, messages: Sequence[Message]) -> bool:
        """Store a transcript; failures are logged and reported as False."""
        data = json.dumps(messages_to_dicts(messages), ensure_ascii=False).encode("utf-8")
        try:
            write_atomic(self.path_for(key), data)
        except OSError as exc:
            logger.warning("Pre-stage cache write failed: %s", exc)
            return False
        audit.emit("prestage_cache", result="write", key=key)
        return True


def ttl_from_env(environ: Mapping[str, str] | None = None) -> float:
    """Cache TTL in seconds from ``AGENTRUN_PREP_CACHE_TTL``.

    Accepts plain seconds or a number with an ``s``/``m``/``h`` suffix;
    anything unparsable falls back to the 10 minute default.
    """
    source = os.environ if environ is None else environ
    raw = (source.get("AGENTRUN_PREP_CACHE_TTL") or "").strip().lower()
    if not raw:
        return DEFAULT_TTL_SECONDS
    units = {"s": 1.0, "m": 60.0, "h": 3600.0}
    scale = 1.0
    if raw[-1] in units:
        scale = units[raw[-1]]
        raw = raw[:-1]
    try:
        return float(raw) * scale
    except ValueError:
        logger.warning("Ignoring invalid AGENTRUN_PREP_CACHE_TTL %r", raw)
        return DEFAULT_TTL_SECONDS
