"""Channel routing for assistant output.

Maps an assistant channel (``final``, ``critic``, ``confidence``, ...) to an
output destination. ``final`` and the empty channel go to stdout; every
other channel, known or not, goes to stderr unless the user overrides a
known channel.
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING

from agentrun.exceptions import ConfigError
from agentrun.protocols import FINAL_CHANNEL

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


class Destination(str, enum.Enum):
    """Where routed channel text is written."""

    STDOUT = "stdout"
    STDERR = "stderr"
    OMIT = "omit"


KNOWN_CHANNELS = ("final", "critic", "confidence")


def parse_channel_routes(pairs: Iterable[str]) -> dict[str, Destination]:
    """Parse repeated ``name=destination`` pairs.

    Blank entries are skipped; a later pair for the same channel wins.

    Raises:
        ConfigError: On a malformed pair, a channel outside
            final|critic|confidence, or a destination outside
            stdout|stderr|omit.
    """
    routes: dict[str, Destination] = {}
    for raw in pairs:
        pair = raw.strip()
        if not pair:
            continue
        name, sep, dest = pair.partition("=")
        name, dest = name.strip(), dest.strip()
        if not sep or not name or not dest:
            raise ConfigError(
                "invalid --channel-route value (expected name=stdout|stderr|omit)"
            )
        if name not in KNOWN_CHANNELS:
            raise ConfigError(
                f"invalid --channel-route channel {name!r} "
                f"(allowed: {', '.join(KNOWN_CHANNELS)})"
            )
        try:
            routes[name] = Destination(dest)
        except ValueError:
            raise ConfigError(
                f"invalid --channel-route destination {dest!r} "
                "(allowed: stdout, stderr, omit)"
            ) from None
    return routes


def resolve_channel_route(
    channel: str | None, overrides: Mapping[str, Destination] | None = None
) -> Destination:
    """Effective destination for an assistant channel."""
    ch = (channel or "").strip() or FINAL_CHANNEL
    if overrides and ch in overrides:
        return overrides[ch]
    if ch == FINAL_CHANNEL:
        return Destination.STDOUT
    return Destination.STDERR
