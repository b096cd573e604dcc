"""Pre-stage package -- cached, fail-open transcript enrichment."""

from agentrun.prestage.cache import DEFAULT_TTL_SECONDS, PrepCache, cache_key, ttl_from_env
from agentrun.prestage.engine import PrestageEngine, PrestageOutcome, default_client_factory
from agentrun.prestage.payload import (
    PrestagePayload,
    merge_prestage_payload,
    parse_prestage_payload,
)

__all__ = [
    # Engine
    "PrestageEngine",
    "PrestageOutcome",
    "default_client_factory",
    # Cache
    "PrepCache",
    "cache_key",
    "ttl_from_env",
    "DEFAULT_TTL_SECONDS",
    # Payload
    "PrestagePayload",
    "parse_prestage_payload",
    "merge_prestage_payload",
]
