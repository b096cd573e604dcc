"""Structured audit events.

Audit events are one-line JSON objects written through the
``agentrun.audit`` logger at INFO level. The logger does not propagate;
the CLI attaches a file handler when an audit log path is configured, so
library users get no output unless they opt in.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

audit_logger = logging.getLogger("agentrun.audit")
audit_logger.propagate = False
audit_logger.addHandler(logging.NullHandler())


def emit(event: str, **fields: Any) -> None:
    """Emit one audit event.

    ``None`` values are dropped so optional fields stay out of the record.
    """
    if not audit_logger.isEnabledFor(logging.INFO):
        return
    record: dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
    }
    record.update({k: v for k, v in fields.items() if v is not None})
    audit_logger.info(json.dumps(record, separators=(",", ":"), ensure_ascii=False, default=str))


def attach_file(path: str) -> logging.Handler:
    """Append audit events as NDJSON to ``path``.

    Returns the handler so callers can detach it.
    """
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    return handler
