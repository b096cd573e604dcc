"""Subprocess tool runner.

Runs one manifest tool per call: the model's JSON arguments go to stdin,
stdout is returned as bytes. The child gets a minimal environment
(``PATH``, ``HOME`` and the tool's passthrough names only).
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from typing import TYPE_CHECKING

from agentrun import audit
from agentrun.exceptions import ToolRunError, ToolTimeoutError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from agentrun.toolkit.models import ToolSpec

logger = logging.getLogger(__name__)


def build_tool_environment(
    spec: ToolSpec, environ: Mapping[str, str] | None = None
) -> tuple[dict[str, str], list[str]]:
    """Minimal child environment plus the passthrough keys actually set."""
    source = os.environ if environ is None else environ
    env: dict[str, str] = {}
    for key in ("PATH", "HOME"):
        if source.get(key):
            env[key] = source[key]
    passed: list[str] = []
    for key in spec.env_passthrough:
        if key in source:
            env[key] = source[key]
            passed.append(key)
    return env, passed


class SubprocessToolRunner:
    """ToolRunner that executes manifest tools as child processes.

    Implements the ToolRunner protocol.
    """

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ

    def run(self, spec: ToolSpec, arguments: str, timeout: float) -> bytes:
        """Run ``spec`` with ``arguments`` on stdin.

        Args:
            spec: Tool to run.
            arguments: JSON text for stdin; empty means ``{}``.
            timeout: Default deadline in seconds; the spec's own timeout
                takes precedence when set.

        Returns:
            The process's stdout bytes.

        Raises:
            ToolTimeoutError: If the deadline expires.
            ToolRunError: If the program cannot start or exits non-zero;
                the message is the stderr text when there is any.
        """
        deadline = spec.effective_timeout(timeout)
        env, passed = build_tool_environment(spec, self._environ)
        stdin = (arguments or "{}").encode("utf-8")
        start = time.monotonic()
        exit_code = -1
        stdout = stderr = b""
        try:
            proc = subprocess.run(
                list(spec.command),
                input=stdin,
                capture_output=True,
                env=env,
                timeout=deadline,
                check=False,
            )
            exit_code = proc.returncode
            stdout, stderr = proc.stdout, proc.stderr
        except subprocess.TimeoutExpired as exc:
            stdout, stderr = exc.stdout or b"", exc.stderr or b""
            raise ToolTimeoutError(spec.name, deadline) from exc
        except OSError as exc:
            raise ToolRunError(f"start: {exc}") from exc
        finally:
            audit.emit(
                "tool_call",
                tool=spec.name,
                argv=list(spec.command),
                exit=exit_code,
                ms=int((time.monotonic() - start) * 1000),
                stdoutBytes=len(stdout),
                stderrBytes=len(stderr),
                envKeys=passed or None,
            )

        if exit_code != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            logger.debug("Tool %s exited %d", spec.name, exit_code)
            raise ToolRunError(message or f"exit status {exit_code}")
        return stdout
