"""Rich formatting helpers for the agentrun CLI.

Diagnostics go to stderr; the final answer is written by the step loop as
plain text on stdout. Rich auto-detects TTY and degrades gracefully when
piped (no ANSI codes).
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape


def get_console(stderr: bool = True) -> Console:
    """Create a Rich Console; diagnostics default to stderr."""
    return Console(stderr=stderr)


def format_error(message: str, console: Console) -> None:
    """Display an error message as one ``error: ...`` line."""
    console.print(f"[red]error:[/red] {escape(message)}", highlight=False, soft_wrap=True)


def configure_logging(debug: bool = False, quiet: bool = False) -> None:
    """Route root logging through a RichHandler on stderr.

    WARNING by default, DEBUG under ``debug``, ERROR under ``quiet``.
    """
    if debug:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING
    handler = RichHandler(
        console=get_console(stderr=True),
        show_path=debug,
        rich_tracebacks=debug,
        markup=False,
    )
    logging.basicConfig(level=level, format="%(message)s", handlers=[handler], force=True)
