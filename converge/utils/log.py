"""Logging setup for the command line."""

from __future__ import annotations

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

LOG_ENV = "CONVERGE_LOG"


def resolve_level(verbose: int = 0) -> int:
    """``-v`` means INFO, ``-vv`` DEBUG; otherwise ``$CONVERGE_LOG`` or WARNING."""
    if verbose >= 2:
        return logging.DEBUG
    if verbose == 1:
        return logging.INFO
    name = os.environ.get(LOG_ENV, "WARNING").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.WARNING


def setup_logging(verbose: int = 0, console: Console | None = None) -> None:
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    logging.basicConfig(
        level=resolve_level(verbose),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
