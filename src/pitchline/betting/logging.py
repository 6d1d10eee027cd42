"""Logging helpers for the betting core."""

from __future__ import annotations

import logging
from typing import Iterable


def configure_logging(level: int | str = logging.INFO, handlers: Iterable[logging.Handler] | None = None) -> None:
    """Configure root logging for batch runs and the CLI.

    Jobs run unattended from a scheduler, so every record carries a timestamp
    and the emitting module to make partial failures traceable after the
    fact.  String levels such as ``"debug"`` are accepted for convenience.
    """

    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        level = resolved if isinstance(resolved, int) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=list(handlers) if handlers else None,
    )
