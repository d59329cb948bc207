"""
Logging setup for dbsnap.

The library logs through loguru's global ``logger``; applications decide
where messages go. ``setup_logging`` is what the CLI uses.
"""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

DEFAULT_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


def setup_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    structured: bool = False,
) -> None:
    """Replace loguru's default sink with a stderr sink at ``level``.

    When ``log_file`` is given a second, DEBUG-level sink is written there.
    ``structured`` switches both sinks to JSON lines.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=DEFAULT_FORMAT,
        serialize=structured,
        colorize=not structured,
    )
    if log_file:
        logger.add(str(log_file), level="DEBUG", serialize=structured)
