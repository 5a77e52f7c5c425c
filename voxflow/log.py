"""Logging setup for applications embedding voxflow.

voxflow logs through loguru and never touches handlers on import. Call
``configure_logging`` once at startup to pick a level and sink.
"""

from __future__ import annotations

import sys
from typing import Any

from loguru import logger

from voxflow.config import LoggingConfig

DEFAULT_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


def configure_logging(
    config: LoggingConfig | str = "INFO",
    *,
    sink: Any = None,
    fmt: str = DEFAULT_FORMAT,
) -> int:
    """Replace loguru's handlers with a single sink.

    Args:
        config: A LoggingConfig or a level name.
        sink: Any loguru sink (default: stderr).
        fmt: loguru format string.

    Returns:
        The loguru handler id.
    """
    level = config.level if isinstance(config, LoggingConfig) else config
    logger.remove()
    return logger.add(sink if sink is not None else sys.stderr, level=level.upper(), format=fmt)
