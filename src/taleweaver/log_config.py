"""Loguru sink configuration for applications embedding the engine."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, List

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}"


def configure_logging(
    level: str = "INFO",
    sink: Any = None,
    *,
    log_file: Path | str | None = None,
) -> List[int]:
    """Replace loguru's default handler with formatted sinks.

    The library itself never calls this; it is meant for hosts such as the
    session API or a test harness.

    Args:
        level: Minimum level name, e.g. ``"DEBUG"``.
        sink: Anything loguru accepts as a sink. Defaults to ``sys.stderr``.
        log_file: Optional file that additionally receives every record,
            rotated at 10 MB and kept for 7 days.

    Returns:
        The loguru handler ids, which can be passed to ``logger.remove``.
    """

    logger.remove()
    handler_ids = [
        logger.add(
            sink if sink is not None else sys.stderr,
            format=LOG_FORMAT,
            level=level.upper(),
        )
    ]
    if log_file is not None:
        handler_ids.append(
            logger.add(
                str(log_file),
                rotation="10 MB",
                retention="7 days",
                format=LOG_FORMAT,
                level=level.upper(),
            )
        )
    return handler_ids


__all__ = ["LOG_FORMAT", "configure_logging"]
