"""Debug trace files for ``gdre --debug-log``."""

from __future__ import annotations

import logging
from pathlib import Path

__all__ = [
    "DEBUG_FORMAT",
    "DebugTraceHandler",
    "configure_debug_file_logger",
    "close_debug_logger",
]

DEBUG_FORMAT = "%(levelname)s %(name)s: %(message)s"


class DebugTraceHandler(logging.FileHandler):
    """Truncating UTF-8 file handler owned by :func:`configure_debug_file_logger`."""

    def __init__(self, path: Path) -> None:
        super().__init__(path, mode="w", encoding="utf-8")


def configure_debug_file_logger(
    name: str,
    path: Path,
    *,
    level: int = logging.DEBUG,
    formatter: logging.Formatter | None = None,
) -> logging.Logger:
    """Write records of logger ``name`` at ``level`` and above to ``path``.

    A trace opened by an earlier call on the same logger is closed first, so
    each run starts a fresh file.  Records keep propagating to the console.
    """

    logger = logging.getLogger(name)
    close_debug_logger(logger)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = DebugTraceHandler(path)
    handler.setFormatter(formatter or logging.Formatter(DEBUG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def close_debug_logger(logger: logging.Logger) -> None:
    for handler in [handler for handler in logger.handlers if isinstance(handler, DebugTraceHandler)]:
        logger.removeHandler(handler)
        handler.close()
