from __future__ import annotations

import logging
import os
import sys
import time
from typing import Iterable

from .settings import parse_bool

DEFAULT_FORMAT = "%(asctime)sZ [%(levelname)s] %(name)s:%(lineno)d | %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "aiohttp.access")

_move_logger = logging.getLogger("localnet_harness.move")


class _UTCFormatter(logging.Formatter):
    """Formatter that renders timestamps in UTC."""

    converter = time.gmtime


def setup_stdout_logging(
    *,
    level: int = logging.INFO,
    fmt: str = DEFAULT_FORMAT,
    datefmt: str = DEFAULT_DATEFMT,
    quiet: Iterable[str] = _NOISY_LOGGERS,
) -> logging.StreamHandler:
    """Ensure a single ``StreamHandler`` to ``sys.stdout`` exists on the harness logger."""

    root = logging.getLogger("localnet_harness")
    root.setLevel(level)

    sentinel_key = "_localnet_stdout_handler"
    handler = getattr(root, sentinel_key, None)
    if not isinstance(handler, logging.StreamHandler) or handler not in root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        root.addHandler(handler)
        setattr(root, sentinel_key, handler)

    handler.setLevel(level)
    handler.setFormatter(_UTCFormatter(fmt, datefmt=datefmt))

    for name in quiet:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return handler


def move_debug_enabled() -> bool:
    return parse_bool(os.getenv("SUI_IT_DEBUG_MOVE"))


def move_debug(message: str, *args: object) -> None:
    """Emit a ``[move-debug]`` record when ``SUI_IT_DEBUG_MOVE`` is set."""

    if not move_debug_enabled():
        return
    _move_logger.warning("[move-debug] " + message, *args)


__all__ = ["setup_stdout_logging", "move_debug", "move_debug_enabled"]
