"""Host log-function adapter.

Hosts may pass a ``(level, message, metadata)`` callable to every
component. When they don't, messages go to the component's stdlib logger.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Literal

LogLevel = Literal["debug", "info", "warn", "error"]
LogFn = Callable[[LogLevel, str, "dict[str, Any] | None"], None]

_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def make_log(logger: logging.Logger) -> LogFn:
    """Create a log function that writes to ``logger``."""

    def log(level: LogLevel, message: str, meta: dict[str, Any] | None = None) -> None:
        lvl = _LEVELS.get(level, logging.INFO)
        if not logger.isEnabledFor(lvl):
            return
        if meta:
            logger.log(lvl, "%s %s", message, json.dumps(meta, default=str))
        else:
            logger.log(lvl, "%s", message)

    return log
