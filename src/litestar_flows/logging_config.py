"""Logging setup for litestar-flows.

Every module logs through ``logging.getLogger(__name__)``; this module only
attaches a handler to the ``litestar_flows`` logger, optionally emitting one
JSON object per line.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

__all__ = ["JsonFormatter", "configure_logging"]

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JsonFormatter(logging.Formatter):
    """Formats records as JSON objects.

    The object holds ``timestamp``, ``level``, ``logger`` and ``message``,
    the fields passed through ``extra`` and, for errors, an ``exception``
    summary.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED and not key.startswith("_"):
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


def configure_logging(level: str | int = "INFO", *, json_output: bool = False) -> logging.Logger:
    """Attach a stream handler to the package logger.

    Calling it again replaces the handler installed by the previous call.

    Args:
        level: Level name or number.
        json_output: Use :class:`JsonFormatter` instead of a plain text format.

    Returns:
        The ``litestar_flows`` logger.
    """
    logger = logging.getLogger("litestar_flows")
    logger.setLevel(level.upper() if isinstance(level, str) else level)

    for handler in list(logger.handlers):
        if getattr(handler, "_flows_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(DEFAULT_FORMAT))
    handler._flows_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger
