"""Logging setup for the shepherd loops.

Modules log through ``logging.getLogger(__name__)``; this module only
installs the handler on the ``shepherd`` logger, either with a plain text
formatter or one JSON object per line.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import IO, Any

PLAIN_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            entry.update(fields)
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = False,
    stream: IO[str] | None = None,
) -> logging.Logger:
    logger = logging.getLogger("shepherd")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_output:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def provider_event_logger(name: str = "shepherd.providers"):
    """Return an ``event_hook`` that forwards provider events to a logger."""
    logger = logging.getLogger(name)

    def _hook(event: dict[str, Any]) -> None:
        logger.debug("provider event %s", event.get("event", "?"), extra={"fields": event})

    return _hook
