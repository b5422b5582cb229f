"""
Sluice Structured Logging

Stdlib logging with a formatter that understands the context Sluice
attaches through ``extra=``: which client asked, which token was involved,
where the exchange state machine stopped.

Usage:
    from sluice.logging import get_logger

    logger = get_logger("sluice.exchange")
    logger.info("Exchange finished", extra={"client_id": "svc-a", "outcome": "success"})

The CLI calls ``configure_logging``; pass ``json_output=True`` to ship
one JSON object per line.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

# Only these ``extra`` keys are emitted. Anything else on the record is dropped
# so that request bodies and credentials never reach the log stream.
EXTRA_FIELDS = (
    "client_id",
    "token_id",
    "source_token_id",
    "state",
    "outcome",
    "reason",
    "depth",
    "attempt",
    "duration_ms",
)


class SluiceFormatter(logging.Formatter):
    """Formats records as ``[ts] LEVEL logger: message | k=v ...`` or as JSON."""

    def __init__(self, json_output: bool = False):
        super().__init__()
        self._json_output = json_output

    def _context(self, record: logging.LogRecord) -> dict[str, Any]:
        return {key: getattr(record, key) for key in EXTRA_FIELDS if getattr(record, key, None) is not None}

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        message = record.getMessage()
        context = self._context(record)
        exception = self.formatException(record.exc_info) if record.exc_info else None

        if self._json_output:
            payload: dict[str, Any] = {
                "timestamp": timestamp,
                "level": record.levelname,
                "logger": record.name,
                "message": message,
                **context,
            }
            if exception:
                payload["exception"] = exception
            return json.dumps(payload, default=str)

        line = f"[{timestamp}] {record.levelname:8s} {record.name}: {message}"
        if context:
            line += " | " + " ".join(f"{k}={v}" for k, v in context.items())
        if exception:
            line += "\n" + exception
        return line


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    stream: IO[str] | None = None,
) -> None:
    """Install a single handler on the ``sluice`` logger.

    Args:
        level: Log level name. Unknown names fall back to INFO.
        json_output: Emit JSON lines instead of the human-readable format.
        stream: Destination, stderr by default.
    """
    logger = logging.getLogger("sluice")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(SluiceFormatter(json_output=json_output))
    logger.addHandler(handler)
    logger.propagate = False


def get_logger(name: str = "sluice") -> logging.Logger:
    return logging.getLogger(name)
