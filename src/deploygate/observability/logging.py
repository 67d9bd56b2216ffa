"""JSON log lines for the CLI, the demo runner and anything shipping logs."""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
from typing import Any

_LEVEL_ENV = "DEPLOYGATE_LOG_LEVEL"


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Structured fields travel as ``extra={"extra": {...}}`` and are merged into
    the top level of the object.
    """

    def __init__(self, service: str = "deploygate") -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "event": record.getMessage(),
        }
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            payload.update(fields)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: int | str | None = None, service: str = "deploygate") -> None:
    """Send JSON logs to stderr; ``level`` falls back to DEPLOYGATE_LOG_LEVEL, then INFO."""
    if level is None:
        level = os.getenv(_LEVEL_ENV, "INFO")
    if isinstance(level, str):
        level = level.upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(service))
    logging.basicConfig(level=level, handlers=[handler], force=True)
