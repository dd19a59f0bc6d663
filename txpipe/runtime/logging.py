from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import IO, Any

from txpipe.common.logging import redact_text, redact_value

from .settings import PipelineSettings

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``static_fields`` (e.g. the network) are stamped on each."""

    def __init__(self, *, static_fields: dict[str, Any] | None = None) -> None:
        super().__init__()
        self._static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_text(record.getMessage()),
        }
        payload.update(self._static_fields)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            payload[key] = redact_value(value)

        if record.exc_info:
            payload["exception"] = redact_text(self.formatException(record.exc_info))

        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(
    name: str = "txpipe",
    level: str = "INFO",
    *,
    network: str | None = None,
    stream: IO[str] | None = None,
) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel((level or "INFO").strip().upper())

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter(static_fields={"network": network} if network else None))

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def setup_logger_from_settings(settings: PipelineSettings) -> logging.Logger:
    return setup_logger("txpipe", settings.log_level, network=settings.network)
