from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urlsplit, urlunsplit

MASK = "***"

URL_TOKEN_RE = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)
# (pattern, group that survives); the rest of the match is masked.
SECRET_PATTERNS = (
    re.compile(r"(?i)([?&]api[-_]?key=)[^&#\s]+"),
    re.compile(r"(?i)(api[-_]?key\s*[:=]\s*)[^\s,;\"'&]+"),
    re.compile(r"(?i)(authorization\s*:\s*bearer\s+)[^\s,;\"']+"),
)

_TRAILING_PUNCTUATION = ".,);]}"


def _split_trailing(token: str) -> tuple[str, str]:
    stripped = token.rstrip(_TRAILING_PUNCTUATION)
    return stripped, token[len(stripped):]


def _redact_url_token(token: str) -> str:
    url, trailing = _split_trailing(token)
    parsed = urlsplit(url)
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
        return token

    # Query, fragment and userinfo are where RPC providers put credentials.
    host = parsed.netloc.rpartition("@")[2]
    return urlunsplit((parsed.scheme, host, parsed.path, "", "")) + trailing


def redact_text(value: str) -> str:
    masked = URL_TOKEN_RE.sub(lambda match: _redact_url_token(match.group(0)), value)
    for pattern in SECRET_PATTERNS:
        masked = pattern.sub(lambda match: match.group(1) + MASK, masked)
    return masked


def redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {key: redact_value(child) for key, child in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(redact_value(item) for item in value)
    return value


def log_event(
    logger: logging.Logger,
    *,
    level: str,
    event: str,
    message: str,
    **fields: Any,
) -> None:
    """Log ``message`` with ``event`` and ``fields`` attached as record attributes, redacted."""
    extra = {"event": event, **{key: redact_value(value) for key, value in fields.items()}}
    if level == "exception":
        logger.exception(redact_text(message), extra=extra)
        return

    numeric = logging.getLevelName(level.upper())
    logger.log(numeric if isinstance(numeric, int) else logging.INFO, redact_text(message), extra=extra)
