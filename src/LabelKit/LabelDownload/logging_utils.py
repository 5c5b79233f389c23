"""
Structured Logging Utilities

This module centralizes logging setup for the label download pipeline. It
provides helpers for masking sensitive fields (download URLs frequently carry
signed tokens in their query strings), emitting JSON log records, and creating
correlation identifiers that tie together the download, unwrap, and inspection
stages of a single resolution.
"""

from __future__ import annotations

import json
import logging
import re
import sys
import uuid
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

from .settings import LoggingConfiguration

LOGGER_NAME = "LabelKit.LabelDownload"

_SENSITIVE_KEYS = {"authorization", "api_key", "apikey", "token", "secret", "password", "cookie"}
_SIGNED_QUERY = re.compile(
    r"([?&](?:token|signature|sig|x-amz-signature|x-amz-credential|key|expires|policy)=)[^&\s]+",
    re.IGNORECASE,
)


def mask_url(url: str) -> str:
    """Return ``url`` with signed query parameters replaced by ``***``.

    Examples:
        >>> mask_url("https://cdn.example.com/app.dmg?Signature=abc&x=1")
        'https://cdn.example.com/app.dmg?Signature=***&x=1'
    """

    return _SIGNED_QUERY.sub(r"\1***", url)


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Remove secrets from structured payloads prior to logging.

    Args:
        payload: Arbitrary key-value pairs that may contain credentials or
            signed download URLs.

    Returns:
        Copy of the payload where common secret fields are replaced with
        ``***masked***`` and URL-looking strings have signed parameters masked.

    Examples:
        >>> mask_sensitive_data({"token": "secret", "status": "ok"})
        {'token': '***masked***', 'status': 'ok'}
    """

    masked: Dict[str, object] = {}
    for key, value in payload.items():
        if key.lower() in _SENSITIVE_KEYS:
            masked[key] = "***masked***"
        elif isinstance(value, str) and "://" in value:
            masked[key] = mask_url(value)
        else:
            masked[key] = value
    return masked


def generate_correlation_id() -> str:
    """Create a short-lived identifier that links related log entries.

    Returns:
        Twelve character hexadecimal identifier.

    Examples:
        >>> len(generate_correlation_id())
        12
    """

    return uuid.uuid4().hex[:12]


_RESERVED_RECORD_FIELDS = set(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Formatter emitting JSON structured logs.

    Any ``extra=`` fields passed to the logging call are merged into the
    emitted object after secret masking.

    Examples:
        >>> formatter = JSONFormatter()
        >>> isinstance(formatter.format(logging.makeLogRecord({'msg': 'test'})), str)
        True
    """

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        log_obj: Dict[str, object] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "stage": getattr(record, "stage", None),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_FIELDS or key in log_obj:
                continue
            log_obj[key] = value if isinstance(value, (str, int, float, bool, type(None))) else str(value)
        if record.exc_info:
            log_obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(log_obj))


def setup_logging(
    config: Optional[LoggingConfiguration] = None, log_dir: Optional[Path] = None
) -> logging.Logger:
    """Configure console and optional JSON-lines handlers for label downloads.

    Handlers installed by a previous call are removed first, so the function
    may be called repeatedly (for example once per CLI invocation).

    Args:
        config: Logging configuration; defaults are used when omitted.
        log_dir: Optional directory override for JSON log file placement.

    Returns:
        Configured logger scoped to the label download pipeline.
    """

    config = config or LoggingConfiguration()
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_labelfetch_managed", False):
            logger.removeHandler(handler)
            handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    stream_handler._labelfetch_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    target_dir = log_dir or config.log_dir
    if target_dir is not None:
        target_dir = Path(target_dir).expanduser()
        target_dir.mkdir(parents=True, exist_ok=True)
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            target_dir / f"labelfetch-{today}.jsonl",
            maxBytes=int(config.max_log_size_mb * 1024 * 1024),
            backupCount=5,
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._labelfetch_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = True
    return logger


__all__ = [
    "LOGGER_NAME",
    "JSONFormatter",
    "generate_correlation_id",
    "mask_sensitive_data",
    "mask_url",
    "setup_logging",
]
