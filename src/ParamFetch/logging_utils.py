"""Structured logging helpers shared across parameter fetching components."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

__all__ = ["JSONFormatter", "mask_sensitive_data", "setup_logging"]

LOGGER_NAME = "ParamFetch"

# Attributes present on every LogRecord; anything else arrived via ``extra=``.
_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Replace secret-looking values before they reach a log sink.

    Examples:
        >>> mask_sensitive_data({"token": "secret", "status": "ok"})
        {'token': '***masked***', 'status': 'ok'}
    """
    sensitive_keys = {"authorization", "api_key", "apikey", "token", "secret", "password"}
    masked: Dict[str, object] = {}
    for key, value in payload.items():
        if key.lower() in sensitive_keys:
            masked[key] = "***masked***"
        else:
            masked[key] = value
    return masked


class JSONFormatter(logging.Formatter):
    """Formatter emitting one masked JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        payload: Dict[str, object] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "stage": getattr(record, "stage", None),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and key not in payload:
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(payload), default=str)


def setup_logging(
    *,
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    max_log_size_mb: int = 50,
    propagate: bool = False,
) -> logging.Logger:
    """Configure the ``ParamFetch`` logger with console and optional JSONL output.

    Repeated calls replace the handlers installed by earlier calls.
    """

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_paramfetch_managed", False):
            logger.removeHandler(handler)
            if getattr(handler, "stream", None) not in (sys.stdout, sys.stderr):
                handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    console_handler._paramfetch_managed = True  # type: ignore[attr-defined]
    logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            log_dir / f"paramfetch-{today}.jsonl",
            maxBytes=int(max_log_size_mb * 1024 * 1024),
            backupCount=5,
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._paramfetch_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = propagate
    return logger
