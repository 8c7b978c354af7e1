"""
Project-wide logging setup for ctxvault.

Provides a simple, consistent console logger with optional JSON output.
Controlled via environment variables:
- CTXVAULT_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default: INFO)
- CTXVAULT_LOG_FORMAT: text|json (default: text)
"""
from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger


def _get_level(override: Optional[str] = None) -> int:
    level = (override or os.getenv("CTXVAULT_LOG_LEVEL", "INFO")).upper()
    return getattr(logging, level, logging.INFO)


def setup_logging(
    force: bool = False,
    *,
    level: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Configure root logging for console output.

    If a handler is already present and force is False, this is a no-op.
    Logs go to stderr so command output on stdout stays machine-readable.
    """
    target_logger = logger or logging.getLogger()
    if target_logger.handlers and not force:
        return

    # Clear existing handlers when forcing
    if force:
        for h in list(target_logger.handlers):
            target_logger.removeHandler(h)

    target_logger.setLevel(_get_level(level))

    handler = logging.StreamHandler(sys.stderr)

    fmt = os.getenv("CTXVAULT_LOG_FORMAT", "text").lower()
    if fmt == "json":
        formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "name": "logger"},
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )

    handler.setFormatter(formatter)
    target_logger.addHandler(handler)
