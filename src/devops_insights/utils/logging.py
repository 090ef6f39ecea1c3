"""Logging utilities for safe log output.

Provides sanitization functions to prevent log injection attacks
by removing control characters from user-controlled values.
"""

from __future__ import annotations

import logging
import os
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for a process entry point."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
    )


def sanitize_for_log(value: Any, max_length: int = 1000) -> Any:
    """Sanitize a value for safe logging.

    Removes CR/LF and control characters, recursing into dicts, lists,
    tuples and sets. Strings longer than ``max_length`` are truncated.
    """

    def clean_string(text: str) -> str:
        cleaned = text.replace("\r\n", " ").replace("\r", " ").replace("\n", " ")
        cleaned = "".join(ch for ch in cleaned if ch >= " " and ch != "\x7f")
        if len(cleaned) > max_length:
            return cleaned[:max_length] + "...[truncated]"
        return cleaned

    if value is None:
        return ""

    if isinstance(value, str):
        return clean_string(value)

    if isinstance(value, dict):
        return {
            clean_string(str(k)): sanitize_for_log(v, max_length)
            for k, v in value.items()
        }

    if isinstance(value, (list, tuple, set)):
        return [sanitize_for_log(elem, max_length) for elem in value]

    return clean_string(str(value))
