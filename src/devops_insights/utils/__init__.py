from .datetime import format_datetime, parse_datetime, to_utc
from .logging import configure_logging, sanitize_for_log
from .pagination import build_pagination, normalize_page, parse_uuid

__all__ = [
    "build_pagination",
    "configure_logging",
    "format_datetime",
    "normalize_page",
    "parse_datetime",
    "parse_uuid",
    "sanitize_for_log",
    "to_utc",
]
