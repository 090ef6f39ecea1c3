from datetime import datetime, timezone
from typing import Any, Optional, overload


@overload
def to_utc(dt: None) -> None: ...


@overload
def to_utc(dt: datetime) -> datetime: ...


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime has UTC tzinfo. Handles None gracefully."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as returned by Azure DevOps.

    Accepts a trailing ``Z`` and fractional seconds of any precision
    (Azure sends up to 7 digits). Returns None for empty or unparsable
    input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        while rest and rest[0].isdigit():
            digits += rest[0]
            rest = rest[1:]
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        return to_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 string with UTC offset, or None."""
    if dt is None:
        return None
    return to_utc(dt).isoformat()
