from __future__ import annotations

import math
import uuid
from typing import Any

from devops_insights.exceptions import ValidationError

MAX_PAGE_SIZE = 100


def normalize_page(page: int | None, page_size: int | None, default_size: int = 10):
    """Clamp page/page_size to sane bounds and return (page, size, offset)."""
    page = max(int(page or 1), 1)
    size = int(page_size or default_size)
    size = min(max(size, 1), MAX_PAGE_SIZE)
    return page, size, (page - 1) * size


def build_pagination(page: int, page_size: int, total: int) -> dict[str, Any]:
    total_pages = math.ceil(total / page_size) if page_size else 0
    return {
        "page": page,
        "pageSize": page_size,
        "total": total,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


def parse_uuid(value: Any, field: str = "id") -> uuid.UUID:
    """Parse a UUID from user input, raising ValidationError when malformed."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}: {value}")
