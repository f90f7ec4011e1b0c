"""Request body helpers shared by controllers."""

from __future__ import annotations

from typing import Any

from litestar.exceptions import HTTPException


def require_str(data: dict[str, Any], key: str) -> str:
    """Return a stripped, non-empty string field or raise 400."""
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise HTTPException(status_code=400, detail=f"{key} is required")
    return value.strip()
