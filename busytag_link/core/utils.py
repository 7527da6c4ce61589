"""Boundary decoders shared across modules."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

_TRUE_STRINGS = {"true", "1", "yes", "on"}


def coerce_bool(value: Any, default: Optional[bool] = None) -> Optional[bool]:
    """Decode a boolean that may arrive as bool, 0/1 or a string.

    The cloud API is inconsistent about boolean encoding: the same field is
    seen as ``true``, ``1`` and ``"true"`` depending on the endpoint.

    Examples:
        >>> coerce_bool(1)
        True
        >>> coerce_bool("false")
        False
        >>> coerce_bool(None, default=False)
        False
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return default
        return text in _TRUE_STRINGS
    return default


def coerce_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as emitted by the cloud server."""

    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_version(value: str) -> float:
    """Parse a firmware version label such as ``2.1`` into a float.

    Labels with more than one dot keep only the major and minor parts.
    """
    text = (value or "").strip()
    if not text:
        return 0.0
    parts = text.split(".")
    candidate = ".".join(parts[:2]) if len(parts) > 1 else parts[0]
    try:
        return float(candidate)
    except ValueError:
        return 0.0
