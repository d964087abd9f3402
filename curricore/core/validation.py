"""Shape checks for untrusted structured-completion payloads.

Model output is never cast straight into records. The passes go through these
helpers first, collecting per-entry problems as warnings and failing loudly
only when the payload's outer shape is wrong.
"""

from __future__ import annotations

import math
import sys
from typing import Any, Dict, List, Mapping, Sequence


class PayloadShapeError(ValueError):
    """The payload's outer structure is not what the caller asked for."""


def require_mapping(data: Any, context: str) -> Dict[str, Any]:
    if not isinstance(data, Mapping):
        raise PayloadShapeError(f"{context}: expected an object, received {type(data).__name__}")
    return dict(data)


def require_list(data: Mapping[str, Any], key: str, context: str) -> List[Any]:
    value = data.get(key)
    if not isinstance(value, list):
        raise PayloadShapeError(f"{context}: missing '{key}' array")
    return value


def first_present(entry: Mapping[str, Any], *keys: str) -> Any:
    """Return the first non-None value among ``keys`` (snake_case and camelCase spellings)."""
    for key in keys:
        value = entry.get(key)
        if value is not None:
            return value
    return None


def is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, int):
        return abs(value) <= sys.float_info.max
    return False


def coerce_number(value: Any) -> float | None:
    """Accept finite ints, floats and numeric strings; everything else is ``None``."""
    if is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def string_list(value: Any, *, limit: int | None = None) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items: Sequence[Any] = [value]
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        return []
    cleaned = [str(item).strip() for item in items if item is not None and str(item).strip()]
    return cleaned[:limit] if limit is not None else cleaned


def optional_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


__all__ = [
    "PayloadShapeError",
    "clamp",
    "coerce_number",
    "first_present",
    "is_number",
    "optional_text",
    "require_list",
    "require_mapping",
    "round_half_up",
    "string_list",
]
