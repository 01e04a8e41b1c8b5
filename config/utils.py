"""Helper utilities for accessing configuration sections regardless of the backing loader."""
from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any, Dict, Optional


def get_config_section(source: Any, section: str) -> Dict:
    """Return a dictionary section from Config, SectionProxy, or plain dict objects."""
    if source is None:
        return {}

    if isinstance(source, Mapping):
        candidate = source.get(section, {})
        return _as_dict(candidate)

    section_getter = getattr(source, 'section', None)
    if callable(section_getter):
        candidate = section_getter(section)
        if isinstance(candidate, Mapping):
            return _as_dict(candidate)

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, {})
        if isinstance(candidate, Mapping):
            return _as_dict(candidate)

    return {}


def _as_dict(candidate: Any) -> Dict:
    if candidate is None:
        return {}
    to_dict = getattr(candidate, 'to_dict', None)
    if callable(to_dict):
        return dict(to_dict())
    if isinstance(candidate, Mapping):
        return dict(candidate)
    return {}


def as_float(value: Any, default: Optional[float] = None, minimum: Optional[float] = None) -> Optional[float]:
    """Coerce ``value`` to a finite float, falling back to ``default``."""
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(result):
        return default
    if minimum is not None:
        result = max(minimum, result)
    return result


def as_int(value: Any, default: int, minimum: Optional[int] = None) -> int:
    result = as_float(value)
    if result is None:
        return default
    result = int(result)
    if minimum is not None:
        result = max(minimum, result)
    return result


def as_list(value: Any) -> list:
    """Accept a list, a comma-separated string or a scalar."""
    if not value:
        return []
    if isinstance(value, (list, tuple, set)):
        return [item for item in value if item]
    if isinstance(value, str):
        return [part.strip() for part in value.split(',') if part.strip()]
    return [value]


def as_bool(value: Any, default: bool = False) -> bool:
    """Read flags that may arrive as env strings (``"1"``, ``"yes"``, ``"off"``)."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in ('1', 'true', 'yes', 'on'):
        return True
    if text in ('0', 'false', 'no', 'off', ''):
        return False
    return default
