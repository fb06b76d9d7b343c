"""Provide utility helpers for timestamps, durations and identifiers."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any, Optional

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$", re.I)
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(b|kb|mb|gb)?\s*$", re.I)
_SIZE_UNITS = {"b": 1, "kb": 1024, "mb": 1024**2, "gb": 1024**3}
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        if isinstance(value, datetime):
            dt = value
        else:
            value = str(value)
            if value.endswith("Z"):
                value = value[:-1] + "+00:00"
            dt = datetime.fromisoformat(value)
        # Naive timestamps come from hand-edited documents; treat them as UTC.
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError:
        return None


def parse_duration(value: Any, default: Optional[float] = None) -> Optional[float]:
    """Parse a duration such as ``90``, ``"45s"``, ``"30m"`` or ``"2h"`` into seconds.

    Bare numbers are seconds. Returns ``default`` for empty values.

    Raises:
        ValueError: If the value is not a recognizable duration.
    """
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    return amount * _DURATION_UNITS[unit]


def parse_size(value: Any) -> int:
    """Parse a size like ``"50MB"`` into bytes."""
    if isinstance(value, int):
        return value
    match = _SIZE_RE.match(str(value or ""))
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    unit = (match.group(2) or "b").lower()
    return int(float(match.group(1)) * _SIZE_UNITS[unit])


def slugify(value: str) -> str:
    slug = _SLUG_RE.sub("-", value.lower()).strip("-")
    return slug or "dag"


def short_hash(value: str, length: int = 4) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def format_seconds(seconds: float) -> str:
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m{secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"
