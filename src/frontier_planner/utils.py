from __future__ import annotations

import hashlib
import re
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))
_TIME_RE = re.compile(r"(\d+)\s*(minute|hour|min|hr)", re.IGNORECASE)
_NATURAL_ID_RE = re.compile(r"^(.*?)(\d+)$")

DEFAULT_DURATION_MINUTES = 30


def slugify_name(name: str) -> str:
    """Lower-case ``name`` and collapse non-alphanumeric runs into single underscores."""
    slug = re.sub(r"[^a-z0-9]+", "_", name.lower())
    return slug.strip("_")


def capitalize_first(text: str) -> str:
    return text[:1].upper() + text[1:]


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert Python/Pydantic values into JSON primitives for rfc8785."""
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_normalize_for_jcs(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=str)
        return items
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic JSON per RFC 8785."""
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")


def request_fingerprint(kind: str, payload: dict[str, Any], *, length: int = 12) -> str:
    """Stable identifier for an oracle request, independent of key order."""
    canonical = to_canonical_json({"kind": kind, "payload": payload})
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:length]


def parse_time_to_minutes(value: int | float | str | None, *, default: int = DEFAULT_DURATION_MINUTES) -> int:
    """Parse durations such as ``30``, ``"30 minutes"``, ``"1 hour"`` or ``"45 min"``.

    Unrecognized values fall back to ``default``.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return max(0, int(value))
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    match = _TIME_RE.search(text)
    if not match:
        return default
    amount = int(match.group(1))
    unit = match.group(2).lower()
    return amount * 60 if unit.startswith(("hour", "hr")) else amount


def content_words(text: str, *, min_length: int = 4, exclude: frozenset[str] = frozenset()) -> list[str]:
    """Lower-cased word tokens of at least ``min_length`` characters, in order, without repeats."""
    seen: set[str] = set()
    words: list[str] = []
    for token in re.split(r"\W+", text.lower()):
        if len(token) < min_length or token in exclude or token in seen:
            continue
        seen.add(token)
        words.append(token)
    return words


def natural_id_key(value: str) -> tuple[str, int, str]:
    """Sort key that orders ``node_2`` before ``node_10``."""
    match = _NATURAL_ID_RE.match(value)
    if match is None:
        return (value, -1, value)
    return (match.group(1), int(match.group(2)), value)
