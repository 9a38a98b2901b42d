"""Generative oracle boundary.

Every oracle call resolves to exactly one of three outcomes:

* :class:`Structured` -- parsed JSON that still has to be validated by the caller,
* :class:`Deferred` -- no synchronous answer; the request must be completed out-of-band,
* :class:`Unparseable` -- the oracle answered but the answer was not usable JSON.

Components handle all three explicitly instead of wrapping parsing in try/except.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar, Union

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

DOMAIN_GENERATION = "domain_generation"
SUBDOMAIN_GENERATION = "subdomain_generation"
TASK_GENERATION = "task_generation"

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class Structured:
    data: Any


@dataclass(frozen=True)
class Deferred:
    descriptor: dict[str, Any] = field(default_factory=dict)
    reason: str = "deferred"


@dataclass(frozen=True)
class Unparseable:
    raw: str
    reason: str


OracleResponse = Union[Structured, Deferred, Unparseable]


class GenerativeOracle(Protocol):
    """Anything that can answer a structured proposal request asynchronously."""

    async def propose(self, kind: str, payload: dict[str, Any]) -> OracleResponse:
        ...


class DeferringOracle:
    """Oracle that never answers synchronously.

    Used for the two-phase handoff where an external agent generates content and
    later returns it through task ingestion.
    """

    async def propose(self, kind: str, payload: dict[str, Any]) -> OracleResponse:
        logger.info("Deferring %s request to out-of-band generation", kind)
        return Deferred(descriptor={"kind": kind, "payload": dict(payload)})


def parse_structured_text(text: str) -> Structured | Unparseable:
    """Parse model text into a JSON value, tolerating fenced code blocks."""
    candidate = text.strip()
    if not candidate:
        return Unparseable(raw=text, reason="empty response")
    fenced = _FENCE_RE.search(candidate)
    if fenced is not None:
        candidate = fenced.group(1).strip()
    try:
        return Structured(data=json.loads(candidate))
    except json.JSONDecodeError as exc:
        return Unparseable(raw=text, reason=f"invalid JSON: {exc.msg}")


def _unwrap_list(data: Any, keys: tuple[str, ...]) -> Any:
    if isinstance(data, dict):
        for key in keys:
            if key in data:
                return data[key]
    return data


def validate_string_list(data: Any, *, keys: tuple[str, ...] = ("items",)) -> list[str] | None:
    """Return the non-empty strings of a JSON array, or None when the envelope is not an array."""
    values = _unwrap_list(data, keys)
    if not isinstance(values, list):
        return None
    cleaned: list[str] = []
    for value in values:
        if isinstance(value, str) and value.strip():
            cleaned.append(value.strip())
        elif isinstance(value, dict) and isinstance(value.get("title"), str) and value["title"].strip():
            cleaned.append(value["title"].strip())
    return cleaned


def validate_model_list(data: Any, schema: type[ModelT], *, keys: tuple[str, ...] = ("tasks",)) -> list[ModelT] | None:
    """Validate each element of a JSON array against ``schema``.

    Invalid elements are dropped individually. Returns None when the envelope itself
    is not an array.
    """
    values = _unwrap_list(data, keys)
    if not isinstance(values, list):
        return None
    accepted: list[ModelT] = []
    for idx, value in enumerate(values):
        try:
            accepted.append(schema.model_validate(value))
        except ValidationError as exc:
            logger.warning("Dropping invalid %s at index %d: %s", schema.__name__, idx, exc.errors()[:1])
    return accepted
