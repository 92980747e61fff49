"""Shared JSON extraction and field coercion for generated stage output."""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, TypeVar

from app.core.errors import UnparsableOutput

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json|JSON)?")
_OBJECT_SPAN_RE = re.compile(r"\{[\s\S]*\}")
_ARRAY_SPAN_RE = re.compile(r"\[[\s\S]*\]")
_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")
_BRACKETS = (("{", "}"), ("[", "]"))
_MISSING = object()


@dataclass(frozen=True)
class ParseResult:
    """Tagged outcome of an extraction attempt."""

    ok: bool
    value: Any = None
    error: Optional[str] = None
    raw_text: str = ""

    @classmethod
    def success(cls, value: Any, raw_text: str = "") -> "ParseResult":
        return cls(ok=True, value=value, raw_text=raw_text)

    @classmethod
    def failure(cls, error: str, raw_text: str = "") -> "ParseResult":
        return cls(ok=False, error=error, raw_text=raw_text)

    def unwrap(self) -> Any:
        if not self.ok:
            raise UnparsableOutput(self.error or "unparsable output", raw_text=self.raw_text)
        return self.value


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def extract_json(text: Optional[str]) -> ParseResult:
    """Recover the first JSON value embedded in generated text.

    Tries, in order: the fence-stripped text as-is, the greedy bracket span for
    whichever bracket opens first, a first-to-last slice for each bracket kind, and
    finally a streaming decode from the first opening bracket.
    """
    raw = text or ""
    cleaned = strip_code_fences(raw)
    if not cleaned:
        return ParseResult.failure("empty response", raw)

    value = _try_loads(cleaned)
    if value is not _MISSING:
        return ParseResult.success(value, raw)

    for pattern in _span_patterns(cleaned):
        match = pattern.search(cleaned)
        if match:
            value = _try_loads(match.group(0))
            if value is not _MISSING:
                return ParseResult.success(value, raw)

    for opener, closer in _BRACKETS:
        start = cleaned.find(opener)
        end = cleaned.rfind(closer)
        if start != -1 and end > start:
            value = _try_loads(cleaned[start : end + 1])
            if value is not _MISSING:
                return ParseResult.success(value, raw)

    starts = [pos for pos in (cleaned.find("{"), cleaned.find("[")) if pos != -1]
    if starts:
        try:
            value, _ = json.JSONDecoder().raw_decode(cleaned[min(starts) :])
            return ParseResult.success(value, raw)
        except json.JSONDecodeError:
            pass

    return ParseResult.failure("no decodable JSON value found", raw)


def _try_loads(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return _MISSING


def _span_patterns(text: str) -> List[re.Pattern[str]]:
    obj_at = text.find("{")
    arr_at = text.find("[")
    if arr_at != -1 and (obj_at == -1 or arr_at < obj_at):
        return [_ARRAY_SPAN_RE, _OBJECT_SPAN_RE]
    return [_OBJECT_SPAN_RE, _ARRAY_SPAN_RE]


def unwrap_list(value: Any, keys: Iterable[str] = ()) -> Optional[List[Any]]:
    """Return ``value`` if it is a list, or the list stored under one of ``keys``."""
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        for key in keys:
            candidate = value.get(key)
            if isinstance(candidate, list):
                return candidate
    return None


def coerce_text(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def coerce_choice(value: Any, allowed: Sequence[T], default: T) -> T:
    if isinstance(value, str):
        lowered = value.strip().lower()
        for option in allowed:
            if lowered == option:
                return option
    return default


def coerce_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def coerce_positive_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        num = int(value)
    except (TypeError, ValueError):
        return None
    return num if num > 0 else None


def coerce_index(value: Any) -> Optional[int]:
    """Interpret an index field that may arrive as int, float or numeric string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    number = coerce_float(value)
    if number is None or not number.is_integer():
        return None
    return int(number)


def clamp_score(value: float) -> int:
    """Round half up and clamp to 1-10."""
    return max(1, min(10, int(math.floor(value + 0.5))))


def coerce_score(value: Any, default: int = 5) -> int:
    """Integer parse a model-provided score, defaulting when non-numeric, clamped to 1-10."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return default
        parsed = int(value)
    elif isinstance(value, str):
        match = _LEADING_INT_RE.match(value)
        if not match:
            return default
        parsed = int(match.group(1))
    else:
        return default
    return max(1, min(10, parsed))


def round_half(value: float) -> float:
    """Round to the nearest 0.5."""
    return math.floor(value * 2 + 0.5) / 2
