"""Cell/value coercion shared by the heuristic and AI paths.

All helpers are pure and never raise on odd input: anything that does not
parse becomes ``None`` (numbers) or ``""`` (strings).
"""
from __future__ import annotations

import math
import re
from typing import Any, Optional, Union

Number = Union[int, float]

MAX_TEXT_LEN = 200

_NON_NUMERIC_RE = re.compile(r"[^0-9.\-]")
_WS_RE = re.compile(r"\s+")


def _canonical(n: float) -> Number:
    # KRW amounts are integral; keep them as int so 10000 prints as 10000
    if n.is_integer() and abs(n) < 2**53:
        return int(n)
    return n


def to_number(v: Any) -> Optional[Number]:
    """Coerce a cell to a finite number, or None.

    Strings keep only digits, '.' and '-' before parsing, so "10,000원" -> 10000.
    """
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        n = float(v)
        return _canonical(n) if math.isfinite(n) else None
    t = _NON_NUMERIC_RE.sub("", str(v))
    if not t:
        return None
    try:
        n = float(t)
    except ValueError:
        return None
    return _canonical(n) if math.isfinite(n) else None


def clamp_string(v: Any, max_len: int = MAX_TEXT_LEN) -> str:
    if v is None:
        return ""
    s = str(v)
    return s if len(s) <= max_len else s[:max_len]


def clean_cell(v: Any) -> str:
    """Cell text with NBSP removed and whitespace runs collapsed."""
    if v is None:
        return ""
    return _WS_RE.sub(" ", str(v).replace("\xa0", " ")).strip()


def is_positive(n: Any) -> bool:
    return isinstance(n, (int, float)) and not isinstance(n, bool) and math.isfinite(n) and n > 0


def positive_or_none(n: Any) -> Optional[Number]:
    """Non-positive aggregates are reported as absent, never as 0."""
    if not is_positive(n):
        return None
    return _canonical(float(n))
