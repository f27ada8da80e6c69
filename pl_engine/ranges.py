from __future__ import annotations

"""
Month → age-range resolution.

Age ranges are supposed to be mutually exclusive and contiguous, but the
reference data does not enforce it.  :func:`resolve_range` therefore
tolerates overlaps (documented tie-break) and malformed rows (fallback
parse from ids like ``"6-12m"``) and always returns a usable answer.
The resolver itself is pure; callers surface overlaps and broken
catalogs through :func:`surface_resolution`.
"""

import math
import numbers
import re
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Tuple

from loguru import logger

from .config import RANGE_ID_PATTERN

NO_CANDIDATES = "no-candidates"
SINGLE_CANDIDATE = "single-candidate"
OVERLAP = "overlap"
INVALID_RANGES = "invalid-ranges"

# warnings surfaced by callers, keyed by reason
RESOLUTION_WARNINGS: Counter = Counter()
_WARNINGS_LOCK = threading.Lock()

_INT_TEXT = re.compile(r"-?[0-9]+")


@dataclass
class RangeResolution:
    bucket_id: Optional[str]
    reason: str
    candidate_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Bounds:
    id: str
    min_months: int
    max_months: int


def _field(row: Any, *names: str) -> Any:
    for name in names:
        if isinstance(row, dict):
            if name in row:
                return row[name]
        elif hasattr(row, name):
            return getattr(row, name)
    return None


def _as_int(value: Any) -> Optional[int]:
    """Coerce a bound to int; ``None`` for anything non-numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, numbers.Integral):
        return int(value)
    if isinstance(value, numbers.Real):
        value = float(value)
        if math.isnan(value) or not value.is_integer():
            return None
        return int(value)
    if isinstance(value, str):
        s = value.strip()
        # ASCII digits only; str.isdigit also accepts superscripts
        if _INT_TEXT.fullmatch(s):
            return int(s)
    return None


def _bounds_from_id(range_id: str) -> Optional[Tuple[int, int]]:
    m = RANGE_ID_PATTERN.match(range_id)
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))


def parse_range(row: Any) -> Optional[_Bounds]:
    """Return clean bounds for one row, or ``None`` if it cannot be used."""
    raw_id = _field(row, "id")
    if raw_id is None:
        return None
    range_id = str(raw_id).strip()
    if not range_id:
        return None
    lo = _as_int(_field(row, "min_months", "minMonths"))
    hi = _as_int(_field(row, "max_months", "maxMonths"))
    if lo is None or hi is None or lo > hi:
        parsed = _bounds_from_id(range_id)
        if parsed is None or parsed[0] > parsed[1]:
            return None
        lo, hi = parsed
    return _Bounds(id=range_id, min_months=lo, max_months=hi)


def parse_ranges(rows: Iterable[Any]) -> Tuple[List[_Bounds], int]:
    """Parse every row; returns ``(usable, total_rows)``."""
    usable: List[_Bounds] = []
    total = 0
    for row in rows if rows is not None else []:
        total += 1
        bounds = parse_range(row)
        if bounds is not None:
            usable.append(bounds)
    return usable, total


def resolve_range(month: Any, ranges: Iterable[Any]) -> RangeResolution:
    """Map ``month`` to exactly one range id.

    Overlapping candidates resolve to the one with the largest
    ``min_months`` (the newer band at a shared boundary), then the
    lexicographically smallest id.  Never raises.
    """
    usable, total = parse_ranges(ranges)
    if total > 0 and not usable:
        return RangeResolution(bucket_id=None, reason=INVALID_RANGES)
    if isinstance(month, bool) or not isinstance(month, numbers.Integral):
        return RangeResolution(bucket_id=None, reason=NO_CANDIDATES)
    month = int(month)

    candidates = [b for b in usable if b.min_months <= month <= b.max_months]
    candidate_ids = [b.id for b in candidates]
    if not candidates:
        return RangeResolution(bucket_id=None, reason=NO_CANDIDATES)
    if len(candidates) == 1:
        return RangeResolution(candidates[0].id, SINGLE_CANDIDATE, candidate_ids)

    chosen = sorted(candidates, key=lambda b: (-b.min_months, b.id))[0]
    return RangeResolution(chosen.id, OVERLAP, candidate_ids)


def surface_resolution(month: Any, resolution: RangeResolution) -> RangeResolution:
    """Log and count resolutions that point at broken reference data."""
    if resolution.reason == OVERLAP:
        with _WARNINGS_LOCK:
            RESOLUTION_WARNINGS[OVERLAP] += 1
        logger.warning(
            "Overlapping age ranges for month {}: candidates={} chosen={}",
            month,
            resolution.candidate_ids,
            resolution.bucket_id,
        )
    elif resolution.reason == INVALID_RANGES:
        with _WARNINGS_LOCK:
            RESOLUTION_WARNINGS[INVALID_RANGES] += 1
        logger.error("No age range row could be parsed (month {})", month)
    return resolution


def nearest_supported_month(month: int, ranges: Iterable[Any]) -> Optional[int]:
    """Closest month covered by any range; ties prefer the higher month."""
    usable, _ = parse_ranges(ranges)
    best: Optional[int] = None
    best_dist = None
    for b in usable:
        m = min(max(month, b.min_months), b.max_months)
        dist = abs(m - month)
        if best is None or dist < best_dist or (dist == best_dist and m > best):
            best, best_dist = m, dist
    return best


def format_resolution_badge(month: int, resolution: RangeResolution) -> str:
    candidates = ",".join(resolution.candidate_ids)
    if resolution.reason == INVALID_RANGES:
        return f"Month {month} → no band (age range data is invalid)"
    if resolution.bucket_id is None:
        return f"Month {month} → no band (catalogue coming soon)"
    if resolution.reason == SINGLE_CANDIDATE:
        return f"Month {month} → {resolution.bucket_id} (candidates: {candidates}; rule: single match)"
    return (
        f"Month {month} → {resolution.bucket_id} "
        f"(candidates: {candidates}; tie-break: overlap → prefer higher min_month)"
    )
