"""Series handles, samples, and read/write policies shared across the store and cache."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from timercalc.util.time import from_epoch, to_epoch


class BoundaryType:
    """How a historical read treats the query timestamp."""

    INSIDE = "inside"
    INTERPOLATED = "interpolated"

    ALL = (INSIDE, INTERPOLATED)


class UpdateOption:
    """How a write treats an existing sample at the same timestamp."""

    INSERT = "insert"
    REPLACE = "replace"

    ALL = (INSERT, REPLACE)


POINT_TYPES = ("float64", "float32", "int32", "int16", "digital", "string")


@dataclass(frozen=True)
class SeriesHandle:
    """Resolved reference to one stored series."""

    id: int
    name: str
    database: str


@dataclass(frozen=True)
class Sample:
    timestamp: datetime
    value: float
    is_good: bool = True
    row_id: Optional[int] = None


def apply_boundary(
    at_or_before: Sequence[Sample],
    after: Optional[Sample],
    before: datetime,
    count: int,
    boundary: str,
) -> List[Sample]:
    """Trim a most-recent-first run of samples to ``count`` under a boundary policy.

    ``at_or_before`` must already be ordered most-recent-first and hold only
    samples at or before ``before``; ``after`` is the oldest sample later than
    ``before``, if any.
    """

    if boundary not in BoundaryType.ALL:
        raise ValueError(f"Unknown boundary type '{boundary}'")
    if count <= 0:
        return []
    samples = list(at_or_before[:count])
    if boundary == BoundaryType.INSIDE or not samples:
        return samples
    head = samples[0]
    if head.timestamp == before:
        return samples
    if after is None:
        value = head.value
        is_good = head.is_good
    else:
        t0 = to_epoch(head.timestamp)
        t1 = to_epoch(after.timestamp)
        frac = (to_epoch(before) - t0) / (t1 - t0) if t1 > t0 else 0.0
        value = head.value + (after.value - head.value) * frac
        is_good = head.is_good and after.is_good
    interpolated = Sample(timestamp=from_epoch(to_epoch(before)), value=float(value), is_good=is_good)
    return [interpolated] + samples[: count - 1]
