"""Iterative trimmed mean with standard-deviation outlier rejection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np  # type: ignore

from timercalc.store.model import Sample

DEFAULT_NUM_STD_DEVS = 1.75


@dataclass(frozen=True)
class TrimmedMeanResult:
    """Outcome of one trimmed-mean evaluation.

    ``mean`` is None whenever ``ok`` is False; callers skip their write in that case.
    """

    mean: Optional[float]
    ok: bool
    used: int
    removed: int
    iterations: int


def trimmed_mean(samples: Iterable[Sample], num_std_devs: float = DEFAULT_NUM_STD_DEVS) -> TrimmedMeanResult:
    """Mean of the good samples after repeatedly dropping values beyond ``num_std_devs`` sigma.

    Each pass computes the mean and the population standard deviation (divide by
    ``n``) of the retained values and drops every value whose absolute deviation
    exceeds ``sigma * num_std_devs``. The mean of the first pass that drops nothing
    is returned. Bad-quality samples are discarded before the first pass. When no
    value survives, no mean is produced.
    """

    values = np.asarray([s.value for s in samples if s.is_good], dtype=np.float64)
    initial = int(values.size)
    iterations = 0
    while values.size > 0:
        iterations += 1
        avg = float(np.mean(values))
        stdev = float(np.sqrt(np.sum((values - avg) ** 2) / values.size))
        cutoff = stdev * float(num_std_devs)
        kept = values[np.abs(values - avg) <= cutoff]
        if kept.size == values.size:
            return TrimmedMeanResult(
                mean=avg, ok=True, used=int(values.size), removed=initial - int(values.size), iterations=iterations
            )
        values = kept
    return TrimmedMeanResult(mean=None, ok=False, used=0, removed=initial, iterations=iterations)
