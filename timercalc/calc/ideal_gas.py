"""Ideal gas relation and finite-difference rate helpers."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

# L * torr / (K * mol)
GAS_CONSTANT = 62.363598221529


def moles(pressure_torr: float, volume_l: float, temperature_k: float) -> float:
    """n = P * V / (R * T). Raises ValueError for a non-positive temperature."""
    if temperature_k <= 0.0:
        raise ValueError(f"temperature must be positive in kelvin, got {temperature_k}")
    return pressure_torr * volume_l / (GAS_CONSTANT * temperature_k)


def rate_of_change(
    current: float,
    current_ts: datetime,
    previous: float,
    previous_ts: datetime,
) -> Optional[float]:
    """Two-point finite difference per second; None when the points are not time-ordered."""
    elapsed = (current_ts - previous_ts).total_seconds()
    if elapsed <= 0.0:
        return None
    return (current - previous) / elapsed
