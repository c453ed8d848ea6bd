"""
Flatten a {day: rate} schedule into one effective number.

Used for the burn/vesting schedule (plain weighted mean of rates) and for the
vault staking schedule (annuity-equivalent rate, see blend_yield_rate).
"""

from typing import Dict, Tuple

import numpy as np


BLEND_MODES = ("aggressive", "longterm", "weighted", "average")

# "weighted" mode decays by sorted position, not by the day value
_WEIGHTED_DECAY = 0.5


def _sorted_entries(schedule: Dict[int, float]) -> Tuple[np.ndarray, np.ndarray]:
    items = sorted((float(day), float(rate)) for day, rate in schedule.items())
    days = np.array([d for d, _ in items], dtype=float)
    rates = np.array([r for _, r in items], dtype=float)
    return days, rates


def blend_weights(days: np.ndarray, mode: str) -> np.ndarray:
    """Per-entry weights for days already sorted ascending."""
    if mode == "aggressive":
        return 1.0 / np.maximum(days, 1.0)
    if mode == "longterm":
        return days.copy()
    if mode == "weighted":
        return np.exp(-_WEIGHTED_DECAY * np.arange(len(days), dtype=float))
    if mode == "average":
        return np.ones(len(days), dtype=float)
    raise ValueError(f"Unknown blend mode '{mode}'. Allowed: {', '.join(BLEND_MODES)}")


def blend_rate(schedule: Dict[int, float], mode: str) -> float:
    """Weighted mean of the schedule's rates."""
    if not schedule:
        return 0.0
    days, rates = _sorted_entries(schedule)
    if len(days) == 1:
        return float(rates[0])

    weights = blend_weights(days, mode)
    total = float(np.sum(weights))
    if total == 0:
        return 0.0
    return float(np.dot(rates, weights) / total)


def blend_key(schedule: Dict[int, float], mode: str) -> float:
    """Weighted mean of the schedule's day keys (effective lock period)."""
    if not schedule:
        return 0.0
    days, _ = _sorted_entries(schedule)
    if len(days) == 1:
        return float(days[0])

    weights = blend_weights(days, mode)
    total = float(np.sum(weights))
    if total == 0:
        return 0.0
    return float(np.dot(days, weights) / total)


def blend_yield_rate(schedule: Dict[int, float], mode: str) -> float:
    """Annuity-equivalent daily rate across lock horizons.

    Each entry earns rate × day over its lock. Total yield and lock length are
    weight-averaged separately with the same weights, then divided:

        Σ w·(rate·day) / Σ w·day

    A 360-day lock at 1.5% therefore counts for more than a 7-day lock at
    0.5%, which a plain mean of the rates would not reflect.
    """
    if not schedule:
        return 0.0
    days, rates = _sorted_entries(schedule)
    if len(days) == 1:
        return float(rates[0])

    weights = blend_weights(days, mode)
    weighted_days = float(np.dot(days, weights))
    if weighted_days == 0:
        return 0.0
    weighted_yield = float(np.dot(rates * days, weights))
    return weighted_yield / weighted_days
