"""Similarity between two power profiles."""
from __future__ import annotations

from typing import Dict

from .profile import CURVE_PHASES, Profile

# Sessions scoring at least this much are treated as the same device
SIMILARITY_THRESHOLD = 0.65
# Completed sessions matching this well get their device name set automatically
AUTO_ASSIGN_THRESHOLD = 0.85

# Curve shape dominates because it best separates taper-down from flat charging
WEIGHTS: Dict[str, float] = {
    "mean": 0.20,
    "median": 0.15,
    "std_dev": 0.10,
    "peak_power_ratio": 0.15,
    "curve_shape": 0.40,
}

_EPSILON = 1e-9


def _relative(a: float, b: float) -> float:
    return max(0.0, 1 - abs(a - b) / max(a, b, _EPSILON))


def _std_dev_score(a: float, b: float) -> float:
    if a == 0 and b == 0:
        return 1.0
    if a == 0 or b == 0:
        return 0.0
    return _relative(a, b)


def _curve_score(a: Profile, b: Profile) -> float:
    diffs = sum(abs(getattr(a.curve_shape, p) - getattr(b.curve_shape, p)) for p in CURVE_PHASES)
    peak = max(
        [getattr(a.curve_shape, p) for p in CURVE_PHASES]
        + [getattr(b.curve_shape, p) for p in CURVE_PHASES]
        + [_EPSILON]
    )
    return max(0.0, 1 - diffs / (3 * peak))


def component_scores(a: Profile, b: Profile) -> Dict[str, float]:
    """Per-feature similarity in [0, 1], before weighting."""
    return {
        "mean": _relative(a.mean, b.mean),
        "median": _relative(a.median, b.median),
        "std_dev": _std_dev_score(a.std_dev, b.std_dev),
        "peak_power_ratio": max(0.0, 1 - abs(a.peak_power_ratio - b.peak_power_ratio)),
        "curve_shape": _curve_score(a, b),
    }


def similarity(a: Profile | None, b: Profile | None) -> float:
    """Weighted similarity score; 1.0 means identical profiles."""
    if a is None or b is None:
        return 0.0
    scores = component_scores(a, b)
    total = sum(scores[key] * weight for key, weight in WEIGHTS.items())
    return round(total, 3)
