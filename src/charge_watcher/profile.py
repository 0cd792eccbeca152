"""Power profiles: the numeric fingerprint of a charging session."""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Sequence

from .data import Session
from .errors import InsufficientData

logger = logging.getLogger(__name__)

MIN_READINGS = 3

# Fields folded by count-weighted averaging
AVERAGED_KEYS = ("mean", "std_dev", "min", "max", "median", "p25", "p75", "peak_power_ratio")
CURVE_PHASES = ("early", "middle", "late")


@dataclass
class CurveShape:
    early: float
    middle: float
    late: float


@dataclass
class Profile:
    mean: float
    std_dev: float
    min: float
    max: float
    median: float
    p25: float
    p75: float
    peak_power_ratio: float
    curve_shape: CurveShape

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Profile":
        curve = data.get("curve_shape") or {}
        return cls(
            mean=float(data["mean"]),
            std_dev=float(data["std_dev"]),
            min=float(data["min"]),
            max=float(data["max"]),
            median=float(data["median"]),
            p25=float(data["p25"]),
            p75=float(data["p75"]),
            peak_power_ratio=float(data["peak_power_ratio"]),
            curve_shape=CurveShape(
                early=float(curve.get("early", data["mean"])),
                middle=float(curve.get("middle", data["mean"])),
                late=float(curve.get("late", data["mean"])),
            ),
        )

    def copy(self) -> "Profile":
        return Profile.from_dict(self.to_dict())


def _round(value: float, key: str) -> float:
    return round(value, 3 if key == "peak_power_ratio" else 2)


def _mean(values: Sequence[float], default: float) -> float:
    return sum(values) / len(values) if values else default


def power_profile(values: Iterable[float]) -> Profile | None:
    """Compute the profile of a series of power readings.

    Only strictly positive readings count. Returns ``None`` when fewer than
    three remain, which callers treat as "not analysable yet".
    """
    power: List[float] = [float(v) for v in values if v is not None and v > 0]
    if len(power) < MIN_READINGS:
        return None

    n = len(power)
    mean = sum(power) / n
    std_dev = math.sqrt(sum((v - mean) ** 2 for v in power) / n)
    ordered = sorted(power)
    p25 = ordered[int(n * 0.25)]
    median = ordered[int(n * 0.5)]
    p75 = ordered[int(n * 0.75)]

    high_threshold = mean + std_dev
    peak_power_ratio = sum(1 for v in power if v >= high_threshold) / n

    third = max(1, n // 3)
    early = _mean(power[:third], mean)
    middle = _mean(power[third : third * 2], mean)
    late = _mean(power[third * 2 :], mean)

    return Profile(
        mean=round(mean, 2),
        std_dev=round(std_dev, 2),
        min=round(ordered[0], 2),
        max=round(ordered[-1], 2),
        median=round(median, 2),
        p25=round(p25, 2),
        p75=round(p75, 2),
        peak_power_ratio=round(peak_power_ratio, 3),
        curve_shape=CurveShape(
            early=round(early, 2),
            middle=round(middle, 2),
            late=round(late, 2),
        ),
    )


def session_profile(session: Session) -> Profile | None:
    profile = power_profile(session.power_values)
    if profile is None:
        logger.debug(
            "Session %s: insufficient power data (%d readings, need %d+)",
            session.id,
            len([v for v in session.power_values if v > 0]),
            MIN_READINGS,
        )
    return profile


def require_profile(session: Session) -> Profile:
    profile = session_profile(session)
    if profile is None:
        raise InsufficientData(
            f"Session {session.id} needs at least {MIN_READINGS} positive power readings"
        )
    return profile


def session_duration(session: Session) -> float | None:
    """Duration of a completed session in minutes."""
    if session.start is None or session.end is None:
        return None
    return round((session.end - session.start).total_seconds() / 60, 2)


def fold_profile(average: Profile, profile: Profile, count: int) -> None:
    """Fold ``profile`` into ``average`` which now represents ``count`` sessions."""
    old_weight = count - 1
    for key in AVERAGED_KEYS:
        value = (getattr(average, key) * old_weight + getattr(profile, key)) / count
        setattr(average, key, _round(value, key))
    for phase in CURVE_PHASES:
        value = (getattr(average.curve_shape, phase) * old_weight + getattr(profile.curve_shape, phase)) / count
        setattr(average.curve_shape, phase, round(value, 2))


def unfold_profile(average: Profile, profile: Profile, count: int) -> None:
    """Remove ``profile`` from ``average`` which represented ``count`` sessions.

    min and max cannot be unwound from a running mean and are left as is.
    """
    if count <= 1:
        return
    remaining = count - 1
    for key in AVERAGED_KEYS:
        if key in ("min", "max"):
            continue
        value = (getattr(average, key) * count - getattr(profile, key)) / remaining
        setattr(average, key, _round(max(value, 0.0), key))
    for phase in CURVE_PHASES:
        value = (getattr(average.curve_shape, phase) * count - getattr(profile.curve_shape, phase)) / remaining
        setattr(average.curve_shape, phase, round(max(value, 0.0), 2))


def combine_profiles(target: Profile, source: Profile, target_weight: int, source_weight: int) -> None:
    """Merge ``source`` into ``target``: weighted means, extremes for min/max."""
    total = target_weight + source_weight
    for key in AVERAGED_KEYS:
        if key == "min":
            target.min = min(target.min, source.min)
        elif key == "max":
            target.max = max(target.max, source.max)
        else:
            value = (getattr(target, key) * target_weight + getattr(source, key) * source_weight) / total
            setattr(target, key, _round(value, key))
    for phase in CURVE_PHASES:
        value = (
            getattr(target.curve_shape, phase) * target_weight
            + getattr(source.curve_shape, phase) * source_weight
        ) / total
        setattr(target.curve_shape, phase, round(value, 2))
