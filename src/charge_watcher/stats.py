from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable


@dataclass
class DurationStats:
    """Session duration statistics of a device pattern, in minutes."""

    average: float
    min: float
    max: float
    # None after combining or incremental folding; a recluster recomputes it
    median: float | None
    total_sessions: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DurationStats":
        median = data.get("median")
        return cls(
            average=float(data["average"]),
            min=float(data["min"]),
            max=float(data["max"]),
            median=float(median) if median is not None else None,
            total_sessions=int(data.get("total_sessions", 0)),
        )


def from_durations(durations: Iterable[float | None]) -> DurationStats | None:
    """Compute statistics from raw per-session durations."""
    values = sorted(float(d) for d in durations if d is not None)
    if not values:
        return None
    return DurationStats(
        average=round(sum(values) / len(values), 2),
        min=round(values[0], 2),
        max=round(values[-1], 2),
        median=round(values[len(values) // 2], 2),
        total_sessions=len(values),
    )


def add_duration(stats: DurationStats | None, duration: float) -> DurationStats:
    """Fold one more session into existing statistics."""
    if stats is None:
        return from_durations([duration])
    total = stats.total_sessions + 1
    return DurationStats(
        average=round((stats.average * stats.total_sessions + duration) / total, 2),
        min=round(min(stats.min, duration), 2),
        max=round(max(stats.max, duration), 2),
        median=None,
        total_sessions=total,
    )


def remove_duration(stats: DurationStats | None, duration: float) -> DurationStats | None:
    """Take one session out of the statistics; min/max are kept."""
    if stats is None or stats.total_sessions <= 1:
        return None
    total = stats.total_sessions - 1
    return DurationStats(
        average=round(max(stats.average * stats.total_sessions - duration, 0.0) / total, 2),
        min=stats.min,
        max=stats.max,
        median=None,
        total_sessions=total,
    )


def combine(target: DurationStats | None, source: DurationStats | None) -> DurationStats | None:
    """Merge two patterns' statistics without their raw durations.

    The median cannot be recovered and is reported as unavailable.
    """
    if source is None:
        return target
    if target is None:
        return DurationStats(**asdict(source))
    total = target.total_sessions + source.total_sessions
    average = (
        (target.average * target.total_sessions + source.average * source.total_sessions) / total
        if total
        else 0.0
    )
    return DurationStats(
        average=round(average, 2),
        min=min(target.min, source.min),
        max=max(target.max, source.max),
        median=None,
        total_sessions=total,
    )


def from_patterns(patterns: Iterable[Any]) -> Dict[str, float]:
    """Summary figures for a pattern collection."""
    groups = 0
    sessions = 0
    labelled = 0
    duration_total = 0.0
    duration_count = 0
    for p in patterns:
        groups += 1
        sessions += p.count
        if not p.is_default_named:
            labelled += 1
        if p.statistics is not None:
            duration_total += p.statistics.average * p.statistics.total_sessions
            duration_count += p.statistics.total_sessions
    avg = duration_total / duration_count if duration_count else 0.0
    return {
        "patterns": groups,
        "sessions": sessions,
        "labelled_patterns": labelled,
        "avg_session_min": round(avg, 2),
    }
