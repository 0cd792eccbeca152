"""Read-only queries about sessions that are still charging."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Collection, Dict, Iterable, List

from .data import Session
from .names import manual_session_name
from .patterns import Pattern
from .profile import session_profile
from .rules import Rules
from .similarity import AUTO_ASSIGN_THRESHOLD, SIMILARITY_THRESHOLD, similarity

logger = logging.getLogger(__name__)

# Confidence damping when the session already ran past the usual duration
OVERTIME_DAMPING = 0.7
# Milder damping while the session is younger than any seen before
EARLY_DAMPING = 0.9


@dataclass
class Match:
    pattern: Pattern
    similarity: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern_id": self.pattern.id,
            "device_name": self.pattern.device_name,
            "similarity": self.similarity,
        }


@dataclass
class Estimate:
    remaining_minutes: float
    confidence: float
    finished: bool
    elapsed_minutes: float
    pattern_id: str | None = None
    device_name: str | None = None
    similarity: float | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "remaining_minutes": self.remaining_minutes,
            "confidence": self.confidence,
            "finished": self.finished,
            "elapsed_minutes": self.elapsed_minutes,
            "pattern_id": self.pattern_id,
            "device_name": self.device_name,
            "similarity": self.similarity,
        }


def ranked_matches(
    session: Session,
    patterns: Iterable[Pattern],
    exclude: Collection[str] = (),
    threshold: float = SIMILARITY_THRESHOLD,
) -> List[Match]:
    """All patterns matching the session, best first.

    ``exclude`` holds pattern ids or names the user already rejected.
    """
    profile = session_profile(session)
    if profile is None:
        return []
    excluded = set(exclude)
    matches: List[Match] = []
    for pattern in patterns:
        if pattern.id in excluded or pattern.device_name in excluded:
            continue
        score = similarity(profile, pattern.average_profile)
        if score >= threshold:
            matches.append(Match(pattern, score))
    # sort is stable, so equal scores keep collection order
    matches.sort(key=lambda m: m.similarity, reverse=True)
    return matches


def best_match(
    session: Session,
    patterns: Iterable[Pattern],
    threshold: float = SIMILARITY_THRESHOLD,
) -> Match | None:
    matches = ranked_matches(session, patterns, threshold=threshold)
    return matches[0] if matches else None


def auto_assign(
    session: Session,
    patterns: Iterable[Pattern],
    threshold: float = AUTO_ASSIGN_THRESHOLD,
) -> Match | None:
    """Name a just-completed session after a confidently matching pattern.

    Sessions a human already labelled are left alone.
    """
    if manual_session_name(session):
        return None
    match = best_match(session, patterns)
    if match is None or match.similarity < threshold:
        return None
    logger.info(
        "Session %s auto-assigned to '%s' (similarity %.3f)",
        session.id,
        match.pattern.device_name,
        match.similarity,
    )
    session.device_name = match.pattern.device_name
    return match


def _now(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def is_finishing(session: Session, now: datetime | None = None, rules: Rules | None = None) -> bool:
    """True when an active session has settled into trickle charging."""
    if rules is None:
        rules = Rules()
    if session.completed:
        return False
    if len(session.readings) < rules.min_total_readings:
        return False

    now = _now(now)
    window_start = now - timedelta(minutes=rules.stability_window_min)
    buffer_start = window_start - timedelta(minutes=rules.buffer_window_min)
    timed = [r for r in session.readings if r.timestamp is not None]

    recent = [r.watts for r in timed if window_start <= r.timestamp <= now]
    if len(recent) < rules.min_window_readings:
        return False
    if any(w >= rules.low_power_watts for w in recent):
        return False

    buffer = [r.watts for r in timed if buffer_start <= r.timestamp < window_start]
    if len(buffer) >= rules.min_buffer_readings:
        recent_avg = sum(recent) / len(recent)
        buffer_avg = sum(buffer) / len(buffer)
        if recent_avg > buffer_avg * rules.rebound_ratio:
            logger.debug(
                "Session %s: power rising (%.2fW after %.2fW), not finishing",
                session.id,
                recent_avg,
                buffer_avg,
            )
            return False
    return True


def estimate_remaining(
    session: Session,
    patterns: Iterable[Pattern],
    now: datetime | None = None,
    rules: Rules | None = None,
) -> Estimate | None:
    """Estimate minutes left for an active session from its best match."""
    if rules is None:
        rules = Rules()
    now = _now(now)
    elapsed = 0.0
    if session.start is not None:
        elapsed = max((now - session.start).total_seconds() / 60, 0.0)

    if is_finishing(session, now, rules):
        return Estimate(
            remaining_minutes=0.0,
            confidence=rules.finished_confidence,
            finished=True,
            elapsed_minutes=round(elapsed, 1),
        )

    match = best_match(session, patterns)
    if match is None or match.pattern.statistics is None:
        return None
    stats = match.pattern.statistics

    confidence = match.similarity
    if elapsed > stats.average:
        remaining = max(stats.max - elapsed, 0.0)
        confidence *= OVERTIME_DAMPING
    else:
        remaining = max(stats.average - elapsed, 0.0)
        if elapsed < stats.min:
            confidence *= EARLY_DAMPING
    confidence = min(confidence, rules.max_confidence)

    return Estimate(
        remaining_minutes=round(remaining, 1),
        confidence=round(confidence, 3),
        finished=False,
        elapsed_minutes=round(elapsed, 1),
        pattern_id=match.pattern.id,
        device_name=match.pattern.device_name,
        similarity=match.similarity,
    )
